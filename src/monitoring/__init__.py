"""Model monitoring for the risk governor.

Components:
- DriftDetector: Coefficient, weight and accuracy drift with auto-throttle
"""

from src.monitoring.drift_detector import DriftConfig, DriftDetector, DriftEvent, ThrottleState

__all__ = [
    "DriftDetector",
    "DriftConfig",
    "DriftEvent",
    "ThrottleState",
]
