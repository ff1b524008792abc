"""User-friendly APIs for the risk governor.

Components:
- RiskAPI: Trade admission, sizing, settlement, kill-switch, reconciliation
  and drift monitoring behind one context object
"""

from src.api.risk_api import RiskAPI

__all__ = [
    "RiskAPI",
]
