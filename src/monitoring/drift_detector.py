"""Drift detection for the upstream prediction model.

After every model-learning cycle the caller hands the detector the new
ensemble weights, feature coefficients and the latest prediction with
its realized outcome. The detector compares them with the previous
cycle and with rolling accuracy windows and emits DriftEvents.

Drift kinds:
- coefficient: a feature coefficient moved by more than the relative threshold
- weight: an ensemble weight swung (warning) or flipped (critical)
- performance: rolling accuracy fell below a floor (critical) or dropped
  against the previous window (warning)
- regime: the detector throttled trading after repeated critical drifts

Throttle expiry is evaluated lazily whenever the state is read. There is
no timer.
"""

from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

import numpy as np

from src.utils import events
from src.utils.events import EventBus
from src.utils.exceptions import RiskConfigError
from src.utils.logging import get_logger

logger = get_logger(__name__)

COEFFICIENT = "coefficient"
WEIGHT = "weight"
PERFORMANCE = "performance"
REGIME = "regime"

WARNING = "warning"
CRITICAL = "critical"

RECENT_DRIFTS_SIZE = 20
WEIGHT_HISTORY_SIZE = 100
THROTTLE_LOOKBACK = timedelta(minutes=60)
MIN_COEFFICIENT_BASE = 0.01
MIN_VOLATILITY_SAMPLES = 5

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DriftConfig:
    """Drift thresholds.

    Attributes:
        coefficient_change_threshold: Relative change marking a feature unstable
        coefficient_volatility_window: Samples kept per feature for volatility
        critical_unstable_features: Unstable features per update for critical
        weight_change_threshold: Weight swing reported as warning
        weight_flip_threshold: Weight swing reported as critical flip
        performance_window: Outcomes per accuracy window
        min_accuracy: Accuracy floor (critical below it)
        accuracy_drop_threshold: Window-over-window drop reported as warning
        throttle_after_drifts: Critical drifts within an hour that throttle
        throttle_duration_minutes: How long a throttle lasts
    """

    coefficient_change_threshold: float = 0.5
    coefficient_volatility_window: int = 20
    critical_unstable_features: int = 3
    weight_change_threshold: float = 0.15
    weight_flip_threshold: float = 0.3
    performance_window: int = 50
    min_accuracy: float = 0.45
    accuracy_drop_threshold: float = 0.15
    throttle_after_drifts: int = 3
    throttle_duration_minutes: float = 30.0

    def __post_init__(self):
        if self.weight_change_threshold > self.weight_flip_threshold:
            raise RiskConfigError(
                "weight_change_threshold cannot exceed weight_flip_threshold"
            )
        for name in (
            "coefficient_change_threshold",
            "coefficient_volatility_window",
            "critical_unstable_features",
            "performance_window",
            "throttle_after_drifts",
            "throttle_duration_minutes",
        ):
            if getattr(self, name) <= 0:
                raise RiskConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if not 0 <= self.min_accuracy <= 1:
            raise RiskConfigError(f"min_accuracy must be in [0, 1], got {self.min_accuracy}")

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]] = None) -> "DriftConfig":
        config = config or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config.items() if k in known})


@dataclass
class DriftEvent:
    """A detected drift.

    Attributes:
        kind: coefficient, weight, performance or regime
        severity: warning or critical
        message: Human-readable description
        details: Kind-specific data
        timestamp: UTC detection time
    """

    kind: str
    severity: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utc_now)


@dataclass
class ThrottleState:
    """Timed trading suspension. In memory only."""

    active: bool = False
    active_until: Optional[datetime] = None
    reason: Optional[str] = None


class DriftDetector:
    """Tracks model stability and throttles trading on repeated critical drift.

    Example:
        >>> detector = DriftDetector(bus=bus)
        >>> drifts = detector.record_update(
        ...     weights={"time_delay": 0.6, "mispricing": 0.4},
        ...     coefficients={"edge": 1.2, "volume": 0.3},
        ...     prediction=0.72,
        ...     actual_outcome=1,
        ... )
        >>> detector.is_throttled()
        False
    """

    def __init__(
        self,
        config: Optional[DriftConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or DriftConfig()
        self.bus = bus
        self.clock = clock or _utc_now

        self._previous_coefficients: Dict[str, float] = {}
        self._previous_weights: Optional[Dict[str, float]] = None
        self._coefficient_history: Dict[str, Deque[float]] = {}
        self._weight_history: Deque[Dict[str, Any]] = deque(maxlen=WEIGHT_HISTORY_SIZE)
        self._performance_history: Deque[bool] = deque(maxlen=self.config.performance_window * 2)
        self._recent_drifts: Deque[DriftEvent] = deque(maxlen=RECENT_DRIFTS_SIZE)
        self._throttle = ThrottleState()

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def record_update(
        self,
        weights: Mapping[str, float],
        coefficients: Mapping[str, float],
        prediction: float,
        actual_outcome: int,
    ) -> List[DriftEvent]:
        """Ingest one model-learning cycle.

        Args:
            weights: Ensemble weights by engine name
            coefficients: Feature coefficients by feature name
            prediction: Predicted probability of outcome 1
            actual_outcome: Realized outcome (0 or 1)

        Returns:
            Drift events detected in this cycle (empty if none)
        """
        now = self.clock()
        drifts: List[DriftEvent] = []

        coefficient_drift = self._check_coefficient_drift(coefficients, now)
        if coefficient_drift:
            drifts.append(coefficient_drift)

        weight_drift = self._check_weight_drift(weights, now)
        if weight_drift:
            drifts.append(weight_drift)

        correct = (prediction >= 0.5) == (actual_outcome == 1)
        self._performance_history.append(correct)
        performance_drift = self._check_performance_drift(now)
        if performance_drift:
            drifts.append(performance_drift)

        # Baselines for the next cycle
        self._previous_weights = dict(weights)
        for name, value in coefficients.items():
            self._previous_coefficients[name] = value
            history = self._coefficient_history.setdefault(
                name, deque(maxlen=self.config.coefficient_volatility_window)
            )
            history.append(value)
        self._weight_history.append({**weights, "timestamp": now})

        if drifts:
            for drift in drifts:
                self._recent_drifts.append(drift)
                logger.warning("[DRIFT] %s/%s: %s", drift.kind, drift.severity, drift.message)
                if self.bus is not None:
                    self.bus.publish(events.DRIFT_DETECTED, drift)
            self._check_auto_throttle(now)

        return drifts

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _check_coefficient_drift(
        self, coefficients: Mapping[str, float], now: datetime
    ) -> Optional[DriftEvent]:
        if not self._previous_coefficients:
            return None

        changes: Dict[str, Dict[str, float]] = {}
        max_change = 0.0
        max_change_key = ""

        for name, value in coefficients.items():
            previous = self._previous_coefficients.get(name)
            if previous is None:
                continue

            change = abs(value - previous)
            relative_change = change / max(abs(previous), MIN_COEFFICIENT_BASE)

            if relative_change > self.config.coefficient_change_threshold:
                changes[name] = {"old": previous, "new": value, "change": relative_change}

            if change > max_change:
                max_change = change
                max_change_key = name

        if not changes:
            return None

        severity = CRITICAL if len(changes) >= self.config.critical_unstable_features else WARNING
        return DriftEvent(
            kind=COEFFICIENT,
            severity=severity,
            message=f"Coefficient drift: {len(changes)} unstable feature(s)",
            details={
                "changes": changes,
                "max_change": max_change,
                "max_change_key": max_change_key,
            },
            timestamp=now,
        )

    def _check_weight_drift(
        self, weights: Mapping[str, float], now: datetime
    ) -> Optional[DriftEvent]:
        if self._previous_weights is None:
            return None

        swings = {
            name: abs(value - self._previous_weights[name])
            for name, value in weights.items()
            if name in self._previous_weights
        }
        if not swings:
            return None

        name = max(swings, key=swings.get)
        swing = swings[name]
        before = self._previous_weights[name]
        after = weights[name]
        details = {
            "before": dict(self._previous_weights),
            "after": dict(weights),
            "swings": swings,
            "max_swing_key": name,
        }

        if swing >= self.config.weight_flip_threshold:
            direction = "rising" if after > before else "falling"
            return DriftEvent(
                kind=WEIGHT,
                severity=CRITICAL,
                message=f"Weight flip: {name} {direction} by {swing:.1%}",
                details=details,
                timestamp=now,
            )

        if swing >= self.config.weight_change_threshold:
            return DriftEvent(
                kind=WEIGHT,
                severity=WARNING,
                message=f"Weight drift: {name} {before:.2f} -> {after:.2f}",
                details=details,
                timestamp=now,
            )

        return None

    def _check_performance_drift(self, now: datetime) -> Optional[DriftEvent]:
        window = self.config.performance_window
        history = list(self._performance_history)

        if len(history) < window:
            return None

        current_accuracy = sum(history[-window:]) / window

        if current_accuracy < self.config.min_accuracy:
            return DriftEvent(
                kind=PERFORMANCE,
                severity=CRITICAL,
                message=f"Performance drift: accuracy {current_accuracy:.1%} below minimum",
                details={
                    "current_accuracy": current_accuracy,
                    "threshold": self.config.min_accuracy,
                    "sample_size": window,
                },
                timestamp=now,
            )

        if len(history) >= window * 2:
            old_accuracy = sum(history[-2 * window:-window]) / window
            drop = old_accuracy - current_accuracy
            if drop >= self.config.accuracy_drop_threshold:
                return DriftEvent(
                    kind=PERFORMANCE,
                    severity=WARNING,
                    message=f"Performance drop: {old_accuracy:.1%} -> {current_accuracy:.1%}",
                    details={
                        "old_accuracy": old_accuracy,
                        "current_accuracy": current_accuracy,
                        "drop": drop,
                        "threshold": self.config.accuracy_drop_threshold,
                    },
                    timestamp=now,
                )

        return None

    # ------------------------------------------------------------------
    # Throttling
    # ------------------------------------------------------------------

    def _check_auto_throttle(self, now: datetime) -> None:
        cutoff = now - THROTTLE_LOOKBACK
        recent_critical = [
            d for d in self._recent_drifts if d.timestamp >= cutoff and d.severity == CRITICAL
        ]
        if len(recent_critical) >= self.config.throttle_after_drifts:
            self.activate_throttle(f"{len(recent_critical)} critical drifts within 1 hour")

    def activate_throttle(self, reason: str) -> Optional[DriftEvent]:
        """Suspend trading for the configured duration.

        No-op while a throttle is already active.

        Returns:
            The regime event recorded, or None if already throttled
        """
        if self.is_throttled():
            return None

        now = self.clock()
        until = now + timedelta(minutes=self.config.throttle_duration_minutes)
        self._throttle = ThrottleState(active=True, active_until=until, reason=reason)

        event = DriftEvent(
            kind=REGIME,
            severity=CRITICAL,
            message=f"Auto-throttle activated: {reason}",
            details={
                "active_until": until.isoformat(),
                "duration_minutes": self.config.throttle_duration_minutes,
            },
            timestamp=now,
        )
        self._recent_drifts.append(event)
        logger.warning(
            "[DRIFT] THROTTLE ACTIVATED: %s (%s min)", reason, self.config.throttle_duration_minutes
        )
        if self.bus is not None:
            self.bus.publish(events.THROTTLE_ON, event)
        return event

    def deactivate_throttle(self) -> None:
        if not self._throttle.active:
            return
        self._throttle = ThrottleState()
        logger.info("[DRIFT] Throttle deactivated")
        if self.bus is not None:
            self.bus.publish(events.THROTTLE_OFF, None)

    def throttle_state(self) -> ThrottleState:
        """Current throttle, expiring it first if its time has passed."""
        throttle = self._throttle
        if throttle.active and throttle.active_until is not None and self.clock() >= throttle.active_until:
            self.deactivate_throttle()
        return ThrottleState(
            active=self._throttle.active,
            active_until=self._throttle.active_until,
            reason=self._throttle.reason,
        )

    def is_throttled(self) -> bool:
        return self.throttle_state().active

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def recent_drifts(self) -> List[DriftEvent]:
        return list(self._recent_drifts)

    def current_accuracy(self) -> float:
        """Accuracy over the latest window (0.0 without history)."""
        recent = list(self._performance_history)[-self.config.performance_window:]
        if not recent:
            return 0.0
        return sum(recent) / len(recent)

    def coefficient_volatility(self) -> Dict[str, float]:
        """Standard deviation of each feature's recent coefficients."""
        return {
            name: float(np.std(np.asarray(history, dtype=float)))
            for name, history in self._coefficient_history.items()
            if len(history) >= MIN_VOLATILITY_SAMPLES
        }

    def status(self) -> Dict[str, Any]:
        """Snapshot for dashboards and the operator console."""
        throttle = self.throttle_state()
        has_critical = any(d.severity == CRITICAL for d in self._recent_drifts)
        return {
            "healthy": not throttle.active and not has_critical,
            "throttled": throttle.active,
            "throttled_until": throttle.active_until,
            "throttle_reason": throttle.reason,
            "recent_drifts": self.recent_drifts[-10:],
            "coefficient_volatility": self.coefficient_volatility(),
            "weight_history": list(self._weight_history)[-20:],
            "current_accuracy": self.current_accuracy(),
            "samples": len(self._performance_history),
        }

    def reset(self) -> None:
        """Forget all history and lift any throttle.

        Meant for an operator acknowledging a deliberate regime change.
        """
        self._previous_coefficients.clear()
        self._previous_weights = None
        self._coefficient_history.clear()
        self._weight_history.clear()
        self._performance_history.clear()
        self._recent_drifts.clear()
        self.deactivate_throttle()
        logger.info("[DRIFT] Drift detector reset")
