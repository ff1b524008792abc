"""Unit tests for the drift detector."""

from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest

from src.monitoring.drift_detector import (
    COEFFICIENT,
    CRITICAL,
    PERFORMANCE,
    REGIME,
    WARNING,
    WEIGHT,
    DriftConfig,
    DriftDetector,
)
from src.utils import events
from src.utils.events import EventBus
from src.utils.exceptions import RiskConfigError

WEIGHTS = {"time_delay": 0.5, "mispricing": 0.5}


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def detector(clock: FakeClock, bus: EventBus) -> DriftDetector:
    return DriftDetector(bus=bus, clock=clock)


def coefficients(scale: float, count: int = 1) -> Dict[str, float]:
    return {f"f{i}": scale for i in range(count)}


def correct(detector: DriftDetector, **kwargs):
    """Record an update whose prediction was right."""
    kwargs.setdefault("weights", WEIGHTS)
    kwargs.setdefault("coefficients", coefficients(1.0))
    return detector.record_update(prediction=0.7, actual_outcome=1, **kwargs)


def wrong(detector: DriftDetector, **kwargs):
    """Record an update whose prediction was wrong."""
    kwargs.setdefault("weights", WEIGHTS)
    kwargs.setdefault("coefficients", coefficients(1.0))
    return detector.record_update(prediction=0.7, actual_outcome=0, **kwargs)


class TestCoefficientDrift:
    """Test cases for coefficient drift."""

    def test_first_update_is_silent(self, detector: DriftDetector) -> None:
        assert correct(detector, coefficients=coefficients(100.0, count=5)) == []

    def test_event_after_every_large_change(self, detector: DriftDetector) -> None:
        """Test each update after the first reports the unstable feature."""
        results = [correct(detector, coefficients={"edge": v}) for v in (1.0, 2.0, 4.0)]

        assert results[0] == []
        for drifts in results[1:]:
            assert [d.kind for d in drifts] == [COEFFICIENT]
            assert drifts[0].severity == WARNING
            assert "edge" in drifts[0].details["changes"]

    def test_small_change_is_ignored(self, detector: DriftDetector) -> None:
        correct(detector, coefficients={"edge": 1.0})
        assert correct(detector, coefficients={"edge": 1.4}) == []

    def test_near_zero_previous_uses_floor(self, detector: DriftDetector) -> None:
        """Test a tiny previous value does not explode the relative change."""
        correct(detector, coefficients={"edge": 0.0})
        assert correct(detector, coefficients={"edge": 0.004}) == []

    def test_three_unstable_features_is_critical(self, detector: DriftDetector) -> None:
        correct(detector, coefficients=coefficients(1.0, count=3))
        drifts = correct(detector, coefficients=coefficients(3.0, count=3))

        assert drifts[0].kind == COEFFICIENT
        assert drifts[0].severity == CRITICAL
        assert len(drifts[0].details["changes"]) == 3

    def test_new_feature_has_no_baseline(self, detector: DriftDetector) -> None:
        correct(detector, coefficients={"edge": 1.0})
        assert correct(detector, coefficients={"edge": 1.0, "volume": 50.0}) == []


class TestWeightDrift:
    """Test cases for ensemble weight drift."""

    def test_first_update_is_silent(self, detector: DriftDetector) -> None:
        assert correct(detector, weights={"a": 0.9, "b": 0.1}) == []

    def test_moderate_swing_is_warning(self, detector: DriftDetector) -> None:
        correct(detector, weights={"a": 0.6, "b": 0.4})
        drifts = correct(detector, weights={"a": 0.4, "b": 0.6})

        assert [d.kind for d in drifts] == [WEIGHT]
        assert drifts[0].severity == WARNING
        assert drifts[0].message.startswith("Weight drift")

    def test_large_swing_is_flip(self, detector: DriftDetector) -> None:
        correct(detector, weights={"a": 0.9, "b": 0.1})
        drifts = correct(detector, weights={"a": 0.5, "b": 0.1})

        assert drifts[0].kind == WEIGHT
        assert drifts[0].severity == CRITICAL
        assert drifts[0].message.startswith("Weight flip: a falling")
        assert drifts[0].details["max_swing_key"] == "a"

    def test_small_swing_is_ignored(self, detector: DriftDetector) -> None:
        correct(detector, weights={"a": 0.5, "b": 0.5})
        assert correct(detector, weights={"a": 0.55, "b": 0.45}) == []


class TestPerformanceDrift:
    """Test cases for accuracy-based drift."""

    @pytest.fixture
    def detector(self, clock: FakeClock) -> DriftDetector:
        return DriftDetector(DriftConfig(performance_window=10, throttle_after_drifts=100), clock=clock)

    def test_correctness_threshold(self, detector: DriftDetector) -> None:
        detector.record_update(WEIGHTS, {}, prediction=0.5, actual_outcome=1)
        detector.record_update(WEIGHTS, {}, prediction=0.49, actual_outcome=0)
        detector.record_update(WEIGHTS, {}, prediction=0.5, actual_outcome=0)

        assert detector.current_accuracy() == pytest.approx(2 / 3)

    def test_no_event_before_window_is_full(self, detector: DriftDetector) -> None:
        for _ in range(9):
            assert wrong(detector) == []

    def test_low_accuracy_is_critical(self, detector: DriftDetector) -> None:
        for _ in range(9):
            wrong(detector)
        drifts = wrong(detector)

        assert [d.kind for d in drifts] == [PERFORMANCE]
        assert drifts[0].severity == CRITICAL
        assert drifts[0].details["current_accuracy"] == 0.0

    def test_accuracy_drop_is_warning(self, detector: DriftDetector) -> None:
        for _ in range(10):
            assert correct(detector) == []
        for _ in range(3):
            wrong(detector)
        for _ in range(6):
            assert correct(detector) == []

        drifts = correct(detector)

        assert [d.kind for d in drifts] == [PERFORMANCE]
        assert drifts[0].severity == WARNING
        assert drifts[0].details["old_accuracy"] == 1.0
        assert drifts[0].details["current_accuracy"] == pytest.approx(0.7)


class TestThrottle:
    """Test cases for auto-throttle and lazy expiry."""

    def critical_update(self, detector: DriftDetector, scale: float):
        return correct(detector, coefficients=coefficients(scale, count=3))

    def test_three_critical_drifts_throttle(
        self, detector: DriftDetector, clock: FakeClock, bus: EventBus
    ) -> None:
        self.critical_update(detector, 1.0)
        self.critical_update(detector, 3.0)
        self.critical_update(detector, 9.0)
        assert not detector.is_throttled()

        self.critical_update(detector, 27.0)

        state = detector.throttle_state()
        assert state.active
        assert state.active_until == clock.now + timedelta(minutes=30)
        assert detector.recent_drifts[-1].kind == REGIME
        assert detector.recent_drifts[-1].severity == CRITICAL
        assert len(bus.history(events.THROTTLE_ON)) == 1

    def test_throttle_expires_lazily(
        self, detector: DriftDetector, clock: FakeClock, bus: EventBus
    ) -> None:
        for scale in (1.0, 3.0, 9.0, 27.0):
            self.critical_update(detector, scale)
        assert detector.is_throttled()

        clock.advance(minutes=29)
        assert detector.is_throttled()

        clock.advance(minutes=1)
        state = detector.throttle_state()
        assert state.active is False
        assert state.active_until is None
        assert len(bus.history(events.THROTTLE_OFF)) == 1

    def test_old_critical_drifts_do_not_count(self, detector: DriftDetector, clock: FakeClock) -> None:
        self.critical_update(detector, 1.0)
        self.critical_update(detector, 3.0)
        clock.advance(minutes=61)
        self.critical_update(detector, 9.0)
        self.critical_update(detector, 27.0)

        assert not detector.is_throttled()

    def test_activate_is_noop_when_throttled(self, detector: DriftDetector, bus: EventBus) -> None:
        first = detector.activate_throttle("manual")
        second = detector.activate_throttle("again")

        assert first is not None and first.kind == REGIME
        assert second is None
        assert detector.throttle_state().reason == "manual"
        assert len(bus.history(events.THROTTLE_ON)) == 1

    def test_deactivate(self, detector: DriftDetector) -> None:
        detector.activate_throttle("manual")
        detector.deactivate_throttle()

        assert not detector.is_throttled()


class TestStatusAndReset:
    """Test cases for status() and reset()."""

    def test_drift_events_published(self, detector: DriftDetector, bus: EventBus) -> None:
        correct(detector, coefficients={"edge": 1.0})
        drifts = correct(detector, coefficients={"edge": 2.0})

        published = bus.history(events.DRIFT_DETECTED)
        assert [e.payload for e in published] == drifts

    def test_status_reports_volatility(self, detector: DriftDetector) -> None:
        for value in (1.0, 1.2, 1.4, 1.6):
            correct(detector, coefficients={"edge": value})
        assert detector.status()["coefficient_volatility"] == {}

        correct(detector, coefficients={"edge": 1.8})
        status = detector.status()

        assert status["coefficient_volatility"]["edge"] == pytest.approx(0.2828427, rel=1e-6)
        assert status["healthy"] is True
        assert status["current_accuracy"] == 1.0
        assert status["samples"] == 5
        assert status["throttled"] is False

    def test_status_unhealthy_after_critical(self, detector: DriftDetector) -> None:
        correct(detector, coefficients=coefficients(1.0, count=3))
        correct(detector, coefficients=coefficients(3.0, count=3))

        assert detector.status()["healthy"] is False

    def test_reset_clears_everything(self, detector: DriftDetector, bus: EventBus) -> None:
        correct(detector, coefficients={"edge": 1.0})
        correct(detector, coefficients={"edge": 5.0})
        detector.activate_throttle("manual")

        detector.reset()

        assert not detector.is_throttled()
        assert detector.recent_drifts == []
        assert detector.current_accuracy() == 0.0
        assert len(bus.history(events.THROTTLE_OFF)) == 1
        # Baseline is gone, so the next update is a first update again
        assert correct(detector, coefficients={"edge": 50.0}) == []


class TestDriftConfig:
    def test_defaults(self) -> None:
        config = DriftConfig()

        assert config.coefficient_change_threshold == 0.5
        assert config.weight_flip_threshold == 0.3
        assert config.performance_window == 50
        assert config.throttle_duration_minutes == 30.0

    def test_change_above_flip_rejected(self) -> None:
        with pytest.raises(RiskConfigError, match="weight_change_threshold"):
            DriftConfig(weight_change_threshold=0.5, weight_flip_threshold=0.3)

    def test_non_positive_window_rejected(self) -> None:
        with pytest.raises(RiskConfigError, match="performance_window"):
            DriftConfig(performance_window=0)

    def test_from_dict_ignores_unknown_keys(self) -> None:
        config = DriftConfig.from_dict({"performance_window": 20, "kill_switch_on_throttle": True})
        assert config.performance_window == 20
