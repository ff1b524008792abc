"""Unit tests for risk layer value objects."""

import pytest

from src.risk.base import GateChecks, GateDecision, MarketQualitySnapshot, RiskConfig
from src.utils.exceptions import RiskConfigError


class TestRiskConfig:
    """Test cases for RiskConfig."""

    def test_defaults(self) -> None:
        config = RiskConfig()

        assert config.max_daily_loss_usd == 100.0
        assert config.max_open_positions == 10
        assert config.max_exposure_per_market_usd == 50.0
        assert config.min_liquidity_score == 0.3
        assert config.max_spread_fraction == 0.05

    @pytest.mark.parametrize(
        "field_name",
        [
            "max_daily_loss_usd",
            "max_open_positions",
            "max_exposure_per_market_usd",
            "min_liquidity_score",
            "max_spread_fraction",
        ],
    )
    def test_non_positive_limit_rejected(self, field_name: str) -> None:
        with pytest.raises(RiskConfigError, match=field_name):
            RiskConfig(**{field_name: 0})

    def test_non_numeric_rejected(self) -> None:
        with pytest.raises(RiskConfigError, match="must be a number"):
            RiskConfig(max_daily_loss_usd="100")

    def test_liquidity_above_one_rejected(self) -> None:
        with pytest.raises(RiskConfigError, match="min_liquidity_score"):
            RiskConfig(min_liquidity_score=1.5)

    def test_from_dict_ignores_unknown_keys(self) -> None:
        config = RiskConfig.from_dict({"max_daily_loss_usd": 250, "comment": "ignored"})

        assert config.max_daily_loss_usd == 250
        assert config.max_open_positions == 10

    def test_from_dict_none(self) -> None:
        assert RiskConfig.from_dict(None) == RiskConfig()


class TestGateDecision:
    """Test cases for GateChecks and GateDecision."""

    def test_checks_all_ok(self) -> None:
        checks = GateChecks(True, True, True, True, True, True)
        assert checks.all_ok()

        checks.spread_ok = False
        assert not checks.all_ok()
        assert checks.to_dict()["spread_ok"] is False
        assert len(checks.to_dict()) == 6

    def test_message(self) -> None:
        checks = GateChecks(False, True, True, True, True, False)
        decision = GateDecision(
            checks=checks,
            passed=False,
            failed_reasons=["Kill-switch is active", "Spread too wide: 8.00% (max: 5.00%)"],
        )

        assert decision.message.startswith("Risk checks failed: Kill-switch is active; Spread")

        passed = GateDecision(checks=GateChecks(True, True, True, True, True, True), passed=True)
        assert passed.message == "All risk checks passed"

    def test_snapshot_defaults(self) -> None:
        quality = MarketQualitySnapshot("m1", liquidity_score=0.8, spread_fraction=0.02)

        assert quality.volume_24h == 0.0
        assert quality.tradeable is True
