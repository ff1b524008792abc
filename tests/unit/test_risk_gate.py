"""Unit tests for the pre-trade risk gate."""

import logging

import pytest

from src.risk.base import MarketQualitySnapshot, RiskConfig
from src.risk.gate import RiskGate, evaluate_ledger
from src.risk.ledger import LedgerStore, RiskLedger


@pytest.fixture
def quality() -> MarketQualitySnapshot:
    """Liquid, tight market."""
    return MarketQualitySnapshot("m1", liquidity_score=0.8, spread_fraction=0.02)


@pytest.fixture
def store() -> LedgerStore:
    return LedgerStore()


@pytest.fixture
def gate(store: LedgerStore) -> RiskGate:
    return RiskGate(store, RiskConfig())


class TestEvaluateLedger:
    """Test cases for the pure evaluation function."""

    def test_fresh_ledger_passes(self, quality: MarketQualitySnapshot) -> None:
        decision = evaluate_ledger(RiskLedger(), 10.0, "m1", quality, RiskConfig())

        assert decision.passed
        assert decision.failed_reasons == []
        assert all(decision.checks.to_dict().values())
        assert decision.market_id == "m1"
        assert decision.candidate_size_usd == 10.0

    def test_daily_loss_boundary(self, quality: MarketQualitySnapshot) -> None:
        """Test -150 + 10 fails while -95 + 10 passes."""
        config = RiskConfig(max_daily_loss_usd=100.0)

        failed = evaluate_ledger(RiskLedger(daily_pnl=-150.0), 10.0, "m1", quality, config)
        assert not failed.checks.daily_loss_ok
        assert not failed.passed
        assert failed.failed_reasons[0].startswith("Daily loss limit reached")

        passed = evaluate_ledger(RiskLedger(daily_pnl=-95.0), 10.0, "m1", quality, config)
        assert passed.checks.daily_loss_ok
        assert passed.passed

    def test_daily_loss_exactly_at_limit_passes(self, quality: MarketQualitySnapshot) -> None:
        decision = evaluate_ledger(RiskLedger(daily_pnl=-110.0), 10.0, "m1", quality, RiskConfig())
        assert decision.checks.daily_loss_ok

    def test_per_market_cap(self, quality: MarketQualitySnapshot) -> None:
        """Test 45 + 10 exceeds a 50 cap while 45 + 5 does not."""
        ledger = RiskLedger(open_position_count=1, exposure_per_market={"m1": 45.0})

        failed = evaluate_ledger(ledger, 10.0, "m1", quality, RiskConfig())
        assert not failed.checks.per_market_cap_ok
        assert failed.failed_reasons == ["Per-market cap exceeded: 45.00 + 10.00 > 50.00 USD"]

        passed = evaluate_ledger(ledger, 5.0, "m1", quality, RiskConfig())
        assert passed.checks.per_market_cap_ok
        assert passed.passed

    def test_cap_applies_per_market(self, quality: MarketQualitySnapshot) -> None:
        ledger = RiskLedger(open_position_count=1, exposure_per_market={"m2": 45.0})
        assert evaluate_ledger(ledger, 10.0, "m1", quality, RiskConfig()).passed

    def test_max_open_positions(self, quality: MarketQualitySnapshot) -> None:
        exposure = {f"m{i}": 1.0 for i in range(10)}
        ledger = RiskLedger(open_position_count=10, exposure_per_market=exposure)

        decision = evaluate_ledger(ledger, 1.0, "new", quality, RiskConfig())

        assert not decision.checks.max_positions_ok
        assert decision.failed_reasons == ["Maximum open positions reached: 10/10"]

    def test_kill_switch_denies(self, quality: MarketQualitySnapshot) -> None:
        ledger = RiskLedger(kill_switch_active=True, kill_switch_reason="Manual halt")

        decision = evaluate_ledger(ledger, 1.0, "m1", quality, RiskConfig())

        assert not decision.passed
        assert not decision.checks.kill_switch_ok
        assert decision.failed_reasons == ["Kill-switch is active (Manual halt)"]

    def test_market_quality_checks(self) -> None:
        poor = MarketQualitySnapshot("m1", liquidity_score=0.1, spread_fraction=0.08)

        decision = evaluate_ledger(RiskLedger(), 1.0, "m1", poor, RiskConfig())

        assert not decision.checks.liquidity_ok
        assert not decision.checks.spread_ok
        assert decision.failed_reasons == [
            "Liquidity too low: 10.0% (min: 30.0%)",
            "Spread too wide: 8.00% (max: 5.00%)",
        ]

    def test_all_failures_reported_in_order(self) -> None:
        """Test no short-circuit: every failed check has a reason, in order."""
        ledger = RiskLedger(
            daily_pnl=-500.0,
            open_position_count=10,
            exposure_per_market={f"m{i}": 50.0 for i in range(10)},
            kill_switch_active=True,
        )
        poor = MarketQualitySnapshot("m1", liquidity_score=0.0, spread_fraction=0.5)

        decision = evaluate_ledger(ledger, 10.0, "m1", poor, RiskConfig())

        assert not any(decision.checks.to_dict().values())
        prefixes = [
            "Kill-switch is active",
            "Daily loss limit reached",
            "Maximum open positions reached",
            "Per-market cap exceeded",
            "Liquidity too low",
            "Spread too wide",
        ]
        assert len(decision.failed_reasons) == 6
        for reason, prefix in zip(decision.failed_reasons, prefixes):
            assert reason.startswith(prefix)


class TestRiskGate:
    """Test cases for RiskGate bound to a store."""

    def test_fresh_store_passes(self, gate: RiskGate, quality: MarketQualitySnapshot) -> None:
        assert gate.evaluate(10.0, "m1", quality).passed

    def test_reads_current_ledger(
        self, gate: RiskGate, store: LedgerStore, quality: MarketQualitySnapshot
    ) -> None:
        store.settle(0.0, "m1", 45.0)

        assert not gate.evaluate(10.0, "m1", quality).passed
        assert gate.evaluate(5.0, "m1", quality).passed

    def test_per_call_config_overrides_default(
        self, gate: RiskGate, store: LedgerStore, quality: MarketQualitySnapshot
    ) -> None:
        store.settle(0.0, "m1", 45.0)
        loose = RiskConfig(max_exposure_per_market_usd=100.0)

        assert gate.evaluate(10.0, "m1", quality, config=loose).passed

    def test_evaluate_does_not_mutate(
        self, gate: RiskGate, store: LedgerStore, quality: MarketQualitySnapshot
    ) -> None:
        store.settle(-5.0, "m1", 10.0)
        before = store.load()

        gate.evaluate(10.0, "m2", quality)

        assert store.load() == before

    def test_denial_logged_as_warning(
        self, gate: RiskGate, store: LedgerStore, quality: MarketQualitySnapshot,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        store.mutate(lambda l: setattr(l, "kill_switch_active", True))

        with caplog.at_level(logging.WARNING):
            decision = gate.evaluate(10.0, "m1", quality)

        assert not decision.passed
        assert "Risk gate failed for m1" in caplog.text
