"""Unit tests for the kill-switch."""

from pathlib import Path

import pytest

from src.risk import audit as audit_events
from src.risk.base import MarketQualitySnapshot
from src.risk.gate import RiskGate
from src.risk.kill_switch import KillSwitch
from src.risk.ledger import LedgerStore
from src.storage.database import DatabaseManager
from src.utils import events
from src.utils.events import EventBus


class TestKillSwitch:
    """Test cases for KillSwitch."""

    @pytest.fixture
    def bus(self) -> EventBus:
        return EventBus()

    @pytest.fixture
    def store(self) -> LedgerStore:
        return LedgerStore()

    @pytest.fixture
    def switch(self, store: LedgerStore, bus: EventBus) -> KillSwitch:
        return KillSwitch(store, bus)

    def test_inactive_by_default(self, switch: KillSwitch) -> None:
        assert switch.is_active() is False
        assert switch.reason() is None

    def test_activate_blocks_every_trade(self, switch: KillSwitch, store: LedgerStore) -> None:
        """Test an active kill-switch fails the gate regardless of other checks."""
        switch.activate("Venue returning stale prices")

        quality = MarketQualitySnapshot("m1", liquidity_score=1.0, spread_fraction=0.0)
        decision = RiskGate(store).evaluate(1.0, "m1", quality)

        assert switch.is_active()
        assert switch.reason() == "Venue returning stale prices"
        assert not decision.passed
        assert decision.checks.to_dict() == {
            "kill_switch_ok": False,
            "daily_loss_ok": True,
            "max_positions_ok": True,
            "per_market_cap_ok": True,
            "liquidity_ok": True,
            "spread_ok": True,
        }

    def test_deactivate(self, switch: KillSwitch) -> None:
        switch.activate("halt")
        switch.deactivate()

        assert switch.is_active() is False
        assert switch.reason() is None

    def test_idempotent_toggles_audit_each_call(self, switch: KillSwitch, store: LedgerStore) -> None:
        """Test repeating activate keeps state but audits again."""
        switch.activate("first")
        switch.activate("first")

        entries = store.audit.recent(event_type=audit_events.KILL_SWITCH)
        assert switch.is_active()
        assert len(entries) == 2
        assert entries[0].details["already_active"] is True
        assert entries[1].details["already_active"] is False

    def test_audit_records_actor_and_states(self, switch: KillSwitch, store: LedgerStore) -> None:
        switch.activate("halt", actor=audit_events.SYSTEM)
        switch.deactivate(actor=audit_events.OPERATOR)

        deactivated, activated = store.audit.recent(event_type=audit_events.KILL_SWITCH)
        assert activated.actor == audit_events.SYSTEM
        assert activated.risk_state_before == {"kill_switch_active": False}
        assert activated.risk_state_after == {"kill_switch_active": True}
        assert deactivated.actor == audit_events.OPERATOR
        assert deactivated.details == {"previous_reason": "halt"}

    def test_publishes_events(self, switch: KillSwitch, bus: EventBus) -> None:
        received = []
        bus.subscribe("*", received.append)

        switch.activate("halt")
        switch.deactivate()

        assert [e.topic for e in received] == [
            events.KILL_SWITCH_ACTIVATED,
            events.KILL_SWITCH_DEACTIVATED,
        ]
        assert received[0].payload["reason"] == "halt"

    def test_survives_restart(self, tmp_path: Path) -> None:
        """Test a latched kill-switch is active again after reopening storage."""
        db_path = tmp_path / "risk.db"
        store = LedgerStore(DatabaseManager(db_path))
        KillSwitch(store).activate("halt")
        store.shutdown()

        reopened = LedgerStore(DatabaseManager(db_path))
        assert KillSwitch(reopened).is_active() is True
        reopened.shutdown()
