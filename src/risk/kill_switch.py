"""Kill-switch: a persisted latch that denies every trade while set.

The latch lives in the risk ledger, so it survives restarts. Never assume
it is off because nothing in this process turned it on; ``is_active()``
loads the persisted ledger on first use.
"""

from typing import Optional

from src.risk import audit as audit_events
from src.risk.ledger import LedgerStore, RiskLedger
from src.utils import events
from src.utils.events import EventBus
from src.utils.logging import get_logger

logger = get_logger(__name__)


class KillSwitch:
    """Activate, deactivate and query the kill-switch.

    Both toggles are idempotent: repeating one re-logs, re-persists and
    re-audits, but does not otherwise change state.

    Example:
        >>> switch = KillSwitch(store, bus)
        >>> switch.activate("Venue returning stale prices")
        >>> switch.is_active()
        True
    """

    def __init__(self, store: LedgerStore, bus: Optional[EventBus] = None):
        self.store = store
        self.bus = bus

    def activate(self, reason: str = "Manually activated", actor: str = audit_events.OPERATOR) -> RiskLedger:
        """Latch the kill-switch on.

        Args:
            reason: Why trading is being halted
            actor: Audit actor

        Returns:
            Copy of the updated ledger
        """

        def _activate(ledger: RiskLedger) -> None:
            ledger.kill_switch_active = True
            ledger.kill_switch_reason = reason

        def _audit(before: RiskLedger, after: RiskLedger) -> None:
            self.store.audit.record(
                audit_events.KILL_SWITCH,
                actor,
                f"Kill-switch activated: {reason}",
                details={"reason": reason, "already_active": before.kill_switch_active},
                risk_state_before={"kill_switch_active": before.kill_switch_active},
                risk_state_after={"kill_switch_active": after.kill_switch_active},
            )

        ledger = self.store.mutate(_activate, on_commit=_audit)
        logger.warning("KILL-SWITCH ACTIVATED - all trades blocked. Reason: %s", reason)

        if self.bus is not None:
            self.bus.publish(events.KILL_SWITCH_ACTIVATED, {"reason": reason, "actor": actor})
        return ledger

    def deactivate(self, actor: str = audit_events.OPERATOR) -> RiskLedger:
        """Release the kill-switch.

        Returns:
            Copy of the updated ledger
        """

        def _deactivate(ledger: RiskLedger) -> None:
            ledger.kill_switch_active = False
            ledger.kill_switch_reason = None

        def _audit(before: RiskLedger, after: RiskLedger) -> None:
            self.store.audit.record(
                audit_events.KILL_SWITCH,
                actor,
                "Kill-switch deactivated",
                details={"previous_reason": before.kill_switch_reason},
                risk_state_before={"kill_switch_active": before.kill_switch_active},
                risk_state_after={"kill_switch_active": after.kill_switch_active},
            )

        ledger = self.store.mutate(_deactivate, on_commit=_audit)
        logger.info("Kill-switch deactivated - trading enabled")

        if self.bus is not None:
            self.bus.publish(events.KILL_SWITCH_DEACTIVATED, {"actor": actor})
        return ledger

    def is_active(self) -> bool:
        with self.store.read() as ledger:
            return ledger.kill_switch_active

    def reason(self) -> Optional[str]:
        with self.store.read() as ledger:
            return ledger.kill_switch_reason
