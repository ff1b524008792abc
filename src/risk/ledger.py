"""Persisted risk ledger: daily P&L, exposure per market and kill-switch.

The ledger is the only mutable state of the risk layer. ``LedgerStore``
owns one ledger, loads it lazily from SQLite on first access, and
persists the full record on every mutation before returning.

Lifecycle:
    uninitialized -> loaded (from storage, or zero-valued fallback)
    -> mutated and persisted repeatedly -> shutdown

Durability policy: a failed write is logged and the in-memory ledger
stays authoritative for the running process. A failed read at startup
falls back to a zero-valued ledger with a warning. Trading availability
is preferred over perfect durability during storage outages.

Concurrency: every mutation is one critical section around
"read -> compute -> persist -> commit". Read-only queries (the gate
evaluator) share the lock with each other but never overlap a mutation.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from src.risk import audit as audit_events
from src.risk.audit import AuditLog
from src.risk.base import RiskConfig
from src.storage.database import DatabaseManager
from src.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)

# Exposure at or below this is treated as closed (float dust after partial closes)
EXPOSURE_EPSILON = 1e-9

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RiskLedger:
    """Process-wide risk state.

    Attributes:
        daily_pnl: Realized P&L since the last daily reset (signed)
        open_position_count: Number of markets with open exposure
        exposure_per_market: market_id -> open notional (never 0-valued)
        kill_switch_active: Whether trading is latched off
        kill_switch_reason: Reason given on the last activation
        last_reset_at: Time of the last daily reset (UTC)
    """

    daily_pnl: float = 0.0
    open_position_count: int = 0
    exposure_per_market: Dict[str, float] = field(default_factory=dict)
    kill_switch_active: bool = False
    kill_switch_reason: Optional[str] = None
    last_reset_at: datetime = field(default_factory=utc_now)

    @property
    def total_exposure(self) -> float:
        return sum(self.exposure_per_market.values())

    def copy(self) -> "RiskLedger":
        return RiskLedger(
            daily_pnl=self.daily_pnl,
            open_position_count=self.open_position_count,
            exposure_per_market=dict(self.exposure_per_market),
            kill_switch_active=self.kill_switch_active,
            kill_switch_reason=self.kill_switch_reason,
            last_reset_at=self.last_reset_at,
        )

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view used for audit before/after records."""
        return {
            "daily_pnl": self.daily_pnl,
            "open_position_count": self.open_position_count,
            "exposure_per_market": dict(self.exposure_per_market),
            "kill_switch_active": self.kill_switch_active,
            "last_reset_at": self.last_reset_at.isoformat(),
        }

    def to_record(self) -> Dict[str, Any]:
        return {
            "daily_pnl": self.daily_pnl,
            "open_position_count": self.open_position_count,
            "exposure_per_market": dict(self.exposure_per_market),
            "kill_switch_active": self.kill_switch_active,
            "kill_switch_reason": self.kill_switch_reason,
            "last_reset_at": self.last_reset_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RiskLedger":
        last_reset_at = datetime.fromisoformat(record["last_reset_at"])
        if last_reset_at.tzinfo is None:
            last_reset_at = last_reset_at.replace(tzinfo=timezone.utc)

        exposure = {
            str(market_id): float(value)
            for market_id, value in record["exposure_per_market"].items()
            if float(value) > EXPOSURE_EPSILON
        }
        return cls(
            daily_pnl=float(record["daily_pnl"]),
            open_position_count=int(record["open_position_count"]),
            exposure_per_market=exposure,
            kill_switch_active=bool(record["kill_switch_active"]),
            kill_switch_reason=record.get("kill_switch_reason"),
            last_reset_at=last_reset_at,
        )


def apply_settlement(
    ledger: RiskLedger,
    pnl_delta: float,
    market_id: str,
    size_delta: float,
) -> RiskLedger:
    """Apply a fill or close to a ledger in place.

    ``pnl_delta`` always goes to daily P&L. A positive ``size_delta`` adds
    exposure (a new market counts as a new position). A negative one
    reduces it, clamped at zero; a market reaching zero is removed and the
    position count drops by one, floored at zero.

    Returns:
        The same ledger, for chaining
    """
    ledger.daily_pnl += pnl_delta

    if size_delta > 0:
        current = ledger.exposure_per_market.get(market_id)
        if current is None:
            ledger.open_position_count += 1
            current = 0.0
        ledger.exposure_per_market[market_id] = current + size_delta

    elif size_delta < 0:
        present = market_id in ledger.exposure_per_market
        current = ledger.exposure_per_market.get(market_id, 0.0)
        new_value = max(0.0, current + size_delta)

        if new_value <= EXPOSURE_EPSILON:
            ledger.exposure_per_market.pop(market_id, None)
            if present:
                ledger.open_position_count = max(0, ledger.open_position_count - 1)
        else:
            ledger.exposure_per_market[market_id] = new_value

    return ledger


class ReadWriteLock:
    """Many concurrent readers or one writer. Writers are not starved."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class LedgerStore:
    """Owns the risk ledger and its durable copy.

    Example:
        >>> store = LedgerStore(DatabaseManager("data/risk.db"))
        >>> store.initialize()
        >>> store.settle(pnl_delta=0.0, market_id="0xabc", size_delta=25.0)
        >>> store.load().exposure_per_market
        {'0xabc': 25.0}
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        audit: Optional[AuditLog] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the store.

        Args:
            db: Database for durable storage. None keeps the ledger in memory.
            audit: Audit log. Defaults to one backed by the same database.
            clock: Returns the current UTC time (injectable for tests)
        """
        self.db = db
        self.audit = audit if audit is not None else AuditLog(db)
        self.clock = clock or utc_now
        self._lock = ReadWriteLock()
        self._ledger = RiskLedger(last_reset_at=self.clock())
        self._loaded = False
        self.persist_failures = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._loaded

    def initialize(self) -> RiskLedger:
        """Force a (re)load from storage."""
        with self._lock.write():
            self._loaded = False
            self._ensure_loaded_locked()
            return self._ledger.copy()

    def shutdown(self) -> None:
        """Release storage and return to the uninitialized state."""
        with self._lock.write():
            if self.db is not None:
                self.db.close()
            self._loaded = False
        logger.info("Ledger store shut down")

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._lock.write():
            self._ensure_loaded_locked()

    def _ensure_loaded_locked(self) -> None:
        if self._loaded:
            return

        now = self.clock()
        ledger = RiskLedger(last_reset_at=now)

        if self.db is None:
            logger.debug("No database configured, using in-memory ledger")
        else:
            try:
                record = self.db.load_ledger_row()
                if record is None:
                    logger.info("No persisted risk ledger found, starting from zero")
                    self._persist(ledger)
                else:
                    ledger = RiskLedger.from_record(record)
                    log_with_context(
                        logger,
                        "info",
                        "Risk ledger loaded",
                        daily_pnl=f"{ledger.daily_pnl:.2f}",
                        open_positions=ledger.open_position_count,
                        kill_switch_active=ledger.kill_switch_active,
                    )
                    if ledger.kill_switch_active:
                        logger.warning(
                            "Kill-switch was active at startup (reason: %s)",
                            ledger.kill_switch_reason,
                        )
            except Exception as e:
                logger.warning("Could not load risk ledger, using zero ledger: %s", e)
                ledger = RiskLedger(last_reset_at=now)

        self._ledger = ledger
        self._loaded = True
        self._roll_day_locked(now)

    def _roll_day_locked(self, now: datetime) -> None:
        """Zero daily P&L if the persisted ledger is from an earlier day.

        The kill-switch stays latched; only an explicit reset clears it.
        """
        previous = self._ledger.last_reset_at
        if previous.astimezone(timezone.utc).date() >= now.astimezone(timezone.utc).date():
            return

        before = self._ledger.snapshot()
        rolled = self._ledger.copy()
        rolled.daily_pnl = 0.0
        rolled.last_reset_at = now
        self._persist(rolled)
        self._ledger = rolled

        logger.info(
            "Daily rollover: %s -> %s (previous P&L %.2f)",
            previous.date(),
            now.date(),
            before["daily_pnl"],
        )
        self.audit.record(
            audit_events.DAILY_RESET,
            audit_events.SCHEDULER,
            f"Daily rollover: {previous.date()} -> {now.date()}",
            details={"previous_pnl": before["daily_pnl"]},
            risk_state_before={"daily_pnl": before["daily_pnl"]},
            risk_state_after={"daily_pnl": 0.0},
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self) -> RiskLedger:
        """Return a copy of the current ledger, loading it if needed."""
        self._ensure_loaded()
        with self._lock.read():
            return self._ledger.copy()

    @contextmanager
    def read(self) -> Iterator[RiskLedger]:
        """Hold the shared lock and expose the live ledger (do not modify)."""
        self._ensure_loaded()
        with self._lock.read():
            yield self._ledger

    def available_risk_budget(self, config: Optional[RiskConfig] = None) -> float:
        """Remaining daily loss budget, never negative."""
        config = config or RiskConfig()
        with self.read() as ledger:
            return max(0.0, config.max_daily_loss_usd + ledger.daily_pnl)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _persist(self, ledger: RiskLedger) -> bool:
        if self.db is None:
            return True
        try:
            self.db.save_ledger_row(ledger.to_record())
            return True
        except Exception as e:
            self.persist_failures += 1
            logger.error("Failed to persist risk ledger, keeping in-memory state: %s", e)
            return False

    def mutate(
        self,
        fn: Callable[[RiskLedger], Optional[RiskLedger]],
        on_commit: Optional[Callable[[RiskLedger, RiskLedger], None]] = None,
    ) -> RiskLedger:
        """Apply ``fn`` to a working copy, persist it, then commit it.

        Args:
            fn: Receives a copy of the ledger; returns the new ledger or
                None to keep the (modified) copy.
            on_commit: Called with (before, after) while the lock is still
                held, e.g. to write an audit entry in commit order.

        Returns:
            Copy of the committed ledger
        """
        self._ensure_loaded()
        with self._lock.write():
            before = self._ledger.copy()
            working = self._ledger.copy()
            result = fn(working)
            new_ledger = result if result is not None else working

            self._persist(new_ledger)
            self._ledger = new_ledger

            if on_commit is not None:
                on_commit(before, new_ledger.copy())
            return new_ledger.copy()

    def replace(self, **changes: Any) -> RiskLedger:
        """Overwrite selected ledger fields and persist.

        Used by the reconciler and by tests. Fields not named keep their
        loaded (or persisted) values.

        Raises:
            TypeError: On an unknown field name
        """
        known = {f.name for f in fields(RiskLedger)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown ledger fields: {sorted(unknown)}")

        if "exposure_per_market" in changes:
            changes["exposure_per_market"] = {
                k: float(v)
                for k, v in changes["exposure_per_market"].items()
                if float(v) > EXPOSURE_EPSILON
            }

        with self._lock.write():
            self._ensure_loaded_locked()
            new_ledger = self._ledger.copy()
            for name, value in changes.items():
                setattr(new_ledger, name, value)
            self._persist(new_ledger)
            self._ledger = new_ledger
            return new_ledger.copy()

    def settle(
        self,
        pnl_delta: float,
        market_id: str,
        size_delta: float,
        actor: str = audit_events.SYSTEM,
    ) -> RiskLedger:
        """Record a fill or close.

        Args:
            pnl_delta: Realized P&L of the fill (signed)
            market_id: Market the fill belongs to
            size_delta: Change in notional exposure (positive on open)
            actor: Audit actor

        Returns:
            Copy of the updated ledger
        """

        def _audit(before: RiskLedger, after: RiskLedger) -> None:
            self.audit.record(
                audit_events.TRADE,
                actor,
                f"Settled {market_id}: pnl {pnl_delta:+.2f}, size {size_delta:+.2f}",
                market_id=market_id,
                pnl_impact=pnl_delta,
                details={"pnl_delta": pnl_delta, "size_delta": size_delta},
                risk_state_before=before.snapshot(),
                risk_state_after=after.snapshot(),
            )

        ledger = self.mutate(
            lambda l: apply_settlement(l, pnl_delta, market_id, size_delta),
            on_commit=_audit,
        )

        log_with_context(
            logger,
            "info",
            "Ledger settled",
            market_id=market_id,
            daily_pnl=f"{ledger.daily_pnl:.2f}",
            open_positions=ledger.open_position_count,
            market_exposure=ledger.exposure_per_market.get(market_id),
        )
        return ledger

    def reset_daily(self, actor: str = audit_events.SYSTEM) -> RiskLedger:
        """Zero daily P&L and clear the kill-switch; positions survive."""
        now = self.clock()

        def _reset(ledger: RiskLedger) -> None:
            ledger.daily_pnl = 0.0
            ledger.kill_switch_active = False
            ledger.kill_switch_reason = None
            ledger.last_reset_at = now

        def _audit(before: RiskLedger, after: RiskLedger) -> None:
            self.audit.record(
                audit_events.DAILY_RESET,
                actor,
                f"Daily risk reset: P&L {before.daily_pnl:.2f} -> 0",
                details={"previous_pnl": before.daily_pnl},
                risk_state_before={
                    "daily_pnl": before.daily_pnl,
                    "kill_switch_active": before.kill_switch_active,
                },
                risk_state_after={
                    "daily_pnl": after.daily_pnl,
                    "kill_switch_active": after.kill_switch_active,
                },
            )

        ledger = self.mutate(_reset, on_commit=_audit)
        logger.info("Daily risk reset performed at %s", now.isoformat())
        return ledger
