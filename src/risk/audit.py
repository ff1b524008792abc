"""Append-only audit trail of risk state transitions.

Every kill-switch toggle, daily reset, settlement and reconciliation
writes one entry with before/after snapshots of the affected ledger
fields. Writing an entry never raises: a failed write is logged and the
audited operation carries on.
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from src.storage.database import DatabaseManager
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Event types
TRADE = "trade"
KILL_SWITCH = "kill_switch"
DAILY_RESET = "daily_reset"
RECONCILE = "reconcile"
SETTINGS = "settings"

# Actors
SYSTEM = "system"
OPERATOR = "operator"
SCHEDULER = "scheduler"

MEMORY_BUFFER_SIZE = 1000


@dataclass
class AuditLogEntry:
    """One audit record.

    Attributes:
        event_type: trade, kill_switch, daily_reset, reconcile or settings
        actor: Who triggered the transition (system, operator, scheduler)
        action: Free-text description
        details: Structured extra data
        risk_state_before: Snapshot of affected fields before the change
        risk_state_after: Snapshot of affected fields after the change
        market_id: Market involved, if any
        pnl_impact: P&L change caused by the transition, if any
        timestamp: UTC time of the transition
    """

    event_type: str
    actor: str
    action: str
    details: Optional[Dict[str, Any]] = None
    risk_state_before: Optional[Dict[str, Any]] = None
    risk_state_after: Optional[Dict[str, Any]] = None
    market_id: Optional[str] = None
    pnl_impact: Optional[float] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["created_at"] = record.pop("timestamp").isoformat()
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "AuditLogEntry":
        return cls(
            event_type=record["event_type"],
            actor=record["actor"],
            action=record["action"],
            details=record.get("details"),
            risk_state_before=record.get("risk_state_before"),
            risk_state_after=record.get("risk_state_after"),
            market_id=record.get("market_id"),
            pnl_impact=record.get("pnl_impact"),
            timestamp=datetime.fromisoformat(record["created_at"]),
        )


class AuditLog:
    """Writes audit entries to the database, or to memory without one.

    Example:
        >>> audit = AuditLog(db)
        >>> audit.write(AuditLogEntry(
        ...     event_type=KILL_SWITCH, actor=OPERATOR, action="Kill-switch activated",
        ...     risk_state_before={"kill_switch_active": False},
        ...     risk_state_after={"kill_switch_active": True},
        ... ))
    """

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db
        self._memory: Deque[AuditLogEntry] = deque(maxlen=MEMORY_BUFFER_SIZE)
        self.failed_writes = 0

    def write(self, entry: AuditLogEntry) -> bool:
        """Append an entry. Never raises.

        Returns:
            True if the entry was stored
        """
        if self.db is None:
            self._memory.append(entry)
            return True

        try:
            self.db.append_audit(entry.to_record())
            return True
        except Exception as e:
            self.failed_writes += 1
            logger.error(
                "Audit write failed (%s/%s): %s", entry.event_type, entry.action, e
            )
            return False

    def record(
        self,
        event_type: str,
        actor: str,
        action: str,
        **kwargs: Any,
    ) -> bool:
        """Shorthand for ``write(AuditLogEntry(...))``."""
        return self.write(AuditLogEntry(event_type=event_type, actor=actor, action=action, **kwargs))

    def recent(self, limit: int = 100, event_type: Optional[str] = None) -> List[AuditLogEntry]:
        """Most recent entries, newest first.

        Read failures are logged and yield an empty list.
        """
        if self.db is None:
            entries = [e for e in reversed(self._memory) if event_type is None or e.event_type == event_type]
            return entries[:limit]

        try:
            records = self.db.load_audit(limit=limit, event_type=event_type)
        except Exception as e:
            logger.error("Audit read failed: %s", e)
            return []
        return [AuditLogEntry.from_record(r) for r in records]
