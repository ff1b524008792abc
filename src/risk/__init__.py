"""Risk Governance Layer.

This layer is the safety guardian of the trading system: every proposed
trade passes the pre-trade gate, and every fill or close updates the
persisted risk ledger.

Components:
- RiskConfig: Admission limits
- MarketQualitySnapshot: Caller-supplied market metrics
- GateDecision: Admit/deny result with one reason per failed check
- RiskGate: Six-check pre-trade admission gate
- LedgerStore: Lazily loaded, persisted risk ledger
- KillSwitch: Persisted trading latch
- AuditLog: Append-only trail of risk state transitions
"""

from src.risk.base import GateChecks, GateDecision, MarketQualitySnapshot, RiskConfig
from src.risk.audit import AuditLog, AuditLogEntry
from src.risk.ledger import LedgerStore, RiskLedger, apply_settlement
from src.risk.gate import RiskGate, evaluate_ledger
from src.risk.kill_switch import KillSwitch

__all__ = [
    "RiskConfig",
    "MarketQualitySnapshot",
    "GateChecks",
    "GateDecision",
    "RiskGate",
    "evaluate_ledger",
    "RiskLedger",
    "LedgerStore",
    "apply_settlement",
    "KillSwitch",
    "AuditLog",
    "AuditLogEntry",
]
