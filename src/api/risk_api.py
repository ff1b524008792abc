"""User-friendly Risk API for trade admission and risk governance.

This module provides the single object a trading loop talks to: it wires
the ledger store, risk gate, kill-switch, position sizer, reconciler and
drift detector together and owns their lifecycle.

There is no module-level state. Create one RiskAPI per process (or per
test) and call ``initialize()`` before trading.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from src.execution.reconciler import ExposureReconciler, SyncCheck, SyncResult
from src.execution.venue import HttpPositionSource, PositionSource
from src.monitoring.drift_detector import DriftConfig, DriftDetector, DriftEvent
from src.portfolio.sizing import PositionSizer, SizingConfig, SlippageModel
from src.risk import audit as audit_events
from src.risk.audit import AuditLog, AuditLogEntry
from src.risk.base import GateDecision, MarketQualitySnapshot, RiskConfig
from src.risk.gate import RiskGate
from src.risk.kill_switch import KillSwitch
from src.risk.ledger import LedgerStore, RiskLedger
from src.storage.database import DatabaseManager
from src.utils import events
from src.utils.config import Config
from src.utils.events import Event, EventBus
from src.utils.logging import get_logger

logger = get_logger(__name__)


class RiskAPI:
    """High-level API for risk governance.

    Example:
        >>> from src.api.risk_api import RiskAPI
        >>>
        >>> # In-memory instance with default limits
        >>> api = RiskAPI()
        >>> api.initialize()
        >>>
        >>> quality = MarketQualitySnapshot("0xabc", liquidity_score=0.8, spread_fraction=0.02)
        >>> stake = api.size(predicted_edge=0.10, confidence=0.8, bankroll=1000)
        >>> decision = api.evaluate(stake, "0xabc", quality)
        >>> if decision.passed:
        ...     # place the order on the venue, then on fill:
        ...     api.settle(pnl_delta=0.0, market_id="0xabc", size_delta=stake)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        db: Optional[DatabaseManager] = None,
        source: Optional[PositionSource] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize RiskAPI.

        Args:
            config: Loaded configuration (defaults to built-in defaults)
            db: Database for the ledger and audit log (None keeps both in memory)
            source: Venue position source for reconciliation (optional)
            bus: Event bus (a private one is created if omitted)
            clock: UTC clock shared by the ledger store and drift detector
        """
        self.config = config or Config({})
        self.db = db
        self.bus = bus or EventBus()

        self.risk_config = RiskConfig.from_dict(self.config.section("risk.gate"))

        self.audit = AuditLog(db)
        self.store = LedgerStore(db, audit=self.audit, clock=clock)
        self.gate = RiskGate(self.store, self.risk_config)
        self.kill_switch = KillSwitch(self.store, self.bus)
        self.sizer = PositionSizer(
            SizingConfig.from_dict(self.config.section("sizing")),
            SlippageModel.from_dict(self.config.section("slippage")),
        )
        self.drift = DriftDetector(
            DriftConfig.from_dict(self.config.section("drift")),
            bus=self.bus,
            clock=clock,
        )

        self.source = source
        self.reconciler: Optional[ExposureReconciler] = None
        if source is not None:
            self.reconciler = ExposureReconciler(
                self.store,
                source,
                timeout=float(self.config.get("reconciler.timeout_seconds", 10.0)),
                bus=self.bus,
            )

        self.kill_switch_on_throttle = bool(self.config.get("drift.kill_switch_on_throttle", False))
        if self.kill_switch_on_throttle:
            self.bus.subscribe(events.THROTTLE_ON, self._on_throttle)

        logger.debug(
            "RiskAPI initialized (storage: %s, reconciler: %s)",
            db.db_path if db is not None else "memory",
            type(source).__name__ if source is not None else "none",
        )

    @classmethod
    def from_config(cls, config: Config, bus: Optional[EventBus] = None) -> "RiskAPI":
        """Build a RiskAPI from ``database.path`` and ``reconciler.positions_url``.

        Example:
            >>> api = RiskAPI.from_config(load_governor_config())
        """
        db_path = config.get("database.path")
        db = DatabaseManager(db_path) if db_path else None

        url = config.get("reconciler.positions_url")
        source = HttpPositionSource(url, params=config.get("reconciler.params")) if url else None

        return cls(config=config, db=db, source=source, bus=bus)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, reconcile: bool = True) -> Optional[SyncResult]:
        """Load the ledger and reconcile exposure with the venue.

        Call before admitting the first trade of the process.

        Args:
            reconcile: Run the boot reconciliation when a source is configured

        Returns:
            SyncResult of the boot reconciliation, or None if it did not run
        """
        ledger = self.store.initialize()
        logger.info(
            "Risk governor initialized: daily P&L %.2f, %d open positions, kill-switch %s",
            ledger.daily_pnl,
            ledger.open_position_count,
            "ON" if ledger.kill_switch_active else "off",
        )

        if reconcile and self.reconciler is not None:
            return self.reconciler.reconcile()
        return None

    def shutdown(self) -> None:
        """Release storage. The instance can be initialized again."""
        self.store.shutdown()

    # ------------------------------------------------------------------
    # Admission and sizing
    # ------------------------------------------------------------------

    def evaluate(
        self,
        candidate_size_usd: float,
        market_id: str,
        quality: MarketQualitySnapshot,
        config: Optional[RiskConfig] = None,
    ) -> GateDecision:
        """Run the six pre-trade checks.

        Args:
            candidate_size_usd: Proposed notional
            market_id: Target market
            quality: Market-quality snapshot of the target market
            config: Limits for this call (defaults to ``risk.gate`` config)

        Returns:
            GateDecision; ``passed=False`` lists every failed check
        """
        return self.gate.evaluate(candidate_size_usd, market_id, quality, config)

    def size(
        self,
        predicted_edge: float,
        confidence: float,
        bankroll: float,
        kelly_fraction: Optional[float] = None,
    ) -> float:
        return self.sizer.size(predicted_edge, confidence, bankroll, kelly_fraction)

    def estimate_slippage(
        self,
        size_usd: float,
        recent_trade_volumes: Optional[Sequence[float]] = None,
    ) -> float:
        return self.sizer.estimate_slippage(size_usd, recent_trade_volumes)

    # ------------------------------------------------------------------
    # Ledger mutations
    # ------------------------------------------------------------------

    def settle(
        self,
        pnl_delta: float,
        market_id: str,
        size_delta: float,
    ) -> RiskLedger:
        """Record a fill (positive size) or close (negative size)."""
        return self.store.settle(pnl_delta, market_id, size_delta)

    def reset_daily(self, actor: str = audit_events.SYSTEM) -> RiskLedger:
        return self.store.reset_daily(actor=actor)

    def activate_kill_switch(
        self,
        reason: str = "Manually activated",
        actor: str = audit_events.OPERATOR,
    ) -> RiskLedger:
        return self.kill_switch.activate(reason, actor=actor)

    def deactivate_kill_switch(self, actor: str = audit_events.OPERATOR) -> RiskLedger:
        return self.kill_switch.deactivate(actor=actor)

    def is_kill_switch_active(self) -> bool:
        return self.kill_switch.is_active()

    def reconcile(self, actor: str = audit_events.OPERATOR) -> SyncResult:
        """Replace ledger exposure with the venue's open positions.

        Returns:
            SyncResult; ``synced=False`` when no source is configured or
            the venue could not be queried
        """
        if self.reconciler is None:
            logger.warning("Reconciliation requested but no position source is configured")
            return SyncResult(synced=False, reason="No position source configured")
        return self.reconciler.reconcile(actor=actor)

    def check_sync_needed(self) -> SyncCheck:
        if self.reconciler is None:
            ledger_positions = self.store.load().open_position_count
            return SyncCheck(
                needed=False,
                ledger_positions=ledger_positions,
                venue_positions=-1,
                reason="No position source configured",
            )
        return self.reconciler.check_sync_needed()

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    def record_model_update(
        self,
        weights: Mapping[str, float],
        coefficients: Mapping[str, float],
        prediction: float,
        actual_outcome: int,
    ) -> List[DriftEvent]:
        """Feed one model-learning cycle to the drift detector."""
        return self.drift.record_update(weights, coefficients, prediction, actual_outcome)

    def _on_throttle(self, event: Event) -> None:
        reason = getattr(event.payload, "message", None) or "Drift throttle activated"
        self.kill_switch.activate(reason, actor=audit_events.SYSTEM)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_trading_allowed(self) -> bool:
        """Kill-switch off and drift detector not throttled."""
        return not self.kill_switch.is_active() and not self.drift.is_throttled()

    def get_summary(self) -> Dict[str, Any]:
        """Current risk state for dashboards and the operator console.

        Returns:
            Dictionary with ledger fields, remaining loss budget, limits,
            drift throttle state and storage health counters
        """
        ledger = self.store.load()
        throttle = self.drift.throttle_state()

        return {
            "daily_pnl": ledger.daily_pnl,
            "open_position_count": ledger.open_position_count,
            "total_exposure": ledger.total_exposure,
            "exposure_per_market": dict(ledger.exposure_per_market),
            "kill_switch_active": ledger.kill_switch_active,
            "kill_switch_reason": ledger.kill_switch_reason,
            "last_reset_at": ledger.last_reset_at,
            "available_risk_budget": self.store.available_risk_budget(self.risk_config),
            "limits": {
                "max_daily_loss_usd": self.risk_config.max_daily_loss_usd,
                "max_open_positions": self.risk_config.max_open_positions,
                "max_exposure_per_market_usd": self.risk_config.max_exposure_per_market_usd,
            },
            "throttled": throttle.active,
            "throttled_until": throttle.active_until,
            "trading_allowed": not ledger.kill_switch_active and not throttle.active,
            "persist_failures": self.store.persist_failures,
            "audit_failures": self.audit.failed_writes,
        }

    def recent_audit_entries(
        self,
        limit: int = 20,
        event_type: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        """Most recent audit entries, newest first."""
        return self.audit.recent(limit=limit, event_type=event_type)

    def format_decision(self, decision: GateDecision) -> pd.DataFrame:
        """Format a gate decision for display.

        Returns:
            DataFrame with one row per check
        """
        return pd.DataFrame(
            [
                {"check": name, "passed": "Yes" if ok else "No"}
                for name, ok in decision.checks.to_dict().items()
            ]
        )

    def format_audit_entries(self, entries: List[AuditLogEntry]) -> pd.DataFrame:
        """Format audit entries for display.

        Returns:
            DataFrame indexed by timestamp (newest first)
        """
        columns = ["timestamp", "event_type", "actor", "action", "market_id", "pnl_impact"]
        if not entries:
            return pd.DataFrame(columns=columns)

        df = pd.DataFrame([{c: getattr(e, c) for c in columns} for e in entries])
        return df.set_index("timestamp")
