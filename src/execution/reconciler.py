"""Exposure reconciliation against the venue's open positions.

A process that crashed with open positions "forgets" them, so the
per-market cap check would under-count exposure after a restart. The
reconciler replaces the ledger's exposure map and position count with
what the venue reports.

Conflict rule: the venue is authoritative and the ledger is advisory.
Local-only changes since the last reconciliation are discarded, never
merged. Daily P&L and the kill-switch are not touched.

Failure rule: if the venue cannot be queried (error or timeout), the
ledger is left exactly as it was and the result says ``synced=False``.
A failed query is never read as "zero positions".
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from src.execution.venue import PositionSource, VenuePosition
from src.risk import audit as audit_events
from src.risk.ledger import EXPOSURE_EPSILON, LedgerStore, RiskLedger
from src.utils import events
from src.utils.events import EventBus
from src.utils.exceptions import VenueError
from src.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class SyncResult:
    """Outcome of one reconciliation.

    Attributes:
        synced: Whether the ledger now reflects the venue
        reason: Why synchronization did not happen (when synced is False)
        open_positions: Number of markets with exposure after the sync
        total_exposure: Sum of exposure after the sync
        markets: Markets with exposure after the sync
        exposure_per_market: market_id -> exposure after the sync
    """

    synced: bool
    reason: Optional[str] = None
    open_positions: int = 0
    total_exposure: float = 0.0
    markets: List[str] = field(default_factory=list)
    exposure_per_market: Dict[str, float] = field(default_factory=dict)


@dataclass
class SyncCheck:
    """Whether the ledger disagrees with the venue on position count."""

    needed: bool
    ledger_positions: int
    venue_positions: int
    reason: Optional[str] = None


def exposure_from_positions(positions: List[VenuePosition]) -> Dict[str, float]:
    """Sum ``shares * avg_entry_price`` per market, dropping empty markets."""
    exposure: Dict[str, float] = {}
    for position in positions:
        exposure[position.market_id] = exposure.get(position.market_id, 0.0) + position.cost_basis
    return {k: v for k, v in exposure.items() if v > EXPOSURE_EPSILON}


class ExposureReconciler:
    """Replaces ledger exposure with the venue's positions.

    Run once at process start, before any trade is admitted, and on demand
    from the operator console.

    Example:
        >>> reconciler = ExposureReconciler(store, HttpPositionSource(url))
        >>> result = reconciler.reconcile()
        >>> if not result.synced:
        ...     print(f"Reconciliation skipped: {result.reason}")
    """

    def __init__(
        self,
        store: LedgerStore,
        source: PositionSource,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        bus: Optional[EventBus] = None,
    ):
        """Initialize reconciler.

        Args:
            store: Ledger store to update
            source: Venue position source
            timeout: Seconds allowed for the venue query
            bus: Optional event bus for ``ledger.reconciled`` notifications
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.store = store
        self.source = source
        self.timeout = timeout
        self.bus = bus

    def _fetch(self) -> List[VenuePosition]:
        """Query the venue, enforcing ``timeout`` as a total deadline.

        The source also receives the timeout, but a source that ignores it
        (or a slow stream of bytes under a per-read socket timeout) must not
        hold up the caller.

        Raises:
            VenueError: If the deadline expires
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="venue-fetch")
        future = executor.submit(self.source.get_open_positions, timeout=self.timeout)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            raise VenueError(f"Venue query exceeded {self.timeout:g}s deadline") from None
        finally:
            executor.shutdown(wait=False)

    def reconcile(self, actor: str = audit_events.SYSTEM) -> SyncResult:
        """Synchronize ledger exposure with the venue.

        Returns:
            SyncResult; ``synced=False`` means the ledger was not touched
        """
        logger.info("Starting exposure reconciliation")

        try:
            positions = self._fetch()
        except Exception as e:
            logger.warning("Could not fetch venue positions, ledger left unchanged: %s", e)
            return SyncResult(synced=False, reason=f"Venue error: {e}")

        exposure = exposure_from_positions(positions)
        logger.info(
            "Venue reports %d positions across %d markets", len(positions), len(exposure)
        )

        before_holder: Dict[str, RiskLedger] = {}

        def _apply(ledger: RiskLedger) -> None:
            before_holder["ledger"] = ledger.copy()
            ledger.exposure_per_market = dict(exposure)
            ledger.open_position_count = len(exposure)

        def _audit(before: RiskLedger, after: RiskLedger) -> None:
            if not exposure and not before.exposure_per_market and before.open_position_count == 0:
                return
            action = (
                f"Reconciled with venue: {after.open_position_count} positions, "
                f"{after.total_exposure:.2f} USD exposure"
            )
            if not exposure:
                action = (
                    f"Venue reports no positions, ledger had {before.open_position_count}; "
                    "exposure reset to zero"
                )
            self.store.audit.record(
                audit_events.RECONCILE,
                actor,
                action,
                details={
                    "venue_position_count": len(positions),
                    "markets": sorted(exposure),
                },
                risk_state_before={
                    "open_position_count": before.open_position_count,
                    "exposure_per_market": dict(before.exposure_per_market),
                },
                risk_state_after={
                    "open_position_count": after.open_position_count,
                    "exposure_per_market": dict(after.exposure_per_market),
                },
            )

        ledger = self.store.mutate(_apply, on_commit=_audit)
        before = before_holder["ledger"]

        if not exposure and before.open_position_count > 0:
            logger.warning(
                "Ledger had %d open positions but venue reports none, reset to zero",
                before.open_position_count,
            )

        result = SyncResult(
            synced=True,
            open_positions=ledger.open_position_count,
            total_exposure=ledger.total_exposure,
            markets=sorted(ledger.exposure_per_market),
            exposure_per_market=dict(ledger.exposure_per_market),
        )

        log_with_context(
            logger,
            "info",
            "Reconciliation complete",
            positions_before=before.open_position_count,
            positions_after=result.open_positions,
            total_exposure=f"{result.total_exposure:.2f}",
        )

        if self.bus is not None:
            self.bus.publish(events.LEDGER_RECONCILED, result)
        return result

    def check_sync_needed(self) -> SyncCheck:
        """Compare ledger position count with distinct venue markets.

        Read-only; never modifies the ledger.
        """
        ledger_positions = self.store.load().open_position_count

        try:
            positions = self._fetch()
        except Exception as e:
            logger.warning("Venue unreachable during sync check: %s", e)
            return SyncCheck(
                needed=False,
                ledger_positions=ledger_positions,
                venue_positions=-1,
                reason=f"Venue unreachable: {e}",
            )

        venue_positions = len(exposure_from_positions(positions))
        if venue_positions != ledger_positions:
            return SyncCheck(
                needed=True,
                ledger_positions=ledger_positions,
                venue_positions=venue_positions,
                reason=f"Ledger shows {ledger_positions}, venue shows {venue_positions} positions",
            )

        return SyncCheck(
            needed=False,
            ledger_positions=ledger_positions,
            venue_positions=venue_positions,
        )
