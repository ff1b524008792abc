"""Execution Layer - Venue positions and exposure reconciliation.

Order placement itself happens outside the risk governor. This layer
only reads the venue's open positions so the ledger can be corrected
after a restart.
"""

from src.execution.reconciler import ExposureReconciler, SyncCheck, SyncResult
from src.execution.venue import HttpPositionSource, PositionSource, VenuePosition

__all__ = [
    # Abstract interface
    "PositionSource",
    # Concrete implementations
    "HttpPositionSource",
    "ExposureReconciler",
    # Data classes
    "VenuePosition",
    "SyncResult",
    "SyncCheck",
]
