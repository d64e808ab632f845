"""Position lifecycle store and fill reconciliation."""

from tradedesk.positions.reconciler import FillReconciler
from tradedesk.positions.store import PositionStore

__all__ = [
    "FillReconciler",
    "PositionStore",
]
