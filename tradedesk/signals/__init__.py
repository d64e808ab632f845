"""Entry timing signals derived from predictive trends and candle windows."""

from tradedesk.signals.entry_timing import EntryTimingEvaluator
from tradedesk.signals.extreme_tracker import ExtremeTracker, compute_extreme

__all__ = [
    "EntryTimingEvaluator",
    "ExtremeTracker",
    "compute_extreme",
]
