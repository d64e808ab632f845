"""Risk module for TradeDesk.

- Exit decision arbitration (manual flag, SL/TP breach, predictive exit)
- Trailing stop-loss / take-profit adjustment
"""

from tradedesk.risk.exit_arbiter import ExitDecisionArbiter, check_price_thresholds
from tradedesk.risk.trailing import TrailingAdjuster

__all__ = [
    'ExitDecisionArbiter',
    'TrailingAdjuster',
    'check_price_thresholds',
]
