"""Exit decision arbitration for open positions.

Signals are evaluated in strict precedence and the first one that decides
wins:

1. Global close-all override
2. Manual exit flag on the position
3. Stop-loss / take-profit price breach (checked even for disabled venues)
4. Venue disabled for predictive evaluation: hold
5. The venue strategy's own recommendation, unless it reports that its
   evaluation failed, in which case it is discarded
"""
from decimal import Decimal
from typing import Optional

import structlog

from tradedesk.core.models import ExitDecision, Position, PositionDirection, Urgency
from tradedesk.strategies.platform_manager import VenueRegistry

logger = structlog.get_logger(__name__)


def check_price_thresholds(position: Position, current_price: Decimal) -> Optional[ExitDecision]:
    """Deterministic stop-loss / take-profit check.

    Returns:
        An exit decision if a threshold is breached, otherwise None
    """
    sl = position.stop_loss_price
    tp = position.take_profit_price
    metadata = {"current_price": str(current_price)}

    if position.direction == PositionDirection.SHORT:
        sl_hit = sl is not None and current_price >= sl
        tp_hit = tp is not None and current_price <= tp
    else:
        sl_hit = sl is not None and current_price <= sl
        tp_hit = tp is not None and current_price >= tp

    if sl_hit:
        return ExitDecision.exit(
            f"Stop loss hit: price {current_price} crossed {sl}",
            confidence=1.0,
            urgency=Urgency.HIGH,
            metadata=metadata,
        )
    if tp_hit:
        return ExitDecision.exit(
            f"Take profit hit: price {current_price} crossed {tp}",
            confidence=1.0,
            urgency=Urgency.HIGH,
            metadata=metadata,
        )
    return None


class ExitDecisionArbiter:
    """Combines manual, deterministic and predictive exit signals."""

    def __init__(self, registry: VenueRegistry):
        self.registry = registry

    async def evaluate_exit(
        self,
        position: Position,
        current_price: Optional[Decimal] = None,
        close_all: bool = False,
    ) -> ExitDecision:
        """Return a single exit decision for an open position.

        Args:
            position: Position snapshot
            current_price: Latest mark; falls back to the position's last mark
            close_all: Global sweep override

        Returns:
            ExitDecision with a reason in every case
        """
        if close_all:
            return ExitDecision.exit("Close all positions requested", urgency=Urgency.HIGH)

        if position.exit_flag:
            return ExitDecision.exit("Manual exit requested", urgency=Urgency.HIGH)

        price = current_price if current_price is not None else position.current_price
        if price is not None:
            breach = check_price_thresholds(position, price)
            if breach is not None:
                return breach

        registration = self.registry.get(position.venue)
        if not registration.params.enabled:
            return ExitDecision.hold(
                f"Venue {position.venue} not enabled for predictive evaluation",
                confidence=0.0,
            )

        try:
            decision = await registration.strategy.should_exit(position, registration.params)
        except Exception as e:
            logger.warning(
                "exit_arbiter.strategy_failed",
                position_id=position.id,
                venue=position.venue,
                error=str(e),
            )
            decision = ExitDecision.evaluation_failure(e)

        if decision.is_evaluation_failure:
            logger.warning(
                "exit_arbiter.evaluation_discarded",
                position_id=position.id,
                instrument=position.instrument,
                error=decision.metadata.get("error"),
            )
            return ExitDecision.hold(
                "Exit evaluation failed, recommendation discarded",
                confidence=0.0,
                metadata=decision.metadata,
            )

        return decision
