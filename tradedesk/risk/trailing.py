"""Trailing stop-loss / take-profit adjustment.

Once price has covered most of the way to take-profit, both levels are
moved along with price, provided the predictive service still expects
the move to continue.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

import structlog

from tradedesk.core.config import TrailingConfig
from tradedesk.core.interfaces import SignalSource
from tradedesk.core.models import (
    Position, PositionDirection, PredictionHorizon, Recommendation,
    TrailingEvaluation, utc_now,
)

logger = structlog.get_logger(__name__)


def progress_to_take_profit(
    direction: PositionDirection,
    current_price: Decimal,
    entry_price: Decimal,
    take_profit_price: Decimal,
) -> float:
    """Fraction of the entry-to-target distance already covered (0 if no target)."""
    if direction == PositionDirection.SHORT:
        move = entry_price - current_price
        target = entry_price - take_profit_price
    else:
        move = current_price - entry_price
        target = take_profit_price - entry_price
    return float(move / target) if target > 0 else 0.0


def validate_trailing_prices(
    direction: PositionDirection,
    current_price: Decimal,
    stop_loss: Decimal,
    take_profit: Decimal,
) -> Optional[str]:
    """Check SL/TP ordering around the current price.

    Returns:
        A failure reason, or None when the ordering holds
    """
    if direction == PositionDirection.SHORT:
        if stop_loss <= current_price:
            return f"SHORT SL ({stop_loss:.4f}) must be above current ({current_price:.4f})"
        if take_profit >= current_price:
            return f"SHORT TP ({take_profit:.4f}) must be below current ({current_price:.4f})"
    else:
        if stop_loss >= current_price:
            return f"LONG SL ({stop_loss:.4f}) must be below current ({current_price:.4f})"
        if take_profit <= current_price:
            return f"LONG TP ({take_profit:.4f}) must be above current ({current_price:.4f})"
    return None


class TrailingAdjuster:
    """Evaluates whether an open position's SL/TP should trail price."""

    def __init__(self, signals: SignalSource, config: Optional[TrailingConfig] = None):
        self.signals = signals
        self.config = config or TrailingConfig()

    async def evaluate_trailing(
        self,
        position: Position,
        current_price: Decimal,
        now: Optional[datetime] = None,
    ) -> TrailingEvaluation:
        """Decide whether to trail and compute the new levels.

        Args:
            position: Open position snapshot
            current_price: Latest mark price
            now: Reference time for the rate limit

        Returns:
            TrailingEvaluation; never mutates the position
        """
        cfg = self.config
        if not position.entry_price or not position.take_profit_price:
            return TrailingEvaluation.skip("Missing entry or take profit price")
        if current_price is None or current_price <= 0:
            return TrailingEvaluation.skip("Invalid current price")

        direction = position.direction or PositionDirection.LONG
        progress = progress_to_take_profit(
            direction, current_price, position.entry_price, position.take_profit_price
        )
        if progress < cfg.activation_ratio:
            return TrailingEvaluation.skip(
                f"Progress to TP ({progress * 100:.1f}%) below activation threshold "
                f"({cfg.activation_ratio * 100:.1f}%)",
                progress,
            )

        if position.last_trail_at is not None:
            elapsed_ms = ((now or utc_now()) - position.last_trail_at).total_seconds() * 1000
            if elapsed_ms < cfg.min_interval_ms:
                return TrailingEvaluation.skip(
                    f"Rate limited: {round(elapsed_ms / 1000)}s since last trail "
                    f"(min: {cfg.min_interval_ms / 1000:g}s)",
                    progress,
                )

        new_tp = self._offset(direction, current_price, cfg.tp_offset_percent, favorable=True)
        tp_change_pct = abs(new_tp - position.take_profit_price) / position.take_profit_price * 100
        if tp_change_pct < Decimal(str(cfg.movement_guard_percent)):
            return TrailingEvaluation.skip(
                f"TP movement too small ({tp_change_pct:.2f}% < {cfg.movement_guard_percent}%)",
                progress,
            )

        supported, detail = await self._check_continuation(position.instrument, direction)
        if not supported:
            return TrailingEvaluation.skip(f"AI does not support continuation: {detail}", progress)

        new_sl = self._offset(direction, current_price, cfg.stop_offset_percent, favorable=False)
        failure = validate_trailing_prices(direction, current_price, new_sl, new_tp)
        if failure is not None:
            logger.warning(
                "trailing.validation_failed",
                position_id=position.id,
                reason=failure,
            )
            return TrailingEvaluation.skip(f"Price validation failed: {failure}", progress)

        return TrailingEvaluation(
            should_trail=True,
            reason=f"Trailing activated: progress={progress * 100:.1f}%, AI={detail}",
            progress_to_tp=progress,
            new_stop_loss_price=new_sl,
            new_take_profit_price=new_tp,
        )

    @staticmethod
    def _offset(
        direction: PositionDirection, price: Decimal, percent: float, favorable: bool
    ) -> Decimal:
        factor = Decimal(str(percent)) / 100
        upward = (direction == PositionDirection.LONG) == favorable
        return price * (1 + factor) if upward else price * (1 - factor)

    async def _check_continuation(
        self, instrument: str, direction: PositionDirection
    ) -> Tuple[bool, str]:
        try:
            prediction = await self.signals.get_recommendation(
                instrument, PredictionHorizon.ONE_HOUR
            )
        except Exception as e:
            logger.warning("trailing.continuation_check_failed", instrument=instrument, error=str(e))
            return False, f"AI check failed: {e}"

        if prediction is None:
            return False, "No AI prediction available"

        floor = self.config.predictor_min_confidence
        if prediction.confidence < floor:
            return False, f"AI confidence ({prediction.confidence:.2f}) below threshold ({floor})"

        if direction == PositionDirection.LONG:
            aligned = (
                prediction.recommendation == Recommendation.BUY
                or prediction.percentage_change > 0
            )
        else:
            aligned = (
                prediction.recommendation == Recommendation.SELL
                or prediction.percentage_change < 0
            )
        if not aligned:
            return False, (
                f"AI {prediction.recommendation.value} does not align with "
                f"{direction.value} position"
            )
        return True, f"AI {prediction.recommendation.value} with {prediction.confidence:.2f} confidence"
