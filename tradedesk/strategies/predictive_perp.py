"""Perpetual-futures strategy driven by the predictive service.

Entries need a confident BUY/SELL recommendation confirmed by
multi-timeframe entry timing. Without a recommendation the strategy falls
back to a ticker momentum check at reduced confidence.
"""
from decimal import Decimal
from typing import List, Optional

from tradedesk.core.exceptions import TradeDeskError
from tradedesk.core.interfaces import ExecutionVenue, MarketDataSource, SignalSource
from tradedesk.core.models import (
    EntryTimingResult, ExitDecision, Position, PositionDirection, Prediction,
    PredictionHorizon, Recommendation, TradingDecision, TrendTimeframe, Urgency,
    VenueTradingParams,
)
from tradedesk.exchange.token_discovery import TokenDiscovery
from tradedesk.signals.entry_timing import EntryTimingEvaluator
from tradedesk.strategies.base import VenueStrategy

# Minimum margin of AI confidence over the floor when timing looks strong
AI_BUFFER = 0.05
STRONG_TIMING = 0.75
MAX_MOMENTUM_SPREAD = Decimal("0.005")
MOMENTUM_CONFIDENCE = 0.5
ADVERSE_MOVE_PCT = 5.0


def _ai_metadata(prediction: Prediction) -> dict:
    return {
        "recommendation": prediction.recommendation.value,
        "predicted_change": prediction.percentage_change,
        "confidence": prediction.confidence,
    }


def _timing_metadata(timing: EntryTimingResult) -> dict:
    return {
        "timing": timing.timing.value,
        "timing_confidence": timing.confidence,
        "reason": timing.reason,
        **timing.metadata.model_dump(mode="json"),
    }


class PredictivePerpStrategy(VenueStrategy):
    """Entry/exit decisions for a perpetuals venue."""

    def __init__(
        self,
        venue: str,
        signals: SignalSource,
        market_data: MarketDataSource,
        execution: ExecutionVenue,
        discovery: TokenDiscovery,
        entry_timing: EntryTimingEvaluator,
        min_confidence: float = 0.6,
    ):
        super().__init__(venue)
        self.signals = signals
        self.market_data = market_data
        self.execution = execution
        self.discovery = discovery
        self.entry_timing = entry_timing
        self.min_confidence = min_confidence

    async def discover_instruments(self) -> List[str]:
        return await self.discovery.get_active_instruments()

    async def _prediction(self, instrument: str) -> Optional[Prediction]:
        try:
            return await self.signals.get_recommendation(instrument, PredictionHorizon.ONE_HOUR)
        except TradeDeskError as e:
            self.logger.warning("strategy.prediction_unavailable", instrument=instrument, error=str(e))
            return None

    # Entry

    async def should_enter(self, instrument: str, params: VenueTradingParams) -> TradingDecision:
        if not params.enabled:
            return TradingDecision.no_trade(f"{self.venue} trading is disabled")

        try:
            prediction = await self._prediction(instrument)

            open_count = await self.execution.get_open_position_count()
            if open_count >= params.max_open_positions:
                return TradingDecision.no_trade(
                    f"Maximum positions reached ({open_count}/{params.max_open_positions})"
                )

            if prediction is not None:
                return await self._enter_on_prediction(instrument, prediction, params)
            return await self._enter_on_momentum(instrument, params)
        except Exception as e:
            self.logger.error("strategy.entry_evaluation_failed", instrument=instrument, error=str(e))
            return TradingDecision.no_trade(f"Error evaluating position: {e}")

    async def _enter_on_prediction(
        self, instrument: str, prediction: Prediction, params: VenueTradingParams
    ) -> TradingDecision:
        ai = prediction.confidence
        metadata = {"ai_prediction": _ai_metadata(prediction)}

        if ai < self.min_confidence:
            return TradingDecision.no_trade(
                f"AI confidence {ai:.2f} below threshold {self.min_confidence}",
                confidence=ai,
                direction=prediction.direction,
                metadata=metadata,
            )
        if prediction.recommendation == Recommendation.HOLD:
            return TradingDecision.no_trade("AI recommends HOLD", confidence=ai, metadata=metadata)

        direction = prediction.direction
        timing = await self._evaluate_timing(instrument)

        if timing is None:
            return TradingDecision.trade(
                f"AI recommends {prediction.recommendation.value} with {ai:.2f} "
                "confidence (timing unavailable)",
                confidence=ai,
                direction=direction,
                recommended_amount=params.default_amount_in,
                leverage=params.default_leverage,
                metadata=metadata,
            )

        metadata["entry_timing"] = _timing_metadata(timing)

        if timing.direction is not None and timing.direction != direction:
            self.logger.warning(
                "strategy.direction_mismatch",
                instrument=instrument,
                ai_direction=direction.value,
                trend_direction=timing.direction.value,
            )
            return TradingDecision.no_trade(
                f"Direction mismatch: AI says {direction.value}, trends say {timing.direction.value}",
                confidence=ai * 0.5,
                direction=direction,
                metadata=metadata,
            )

        if not timing.should_enter_now:
            self.logger.info("strategy.waiting_for_entry", instrument=instrument, reason=timing.reason)
            return TradingDecision.no_trade(
                f"Entry timing: {timing.reason}",
                confidence=ai * timing.confidence,
                direction=direction,
                metadata=metadata,
            )

        # Weighted average capped by the weaker signal so neither can mask the other
        weighted = ai * 0.7 + timing.confidence * 0.3
        combined = min(weighted, min(ai, timing.confidence))

        if ai - self.min_confidence < AI_BUFFER and timing.confidence > STRONG_TIMING:
            return TradingDecision.no_trade(
                f"AI confidence {ai:.2f} too close to threshold {self.min_confidence} "
                f"(need >={AI_BUFFER} buffer)",
                confidence=combined,
                direction=direction,
                metadata=metadata,
            )

        self.logger.info(
            "strategy.entry_approved",
            instrument=instrument,
            recommendation=prediction.recommendation.value,
            ai_confidence=round(ai, 4),
            timing=timing.timing.value,
            timing_confidence=timing.confidence,
            combined=round(combined, 4),
        )
        return TradingDecision.trade(
            f"AI: {prediction.recommendation.value} ({ai:.2f}), Timing: {timing.reason}",
            confidence=combined,
            direction=direction,
            recommended_amount=params.default_amount_in,
            leverage=params.default_leverage,
            metadata=metadata,
        )

    async def _evaluate_timing(self, instrument: str) -> Optional[EntryTimingResult]:
        try:
            trends = await self.signals.get_trends(instrument)
            if not trends:
                return None
            primary = trends.get(TrendTimeframe.ONE_HOUR)
            price = primary.price if primary is not None and primary.is_defined else None
            return await self.entry_timing.evaluate(instrument, trends, current_price=price)
        except Exception as e:
            self.logger.warning(
                "strategy.entry_timing_failed",
                instrument=instrument,
                error=str(e),
                fallback="ai_only",
            )
            return None

    async def _enter_on_momentum(
        self, instrument: str, params: VenueTradingParams
    ) -> TradingDecision:
        ticker = await self.market_data.get_ticker(instrument)
        if ticker.mark <= 0 or ticker.bid <= 0 or ticker.ask <= 0:
            return TradingDecision.no_trade(
                f"Invalid ticker prices (mark: {ticker.mark}, bid: {ticker.bid}, ask: {ticker.ask})"
            )

        spread = (ticker.ask - ticker.bid) / ticker.mark
        if spread > MAX_MOMENTUM_SPREAD:
            return TradingDecision.no_trade(f"Spread too wide ({spread * 100:.2f}%)", confidence=0.3)

        momentum = "UP" if ticker.mark > ticker.mid else "DOWN"
        direction = PositionDirection.LONG if momentum == "UP" else PositionDirection.SHORT
        return TradingDecision.trade(
            f"Market momentum {momentum}, entering {direction.value}",
            confidence=MOMENTUM_CONFIDENCE,
            direction=direction,
            recommended_amount=params.default_amount_in,
            leverage=params.default_leverage,
        )

    # Exit

    async def should_exit(self, position: Position, params: VenueTradingParams) -> ExitDecision:
        try:
            current_price = await self.market_data.get_current_price(position.instrument)
            pnl_pct = float(position.calculate_pnl_percentage(current_price))
            metadata = {
                "current_price": str(current_price),
                "entry_price": str(position.entry_price),
                "pnl_percent": pnl_pct,
            }

            if pnl_pct <= -params.stop_loss_percent:
                return ExitDecision.exit(
                    f"Stop loss triggered ({pnl_pct:.2f}%)",
                    confidence=1.0,
                    urgency=Urgency.HIGH,
                    metadata=metadata,
                )
            if pnl_pct >= params.take_profit_percent:
                return ExitDecision.exit(
                    f"Take profit triggered ({pnl_pct:.2f}%)",
                    confidence=0.9,
                    urgency=Urgency.MEDIUM,
                    metadata=metadata,
                )

            prediction = await self._prediction(position.instrument)
            if prediction is not None:
                decision = self._exit_on_prediction(position, prediction, metadata)
                if decision is not None:
                    return decision

            return ExitDecision.hold(
                "Position within acceptable range", confidence=0.5, metadata=metadata
            )
        except Exception as e:
            self.logger.error("strategy.exit_evaluation_failed", position_id=position.id, error=str(e))
            return ExitDecision.evaluation_failure(e)

    def _exit_on_prediction(
        self, position: Position, prediction: Prediction, metadata: dict
    ) -> Optional[ExitDecision]:
        ai_direction = prediction.direction
        if ai_direction is not None and ai_direction != position.direction:
            return ExitDecision.exit(
                f"AI recommends opposite direction ({prediction.recommendation.value})",
                confidence=prediction.confidence,
                urgency=Urgency.HIGH if prediction.confidence > 0.8 else Urgency.MEDIUM,
                metadata={**metadata, "ai_prediction": _ai_metadata(prediction)},
            )

        if prediction.recommendation == Recommendation.HOLD and prediction.percentage_change:
            change = prediction.percentage_change
            adverse = change < -ADVERSE_MOVE_PCT if position.is_long else change > ADVERSE_MOVE_PCT
            if adverse:
                return ExitDecision.exit(
                    f"AI predicts adverse movement ({change:.2f}%)",
                    confidence=prediction.confidence * 0.7,
                    urgency=Urgency.MEDIUM,
                    metadata={**metadata, "predicted_change": change},
                )
        return None
