"""Unit tests for the predictive perpetuals strategy."""
from decimal import Decimal

import pytest

from tradedesk.core.config import EntryTimingConfig
from tradedesk.core.exceptions import SourceUnavailableError
from tradedesk.core.models import (
    PositionDirection, Recommendation, Ticker, TrendStatus, TrendTimeframe, Urgency,
)
from tradedesk.exchange.token_discovery import TokenDiscovery
from tradedesk.signals.entry_timing import EntryTimingEvaluator
from tradedesk.strategies.base import stop_loss_price, take_profit_price
from tradedesk.strategies.predictive_perp import PredictivePerpStrategy


@pytest.fixture
def strategy(fake_signals, fake_venue):
    fake_venue.prices["BTC"] = Decimal("50000")
    return PredictivePerpStrategy(
        venue="hyperliquid",
        signals=fake_signals,
        market_data=fake_venue,
        execution=fake_venue,
        discovery=TokenDiscovery(fake_venue, fake_venue),
        entry_timing=EntryTimingEvaluator(EntryTimingConfig()),
        min_confidence=0.6,
    )


def _set_trends(fake_signals, primary, short=None):
    trends = {TrendTimeframe.ONE_HOUR: primary}
    if short is not None:
        trends[TrendTimeframe.FIVE_MIN] = short
    fake_signals.trends["BTC"] = trends


class TestRiskPrices:
    """Test SL/TP helpers."""

    def test_long_levels(self):
        assert stop_loss_price(PositionDirection.LONG, Decimal("100"), 15) == Decimal("85")
        assert take_profit_price(PositionDirection.LONG, Decimal("100"), 25) == Decimal("125")

    def test_short_levels(self):
        assert stop_loss_price(PositionDirection.SHORT, Decimal("100"), 15) == Decimal("115")
        assert take_profit_price(PositionDirection.SHORT, Decimal("100"), 25) == Decimal("75")


class TestEntryGates:
    """Test checks that reject before any signal is combined."""

    @pytest.mark.asyncio
    async def test_disabled_venue(self, strategy, trading_params):
        params = trading_params.model_copy(update={"enabled": False})

        decision = await strategy.should_enter("BTC", params)

        assert decision.should_trade is False
        assert decision.reason == "hyperliquid trading is disabled"

    @pytest.mark.asyncio
    async def test_venue_cap_reached(self, strategy, fake_venue, fake_signals, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.BUY, 0.9)
        fake_venue.open_position_count = 3

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert decision.reason == "Maximum positions reached (3/3)"

    @pytest.mark.asyncio
    async def test_low_ai_confidence(self, strategy, fake_signals, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.BUY, 0.5)

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert "below threshold" in decision.reason

    @pytest.mark.asyncio
    async def test_hold_recommendation(self, strategy, fake_signals, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.HOLD, 0.9)

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert decision.reason == "AI recommends HOLD"


class TestPredictiveEntry:
    """Test combining the recommendation with entry timing."""

    @pytest.mark.asyncio
    async def test_approved_after_reversal(self, strategy, fake_signals, make_trend, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.BUY, 0.8)
        _set_trends(fake_signals, make_trend(TrendStatus.UP, 2.0), make_trend(TrendStatus.UP, 3.5))

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is True
        assert decision.direction == PositionDirection.LONG
        assert decision.reason.startswith("AI: BUY (0.80), Timing:")
        # Capped by the weaker of the two signals
        assert decision.confidence == pytest.approx(0.8)
        assert decision.recommended_amount == 100_000_000
        assert decision.leverage == 3
        assert decision.metadata["entry_timing"]["timing"] == "reversal_detected"

    @pytest.mark.asyncio
    async def test_timing_unavailable_uses_ai_alone(self, strategy, fake_signals, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.SELL, 0.75)

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is True
        assert decision.direction == PositionDirection.SHORT
        assert decision.confidence == 0.75
        assert "timing unavailable" in decision.reason

    @pytest.mark.asyncio
    async def test_direction_mismatch(self, strategy, fake_signals, make_trend, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.BUY, 0.8)
        _set_trends(fake_signals, make_trend(TrendStatus.DOWN, -2.0), make_trend(TrendStatus.DOWN, -0.5))

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert decision.reason.startswith("Direction mismatch")
        assert decision.confidence == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_waits_for_correction(self, strategy, fake_signals, make_trend, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.BUY, 0.8)
        _set_trends(fake_signals, make_trend(TrendStatus.UP, 2.0), make_trend(TrendStatus.DOWN, -0.8))

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert decision.reason.startswith("Entry timing:")
        assert decision.confidence == pytest.approx(0.48)

    @pytest.mark.asyncio
    async def test_ai_too_close_to_threshold(self, strategy, fake_signals, make_trend, trading_params):
        """Strong timing cannot carry an AI signal just over the floor."""
        fake_signals.set_prediction("BTC", Recommendation.BUY, 0.62)
        _set_trends(fake_signals, make_trend(TrendStatus.UP, 2.0), make_trend(TrendStatus.UP, 3.5))

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert "too close to threshold" in decision.reason


class TestMomentumFallback:
    """Test entry without a recommendation."""

    @pytest.mark.asyncio
    async def test_momentum_up(self, strategy, fake_venue, trading_params):
        fake_venue.tickers["BTC"] = Ticker(
            instrument="BTC", bid=Decimal("99.9"), ask=Decimal("100.1"), mark=Decimal("100.05")
        )

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is True
        assert decision.direction == PositionDirection.LONG
        assert decision.confidence == 0.5

    @pytest.mark.asyncio
    async def test_spread_too_wide(self, strategy, fake_venue, trading_params):
        fake_venue.tickers["BTC"] = Ticker(
            instrument="BTC", bid=Decimal("99"), ask=Decimal("101"), mark=Decimal("100")
        )

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert decision.reason.startswith("Spread too wide")

    @pytest.mark.asyncio
    async def test_invalid_ticker(self, strategy, fake_venue, trading_params):
        fake_venue.tickers["BTC"] = Ticker(
            instrument="BTC", bid=Decimal("0"), ask=Decimal("100"), mark=Decimal("100")
        )

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is False
        assert decision.reason.startswith("Invalid ticker prices")

    @pytest.mark.asyncio
    async def test_predictor_outage_falls_back(self, strategy, fake_signals, trading_params):
        fake_signals.error = SourceUnavailableError("predictor", "timeout")

        decision = await strategy.should_enter("BTC", trading_params)

        assert decision.should_trade is True
        assert decision.confidence == 0.5

    @pytest.mark.asyncio
    async def test_market_data_failure_is_no_trade(self, strategy, trading_params):
        decision = await strategy.should_enter("ETH", trading_params)

        assert decision.should_trade is False
        assert decision.reason.startswith("Error evaluating position")


class TestExitEvaluation:
    """Test should_exit."""

    @pytest.mark.asyncio
    async def test_stop_loss(self, strategy, fake_venue, make_position, trading_params):
        fake_venue.prices["BTC"] = Decimal("44000")

        decision = await strategy.should_exit(make_position(), trading_params)

        assert decision.should_exit is True
        assert decision.reason.startswith("Stop loss triggered")
        assert decision.urgency == Urgency.HIGH

    @pytest.mark.asyncio
    async def test_take_profit(self, strategy, fake_venue, make_position, trading_params):
        fake_venue.prices["BTC"] = Decimal("61000")

        decision = await strategy.should_exit(make_position(), trading_params)

        assert decision.should_exit is True
        assert decision.reason.startswith("Take profit triggered")

    @pytest.mark.asyncio
    async def test_opposite_recommendation(self, strategy, fake_signals, make_position, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.SELL, 0.9)

        decision = await strategy.should_exit(make_position(), trading_params)

        assert decision.should_exit is True
        assert decision.reason == "AI recommends opposite direction (SELL)"
        assert decision.urgency == Urgency.HIGH

    @pytest.mark.asyncio
    async def test_adverse_move_predicted(self, strategy, fake_signals, make_position, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.HOLD, 0.8, -6.0)

        decision = await strategy.should_exit(make_position(), trading_params)

        assert decision.should_exit is True
        assert decision.reason.startswith("AI predicts adverse movement")

    @pytest.mark.asyncio
    async def test_hold_in_range(self, strategy, fake_signals, make_position, trading_params):
        fake_signals.set_prediction("BTC", Recommendation.BUY, 0.9)

        decision = await strategy.should_exit(make_position(), trading_params)

        assert decision.should_exit is False
        assert decision.reason == "Position within acceptable range"

    @pytest.mark.asyncio
    async def test_failure_reported_not_raised(self, strategy, make_position, trading_params):
        decision = await strategy.should_exit(make_position(instrument="ETH"), trading_params)

        assert decision.should_exit is False
        assert decision.is_evaluation_failure
