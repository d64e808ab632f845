"""Pytest fixtures and fakes for the TradeDesk test suite."""
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from tradedesk.core.exceptions import SourceUnavailableError, SubmissionError
from tradedesk.core.interfaces import ExecutionVenue, MarketDataSource, SignalSource
from tradedesk.core.models import (
    Candle, ExitDecision, Fill, OrderHandle, OrderIntent, OrderSide, Position,
    PositionDirection, PositionStatus, Prediction, PredictionHorizon,
    Recommendation, Ticker, TradingDecision, TrendMap, TrendSignal, TrendStatus,
    VenueTradingParams,
)
from tradedesk.positions.reconciler import FillReconciler
from tradedesk.positions.store import PositionStore
from tradedesk.storage.database import Database
from tradedesk.strategies.base import VenueStrategy
from tradedesk.strategies.platform_manager import VenueRegistration, VenueRegistry

VENUE = "hyperliquid"


# =============================================================================
# Fakes
# =============================================================================

class FakeSignals(SignalSource):
    """In-memory predictive service."""

    def __init__(self):
        self.trends: Dict[str, TrendMap] = {}
        self.predictions: Dict[str, Optional[Prediction]] = {}
        self.error: Optional[Exception] = None
        self.recommendation_calls = 0

    def set_prediction(
        self,
        instrument: str,
        recommendation: Recommendation,
        confidence: float,
        percentage_change: float = 0.0,
    ) -> None:
        self.predictions[instrument] = Prediction(
            instrument=instrument,
            recommendation=recommendation,
            confidence=confidence,
            percentage_change=percentage_change,
        )

    async def get_trends(self, instrument: str) -> TrendMap:
        if self.error:
            raise self.error
        return self.trends.get(instrument, {})

    async def get_recommendation(
        self, instrument: str, horizon: PredictionHorizon = PredictionHorizon.ONE_HOUR
    ) -> Optional[Prediction]:
        self.recommendation_calls += 1
        if self.error:
            raise self.error
        return self.predictions.get(instrument)


class FakeVenue(ExecutionVenue, MarketDataSource):
    """In-memory venue that records submissions and hands out order ids."""

    def __init__(self, name: str = VENUE):
        self.name = name
        self.prices: Dict[str, Decimal] = {}
        self.tickers: Dict[str, Ticker] = {}
        self.candles: Dict[str, List[Candle]] = {}
        self.instruments: List[str] = []
        self.open_position_count = 0
        self.fail_submissions = False
        self.entries: List[dict] = []
        self.exits: List[Position] = []
        # Awaited with the client order id before a submission returns
        self.before_ack: Optional[Callable[[str], Awaitable[None]]] = None
        self._order_ids = itertools.count(1000)

    async def get_candles(self, instrument: str, lookback_minutes: int) -> List[Candle]:
        return self.candles.get(instrument, [])

    async def get_current_price(self, instrument: str) -> Decimal:
        if instrument not in self.prices:
            raise SourceUnavailableError(self.name, f"no price for {instrument}")
        return self.prices[instrument]

    async def get_ticker(self, instrument: str) -> Ticker:
        if instrument in self.tickers:
            return self.tickers[instrument]
        price = await self.get_current_price(instrument)
        return Ticker(instrument=instrument, bid=price, ask=price, mark=price)

    async def list_candidate_instruments(self) -> List[str]:
        return list(self.instruments)

    async def submit_entry(
        self,
        instrument,
        side,
        amount_in,
        leverage,
        stop_loss_price=None,
        take_profit_price=None,
        client_order_id=None,
    ) -> OrderHandle:
        if self.fail_submissions:
            raise SubmissionError(self.name, instrument, "insufficient margin")
        self.entries.append({
            "instrument": instrument,
            "side": side,
            "amount_in": amount_in,
            "leverage": leverage,
            "stop_loss_price": stop_loss_price,
            "take_profit_price": take_profit_price,
            "client_order_id": client_order_id,
        })
        if self.before_ack is not None:
            await self.before_ack(client_order_id)
        return OrderHandle(
            venue=self.name,
            instrument=instrument,
            order_id=str(next(self._order_ids)),
            side=side,
            client_order_id=client_order_id,
        )

    async def submit_exit(self, position, client_order_id=None) -> OrderHandle:
        if self.fail_submissions:
            raise SubmissionError(self.name, position.instrument, "venue unavailable")
        self.exits.append(position)
        if self.before_ack is not None:
            await self.before_ack(client_order_id)
        return OrderHandle(
            venue=self.name,
            instrument=position.instrument,
            order_id=str(next(self._order_ids)),
            side=OrderSide.SELL if position.is_long else OrderSide.BUY,
            client_order_id=client_order_id,
        )

    async def get_open_position_count(self) -> int:
        return self.open_position_count


class FakeStrategy(VenueStrategy):
    """Strategy returning canned decisions."""

    def __init__(self, venue: str = VENUE):
        super().__init__(venue)
        self.instruments: List[str] = []
        self.decisions: Dict[str, TradingDecision] = {}
        self.exit_decision: Optional[ExitDecision] = None
        self.exit_calls = 0
        self.entry_calls: List[str] = []

    async def discover_instruments(self) -> List[str]:
        return list(self.instruments)

    async def should_enter(self, instrument, params) -> TradingDecision:
        self.entry_calls.append(instrument)
        return self.decisions.get(instrument) or TradingDecision.no_trade("no signal")

    async def should_exit(self, position, params) -> ExitDecision:
        self.exit_calls += 1
        return self.exit_decision or ExitDecision.hold("Position within acceptable range")


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def trading_params():
    """Venue parameters with round numbers."""
    return VenueTradingParams(
        venue=VENUE,
        enabled=True,
        priority=1,
        max_open_positions=3,
        default_amount_in=100_000_000,
        stop_loss_percent=10.0,
        take_profit_percent=20.0,
        default_leverage=3,
    )


@pytest.fixture
def make_position():
    """Factory for positions in any lifecycle state."""

    def _make(
        instrument: str = "BTC",
        direction: PositionDirection = PositionDirection.LONG,
        status: PositionStatus = PositionStatus.OPEN,
        entry_price: Decimal = Decimal("50000"),
        size: Decimal = Decimal("1"),
        venue: str = VENUE,
        **kwargs,
    ) -> Position:
        fields = dict(
            venue=venue,
            instrument=instrument,
            direction=direction,
            amount_in=100_000_000,
        )
        if status == PositionStatus.OPEN:
            fields.update(
                status=PositionStatus.OPEN,
                filled_size=size,
                remaining_size=size,
                entry_price=entry_price,
                opened_at=datetime.now(timezone.utc),
            )
        elif status == PositionStatus.CLOSED:
            fields.update(status=PositionStatus.CLOSED)
        fields.update(kwargs)
        return Position(**fields)

    return _make


@pytest.fixture
def make_fill():
    """Factory for venue fills."""
    counter = itertools.count(1)

    def _make(
        order_id: str = "1000",
        size: str = "1",
        price: str = "50000",
        side: OrderSide = OrderSide.BUY,
        realized_pnl: Optional[str] = None,
        fill_id: Optional[str] = None,
        instrument: str = "BTC",
        venue: str = VENUE,
        client_order_id: Optional[str] = None,
        intent: Optional[OrderIntent] = None,
    ) -> Fill:
        return Fill(
            fill_id=fill_id or f"tid-{next(counter)}",
            order_id=order_id,
            venue=venue,
            instrument=instrument,
            side=side,
            size=Decimal(size),
            price=Decimal(price),
            realized_pnl=Decimal(realized_pnl) if realized_pnl is not None else None,
            client_order_id=client_order_id,
            intent=intent,
        )

    return _make


def trend(status: TrendStatus, change_pct: float = 0.0, price: str = "100", ma: str = "100") -> TrendSignal:
    return TrendSignal(status=status, change_pct=change_pct, price=Decimal(price), ma=Decimal(ma))


@pytest.fixture
def make_trend():
    """Factory for defined trend signals."""
    return trend


@pytest.fixture
def make_candles():
    """Factory for a window of valid 1-minute candles ending now."""

    def _make(lows: List[str], highs: Optional[List[str]] = None, end: Optional[datetime] = None) -> List[Candle]:
        end = end or datetime.now(timezone.utc)
        highs = highs or [str(Decimal(low) * 2) for low in lows]
        candles = []
        for i, (low, high) in enumerate(zip(lows, highs)):
            low_d, high_d = Decimal(low), Decimal(high)
            mid = (low_d + high_d) / 2
            candles.append(Candle(
                timestamp=end - timedelta(minutes=len(lows) - 1 - i),
                open=mid,
                high=high_d,
                low=low_d,
                close=mid,
            ))
        return candles

    return _make


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def fake_signals():
    return FakeSignals()


@pytest.fixture
def fake_venue():
    return FakeVenue()


@pytest.fixture
def fake_strategy():
    return FakeStrategy()


@pytest.fixture
def registry(fake_strategy, fake_venue, trading_params):
    """Single-venue registry wired to the fakes."""
    return VenueRegistry([
        VenueRegistration(
            venue=VENUE,
            strategy=fake_strategy,
            execution=fake_venue,
            params=trading_params,
            market_data=fake_venue,
        )
    ])


@pytest.fixture
def store():
    """Purely in-memory position store."""
    return PositionStore()


@pytest_asyncio.fixture
async def reconciler(store):
    reconciler = FillReconciler(store)
    yield reconciler
    await reconciler.stop()


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


def pytest_collection_modifyitems(config, items):
    """Add the unit marker to anything not marked integration."""
    for item in items:
        if not any(marker.name in ["unit", "integration"] for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)
