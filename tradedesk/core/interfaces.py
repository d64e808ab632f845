"""Collaborator contracts consumed by the decision and reconciliation core.

Implementations live in tradedesk.exchange (venue execution and market
data) and tradedesk.oracles (predictive signals). Tests substitute
in-memory fakes or AsyncMocks.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from tradedesk.core.models import (
    Candle, OrderHandle, OrderSide, Position, Prediction, PredictionHorizon,
    Ticker, TrendMap,
)


class MarketDataSource(ABC):
    """Read-only candle and price feed."""

    @abstractmethod
    async def get_candles(self, instrument: str, lookback_minutes: int) -> List[Candle]:
        """Return 1-minute candles covering the lookback window, oldest first."""
        pass

    @abstractmethod
    async def get_current_price(self, instrument: str) -> Decimal:
        """Return the current mark price."""
        pass

    @abstractmethod
    async def get_ticker(self, instrument: str) -> Ticker:
        """Return the top of book."""
        pass


class SignalSource(ABC):
    """Predictive trend and recommendation oracle.

    Implementations raise SourceUnavailableError on timeout or transport
    failure; they never turn a failure into a recommendation.
    """

    @abstractmethod
    async def get_trends(self, instrument: str) -> TrendMap:
        """Return the per-timeframe trend map for an instrument."""
        pass

    @abstractmethod
    async def get_recommendation(
        self,
        instrument: str,
        horizon: PredictionHorizon = PredictionHorizon.ONE_HOUR,
    ) -> Optional[Prediction]:
        """Return a recommendation, or None if the service has none."""
        pass


class ExecutionVenue(ABC):
    """Order submission on one venue.

    Signing and authentication are the implementation's concern.
    """

    name: str

    @abstractmethod
    async def list_candidate_instruments(self) -> List[str]:
        """Return the instruments this venue can trade."""
        pass

    @abstractmethod
    async def submit_entry(
        self,
        instrument: str,
        side: OrderSide,
        amount_in: int,
        leverage: int,
        stop_loss_price: Optional[Decimal] = None,
        take_profit_price: Optional[Decimal] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderHandle:
        """Submit an opening order sized by quote amount.

        Raises:
            SubmissionError: If the venue rejects or never acknowledges it
        """
        pass

    @abstractmethod
    async def submit_exit(
        self, position: Position, client_order_id: Optional[str] = None
    ) -> OrderHandle:
        """Submit a reduce-only order closing the position's remaining size.

        Raises:
            SubmissionError: If the venue rejects or never acknowledges it
        """
        pass

    @abstractmethod
    async def get_open_position_count(self) -> int:
        """Number of non-zero positions the venue reports for the account."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass
