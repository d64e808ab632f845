"""Venue strategy capability interface."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List

import structlog

from tradedesk.core.models import (
    ExitDecision, Position, PositionDirection, TradingDecision, VenueTradingParams,
)

logger = structlog.get_logger(__name__)


def stop_loss_price(direction: PositionDirection, price: Decimal, percent: float) -> Decimal:
    """Stop-loss level `percent` away from price, against the position."""
    factor = Decimal(str(percent)) / 100
    if direction == PositionDirection.SHORT:
        return price * (1 + factor)
    return price * (1 - factor)


def take_profit_price(direction: PositionDirection, price: Decimal, percent: float) -> Decimal:
    """Take-profit level `percent` away from price, in the position's favor."""
    factor = Decimal(str(percent)) / 100
    if direction == PositionDirection.SHORT:
        return price * (1 - factor)
    return price * (1 + factor)


class VenueStrategy(ABC):
    """What the orchestrator needs from a venue: discovery, entry, exit, risk prices.

    One implementation per venue, looked up by the venue key in the
    VenueRegistry.
    """

    def __init__(self, venue: str):
        self.venue = venue
        self.logger = logger.bind(venue=venue)

    @abstractmethod
    async def discover_instruments(self) -> List[str]:
        """
        Return the instruments currently worth evaluating on this venue.
        """
        pass

    @abstractmethod
    async def should_enter(self, instrument: str, params: VenueTradingParams) -> TradingDecision:
        """
        Decide whether to open a position.

        Args:
            instrument: Instrument symbol
            params: Venue risk and sizing parameters

        Returns:
            TradingDecision carrying direction, amount and a reason
        """
        pass

    @abstractmethod
    async def should_exit(self, position: Position, params: VenueTradingParams) -> ExitDecision:
        """
        Decide whether to close an open position.

        Implementations report their own failures with
        ExitDecision.evaluation_failure instead of raising.
        """
        pass

    def get_stop_loss_price(
        self, direction: PositionDirection, price: Decimal, params: VenueTradingParams
    ) -> Decimal:
        return stop_loss_price(direction, price, params.stop_loss_percent)

    def get_take_profit_price(
        self, direction: PositionDirection, price: Decimal, params: VenueTradingParams
    ) -> Decimal:
        return take_profit_price(direction, price, params.take_profit_percent)
