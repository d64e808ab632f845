"""Cached discovery of tradable instruments on a venue."""
import time
from decimal import Decimal
from typing import Callable, List

import structlog

from tradedesk.core.interfaces import ExecutionVenue, MarketDataSource

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 15 * 60
MAX_SPREAD_PCT = Decimal("10")


class TokenDiscovery:
    """Filters a venue's candidate universe down to active markets.

    A market is active when both sides of the book are quoted and the
    spread is under MAX_SPREAD_PCT of mid. A non-empty result is cached
    for CACHE_TTL_SECONDS.
    """

    def __init__(
        self,
        execution: ExecutionVenue,
        market_data: MarketDataSource,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.execution = execution
        self.market_data = market_data
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: List[str] = []
        self._fetched_at = 0.0

    async def get_active_instruments(self) -> List[str]:
        if self._cache and self._clock() - self._fetched_at < self.ttl_seconds:
            return list(self._cache)

        active = []
        for instrument in await self.execution.list_candidate_instruments():
            try:
                if await self.is_market_active(instrument):
                    active.append(instrument)
            except Exception as e:
                logger.warning(
                    "discovery.market_check_failed",
                    venue=self.execution.name,
                    instrument=instrument,
                    error=str(e),
                )

        self._cache = active
        self._fetched_at = self._clock()
        logger.info("discovery.refreshed", venue=self.execution.name, active=len(active))
        return list(active)

    async def is_market_active(self, instrument: str) -> bool:
        ticker = await self.market_data.get_ticker(instrument)
        if ticker.bid <= 0 or ticker.ask <= 0:
            return False
        return ticker.spread_pct < MAX_SPREAD_PCT

    def invalidate(self) -> None:
        self._cache = []
        self._fetched_at = 0.0
