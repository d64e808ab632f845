"""Venue registry and cross-venue opportunity ranking."""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

from tradedesk.core.exceptions import ConfigurationError, UnknownVenueError
from tradedesk.core.interfaces import ExecutionVenue, MarketDataSource
from tradedesk.core.models import Opportunity, VenueTradingParams
from tradedesk.positions.store import PositionStore
from tradedesk.strategies.base import VenueStrategy

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VenueRegistration:
    """Everything wired up for one venue."""
    venue: str
    strategy: VenueStrategy
    execution: ExecutionVenue
    params: VenueTradingParams
    market_data: MarketDataSource
    event_stream: Optional[Any] = None


class VenueRegistry:
    """Immutable venue-key to registration mapping, built once at startup."""

    def __init__(self, registrations: Iterable[VenueRegistration]):
        entries: Dict[str, VenueRegistration] = {}
        for registration in registrations:
            if registration.venue in entries:
                raise ConfigurationError(f"Venue {registration.venue} registered twice")
            if registration.params.venue != registration.venue:
                raise ConfigurationError(
                    f"Venue {registration.venue} has params for {registration.params.venue}"
                )
            if registration.strategy.venue != registration.venue:
                raise ConfigurationError(
                    f"Venue {registration.venue} has a strategy for {registration.strategy.venue}"
                )
            entries[registration.venue] = registration
        self._entries: Mapping[str, VenueRegistration] = MappingProxyType(entries)

    def get(self, venue: str) -> VenueRegistration:
        try:
            return self._entries[venue]
        except KeyError:
            raise UnknownVenueError(f"Unknown venue: {venue}") from None

    @property
    def venues(self) -> List[str]:
        return list(self._entries)

    def enabled(self) -> List[VenueRegistration]:
        return [r for r in self._entries.values() if r.params.enabled]

    def __contains__(self, venue: str) -> bool:
        return venue in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class PlatformManager:
    """Scans every enabled venue and ranks the resulting opportunities.

    Instruments already held on the same venue are skipped. With
    cross-venue rebuy prevention on, an instrument held on any venue is
    skipped everywhere.
    """

    def __init__(
        self,
        registry: VenueRegistry,
        store: PositionStore,
        cross_venue_rebuy_prevention: bool = True,
    ):
        self.registry = registry
        self.store = store
        self.cross_venue_rebuy_prevention = cross_venue_rebuy_prevention

    async def scan_for_opportunities(self) -> List[Opportunity]:
        """Collect trade-worthy decisions from all enabled venues.

        Returns:
            Opportunities ordered by venue priority, then confidence,
            highest first
        """
        active = self.store.active_positions()
        held_anywhere = {p.instrument for p in active}

        opportunities: List[Opportunity] = []
        for registration in self.registry.enabled():
            venue = registration.venue
            try:
                instruments = await registration.strategy.discover_instruments()
            except Exception as e:
                logger.error("platform.discovery_failed", venue=venue, error=str(e))
                continue

            held_here = {p.instrument for p in active if p.venue == venue}
            for instrument in instruments:
                if instrument in held_here:
                    logger.debug("platform.skip_held", venue=venue, instrument=instrument)
                    continue
                if self.cross_venue_rebuy_prevention and instrument in held_anywhere:
                    logger.debug("platform.skip_cross_venue", venue=venue, instrument=instrument)
                    continue

                try:
                    decision = await registration.strategy.should_enter(
                        instrument, registration.params
                    )
                except Exception as e:
                    logger.error(
                        "platform.evaluation_failed",
                        venue=venue,
                        instrument=instrument,
                        error=str(e),
                    )
                    continue

                if decision.should_trade:
                    opportunities.append(
                        Opportunity(
                            venue=venue,
                            instrument=instrument,
                            decision=decision,
                            priority=registration.params.priority,
                        )
                    )
                else:
                    logger.debug(
                        "platform.no_trade",
                        venue=venue,
                        instrument=instrument,
                        reason=decision.reason,
                    )

        opportunities.sort(key=lambda o: (-o.priority, -o.decision.confidence))
        logger.info("platform.scan_complete", opportunities=len(opportunities))
        return opportunities
