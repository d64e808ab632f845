"""
Venue strategies for TradeDesk.

- VenueStrategy: capability interface every venue implements
- PredictivePerpStrategy: perpetuals strategy driven by the predictive service
- VenueRegistry / PlatformManager: venue wiring and opportunity ranking
"""

from tradedesk.strategies.base import VenueStrategy
from tradedesk.strategies.platform_manager import (
    PlatformManager,
    VenueRegistration,
    VenueRegistry,
)
from tradedesk.strategies.predictive_perp import PredictivePerpStrategy

__all__ = [
    "VenueStrategy",
    "PredictivePerpStrategy",
    "PlatformManager",
    "VenueRegistration",
    "VenueRegistry",
]
