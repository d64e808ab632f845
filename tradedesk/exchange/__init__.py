"""Exchange integration module for TradeDesk."""

from tradedesk.exchange.ccxt_venue import CcxtVenue
from tradedesk.exchange.event_stream import ConnectionState, FillEventStream
from tradedesk.exchange.retry import RetryConfig, retry_call, with_retry
from tradedesk.exchange.token_discovery import TokenDiscovery

__all__ = [
    "CcxtVenue",
    "ConnectionState",
    "FillEventStream",
    "RetryConfig",
    "TokenDiscovery",
    "retry_call",
    "with_retry",
]
