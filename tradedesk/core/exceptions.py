"""Exception hierarchy for TradeDesk.

Every error raised on purpose by the decision and reconciliation core
derives from TradeDeskError so loop-level handlers can tell expected
failure modes apart from programming errors.
"""


class TradeDeskError(Exception):
    """Base class for all TradeDesk errors."""


class DataIntegrityError(TradeDeskError):
    """Raised when market data violates basic OHLC or price sanity rules.

    Fatal for the evaluation that hit it, never for the process.
    """


class SourceUnavailableError(TradeDeskError):
    """Raised when an external oracle (predictor, market data) times out or fails."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class SubmissionError(TradeDeskError):
    """Raised when a venue rejects or fails to acknowledge an order."""

    def __init__(self, venue: str, instrument: str, message: str):
        self.venue = venue
        self.instrument = instrument
        super().__init__(f"{venue}/{instrument}: {message}")


class PositionStateError(TradeDeskError):
    """Raised on an illegal position lifecycle mutation."""


class UnknownVenueError(TradeDeskError):
    """Raised when dispatching to a venue that has no registration."""


class ConfigurationError(TradeDeskError):
    """Raised when the venue registry or settings are inconsistent."""
