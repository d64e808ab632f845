"""Adverse-excursion extreme tracking over a recent candle window.

For an upward bias the tracked extreme is the lowest low of the window
(how far price has already bounced off its recent floor); for a downward
bias it is the highest high. The retracement of the current price from
that extreme is the correction depth used by entry timing.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog

from tradedesk.core.exceptions import DataIntegrityError
from tradedesk.core.interfaces import MarketDataSource
from tradedesk.core.models import Candle, ExtremeResult, PositionDirection, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_LOOKBACK_MINUTES = 60
MIN_COVERAGE_RATIO = 0.5
MAX_STALENESS = timedelta(minutes=5)


def _as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def validate_window(
    candles: Sequence[Candle],
    expected_count: int,
    now: Optional[datetime] = None,
) -> List[str]:
    """Check a candle window and return non-fatal warnings.

    Args:
        candles: Window to validate
        expected_count: Number of 1-minute candles the lookback should yield
        now: Reference time for the staleness check

    Returns:
        Warning messages (sparse or stale window)

    Raises:
        DataIntegrityError: Empty window, non-positive prices, or OHLC violations
    """
    if not candles:
        raise DataIntegrityError("empty candle window")

    for candle in candles:
        prices = (candle.open, candle.high, candle.low, candle.close)
        if any(p <= 0 for p in prices):
            raise DataIntegrityError(f"non-positive price in candle at {candle.timestamp.isoformat()}")
        if not (candle.low <= min(candle.open, candle.close)
                and max(candle.open, candle.close) <= candle.high):
            raise DataIntegrityError(
                f"OHLC violation in candle at {candle.timestamp.isoformat()}: "
                f"o={candle.open} h={candle.high} l={candle.low} c={candle.close}"
            )

    warnings = []
    if expected_count > 0 and len(candles) < expected_count * MIN_COVERAGE_RATIO:
        warnings.append(f"sparse window: {len(candles)} of {expected_count} expected candles")

    freshest = max(_as_utc(c.timestamp) for c in candles)
    age = (now or utc_now()) - freshest
    if age > MAX_STALENESS:
        warnings.append(f"stale window: freshest candle is {int(age.total_seconds())}s old")

    return warnings


def compute_extreme(
    instrument: str,
    direction: PositionDirection,
    current_price: Decimal,
    candles: Sequence[Candle],
    expected_count: int = DEFAULT_LOOKBACK_MINUTES,
    now: Optional[datetime] = None,
) -> ExtremeResult:
    """Find the window extreme and the correction depth of the current price.

    Depth is (current - extreme) / extreme * 100 for LONG and
    (extreme - current) / extreme * 100 for SHORT. A negative depth means
    price is beyond the tracked extreme.

    Raises:
        DataIntegrityError: If the window or current price is invalid
    """
    if current_price <= 0:
        raise DataIntegrityError(f"non-positive current price {current_price} for {instrument}")

    warnings = validate_window(candles, expected_count, now)

    if direction == PositionDirection.LONG:
        extreme_candle = min(candles, key=lambda c: c.low)
        extreme_price = extreme_candle.low
        depth = (current_price - extreme_price) / extreme_price * 100
    else:
        extreme_candle = max(candles, key=lambda c: c.high)
        extreme_price = extreme_candle.high
        depth = (extreme_price - current_price) / extreme_price * 100

    for warning in warnings:
        logger.warning("extreme_tracker.window_degraded", instrument=instrument, detail=warning)

    return ExtremeResult(
        instrument=instrument,
        direction=direction,
        extreme_price=extreme_price,
        extreme_time=_as_utc(extreme_candle.timestamp),
        current_price=current_price,
        correction_depth_pct=float(depth),
        candles_analyzed=len(candles),
        warnings=warnings,
    )


class ExtremeTracker:
    """Fetches a candle window and computes its adverse-excursion extreme."""

    def __init__(
        self,
        market_data: MarketDataSource,
        lookback_minutes: int = DEFAULT_LOOKBACK_MINUTES,
    ):
        self.market_data = market_data
        self.lookback_minutes = lookback_minutes

    async def track(
        self,
        instrument: str,
        direction: PositionDirection,
        current_price: Decimal,
        lookback_minutes: Optional[int] = None,
    ) -> ExtremeResult:
        """Return the extreme and correction depth for an instrument.

        Raises:
            DataIntegrityError: If the candle window is malformed
            SourceUnavailableError: If market data cannot be fetched
        """
        lookback = lookback_minutes or self.lookback_minutes
        candles = await self.market_data.get_candles(instrument, lookback)
        result = compute_extreme(instrument, direction, current_price, candles, lookback)

        logger.debug(
            "extreme_tracker.tracked",
            instrument=instrument,
            direction=direction.value,
            extreme_price=str(result.extreme_price),
            depth_pct=round(result.correction_depth_pct, 4),
            candles=result.candles_analyzed,
        )
        return result
