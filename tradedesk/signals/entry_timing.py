"""Multi-timeframe entry timing.

The 1h trend picks the direction; a short timeframe (5m or 15m) picks the
moment. Entering while the short trend still opposes the 1h trend means
buying into a live correction, so that case waits.
"""
from decimal import Decimal
from typing import Optional, Tuple

import structlog

from tradedesk.core.config import EntryTimingConfig
from tradedesk.core.exceptions import TradeDeskError
from tradedesk.core.models import (
    EntryTiming, EntryTimingMetadata, EntryTimingResult, PositionDirection,
    TrendMap, TrendSignal, TrendStatus, TrendTimeframe, direction_for_trend,
)
from tradedesk.signals.extreme_tracker import ExtremeTracker

logger = structlog.get_logger(__name__)

PRIMARY_TIMEFRAME = TrendTimeframe.ONE_HOUR
FALLBACK_SHORT_TIMEFRAME = TrendTimeframe.FIFTEEN_MIN
SHORT_TIMEFRAMES = (TrendTimeframe.FIVE_MIN, TrendTimeframe.FIFTEEN_MIN)

REVERSAL_CONFIDENCE = 0.85
ALIGNMENT_CONFIDENCE = 0.70
NEUTRAL_SHORT_CONFIDENCE = 0.65
DEFAULT_CONFIDENCE = 0.60
SHORT_UNAVAILABLE_CONFIDENCE = 0.60


class EntryTimingEvaluator:
    """Decides whether to enter now, wait for a correction, or stand aside.

    Stateless per call; the optional extreme tracker supplies correction
    depth from recent candles.
    """

    def __init__(
        self,
        config: Optional[EntryTimingConfig] = None,
        extreme_tracker: Optional[ExtremeTracker] = None,
    ):
        self.config = config or EntryTimingConfig()
        self.extreme_tracker = extreme_tracker
        self.short_timeframe = self._resolve_short_timeframe(self.config.short_timeframe)

    @staticmethod
    def _resolve_short_timeframe(value: str) -> TrendTimeframe:
        try:
            timeframe = TrendTimeframe(value)
        except ValueError:
            timeframe = None
        if timeframe not in SHORT_TIMEFRAMES:
            logger.warning("entry_timing.invalid_short_timeframe", value=value, using="5m")
            return TrendTimeframe.FIVE_MIN
        return timeframe

    async def evaluate(
        self,
        instrument: str,
        trends: TrendMap,
        current_price: Optional[Decimal] = None,
    ) -> EntryTimingResult:
        """Evaluate entry timing from a per-timeframe trend map.

        Args:
            instrument: Instrument symbol
            trends: Trend map from the predictive service
            current_price: Price used for extreme-based correction depth

        Returns:
            EntryTimingResult (always carries a reason)
        """
        return await self.evaluate_signals(
            instrument,
            primary=trends.get(PRIMARY_TIMEFRAME) or TrendSignal.undefined(),
            short=trends.get(self.short_timeframe),
            fallback_short=trends.get(FALLBACK_SHORT_TIMEFRAME),
            current_price=current_price,
        )

    async def evaluate_signals(
        self,
        instrument: str,
        primary: TrendSignal,
        short: Optional[TrendSignal],
        fallback_short: Optional[TrendSignal] = None,
        current_price: Optional[Decimal] = None,
    ) -> EntryTimingResult:
        """Evaluate entry timing from explicit primary and short signals."""
        if not self.config.enabled:
            return self._immediate_entry(primary)

        if not primary.is_defined:
            return _no_signal(primary, "1hr trend is UNDEFINED, insufficient data")
        if primary.status == TrendStatus.NEUTRAL:
            return _no_signal(primary, "1hr trend is NEUTRAL, no clear direction")

        direction = direction_for_trend(primary.status)

        short_timeframe = self.short_timeframe
        if short is None or not short.is_defined:
            short, short_timeframe = fallback_short, FALLBACK_SHORT_TIMEFRAME
        if short is None or not short.is_defined:
            return EntryTimingResult(
                timing=EntryTiming.IMMEDIATE,
                should_enter_now=True,
                direction=direction,
                confidence=SHORT_UNAVAILABLE_CONFIDENCE,
                reason=(
                    f"1hr trend {primary.status.value}, short timeframes unavailable, "
                    "entering immediately"
                ),
                metadata=EntryTimingMetadata(primary_trend=primary.status),
            )

        depth, depth_source = await self._correction_depth(
            instrument, direction, short, current_price
        )
        return self._decide(primary, short, short_timeframe, direction, depth, depth_source)

    async def _correction_depth(
        self,
        instrument: str,
        direction: PositionDirection,
        short: TrendSignal,
        current_price: Optional[Decimal],
    ) -> Tuple[float, str]:
        if self.config.use_extreme_tracking and self.extreme_tracker and current_price:
            try:
                result = await self.extreme_tracker.track(
                    instrument, direction, current_price, self.config.extreme_lookback_minutes
                )
                return result.correction_depth_pct, "extreme"
            except TradeDeskError as e:
                logger.warning(
                    "entry_timing.extreme_tracking_failed",
                    instrument=instrument,
                    error=str(e),
                    fallback="ma_deviation",
                )
        return abs(short.change_pct), "ma_deviation"

    def _decide(
        self,
        primary: TrendSignal,
        short: TrendSignal,
        short_timeframe: TrendTimeframe,
        direction: PositionDirection,
        depth: float,
        depth_source: str,
    ) -> EntryTimingResult:
        short_direction = direction_for_trend(short.status)
        aligned = short_direction == direction
        opposite = short_direction is not None and not aligned
        deep_enough = depth >= 0 and depth >= self.config.min_correction_pct
        tf = short_timeframe.value
        trend = primary.status.value

        def metadata(reversal: bool) -> EntryTimingMetadata:
            return EntryTimingMetadata(
                primary_trend=primary.status,
                correction_trend=short.status,
                correction_timeframe=short_timeframe,
                correction_depth_pct=depth,
                depth_source=depth_source,
                reversal_detected=reversal,
                trend_alignment=aligned,
            )

        if aligned and deep_enough:
            return EntryTimingResult(
                timing=EntryTiming.REVERSAL_DETECTED,
                should_enter_now=True,
                direction=direction,
                confidence=REVERSAL_CONFIDENCE,
                reason=(
                    f"Reversal detected: {tf} turned {short.status.value} after "
                    f"{depth:.1f}% correction, aligning with 1hr {trend}"
                ),
                metadata=metadata(True),
            )
        if aligned:
            return EntryTimingResult(
                timing=EntryTiming.REVERSAL_DETECTED,
                should_enter_now=True,
                direction=direction,
                confidence=ALIGNMENT_CONFIDENCE,
                reason=f"{tf} aligns with 1hr {trend}, entering on alignment",
                metadata=metadata(False),
            )
        if opposite:
            return EntryTimingResult(
                timing=EntryTiming.WAIT_CORRECTION,
                should_enter_now=False,
                direction=direction,
                confidence=self.config.reversal_confidence,
                reason=(
                    f"Correction in progress: {tf} {short.status.value} "
                    f"({depth:.1f}% depth) opposes 1hr {trend}, waiting for reversal"
                ),
                metadata=metadata(False),
            )
        if short.status == TrendStatus.NEUTRAL:
            return EntryTimingResult(
                timing=EntryTiming.IMMEDIATE,
                should_enter_now=True,
                direction=direction,
                confidence=NEUTRAL_SHORT_CONFIDENCE,
                reason=f"{tf} NEUTRAL, entering based on 1hr {trend}",
                metadata=metadata(False),
            )
        return EntryTimingResult(
            timing=EntryTiming.IMMEDIATE,
            should_enter_now=True,
            direction=direction,
            confidence=DEFAULT_CONFIDENCE,
            reason=f"Entering based on 1hr {trend}",
            metadata=metadata(False),
        )

    def _immediate_entry(self, primary: TrendSignal) -> EntryTimingResult:
        direction = direction_for_trend(primary.status) if primary.is_defined else None
        if direction is None:
            return _no_signal(
                primary, f"Entry timing disabled, 1hr trend {primary.status.value}"
            )
        return EntryTimingResult(
            timing=EntryTiming.IMMEDIATE,
            should_enter_now=True,
            direction=direction,
            confidence=DEFAULT_CONFIDENCE,
            reason=f"Entry timing disabled, entering on 1hr {primary.status.value}",
            metadata=EntryTimingMetadata(primary_trend=primary.status),
        )


def _no_signal(primary: TrendSignal, reason: str) -> EntryTimingResult:
    return EntryTimingResult(
        timing=EntryTiming.NO_SIGNAL,
        should_enter_now=False,
        direction=None,
        confidence=0.0,
        reason=reason,
        metadata=EntryTimingMetadata(primary_trend=primary.status),
    )
