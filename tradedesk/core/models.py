"""Data models for TradeDesk.

This module defines the data structures shared by the decision and
reconciliation core:
- Market data and predictive signals consumed from external oracles
- Position lifecycle state with its append-only fill ledger
- Order records carrying the declared intent (entry or exit)
- Ephemeral decisions: trading decisions, exit decisions, trailing results

All prices, sizes and P&L use Decimal. Requested entry amounts are exact
integers in venue quote units. All timestamps are timezone-aware UTC.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tradedesk.core.exceptions import PositionStateError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# Reason reported by a strategy when its own exit evaluation blew up.
EVALUATION_FAILURE_REASON = "Error during evaluation"


# =============================================================================
# Enums
# =============================================================================

class PositionStatus(str, Enum):
    """Position lifecycle status."""
    CREATED = "created"   # Entry order submitted, nothing filled yet
    OPEN = "open"         # At least one entry fill applied
    CLOSED = "closed"     # Remaining size reached zero, frozen


class PositionType(str, Enum):
    """Instrument kind held by a position."""
    PERPETUAL = "perpetual"
    SPOT = "spot"


class PositionDirection(str, Enum):
    """Direction of a perpetual position."""
    LONG = "long"
    SHORT = "short"


class OrderSide(str, Enum):
    """Order side - buy or sell."""
    BUY = "buy"
    SELL = "sell"


class OrderIntent(str, Enum):
    """Declared purpose of an order, fixed at submission time."""
    ENTRY = "entry"       # Opens or adds to a position
    EXIT = "exit"         # Reduces or closes a position


class FillKind(str, Enum):
    """How a fill was applied to a position."""
    ENTRY = "entry"
    EXIT = "exit"


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    SUBMITTED = "submitted"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_pending(self) -> bool:
        return self in (OrderStatus.SUBMITTED, OrderStatus.PARTIALLY_FILLED)


def order_status_from_venue(status: Optional[str]) -> Optional[OrderStatus]:
    """Map a venue order status to the terminal OrderStatus it implies.

    Hyperliquid reports plain "canceled"/"rejected" as well as qualified
    forms such as "marginCanceled", "reduceOnlyCanceled" or
    "tickRejected". Open, triggered and filled statuses map to None;
    fills are what move those.
    """
    if not status:
        return None
    lowered = status.lower()
    if lowered.endswith("rejected"):
        return OrderStatus.FAILED
    if lowered.endswith(("canceled", "cancelled")) or lowered == "scheduledcancel":
        return OrderStatus.CANCELLED
    return None


class TrendStatus(str, Enum):
    """Direction of price relative to its moving average."""
    UP = "UP"
    DOWN = "DOWN"
    NEUTRAL = "NEUTRAL"
    UNDEFINED = "UNDEFINED"


class TrendTimeframe(str, Enum):
    """Timeframes published by the predictive service."""
    FIVE_MIN = "5m"
    FIFTEEN_MIN = "15m"
    ONE_HOUR = "1h"
    EIGHT_HOURS = "8h"
    ONE_DAY = "1d"


class Recommendation(str, Enum):
    """Predictive recommendation."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class PredictionHorizon(str, Enum):
    """Horizon of a predictive recommendation."""
    FIVE_MIN = "5m"
    FIFTEEN_MIN = "15m"
    THIRTY_MIN = "30m"
    ONE_HOUR = "1h"


class TokenCategory(str, Enum):
    """Instrument category used by the predictive service."""
    MAIN_COINS = "MAIN_COINS"
    ALT_COINS = "ALT_COINS"


class EntryTiming(str, Enum):
    """Outcome of an entry timing evaluation."""
    IMMEDIATE = "immediate"
    WAIT_CORRECTION = "wait_correction"
    REVERSAL_DETECTED = "reversal_detected"
    NO_SIGNAL = "no_signal"


class Urgency(str, Enum):
    """Coarse priority of an exit decision."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


MAIN_COINS = frozenset({"BTC", "ETH", "SOL", "USDC", "USDT"})


def token_category(instrument: str) -> TokenCategory:
    """Category the predictive service expects for an instrument."""
    if instrument.upper() in MAIN_COINS:
        return TokenCategory.MAIN_COINS
    return TokenCategory.ALT_COINS


def direction_for_trend(status: TrendStatus) -> Optional[PositionDirection]:
    """Map a trend status to a position direction (None when not directional)."""
    if status == TrendStatus.UP:
        return PositionDirection.LONG
    if status == TrendStatus.DOWN:
        return PositionDirection.SHORT
    return None


# =============================================================================
# Market Data Models
# =============================================================================

class Candle(BaseModel):
    """One OHLCV candle.

    No OHLC validation happens here: integrity checks belong to the
    consumer so a bad window surfaces as a DataIntegrityError instead of
    failing deep inside an adapter.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    timestamp: datetime = Field(..., description="Candle open time")
    open: Decimal = Field(..., description="Open price")
    high: Decimal = Field(..., description="High price")
    low: Decimal = Field(..., description="Low price")
    close: Decimal = Field(..., description="Close price")
    volume: Decimal = Field(default=Decimal("0"), description="Volume")


class Ticker(BaseModel):
    """Top of book snapshot for an instrument."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    instrument: str = Field(..., description="Instrument symbol")
    bid: Decimal = Field(..., description="Best bid")
    ask: Decimal = Field(..., description="Best ask")
    mark: Decimal = Field(..., description="Mark price")
    timestamp: datetime = Field(default_factory=utc_now, description="Snapshot time")

    @property
    def mid(self) -> Decimal:
        return (self.bid + self.ask) / 2

    @property
    def spread_pct(self) -> Decimal:
        """Bid/ask spread as a percentage of mid (100 when the book is empty)."""
        if self.bid <= 0 or self.ask <= 0:
            return Decimal("100")
        return (self.ask - self.bid) / self.mid * 100


# =============================================================================
# Predictive Signal Models
# =============================================================================

class TrendSignal(BaseModel):
    """Trend of one instrument on one timeframe.

    UNDEFINED signals never carry numeric fields; any numbers sent along
    with an UNDEFINED status are dropped on construction.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    status: TrendStatus = Field(..., description="Trend status")
    change_pct: Optional[float] = Field(default=None, description="% deviation from MA")
    price: Optional[Decimal] = Field(default=None, description="Price at evaluation")
    ma: Optional[Decimal] = Field(default=None, description="Moving average value")

    @model_validator(mode="before")
    @classmethod
    def drop_undefined_numbers(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("status") is not None:
            if TrendStatus(data["status"]) == TrendStatus.UNDEFINED:
                return {"status": TrendStatus.UNDEFINED}
        return data

    @property
    def is_defined(self) -> bool:
        """True if the signal can take part in arithmetic."""
        return (
            self.status != TrendStatus.UNDEFINED
            and self.change_pct is not None
            and self.price is not None
            and self.ma is not None
        )

    @classmethod
    def undefined(cls) -> "TrendSignal":
        return cls(status=TrendStatus.UNDEFINED)


TrendMap = Dict[TrendTimeframe, TrendSignal]


class Prediction(BaseModel):
    """Recommendation returned by the predictive service."""

    instrument: str = Field(..., description="Instrument symbol")
    recommendation: Recommendation = Field(..., description="BUY, SELL or HOLD")
    confidence: float = Field(..., ge=0, le=1, description="Confidence 0-1")
    percentage_change: float = Field(default=0.0, description="Predicted % change")
    horizon: PredictionHorizon = Field(default=PredictionHorizon.ONE_HOUR)
    category: Optional[TokenCategory] = Field(default=None)
    model_version: Optional[str] = Field(default=None)
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def direction(self) -> Optional[PositionDirection]:
        """Direction implied by the recommendation (None for HOLD)."""
        if self.recommendation == Recommendation.BUY:
            return PositionDirection.LONG
        if self.recommendation == Recommendation.SELL:
            return PositionDirection.SHORT
        return None


# =============================================================================
# Entry Timing Models
# =============================================================================

class ExtremeResult(BaseModel):
    """Adverse-excursion extreme over a candle window."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    instrument: str
    direction: PositionDirection
    extreme_price: Decimal = Field(..., gt=0)
    extreme_time: datetime
    current_price: Decimal = Field(..., gt=0)
    correction_depth_pct: float = Field(
        ..., description="Retracement from the extreme; negative beyond it"
    )
    candles_analyzed: int = Field(..., ge=1)
    warnings: List[str] = Field(default_factory=list)

    def is_deep_enough(self, min_correction_pct: float) -> bool:
        """True only for a non-negative depth at or above the minimum."""
        if self.correction_depth_pct < 0:
            return False
        return self.correction_depth_pct >= min_correction_pct


class EntryTimingMetadata(BaseModel):
    """Context attached to every entry timing result."""

    primary_trend: TrendStatus
    primary_timeframe: TrendTimeframe = TrendTimeframe.ONE_HOUR
    correction_trend: Optional[TrendStatus] = None
    correction_timeframe: Optional[TrendTimeframe] = None
    correction_depth_pct: Optional[float] = None
    depth_source: Optional[str] = None
    reversal_detected: bool = False
    trend_alignment: bool = False


class EntryTimingResult(BaseModel):
    """Whether to enter now, wait for a correction, or stand aside."""

    timing: EntryTiming
    should_enter_now: bool
    direction: Optional[PositionDirection] = None
    confidence: float = Field(..., ge=0, le=1)
    reason: str = Field(..., min_length=1)
    metadata: EntryTimingMetadata


# =============================================================================
# Decision Models
# =============================================================================

class TradingDecision(BaseModel):
    """Entry decision produced by a venue strategy."""

    should_trade: bool
    reason: str = Field(..., min_length=1, description="Human-readable reason")
    confidence: float = Field(default=0.0, ge=0, le=1)
    recommended_amount: int = Field(default=0, ge=0, description="Quote units")
    direction: Optional[PositionDirection] = None
    leverage: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def trade(
        cls,
        reason: str,
        confidence: float,
        direction: PositionDirection,
        recommended_amount: int,
        **kwargs,
    ) -> "TradingDecision":
        return cls(
            should_trade=True,
            reason=reason,
            confidence=confidence,
            direction=direction,
            recommended_amount=recommended_amount,
            **kwargs,
        )

    @classmethod
    def no_trade(cls, reason: str, confidence: float = 0.0, **kwargs) -> "TradingDecision":
        return cls(should_trade=False, reason=reason, confidence=confidence, **kwargs)


class ExitDecision(BaseModel):
    """Go/no-go exit decision for one open position."""

    should_exit: bool
    reason: str = Field(..., min_length=1, description="Human-readable reason")
    confidence: float = Field(default=0.0, ge=0, le=1)
    urgency: Urgency = Urgency.LOW
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_evaluation_failure(self) -> bool:
        """True for the pseudo-decision a strategy returns when it failed."""
        return self.reason == EVALUATION_FAILURE_REASON

    @classmethod
    def exit(
        cls, reason: str, confidence: float = 1.0, urgency: Urgency = Urgency.HIGH, **kwargs
    ) -> "ExitDecision":
        return cls(should_exit=True, reason=reason, confidence=confidence, urgency=urgency, **kwargs)

    @classmethod
    def hold(
        cls, reason: str, confidence: float = 0.5, urgency: Urgency = Urgency.LOW, **kwargs
    ) -> "ExitDecision":
        return cls(should_exit=False, reason=reason, confidence=confidence, urgency=urgency, **kwargs)

    @classmethod
    def evaluation_failure(cls, error: Exception) -> "ExitDecision":
        return cls(
            should_exit=False,
            reason=EVALUATION_FAILURE_REASON,
            confidence=0.3,
            urgency=Urgency.LOW,
            metadata={"error": str(error)},
        )


class TrailingEvaluation(BaseModel):
    """Result of a trailing stop/take-profit evaluation."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    should_trail: bool
    reason: str = Field(..., min_length=1)
    progress_to_tp: float = 0.0
    new_stop_loss_price: Optional[Decimal] = None
    new_take_profit_price: Optional[Decimal] = None

    @classmethod
    def skip(cls, reason: str, progress_to_tp: float = 0.0) -> "TrailingEvaluation":
        return cls(should_trail=False, reason=reason, progress_to_tp=progress_to_tp)


class VenueTradingParams(BaseModel):
    """Risk and sizing parameters for one venue."""

    venue: str
    enabled: bool = True
    priority: int = 0
    max_open_positions: int = Field(default=3, ge=0)
    default_amount_in: int = Field(default=100_000_000, ge=0, description="Quote units")
    stop_loss_percent: float = Field(default=15.0, gt=0)
    take_profit_percent: float = Field(default=25.0, gt=0)
    default_leverage: int = Field(default=3, ge=1)
    position_type: PositionType = PositionType.PERPETUAL
    currency: str = "USDC"


class Opportunity(BaseModel):
    """A ranked candidate trade produced by one scan. Never persisted."""

    venue: str
    instrument: str
    decision: TradingDecision
    priority: int = 0


# =============================================================================
# Order and Fill Models
# =============================================================================

class Fill(BaseModel):
    """Execution of some or all of an order at a price."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    fill_id: str = Field(..., min_length=1, description="Venue-unique fill id")
    order_id: str = Field(..., min_length=1, description="Venue order id")
    venue: str
    instrument: str
    side: OrderSide
    size: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    fee: Decimal = Field(default=Decimal("0"))
    realized_pnl: Optional[Decimal] = Field(default=None, description="Closed P&L, if any")
    timestamp: datetime = Field(default_factory=utc_now)
    client_order_id: Optional[str] = None
    intent: Optional[OrderIntent] = Field(default=None, description="Tag from the order or the venue")


class OrderUpdate(BaseModel):
    """Non-fill order notification (price amendments, id echoes)."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    order_id: str
    venue: str
    instrument: str
    side: OrderSide
    limit_price: Optional[Decimal] = None
    size: Optional[Decimal] = None
    original_size: Optional[Decimal] = None
    client_order_id: Optional[str] = None
    status: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class OrderHandle(BaseModel):
    """Acknowledgement of a submitted order."""

    venue: str
    instrument: str
    order_id: str
    side: OrderSide
    client_order_id: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utc_now)


class LedgerEntry(BaseModel):
    """One applied fill in a position's ledger."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    fill_id: str
    order_id: str
    kind: FillKind
    side: OrderSide
    size: Decimal
    price: Decimal
    fee: Decimal = Decimal("0")
    realized_pnl: Optional[Decimal] = None
    timestamp: datetime


class TradeOrder(BaseModel):
    """Order record kept so fills can be matched to a position and intent."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    position_id: str
    venue: str
    instrument: str
    intent: OrderIntent
    side: OrderSide
    id: str = Field(default_factory=lambda: str(uuid4()))
    order_id: Optional[str] = Field(default=None, description="Venue order id")
    client_order_id: Optional[str] = None
    size: Optional[Decimal] = Field(default=None, description="Requested base size")
    limit_price: Optional[Decimal] = None
    filled_size: Decimal = Decimal("0")
    average_fill_price: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    status: OrderStatus = OrderStatus.SUBMITTED
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def record_fill(self, fill: Fill) -> None:
        """Accumulate a fill into the order totals."""
        total = self.filled_size + fill.size
        previous_value = (self.average_fill_price or Decimal("0")) * self.filled_size
        self.average_fill_price = (previous_value + fill.price * fill.size) / total
        self.filled_size = total
        self.fee += fill.fee
        self.updated_at = fill.timestamp
        if not self.status.is_pending:
            # A late fill never revives a cancelled or failed order
            return
        if self.size is not None and self.filled_size >= self.size:
            self.status = OrderStatus.FILLED
        elif self.size is None:
            self.status = OrderStatus.FILLED
        else:
            self.status = OrderStatus.PARTIALLY_FILLED

    def apply_update(self, update: OrderUpdate) -> None:
        """Copy order metadata from a non-fill notification.

        A cancel or reject ends a pending order whether or not part of it
        already filled. A FILLED order keeps its status.
        """
        if update.limit_price is not None:
            self.limit_price = update.limit_price
        if update.client_order_id is not None:
            self.client_order_id = update.client_order_id
        if update.original_size is not None and self.size is None:
            self.size = update.original_size
        terminal = order_status_from_venue(update.status)
        if terminal is not None and self.status.is_pending:
            self.status = terminal
            self.metadata["venue_status"] = update.status
        self.updated_at = update.timestamp


# =============================================================================
# Position Model
# =============================================================================

class Position(BaseModel):
    """One open or historical position on a venue.

    State changes only through apply_entry_fill / apply_exit_fill (driven
    by the fill reconciler) and apply_trail / close_unfilled (driven by
    the orchestrator). The ledger is append-only and is the source of
    truth for idempotent fill application.

    Attributes:
        venue: Venue key the position lives on
        instrument: Instrument symbol
        position_type: Perpetual or spot
        direction: Long or short (None for spot)
        amount_in: Requested entry amount, exact integer quote units
        filled_size: Cumulative size of entry fills
        remaining_size: Filled size minus exited size
        entry_price: Size-weighted average over entry fills
        realized_pnl: Sum of exit-fill P&L contributions
        status: CREATED, OPEN or CLOSED
        exit_flag: Manual exit request
        last_trail_at: Time of the last trailing adjustment
        trail_count: Number of trailing adjustments
        fills: Ledger of applied fills
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    # Identity
    venue: str = Field(..., description="Venue key")
    instrument: str = Field(..., description="Instrument symbol")
    position_type: PositionType = Field(default=PositionType.PERPETUAL)
    direction: Optional[PositionDirection] = Field(default=None)
    currency: str = Field(default="USDC", description="Quote currency")
    id: str = Field(default_factory=lambda: str(uuid4()), description="Position ID")

    # Sizing
    amount_in: int = Field(..., ge=0, description="Requested amount, quote units")
    leverage: int = Field(default=1, ge=1)
    filled_size: Decimal = Field(default=Decimal("0"), ge=0)
    remaining_size: Decimal = Field(default=Decimal("0"), ge=0)

    # Pricing
    entry_price: Optional[Decimal] = Field(default=None, description="Weighted entry")
    current_price: Optional[Decimal] = Field(default=None, description="Last mark")
    stop_loss_price: Optional[Decimal] = Field(default=None)
    take_profit_price: Optional[Decimal] = Field(default=None)

    # P&L
    realized_pnl: Decimal = Field(default=Decimal("0"))

    # Lifecycle
    status: PositionStatus = Field(default=PositionStatus.CREATED)
    created_at: datetime = Field(default_factory=utc_now)
    opened_at: Optional[datetime] = Field(default=None)
    closed_at: Optional[datetime] = Field(default=None)
    close_reason: Optional[str] = Field(default=None)
    exit_flag: bool = Field(default=False)

    # Trailing
    last_trail_at: Optional[datetime] = Field(default=None)
    trail_count: int = Field(default=0, ge=0)

    fills: List[LedgerEntry] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_lifecycle(self) -> "Position":
        if self.position_type == PositionType.PERPETUAL and self.direction is None:
            raise ValueError("perpetual positions require a direction")
        if self.status == PositionStatus.CREATED:
            if self.filled_size != 0 or self.entry_price is not None:
                raise ValueError("CREATED position cannot have fills or an entry price")
        elif self.status == PositionStatus.OPEN:
            if self.filled_size <= 0 or self.entry_price is None:
                raise ValueError("OPEN position needs a filled size and entry price")
            if self.remaining_size > self.filled_size:
                raise ValueError("remaining size exceeds filled size")
        elif self.remaining_size != 0:
            raise ValueError("CLOSED position must have zero remaining size")
        return self

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED

    @property
    def is_long(self) -> bool:
        return self.direction != PositionDirection.SHORT

    @property
    def exited_size(self) -> Decimal:
        return self.filled_size - self.remaining_size

    def has_fill(self, fill_id: str) -> bool:
        """True if the fill id is already in the ledger."""
        return any(entry.fill_id == fill_id for entry in self.fills)

    def apply_entry_fill(self, fill: Fill) -> LedgerEntry:
        """Add an entry fill and recompute the weighted entry price.

        Raises:
            PositionStateError: If the position is already closed
        """
        if self.status == PositionStatus.CLOSED:
            raise PositionStateError(f"position {self.id} is closed")

        new_filled = self.filled_size + fill.size
        previous_value = self.filled_size * (self.entry_price or Decimal("0"))
        self.entry_price = (previous_value + fill.size * fill.price) / new_filled
        self.filled_size = new_filled
        self.remaining_size += fill.size

        if self.status == PositionStatus.CREATED:
            self.status = PositionStatus.OPEN
        if self.opened_at is None:
            self.opened_at = fill.timestamp

        return self._append(fill, FillKind.ENTRY)

    def apply_exit_fill(self, fill: Fill) -> LedgerEntry:
        """Reduce the position by an exit fill and accrue its realized P&L.

        Raises:
            PositionStateError: If the position is not open
        """
        if self.status != PositionStatus.OPEN:
            raise PositionStateError(
                f"exit fill on position {self.id} in status {self.status.value}"
            )

        self.remaining_size = max(Decimal("0"), self.remaining_size - fill.size)
        if fill.realized_pnl is not None:
            self.realized_pnl += fill.realized_pnl

        entry = self._append(fill, FillKind.EXIT)
        if self.remaining_size == 0:
            self.status = PositionStatus.CLOSED
            self.closed_at = fill.timestamp
        return entry

    def _append(self, fill: Fill, kind: FillKind) -> LedgerEntry:
        entry = LedgerEntry(
            fill_id=fill.fill_id,
            order_id=fill.order_id,
            kind=kind,
            side=fill.side,
            size=fill.size,
            price=fill.price,
            fee=fill.fee,
            realized_pnl=fill.realized_pnl,
            timestamp=fill.timestamp,
        )
        self.fills.append(entry)
        return entry

    def apply_trail(
        self,
        stop_loss_price: Decimal,
        take_profit_price: Decimal,
        trailed_at: Optional[datetime] = None,
    ) -> None:
        """Move stop-loss/take-profit after an accepted trailing evaluation."""
        if self.status != PositionStatus.OPEN:
            raise PositionStateError(f"cannot trail position {self.id} in status {self.status.value}")
        self.stop_loss_price = stop_loss_price
        self.take_profit_price = take_profit_price
        self.last_trail_at = trailed_at or utc_now()
        self.trail_count += 1

    def close_unfilled(self, reason: str) -> None:
        """Close a CREATED position whose entry order never reached the venue."""
        if self.status != PositionStatus.CREATED:
            raise PositionStateError(f"position {self.id} already has fills")
        self.status = PositionStatus.CLOSED
        self.closed_at = utc_now()
        self.close_reason = reason

    def calculate_unrealized_pnl(self, current_price: Decimal) -> Decimal:
        """Unrealized P&L of the remaining size at the given price."""
        if self.entry_price is None or self.remaining_size == 0:
            return Decimal("0")
        diff = current_price - self.entry_price
        if not self.is_long:
            diff = -diff
        return diff * self.remaining_size

    def calculate_pnl_percentage(self, current_price: Decimal) -> Decimal:
        """Price move since entry in %, signed in the position's favor."""
        if not self.entry_price:
            return Decimal("0")
        pct = (current_price - self.entry_price) / self.entry_price * 100
        return pct if self.is_long else -pct
