"""ccxt-backed execution venue and market-data adapter.

One instance serves a single perpetuals venue (Hyperliquid by default):
- Market data: 1-minute candles, ticker and mark price
- Execution: quote-sized entry orders with attached SL/TP, reduce-only exits
- Account: open position count

Every call runs under a per-attempt timeout with bounded retries.
Exhausted market-data calls raise SourceUnavailableError; exhausted or
rejected orders raise SubmissionError.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import ccxt.async_support as ccxt
import structlog

from tradedesk.core.config import VenueConfig
from tradedesk.core.exceptions import SourceUnavailableError, SubmissionError
from tradedesk.core.interfaces import ExecutionVenue, MarketDataSource
from tradedesk.core.models import (
    Candle, OrderHandle, OrderSide, Position, PositionDirection, Ticker,
)
from tradedesk.exchange.retry import RETRYABLE_EXCEPTIONS, retry_call

logger = structlog.get_logger(__name__)


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None:
        return Decimal(default)
    return Decimal(str(value))


def candle_from_ohlcv(row: List[Any]) -> Candle:
    """Convert a ccxt OHLCV row [ms, open, high, low, close, volume]."""
    return Candle(
        timestamp=datetime.fromtimestamp(row[0] / 1000, tz=timezone.utc),
        open=_decimal(row[1]),
        high=_decimal(row[2]),
        low=_decimal(row[3]),
        close=_decimal(row[4]),
        volume=_decimal(row[5] if len(row) > 5 else None),
    )


class CcxtVenue(ExecutionVenue, MarketDataSource):
    """Execution and market data for one ccxt exchange."""

    def __init__(self, config: VenueConfig, exchange: Optional[ccxt.Exchange] = None):
        self.config = config
        self.name = config.name
        self._exchange = exchange
        self._markets_loaded = exchange is not None

    # =========================================================================
    # Connection
    # =========================================================================

    def _build_exchange(self) -> ccxt.Exchange:
        exchange_class = getattr(ccxt, self.config.exchange_id)
        exchange = exchange_class({
            "walletAddress": self.config.wallet_address,
            "privateKey": self.config.private_key,
            "enableRateLimit": True,
            "timeout": int(self.config.request_timeout_seconds * 1000),
            "options": {"defaultType": "swap"},
        })
        if self.config.testnet:
            exchange.set_sandbox_mode(True)
        return exchange

    async def initialize(self) -> None:
        """Create the exchange client and load markets."""
        if self._exchange is None:
            self._exchange = self._build_exchange()
        if not self._markets_loaded:
            try:
                await self._call("load_markets", self._exchange.load_markets)
            except Exception as e:
                await self.close()
                raise SourceUnavailableError(self.name, f"cannot load markets: {e}") from e
            self._markets_loaded = True
        logger.info(
            "venue.initialized",
            venue=self.name,
            exchange_id=self.config.exchange_id,
            testnet=self.config.testnet,
        )

    async def close(self) -> None:
        if self._exchange is not None:
            try:
                await self._exchange.close()
            except Exception as e:
                logger.warning("venue.close_error", venue=self.name, error=str(e))
            self._exchange = None
            self._markets_loaded = False

    @property
    def exchange(self) -> ccxt.Exchange:
        if self._exchange is None:
            raise SourceUnavailableError(self.name, "venue not initialized")
        return self._exchange

    def symbol_for(self, instrument: str) -> str:
        """Unified ccxt symbol of a perpetual, e.g. BTC -> BTC/USDC:USDC."""
        quote = self.config.quote_currency
        return f"{instrument}/{quote}:{quote}"

    async def _call(self, name: str, operation: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        return await retry_call(
            lambda: operation(*args, **kwargs),
            name=f"venue.{name}",
            max_retries=self.config.retry_max_attempts,
            base_delay=self.config.retry_base_delay_seconds,
            timeout=self.config.request_timeout_seconds,
        )

    # =========================================================================
    # Market data
    # =========================================================================

    async def get_candles(self, instrument: str, lookback_minutes: int) -> List[Candle]:
        since = int(self.exchange.milliseconds() - lookback_minutes * 60_000)
        try:
            rows = await self._call(
                "fetch_ohlcv",
                self.exchange.fetch_ohlcv,
                self.symbol_for(instrument),
                "1m",
                since=since,
                limit=lookback_minutes,
            )
        except Exception as e:
            logger.error("venue.ohlcv_error", venue=self.name, instrument=instrument, error=str(e))
            raise SourceUnavailableError(self.name, f"candles for {instrument}: {e}") from e
        return [candle_from_ohlcv(row) for row in rows]

    async def get_ticker(self, instrument: str) -> Ticker:
        try:
            raw = await self._call("fetch_ticker", self.exchange.fetch_ticker, self.symbol_for(instrument))
        except Exception as e:
            logger.error("venue.ticker_error", venue=self.name, instrument=instrument, error=str(e))
            raise SourceUnavailableError(self.name, f"ticker for {instrument}: {e}") from e

        info = raw.get("info") or {}
        mark = raw.get("markPrice") or info.get("markPx") or raw.get("last")
        timestamp = raw.get("timestamp")
        return Ticker(
            instrument=instrument,
            bid=_decimal(raw.get("bid")),
            ask=_decimal(raw.get("ask")),
            mark=_decimal(mark),
            timestamp=(
                datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
                if timestamp else datetime.now(timezone.utc)
            ),
        )

    async def get_current_price(self, instrument: str) -> Decimal:
        ticker = await self.get_ticker(instrument)
        if ticker.mark <= 0:
            raise SourceUnavailableError(self.name, f"no mark price for {instrument}")
        return ticker.mark

    # =========================================================================
    # Execution
    # =========================================================================

    async def list_candidate_instruments(self) -> List[str]:
        return list(self.config.instruments)

    def quote_amount(self, amount_in: int) -> Decimal:
        """Convert integer quote units to a quote-currency amount."""
        return Decimal(amount_in) / (Decimal(10) ** self.config.quote_decimals)

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
        symbol = self.symbol_for(instrument)
        try:
            price = await self.get_current_price(instrument)
            size = self.quote_amount(amount_in) / price
            size = Decimal(str(self.exchange.amount_to_precision(symbol, float(size))))
            if size <= 0:
                raise SubmissionError(self.name, instrument, f"amount {amount_in} below minimum size")

            await self._call(
                "set_leverage", self.exchange.set_leverage, leverage, symbol, {"marginMode": "cross"}
            )

            params: Dict[str, Any] = {}
            if stop_loss_price is not None:
                params["stopLoss"] = {"triggerPrice": float(stop_loss_price)}
            if take_profit_price is not None:
                params["takeProfit"] = {"triggerPrice": float(take_profit_price)}
            if client_order_id:
                params["clientOrderId"] = client_order_id

            result = await self._place_order(
                instrument, symbol, side, float(size), float(price), params, client_order_id
            )
        except SubmissionError:
            raise
        except Exception as e:
            logger.error(
                "venue.entry_failed",
                venue=self.name,
                instrument=instrument,
                side=side.value,
                amount_in=amount_in,
                error=str(e),
            )
            raise SubmissionError(self.name, instrument, str(e)) from e

        handle = self._handle(instrument, side, result, client_order_id)
        logger.info(
            "venue.entry_submitted",
            venue=self.name,
            instrument=instrument,
            side=side.value,
            size=str(size),
            order_id=handle.order_id,
        )
        return handle

    async def submit_exit(
        self, position: Position, client_order_id: Optional[str] = None
    ) -> OrderHandle:
        side = OrderSide.SELL if position.direction != PositionDirection.SHORT else OrderSide.BUY
        symbol = self.symbol_for(position.instrument)
        try:
            if position.remaining_size <= 0:
                raise SubmissionError(self.name, position.instrument, "nothing left to close")
            price = await self.get_current_price(position.instrument)
            params: Dict[str, Any] = {"reduceOnly": True}
            if client_order_id:
                params["clientOrderId"] = client_order_id
            result = await self._place_order(
                position.instrument,
                symbol,
                side,
                float(position.remaining_size),
                float(price),
                params,
                client_order_id,
            )
        except SubmissionError:
            raise
        except Exception as e:
            logger.error(
                "venue.exit_failed",
                venue=self.name,
                position_id=position.id,
                instrument=position.instrument,
                error=str(e),
            )
            raise SubmissionError(self.name, position.instrument, str(e)) from e

        handle = self._handle(position.instrument, side, result, client_order_id)
        logger.info(
            "venue.exit_submitted",
            venue=self.name,
            position_id=position.id,
            size=str(position.remaining_size),
            order_id=handle.order_id,
        )
        return handle

    async def _place_order(
        self,
        instrument: str,
        symbol: str,
        side: OrderSide,
        size: float,
        price: float,
        params: Dict[str, Any],
        client_order_id: Optional[str],
    ) -> Dict[str, Any]:
        """Send an order exactly once.

        After a transport failure the order may still have reached the
        venue, so instead of resending it is looked up by client order id.
        """
        try:
            return await retry_call(
                lambda: self.exchange.create_order(symbol, "market", side.value, size, price, params),
                name="venue.create_order",
                max_retries=0,
                timeout=self.config.request_timeout_seconds,
            )
        except RETRYABLE_EXCEPTIONS as e:
            if not client_order_id:
                raise
            logger.warning(
                "venue.order_outcome_unknown",
                venue=self.name,
                instrument=instrument,
                client_order_id=client_order_id,
                error=str(e),
            )
            order = await self._find_order(symbol, client_order_id)
            if order is None:
                raise
            logger.info(
                "venue.order_recovered",
                venue=self.name,
                instrument=instrument,
                client_order_id=client_order_id,
                order_id=order.get("id"),
            )
            return order

    async def _find_order(self, symbol: str, client_order_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._call(
                "fetch_order", self.exchange.fetch_order, None, symbol, {"clientOrderId": client_order_id}
            )
        except ccxt.OrderNotFound:
            return None
        except Exception as e:
            logger.warning(
                "venue.order_lookup_failed",
                venue=self.name,
                client_order_id=client_order_id,
                error=str(e),
            )
            return None

    def _handle(
        self, instrument: str, side: OrderSide, result: Dict[str, Any], client_order_id: Optional[str]
    ) -> OrderHandle:
        order_id = result.get("id")
        if not order_id:
            raise SubmissionError(self.name, instrument, "venue returned no order id")
        return OrderHandle(
            venue=self.name,
            instrument=instrument,
            order_id=str(order_id),
            side=side,
            client_order_id=result.get("clientOrderId") or client_order_id,
        )

    async def get_open_position_count(self) -> int:
        try:
            raw = await self._call(
                "fetch_positions",
                self.exchange.fetch_positions,
                None,
                {"user": self.config.wallet_address} if self.config.wallet_address else {},
            )
        except Exception as e:
            logger.error("venue.positions_error", venue=self.name, error=str(e))
            raise SourceUnavailableError(self.name, f"positions: {e}") from e
        return sum(1 for p in raw if _decimal(p.get("contracts")) != 0)
