"""Venue fill and order-update stream over websocket.

Subscribes to the account's `userFills` and `orderUpdates` channels and
hands every notification to the FillReconciler. The connection runs a
small state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
                         ^            |
                         |            v
                    RECONNECTING(attempt)  (capped exponential backoff)

After `max_attempts` consecutive failures the stream stays DISCONNECTED
with `exhausted` set. That state is reported through status(), never
raised.
"""
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import structlog
from pydantic import ValidationError

from tradedesk.core.models import Fill, OrderIntent, OrderSide, OrderUpdate
from tradedesk.positions.reconciler import FillReconciler

logger = structlog.get_logger(__name__)

USER_FILLS = "userFills"
ORDER_UPDATES = "orderUpdates"


class ConnectionState(str, Enum):
    """Websocket connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def reconnect_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect attempt `attempt` (1-based)."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def _side(code: str) -> OrderSide:
    # Hyperliquid marks bids "B" and asks "A"
    return OrderSide.BUY if code.upper() in ("B", "BUY") else OrderSide.SELL


def _timestamp(ms: Optional[int]) -> datetime:
    if ms is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def _intent(direction: Optional[str]) -> Optional[OrderIntent]:
    # "Open Long"/"Close Short"; flips such as "Long > Short" stay unknown
    if not direction:
        return None
    if direction.startswith("Open"):
        return OrderIntent.ENTRY
    if direction.startswith("Close"):
        return OrderIntent.EXIT
    return None


def parse_fill(venue: str, raw: Dict[str, Any]) -> Fill:
    """Build a Fill from one `userFills` entry.

    The venue's `dir` field ("Open Long", "Close Long", ...) is carried as
    the fill's intent. The reconciler still prefers the intent recorded on
    the matching order.
    """
    fill_id = raw.get("tid")
    if fill_id is None or fill_id == "":
        fill_id = f"{raw.get('hash')}:{raw.get('oid')}"
    closed_pnl = raw.get("closedPnl")
    return Fill(
        fill_id=str(fill_id),
        order_id=str(raw["oid"]),
        venue=venue,
        instrument=raw["coin"],
        side=_side(raw["side"]),
        size=Decimal(str(raw["sz"])),
        price=Decimal(str(raw["px"])),
        fee=Decimal(str(raw.get("fee") or "0")),
        realized_pnl=Decimal(str(closed_pnl)) if closed_pnl is not None else None,
        timestamp=_timestamp(raw.get("time")),
        client_order_id=raw.get("cloid"),
        intent=_intent(raw.get("dir")),
    )


def parse_user_fills(venue: str, data: Dict[str, Any]) -> List[Fill]:
    """Parse a `userFills` payload. Snapshots and malformed entries yield nothing."""
    if data.get("isSnapshot"):
        return []
    fills = []
    for raw in data.get("fills") or []:
        try:
            fills.append(parse_fill(venue, raw))
        except (KeyError, TypeError, ArithmeticError, ValidationError) as e:
            logger.warning("event_stream.malformed_fill", venue=venue, fill=raw, error=str(e))
    return fills


def parse_order_updates(venue: str, data: List[Dict[str, Any]]) -> List[OrderUpdate]:
    """Parse an `orderUpdates` payload."""
    updates = []
    for raw in data or []:
        try:
            order = raw["order"]
            updates.append(OrderUpdate(
                order_id=str(order["oid"]),
                venue=venue,
                instrument=order["coin"],
                side=_side(order["side"]),
                limit_price=Decimal(str(order["limitPx"])) if order.get("limitPx") else None,
                size=Decimal(str(order["sz"])) if order.get("sz") is not None else None,
                original_size=Decimal(str(order["origSz"])) if order.get("origSz") is not None else None,
                client_order_id=order.get("cloid"),
                status=raw.get("status"),
                timestamp=_timestamp(raw.get("statusTimestamp") or order.get("timestamp")),
            ))
        except (KeyError, TypeError, ArithmeticError, ValidationError) as e:
            logger.warning("event_stream.malformed_order_update", venue=venue, update=raw, error=str(e))
    return updates


class FillEventStream:
    """Websocket client feeding venue notifications into the reconciler.

    Args:
        venue: Venue key stamped on every parsed event
        url: Websocket endpoint
        user_address: Account whose fills and orders are streamed
        reconciler: Destination of parsed fills and order updates
        base_delay: First reconnect delay in seconds
        max_delay: Reconnect delay cap in seconds
        max_attempts: Consecutive failed reconnects before giving up
        session: Optional aiohttp session (one is created and owned otherwise)
        sleep: Awaitable used for backoff waits
    """

    def __init__(
        self,
        venue: str,
        url: str,
        user_address: str,
        reconciler: FillReconciler,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 10,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.venue = venue
        self.url = url
        self.user_address = user_address
        self.reconciler = reconciler
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self.exhausted = False
        self.subscriptions: List[Dict[str, Any]] = [
            {"type": USER_FILLS, "user": user_address},
            {"type": ORDER_UPDATES, "user": user_address},
        ]
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> asyncio.Task:
        """Run the connection loop in a background task."""
        if self._task is None or self._task.done():
            self._stopping = False
            self.exhausted = False
            self._task = asyncio.create_task(self.run(), name=f"event-stream-{self.venue}")
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def run(self) -> None:
        """Connect, consume, and reconnect until stopped or exhausted."""
        if self._session is None:
            self._session = aiohttp.ClientSession()

        while not self._stopping:
            self._set_state(
                ConnectionState.CONNECTING if self.attempt == 0 else ConnectionState.RECONNECTING
            )
            try:
                async with self._session.ws_connect(self.url, heartbeat=30) as ws:
                    self._ws = ws
                    self.attempt = 0
                    self._set_state(ConnectionState.CONNECTED)
                    for subscription in self.subscriptions:
                        await self._send_subscribe(subscription)
                    await self._consume(ws)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning(
                    "event_stream.connection_error",
                    venue=self.venue,
                    attempt=self.attempt,
                    error=str(e) or type(e).__name__,
                )
            finally:
                self._ws = None

            if self._stopping:
                break

            self.attempt += 1
            if self.attempt > self.max_attempts:
                self.exhausted = True
                self._set_state(ConnectionState.DISCONNECTED)
                logger.error(
                    "event_stream.reconnect_exhausted",
                    venue=self.venue,
                    max_attempts=self.max_attempts,
                )
                return

            delay = reconnect_delay(self.attempt, self.base_delay, self.max_delay)
            self._set_state(ConnectionState.RECONNECTING)
            logger.warning(
                "event_stream.reconnecting",
                venue=self.venue,
                attempt=self.attempt,
                max_attempts=self.max_attempts,
                delay=delay,
            )
            await self._sleep(delay)

        self._set_state(ConnectionState.DISCONNECTED)

    async def _consume(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self.handle_message(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("event_stream.ws_error", venue=self.venue, error=str(ws.exception()))
                break
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                break
        logger.info("event_stream.closed", venue=self.venue)

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.debug("event_stream.state", venue=self.venue, state=state.value, attempt=self.attempt)
        self.state = state

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, subscription: Dict[str, Any]) -> None:
        """Add a subscription; it is re-sent after every reconnect."""
        if subscription not in self.subscriptions:
            self.subscriptions.append(subscription)
        if self.state == ConnectionState.CONNECTED:
            await self._send_subscribe(subscription)

    async def _send_subscribe(self, subscription: Dict[str, Any]) -> None:
        if self._ws is None:
            return
        await self._ws.send_json({"method": "subscribe", "subscription": subscription})
        logger.debug("event_stream.subscribed", venue=self.venue, channel=subscription.get("type"))

    # =========================================================================
    # Messages
    # =========================================================================

    async def handle_message(self, raw: str) -> None:
        """Dispatch one websocket text frame."""
        try:
            message = json.loads(raw)
        except ValueError as e:
            logger.warning("event_stream.malformed_message", venue=self.venue, error=str(e))
            return
        if not isinstance(message, dict):
            logger.debug("event_stream.unexpected_message", venue=self.venue)
            return

        channel = message.get("channel")
        data = message.get("data")

        if channel == USER_FILLS:
            if isinstance(data, dict) and data.get("isSnapshot"):
                logger.debug("event_stream.snapshot_ignored", venue=self.venue)
                return
            for fill in parse_user_fills(self.venue, data or {}):
                await self.reconciler.reconcile_fill(fill)
        elif channel == ORDER_UPDATES:
            for update in parse_order_updates(self.venue, data or []):
                await self.reconciler.reconcile_order_update(update)
        else:
            logger.debug("event_stream.unhandled_channel", venue=self.venue, channel=channel)

    def status(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "state": self.state.value,
            "attempt": self.attempt,
            "exhausted": self.exhausted,
            "subscriptions": [s.get("type") for s in self.subscriptions],
        }
