"""Trading orchestrator - ties scanning, admission, exits and trailing together."""
import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from tradedesk.core.config import TradingConfig, trading_config
from tradedesk.core.exceptions import UnknownVenueError
from tradedesk.core.models import (
    ExitDecision, Fill, Opportunity, OrderIntent, OrderSide, OrderStatus,
    OrderUpdate, Position, PositionDirection, TradeOrder, TrailingEvaluation,
    utc_now,
)
from tradedesk.positions.reconciler import FillReconciler
from tradedesk.positions.store import PositionStore
from tradedesk.risk.exit_arbiter import ExitDecisionArbiter
from tradedesk.risk.trailing import TrailingAdjuster
from tradedesk.strategies.platform_manager import PlatformManager, VenueRegistry

logger = structlog.get_logger(__name__)

LOCK_NAME = "trade-monitor"


def _client_order_id() -> str:
    # 128-bit hex, the client id format Hyperliquid accepts
    return f"0x{uuid4().hex}"


class TradingEngine:
    """
    Orchestrates one trading desk across all registered venues.

    Responsibilities:
    - Ranks opportunities and admits them under global and per-venue caps
    - Creates CREATED positions and submits entry orders tagged ENTRY
    - Sweeps open positions through the exit arbiter, submitting EXIT orders
    - Applies accepted trailing adjustments
    - Runs the scheduled loop under a persisted lease lock

    Position state only moves to OPEN/CLOSED through the fill reconciler;
    the engine never assumes an order filled.
    """

    def __init__(
        self,
        registry: VenueRegistry,
        store: PositionStore,
        reconciler: FillReconciler,
        platform_manager: PlatformManager,
        exit_arbiter: ExitDecisionArbiter,
        trailing: TrailingAdjuster,
        database=None,
        config: Optional[TradingConfig] = None,
    ):
        self.registry = registry
        self.store = store
        self.reconciler = reconciler
        self.platform_manager = platform_manager
        self.exit_arbiter = exit_arbiter
        self.trailing = trailing
        self.database = database
        self.config = config or trading_config

        # Control
        self._running = False
        self._main_task: Optional[asyncio.Task] = None
        self._last_cycle_at = None

    # =========================================================================
    # Orchestrator boundary
    # =========================================================================

    async def scan_for_opportunities(self) -> List[Opportunity]:
        return await self.platform_manager.scan_for_opportunities()

    async def evaluate_exit(
        self, position: Position, current_price: Optional[Decimal] = None
    ) -> ExitDecision:
        close_all = await self._close_all_requested()
        return await self.exit_arbiter.evaluate_exit(position, current_price, close_all=close_all)

    async def evaluate_trailing(self, position: Position, current_price: Decimal) -> TrailingEvaluation:
        return await self.trailing.evaluate_trailing(position, current_price)

    async def reconcile_fill(self, fill: Fill) -> None:
        await self.reconciler.reconcile_fill(fill)

    async def reconcile_order_update(self, update: OrderUpdate) -> None:
        await self.reconciler.reconcile_order_update(update)

    # =========================================================================
    # Entries
    # =========================================================================

    async def start_trading(self) -> List[Position]:
        """Scan, rank and admit opportunities until a cap is reached.

        Returns:
            Positions created in this pass (CREATED, or CLOSED if the
            entry submission failed)
        """
        opportunities = await self.scan_for_opportunities()
        if not opportunities:
            logger.info("engine.no_opportunities")
            return []

        total_active = self.store.count_active()
        venue_active: Dict[str, int] = {}
        entered_instruments = set()
        created: List[Position] = []

        for opportunity in opportunities:
            if total_active >= self.config.max_total_positions:
                logger.info(
                    "engine.global_cap_reached",
                    active=total_active,
                    max_total_positions=self.config.max_total_positions,
                )
                break

            venue = opportunity.venue
            params = self.registry.get(venue).params
            if venue not in venue_active:
                venue_active[venue] = self.store.count_active(venue)
            if venue_active[venue] >= params.max_open_positions:
                logger.info(
                    "engine.venue_cap_reached",
                    venue=venue,
                    instrument=opportunity.instrument,
                    active=venue_active[venue],
                    max_open_positions=params.max_open_positions,
                )
                continue

            key = opportunity.instrument if self.config.cross_venue_rebuy_prevention else (
                venue, opportunity.instrument
            )
            if key in entered_instruments:
                continue

            try:
                position = await self.enter_position(opportunity)
            except Exception as e:
                logger.error(
                    "engine.entry_failed",
                    venue=venue,
                    instrument=opportunity.instrument,
                    error=str(e),
                    exc_info=True,
                )
                # Count whatever was left active so the caps stay honest
                total_active = self.store.count_active()
                venue_active[venue] = self.store.count_active(venue)
                continue
            if position is None:
                continue
            created.append(position)
            if not position.is_closed:
                total_active += 1
                venue_active[venue] += 1
                entered_instruments.add(key)

        return created

    async def enter_position(self, opportunity: Opportunity) -> Optional[Position]:
        """Create a CREATED position and submit its entry order.

        The ENTRY order is registered under its client order id before it
        is sent, so fills that beat the submission response still match.
        A failed submission closes the position with zero size and the
        failure as close reason, so it never occupies a slot.
        """
        registration = self.registry.get(opportunity.venue)
        params = registration.params
        decision = opportunity.decision
        direction = decision.direction
        if direction is None:
            logger.warning(
                "engine.opportunity_without_direction",
                venue=opportunity.venue,
                instrument=opportunity.instrument,
            )
            return None

        try:
            price = await registration.market_data.get_current_price(opportunity.instrument)
        except Exception as e:
            logger.warning(
                "engine.entry_price_unavailable",
                venue=opportunity.venue,
                instrument=opportunity.instrument,
                error=str(e),
            )
            return None

        amount_in = decision.recommended_amount or params.default_amount_in
        position = Position(
            venue=opportunity.venue,
            instrument=opportunity.instrument,
            position_type=params.position_type,
            direction=direction,
            currency=params.currency,
            amount_in=amount_in,
            leverage=decision.leverage or params.default_leverage,
            current_price=price,
            stop_loss_price=registration.strategy.get_stop_loss_price(direction, price, params),
            take_profit_price=registration.strategy.get_take_profit_price(direction, price, params),
            metadata={"entry_reason": decision.reason, "entry_confidence": decision.confidence},
        )
        await self.store.add(position)

        side = OrderSide.BUY if direction == PositionDirection.LONG else OrderSide.SELL
        order = TradeOrder(
            position_id=position.id,
            venue=position.venue,
            instrument=position.instrument,
            intent=OrderIntent.ENTRY,
            side=side,
            client_order_id=_client_order_id(),
            metadata={"amount_in": str(amount_in)},
        )
        try:
            await self.store.add_order(order)
            handle = await registration.execution.submit_entry(
                position.instrument,
                side,
                amount_in,
                position.leverage,
                stop_loss_price=position.stop_loss_price,
                take_profit_price=position.take_profit_price,
                client_order_id=order.client_order_id,
            )
        except Exception as e:
            order.status = OrderStatus.FAILED
            order.metadata["error"] = str(e)
            await self._save_order(order)
            async with self.store.locked(position.id) as live:
                live.close_unfilled(f"Entry submission failed: {e}")
                await self.store.commit(live)
            logger.error(
                "engine.entry_submission_failed",
                position_id=position.id,
                venue=position.venue,
                instrument=position.instrument,
                error=str(e),
            )
            return self.store.get(position.id)

        order.order_id = handle.order_id
        await self._save_order(order)

        logger.info(
            "engine.position_created",
            position_id=position.id,
            venue=position.venue,
            instrument=position.instrument,
            direction=direction.value,
            amount_in=amount_in,
            price=str(price),
            stop_loss=str(position.stop_loss_price),
            take_profit=str(position.take_profit_price),
            order_id=handle.order_id,
            confidence=decision.confidence,
        )
        return self.store.get(position.id)

    # =========================================================================
    # Exits
    # =========================================================================

    async def monitor_and_close_positions(self) -> List[str]:
        """Run every open position through the exit arbiter.

        A failure on one position is logged and the sweep moves on.

        Returns:
            Ids of positions an exit order was submitted for
        """
        close_all = await self._close_all_requested()
        closing: List[str] = []

        for position in self.store.open_positions():
            try:
                registration = self.registry.get(position.venue)
            except UnknownVenueError as e:
                logger.error("engine.unknown_venue", position_id=position.id, error=str(e))
                continue

            try:
                if await self._has_pending_exit(position.id):
                    logger.debug("engine.exit_pending", position_id=position.id)
                    continue

                price = await self._refresh_price(position, registration.market_data)
                decision = await self.exit_arbiter.evaluate_exit(position, price, close_all=close_all)
                if not decision.should_exit:
                    logger.debug(
                        "engine.position_held",
                        position_id=position.id,
                        reason=decision.reason,
                    )
                    continue

                logger.info(
                    "engine.exit_decided",
                    position_id=position.id,
                    instrument=position.instrument,
                    reason=decision.reason,
                    confidence=decision.confidence,
                    urgency=decision.urgency.value,
                )
                if await self.close_position(position, decision.reason) is not None:
                    closing.append(position.id)
            except Exception as e:
                logger.error(
                    "engine.exit_failed",
                    position_id=position.id,
                    venue=position.venue,
                    instrument=position.instrument,
                    error=str(e),
                    exc_info=True,
                )

        return closing

    async def close_position(self, position: Position, reason: str) -> Optional[TradeOrder]:
        """Submit a reduce-only exit for the position's remaining size.

        The EXIT order is registered before it is sent, keyed by client
        order id, so an early fill is never mistaken for an entry.
        """
        registration = self.registry.get(position.venue)
        side = OrderSide.SELL if position.direction != PositionDirection.SHORT else OrderSide.BUY
        order = TradeOrder(
            position_id=position.id,
            venue=position.venue,
            instrument=position.instrument,
            intent=OrderIntent.EXIT,
            side=side,
            client_order_id=_client_order_id(),
            size=position.remaining_size,
            metadata={"reason": reason},
        )
        await self.store.add_order(order)

        try:
            handle = await registration.execution.submit_exit(position, client_order_id=order.client_order_id)
        except Exception as e:
            order.status = OrderStatus.FAILED
            order.metadata["error"] = str(e)
            await self._save_order(order)
            logger.error(
                "engine.exit_submission_failed",
                position_id=position.id,
                venue=position.venue,
                instrument=position.instrument,
                error=str(e),
            )
            return None

        order.order_id = handle.order_id
        await self._save_order(order)

        async with self.store.locked(position.id) as live:
            if not live.is_closed:
                live.close_reason = reason
                await self.store.commit(live)

        logger.info(
            "engine.exit_submitted",
            position_id=position.id,
            order_id=handle.order_id,
            size=str(position.remaining_size),
            reason=reason,
        )
        return order

    async def _has_pending_exit(self, position_id: str) -> bool:
        """True while an EXIT order for the position may still fill.

        Orders quiet for longer than the pending-exit timeout are marked
        FAILED so a lost cancel or fill notification cannot pin the
        position.
        """
        timeout = timedelta(seconds=self.config.pending_exit_timeout_seconds)
        now = utc_now()
        pending = False
        for order in self.store.orders_for_position(position_id):
            if order.intent != OrderIntent.EXIT or not order.status.is_pending:
                continue
            if now - (order.updated_at or order.created_at) < timeout:
                pending = True
                continue
            order.status = OrderStatus.FAILED
            order.metadata["error"] = "no fill or status update before timeout"
            logger.warning(
                "engine.exit_order_stale",
                position_id=position_id,
                order_id=order.order_id,
                filled_size=str(order.filled_size),
            )
            await self._save_order(order)
        return pending

    async def _save_order(self, order: TradeOrder) -> None:
        # The in-memory index is updated even when persistence fails
        try:
            await self.store.save_order(order)
        except Exception as e:
            logger.error(
                "engine.order_save_failed",
                position_id=order.position_id,
                order_id=order.order_id,
                client_order_id=order.client_order_id,
                error=str(e),
            )

    async def _refresh_price(self, position: Position, market_data) -> Optional[Decimal]:
        try:
            price = await market_data.get_current_price(position.instrument)
        except Exception as e:
            logger.warning(
                "engine.price_unavailable",
                position_id=position.id,
                instrument=position.instrument,
                error=str(e),
            )
            return None

        async with self.store.locked(position.id) as live:
            if live.is_open:
                live.current_price = price
                await self.store.commit(live)
        position.current_price = price
        return price

    # =========================================================================
    # Trailing
    # =========================================================================

    async def apply_trailing(self) -> int:
        """Evaluate trailing for every open position and apply accepted moves.

        Returns:
            Number of positions trailed
        """
        trailed = 0
        for position in self.store.open_positions():
            if position.current_price is None:
                continue
            try:
                if await self._has_pending_exit(position.id):
                    continue
                evaluation = await self.evaluate_trailing(position, position.current_price)
                if not evaluation.should_trail:
                    logger.debug("engine.trailing_skipped", position_id=position.id, reason=evaluation.reason)
                    continue

                async with self.store.locked(position.id) as live:
                    if not live.is_open:
                        continue
                    live.apply_trail(
                        evaluation.new_stop_loss_price,
                        evaluation.new_take_profit_price,
                    )
                    await self.store.commit(live)
            except Exception as e:
                logger.error(
                    "engine.trailing_failed",
                    position_id=position.id,
                    error=str(e),
                    exc_info=True,
                )
                continue

            trailed += 1
            logger.info(
                "engine.trailing_applied",
                position_id=position.id,
                stop_loss=str(evaluation.new_stop_loss_price),
                take_profit=str(evaluation.new_take_profit_price),
                progress=round(evaluation.progress_to_tp, 4),
            )
        return trailed

    # =========================================================================
    # Scheduled loop
    # =========================================================================

    async def run_cycle(self) -> bool:
        """One scheduled pass: exit sweep, trailing, then entry scan.

        Returns:
            False if another runner holds the lease lock
        """
        if self.database is not None:
            lease_until = utc_now() + timedelta(seconds=self.config.lock_lease_seconds)
            if not await self.database.acquire_lock(LOCK_NAME, lease_until):
                logger.debug("engine.lock_busy", lock=LOCK_NAME)
                return False

        try:
            # Every event logged during this pass carries the cycle id
            with structlog.contextvars.bound_contextvars(cycle=uuid4().hex[:8]):
                await self.monitor_and_close_positions()
                await self.apply_trailing()

                active = self.store.count_active()
                if active < self.config.entry_scan_open_threshold:
                    await self.start_trading()
                else:
                    logger.info(
                        "engine.entry_scan_skipped",
                        active=active,
                        threshold=self.config.entry_scan_open_threshold,
                    )
            self._last_cycle_at = utc_now()
        finally:
            if self.database is not None:
                await self.database.release_lock(LOCK_NAME)
        return True

    async def start(self):
        """Start event streams and the scan loop."""
        logger.info("engine.starting", venues=self.registry.venues)
        self._running = True

        for registration in self.registry.enabled():
            if registration.event_stream is not None:
                registration.event_stream.start()

        self._main_task = asyncio.create_task(self._main_loop())
        logger.info("engine.started", interval=self.config.scan_interval_seconds)

    async def stop(self):
        """Stop the loop, event streams and fill consumers."""
        logger.info("engine.stopping")
        self._running = False

        if self._main_task:
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                pass
            self._main_task = None

        for venue in self.registry.venues:
            stream = self.registry.get(venue).event_stream
            if stream is not None:
                await stream.stop()

        await self.reconciler.stop()
        logger.info("engine.stopped")

    async def _main_loop(self):
        """Main scheduling loop."""
        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("engine.loop_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.config.scan_interval_seconds)

    async def _close_all_requested(self) -> bool:
        if self.config.close_all_positions:
            return True
        if self.database is None:
            return False
        try:
            settings = await self.database.get_settings()
        except Exception as e:
            logger.warning("engine.settings_unavailable", error=str(e))
            return False
        return settings["close_all_positions"]

    def get_status(self) -> Dict[str, Any]:
        """Get current engine status."""
        venues = {}
        for venue in self.registry.venues:
            registration = self.registry.get(venue)
            venues[venue] = {
                'enabled': registration.params.enabled,
                'active_positions': self.store.count_active(venue),
                'open_positions': len(self.store.open_positions(venue)),
                'max_open_positions': registration.params.max_open_positions,
                'stream': registration.event_stream.status() if registration.event_stream else None,
            }
        return {
            'running': self._running,
            'last_cycle_at': self._last_cycle_at.isoformat() if self._last_cycle_at else None,
            'active_positions': self.store.count_active(),
            'max_total_positions': self.config.max_total_positions,
            'venues': venues,
            'pending_deferred_fills': self.reconciler.pending_deferred,
            'positions': [
                {
                    'id': p.id,
                    'venue': p.venue,
                    'instrument': p.instrument,
                    'direction': p.direction.value if p.direction else None,
                    'status': p.status.value,
                    'remaining_size': str(p.remaining_size),
                    'entry_price': str(p.entry_price) if p.entry_price is not None else None,
                    'stop_loss': str(p.stop_loss_price) if p.stop_loss_price is not None else None,
                    'take_profit': str(p.take_profit_price) if p.take_profit_price is not None else None,
                }
                for p in self.store.active_positions()
            ],
        }
