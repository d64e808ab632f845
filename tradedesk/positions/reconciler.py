"""Fill reconciliation: the only path that turns venue fills into position state.

Fills arrive from an at-least-once transport in arbitrary order. Each
position gets its own bounded queue drained by a single consumer task, so
fills for one position are applied strictly one at a time while fills for
different positions proceed concurrently.
"""
import asyncio
from typing import Dict, List, Optional, Tuple

import structlog

from tradedesk.core.models import (
    Fill, LedgerEntry, OrderIntent, OrderUpdate, Position, PositionStatus,
)
from tradedesk.positions.store import PositionStore

logger = structlog.get_logger(__name__)


def infer_intent(fill: Fill) -> OrderIntent:
    """Classify a fill whose order is unknown from its payload.

    A non-zero realized P&L marks an exit. This cannot see a breakeven
    exit, so it is only used when the order's declared intent is missing.
    """
    if fill.realized_pnl is not None and fill.realized_pnl != 0:
        return OrderIntent.EXIT
    return OrderIntent.ENTRY


class FillReconciler:
    """Applies fill and order-update notifications to the position store."""

    def __init__(self, store: PositionStore, queue_size: int = 1000):
        self.store = store
        self.queue_size = queue_size
        self._queues: Dict[str, asyncio.Queue] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self._deferred: Dict[str, List[Fill]] = {}

    # Routing

    async def reconcile_fill(self, fill: Fill) -> None:
        """Route a fill to the consumer of the position it belongs to."""
        position_id, intent = self._resolve(fill)
        if position_id is None:
            logger.warning(
                "reconciler.unmatched_fill",
                venue=fill.venue,
                instrument=fill.instrument,
                order_id=fill.order_id,
                fill_id=fill.fill_id,
            )
            return

        queue = self._queues.get(position_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_size)
            self._queues[position_id] = queue
        consumer = self._consumers.get(position_id)
        if consumer is None or consumer.done():
            self._consumers[position_id] = asyncio.create_task(
                self._consume(position_id, queue), name=f"fills-{position_id}"
            )

        await queue.put(fill.model_copy(update={"intent": intent}))

    def _resolve(self, fill: Fill) -> Tuple[Optional[str], OrderIntent]:
        order = self.store.find_order(fill.venue, fill.order_id, fill.client_order_id)
        if order is not None:
            return order.position_id, order.intent

        position = self.store.find_active(fill.venue, fill.instrument)
        if position is None:
            return None, OrderIntent.ENTRY

        intent = fill.intent or infer_intent(fill)
        logger.warning(
            "reconciler.intent_inferred",
            position_id=position.id,
            order_id=fill.order_id,
            intent=intent.value,
        )
        return position.id, intent

    async def _consume(self, position_id: str, queue: asyncio.Queue) -> None:
        while True:
            fill = await queue.get()
            try:
                await self.apply_fill(position_id, fill)
            except Exception as e:
                logger.error(
                    "reconciler.fill_failed",
                    position_id=position_id,
                    fill_id=fill.fill_id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                queue.task_done()

            if queue.empty() and self._is_finished(position_id):
                # No await between the check and the removal, so no fill can
                # slip into the queue after this consumer decided to exit.
                self._queues.pop(position_id, None)
                self._consumers.pop(position_id, None)
                return

    def _is_finished(self, position_id: str) -> bool:
        position = self.store.get(position_id)
        return position is None or position.status == PositionStatus.CLOSED

    # Critical section

    async def apply_fill(self, position_id: str, fill: Fill) -> Optional[LedgerEntry]:
        """Apply one fill to a position under its lock.

        Duplicate fill ids and fills for closed positions are absorbed. An
        exit fill that overtakes the first entry fill is deferred and
        replayed right after that entry fill.

        The position is committed before any order bookkeeping. If the
        commit fails, the in-memory position is rolled back so that a
        redelivery of the same fill is applied again.

        Returns:
            The ledger entry written, or None if nothing was applied
        """
        intent = fill.intent or infer_intent(fill)

        async with self.store.locked(position_id) as position:
            snapshot = position.model_copy(deep=True)
            deferred_fills: List[Fill] = []
            entry = self._apply_locked(position, fill, intent)
            if entry is None:
                return None

            applied = [fill]
            if intent == OrderIntent.ENTRY:
                deferred_fills = self._deferred.pop(position_id, [])
                for deferred in deferred_fills:
                    if self._apply_locked(position, deferred, OrderIntent.EXIT) is not None:
                        applied.append(deferred)

            try:
                await self.store.commit(position)
            except Exception:
                self.store.restore(snapshot)
                if deferred_fills:
                    self._deferred[position_id] = deferred_fills + self._deferred.get(position_id, [])
                raise

        for applied_fill in applied:
            await self._record_order_fill(applied_fill)

        logger.info(
            "reconciler.fill_applied",
            position_id=position_id,
            fill_id=fill.fill_id,
            kind=entry.kind.value,
            size=str(fill.size),
            price=str(fill.price),
            status=position.status.value,
            filled_size=str(position.filled_size),
            remaining_size=str(position.remaining_size),
            entry_price=str(position.entry_price),
            realized_pnl=str(position.realized_pnl),
        )
        return entry

    async def _record_order_fill(self, fill: Fill) -> None:
        order = self.store.find_order(fill.venue, fill.order_id, fill.client_order_id)
        if order is None:
            return
        if order.order_id is None:
            order.order_id = fill.order_id
        order.record_fill(fill)
        try:
            await self.store.save_order(order)
        except Exception as e:
            # The position is already committed; order totals catch up on the next save
            logger.error(
                "reconciler.order_record_failed",
                order_id=fill.order_id,
                fill_id=fill.fill_id,
                error=str(e),
            )

    def _apply_locked(
        self, position: Position, fill: Fill, intent: OrderIntent
    ) -> Optional[LedgerEntry]:
        if position.has_fill(fill.fill_id):
            logger.debug("reconciler.duplicate_fill", position_id=position.id, fill_id=fill.fill_id)
            return None

        if position.status == PositionStatus.CLOSED:
            logger.warning(
                "reconciler.fill_on_closed_position",
                position_id=position.id,
                fill_id=fill.fill_id,
            )
            return None

        if intent == OrderIntent.EXIT:
            if position.status == PositionStatus.CREATED:
                pending = self._deferred.setdefault(position.id, [])
                if all(f.fill_id != fill.fill_id for f in pending):
                    pending.append(fill)
                logger.info("reconciler.exit_fill_deferred", position_id=position.id, fill_id=fill.fill_id)
                return None
            return position.apply_exit_fill(fill)

        return position.apply_entry_fill(fill)

    # Order updates

    async def reconcile_order_update(self, update: OrderUpdate) -> None:
        """Copy order metadata from an update. Never touches position state."""
        order = self.store.find_order(update.venue, update.order_id, update.client_order_id)
        if order is None:
            logger.debug("reconciler.unknown_order_update", venue=update.venue, order_id=update.order_id)
            return
        if order.order_id is None:
            order.order_id = update.order_id
        previous = order.status
        order.apply_update(update)
        try:
            await self.store.save_order(order)
        except Exception as e:
            logger.error("reconciler.order_update_failed", order_id=update.order_id, error=str(e))
        if order.status != previous:
            logger.info(
                "reconciler.order_ended",
                position_id=order.position_id,
                order_id=update.order_id,
                intent=order.intent.value,
                status=order.status.value,
                venue_status=update.status,
                filled_size=str(order.filled_size),
            )
        logger.debug(
            "reconciler.order_updated",
            order_id=update.order_id,
            limit_price=str(update.limit_price),
            client_order_id=update.client_order_id,
        )

    # Lifecycle

    async def drain(self) -> None:
        """Wait until every queued fill has been applied."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def stop(self) -> None:
        """Drain queues, then cancel the consumer tasks."""
        await self.drain()
        consumers = list(self._consumers.values())
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)
        self._consumers.clear()
        self._queues.clear()

    @property
    def pending_deferred(self) -> int:
        return sum(len(fills) for fills in self._deferred.values())

