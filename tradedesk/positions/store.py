"""Authoritative position state.

Positions are held in memory, guarded by one asyncio.Lock per position,
and written through to the database after each committed mutation.
Readers always get deep copies so they never observe a half-applied
fill.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

import structlog

from tradedesk.core.models import Position, PositionStatus, TradeOrder

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (PositionStatus.CREATED, PositionStatus.OPEN)


class PositionStore:
    """In-memory position lifecycle store with optional persistence.

    Args:
        database: tradedesk.storage.database.Database, or None for a
            purely in-memory store.
    """

    def __init__(self, database=None):
        self.database = database
        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._orders: Dict[Tuple[str, str], TradeOrder] = {}
        self._orders_by_id: Dict[str, TradeOrder] = {}
        self._orders_by_client_id: Dict[Tuple[str, str], TradeOrder] = {}

    async def load(self) -> int:
        """Load active positions and their orders from the database.

        Returns:
            Number of positions loaded
        """
        if self.database is None:
            return 0

        positions = await self.database.get_positions(statuses=list(ACTIVE_STATUSES))
        for position in positions:
            self._positions[position.id] = position
            for order in await self.database.get_orders_for_position(position.id):
                self._index_order(order)

        logger.info("store.loaded", positions=len(positions), orders=len(self._orders_by_id))
        return len(positions)

    # Positions

    async def add(self, position: Position) -> Position:
        """Register a new position and persist it.

        A position that cannot be persisted is not kept in memory either.
        """
        if position.id in self._positions:
            raise ValueError(f"position {position.id} already exists")
        self._positions[position.id] = position.model_copy(deep=True)
        try:
            await self._persist(self._positions[position.id])
        except Exception:
            del self._positions[position.id]
            raise
        logger.info(
            "store.position_added",
            position_id=position.id,
            venue=position.venue,
            instrument=position.instrument,
            status=position.status.value,
        )
        return position.model_copy(deep=True)

    def get(self, position_id: str) -> Optional[Position]:
        """Snapshot of a position, or None."""
        position = self._positions.get(position_id)
        return position.model_copy(deep=True) if position else None

    def list(
        self,
        venue: Optional[str] = None,
        instrument: Optional[str] = None,
        statuses: Optional[List[PositionStatus]] = None,
    ) -> List[Position]:
        """Snapshots of positions matching all given filters, oldest first."""
        result = []
        for position in self._positions.values():
            if venue is not None and position.venue != venue:
                continue
            if instrument is not None and position.instrument != instrument:
                continue
            if statuses is not None and position.status not in statuses:
                continue
            result.append(position.model_copy(deep=True))
        result.sort(key=lambda p: p.created_at)
        return result

    def open_positions(self, venue: Optional[str] = None) -> List[Position]:
        return self.list(venue=venue, statuses=[PositionStatus.OPEN])

    def active_positions(self, venue: Optional[str] = None) -> List[Position]:
        """CREATED and OPEN positions: everything still occupying a slot."""
        return self.list(venue=venue, statuses=list(ACTIVE_STATUSES))

    def count_active(self, venue: Optional[str] = None) -> int:
        return sum(
            1 for p in self._positions.values()
            if p.status in ACTIVE_STATUSES and (venue is None or p.venue == venue)
        )

    def find_active(self, venue: str, instrument: str) -> Optional[Position]:
        """Most recent active position for a venue and instrument."""
        matches = self.list(venue=venue, instrument=instrument, statuses=list(ACTIVE_STATUSES))
        return matches[-1] if matches else None

    def lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[position_id] = lock
        return lock

    @asynccontextmanager
    async def locked(self, position_id: str) -> AsyncIterator[Position]:
        """Hold the position's lock and yield the live object.

        Only code inside this block may mutate the position; call commit()
        before leaving the block to persist the change.
        """
        if position_id not in self._positions:
            raise KeyError(f"unknown position {position_id}")
        async with self.lock_for(position_id):
            yield self._positions[position_id]

    async def commit(self, position: Position) -> None:
        """Persist a position mutated inside locked()."""
        await self._persist(position)

    def restore(self, snapshot: Position) -> None:
        """Put back a snapshot taken inside locked() after a failed commit.

        The caller must still hold the position's lock.
        """
        if snapshot.id not in self._positions:
            raise KeyError(f"unknown position {snapshot.id}")
        self._positions[snapshot.id] = snapshot

    async def _persist(self, position: Position) -> None:
        if self.database is not None:
            await self.database.save_position(position)

    # Orders

    async def add_order(self, order: TradeOrder) -> None:
        """Register an order so its fills can be matched and classified.

        Orders may be registered before the venue assigns an id; until
        then they are found by client order id.
        """
        self._index_order(order)
        if self.database is not None:
            await self.database.save_order(order)

    async def save_order(self, order: TradeOrder) -> None:
        self._index_order(order)
        if self.database is not None:
            await self.database.save_order(order)

    def get_order(self, venue: str, order_id: str) -> Optional[TradeOrder]:
        return self._orders.get((venue, order_id))

    def find_order(
        self, venue: str, order_id: Optional[str], client_order_id: Optional[str] = None
    ) -> Optional[TradeOrder]:
        """Look an order up by venue order id, then by client order id."""
        order = self._orders.get((venue, order_id)) if order_id else None
        if order is None and client_order_id:
            order = self._orders_by_client_id.get((venue, client_order_id))
        return order

    def orders_for_position(self, position_id: str) -> List[TradeOrder]:
        return [o for o in self._orders_by_id.values() if o.position_id == position_id]

    def _index_order(self, order: TradeOrder) -> None:
        self._orders_by_id[order.id] = order
        if order.order_id:
            self._orders[(order.venue, order.order_id)] = order
        if order.client_order_id:
            self._orders_by_client_id[(order.venue, order.client_order_id)] = order
