"""Unit tests for fill reconciliation."""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from tradedesk.core.models import (
    OrderIntent, OrderSide, OrderStatus, OrderUpdate, PositionStatus, TradeOrder,
)
from tradedesk.positions.reconciler import FillReconciler, infer_intent
from tradedesk.positions.store import PositionStore

ENTRY_ORDER = "1000"
EXIT_ORDER = "2000"


async def _add_with_orders(store, position):
    await store.add(position)
    for order_id, intent, side in (
        (ENTRY_ORDER, OrderIntent.ENTRY, OrderSide.BUY),
        (EXIT_ORDER, OrderIntent.EXIT, OrderSide.SELL),
    ):
        await store.add_order(TradeOrder(
            position_id=position.id,
            venue=position.venue,
            instrument=position.instrument,
            intent=intent,
            side=side,
            order_id=order_id,
        ))
    return position


@pytest.fixture
def db_store(test_database):
    return PositionStore(test_database)


@pytest_asyncio.fixture
async def db_reconciler(db_store):
    reconciler = FillReconciler(db_store)
    yield reconciler
    await reconciler.stop()


class TestInferIntent:
    """Test the payload heuristic used for unknown orders."""

    def test_non_zero_pnl_is_exit(self, make_fill):
        assert infer_intent(make_fill(realized_pnl="-12.5")) == OrderIntent.EXIT

    def test_missing_pnl_is_entry(self, make_fill):
        assert infer_intent(make_fill()) == OrderIntent.ENTRY

    def test_breakeven_looks_like_entry(self, make_fill):
        """The heuristic cannot see a breakeven exit."""
        assert infer_intent(make_fill(realized_pnl="0")) == OrderIntent.ENTRY


class TestEntryFills:
    """Test entry fill application."""

    @pytest.mark.asyncio
    async def test_weighted_entry_price(self, store, reconciler, make_position, make_fill):
        """Fills of 100@10 and 50@13 average to 11."""
        position = await _add_with_orders(store, make_position(status=PositionStatus.CREATED))

        await reconciler.reconcile_fill(make_fill(ENTRY_ORDER, size="100", price="10"))
        await reconciler.reconcile_fill(make_fill(ENTRY_ORDER, size="50", price="13"))
        await reconciler.drain()

        result = store.get(position.id)
        assert result.status == PositionStatus.OPEN
        assert result.filled_size == Decimal("150")
        assert result.remaining_size == Decimal("150")
        assert result.entry_price == Decimal("11")

    @pytest.mark.asyncio
    async def test_duplicate_fill_applied_once(self, store, reconciler, make_position, make_fill):
        """Redelivered fills are absorbed by the ledger."""
        position = await _add_with_orders(store, make_position(status=PositionStatus.CREATED))
        fill = make_fill(ENTRY_ORDER, size="2", price="100", fill_id="tid-77")

        await reconciler.reconcile_fill(fill)
        await reconciler.reconcile_fill(fill)
        await reconciler.drain()

        result = store.get(position.id)
        assert result.filled_size == Decimal("2")
        assert len(result.fills) == 1

    @pytest.mark.asyncio
    async def test_concurrent_fills_serialized(self, store, reconciler, make_position, make_fill):
        """Concurrent deliveries for one position never lose an update."""
        position = await _add_with_orders(store, make_position(status=PositionStatus.CREATED))
        fills = [make_fill(ENTRY_ORDER, size="1", price="100") for _ in range(20)]

        await asyncio.gather(*(reconciler.reconcile_fill(f) for f in fills))
        await reconciler.drain()

        result = store.get(position.id)
        assert result.filled_size == Decimal("20")
        assert len(result.fills) == 20
        assert result.entry_price == Decimal("100")

    @pytest.mark.asyncio
    async def test_order_totals_recorded(self, store, reconciler, make_position, make_fill):
        await _add_with_orders(store, make_position(status=PositionStatus.CREATED))

        await reconciler.reconcile_fill(make_fill(ENTRY_ORDER, size="3", price="20"))
        await reconciler.drain()

        order = store.get_order("hyperliquid", ENTRY_ORDER)
        assert order.filled_size == Decimal("3")
        assert order.average_fill_price == Decimal("20")
        assert order.status == OrderStatus.FILLED


class TestExitFills:
    """Test exit fill application."""

    @pytest.mark.asyncio
    async def test_full_exit_closes_with_pnl(self, store, reconciler, make_position, make_fill):
        """Exit of the whole remaining size closes and books P&L."""
        position = await _add_with_orders(
            store, make_position(size=Decimal("150"), entry_price=Decimal("11"))
        )

        await reconciler.reconcile_fill(
            make_fill(EXIT_ORDER, size="150", price="12.4", side=OrderSide.SELL, realized_pnl="200")
        )
        await reconciler.drain()

        result = store.get(position.id)
        assert result.status == PositionStatus.CLOSED
        assert result.remaining_size == 0
        assert result.realized_pnl == Decimal("200")

    @pytest.mark.asyncio
    async def test_breakeven_exit_classified_by_order(self, store, reconciler, make_position, make_fill):
        """A zero-P&L exit still reduces the position."""
        position = await _add_with_orders(store, make_position(size=Decimal("5")))

        await reconciler.reconcile_fill(
            make_fill(EXIT_ORDER, size="5", price="50000", side=OrderSide.SELL, realized_pnl="0")
        )
        await reconciler.drain()

        result = store.get(position.id)
        assert result.status == PositionStatus.CLOSED
        assert result.filled_size == Decimal("5")

    @pytest.mark.asyncio
    async def test_exit_before_entry_is_deferred(self, store, reconciler, make_position, make_fill):
        """An exit fill that overtakes the entry fill is replayed after it."""
        position = await _add_with_orders(store, make_position(status=PositionStatus.CREATED))

        await reconciler.reconcile_fill(
            make_fill(EXIT_ORDER, size="4", price="110", side=OrderSide.SELL, realized_pnl="40")
        )
        await reconciler.drain()

        assert store.get(position.id).status == PositionStatus.CREATED
        assert reconciler.pending_deferred == 1

        await reconciler.reconcile_fill(make_fill(ENTRY_ORDER, size="4", price="100"))
        await reconciler.drain()

        result = store.get(position.id)
        assert result.status == PositionStatus.CLOSED
        assert result.realized_pnl == Decimal("40")
        assert [entry.kind.value for entry in result.fills] == ["entry", "exit"]
        assert reconciler.pending_deferred == 0

    @pytest.mark.asyncio
    async def test_fill_on_closed_position_ignored(self, store, reconciler, make_position, make_fill):
        position = await _add_with_orders(store, make_position(size=Decimal("1")))
        await reconciler.reconcile_fill(
            make_fill(EXIT_ORDER, size="1", side=OrderSide.SELL, realized_pnl="5")
        )
        await reconciler.drain()

        await reconciler.reconcile_fill(make_fill(ENTRY_ORDER, size="1"))
        await reconciler.drain()

        result = store.get(position.id)
        assert result.status == PositionStatus.CLOSED
        assert len(result.fills) == 1


class TestFillRouting:
    """Test matching fills to positions."""

    @pytest.mark.asyncio
    async def test_unknown_order_matched_by_instrument(self, store, reconciler, make_position, make_fill):
        """Without an order record the active position for the instrument is used."""
        position = make_position(status=PositionStatus.CREATED)
        await store.add(position)

        await reconciler.reconcile_fill(make_fill("9999", size="2", price="100"))
        await reconciler.drain()

        assert store.get(position.id).filled_size == Decimal("2")

    @pytest.mark.asyncio
    async def test_unmatched_fill_dropped(self, store, reconciler, make_fill):
        await reconciler.reconcile_fill(make_fill("9999", instrument="DOGE"))
        await reconciler.drain()

        assert store.list() == []

    @pytest.mark.asyncio
    async def test_order_update_never_touches_position(self, store, reconciler, make_position):
        position = await _add_with_orders(store, make_position(status=PositionStatus.CREATED))

        await reconciler.reconcile_order_update(OrderUpdate(
            order_id=ENTRY_ORDER,
            venue="hyperliquid",
            instrument="BTC",
            side=OrderSide.BUY,
            limit_price=Decimal("50100"),
            client_order_id="0xfeed",
        ))

        order = store.get_order("hyperliquid", ENTRY_ORDER)
        assert order.limit_price == Decimal("50100")
        assert order.client_order_id == "0xfeed"
        assert store.get(position.id).status == PositionStatus.CREATED

    @pytest.mark.asyncio
    async def test_fill_matched_by_client_order_id(self, store, reconciler, make_position, make_fill):
        """A fill that beats the submission ack is matched through the client id."""
        position = make_position(size=Decimal("1"))
        await store.add(position)
        await store.add_order(TradeOrder(
            position_id=position.id,
            venue=position.venue,
            instrument=position.instrument,
            intent=OrderIntent.EXIT,
            side=OrderSide.SELL,
            client_order_id="0xc1",
        ))

        await reconciler.reconcile_fill(make_fill(
            "5555", size="1", side=OrderSide.SELL, realized_pnl="0", client_order_id="0xc1",
        ))
        await reconciler.drain()

        assert store.get(position.id).status == PositionStatus.CLOSED
        order = store.get_order("hyperliquid", "5555")
        assert order.client_order_id == "0xc1"
        assert order.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_venue_direction_classifies_unknown_order(self, store, reconciler, make_position, make_fill):
        """A breakeven close of an unknown order is taken from the venue's direction."""
        position = make_position(size=Decimal("1"))
        await store.add(position)

        await reconciler.reconcile_fill(make_fill(
            "9999", size="1", side=OrderSide.SELL, realized_pnl="0", intent=OrderIntent.EXIT,
        ))
        await reconciler.drain()

        result = store.get(position.id)
        assert result.status == PositionStatus.CLOSED
        assert result.remaining_size == 0
        assert [entry.kind.value for entry in result.fills] == ["exit"]

    @pytest.mark.asyncio
    async def test_cancel_update_ends_order(self, store, reconciler, make_position):
        position = await _add_with_orders(store, make_position())

        await reconciler.reconcile_order_update(OrderUpdate(
            order_id=EXIT_ORDER,
            venue="hyperliquid",
            instrument="BTC",
            side=OrderSide.SELL,
            status="marginCanceled",
        ))

        order = store.get_order("hyperliquid", EXIT_ORDER)
        assert order.status == OrderStatus.CANCELLED
        assert order.metadata["venue_status"] == "marginCanceled"
        assert store.get(position.id).status == PositionStatus.OPEN


class TestPersistenceFailures:
    """Test that storage errors never split memory from the database."""

    @pytest.mark.asyncio
    async def test_order_save_failure_keeps_position(
        self, test_database, db_store, db_reconciler, make_position, make_fill
    ):
        """The position is committed even when order bookkeeping cannot be saved."""
        position = await _add_with_orders(db_store, make_position(status=PositionStatus.CREATED))
        test_database.save_order = AsyncMock(side_effect=RuntimeError("disk full"))

        await db_reconciler.reconcile_fill(make_fill(ENTRY_ORDER, size="2", price="100"))
        await db_reconciler.drain()

        assert db_store.get(position.id).status == PositionStatus.OPEN
        stored = await test_database.get_position(position.id)
        assert stored.status == PositionStatus.OPEN
        assert stored.filled_size == Decimal("2")
        assert len(stored.fills) == 1

    @pytest.mark.asyncio
    async def test_commit_failure_rolls_back(
        self, test_database, db_store, db_reconciler, make_position, make_fill
    ):
        """A fill whose commit fails is undone in memory and applies on redelivery."""
        position = await _add_with_orders(db_store, make_position(status=PositionStatus.CREATED))
        fill = make_fill(ENTRY_ORDER, size="2", price="100", fill_id="tid-900")
        test_database.save_position = AsyncMock(side_effect=RuntimeError("database is locked"))

        await db_reconciler.reconcile_fill(fill)
        await db_reconciler.drain()

        result = db_store.get(position.id)
        assert result.status == PositionStatus.CREATED
        assert result.fills == []

        del test_database.save_position
        await db_reconciler.reconcile_fill(fill)
        await db_reconciler.drain()

        assert db_store.get(position.id).status == PositionStatus.OPEN
        stored = await test_database.get_position(position.id)
        assert stored.status == PositionStatus.OPEN
        assert [entry.fill_id for entry in stored.fills] == ["tid-900"]
