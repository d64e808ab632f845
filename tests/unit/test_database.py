"""Unit tests for database operations."""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradedesk.core.models import (
    FillKind, LedgerEntry, OrderIntent, OrderSide, OrderStatus,
    PositionDirection, PositionStatus, TradeOrder,
)
from tradedesk.positions.store import PositionStore


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def sample_position(make_position):
    """An open position with one entry in its ledger."""
    return make_position(
        size=Decimal("0.123456789012345678"),
        entry_price=Decimal("50000.123456789"),
        stop_loss_price=Decimal("45000.1"),
        take_profit_price=Decimal("60000.2"),
        amount_in=10**30 + 7,
        fills=[
            LedgerEntry(
                fill_id="tid-1",
                order_id="1000",
                kind=FillKind.ENTRY,
                side=OrderSide.BUY,
                size=Decimal("0.123456789012345678"),
                price=Decimal("50000.123456789"),
                timestamp=datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc),
            )
        ],
        metadata={"decision_reason": "AI: BUY (0.80)"},
    )


@pytest.fixture
def sample_order(sample_position):
    return TradeOrder(
        position_id=sample_position.id,
        venue="hyperliquid",
        instrument="BTC",
        intent=OrderIntent.ENTRY,
        side=OrderSide.BUY,
        order_id="1000",
        client_order_id="0xabc",
        size=Decimal("0.123456789012345678"),
    )


# =============================================================================
# Position Tests
# =============================================================================

class TestPositionOperations:
    """Test position database operations."""

    @pytest.mark.asyncio
    async def test_save_and_get_position(self, test_database, sample_position):
        await test_database.save_position(sample_position)

        retrieved = await test_database.get_position(sample_position.id)

        assert retrieved is not None
        assert retrieved.status == PositionStatus.OPEN
        assert retrieved.direction == PositionDirection.LONG
        assert retrieved.metadata["decision_reason"] == "AI: BUY (0.80)"
        assert len(retrieved.fills) == 1
        assert retrieved.fills[0].kind == FillKind.ENTRY

    @pytest.mark.asyncio
    async def test_exact_values_preserved(self, test_database, sample_position):
        """Decimals and huge integer amounts survive storage unchanged."""
        await test_database.save_position(sample_position)

        retrieved = await test_database.get_position(sample_position.id)

        assert retrieved.amount_in == 10**30 + 7
        assert retrieved.filled_size == Decimal("0.123456789012345678")
        assert retrieved.entry_price == Decimal("50000.123456789")
        assert retrieved.fills[0].timestamp == datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_ledger_not_duplicated(self, test_database, sample_position):
        await test_database.save_position(sample_position)
        sample_position.current_price = Decimal("51000")
        await test_database.save_position(sample_position)

        retrieved = await test_database.get_position(sample_position.id)

        assert len(retrieved.fills) == 1
        assert retrieved.current_price == Decimal("51000")

    @pytest.mark.asyncio
    async def test_get_positions_filtered(self, test_database, make_position):
        await test_database.save_position(make_position(instrument="BTC"))
        await test_database.save_position(make_position(instrument="ETH", status=PositionStatus.CREATED))
        await test_database.save_position(make_position(instrument="SOL", status=PositionStatus.CLOSED))

        active = await test_database.get_positions(
            statuses=[PositionStatus.CREATED, PositionStatus.OPEN]
        )
        eth = await test_database.get_positions(instrument="ETH")

        assert sorted(p.instrument for p in active) == ["BTC", "ETH"]
        assert [p.status for p in eth] == [PositionStatus.CREATED]

    @pytest.mark.asyncio
    async def test_missing_position(self, test_database):
        assert await test_database.get_position("nope") is None


# =============================================================================
# Order Tests
# =============================================================================

class TestOrderOperations:
    """Test order database operations."""

    @pytest.mark.asyncio
    async def test_order_lookup_by_venue_id(self, test_database, sample_position, sample_order):
        await test_database.save_position(sample_position)
        await test_database.save_order(sample_order)

        retrieved = await test_database.get_order("hyperliquid", "1000")

        assert retrieved.id == sample_order.id
        assert retrieved.intent == OrderIntent.ENTRY
        assert retrieved.size == Decimal("0.123456789012345678")
        assert await test_database.get_order("drift", "1000") is None

    @pytest.mark.asyncio
    async def test_order_update(self, test_database, sample_position, sample_order):
        await test_database.save_position(sample_position)
        await test_database.save_order(sample_order)
        sample_order.status = OrderStatus.CANCELLED
        await test_database.save_order(sample_order)

        orders = await test_database.get_orders_for_position(sample_position.id)

        assert len(orders) == 1
        assert orders[0].status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_saves_upsert(self, test_database, sample_position, sample_order):
        """Overlapping first saves of one order leave a single row."""
        await test_database.save_position(sample_position)
        filled = sample_order.model_copy(update={
            "filled_size": Decimal("0.1"), "status": OrderStatus.PARTIALLY_FILLED,
        })

        await asyncio.gather(
            test_database.save_order(sample_order),
            test_database.save_order(filled),
            test_database.save_order(sample_order),
        )

        orders = await test_database.get_orders_for_position(sample_position.id)
        assert len(orders) == 1
        assert orders[0].id == sample_order.id

    @pytest.mark.asyncio
    async def test_order_saved_before_venue_id(self, test_database, sample_position, sample_order):
        """Orders are stored under their client id until the venue acknowledges them."""
        await test_database.save_position(sample_position)
        pending = sample_order.model_copy(update={"order_id": None})
        await test_database.save_order(pending)
        assert await test_database.get_order("hyperliquid", "1000") is None

        pending.order_id = "1000"
        await test_database.save_order(pending)

        retrieved = await test_database.get_order("hyperliquid", "1000")
        assert retrieved.client_order_id == "0xabc"
        assert retrieved.id == sample_order.id


# =============================================================================
# Settings and Lock Tests
# =============================================================================

class TestSettings:
    """Test runtime switches."""

    @pytest.mark.asyncio
    async def test_default_settings(self, test_database):
        assert await test_database.get_settings() == {"close_all_positions": False}

    @pytest.mark.asyncio
    async def test_update_settings(self, test_database):
        await test_database.update_settings(close_all_positions=True)

        assert (await test_database.get_settings())["close_all_positions"] is True


class TestLocks:
    """Test lease locks."""

    @pytest.mark.asyncio
    async def test_acquire_and_contend(self, test_database):
        now = datetime.now(timezone.utc)
        lease = now + timedelta(seconds=55)

        assert await test_database.acquire_lock("trade-monitor", lease, now=now) is True
        assert await test_database.acquire_lock("trade-monitor", lease, now=now) is False

    @pytest.mark.asyncio
    async def test_expired_lease_reacquired(self, test_database):
        now = datetime.now(timezone.utc)
        await test_database.acquire_lock("trade-monitor", now + timedelta(seconds=55), now=now)

        later = now + timedelta(seconds=60)
        assert await test_database.acquire_lock(
            "trade-monitor", later + timedelta(seconds=55), now=later
        ) is True

    @pytest.mark.asyncio
    async def test_release(self, test_database):
        now = datetime.now(timezone.utc)
        await test_database.acquire_lock("trade-monitor", now + timedelta(seconds=55), now=now)

        await test_database.release_lock("trade-monitor")

        assert await test_database.acquire_lock("trade-monitor", now + timedelta(seconds=55), now=now)


# =============================================================================
# Store Persistence Tests
# =============================================================================

class TestStorePersistence:
    """Test the position store writing through to the database."""

    @pytest.mark.asyncio
    async def test_store_reload(self, test_database, make_position, sample_order):
        store = PositionStore(test_database)
        position = make_position(status=PositionStatus.CREATED)
        await store.add(position)
        await store.add_order(sample_order.model_copy(update={"position_id": position.id}))
        await store.add(make_position(instrument="ETH", status=PositionStatus.CLOSED))

        reloaded = PositionStore(test_database)
        count = await reloaded.load()

        assert count == 1
        assert reloaded.get(position.id).status == PositionStatus.CREATED
        assert reloaded.get_order("hyperliquid", "1000").position_id == position.id
