"""Database storage for positions, fill ledgers, orders, settings and locks."""
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import structlog
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String,
    TypeDecorator, UniqueConstraint, delete, select,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from tradedesk.core.config import database_config
from tradedesk.core.models import (
    FillKind, LedgerEntry, OrderIntent, OrderSide, OrderStatus, Position,
    PositionDirection, PositionStatus, PositionType, TradeOrder, utc_now,
)

logger = structlog.get_logger(__name__)

Base = declarative_base()

# Dialects with INSERT .. ON CONFLICT DO UPDATE
UPSERT_DIALECTS = {"sqlite": sqlite_insert, "postgresql": postgresql_insert}


class ExactDecimal(TypeDecorator):
    """Numeric(36, 18) that keeps full Decimal precision on SQLite.

    SQLite has no decimal type and would round-trip through float, so
    values are stored there as text.
    """
    impl = Numeric(36, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(36, 18))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PositionModel(Base):
    """SQLAlchemy model for positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    venue = Column(String, nullable=False, index=True)
    instrument = Column(String, nullable=False, index=True)
    position_type = Column(String, nullable=False)
    direction = Column(String, nullable=True)
    currency = Column(String, nullable=False)
    # Exact integer quote units, kept as text so no driver can truncate it
    amount_in = Column(String, nullable=False)
    leverage = Column(Integer, nullable=False, default=1)
    filled_size = Column(ExactDecimal, nullable=False, default=Decimal("0"))
    remaining_size = Column(ExactDecimal, nullable=False, default=Decimal("0"))
    entry_price = Column(ExactDecimal, nullable=True)
    current_price = Column(ExactDecimal, nullable=True)
    stop_loss_price = Column(ExactDecimal, nullable=True)
    take_profit_price = Column(ExactDecimal, nullable=True)
    realized_pnl = Column(ExactDecimal, nullable=False, default=Decimal("0"))
    status = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    close_reason = Column(String, nullable=True)
    exit_flag = Column(Boolean, nullable=False, default=False)
    last_trail_at = Column(DateTime(timezone=True), nullable=True)
    trail_count = Column(Integer, nullable=False, default=0)
    metadata_json = Column(JSON, default=dict)


class PositionFillModel(Base):
    """SQLAlchemy model for the per-position fill ledger."""
    __tablename__ = 'position_fills'
    __table_args__ = (UniqueConstraint('position_id', 'fill_id', name='uq_position_fill'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(String, ForeignKey('positions.id'), nullable=False, index=True)
    fill_id = Column(String, nullable=False)
    order_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    side = Column(String, nullable=False)
    size = Column(ExactDecimal, nullable=False)
    price = Column(ExactDecimal, nullable=False)
    fee = Column(ExactDecimal, nullable=False, default=Decimal("0"))
    realized_pnl = Column(ExactDecimal, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)


class TradeOrderModel(Base):
    """SQLAlchemy model for submitted orders and their declared intent."""
    __tablename__ = 'trade_orders'

    id = Column(String, primary_key=True)
    position_id = Column(String, ForeignKey('positions.id'), nullable=False, index=True)
    venue = Column(String, nullable=False)
    instrument = Column(String, nullable=False)
    intent = Column(String, nullable=False)
    side = Column(String, nullable=False)
    order_id = Column(String, nullable=True, index=True)
    client_order_id = Column(String, nullable=True)
    size = Column(ExactDecimal, nullable=True)
    limit_price = Column(ExactDecimal, nullable=True)
    filled_size = Column(ExactDecimal, nullable=False, default=Decimal("0"))
    average_fill_price = Column(ExactDecimal, nullable=True)
    fee = Column(ExactDecimal, nullable=False, default=Decimal("0"))
    status = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column(JSON, default=dict)


class SettingsModel(Base):
    """Single-row table of runtime switches."""
    __tablename__ = 'settings'

    id = Column(Integer, primary_key=True)
    close_all_positions = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class LockModel(Base):
    """Named lease locks for scheduled jobs."""
    __tablename__ = 'locks'

    name = Column(String, primary_key=True)
    lease_until = Column(DateTime(timezone=True), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)


SETTINGS_ROW_ID = 1


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        self.database_url = db_url

        if ':memory:' in db_url:
            # One shared connection, otherwise every session sees an empty database
            self.engine: AsyncEngine = create_async_engine(
                db_url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            if db_url.startswith('sqlite+aiosqlite:///'):
                Path(db_url[len('sqlite+aiosqlite:///'):]).parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.database_url.split('@')[-1])

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # =========================================================================
    # Position operations
    # =========================================================================

    async def save_position(self, position: Position):
        """Insert or update a position and append any new ledger entries."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position.id)
            if db_position is None:
                db_position = PositionModel(id=position.id, created_at=position.created_at)
                session.add(db_position)

            db_position.venue = position.venue
            db_position.instrument = position.instrument
            db_position.position_type = position.position_type.value
            db_position.direction = position.direction.value if position.direction else None
            db_position.currency = position.currency
            db_position.amount_in = str(position.amount_in)
            db_position.leverage = position.leverage
            db_position.filled_size = position.filled_size
            db_position.remaining_size = position.remaining_size
            db_position.entry_price = position.entry_price
            db_position.current_price = position.current_price
            db_position.stop_loss_price = position.stop_loss_price
            db_position.take_profit_price = position.take_profit_price
            db_position.realized_pnl = position.realized_pnl
            db_position.status = position.status.value
            db_position.opened_at = position.opened_at
            db_position.closed_at = position.closed_at
            db_position.close_reason = position.close_reason
            db_position.exit_flag = position.exit_flag
            db_position.last_trail_at = position.last_trail_at
            db_position.trail_count = position.trail_count
            db_position.metadata_json = position.metadata

            result = await session.execute(
                select(PositionFillModel.fill_id).where(PositionFillModel.position_id == position.id)
            )
            stored = set(result.scalars().all())
            for entry in position.fills:
                if entry.fill_id not in stored:
                    session.add(self._fill_to_model(position.id, entry))

            await session.commit()

    async def get_position(self, position_id: str) -> Optional[Position]:
        """Get a position with its ledger."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position_id)
            if db_position is None:
                return None
            fills = await self._load_fills(session, [position_id])
            return self._position_from_model(db_position, fills.get(position_id, []))

    async def get_positions(
        self,
        venue: Optional[str] = None,
        instrument: Optional[str] = None,
        statuses: Optional[List[PositionStatus]] = None,
    ) -> List[Position]:
        """Get positions with optional filters, oldest first."""
        async with self.session_maker() as session:
            query = select(PositionModel).order_by(PositionModel.created_at)
            if venue:
                query = query.where(PositionModel.venue == venue)
            if instrument:
                query = query.where(PositionModel.instrument == instrument)
            if statuses:
                query = query.where(PositionModel.status.in_([s.value for s in statuses]))

            result = await session.execute(query)
            db_positions = result.scalars().all()
            fills = await self._load_fills(session, [p.id for p in db_positions])
            return [self._position_from_model(p, fills.get(p.id, [])) for p in db_positions]

    async def _load_fills(self, session: AsyncSession, position_ids: List[str]) -> Dict[str, List[LedgerEntry]]:
        if not position_ids:
            return {}
        result = await session.execute(
            select(PositionFillModel)
            .where(PositionFillModel.position_id.in_(position_ids))
            .order_by(PositionFillModel.id)
        )
        ledgers: Dict[str, List[LedgerEntry]] = {}
        for model in result.scalars().all():
            ledgers.setdefault(model.position_id, []).append(self._fill_from_model(model))
        return ledgers

    # =========================================================================
    # Order operations
    # =========================================================================

    async def save_order(self, order: TradeOrder):
        """Insert or update an order in a single upsert statement.

        Fills and order updates can save an order while its first insert
        is still in flight, so a read-then-insert would race.
        """
        values = {
            "id": order.id,
            "position_id": order.position_id,
            "venue": order.venue,
            "instrument": order.instrument,
            "intent": order.intent.value,
            "side": order.side.value,
            "created_at": order.created_at,
        }
        changes = {
            "order_id": order.order_id,
            "client_order_id": order.client_order_id,
            "size": order.size,
            "limit_price": order.limit_price,
            "filled_size": order.filled_size,
            "average_fill_price": order.average_fill_price,
            "fee": order.fee,
            "status": order.status.value,
            "updated_at": order.updated_at,
            "metadata_json": dict(order.metadata),
        }

        async with self.session_maker() as session:
            dialect_insert = UPSERT_DIALECTS.get(self.engine.dialect.name)
            if dialect_insert is None:
                await session.merge(TradeOrderModel(**values, **changes))
            else:
                statement = dialect_insert(TradeOrderModel).values(**values, **changes)
                await session.execute(statement.on_conflict_do_update(
                    index_elements=[TradeOrderModel.id],
                    set_={name: statement.excluded[name] for name in changes},
                ))
            await session.commit()

    async def get_order(self, venue: str, order_id: str) -> Optional[TradeOrder]:
        """Get an order by its venue order id."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(TradeOrderModel).where(
                    TradeOrderModel.venue == venue, TradeOrderModel.order_id == order_id
                )
            )
            db_order = result.scalars().first()
            return self._order_from_model(db_order) if db_order else None

    async def get_orders_for_position(self, position_id: str) -> List[TradeOrder]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TradeOrderModel)
                .where(TradeOrderModel.position_id == position_id)
                .order_by(TradeOrderModel.created_at)
            )
            return [self._order_from_model(o) for o in result.scalars().all()]

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_settings(self) -> Dict[str, bool]:
        async with self.session_maker() as session:
            row = await session.get(SettingsModel, SETTINGS_ROW_ID)
            return {"close_all_positions": bool(row.close_all_positions) if row else False}

    async def update_settings(self, close_all_positions: bool) -> None:
        async with self.session_maker() as session:
            row = await session.get(SettingsModel, SETTINGS_ROW_ID)
            if row is None:
                row = SettingsModel(id=SETTINGS_ROW_ID)
                session.add(row)
            row.close_all_positions = close_all_positions
            row.updated_at = utc_now()
            await session.commit()
        logger.info("database.settings_updated", close_all_positions=close_all_positions)

    # =========================================================================
    # Locks
    # =========================================================================

    async def acquire_lock(self, name: str, lease_until: datetime, now: Optional[datetime] = None) -> bool:
        """Take a named lease if it is free or its previous lease expired.

        Returns:
            True if this caller now holds the lease
        """
        now = now or utc_now()
        async with self.session_maker() as session:
            lock = await session.get(LockModel, name)
            if lock is None:
                session.add(LockModel(name=name, lease_until=lease_until, acquired_at=now))
            elif _as_utc(lock.lease_until) <= now:
                lock.lease_until = lease_until
                lock.acquired_at = now
            else:
                return False
            try:
                await session.commit()
            except IntegrityError:
                # Another process inserted the same lock first
                await session.rollback()
                return False
        return True

    async def release_lock(self, name: str) -> None:
        async with self.session_maker() as session:
            await session.execute(delete(LockModel).where(LockModel.name == name))
            await session.commit()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _fill_to_model(self, position_id: str, entry: LedgerEntry) -> PositionFillModel:
        return PositionFillModel(
            position_id=position_id,
            fill_id=entry.fill_id,
            order_id=entry.order_id,
            kind=entry.kind.value,
            side=entry.side.value,
            size=entry.size,
            price=entry.price,
            fee=entry.fee,
            realized_pnl=entry.realized_pnl,
            timestamp=entry.timestamp,
        )

    def _fill_from_model(self, model: PositionFillModel) -> LedgerEntry:
        return LedgerEntry(
            fill_id=model.fill_id,
            order_id=model.order_id,
            kind=FillKind(model.kind),
            side=OrderSide(model.side),
            size=model.size,
            price=model.price,
            fee=model.fee,
            realized_pnl=model.realized_pnl,
            timestamp=_as_utc(model.timestamp),
        )

    def _order_from_model(self, model: TradeOrderModel) -> TradeOrder:
        """Convert DB model to TradeOrder object."""
        return TradeOrder(
            id=model.id,
            position_id=model.position_id,
            venue=model.venue,
            instrument=model.instrument,
            intent=OrderIntent(model.intent),
            side=OrderSide(model.side),
            order_id=model.order_id,
            client_order_id=model.client_order_id,
            size=model.size,
            limit_price=model.limit_price,
            filled_size=model.filled_size,
            average_fill_price=model.average_fill_price,
            fee=model.fee,
            status=OrderStatus(model.status),
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
            metadata=model.metadata_json or {},
        )

    def _position_from_model(self, model: PositionModel, fills: List[LedgerEntry]) -> Position:
        """Convert DB model to Position object."""
        return Position(
            id=model.id,
            venue=model.venue,
            instrument=model.instrument,
            position_type=PositionType(model.position_type),
            direction=PositionDirection(model.direction) if model.direction else None,
            currency=model.currency,
            amount_in=int(model.amount_in),
            leverage=model.leverage,
            filled_size=model.filled_size,
            remaining_size=model.remaining_size,
            entry_price=model.entry_price,
            current_price=model.current_price,
            stop_loss_price=model.stop_loss_price,
            take_profit_price=model.take_profit_price,
            realized_pnl=model.realized_pnl,
            status=PositionStatus(model.status),
            created_at=_as_utc(model.created_at),
            opened_at=_as_utc(model.opened_at),
            closed_at=_as_utc(model.closed_at),
            close_reason=model.close_reason,
            exit_flag=bool(model.exit_flag),
            last_trail_at=_as_utc(model.last_trail_at),
            trail_count=model.trail_count,
            fills=fills,
            metadata=model.metadata_json or {},
        )
