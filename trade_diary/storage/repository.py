"""
Persistence for positions.

Provides the repository used by the ledger. Every mutating method runs in
its own session, so each position mutation commits independently and a
failed batch leaves earlier mutations in place.
"""
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import BigInteger, Column, Index, Integer, Numeric, String
from sqlalchemy.types import TypeDecorator

from trade_diary.domain.models import Position, PositionStatus, now_ms
from trade_diary.exceptions import PositionNotFoundError
from trade_diary.monitoring.logger import get_logger
from trade_diary.storage.db import Base, Database

logger = get_logger(__name__)


class DecimalType(TypeDecorator):
    """
    Exact Decimal column.

    NUMERIC on PostgreSQL. SQLite has no exact decimal storage, so values
    are kept as text there; numeric filtering is therefore done in Python.
    """
    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String())
        return dialect.type_descriptor(
            Numeric(precision=self.impl.precision, scale=self.impl.scale, asdecimal=True)
        )

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


def _qty_column(nullable: bool = False) -> Column:
    return Column(DecimalType(precision=30, scale=12), nullable=nullable)


def _money_column(nullable: bool = True) -> Column:
    return Column(DecimalType(precision=30, scale=6), nullable=nullable)


class PositionModel(Base):
    """ORM model for positions ("trades" in the diary)."""
    __tablename__ = "positions"
    __table_args__ = (
        Index('idx_positions_owner_buy_exec', 'owner_id', 'buy_exec_id'),
        Index('idx_positions_owner_sell_exec', 'owner_id', 'sell_exec_id'),
        Index('idx_positions_fifo', 'owner_id', 'symbol', 'status', 'entry_time'),
        Index('idx_positions_owner_time', 'owner_id', 'entry_time'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    symbol = Column(String, nullable=False)
    status = Column(String, nullable=False)

    quantity = _qty_column()
    remaining_quantity = _qty_column()
    entry_price = _qty_column()
    exit_price = _qty_column(nullable=True)
    entry_time = Column(BigInteger, nullable=False)
    exit_time = Column(BigInteger, nullable=True)

    invested_amount = _money_column(nullable=False)
    received_amount = _money_column()
    commission_amount = _money_column(nullable=False)
    profit_loss = _money_column()
    profit_loss_percent = _money_column()
    duration_minutes = Column(Integer, nullable=True)

    buy_exec_id = Column(String, nullable=True)
    sell_exec_id = Column(String, nullable=True)
    source = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False)


_MUTABLE_FIELDS = (
    "status",
    "quantity",
    "remaining_quantity",
    "exit_price",
    "exit_time",
    "invested_amount",
    "received_amount",
    "commission_amount",
    "profit_loss",
    "profit_loss_percent",
    "duration_minutes",
    "sell_exec_id",
    "source",
)


def _to_domain(model: PositionModel) -> Position:
    return Position(
        id=model.id,
        owner_id=model.owner_id,
        symbol=model.symbol,
        status=PositionStatus(model.status),
        quantity=model.quantity,
        remaining_quantity=model.remaining_quantity,
        entry_price=model.entry_price,
        entry_time=model.entry_time,
        exit_price=model.exit_price,
        exit_time=model.exit_time,
        invested_amount=model.invested_amount,
        received_amount=model.received_amount,
        commission_amount=model.commission_amount,
        profit_loss=model.profit_loss,
        profit_loss_percent=model.profit_loss_percent,
        duration_minutes=model.duration_minutes,
        buy_exec_id=model.buy_exec_id,
        sell_exec_id=model.sell_exec_id,
        source=model.source,
        created_at=model.created_at,
    )


def _new_model(position: Position) -> PositionModel:
    return PositionModel(
        owner_id=position.owner_id,
        symbol=position.symbol,
        status=position.status.value,
        quantity=position.quantity,
        remaining_quantity=position.remaining_quantity,
        entry_price=position.entry_price,
        entry_time=position.entry_time,
        exit_price=position.exit_price,
        exit_time=position.exit_time,
        invested_amount=position.invested_amount,
        received_amount=position.received_amount,
        commission_amount=position.commission_amount,
        profit_loss=position.profit_loss,
        profit_loss_percent=position.profit_loss_percent,
        duration_minutes=position.duration_minutes,
        buy_exec_id=position.buy_exec_id,
        sell_exec_id=position.sell_exec_id,
        source=position.source,
        created_at=position.created_at or now_ms(),
    )


class PositionRepository:
    """Position store backed by a Database."""

    def __init__(self, db: Database):
        self.db = db

    # ---- writes ----

    def insert(self, position: Position) -> Position:
        """Insert a new position and return it with its assigned id."""
        with self.db.get_session() as session:
            model = _new_model(position)
            session.add(model)
            session.flush()
            return _to_domain(model)

    def update(self, position: Position) -> Position:
        """Persist the mutable fields of an existing position."""
        with self.db.get_session() as session:
            model = self._load_for_update(session, position)
            self._apply(model, position)
            session.flush()
            return _to_domain(model)

    def apply_split(self, remainder: Position, closed_slice: Position) -> Tuple[Position, Position]:
        """
        Shrink the original position and insert its closed slice in one
        transaction.
        """
        with self.db.get_session() as session:
            model = self._load_for_update(session, remainder)
            self._apply(model, remainder)
            slice_model = _new_model(closed_slice)
            session.add(slice_model)
            session.flush()
            return _to_domain(model), _to_domain(slice_model)

    # ---- reads ----

    def get(self, owner_id: int, position_id: int) -> Optional[Position]:
        with self.db.get_session() as session:
            model = (
                session.query(PositionModel)
                .filter(PositionModel.owner_id == owner_id, PositionModel.id == position_id)
                .first()
            )
            return _to_domain(model) if model else None

    def find_by_buy_exec_id(self, owner_id: int, buy_exec_id: str) -> Optional[Position]:
        """Idempotency lookup: any position already opened from this buy execution."""
        with self.db.get_session() as session:
            model = (
                session.query(PositionModel)
                .filter(
                    PositionModel.owner_id == owner_id,
                    PositionModel.buy_exec_id == buy_exec_id,
                )
                .order_by(PositionModel.id.asc())
                .first()
            )
            return _to_domain(model) if model else None

    def find_by_sell_exec_id(self, owner_id: int, sell_exec_id: str) -> Optional[Position]:
        """Replay lookup: any position already closed by this sell execution."""
        with self.db.get_session() as session:
            model = (
                session.query(PositionModel)
                .filter(
                    PositionModel.owner_id == owner_id,
                    PositionModel.sell_exec_id == sell_exec_id,
                )
                .order_by(PositionModel.id.asc())
                .first()
            )
            return _to_domain(model) if model else None

    def next_open_position(
        self, owner_id: int, symbol: str, opened_by: Optional[int] = None
    ) -> Optional[Position]:
        """
        Oldest OPEN position for (owner, symbol): smallest entry_time, then
        smallest id. OPEN implies remaining_quantity > 0.

        ``opened_by`` limits candidates to positions entered at or before
        that time.
        """
        with self.db.get_session() as session:
            query = session.query(PositionModel).filter(
                PositionModel.owner_id == owner_id,
                PositionModel.symbol == symbol,
                PositionModel.status == PositionStatus.OPEN.value,
            )
            if opened_by is not None:
                query = query.filter(PositionModel.entry_time <= opened_by)
            model = (
                query
                .order_by(PositionModel.entry_time.asc(), PositionModel.id.asc())
                .first()
            )
            return _to_domain(model) if model else None

    def list_dust_candidates(self, owner_id: int, epsilon: Decimal) -> List[Position]:
        """OPEN positions whose remaining quantity is within epsilon of zero."""
        return [
            p
            for p in self.list_positions(owner_id, PositionStatus.OPEN)
            if abs(p.remaining_quantity) <= epsilon
        ]

    def list_positions(
        self, owner_id: int, status: Optional[PositionStatus] = None
    ) -> List[Position]:
        """Positions for an owner, newest entry first."""
        with self.db.get_session() as session:
            query = session.query(PositionModel).filter(PositionModel.owner_id == owner_id)
            if status is not None:
                query = query.filter(PositionModel.status == status.value)
            models = query.order_by(
                PositionModel.entry_time.desc(), PositionModel.id.desc()
            ).all()
            return [_to_domain(m) for m in models]

    # ---- helpers ----

    @staticmethod
    def _load_for_update(session, position: Position) -> PositionModel:
        if position.id is None:
            raise PositionNotFoundError("Cannot update a position without id")
        model = (
            session.query(PositionModel)
            .filter(
                PositionModel.owner_id == position.owner_id,
                PositionModel.id == position.id,
            )
            .with_for_update()
            .first()
        )
        if model is None:
            raise PositionNotFoundError(
                f"Position {position.id} not found for owner {position.owner_id}"
            )
        return model

    @staticmethod
    def _apply(model: PositionModel, position: Position) -> None:
        for name in _MUTABLE_FIELDS:
            value = getattr(position, name)
            if name == "status":
                value = value.value
            setattr(model, name, value)
