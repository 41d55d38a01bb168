"""
Execution Record Store - durable advanced orders and their execution log

Persists:
- AdvancedOrder rows (lifecycle status, progress, last error)
- AdvancedOrderExecution rows, append-only, one per child action attempt

`append` commits before returning, so every record is durable before the
engine moves on. Sequence numbers are assigned here, strictly increasing per
order with no gaps. Sizes and prices are stored as decimal strings to keep
exact values across databases.
"""

import json
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Union

import pandas as pd
from loguru import logger
from sqlalchemy import (
    create_engine, func, Column, String, Integer, DateTime, Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .order_schemas import (
    AdvancedOrder, AdvancedOrderExecution, AdvancedOrderStatus, AdvancedOrderType,
    ExecutionAction, ExecutionResultStatus, ChildOrderKind, OrderSide, utc_now,
)
from .validator import parameters_from_dict


class AdvancedOrderError(Exception):
    """Base exception for advanced order operations"""
    pass


class OrderNotFoundError(AdvancedOrderError):
    """No advanced order with this id (for this user)"""

    def __init__(self, order_id: str):
        super().__init__(f"advanced order {order_id} not found")
        self.order_id = order_id


class DecimalString(TypeDecorator):
    """Exact Decimal stored as its string form"""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


# Database Models
Base = declarative_base()


class StoredAdvancedOrder(Base):
    """Database model for advanced orders"""
    __tablename__ = 'advanced_orders'

    id = Column(String(64), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    order_type = Column(String(32), nullable=False)
    symbol = Column(String(64), nullable=False)
    side = Column(String(8), nullable=False)
    total_size = Column(DecimalString, nullable=False)
    parameters = Column(Text, nullable=False)     # JSON of the typed parameters

    status = Column(String(16), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)

    # Progress
    executed_size = Column(DecimalString, nullable=False, default=Decimal("0"))
    average_execution_price = Column(DecimalString)

    # Error tracking
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)


class StoredExecution(Base):
    """Database model for the append-only execution log"""
    __tablename__ = 'advanced_order_executions'
    __table_args__ = (
        UniqueConstraint('advanced_order_id', 'sequence_number', name='uq_execution_sequence'),
    )

    id = Column(String(64), primary_key=True)
    advanced_order_id = Column(String(64), nullable=False, index=True)
    sequence_number = Column(Integer, nullable=False)

    action = Column(String(16), nullable=False)
    result_status = Column(String(16), nullable=False)
    requested_size = Column(DecimalString)
    requested_price = Column(DecimalString)
    filled_size = Column(DecimalString, nullable=False)
    avg_fill_price = Column(DecimalString)

    child_order_id = Column(String(128))
    replaces_child_id = Column(String(128))
    order_kind = Column(String(16))
    tag = Column(String(64))
    reason = Column(Text)
    error_detail = Column(Text)

    timestamp = Column(DateTime, nullable=False)


class ExecutionRecordStore:
    """
    Storage for advanced orders and their execution history

    Uses a session per operation; every write commits or rolls back before
    the method returns.
    """

    def __init__(self, database_url: str = "sqlite://"):
        """
        Initialize the store

        Args:
            database_url: SQLAlchemy URL. "sqlite://" is an in-memory database
                shared by every session of this store.
        """
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            self.engine = create_engine(
                database_url,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(database_url)

        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._append_lock = threading.Lock()
        logger.info(f"ExecutionRecordStore initialized with database: {database_url}")

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(self, order: AdvancedOrder) -> AdvancedOrder:
        """Persist a validated, pending advanced order"""
        session = self.session_factory()
        try:
            session.add(StoredAdvancedOrder(
                id=order.id,
                user_id=order.user_id,
                order_type=order.order_type.value,
                symbol=order.symbol,
                side=order.side.value,
                total_size=order.total_size,
                parameters=json.dumps(order.parameters.to_dict()),
                status=order.status.value,
                created_at=_to_db_time(order.created_at),
                updated_at=_to_db_time(order.updated_at),
                executed_size=order.executed_size,
                error_count=order.error_count,
            ))
            session.commit()
            logger.info(f"Stored advanced order {order}")
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to store advanced order {order.id}: {e}")
            raise
        finally:
            session.close()
        return order

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[AdvancedOrder]:
        """Load an order, optionally scoped to its owner"""
        session = self.session_factory()
        try:
            row = session.get(StoredAdvancedOrder, order_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                return None
            return self._order_from_row(row)
        finally:
            session.close()

    def require_order(self, order_id: str, user_id: Optional[str] = None) -> AdvancedOrder:
        order = self.get_order(order_id, user_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_orders(self, user_id: Optional[str] = None,
                    status: Union[AdvancedOrderStatus, Iterable[AdvancedOrderStatus], None] = None
                    ) -> List[AdvancedOrder]:
        """
        List orders, newest first

        Args:
            user_id: Only this user's orders
            status: A status or collection of statuses to filter on
        """
        session = self.session_factory()
        try:
            query = session.query(StoredAdvancedOrder)
            if user_id is not None:
                query = query.filter(StoredAdvancedOrder.user_id == user_id)
            if status is not None:
                statuses = [status] if isinstance(status, AdvancedOrderStatus) else list(status)
                query = query.filter(StoredAdvancedOrder.status.in_([s.value for s in statuses]))
            rows = query.order_by(StoredAdvancedOrder.created_at.desc()).all()
            return [self._order_from_row(row) for row in rows]
        finally:
            session.close()

    def update_order_status(self, order_id: str, status: AdvancedOrderStatus,
                            error: Optional[str] = None,
                            at: Optional[datetime] = None) -> AdvancedOrder:
        """
        Set an order's lifecycle status

        Lifecycle timestamps are stamped on the first transition into active,
        completed or cancelled, using `at` when given (the caller's clock) and
        the current UTC time otherwise. Passing `error` records it as the last
        error.
        """
        session = self.session_factory()
        try:
            row = session.get(StoredAdvancedOrder, order_id)
            if row is None:
                raise OrderNotFoundError(order_id)

            now = _to_db_time(at or utc_now())
            row.status = status.value
            row.updated_at = now
            if status is AdvancedOrderStatus.ACTIVE and row.started_at is None:
                row.started_at = now
            elif status is AdvancedOrderStatus.COMPLETED:
                row.completed_at = now
            elif status is AdvancedOrderStatus.CANCELLED:
                row.cancelled_at = now
            if error is not None:
                row.last_error = error
                row.error_count = (row.error_count or 0) + 1

            session.commit()
            logger.info(f"Advanced order {order_id} -> {status.value}")
            return self._order_from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update_order_progress(self, order_id: str, executed_size: Decimal,
                              average_price: Optional[Decimal]) -> None:
        session = self.session_factory()
        try:
            row = session.get(StoredAdvancedOrder, order_id)
            if row is None:
                raise OrderNotFoundError(order_id)
            row.executed_size = executed_size
            row.average_execution_price = average_price
            row.updated_at = _to_db_time(utc_now())
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Execution log
    # ------------------------------------------------------------------

    def append(self, execution: AdvancedOrderExecution) -> int:
        """
        Append an execution record and commit it

        Returns:
            The sequence number assigned to the record
        """
        with self._append_lock:
            session = self.session_factory()
            try:
                last = (
                    session.query(func.max(StoredExecution.sequence_number))
                    .filter(StoredExecution.advanced_order_id == execution.advanced_order_id)
                    .scalar()
                )
                sequence = (last or 0) + 1
                session.add(StoredExecution(
                    id=execution.id,
                    advanced_order_id=execution.advanced_order_id,
                    sequence_number=sequence,
                    action=execution.action.value,
                    result_status=execution.result_status.value,
                    requested_size=execution.requested_size,
                    requested_price=execution.requested_price,
                    filled_size=execution.filled_size,
                    avg_fill_price=execution.avg_fill_price,
                    child_order_id=execution.child_order_id,
                    replaces_child_id=execution.replaces_child_id,
                    order_kind=execution.order_kind.value if execution.order_kind else None,
                    tag=execution.tag,
                    reason=execution.reason,
                    error_detail=execution.error_detail,
                    timestamp=_to_db_time(execution.timestamp),
                ))
                session.commit()
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to append execution for {execution.advanced_order_id}: {e}")
                raise
            finally:
                session.close()

        execution.sequence_number = sequence
        logger.debug(f"[{execution.advanced_order_id}] {execution}")
        return sequence

    def load_history(self, order_id: str) -> List[AdvancedOrderExecution]:
        """All executions of an order in sequence order"""
        session = self.session_factory()
        try:
            rows = (
                session.query(StoredExecution)
                .filter(StoredExecution.advanced_order_id == order_id)
                .order_by(StoredExecution.sequence_number.asc())
                .all()
            )
            return [self._execution_from_row(row) for row in rows]
        finally:
            session.close()

    def latest_execution(self, order_id: str) -> Optional[AdvancedOrderExecution]:
        session = self.session_factory()
        try:
            row = (
                session.query(StoredExecution)
                .filter(StoredExecution.advanced_order_id == order_id)
                .order_by(StoredExecution.sequence_number.desc())
                .first()
            )
            return self._execution_from_row(row) if row else None
        finally:
            session.close()

    def latest_error(self, order_id: str) -> Optional[str]:
        """errorDetail of the most recent record that carries one"""
        session = self.session_factory()
        try:
            row = (
                session.query(StoredExecution)
                .filter(StoredExecution.advanced_order_id == order_id)
                .filter(StoredExecution.error_detail.isnot(None))
                .order_by(StoredExecution.sequence_number.desc())
                .first()
            )
            return row.error_detail if row else None
        finally:
            session.close()

    def cumulative_filled(self, order_id: str) -> Decimal:
        """Sum of filled size over fill-bearing records"""
        return sum(
            (e.filled_size for e in self.load_history(order_id) if e.counts_as_fill),
            Decimal("0"),
        )

    def to_dataframe(self, order_id: str) -> pd.DataFrame:
        """Execution history of an order as a DataFrame"""
        history = self.load_history(order_id)
        if not history:
            return pd.DataFrame()
        df = pd.DataFrame([e.to_dict() for e in history])
        df['timestamp'] = pd.to_datetime(df['timestamp'])
        return df.set_index('sequenceNumber')

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _order_from_row(row: StoredAdvancedOrder) -> AdvancedOrder:
        order_type = AdvancedOrderType(row.order_type)
        return AdvancedOrder(
            id=row.id,
            user_id=row.user_id,
            order_type=order_type,
            symbol=row.symbol,
            side=OrderSide(row.side),
            total_size=row.total_size,
            parameters=parameters_from_dict(order_type, json.loads(row.parameters)),
            status=AdvancedOrderStatus(row.status),
            created_at=_from_db_time(row.created_at),
            updated_at=_from_db_time(row.updated_at),
            started_at=_from_db_time(row.started_at),
            completed_at=_from_db_time(row.completed_at),
            cancelled_at=_from_db_time(row.cancelled_at),
            executed_size=row.executed_size if row.executed_size is not None else Decimal("0"),
            average_execution_price=row.average_execution_price,
            error_count=row.error_count or 0,
            last_error=row.last_error,
        )

    @staticmethod
    def _execution_from_row(row: StoredExecution) -> AdvancedOrderExecution:
        return AdvancedOrderExecution(
            id=row.id,
            advanced_order_id=row.advanced_order_id,
            sequence_number=row.sequence_number,
            action=ExecutionAction(row.action),
            result_status=ExecutionResultStatus(row.result_status),
            requested_size=row.requested_size,
            requested_price=row.requested_price,
            filled_size=row.filled_size,
            avg_fill_price=row.avg_fill_price,
            child_order_id=row.child_order_id,
            replaces_child_id=row.replaces_child_id,
            order_kind=ChildOrderKind(row.order_kind) if row.order_kind else None,
            tag=row.tag,
            reason=row.reason,
            error_detail=row.error_detail,
            timestamp=_from_db_time(row.timestamp),
        )
