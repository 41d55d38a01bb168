"""
Tests for the execution record store
"""

from datetime import datetime, timezone
from decimal import Decimal

import pandas as pd
import pytest

from src.advanced_orders.order_schemas import (
    AdvancedOrderExecution, AdvancedOrderStatus, ExecutionAction, ExecutionResultStatus,
    ChildOrderKind,
)
from src.advanced_orders.record_store import ExecutionRecordStore, OrderNotFoundError
from src.advanced_orders.runtime_state import ExecutionRuntimeState

from .helpers import make_order

SCALED = {"levels": 3, "priceStart": 100, "priceEnd": 110, "distribution": "custom",
          "sizeDistribution": ["0.5", "0.3", "0.2"]}
TWAP = {"durationMinutes": 10, "slices": 5}


@pytest.fixture
def store():
    store = ExecutionRecordStore("sqlite://")
    yield store
    store.close()


def place(order_id, size, child_id, filled="0", price=None, status=ExecutionResultStatus.PENDING):
    return AdvancedOrderExecution(
        advanced_order_id=order_id,
        action=ExecutionAction.PLACE,
        result_status=status,
        requested_size=Decimal(size),
        requested_price=Decimal(price) if price else None,
        filled_size=Decimal(filled),
        avg_fill_price=Decimal(price) if price and Decimal(filled) > 0 else None,
        child_order_id=child_id,
        order_kind=ChildOrderKind.LIMIT if price else ChildOrderKind.MARKET,
        tag=f"slice:{child_id}",
    )


class TestOrders:
    """Order rows round-trip and lifecycle updates"""

    def test_order_rehydrates(self, store):
        order = make_order(store, "scaled", SCALED, size="2.5")
        loaded = store.get_order(order.id)
        assert loaded.parameters == order.parameters
        assert loaded.total_size == Decimal("2.5")
        assert loaded.status is AdvancedOrderStatus.PENDING
        assert loaded.created_at.tzinfo is not None

    def test_ownership_scoping(self, store):
        order = make_order(store, "twap", TWAP, user_id="alice")
        assert store.get_order(order.id, "alice") is not None
        assert store.get_order(order.id, "bob") is None
        with pytest.raises(OrderNotFoundError):
            store.require_order(order.id, "bob")

    def test_list_filters(self, store):
        a = make_order(store, "twap", TWAP, user_id="alice")
        b = make_order(store, "twap", TWAP, user_id="alice")
        make_order(store, "twap", TWAP, user_id="bob")
        store.update_order_status(b.id, AdvancedOrderStatus.ACTIVE)

        assert {o.id for o in store.list_orders("alice")} == {a.id, b.id}
        assert [o.id for o in store.list_orders("alice", AdvancedOrderStatus.ACTIVE)] == [b.id]
        pending = store.list_orders(status=[AdvancedOrderStatus.PENDING, AdvancedOrderStatus.PAUSED])
        assert len(pending) == 2

    def test_status_timestamps_and_errors(self, store):
        order = make_order(store, "twap", TWAP)
        active = store.update_order_status(order.id, AdvancedOrderStatus.ACTIVE)
        assert active.started_at is not None

        failed = store.update_order_status(order.id, AdvancedOrderStatus.FAILED, error="boom")
        assert failed.last_error == "boom"
        assert failed.error_count == 1
        assert failed.started_at == active.started_at

        cancelled = store.update_order_status(order.id, AdvancedOrderStatus.CANCELLED)
        assert cancelled.cancelled_at is not None

    def test_status_timestamps_use_caller_time(self, store):
        order = make_order(store, "twap", TWAP)
        started = datetime(2021, 3, 1, 12, 0, tzinfo=timezone.utc)
        finished = datetime(2021, 3, 1, 12, 30, tzinfo=timezone.utc)

        active = store.update_order_status(order.id, AdvancedOrderStatus.ACTIVE, at=started)
        completed = store.update_order_status(order.id, AdvancedOrderStatus.COMPLETED, at=finished)

        assert active.started_at == started
        assert completed.started_at == started
        assert completed.completed_at == finished
        assert completed.updated_at == finished

    def test_unknown_order_update(self, store):
        with pytest.raises(OrderNotFoundError):
            store.update_order_status("adv_missing", AdvancedOrderStatus.ACTIVE)

    def test_progress_update(self, store):
        order = make_order(store, "twap", TWAP)
        store.update_order_progress(order.id, Decimal("4"), Decimal("100.25"))
        loaded = store.get_order(order.id)
        assert loaded.executed_size == Decimal("4")
        assert loaded.average_execution_price == Decimal("100.25")
        assert loaded.progress == Decimal("40.00")


class TestExecutionLog:
    """Append-only history with per-order sequence numbers"""

    def test_sequence_numbers_per_order(self, store):
        first = make_order(store, "twap", TWAP)
        second = make_order(store, "twap", TWAP)

        assert [store.append(place(first.id, "1", f"c{i}")) for i in range(3)] == [1, 2, 3]
        assert store.append(place(second.id, "1", "x")) == 1
        assert store.append(place(first.id, "1", "c3")) == 4

        history = store.load_history(first.id)
        assert [e.sequence_number for e in history] == [1, 2, 3, 4]
        assert [e.child_order_id for e in history] == ["c0", "c1", "c2", "c3"]

    def test_records_keep_exact_values(self, store):
        order = make_order(store, "twap", TWAP)
        store.append(place(order.id, "0.12345678", "c1", filled="0.12345678", price="64000.5",
                           status=ExecutionResultStatus.FILLED))
        execution = store.latest_execution(order.id)
        assert execution.requested_size == Decimal("0.12345678")
        assert execution.avg_fill_price == Decimal("64000.5")
        assert execution.order_kind is ChildOrderKind.LIMIT
        assert execution.timestamp.tzinfo is not None

    def test_cumulative_filled_and_replay(self, store):
        order = make_order(store, "twap", TWAP, size="10")
        store.append(place(order.id, "2", "c1", filled="2", price="100",
                           status=ExecutionResultStatus.FILLED))
        store.append(place(order.id, "2", "c2"))
        store.append(AdvancedOrderExecution(
            advanced_order_id=order.id, action=ExecutionAction.FILL,
            result_status=ExecutionResultStatus.PARTIAL, requested_size=Decimal("2"),
            filled_size=Decimal("1.5"), avg_fill_price=Decimal("101"), child_order_id="c2"))
        store.append(AdvancedOrderExecution(
            advanced_order_id=order.id, action=ExecutionAction.PLACE,
            result_status=ExecutionResultStatus.REJECTED, requested_size=Decimal("2"),
            error_detail="insufficient margin"))

        assert store.cumulative_filled(order.id) == Decimal("3.5")

        state = ExecutionRuntimeState.from_history(order, store.load_history(order.id))
        assert state.remaining_size == Decimal("6.5")
        assert [c.child_id for c in state.open_children()] == ["c2"]
        assert state.children["c1"].is_open is False

    def test_latest_error(self, store):
        order = make_order(store, "twap", TWAP)
        assert store.latest_error(order.id) is None
        for detail in ("first", "second"):
            store.append(AdvancedOrderExecution(
                advanced_order_id=order.id, action=ExecutionAction.ERROR,
                result_status=ExecutionResultStatus.ERRORED, error_detail=detail))
        store.append(place(order.id, "1", "c1"))
        assert store.latest_error(order.id) == "second"

    def test_to_dataframe(self, store):
        order = make_order(store, "twap", TWAP)
        assert store.to_dataframe(order.id).empty

        store.append(place(order.id, "1", "c1"))
        store.append(place(order.id, "1", "c2"))
        df = store.to_dataframe(order.id)
        assert list(df.index) == [1, 2]
        assert df.loc[2, 'childOrderId'] == "c2"
        assert pd.api.types.is_datetime64_any_dtype(df['timestamp'])
