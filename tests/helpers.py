"""
Shared helpers for the advanced order tests
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List

from src.advanced_orders.config import EngineConfig, RetryPolicy
from src.advanced_orders.order_schemas import AdvancedOrder, ExecutionAction
from src.advanced_orders.record_store import ExecutionRecordStore
from src.advanced_orders.validator import validate_order_request

SYMBOL = "BTC-PERP"


class FakeClock:
    """Manually advanced epoch clock"""

    def __init__(self, start: float = None):
        self.now = round(time.time(), 6) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_config(**overrides) -> EngineConfig:
    """Engine config with millisecond retries and polling"""
    values = dict(
        retry=RetryPolicy(max_retries=2, base_delay_ms=1, backoff_multiplier=2.0, max_delay_ms=5),
        gateway_timeout_seconds=1.0,
        idle_poll_seconds=0.005,
    )
    values.update(overrides)
    return EngineConfig(**values)


def make_order(store: ExecutionRecordStore, order_type: str, parameters: Dict[str, Any],
               size="10", side="buy", user_id="user-1", symbol=SYMBOL) -> AdvancedOrder:
    parsed = validate_order_request(order_type, symbol, side, size, parameters)
    order = AdvancedOrder(id=AdvancedOrder.generate_order_id(), user_id=user_id, **parsed)
    return store.create_order(order)


def records(store: ExecutionRecordStore, order_id: str, action: ExecutionAction = None) -> List:
    history = store.load_history(order_id)
    if action is None:
        return history
    return [e for e in history if e.action is action]


def placed_sizes(store: ExecutionRecordStore, order_id: str) -> Decimal:
    return sum((e.requested_size for e in records(store, order_id, ExecutionAction.PLACE)),
               Decimal("0"))


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0,
                     interval: float = 0.005) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met before timeout")
