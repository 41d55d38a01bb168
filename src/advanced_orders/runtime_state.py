"""
Execution Runtime State - in-memory progress of one active advanced order

Owned exclusively by the engine while it drives the order. Never trusted to
survive a restart: `ExecutionRuntimeState.from_history` rebuilds it from the
append-only execution log, which is the durable source of truth.
"""

from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import time

from .order_schemas import (
    AdvancedOrder, AdvancedOrderExecution, ExecutionAction, ExecutionResultStatus,
    ChildOrderKind, to_epoch,
)


class ChildState(Enum):
    OPEN = "open"
    FILLED = "filled"
    CLOSED = "closed"             # Cancelled, replaced or rejected


@dataclass
class ChildOrder:
    """A child order placed at the exchange for this advanced order"""

    child_id: str
    size: Decimal
    price: Optional[Decimal]
    kind: ChildOrderKind
    tag: str = ""
    filled_size: Decimal = Decimal("0")
    avg_fill_price: Optional[Decimal] = None
    state: ChildState = ChildState.OPEN
    placed_at: float = 0.0
    closed_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.state is ChildState.OPEN

    @property
    def remaining(self) -> Decimal:
        return self.size - self.filled_size


@dataclass
class ExecutionRuntimeState:
    """
    Runtime progress of an active order

    `strategy_internal` is strategy-owned scratch space (jittered intervals,
    trailing high-water mark, chase mode, ...).
    """

    order_id: str
    total_size: Decimal
    filled_size: Decimal = Decimal("0")
    fill_notional: Decimal = Decimal("0")
    cycles_elapsed: int = 0
    last_action_at: Optional[float] = None
    started_at: float = field(default_factory=time.time)
    children: Dict[str, ChildOrder] = field(default_factory=dict)
    action_counts: Counter = field(default_factory=Counter)
    reason_counts: Counter = field(default_factory=Counter)   # (action, reason) pairs
    strategy_internal: Dict[str, Any] = field(default_factory=dict)

    @property
    def remaining_size(self) -> Decimal:
        return self.total_size - self.filled_size

    @property
    def average_fill_price(self) -> Optional[Decimal]:
        if self.filled_size <= 0:
            return None
        return self.fill_notional / self.filled_size

    # ------------------------------------------------------------------
    # Queries used by strategies
    # ------------------------------------------------------------------

    def open_children(self) -> List[ChildOrder]:
        return [child for child in self.children.values() if child.is_open]

    def children_tagged(self, prefix: str) -> List[ChildOrder]:
        return [child for child in self.children.values() if child.tag.startswith(prefix)]

    def has_child(self, child_id: Optional[str]) -> bool:
        return child_id is not None and child_id in self.children

    def owns_open_child(self, child_id: Optional[str]) -> bool:
        child = self.children.get(child_id) if child_id else None
        return child is not None and child.is_open

    def count_reason(self, action: ExecutionAction, reason: str) -> int:
        """How many records of `action` were written with exactly this reason"""
        return self.reason_counts[(action, reason)]

    # ------------------------------------------------------------------
    # Mutations (engine, and replay)
    # ------------------------------------------------------------------

    def add_child(self, child_id: str, size: Decimal, price: Optional[Decimal],
                  kind: ChildOrderKind, tag: str = "", placed_at: Optional[float] = None) -> ChildOrder:
        child = ChildOrder(
            child_id=child_id,
            size=size,
            price=price,
            kind=kind,
            tag=tag or "",
            placed_at=placed_at if placed_at is not None else time.time(),
        )
        self.children[child_id] = child
        return child

    def apply_fill(self, child_id: str, quantity: Decimal, price: Optional[Decimal],
                   at: Optional[float] = None) -> None:
        """Account an incremental fill on a child"""
        if quantity <= 0:
            return
        child = self.children.get(child_id)
        self.filled_size += quantity
        if price is not None:
            self.fill_notional += quantity * price

        if child is None:
            return
        previous = child.filled_size
        child.filled_size = previous + quantity
        if price is not None:
            if child.avg_fill_price is None or previous == 0:
                child.avg_fill_price = price
            else:
                child.avg_fill_price = (child.avg_fill_price * previous + price * quantity) / child.filled_size
        if child.filled_size >= child.size:
            child.state = ChildState.FILLED
            child.closed_at = at if at is not None else time.time()

    def close_child(self, child_id: Optional[str], at: Optional[float] = None) -> None:
        child = self.children.get(child_id) if child_id else None
        if child is not None and child.is_open:
            child.state = ChildState.CLOSED
            child.closed_at = at if at is not None else time.time()

    def note_action(self, action: ExecutionAction, at: Optional[float] = None) -> None:
        self.action_counts[action] += 1
        if action is not ExecutionAction.FILL:
            self.cycles_elapsed += 1
            self.last_action_at = at if at is not None else time.time()

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay(self, execution: AdvancedOrderExecution) -> None:
        """Apply one persisted execution record to this state"""
        at = to_epoch(execution.timestamp)
        action = execution.action
        result = execution.result_status

        if action is ExecutionAction.PLACE or action is ExecutionAction.REPRICE:
            if action is ExecutionAction.REPRICE:
                self.close_child(execution.replaces_child_id, at)
            if execution.child_order_id and result not in (ExecutionResultStatus.REJECTED,
                                                           ExecutionResultStatus.ERRORED):
                self.add_child(
                    execution.child_order_id,
                    execution.requested_size,
                    execution.requested_price,
                    execution.order_kind or ChildOrderKind.LIMIT,
                    execution.tag,
                    placed_at=at,
                )
        elif action is ExecutionAction.CANCEL:
            if result is not ExecutionResultStatus.ERRORED:
                self.close_child(execution.child_order_id, at)

        if execution.counts_as_fill:
            self.apply_fill(execution.child_order_id, execution.filled_size,
                            execution.avg_fill_price, at)

        if execution.reason:
            self.reason_counts[(action, execution.reason)] += 1
        self.note_action(action, at)

    @classmethod
    def from_history(cls, order: AdvancedOrder,
                     history: Iterable[AdvancedOrderExecution]) -> "ExecutionRuntimeState":
        """
        Rebuild runtime state from the execution log

        Args:
            order: The advanced order being resumed
            history: Its executions in sequence order

        Returns:
            State whose remaining size equals total size minus cumulative fills
        """
        state = cls(order_id=order.id, total_size=order.total_size)
        for execution in history:
            state.replay(execution)
        return state
