"""
Advanced Order Execution Engine - per-user container of order execution loops

The engine that drives advanced orders:
- One asyncio task per active order, each with its own runtime state
- Lifecycle state machine: pending -> active <-> paused -> completed/cancelled/failed
- Gateway calls bounded by a timeout and retried with exponential backoff
- Every child action is appended to the record store before the loop moves on
- Fills arrive by push (gateway listeners) or by polling, handled the same way

The engine is the only writer of an order's status.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .config import EngineConfig
from .gateway import (
    ExchangeGateway, ChildOrderUpdate, ChildOrderStatus, CancelStatus, PlacementStatus,
    GatewayError, TransientGatewayError, GatewayTimeoutError, RejectedGatewayError,
    RetriesExhaustedError,
)
from .order_schemas import (
    AdvancedOrder, AdvancedOrderExecution, AdvancedOrderStatus, ExecutionAction,
    ExecutionResultStatus,
)
from .record_store import ExecutionRecordStore, AdvancedOrderError, OrderNotFoundError
from .runtime_state import ChildOrder, ExecutionRuntimeState
from .strategies import (
    ExecutionStrategy, MarketSnapshot, PlaceChild, CancelChild, Reprice, Wait,
    Complete, Fail, create_strategy,
)


class InvalidTransitionError(AdvancedOrderError):
    """Requested lifecycle transition is not allowed from the current status"""

    def __init__(self, order_id: str, status: AdvancedOrderStatus, operation: str):
        super().__init__(f"cannot {operation} order {order_id} in status '{status.value}'")
        self.order_id = order_id
        self.status = status
        self.operation = operation


@dataclass
class OrderRunner:
    """Loop bookkeeping for one active order"""

    order: AdvancedOrder
    strategy: ExecutionStrategy
    state: ExecutionRuntimeState
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    stop_requested: Optional[str] = None      # 'pause', 'cancel' or 'shutdown'

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class AdvancedOrderExecutionEngine:
    """
    Execution engine for one user's advanced orders

    Multiplexes all of the user's concurrently active orders; each order
    still has its own independent loop and runtime state.
    """

    def __init__(self, user_id: str, gateway: ExchangeGateway, store: ExecutionRecordStore,
                 config: Optional[EngineConfig] = None,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None):
        self.user_id = user_id
        self.gateway = gateway
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock
        self.rng = rng or random.Random()

        self._runners: Dict[str, OrderRunner] = {}
        self._paused: Dict[str, Tuple[ExecutionStrategy, ExecutionRuntimeState]] = {}
        self._pushed: Dict[str, ChildOrderUpdate] = {}      # Only for children this engine tracks
        self._placements_in_flight = 0
        self._lock = asyncio.Lock()
        self._running = False

        self.gateway.add_fill_listener(self._on_fill)

    # ------------------------------------------------------------------
    # Engine lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the engine and pick up this user's orders left active"""
        if self._running:
            return
        self._running = True
        logger.info(f"🚀 Advanced order engine started for user {self.user_id}")

        for order in self.store.list_orders(self.user_id, AdvancedOrderStatus.ACTIVE):
            try:
                await self.execute_order(order.id)
                logger.info(f"Recovered active order {order.id}")
            except AdvancedOrderError as e:
                logger.error(f"Failed to recover order {order.id}: {e}")

    async def stop(self) -> None:
        """Stop every loop without changing order status"""
        async with self._lock:
            runners = list(self._runners.values())
            for runner in runners:
                runner.stop_requested = 'shutdown'
                runner.wake.set()
            for runner in runners:
                if runner.task is not None:
                    await runner.task
            self._runners.clear()
            self._paused.clear()
            self._pushed.clear()
        self.gateway.remove_fill_listener(self._on_fill)
        self._running = False
        logger.info(f"Advanced order engine stopped for user {self.user_id}")

    def active_order_ids(self) -> List[str]:
        return [order_id for order_id, runner in self._runners.items() if runner.running]

    # ------------------------------------------------------------------
    # Order control
    # ------------------------------------------------------------------

    async def execute_order(self, order_id: str) -> AdvancedOrder:
        """
        Start driving an order (pending/paused -> active)

        Runtime state is always rebuilt from the persisted history. Calling
        this for an order that already has a running loop is a no-op.

        Raises:
            OrderNotFoundError: unknown order or owned by another user
            InvalidTransitionError: order is already terminal
        """
        async with self._lock:
            order = self._load(order_id)
            runner = self._runners.get(order_id)
            if runner is not None and runner.running:
                logger.info(f"Order {order_id} already has an active driver")
                return order
            if order.status.is_terminal:
                raise InvalidTransitionError(order_id, order.status, "execute")

            self._paused.pop(order_id, None)
            strategy, state = self._rebuild(order)
            return self._activate(order, strategy, state)

    async def resume_order(self, order_id: str) -> AdvancedOrder:
        """paused -> active, reusing the runtime state kept at pause time"""
        async with self._lock:
            order = self._load(order_id)
            if order.status is not AdvancedOrderStatus.PAUSED:
                raise InvalidTransitionError(order_id, order.status, "resume")

            kept = self._paused.pop(order_id, None)
            strategy, state = kept if kept is not None else self._rebuild(order)
            return self._activate(order, strategy, state)

    async def pause_order(self, order_id: str) -> AdvancedOrder:
        """active -> paused; resting children stay at the exchange"""
        async with self._lock:
            order = self._load(order_id)
            if order.status is not AdvancedOrderStatus.ACTIVE:
                raise InvalidTransitionError(order_id, order.status, "pause")

            runner = await self._stop_runner(order_id, 'pause')
            order = self._load(order_id)
            if order.status.is_terminal:
                # The loop finished the order before it saw the pause
                return order

            if runner is not None:
                self._paused[order_id] = (runner.strategy, runner.state)
            order = self._set_status(order_id, AdvancedOrderStatus.PAUSED)
            logger.info(f"⏸️ Order {order_id} paused")
            return order

    async def cancel_order(self, order_id: str) -> AdvancedOrder:
        """
        Cancel an order from any non-terminal status

        Outstanding children are cancelled best-effort; the order ends up
        cancelled whatever the outcome of those calls.
        """
        async with self._lock:
            order = self._load(order_id)
            if order.status.is_terminal:
                raise InvalidTransitionError(order_id, order.status, "cancel")

            runner = await self._stop_runner(order_id, 'cancel')
            order = self._load(order_id)
            if order.status.is_terminal:
                return order

            kept = self._paused.pop(order_id, None)
            if runner is not None:
                state = runner.state
            elif kept is not None:
                state = kept[1]
            else:
                state = self._rebuild(order)[1]

            await self._cancel_open_children(order, state, "order cancelled")
            order = self._set_status(order_id, AdvancedOrderStatus.CANCELLED)
            self._prune_pushed()
            logger.info(f"🛑 Order {order_id} cancelled")
            return order

    def get_status(self, order_id: str) -> Dict[str, Any]:
        """Persisted order plus live loop information"""
        order = self._load(order_id)
        runner = self._runners.get(order_id)
        status = order.to_dict()
        status['running'] = runner is not None and runner.running
        if runner is not None:
            status['remainingSize'] = str(runner.state.remaining_size)
            status['cyclesElapsed'] = runner.state.cycles_elapsed
            status['openChildren'] = [c.child_id for c in runner.state.open_children()]
        return status

    # ------------------------------------------------------------------
    # Runner management
    # ------------------------------------------------------------------

    def _load(self, order_id: str) -> AdvancedOrder:
        order = self.store.get_order(order_id, user_id=self.user_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def _rebuild(self, order: AdvancedOrder) -> Tuple[ExecutionStrategy, ExecutionRuntimeState]:
        history = self.store.load_history(order.id)
        state = ExecutionRuntimeState.from_history(order, history)
        state.started_at = self.clock()
        strategy = create_strategy(order, self.config, self.rng)
        strategy.restore(state)
        if history:
            logger.info(f"Rebuilt {order.id} from {len(history)} records: "
                        f"filled {state.filled_size}, remaining {state.remaining_size}")
        return strategy, state

    def _activate(self, order: AdvancedOrder, strategy: ExecutionStrategy,
                  state: ExecutionRuntimeState) -> AdvancedOrder:
        if order.status is not AdvancedOrderStatus.ACTIVE:
            order = self._set_status(order.id, AdvancedOrderStatus.ACTIVE)
        runner = OrderRunner(order=order, strategy=strategy, state=state)
        runner.task = asyncio.create_task(self._run(runner), name=f"advanced-order-{order.id}")
        self._runners[order.id] = runner
        logger.info(f"▶️ Driving {order}")
        return order

    async def _stop_runner(self, order_id: str, reason: str) -> Optional[OrderRunner]:
        """Signal a loop to stop and wait for it; in-flight calls complete"""
        runner = self._runners.pop(order_id, None)
        if runner is None:
            return None
        runner.stop_requested = reason
        runner.wake.set()
        if runner.task is not None:
            await runner.task
        return runner

    def _tracked_states(self) -> List[ExecutionRuntimeState]:
        states = [runner.state for runner in self._runners.values()]
        states.extend(state for _, state in self._paused.values())
        return states

    def _tracks_child(self, child_id: str) -> bool:
        return any(state.owns_open_child(child_id) for state in self._tracked_states())

    def _on_fill(self, update: ChildOrderUpdate) -> None:
        """
        Buffer a pushed update for one of this engine's open children

        The gateway may be shared with other users' engines, so updates for
        children nobody here owns are dropped. While a placement is in flight
        its child id is not known yet, so everything is buffered until the
        placement has been recorded and the buffer is pruned.
        """
        if not self._placements_in_flight and not self._tracks_child(update.child_id):
            return
        previous = self._pushed.get(update.child_id)
        if previous is None or update.filled_size >= previous.filled_size:
            self._pushed[update.child_id] = update
        for runner in self._runners.values():
            if runner.state.has_child(update.child_id):
                runner.wake.set()

    def _prune_pushed(self) -> None:
        """Drop buffered updates for children no active or paused order still has open"""
        if self._placements_in_flight:
            return
        for child_id in [c for c in self._pushed if not self._tracks_child(c)]:
            del self._pushed[child_id]

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    async def _run(self, runner: OrderRunner) -> None:
        order = runner.order
        try:
            while not runner.stop_requested:
                snapshot = await self._snapshot(runner)
                if runner.stop_requested:
                    break

                action = runner.strategy.decide(runner.state, snapshot)

                if isinstance(action, Wait):
                    if action.note:
                        self._append(runner.state, AdvancedOrderExecution(
                            advanced_order_id=order.id,
                            action=ExecutionAction.SKIP,
                            result_status=ExecutionResultStatus.PENDING,
                            reason=action.note,
                        ))
                    await self._sleep(runner, action.until)
                elif isinstance(action, Complete):
                    await self._complete(runner, action.reason)
                    return
                elif isinstance(action, Fail):
                    await self._fail(runner, action.reason)
                    return
                elif isinstance(action, (PlaceChild, Reprice)):
                    self._placements_in_flight += 1
                    try:
                        if isinstance(action, PlaceChild):
                            await self._place(runner, action)
                        else:
                            await self._reprice(runner, action)
                    finally:
                        self._placements_in_flight -= 1
                        self._prune_pushed()
                elif isinstance(action, CancelChild):
                    await self._cancel_child(order, runner.state, runner.state.children[action.child_id],
                                             action.reason)

                if self.config.min_tick_interval_seconds:
                    await asyncio.sleep(self.config.min_tick_interval_seconds)

        except GatewayError as e:
            await self._fail_safely(runner, str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error driving {order.id}: {e}")
            await self._fail_safely(runner, f"engine fault: {e}")

    async def _fail_safely(self, runner: OrderRunner, reason: str) -> None:
        try:
            await self._fail(runner, reason)
        except Exception as inner:
            self._runners.pop(runner.order.id, None)
            logger.error(f"Could not record failure of {runner.order.id} ({reason}): {inner}")

    async def _sleep(self, runner: OrderRunner, until: float) -> None:
        """Sleep until `until` or until woken by a fill or a control signal"""
        delay = until - self.clock()
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(runner.wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _snapshot(self, runner: OrderRunner) -> MarketSnapshot:
        order = runner.order
        runner.wake.clear()

        await self._sync_children(runner)
        book = await self._call("get_order_book", self.gateway.get_order_book, order.symbol)
        position = None
        if runner.strategy.needs_position:
            position = await self._call("get_position", self.gateway.get_position,
                                        order.parameters.position_id)

        return MarketSnapshot(
            symbol=order.symbol,
            best_bid=book.best_bid,
            best_ask=book.best_ask,
            depth=book.depth,
            now=self.clock(),
            position=position,
        )

    # ------------------------------------------------------------------
    # Fill tracking
    # ------------------------------------------------------------------

    async def _sync_children(self, runner: OrderRunner) -> None:
        for child in runner.state.open_children():
            await self._sync_child(runner.order, runner.state, child)

    async def _sync_child(self, order: AdvancedOrder, state: ExecutionRuntimeState,
                          child: ChildOrder) -> None:
        """Bring one child up to date from a pushed or polled update"""
        update = self._pushed.pop(child.child_id, None)
        if update is None and self.config.poll_child_status:
            update = await self._call("get_order_status", self.gateway.get_order_status,
                                      child.child_id)
        if update is not None:
            self._apply_update(order, state, child, update)

    def _apply_update(self, order: AdvancedOrder, state: ExecutionRuntimeState,
                      child: ChildOrder, update: ChildOrderUpdate) -> None:
        delta = update.filled_size - child.filled_size
        if delta > 0:
            price = update.avg_fill_price
            if price is not None and child.avg_fill_price is not None and child.filled_size > 0:
                price = (update.avg_fill_price * update.filled_size
                         - child.avg_fill_price * child.filled_size) / delta
            complete = update.status is ChildOrderStatus.FILLED or update.filled_size >= child.size
            self._append(state, AdvancedOrderExecution(
                advanced_order_id=order.id,
                action=ExecutionAction.FILL,
                result_status=ExecutionResultStatus.FILLED if complete else ExecutionResultStatus.PARTIAL,
                requested_size=child.size,
                requested_price=child.price,
                filled_size=delta,
                avg_fill_price=price,
                child_order_id=child.child_id,
                order_kind=child.kind,
                tag=child.tag,
            ))
            logger.info(f"💰 {order.id} {child.tag or child.child_id} filled {delta} @ {price}")

        if child.is_open and update.status in (ChildOrderStatus.CANCELLED, ChildOrderStatus.REJECTED):
            logger.warning(f"{order.id} child {child.child_id} closed by the exchange "
                           f"({update.status.value})")
            state.close_child(child.child_id, self.clock())

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _place(self, runner: OrderRunner, action: PlaceChild) -> None:
        order = runner.order
        kind = action.order_kind

        def failure_record(error: Exception) -> AdvancedOrderExecution:
            return AdvancedOrderExecution(
                advanced_order_id=order.id,
                action=ExecutionAction.ERROR,
                result_status=ExecutionResultStatus.ERRORED,
                requested_size=action.size,
                requested_price=action.price,
                order_kind=kind,
                tag=action.tag,
                reason="place failed, retrying",
                error_detail=f"place_order: {error}",
            )

        try:
            result = await self._call(
                "place_order", self.gateway.place_order,
                order.symbol, order.side, action.size, action.price,
                reduce_only=action.reduce_only, order_kind=kind,
                state=runner.state, failure_record=failure_record,
            )
        except RejectedGatewayError as e:
            self._append(runner.state, AdvancedOrderExecution(
                advanced_order_id=order.id,
                action=ExecutionAction.PLACE,
                result_status=ExecutionResultStatus.REJECTED,
                requested_size=action.size,
                requested_price=action.price,
                order_kind=kind,
                tag=action.tag,
                reason=action.reason,
                error_detail=str(e),
            ))
            raise

        status = self._placement_status(result, action.size)
        self._append(runner.state, AdvancedOrderExecution(
            advanced_order_id=order.id,
            action=ExecutionAction.PLACE,
            result_status=status,
            requested_size=action.size,
            requested_price=action.price,
            filled_size=result.filled_size,
            avg_fill_price=result.avg_fill_price,
            child_order_id=result.child_id,
            order_kind=kind,
            tag=action.tag,
            reason=action.reason,
            error_detail=result.message if status is ExecutionResultStatus.REJECTED else None,
        ))

        if status is ExecutionResultStatus.REJECTED:
            logger.error(f"❌ {order.id} placement rejected: {result.message}")
            raise RejectedGatewayError(f"placement rejected: {result.message or 'no reason given'}")
        logger.info(f"📝 {order.id} placed {action.tag or kind.value} {action.size} @ "
                    f"{action.price if action.price is not None else 'market'} -> {status.value}")

    @staticmethod
    def _placement_status(result, size: Decimal) -> ExecutionResultStatus:
        if result.status is PlacementStatus.REJECTED:
            return ExecutionResultStatus.REJECTED
        if result.filled_size >= size:
            return ExecutionResultStatus.FILLED
        if result.filled_size > 0:
            return ExecutionResultStatus.PARTIAL
        return ExecutionResultStatus.PENDING

    async def _cancel_child(self, order: AdvancedOrder, state: ExecutionRuntimeState,
                            child: ChildOrder, reason: str) -> CancelStatus:
        """Cancel one child and record the outcome"""

        def failure_record(error: Exception) -> AdvancedOrderExecution:
            return AdvancedOrderExecution(
                advanced_order_id=order.id,
                action=ExecutionAction.ERROR,
                result_status=ExecutionResultStatus.ERRORED,
                requested_size=child.remaining,
                requested_price=child.price,
                child_order_id=child.child_id,
                order_kind=child.kind,
                tag=child.tag,
                reason="cancel failed, retrying",
                error_detail=f"cancel_order: {error}",
            )

        result = await self._call("cancel_order", self.gateway.cancel_order, child.child_id,
                                  state=state, failure_record=failure_record)

        if result.status is CancelStatus.ALREADY_FILLED:
            await self._sync_child(order, state, child)
            outcome = ExecutionResultStatus.FILLED
        elif result.status is CancelStatus.NOT_FOUND:
            outcome = ExecutionResultStatus.REJECTED
        else:
            outcome = ExecutionResultStatus.CANCELLED

        self._append(state, AdvancedOrderExecution(
            advanced_order_id=order.id,
            action=ExecutionAction.CANCEL,
            result_status=outcome,
            requested_size=child.remaining,
            requested_price=child.price,
            child_order_id=child.child_id,
            order_kind=child.kind,
            tag=child.tag,
            reason=reason,
        ))
        logger.info(f"{order.id} cancel {child.child_id} ({reason}) -> {result.status.value}")
        return result.status

    async def _reprice(self, runner: OrderRunner, action: Reprice) -> None:
        """Cancel-and-replace a resting child at a new price"""
        order = runner.order
        state = runner.state
        old = state.children[action.child_id]

        result = await self._call("cancel_order", self.gateway.cancel_order, old.child_id)
        if result.status is not CancelStatus.CANCELLED:
            # Nothing left to replace: record why and let the strategy re-decide
            await self._sync_child(order, state, old)
            self._append(state, AdvancedOrderExecution(
                advanced_order_id=order.id,
                action=ExecutionAction.CANCEL,
                result_status=(ExecutionResultStatus.FILLED
                               if result.status is CancelStatus.ALREADY_FILLED
                               else ExecutionResultStatus.REJECTED),
                requested_size=old.remaining,
                requested_price=old.price,
                child_order_id=old.child_id,
                order_kind=old.kind,
                tag=old.tag,
                reason=f"reprice skipped, child {result.status.value}",
            ))
            return

        # Fills that raced the cancel belong to the old child
        await self._sync_child(order, state, old)
        size = old.remaining

        try:
            placed = await self._call(
                "place_order", self.gateway.place_order,
                order.symbol, order.side, size, action.new_price,
                reduce_only=action.reduce_only, order_kind=old.kind,
            )
        except GatewayError as e:
            self._append(state, AdvancedOrderExecution(
                advanced_order_id=order.id,
                action=ExecutionAction.CANCEL,
                result_status=ExecutionResultStatus.CANCELLED,
                requested_size=size,
                requested_price=old.price,
                child_order_id=old.child_id,
                order_kind=old.kind,
                tag=old.tag,
                reason="replacement failed",
                error_detail=str(e),
            ))
            raise

        status = self._placement_status(placed, size)
        self._append(state, AdvancedOrderExecution(
            advanced_order_id=order.id,
            action=ExecutionAction.REPRICE,
            result_status=status,
            requested_size=size,
            requested_price=action.new_price,
            filled_size=placed.filled_size,
            avg_fill_price=placed.avg_fill_price,
            child_order_id=placed.child_id,
            replaces_child_id=old.child_id,
            order_kind=old.kind,
            tag=old.tag,
            reason=action.reason,
            error_detail=placed.message if status is ExecutionResultStatus.REJECTED else None,
        ))
        if status is ExecutionResultStatus.REJECTED:
            raise RejectedGatewayError(f"replacement rejected: {placed.message or 'no reason given'}")
        logger.info(f"🔁 {order.id} repriced {old.child_id} {old.price} -> {action.new_price}")

    async def _cancel_open_children(self, order: AdvancedOrder, state: ExecutionRuntimeState,
                                    reason: str) -> None:
        """Best-effort cancel of every resting child; failures are recorded, not raised"""
        for child in state.open_children():
            try:
                await self._cancel_child(order, state, child, reason)
            except GatewayError as e:
                logger.warning(f"{order.id} could not cancel {child.child_id}: {e}")
                self._append(state, AdvancedOrderExecution(
                    advanced_order_id=order.id,
                    action=ExecutionAction.CANCEL,
                    result_status=ExecutionResultStatus.ERRORED,
                    requested_size=child.remaining,
                    requested_price=child.price,
                    child_order_id=child.child_id,
                    order_kind=child.kind,
                    tag=child.tag,
                    reason=reason,
                    error_detail=str(e),
                ))

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _complete(self, runner: OrderRunner, reason: str) -> None:
        order = runner.order
        await self._cancel_open_children(order, runner.state, "order completed")
        self._set_status(order.id, AdvancedOrderStatus.COMPLETED)
        self._runners.pop(order.id, None)
        self._prune_pushed()
        logger.info(f"✅ Order {order.id} completed ({reason}): filled {runner.state.filled_size}"
                    f"/{order.total_size}")

    async def _fail(self, runner: OrderRunner, reason: str) -> None:
        """Clean up, record the failure, then mark the order failed"""
        order = runner.order
        await self._cancel_open_children(order, runner.state, "order failed")
        self._append(runner.state, AdvancedOrderExecution(
            advanced_order_id=order.id,
            action=ExecutionAction.ERROR,
            result_status=ExecutionResultStatus.ERRORED,
            reason="order failed",
            error_detail=reason,
        ))
        self._set_status(order.id, AdvancedOrderStatus.FAILED, error=reason)
        self._runners.pop(order.id, None)
        self._prune_pushed()
        logger.error(f"❌ Order {order.id} failed: {reason}")

    # ------------------------------------------------------------------
    # Gateway calls and records
    # ------------------------------------------------------------------

    async def _call(self, operation: str, method: Callable, *args,
                    state: Optional[ExecutionRuntimeState] = None,
                    failure_record: Optional[Callable[[Exception], AdvancedOrderExecution]] = None,
                    **kwargs):
        """
        Call the gateway with a timeout and bounded retries

        Each transient failure is logged, and recorded as its own execution
        record when `failure_record` is given.

        Raises:
            RetriesExhaustedError: transient failures outlasted the retry policy
            RejectedGatewayError: business rejection, never retried
        """
        policy = self.config.retry
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(method(*args, **kwargs),
                                              timeout=self.config.gateway_timeout_seconds)
            except asyncio.TimeoutError:
                error = GatewayTimeoutError(
                    f"{operation} timed out after {self.config.gateway_timeout_seconds}s")
            except TransientGatewayError as e:
                error = e

            attempt += 1
            logger.warning(f"⚠️ {operation} transient failure (attempt {attempt}): {error}")
            if failure_record is not None and state is not None:
                self._append(state, failure_record(error))
            if attempt > policy.max_retries:
                raise RetriesExhaustedError(operation, attempt, error)
            await asyncio.sleep(policy.delay_for(attempt))

    def _append(self, state: ExecutionRuntimeState, execution: AdvancedOrderExecution) -> int:
        """Persist a record, then apply it to the runtime state"""
        execution.timestamp = self._now()
        sequence = self.store.append(execution)
        state.replay(execution)
        if execution.counts_as_fill:
            self.store.update_order_progress(state.order_id, state.filled_size,
                                             state.average_fill_price)
        return sequence

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _set_status(self, order_id: str, status: AdvancedOrderStatus,
                    error: Optional[str] = None) -> AdvancedOrder:
        """Status change stamped with the same clock as the execution records"""
        return self.store.update_order_status(order_id, status, error=error, at=self._now())
