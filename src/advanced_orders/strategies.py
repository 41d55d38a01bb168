"""
Execution Strategies - per-order-type decision logic

Each strategy turns (runtime state, market snapshot) into exactly one Action:
- PlaceChild / CancelChild / Reprice: a child order operation for the engine
- Wait: nothing to do until a point in time (or until woken by a fill)
- Complete / Fail: terminal outcome for the advanced order

Strategies never call the gateway and never touch the record store. Progress
is derived from the tagged child orders held in the runtime state, so a state
rebuilt from the execution log drives the strategy exactly like the original.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN
from typing import Dict, List, Optional, Tuple, Type, Union
import random

from loguru import logger

from .config import EngineConfig
from .gateway import PositionSnapshot
from .order_schemas import (
    AdvancedOrder, AdvancedOrderType, ChildOrderKind, ExecutionAction, OrderSide,
    GiveBehavior, ScaledDistribution, RefreshBehavior, OcoLegType,
)
from .runtime_state import ChildOrder, ChildState, ExecutionRuntimeState


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlaceChild:
    size: Decimal
    price: Optional[Decimal] = None             # None = market
    reduce_only: bool = False
    kind: Optional[ChildOrderKind] = None
    tag: str = ""
    reason: str = ""

    @property
    def order_kind(self) -> ChildOrderKind:
        if self.kind is not None:
            return self.kind
        return ChildOrderKind.MARKET if self.price is None else ChildOrderKind.LIMIT


@dataclass(frozen=True)
class CancelChild:
    child_id: str
    reason: str = ""


@dataclass(frozen=True)
class Reprice:
    child_id: str
    new_price: Decimal
    reduce_only: bool = False
    reason: str = ""


@dataclass(frozen=True)
class Wait:
    until: float                                # Epoch seconds
    note: Optional[str] = None                  # Logged as a skip record when set


@dataclass(frozen=True)
class Complete:
    reason: str = ""


@dataclass(frozen=True)
class Fail:
    reason: str


Action = Union[PlaceChild, CancelChild, Reprice, Wait, Complete, Fail]


@dataclass
class MarketSnapshot:
    """What a strategy sees on one tick"""

    symbol: str
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    depth: Decimal
    now: float
    position: Optional[PositionSnapshot] = None

    def same_side_quote(self, side: OrderSide) -> Optional[Decimal]:
        """Best quote on our own side of the book (bid for buys)"""
        return self.best_bid if side is OrderSide.BUY else self.best_ask

    def touch(self, side: OrderSide) -> Optional[Decimal]:
        """Price a marketable order would trade at (ask for buys)"""
        return self.best_ask if side is OrderSide.BUY else self.best_bid


# ---------------------------------------------------------------------------
# Base strategy
# ---------------------------------------------------------------------------

class ExecutionStrategy(ABC):
    """
    Abstract base class for execution strategies

    A strategy instance belongs to one order and is only ever called from
    that order's loop.
    """

    needs_position: bool = False

    def __init__(self, order: AdvancedOrder, config: Optional[EngineConfig] = None,
                 rng: Optional[random.Random] = None):
        self.order = order
        self.params = order.parameters
        self.config = config or EngineConfig()
        self.rng = rng or random.Random()

    @property
    def name(self) -> str:
        return self.order.order_type.value

    def restore(self, state: ExecutionRuntimeState) -> None:
        """Re-derive strategy scratch data after a rebuild from history"""
        pass

    @abstractmethod
    def decide(self, state: ExecutionRuntimeState, snapshot: MarketSnapshot) -> Action:
        """Pick the next action for this order"""
        pass

    # Helpers

    def quantize_size(self, value: Decimal) -> Decimal:
        return value.quantize(self.config.size_quantum, rounding=ROUND_DOWN)

    def quantize_price(self, value: Decimal, tick: Optional[Decimal] = None) -> Decimal:
        if tick is not None:
            return (value / tick).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN) * tick
        return value.quantize(self.config.price_quantum, rounding=ROUND_HALF_EVEN)

    def idle(self, snapshot: MarketSnapshot, until: Optional[float] = None) -> Wait:
        """Wait until `until`, but re-check at least every idle poll"""
        poll_at = snapshot.now + self.config.idle_poll_seconds
        return Wait(until=poll_at if until is None else min(until, poll_at))


def _tag_index(child: ChildOrder) -> int:
    return int(child.tag.rsplit(":", 1)[1])


# ---------------------------------------------------------------------------
# TWAP
# ---------------------------------------------------------------------------

class TWAPStrategy(ExecutionStrategy):
    """
    Time-weighted average price

    Splits the total size into `slices` children placed one interval apart.
    The last slice always takes the exact unplaced remainder, so the placed
    sizes sum to the total with no rounding drift.
    """

    DEPTH_FACTOR_BOUNDS = (Decimal("0.5"), Decimal("1.5"))

    def _interval(self, state: ExecutionRuntimeState, index: int) -> float:
        base = self.params.slice_interval_seconds
        if not self.params.randomize_intervals:
            return base
        jitter = state.strategy_internal.setdefault('jitter', {})
        if index not in jitter:
            spread = self.config.twap_jitter
            jitter[index] = self.rng.uniform(-spread, spread)
        return base * (1.0 + jitter[index])

    def _slice_size(self, state: ExecutionRuntimeState, placed: int, unplaced: Decimal,
                    snapshot: MarketSnapshot) -> Decimal:
        slices_left = self.params.slices - placed
        if slices_left <= 1:
            return unplaced

        size = self.quantize_size(unplaced / slices_left)
        if self.params.adapt_to_volume and snapshot.depth > 0:
            reference = state.strategy_internal.setdefault('reference_depth', snapshot.depth)
            low, high = self.DEPTH_FACTOR_BOUNDS
            factor = min(max(snapshot.depth / reference, low), high)
            size = self.quantize_size(size * factor)
        if size <= 0:
            return unplaced
        return min(size, unplaced)

    def decide(self, state: ExecutionRuntimeState, snapshot: MarketSnapshot) -> Action:
        slices = sorted(state.children_tagged("slice:"), key=_tag_index)
        placed = len(slices)
        unplaced = self.order.total_size - sum((c.size for c in slices), Decimal("0"))
        last = slices[-1] if slices else None

        if placed < self.params.slices and unplaced > 0:
            if last is not None:
                due = last.placed_at + self._interval(state, placed)
                if snapshot.now < due:
                    return self.idle(snapshot, due)

            size = self._slice_size(state, placed, unplaced, snapshot)
            if size > 0:
                price = self.params.price_limit
                return PlaceChild(
                    size=size,
                    price=price,
                    kind=ChildOrderKind.LIMIT if price is not None else ChildOrderKind.MARKET,
                    tag=f"slice:{placed}",
                    reason=f"TWAP slice {placed + 1}/{self.params.slices}",
                )

        # Everything placed: finish once filled or once the schedule has run out
        if not state.open_children():
            return Complete("all slices placed and filled")
        deadline = last.placed_at + self.params.slice_interval_seconds
        if snapshot.now >= deadline:
            return Complete("TWAP duration elapsed")
        return self.idle(snapshot, deadline)


# ---------------------------------------------------------------------------
# Limit chase
# ---------------------------------------------------------------------------

class LimitChaseStrategy(ExecutionStrategy):
    """
    Resting limit that follows the best quote

    Target price is the same-side best quote moved `offset` ticks towards the
    other side (negative offsets rest behind the quote), clamped to the price
    limit. Once `maxChases` reprices have been used and another one would be
    needed, `giveBehavior` decides what happens:
    - cancel: cancel the resting child, then Fail
    - market: cancel the resting child, then sweep the remainder at market
    - wait: keep resting at the last price until filled
    """

    # Written only by the give-up step; restore() keys on them
    GIVE_UP_REASONS = {
        GiveBehavior.CANCEL: "chases exhausted",
        GiveBehavior.MARKET: "chases exhausted, switching to market",
        GiveBehavior.WAIT: "chases exhausted, resting at last price",
    }

    @property
    def tick(self) -> Decimal:
        return self.params.tick_size or self.config.default_tick_size

    def restore(self, state: ExecutionRuntimeState) -> None:
        internal = state.strategy_internal
        give = self.params.give_behavior
        action = ExecutionAction.SKIP if give is GiveBehavior.WAIT else ExecutionAction.CANCEL
        gave_up = state.count_reason(action, self.GIVE_UP_REASONS[give]) > 0

        if give is GiveBehavior.MARKET:
            if state.children_tagged("chase:market"):
                internal['mode'] = 'market'
            elif gave_up:
                internal['market_cancel_sent'] = True
        elif gave_up:
            internal['mode'] = 'cancelled' if give is GiveBehavior.CANCEL else 'waiting'

    def target_price(self, snapshot: MarketSnapshot) -> Optional[Decimal]:
        side = self.order.side
        quote = snapshot.same_side_quote(side)
        if quote is None:
            return None

        shift = self.params.offset * self.tick
        target = quote + shift if side is OrderSide.BUY else quote - shift
        limit = self.params.price_limit
        if limit is not None:
            target = min(target, limit) if side is OrderSide.BUY else max(target, limit)
        target = self.quantize_price(target, self.tick)
        return target if target > 0 else None

    def decide(self, state: ExecutionRuntimeState, snapshot: MarketSnapshot) -> Action:
        internal = state.strategy_internal
        if state.remaining_size <= 0:
            return Complete("limit chase filled")

        mode = internal.get('mode')
        open_children = state.open_children()

        if mode == 'cancelled':
            return Fail(f"limit chase exhausted after {self.params.max_chases} chases")
        if mode == 'market':
            if open_children:
                return self.idle(snapshot)
            return Fail("market sweep did not fill the remainder")
        if mode == 'waiting':
            if not open_children:
                return Fail("resting chase order closed without a fill")
            return self.idle(snapshot)

        if internal.get('market_cancel_sent') and not open_children:
            internal['mode'] = 'market'
            return PlaceChild(size=state.remaining_size, kind=ChildOrderKind.MARKET,
                              tag="chase:market", reason="market sweep of remainder")

        target = self.target_price(snapshot)
        if target is None:
            return self.idle(snapshot)

        if not open_children:
            internal['next_check_at'] = snapshot.now + self.params.chase_interval_seconds
            return PlaceChild(
                size=state.remaining_size,
                price=target,
                kind=ChildOrderKind.LIMIT,
                tag="chase",
                reason=f"limit chase at {target}",
            )

        child = open_children[0]
        next_check = internal.get('next_check_at', snapshot.now)
        if snapshot.now < next_check:
            return self.idle(snapshot, next_check)
        internal['next_check_at'] = snapshot.now + self.params.chase_interval_seconds

        moved = abs(target - child.price) >= self.params.reprice_threshold_ticks * self.tick
        if not moved:
            return self.idle(snapshot, internal['next_check_at'])

        chases = state.action_counts[ExecutionAction.REPRICE]
        if chases < self.params.max_chases:
            return Reprice(child.child_id, target,
                           reason=f"chase {chases + 1}/{self.params.max_chases} to {target}")

        return self._give_up(state, child, snapshot)

    def _give_up(self, state: ExecutionRuntimeState, child: ChildOrder,
                 snapshot: MarketSnapshot) -> Action:
        internal = state.strategy_internal
        give = self.params.give_behavior
        logger.info(f"[limit_chase] {self.order.id} chases exhausted, giving up with '{give.value}'")

        if give is GiveBehavior.CANCEL:
            internal['mode'] = 'cancelled'
            return CancelChild(child.child_id, reason=self.GIVE_UP_REASONS[give])

        if give is GiveBehavior.WAIT:
            internal['mode'] = 'waiting'
            return Wait(until=snapshot.now + self.config.idle_poll_seconds,
                        note=self.GIVE_UP_REASONS[give])

        internal['market_cancel_sent'] = True
        return CancelChild(child.child_id, reason=self.GIVE_UP_REASONS[give])


# ---------------------------------------------------------------------------
# Scaled
# ---------------------------------------------------------------------------

class ScaledStrategy(ExecutionStrategy):
    """
    Ladder of limit orders across [priceStart, priceEnd]

    Levels are computed once. One level is placed per tick; the order
    completes when no level is resting any more (filled or cancelled).
    """

    def __init__(self, order, config=None, rng=None):
        super().__init__(order, config, rng)
        self.levels = self.compute_levels()

    def level_prices(self) -> List[Decimal]:
        params = self.params
        n = params.levels
        start, end = params.price_start, params.price_end

        if params.distribution is ScaledDistribution.GEOMETRIC:
            ratio = end / start
            prices = [start * ratio ** (Decimal(i) / Decimal(n - 1)) for i in range(n)]
        else:
            step = (end - start) / Decimal(n - 1)
            prices = [start + step * i for i in range(n)]

        prices[0], prices[-1] = start, end
        return [self.quantize_price(p) for p in prices]

    def level_sizes(self) -> List[Decimal]:
        params = self.params
        total = self.order.total_size
        if params.distribution is ScaledDistribution.CUSTOM:
            sizes = [self.quantize_size(total * w) for w in params.size_distribution[:-1]]
        else:
            sizes = [self.quantize_size(total / params.levels)] * (params.levels - 1)
        sizes.append(total - sum(sizes, Decimal("0")))
        return sizes

    def compute_levels(self) -> List[Tuple[Decimal, Decimal]]:
        """(price, size) per level, zero-size levels dropped"""
        pairs = zip(self.level_prices(), self.level_sizes())
        return [(price, size) for price, size in pairs if size > 0]

    def decide(self, state: ExecutionRuntimeState, snapshot: MarketSnapshot) -> Action:
        placed = len(state.children_tagged("level:"))
        if placed < len(self.levels):
            price, size = self.levels[placed]
            return PlaceChild(
                size=size,
                price=price,
                kind=ChildOrderKind.LIMIT,
                tag=f"level:{placed}",
                reason=f"scaled level {placed + 1}/{len(self.levels)} @ {price}",
            )

        if not state.open_children():
            return Complete("all levels filled or cancelled")
        return self.idle(snapshot)


# ---------------------------------------------------------------------------
# Iceberg
# ---------------------------------------------------------------------------

class IcebergStrategy(ExecutionStrategy):
    """
    Shows one `displaySize` chunk at a time at the price limit

    A new chunk is placed when the previous one has closed, immediately or
    after `refreshDelaySeconds`. The order fails once the market has moved
    through the price limit.
    """

    def breached(self, snapshot: MarketSnapshot) -> bool:
        limit = self.params.price_limit
        if self.order.side is OrderSide.BUY:
            return snapshot.best_bid is not None and snapshot.best_bid > limit
        return snapshot.best_ask is not None and snapshot.best_ask < limit

    def decide(self, state: ExecutionRuntimeState, snapshot: MarketSnapshot) -> Action:
        if state.remaining_size <= 0:
            return Complete("iceberg fully executed")

        if self.breached(snapshot):
            return Fail(f"price limit {self.params.price_limit} breached")

        if state.open_children():
            return self.idle(snapshot)

        chunks = state.children_tagged("chunk:")
        if chunks and self.params.refresh_behavior is RefreshBehavior.DELAYED:
            last_closed = max(c.closed_at or c.placed_at for c in chunks)
            due = last_closed + self.params.refresh_delay_seconds
            if snapshot.now < due:
                return Wait(until=due)

        size = min(self.params.display_size, state.remaining_size)
        return PlaceChild(
            size=size,
            price=self.params.price_limit,
            kind=ChildOrderKind.LIMIT,
            tag=f"chunk:{len(chunks)}",
            reason=f"iceberg chunk {len(chunks) + 1}",
        )


# ---------------------------------------------------------------------------
# OCO
# ---------------------------------------------------------------------------

class OCOStrategy(ExecutionStrategy):
    """One-cancels-other: both legs rest, the first fill cancels the other"""

    def decide(self, state: ExecutionRuntimeState, snapshot: MarketSnapshot) -> Action:
        legs = {_tag_index(c): c for c in state.children_tagged("leg:")}
        filled = [c for c in legs.values() if c.filled_size > 0]

        if filled:
            for child in legs.values():
                if child.is_open and child.filled_size == 0:
                    return CancelChild(child.child_id, reason=f"other leg {filled[0].tag} filled")
            if any(c.is_open for c in filled):
                return self.idle(snapshot)
            return Complete(f"leg {filled[0].tag} filled")

        for index, leg in enumerate(self.params.legs):
            if index not in legs:
                return PlaceChild(
                    size=leg.size,
                    price=leg.price,
                    kind=ChildOrderKind.STOP if leg.type is OcoLegType.STOP else ChildOrderKind.LIMIT,
                    tag=f"leg:{index}",
                    reason=f"OCO {leg.type.value} leg @ {leg.price}",
                )

        if not any(c.is_open for c in legs.values()):
            return Fail("both OCO legs closed without a fill")
        return self.idle(snapshot)


# ---------------------------------------------------------------------------
# Trailing take-profit
# ---------------------------------------------------------------------------

class TrailingTPStrategy(ExecutionStrategy):
    """
    Protective stop trailing a position's favorable excursion

    Long positions track the highest mark seen and keep a reduce-only stop at
    `high - trailDistance`; short positions mirror this with the lowest mark.
    Nothing is placed until unrealized profit reaches `minProfit`. A position
    that disappears mid-trail fails the order.
    """

    needs_position = True

    def _is_long(self, position: PositionSnapshot) -> bool:
        return position.side is OrderSide.BUY

    def restore(self, state: ExecutionRuntimeState) -> None:
        trail = [c for c in state.children_tagged("trail") if c.price is not None]
        if not trail:
            return
        internal = state.strategy_internal
        internal['armed'] = True
        latest = max(trail, key=lambda c: c.placed_at)
        if self.order.side is OrderSide.SELL:
            internal['extreme'] = latest.price + self.params.trail_distance
        else:
            internal['extreme'] = latest.price - self.params.trail_distance

    def stop_price(self, extreme: Decimal, long: bool) -> Decimal:
        trail = self.params.trail_distance
        return self.quantize_price(extreme - trail if long else extreme + trail)

    def decide(self, state: ExecutionRuntimeState, snapshot: MarketSnapshot) -> Action:
        params = self.params
        internal = state.strategy_internal
        trail = state.children_tagged("trail")

        if any(c.state is ChildState.FILLED for c in trail):
            return Complete("protective stop filled")

        position = snapshot.position
        if position is None or position.size <= 0:
            return Fail(f"position {params.position_id} not found or closed")

        long = self._is_long(position)
        if self.order.side is position.side:
            return Fail(f"order side {self.order.side.value} does not close position {params.position_id}")

        mark = position.mark_price
        extreme = internal.get('extreme')
        if extreme is None:
            extreme = mark
        else:
            extreme = max(extreme, mark) if long else min(extreme, mark)
        internal['extreme'] = extreme

        if not internal.get('armed'):
            if position.unrealized_pnl < params.min_profit:
                return self.idle(snapshot, snapshot.now + params.update_interval_seconds)
            internal['armed'] = True
            logger.info(f"[trailing_tp] {self.order.id} armed at mark {mark}")

        stop = self.stop_price(extreme, long)
        if stop <= 0:
            return self.idle(snapshot)

        open_trail = [c for c in trail if c.is_open]
        if not open_trail:
            size = min(state.remaining_size, position.size)
            internal['next_update_at'] = snapshot.now + params.update_interval_seconds
            return PlaceChild(
                size=size,
                price=stop,
                reduce_only=True,
                kind=ChildOrderKind.STOP,
                tag="trail",
                reason=f"trailing stop @ {stop}",
            )

        next_update = internal.get('next_update_at', snapshot.now)
        if snapshot.now < next_update:
            return self.idle(snapshot, next_update)
        internal['next_update_at'] = snapshot.now + params.update_interval_seconds

        child = open_trail[0]
        improved = stop > child.price if long else stop < child.price
        if improved:
            return Reprice(child.child_id, stop, reduce_only=True,
                           reason=f"trail stop {child.price} -> {stop}")
        return self.idle(snapshot, internal['next_update_at'])


_STRATEGIES: Dict[AdvancedOrderType, Type[ExecutionStrategy]] = {
    AdvancedOrderType.TWAP: TWAPStrategy,
    AdvancedOrderType.LIMIT_CHASE: LimitChaseStrategy,
    AdvancedOrderType.SCALED: ScaledStrategy,
    AdvancedOrderType.ICEBERG: IcebergStrategy,
    AdvancedOrderType.OCO: OCOStrategy,
    AdvancedOrderType.TRAILING_TP: TrailingTPStrategy,
}


def create_strategy(order: AdvancedOrder, config: Optional[EngineConfig] = None,
                    rng: Optional[random.Random] = None) -> ExecutionStrategy:
    """Build the strategy for an order's type"""
    return _STRATEGIES[order.order_type](order, config, rng)
