"""
Tests for the execution strategies

Strategies are driven directly with hand-built runtime state and market
snapshots; no gateway or engine involved.
"""

import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from src.advanced_orders.config import EngineConfig
from src.advanced_orders.gateway import PositionSnapshot
from src.advanced_orders.order_schemas import (
    AdvancedOrder, AdvancedOrderExecution, ExecutionAction, ExecutionResultStatus,
    ChildOrderKind, OrderSide,
)
from src.advanced_orders.runtime_state import ExecutionRuntimeState
from src.advanced_orders.strategies import (
    MarketSnapshot, PlaceChild, CancelChild, Reprice, Wait, Complete, Fail,
    TWAPStrategy, LimitChaseStrategy, ScaledStrategy, IcebergStrategy, OCOStrategy,
    TrailingTPStrategy, create_strategy,
)
from src.advanced_orders.validator import validate_order_request

T0 = 1_700_000_000.0


def build_order(order_type, params, size="10", side="buy"):
    parsed = validate_order_request(order_type, "BTC-PERP", side, size, params)
    return AdvancedOrder(id="adv_test", user_id="user-1", **parsed)


def snapshot(now, bid="100", ask="100.5", depth="50", position=None):
    return MarketSnapshot(symbol="BTC-PERP", best_bid=Decimal(bid), best_ask=Decimal(ask),
                          depth=Decimal(depth), now=now, position=position)


class Venue:
    """Applies strategy actions to runtime state the way the engine records them"""

    def __init__(self, state):
        self.state = state
        self.ids = 0

    def record(self, now, **fields):
        execution = AdvancedOrderExecution(advanced_order_id=self.state.order_id, **fields)
        execution.timestamp = datetime.fromtimestamp(now, tz=timezone.utc)
        self.state.replay(execution)
        return execution

    def place(self, action: PlaceChild, now, fill=False):
        self.ids += 1
        child_id = f"c{self.ids}"
        self.record(
            now,
            action=ExecutionAction.PLACE,
            result_status=ExecutionResultStatus.FILLED if fill else ExecutionResultStatus.PENDING,
            requested_size=action.size,
            requested_price=action.price,
            filled_size=action.size if fill else Decimal("0"),
            avg_fill_price=action.price if fill else None,
            child_order_id=child_id,
            order_kind=action.order_kind,
            tag=action.tag,
        )
        return child_id

    def fill(self, child_id, now, size=None, price=None):
        child = self.state.children[child_id]
        quantity = child.remaining if size is None else Decimal(size)
        self.record(
            now,
            action=ExecutionAction.FILL,
            result_status=(ExecutionResultStatus.FILLED if quantity >= child.remaining
                           else ExecutionResultStatus.PARTIAL),
            requested_size=child.size,
            filled_size=quantity,
            avg_fill_price=price or child.price,
            child_order_id=child_id,
        )

    def cancel(self, child_id, now, reason=None, result=ExecutionResultStatus.CANCELLED):
        self.record(now, action=ExecutionAction.CANCEL, result_status=result,
                    child_order_id=child_id, reason=reason)

    def reprice(self, action: Reprice, now):
        old = self.state.children[action.child_id]
        self.ids += 1
        child_id = f"c{self.ids}"
        self.record(now, action=ExecutionAction.REPRICE, result_status=ExecutionResultStatus.PENDING,
                    requested_size=old.remaining, requested_price=action.new_price,
                    child_order_id=child_id, replaces_child_id=old.child_id,
                    order_kind=old.kind, tag=old.tag)
        return child_id


def run_twap(slices, total, config=None, **extra):
    """Drive a TWAP of market slices to completion, filling each slice"""
    order = build_order("twap", {"durationMinutes": slices, "slices": slices, **extra}, size=total)
    strategy = TWAPStrategy(order, config or EngineConfig(idle_poll_seconds=3600),
                            random.Random(7))
    state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
    venue = Venue(state)
    now = T0
    placed = []
    for _ in range(10_000):
        action = strategy.decide(state, snapshot(now))
        if isinstance(action, PlaceChild):
            placed.append(action)
            venue.place(action, now, fill=True)
        elif isinstance(action, Wait):
            assert action.until > now
            now = action.until
        else:
            return order, state, placed, action
    raise AssertionError("TWAP did not finish")


class TestTWAPStrategy:
    """Slicing, scheduling and conservation"""

    @pytest.mark.parametrize("slices", [2, 5, 37])
    def test_placed_sizes_sum_to_total(self, slices):
        order, state, placed, final = run_twap(slices, "1")
        assert isinstance(final, Complete)
        assert len(placed) == slices
        assert sum((a.size for a in placed), Decimal("0")) == order.total_size
        assert state.remaining_size == 0

    @pytest.mark.parametrize("slices", [2, 5, 37])
    def test_conservation_with_odd_total(self, slices):
        order, _, placed, _ = run_twap(slices, "10.123456789")
        assert sum((a.size for a in placed), Decimal("0")) == Decimal("10.123456789")
        assert all(a.size > 0 for a in placed)

    def test_randomized_intervals_still_conserve(self):
        order, _, placed, _ = run_twap(5, "3", randomizeIntervals=True)
        assert sum((a.size for a in placed), Decimal("0")) == Decimal("3")

    def test_slices_spaced_by_interval(self):
        order = build_order("twap", {"durationMinutes": 5, "slices": 5})
        strategy = TWAPStrategy(order, EngineConfig(idle_poll_seconds=1000))
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        venue = Venue(state)

        first = strategy.decide(state, snapshot(T0))
        assert isinstance(first, PlaceChild)
        assert first.tag == "slice:0"
        assert first.order_kind is ChildOrderKind.MARKET
        venue.place(first, T0, fill=True)

        wait = strategy.decide(state, snapshot(T0 + 10))
        assert isinstance(wait, Wait)
        assert wait.until == T0 + 60

        second = strategy.decide(state, snapshot(T0 + 60))
        assert isinstance(second, PlaceChild)
        assert second.tag == "slice:1"

    def test_price_limit_makes_limit_slices(self):
        order = build_order("twap", {"durationMinutes": 1, "slices": 2, "priceLimit": "99"})
        action = TWAPStrategy(order).decide(
            ExecutionRuntimeState(order_id=order.id, total_size=order.total_size), snapshot(T0))
        assert action.order_kind is ChildOrderKind.LIMIT
        assert action.price == Decimal("99")

    def test_unfilled_slices_complete_after_schedule(self):
        order = build_order("twap", {"durationMinutes": 2, "slices": 2, "priceLimit": "99"})
        strategy = TWAPStrategy(order, EngineConfig(idle_poll_seconds=1000))
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        venue = Venue(state)

        venue.place(strategy.decide(state, snapshot(T0)), T0)
        venue.place(strategy.decide(state, snapshot(T0 + 60)), T0 + 60)
        assert isinstance(strategy.decide(state, snapshot(T0 + 90)), Wait)
        final = strategy.decide(state, snapshot(T0 + 120))
        assert isinstance(final, Complete)
        assert "elapsed" in final.reason

    def test_volume_adaptation_bounded(self):
        order = build_order("twap", {"durationMinutes": 4, "slices": 4, "adaptToVolume": True},
                            size="4")
        strategy = TWAPStrategy(order, EngineConfig(idle_poll_seconds=1000))
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        venue = Venue(state)

        first = strategy.decide(state, snapshot(T0, depth="50"))
        assert first.size == Decimal("1")
        venue.place(first, T0, fill=True)

        # Depth collapsed to 10%: slice halves (lower bound), not 90% smaller
        second = strategy.decide(state, snapshot(T0 + 60, depth="5"))
        assert second.size == Decimal("0.5")


class TestLimitChaseStrategy:
    """Chasing, exhaustion and give behaviors"""

    PARAMS = {"offset": -5, "maxChases": 3, "chaseIntervalSeconds": 1, "tickSize": "0.01"}

    def _setup(self, **overrides):
        order = build_order("limit_chase", {**self.PARAMS, **overrides})
        strategy = LimitChaseStrategy(order, EngineConfig(idle_poll_seconds=0.5))
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        return strategy, state, Venue(state)

    def test_initial_price_offset_from_best_quote(self):
        strategy, state, _ = self._setup()
        action = strategy.decide(state, snapshot(T0, bid="100"))
        assert isinstance(action, PlaceChild)
        assert action.price == Decimal("99.95")
        assert action.size == Decimal("10")

    def test_sell_side_offsets_from_ask(self):
        order = build_order("limit_chase", {**self.PARAMS, "offset": 2}, side="sell")
        action = LimitChaseStrategy(order).decide(
            ExecutionRuntimeState(order_id=order.id, total_size=order.total_size),
            snapshot(T0, ask="100.5"))
        assert action.price == Decimal("100.48")

    def test_price_limit_clamps_target(self):
        strategy, state, _ = self._setup(offset=10, priceLimit="100.02")
        action = strategy.decide(state, snapshot(T0, bid="100"))
        assert action.price == Decimal("100.02")

    def test_reprices_then_cancels_then_fails(self):
        strategy, state, venue = self._setup()
        now, bid = T0, Decimal("100")
        child = venue.place(strategy.decide(state, snapshot(now, bid=str(bid))), now)

        for chase in range(3):
            now += 1
            bid += 1
            action = strategy.decide(state, snapshot(now, bid=str(bid)))
            assert isinstance(action, Reprice)
            assert action.child_id == child
            child = venue.reprice(action, now)

        now += 1
        bid += 1
        action = strategy.decide(state, snapshot(now, bid=str(bid)))
        assert isinstance(action, CancelChild)
        venue.cancel(action.child_id, now, reason=action.reason)

        final = strategy.decide(state, snapshot(now + 1, bid=str(bid)))
        assert isinstance(final, Fail)
        assert state.action_counts[ExecutionAction.REPRICE] == 3

    def test_waits_between_checks(self):
        strategy, state, venue = self._setup()
        venue.place(strategy.decide(state, snapshot(T0)), T0)
        action = strategy.decide(state, snapshot(T0 + 0.2, bid="105"))
        assert isinstance(action, Wait)

    def test_small_moves_do_not_reprice(self):
        strategy, state, venue = self._setup(repriceThresholdTicks=5)
        venue.place(strategy.decide(state, snapshot(T0, bid="100")), T0)
        action = strategy.decide(state, snapshot(T0 + 1, bid="100.02"))
        assert isinstance(action, Wait)

    def test_market_give_behavior_sweeps_remainder(self):
        strategy, state, venue = self._setup(maxChases=1, giveBehavior="market")
        child = venue.place(strategy.decide(state, snapshot(T0, bid="100")), T0)
        venue.fill(child, T0, size="4")

        child = venue.reprice(strategy.decide(state, snapshot(T0 + 1, bid="101")), T0 + 1)
        cancel = strategy.decide(state, snapshot(T0 + 2, bid="102"))
        assert isinstance(cancel, CancelChild)
        venue.cancel(cancel.child_id, T0 + 2, reason=cancel.reason)

        sweep = strategy.decide(state, snapshot(T0 + 2.1, bid="102"))
        assert isinstance(sweep, PlaceChild)
        assert sweep.order_kind is ChildOrderKind.MARKET
        assert sweep.size == Decimal("6")
        venue.place(sweep, T0 + 2.1, fill=True)

        assert isinstance(strategy.decide(state, snapshot(T0 + 3)), Complete)

    def test_wait_give_behavior_rests(self):
        strategy, state, venue = self._setup(maxChases=1, giveBehavior="wait")
        venue.place(strategy.decide(state, snapshot(T0, bid="100")), T0)
        venue.reprice(strategy.decide(state, snapshot(T0 + 1, bid="101")), T0 + 1)
        action = strategy.decide(state, snapshot(T0 + 2, bid="102"))
        assert isinstance(action, Wait)
        assert action.note
        assert isinstance(strategy.decide(state, snapshot(T0 + 3, bid="103")), Wait)

    def test_restore_after_give_up_fails(self):
        strategy, state, venue = self._setup(maxChases=1)
        venue.place(strategy.decide(state, snapshot(T0, bid="100")), T0)
        venue.reprice(strategy.decide(state, snapshot(T0 + 1, bid="101")), T0 + 1)
        give_up = strategy.decide(state, snapshot(T0 + 2, bid="102"))
        venue.cancel(give_up.child_id, T0 + 2, reason=give_up.reason)

        fresh = LimitChaseStrategy(strategy.order)
        fresh.restore(state)
        assert isinstance(fresh.decide(state, snapshot(T0 + 3, bid="102")), Fail)

    @pytest.mark.parametrize("give", ["cancel", "market", "wait"])
    def test_restore_ignores_cancel_of_already_closed_child(self, give):
        strategy, state, venue = self._setup(giveBehavior=give)
        child = venue.place(strategy.decide(state, snapshot(T0, bid="100")), T0)
        venue.cancel(child, T0 + 1, reason="reprice skipped, child not_found",
                     result=ExecutionResultStatus.REJECTED)

        expected = strategy.decide(state, snapshot(T0 + 2, bid="101"))
        fresh = LimitChaseStrategy(strategy.order)
        fresh.restore(state)

        assert fresh.decide(state, snapshot(T0 + 2, bid="101")) == expected
        assert isinstance(expected, PlaceChild)
        assert expected.tag == "chase"
        assert expected.order_kind is ChildOrderKind.LIMIT


class TestScaledStrategy:
    """Ladder computation and placement"""

    def test_linear_levels(self):
        order = build_order("scaled", {"levels": 3, "priceStart": 100, "priceEnd": 110,
                                       "distribution": "linear"}, size="9")
        levels = ScaledStrategy(order).levels
        assert [p for p, _ in levels] == [Decimal("100"), Decimal("105"), Decimal("110")]
        assert [s for _, s in levels] == [Decimal("3"), Decimal("3"), Decimal("3")]

    def test_geometric_levels(self):
        order = build_order("scaled", {"levels": 3, "priceStart": 100, "priceEnd": 400,
                                       "distribution": "geometric"}, size="1")
        levels = ScaledStrategy(order).levels
        assert [p for p, _ in levels] == [Decimal("100"), Decimal("200"), Decimal("400")]
        assert sum((s for _, s in levels), Decimal("0")) == Decimal("1")

    def test_custom_weights(self):
        order = build_order("scaled", {"levels": 3, "priceStart": 100, "priceEnd": 110,
                                       "distribution": "custom",
                                       "sizeDistribution": [0.5, 0.3, 0.2]}, size="10")
        sizes = [s for _, s in ScaledStrategy(order).levels]
        assert sizes == [Decimal("5"), Decimal("3"), Decimal("2")]

    def test_places_each_level_then_completes(self):
        order = build_order("scaled", {"levels": 4, "priceStart": 100, "priceEnd": 97,
                                       "distribution": "linear"}, size="1")
        strategy = ScaledStrategy(order)
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        venue = Venue(state)

        children = []
        for index in range(4):
            action = strategy.decide(state, snapshot(T0))
            assert isinstance(action, PlaceChild)
            assert action.tag == f"level:{index}"
            children.append(venue.place(action, T0))

        assert isinstance(strategy.decide(state, snapshot(T0)), Wait)
        for child in children[:3]:
            venue.fill(child, T0 + 1)
        venue.cancel(children[3], T0 + 2)
        assert isinstance(strategy.decide(state, snapshot(T0 + 3)), Complete)


class TestIcebergStrategy:
    """Chunk refresh and price-limit breach"""

    def _setup(self, size="5", **params):
        base = {"displaySize": 2, "priceLimit": 100, "refreshBehavior": "immediate"}
        order = build_order("iceberg", {**base, **params}, size=size)
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        return IcebergStrategy(order), state, Venue(state)

    def test_chunks_until_total_exhausted(self):
        strategy, state, venue = self._setup()
        sizes = []
        now = T0
        while True:
            action = strategy.decide(state, snapshot(now, bid="99.5", ask="100"))
            if isinstance(action, Complete):
                break
            assert isinstance(action, PlaceChild)
            assert action.price == Decimal("100")
            sizes.append(action.size)
            child = venue.place(action, now)
            assert isinstance(strategy.decide(state, snapshot(now, bid="99.5", ask="100")), Wait)
            venue.fill(child, now)
            now += 1
        assert sizes == [Decimal("2"), Decimal("2"), Decimal("1")]

    def test_delayed_refresh_waits(self):
        strategy, state, venue = self._setup(refreshBehavior="delayed", refreshDelaySeconds=5)
        child = venue.place(strategy.decide(state, snapshot(T0)), T0)
        venue.fill(child, T0 + 1)

        action = strategy.decide(state, snapshot(T0 + 2))
        assert isinstance(action, Wait)
        assert action.until == T0 + 6
        assert isinstance(strategy.decide(state, snapshot(T0 + 6)), PlaceChild)

    def test_buy_breach_fails(self):
        strategy, state, _ = self._setup()
        assert isinstance(strategy.decide(state, snapshot(T0, bid="101", ask="101.5")), Fail)

    def test_sell_breach_fails(self):
        order = build_order("iceberg", {"displaySize": 2, "priceLimit": 100,
                                        "refreshBehavior": "immediate"}, size="5", side="sell")
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        assert isinstance(IcebergStrategy(order).decide(state, snapshot(T0, bid="98", ask="99")), Fail)


class TestOCOStrategy:
    """Both legs rest, first fill cancels the other"""

    PARAMS = {"orders": [{"type": "limit", "price": 95, "size": 1},
                         {"type": "stop", "price": 110, "size": 1}]}

    def _place_both(self):
        order = build_order("oco", self.PARAMS, size="1")
        strategy = OCOStrategy(order)
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        venue = Venue(state)
        first = strategy.decide(state, snapshot(T0))
        assert first.tag == "leg:0" and first.order_kind is ChildOrderKind.LIMIT
        first_child = venue.place(first, T0)
        second = strategy.decide(state, snapshot(T0))
        assert second.tag == "leg:1" and second.order_kind is ChildOrderKind.STOP
        second_child = venue.place(second, T0)
        return strategy, state, venue, first_child, second_child

    def test_fill_cancels_other_leg_once(self):
        strategy, state, venue, leg_a, leg_b = self._place_both()
        assert isinstance(strategy.decide(state, snapshot(T0 + 1)), Wait)

        venue.fill(leg_a, T0 + 2)
        action = strategy.decide(state, snapshot(T0 + 2))
        assert action == CancelChild(leg_b, reason=action.reason)
        venue.cancel(leg_b, T0 + 2)

        assert isinstance(strategy.decide(state, snapshot(T0 + 3)), Complete)

    def test_both_legs_closed_without_fill_fails(self):
        strategy, state, venue, leg_a, leg_b = self._place_both()
        venue.cancel(leg_a, T0 + 1)
        venue.cancel(leg_b, T0 + 1)
        assert isinstance(strategy.decide(state, snapshot(T0 + 2)), Fail)


class TestTrailingTPStrategy:
    """Arming, trailing and position loss"""

    PARAMS = {"positionId": "pos-1", "trailDistance": 2, "minProfit": 5, "updateIntervalSeconds": 1}

    @staticmethod
    def position(mark, pnl, side=OrderSide.BUY, size="1"):
        return PositionSnapshot(position_id="pos-1", symbol="BTC-PERP", side=side,
                                size=Decimal(size), entry_price=Decimal("100"),
                                mark_price=Decimal(mark), unrealized_pnl=Decimal(pnl))

    def _setup(self, side="sell"):
        order = build_order("trailing_tp", self.PARAMS, size="1", side=side)
        strategy = create_strategy(order)
        state = ExecutionRuntimeState(order_id=order.id, total_size=order.total_size)
        return strategy, state, Venue(state)

    def test_needs_position(self):
        strategy, _, _ = self._setup()
        assert isinstance(strategy, TrailingTPStrategy)
        assert strategy.needs_position

    def test_not_armed_below_min_profit(self):
        strategy, state, _ = self._setup()
        action = strategy.decide(state, snapshot(T0, position=self.position("102", "2")))
        assert isinstance(action, Wait)

    def test_places_and_trails_protective_stop(self):
        strategy, state, venue = self._setup()
        place = strategy.decide(state, snapshot(T0, position=self.position("110", "10")))
        assert isinstance(place, PlaceChild)
        assert place.kind is ChildOrderKind.STOP
        assert place.reduce_only
        assert place.price == Decimal("108")
        child = venue.place(place, T0)

        # Mark rises: stop follows after the update interval
        action = strategy.decide(state, snapshot(T0 + 1, position=self.position("115", "15")))
        assert isinstance(action, Reprice)
        assert action.new_price == Decimal("113")
        assert action.reduce_only
        child = venue.reprice(action, T0 + 1)

        # Mark falls back: stop never loosens
        action = strategy.decide(state, snapshot(T0 + 2, position=self.position("112", "12")))
        assert isinstance(action, Wait)

        venue.fill(child, T0 + 3, price=Decimal("113"))
        assert isinstance(strategy.decide(state, snapshot(T0 + 3, position=self.position("112", "12"))),
                          Complete)

    def test_short_position_trails_low_water_mark(self):
        strategy, state, _ = self._setup(side="buy")
        place = strategy.decide(state, snapshot(T0, position=self.position("90", "10", side=OrderSide.SELL)))
        assert place.price == Decimal("92")

    def test_missing_position_fails(self):
        strategy, state, _ = self._setup()
        action = strategy.decide(state, snapshot(T0, position=None))
        assert isinstance(action, Fail)
        assert "not found" in action.reason

    def test_same_side_as_position_fails(self):
        strategy, state, _ = self._setup(side="buy")
        assert isinstance(strategy.decide(state, snapshot(T0, position=self.position("110", "10"))), Fail)
