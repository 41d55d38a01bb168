"""
Paper Exchange Gateway - in-memory simulated venue

Implements the ExchangeGateway contract against order books and positions
held in memory:
- Market children fill immediately at the touch
- Limit children fill when the book crosses their price
- Stop children trigger (and fill at the touch) when the book trades through
- Fills are pushed to listeners and are also available by polling

Used for local runs of the API and throughout the test-suite. Faults can be
injected per method to exercise retry and rejection paths.
"""

import asyncio
import itertools
from dataclasses import dataclass
from decimal import Decimal
from typing import Deque, Dict, List, Optional
from collections import defaultdict, deque

from loguru import logger

from .gateway import (
    ExchangeGateway, PlaceOrderResult, CancelOrderResult, OrderBookSnapshot,
    PositionSnapshot, ChildOrderUpdate, PlacementStatus, CancelStatus,
    ChildOrderStatus, GatewayError,
)
from .order_schemas import ChildOrderKind, OrderSide


@dataclass
class PaperChildOrder:
    child_id: str
    symbol: str
    side: OrderSide
    size: Decimal
    price: Optional[Decimal]
    kind: ChildOrderKind
    reduce_only: bool = False
    filled_size: Decimal = Decimal("0")
    avg_fill_price: Optional[Decimal] = None
    status: ChildOrderStatus = ChildOrderStatus.OPEN

    @property
    def remaining(self) -> Decimal:
        return self.size - self.filled_size

    def to_update(self) -> ChildOrderUpdate:
        return ChildOrderUpdate(
            child_id=self.child_id,
            status=self.status,
            filled_size=self.filled_size,
            avg_fill_price=self.avg_fill_price,
        )


@dataclass
class PaperBook:
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    depth: Decimal = Decimal("0")


class PaperExchangeGateway(ExchangeGateway):
    """
    Simulated exchange for paper trading and tests

    Book and position state is driven by the caller through `set_order_book`
    and `set_position`; every book change re-evaluates resting children.
    """

    venue = "paper"

    def __init__(self, auto_fill: bool = True, latency_seconds: float = 0.0):
        super().__init__()
        self.auto_fill = auto_fill                 # Match resting children on book updates
        self.latency_seconds = latency_seconds

        self.books: Dict[str, PaperBook] = {}
        self.positions: Dict[str, PositionSnapshot] = {}
        self.children: Dict[str, PaperChildOrder] = {}

        # Call accounting and fault injection
        self.calls: Dict[str, int] = defaultdict(int)
        self._faults: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Market state controls
    # ------------------------------------------------------------------

    def set_order_book(self, symbol: str, best_bid, best_ask, depth="0") -> None:
        """Set top of book; resting children are matched against it"""
        self.books[symbol] = PaperBook(
            best_bid=Decimal(str(best_bid)) if best_bid is not None else None,
            best_ask=Decimal(str(best_ask)) if best_ask is not None else None,
            depth=Decimal(str(depth)),
        )
        if self.auto_fill:
            self.match_resting(symbol)

    def set_position(self, position: PositionSnapshot) -> None:
        self.positions[position.position_id] = position

    def close_position(self, position_id: str) -> None:
        self.positions.pop(position_id, None)

    def inject_fault(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `method` raise `error`"""
        for _ in range(times):
            self._faults[method].append(error)

    # ------------------------------------------------------------------
    # Manual fills (for scripted scenarios)
    # ------------------------------------------------------------------

    def fill_child(self, child_id: str, size: Optional[Decimal] = None,
                   price: Optional[Decimal] = None) -> ChildOrderUpdate:
        """Fill a resting child fully (or by `size`) and push the update"""
        child = self.children[child_id]
        if child.status.is_closed:
            return child.to_update()
        quantity = child.remaining if size is None else min(Decimal(str(size)), child.remaining)
        fill_price = price if price is not None else (child.price or self._touch(child))
        self._apply_fill(child, quantity, fill_price)
        return child.to_update()

    def expire_child(self, child_id: str, notify: bool = True) -> ChildOrderUpdate:
        """Close a resting child on the venue side; `notify=False` models a lost push"""
        child = self.children[child_id]
        if not child.status.is_closed:
            child.status = ChildOrderStatus.CANCELLED
            logger.debug(f"[paper] expired {child_id}")
            if notify:
                self._notify_fill(child.to_update())
        return child.to_update()

    def open_children(self, symbol: Optional[str] = None) -> List[PaperChildOrder]:
        return [
            child for child in self.children.values()
            if not child.status.is_closed and (symbol is None or child.symbol == symbol)
        ]

    # ------------------------------------------------------------------
    # ExchangeGateway contract
    # ------------------------------------------------------------------

    async def place_order(self, symbol, side, size, price=None, reduce_only=False,
                          order_kind=None) -> PlaceOrderResult:
        await self._enter("place_order")

        kind = order_kind or (ChildOrderKind.MARKET if price is None else ChildOrderKind.LIMIT)
        book = self.books.get(symbol)
        if book is None:
            return PlaceOrderResult(child_id=None, status=PlacementStatus.REJECTED,
                                    message=f"unknown symbol {symbol}")

        child = PaperChildOrder(
            child_id=f"paper_{next(self._ids)}",
            symbol=symbol,
            side=side,
            size=Decimal(size),
            price=price,
            kind=kind,
            reduce_only=reduce_only,
        )
        self.children[child.child_id] = child

        if kind is ChildOrderKind.MARKET:
            touch = self._touch(child)
            if touch is None:
                child.status = ChildOrderStatus.REJECTED
                return PlaceOrderResult(child_id=child.child_id, status=PlacementStatus.REJECTED,
                                        message="no liquidity")
            self._apply_fill(child, child.size, touch, notify=False)
        elif self.auto_fill:
            self._try_match(child, notify=False)

        logger.debug(f"[paper] placed {child.child_id} {side.value} {size} {symbol} "
                     f"{kind.value} @ {price}")
        return PlaceOrderResult(
            child_id=child.child_id,
            status=PlacementStatus.ACCEPTED,
            filled_size=child.filled_size,
            avg_fill_price=child.avg_fill_price,
        )

    async def cancel_order(self, child_id: str) -> CancelOrderResult:
        await self._enter("cancel_order")

        child = self.children.get(child_id)
        if child is None:
            return CancelOrderResult(status=CancelStatus.NOT_FOUND)
        if child.status is ChildOrderStatus.FILLED:
            return CancelOrderResult(status=CancelStatus.ALREADY_FILLED)
        if child.status.is_closed:
            return CancelOrderResult(status=CancelStatus.NOT_FOUND)

        child.status = ChildOrderStatus.CANCELLED
        return CancelOrderResult(status=CancelStatus.CANCELLED)

    async def get_order_book(self, symbol: str) -> OrderBookSnapshot:
        await self._enter("get_order_book")

        book = self.books.get(symbol)
        if book is None:
            raise GatewayError(f"unknown symbol {symbol}")
        return OrderBookSnapshot(symbol=symbol, best_bid=book.best_bid,
                                 best_ask=book.best_ask, depth=book.depth)

    async def get_position(self, position_id: str) -> Optional[PositionSnapshot]:
        await self._enter("get_position")
        return self.positions.get(position_id)

    async def get_order_status(self, child_id: str) -> Optional[ChildOrderUpdate]:
        await self._enter("get_order_status")
        child = self.children.get(child_id)
        return child.to_update() if child else None

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        else:
            await asyncio.sleep(0)
        if self._faults[method]:
            raise self._faults[method].popleft()

    def _touch(self, child: PaperChildOrder) -> Optional[Decimal]:
        """Price a marketable child would trade at"""
        book = self.books.get(child.symbol)
        if book is None:
            return None
        return book.best_ask if child.side is OrderSide.BUY else book.best_bid

    def match_resting(self, symbol: str) -> None:
        for child in self.open_children(symbol):
            self._try_match(child)

    def _try_match(self, child: PaperChildOrder, notify: bool = True) -> None:
        touch = self._touch(child)
        if touch is None or child.price is None:
            return

        if child.kind is ChildOrderKind.LIMIT:
            crosses = touch <= child.price if child.side is OrderSide.BUY else touch >= child.price
            if crosses:
                self._apply_fill(child, child.remaining, child.price, notify=notify)
        elif child.kind is ChildOrderKind.STOP:
            triggered = touch >= child.price if child.side is OrderSide.BUY else touch <= child.price
            if triggered:
                self._apply_fill(child, child.remaining, touch, notify=notify)

    def _apply_fill(self, child: PaperChildOrder, quantity: Decimal, price: Decimal,
                    notify: bool = True) -> None:
        if quantity <= 0:
            return
        previous = child.filled_size
        child.filled_size = previous + quantity
        if child.avg_fill_price is None or previous == 0:
            child.avg_fill_price = price
        else:
            child.avg_fill_price = (child.avg_fill_price * previous + price * quantity) / child.filled_size
        child.status = (ChildOrderStatus.FILLED if child.filled_size >= child.size
                        else ChildOrderStatus.PARTIALLY_FILLED)

        logger.debug(f"[paper] fill {child.child_id} {quantity} @ {price} ({child.status.value})")
        if notify:
            self._notify_fill(child.to_update())
