"""
Exchange Gateway - venue abstraction used by the execution engine

Provides the capability set every concrete exchange adapter (Hyperliquid,
Aevo, Binance, paper) must implement: place/cancel child orders, read the
order book, read a position, and report child order fills either by push
(fill listeners) or by pull (get_order_status).

Failure semantics:
- TransientGatewayError: network, timeout, rate limit. Safe to retry.
- RejectedGatewayError: business rule rejection. Never retried.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional
import time

from loguru import logger

from .order_schemas import ChildOrderKind, OrderSide


class GatewayError(Exception):
    """Base exception for gateway errors"""
    pass


class TransientGatewayError(GatewayError):
    """Network / rate-limit failure, retry with backoff"""
    pass


class GatewayTimeoutError(TransientGatewayError):
    """Gateway call exceeded its time budget"""
    pass


class RejectedGatewayError(GatewayError):
    """Exchange-side business rejection (margin, invalid price, ...)"""
    pass


class RetriesExhaustedError(TransientGatewayError):
    """Transient failures persisted past the retry budget"""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class PlacementStatus(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CancelStatus(Enum):
    CANCELLED = "cancelled"
    ALREADY_FILLED = "already_filled"
    NOT_FOUND = "not_found"


class ChildOrderStatus(Enum):
    """Exchange-side state of a child order"""
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_closed(self) -> bool:
        return self in (ChildOrderStatus.FILLED, ChildOrderStatus.CANCELLED, ChildOrderStatus.REJECTED)


@dataclass
class PlaceOrderResult:
    """Outcome of a child order placement"""

    child_id: Optional[str]
    status: PlacementStatus
    filled_size: Decimal = Decimal("0")        # Immediate fill (market / crossing limit)
    avg_fill_price: Optional[Decimal] = None
    message: Optional[str] = None


@dataclass
class CancelOrderResult:
    status: CancelStatus


@dataclass
class OrderBookSnapshot:
    """Top of book plus depth summary"""

    symbol: str
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    depth: Decimal = Decimal("0")              # Aggregate resting size near the touch
    timestamp: float = field(default_factory=time.time)


@dataclass
class PositionSnapshot:
    position_id: str
    symbol: str
    side: OrderSide                            # BUY = long, SELL = short
    size: Decimal
    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal


@dataclass
class ChildOrderUpdate:
    """
    Fill report for a child order

    `filled_size` is cumulative for the child, never a delta.
    """

    child_id: str
    status: ChildOrderStatus
    filled_size: Decimal
    avg_fill_price: Optional[Decimal] = None
    timestamp: float = field(default_factory=time.time)


FillListener = Callable[[ChildOrderUpdate], None]


class ExchangeGateway(ABC):
    """
    Abstract base class for exchange gateways

    Defines the interface that all venue adapters must follow. Adapters that
    stream fills call `_notify_fill`; adapters that cannot stream still answer
    `get_order_status` so the engine can poll.
    """

    venue: str = "abstract"

    def __init__(self):
        self._fill_listeners: List[FillListener] = []

    @abstractmethod
    async def place_order(self, symbol: str, side: OrderSide, size: Decimal,
                          price: Optional[Decimal] = None, reduce_only: bool = False,
                          order_kind: Optional[ChildOrderKind] = None) -> PlaceOrderResult:
        """Place a child order; price=None means market"""
        pass

    @abstractmethod
    async def cancel_order(self, child_id: str) -> CancelOrderResult:
        """Cancel a resting child order"""
        pass

    @abstractmethod
    async def get_order_book(self, symbol: str) -> OrderBookSnapshot:
        """Get best bid / ask and depth"""
        pass

    @abstractmethod
    async def get_position(self, position_id: str) -> Optional[PositionSnapshot]:
        """Get an open position, None if it does not exist or is closed"""
        pass

    @abstractmethod
    async def get_order_status(self, child_id: str) -> Optional[ChildOrderUpdate]:
        """Poll the state of a child order, None if unknown"""
        pass

    async def close(self) -> None:
        """Release venue resources"""
        pass

    def add_fill_listener(self, listener: FillListener) -> None:
        """Register a callback for pushed fill updates"""
        self._fill_listeners.append(listener)

    def remove_fill_listener(self, listener: FillListener) -> None:
        if listener in self._fill_listeners:
            self._fill_listeners.remove(listener)

    def _notify_fill(self, update: ChildOrderUpdate) -> None:
        """Trigger listeners for a child order update"""
        for listener in list(self._fill_listeners):
            try:
                listener(update)
            except Exception as e:
                logger.error(f"[{self.venue}] Error in fill listener: {e}")
