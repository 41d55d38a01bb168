"""
Advanced Order Schemas - Data structures for multi-step order execution

Defines the persisted AdvancedOrder / AdvancedOrderExecution records and the
per-order-type parameter variants (a tagged union keyed by order type).

All sizes and prices are Decimal to avoid rounding drift across many slices.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, List, Optional, Any, Union
import uuid


class AdvancedOrderType(Enum):
    """Supported multi-step order types"""
    TWAP = "twap"
    LIMIT_CHASE = "limit_chase"
    SCALED = "scaled"
    ICEBERG = "iceberg"
    OCO = "oco"
    TRAILING_TP = "trailing_tp"


class OrderSide(Enum):
    """Order side"""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class AdvancedOrderStatus(Enum):
    """Advanced order lifecycle status"""
    PENDING = "pending"           # Created, never executed
    ACTIVE = "active"             # Driven by an engine loop
    PAUSED = "paused"             # Loop stopped, resting children kept
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    AdvancedOrderStatus.COMPLETED,
    AdvancedOrderStatus.CANCELLED,
    AdvancedOrderStatus.FAILED,
})


class ExecutionAction(Enum):
    """Child action recorded in the execution log"""
    PLACE = "place"
    CANCEL = "cancel"
    REPRICE = "reprice"
    SKIP = "skip"
    ERROR = "error"
    FILL = "fill"                 # Fill detected on a resting child


class ExecutionResultStatus(Enum):
    """Outcome of a child action"""
    FILLED = "filled"
    PARTIAL = "partial"
    REJECTED = "rejected"
    PENDING = "pending"
    ERRORED = "errored"
    CANCELLED = "cancelled"


FILL_RESULT_STATUSES = frozenset({ExecutionResultStatus.FILLED, ExecutionResultStatus.PARTIAL})


class ChildOrderKind(Enum):
    """Kind of exchange child order"""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class GiveBehavior(Enum):
    """What a limit chase does once it runs out of chases"""
    CANCEL = "cancel"
    MARKET = "market"
    WAIT = "wait"


class ScaledDistribution(Enum):
    LINEAR = "linear"
    GEOMETRIC = "geometric"
    CUSTOM = "custom"


class RefreshBehavior(Enum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"


class OcoLegType(Enum):
    LIMIT = "limit"
    STOP = "stop"


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp"""
    return datetime.now(timezone.utc)


def to_epoch(timestamp: Optional[datetime]) -> Optional[float]:
    """Convert a (possibly naive, UTC) datetime to epoch seconds"""
    if timestamp is None:
        return None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.timestamp()


def to_decimal(value: Any) -> Decimal:
    """
    Convert a wire value (str, int, float, Decimal) to a finite Decimal

    Floats go through str() so 0.1 becomes Decimal('0.1'), not the binary
    expansion. Booleans are rejected even though they are ints.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not a decimal: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"not a decimal: {value!r}")
    else:
        raise ValueError(f"not a decimal: {value!r}")

    if not result.is_finite():
        raise ValueError(f"not a finite decimal: {value!r}")
    return result


def _dec_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Parameter variants (one per order type)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TWAPParameters:
    """Time-weighted slicing of the total size"""

    duration_minutes: float
    slices: int
    interval_seconds: Optional[float] = None    # Overrides duration/slices
    price_limit: Optional[Decimal] = None       # Slices rest at this limit
    randomize_intervals: bool = False           # +/- jitter on intervals
    adapt_to_volume: bool = False               # Scale slices by book depth

    order_type = AdvancedOrderType.TWAP

    @property
    def slice_interval_seconds(self) -> float:
        if self.interval_seconds is not None:
            return self.interval_seconds
        return self.duration_minutes * 60.0 / self.slices

    def to_dict(self) -> Dict[str, Any]:
        return {
            'durationMinutes': self.duration_minutes,
            'slices': self.slices,
            'intervalSeconds': self.interval_seconds,
            'priceLimit': _dec_str(self.price_limit),
            'randomizeIntervals': self.randomize_intervals,
            'adaptToVolume': self.adapt_to_volume,
        }


@dataclass(frozen=True)
class LimitChaseParameters:
    """Resting limit that follows the best quote"""

    offset: Decimal                             # Ticks from best quote, positive = more aggressive
    max_chases: int
    chase_interval_seconds: float
    price_limit: Optional[Decimal] = None       # Never chase beyond this price
    give_behavior: GiveBehavior = GiveBehavior.CANCEL
    tick_size: Optional[Decimal] = None         # Falls back to engine default
    reprice_threshold_ticks: Decimal = Decimal("1")

    order_type = AdvancedOrderType.LIMIT_CHASE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'offset': str(self.offset),
            'maxChases': self.max_chases,
            'chaseIntervalSeconds': self.chase_interval_seconds,
            'priceLimit': _dec_str(self.price_limit),
            'giveBehavior': self.give_behavior.value,
            'tickSize': _dec_str(self.tick_size),
            'repriceThresholdTicks': str(self.reprice_threshold_ticks),
        }


@dataclass(frozen=True)
class ScaledParameters:
    """Ladder of limit orders between two prices"""

    levels: int
    price_start: Decimal
    price_end: Decimal
    distribution: ScaledDistribution
    size_distribution: Optional[List[Decimal]] = None   # Weights for custom

    order_type = AdvancedOrderType.SCALED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'levels': self.levels,
            'priceStart': str(self.price_start),
            'priceEnd': str(self.price_end),
            'distribution': self.distribution.value,
            'sizeDistribution': (
                [str(w) for w in self.size_distribution]
                if self.size_distribution is not None else None
            ),
        }


@dataclass(frozen=True)
class IcebergParameters:
    """Hidden size exposed one display chunk at a time"""

    display_size: Decimal
    price_limit: Decimal
    refresh_behavior: RefreshBehavior
    refresh_delay_seconds: Optional[float] = None

    order_type = AdvancedOrderType.ICEBERG

    def to_dict(self) -> Dict[str, Any]:
        return {
            'displaySize': str(self.display_size),
            'priceLimit': str(self.price_limit),
            'refreshBehavior': self.refresh_behavior.value,
            'refreshDelaySeconds': self.refresh_delay_seconds,
        }


@dataclass(frozen=True)
class OcoLeg:
    type: OcoLegType
    price: Decimal
    size: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'price': str(self.price), 'size': str(self.size)}


@dataclass(frozen=True)
class OCOParameters:
    """Two legs, the first fill cancels the other"""

    legs: tuple

    order_type = AdvancedOrderType.OCO

    def to_dict(self) -> Dict[str, Any]:
        return {'orders': [leg.to_dict() for leg in self.legs]}


@dataclass(frozen=True)
class TrailingTPParameters:
    """Protective order trailing a position's favorable excursion"""

    position_id: str
    trail_distance: Decimal
    min_profit: Decimal
    update_interval_seconds: float

    order_type = AdvancedOrderType.TRAILING_TP

    def to_dict(self) -> Dict[str, Any]:
        return {
            'positionId': self.position_id,
            'trailDistance': str(self.trail_distance),
            'minProfit': str(self.min_profit),
            'updateIntervalSeconds': self.update_interval_seconds,
        }


OrderParameters = Union[
    TWAPParameters,
    LimitChaseParameters,
    ScaledParameters,
    IcebergParameters,
    OCOParameters,
    TrailingTPParameters,
]


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

@dataclass
class AdvancedOrder:
    """
    One user-issued multi-step order

    `status` only ever changes through the execution engine.
    """

    id: str
    user_id: str
    order_type: AdvancedOrderType
    symbol: str
    side: OrderSide
    total_size: Decimal
    parameters: OrderParameters

    status: AdvancedOrderStatus = AdvancedOrderStatus.PENDING
    created_at: datetime = None
    updated_at: datetime = None

    # Lifecycle timestamps
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    # Progress, derivable from the execution log
    executed_size: Decimal = Decimal("0")
    average_execution_price: Optional[Decimal] = None

    # Error tracking
    error_count: int = 0
    last_error: Optional[str] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @classmethod
    def generate_order_id(cls) -> str:
        """Generate unique advanced order ID"""
        return f"adv_{uuid.uuid4().hex[:16]}"

    @property
    def remaining_size(self) -> Decimal:
        return self.total_size - self.executed_size

    @property
    def progress(self) -> Decimal:
        """Filled percentage of total size"""
        if self.total_size <= 0:
            return Decimal("0")
        return (self.executed_size / self.total_size * 100).quantize(Decimal("0.01"))

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert order to dictionary for serialization"""
        return {
            'id': self.id,
            'userId': self.user_id,
            'orderType': self.order_type.value,
            'symbol': self.symbol,
            'side': self.side.value,
            'totalSize': str(self.total_size),
            'parameters': self.parameters.to_dict(),
            'status': self.status.value,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'startedAt': self.started_at.isoformat() if self.started_at else None,
            'completedAt': self.completed_at.isoformat() if self.completed_at else None,
            'cancelledAt': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'executedSize': str(self.executed_size),
            'progress': str(self.progress),
            'averageExecutionPrice': _dec_str(self.average_execution_price),
            'errorCount': self.error_count,
            'lastError': self.last_error,
        }

    def __str__(self) -> str:
        return (f"AdvancedOrder({self.id}: {self.order_type.value} {self.side.value} "
                f"{self.total_size} {self.symbol} - {self.status.value})")


@dataclass
class AdvancedOrderExecution:
    """
    Append-only log entry, one per child action attempt

    `sequence_number` is assigned by the record store on append and is
    strictly increasing per order. Entries are never mutated or deleted.
    """

    advanced_order_id: str
    action: ExecutionAction
    result_status: ExecutionResultStatus

    requested_size: Optional[Decimal] = None
    requested_price: Optional[Decimal] = None   # None for market actions
    filled_size: Decimal = Decimal("0")
    avg_fill_price: Optional[Decimal] = None

    # Child order references
    child_order_id: Optional[str] = None
    replaces_child_id: Optional[str] = None     # Reprice: the replaced child
    order_kind: Optional[ChildOrderKind] = None
    tag: Optional[str] = None                   # Strategy label, e.g. slice:3

    reason: Optional[str] = None
    error_detail: Optional[str] = None

    id: str = field(default_factory=lambda: f"exe_{uuid.uuid4().hex[:16]}")
    sequence_number: Optional[int] = None
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def counts_as_fill(self) -> bool:
        return self.result_status in FILL_RESULT_STATUSES and self.filled_size > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'advancedOrderId': self.advanced_order_id,
            'sequenceNumber': self.sequence_number,
            'action': self.action.value,
            'requestedSize': _dec_str(self.requested_size),
            'requestedPrice': _dec_str(self.requested_price),
            'resultStatus': self.result_status.value,
            'filledSize': str(self.filled_size),
            'avgFillPrice': _dec_str(self.avg_fill_price),
            'childOrderId': self.child_order_id,
            'replacesChildId': self.replaces_child_id,
            'orderKind': self.order_kind.value if self.order_kind else None,
            'tag': self.tag,
            'reason': self.reason,
            'timestamp': self.timestamp.isoformat(),
            'errorDetail': self.error_detail,
        }

    def __str__(self) -> str:
        return (f"Execution(#{self.sequence_number} {self.action.value} "
                f"{self.requested_size} @ {self.requested_price} -> {self.result_status.value})")
