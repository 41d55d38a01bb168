"""
Order Parameter Validator - type and range checks per advanced order type

Pure functions, no side effects. The first violated constraint is reported
as an OrderValidationError(field, reason); an order that fails validation is
never persisted.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from .order_schemas import (
    AdvancedOrderType, OrderSide, OrderParameters,
    TWAPParameters, LimitChaseParameters, ScaledParameters, IcebergParameters,
    OcoLeg, OCOParameters, TrailingTPParameters,
    GiveBehavior, ScaledDistribution, RefreshBehavior, OcoLegType,
    to_decimal,
)

SIZE_DISTRIBUTION_TOLERANCE = Decimal("0.000001")


class OrderValidationError(Exception):
    """Order parameters are malformed or out of range"""

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self) -> Dict[str, str]:
        return {'field': self.field, 'reason': self.reason}


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------

_MISSING = object()


def _get(params: Mapping[str, Any], name: str, required: bool = True) -> Any:
    value = params.get(name, _MISSING)
    if value is _MISSING or value is None:
        if required:
            raise OrderValidationError(name, "is required")
        return None
    return value


def _decimal(params, name, required=True) -> Optional[Decimal]:
    value = _get(params, name, required)
    if value is None:
        return None
    try:
        return to_decimal(value)
    except ValueError:
        raise OrderValidationError(name, "must be a decimal number")


def _number(params, name, required=True) -> Optional[float]:
    value = _get(params, name, required)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OrderValidationError(name, "must be a number")
    if value != value or value in (float("inf"), float("-inf")):
        raise OrderValidationError(name, "must be finite")
    return float(value)


def _integer(params, name, required=True) -> Optional[int]:
    value = _get(params, name, required)
    if value is None:
        return None
    if isinstance(value, bool):
        raise OrderValidationError(name, "must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise OrderValidationError(name, "must be an integer")
    return value


def _boolean(params, name) -> bool:
    value = _get(params, name, required=False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise OrderValidationError(name, "must be a boolean")
    return value


def _choice(params, name, enum_cls, required=True, default=None):
    value = _get(params, name, required)
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise OrderValidationError(name, f"must be one of: {allowed}")


def _positive(name, value):
    if value is not None and value <= 0:
        raise OrderValidationError(name, "must be greater than 0")
    return value


# ---------------------------------------------------------------------------
# Per-type parsers
# ---------------------------------------------------------------------------

def _parse_twap(params: Mapping[str, Any], total_size: Optional[Decimal]) -> TWAPParameters:
    duration = _positive('durationMinutes', _number(params, 'durationMinutes'))
    slices = _integer(params, 'slices')
    if slices < 2:
        raise OrderValidationError('slices', "must be at least 2")
    interval = _positive('intervalSeconds', _number(params, 'intervalSeconds', required=False))
    price_limit = _positive('priceLimit', _decimal(params, 'priceLimit', required=False))

    return TWAPParameters(
        duration_minutes=duration,
        slices=slices,
        interval_seconds=interval,
        price_limit=price_limit,
        randomize_intervals=_boolean(params, 'randomizeIntervals'),
        adapt_to_volume=_boolean(params, 'adaptToVolume'),
    )


def _parse_limit_chase(params: Mapping[str, Any], total_size: Optional[Decimal]) -> LimitChaseParameters:
    offset = _decimal(params, 'offset')
    max_chases = _integer(params, 'maxChases')
    if max_chases < 1:
        raise OrderValidationError('maxChases', "must be at least 1")
    interval = _positive('chaseIntervalSeconds', _number(params, 'chaseIntervalSeconds'))
    price_limit = _positive('priceLimit', _decimal(params, 'priceLimit', required=False))
    give = _choice(params, 'giveBehavior', GiveBehavior, required=False, default=GiveBehavior.CANCEL)
    tick_size = _positive('tickSize', _decimal(params, 'tickSize', required=False))
    threshold = _positive('repriceThresholdTicks', _decimal(params, 'repriceThresholdTicks', required=False))

    return LimitChaseParameters(
        offset=offset,
        max_chases=max_chases,
        chase_interval_seconds=interval,
        price_limit=price_limit,
        give_behavior=give,
        tick_size=tick_size,
        reprice_threshold_ticks=threshold if threshold is not None else Decimal("1"),
    )


def _parse_scaled(params: Mapping[str, Any], total_size: Optional[Decimal]) -> ScaledParameters:
    levels = _integer(params, 'levels')
    if levels < 2:
        raise OrderValidationError('levels', "must be at least 2")
    price_start = _positive('priceStart', _decimal(params, 'priceStart'))
    price_end = _positive('priceEnd', _decimal(params, 'priceEnd'))
    distribution = _choice(params, 'distribution', ScaledDistribution)

    weights = None
    if distribution is ScaledDistribution.CUSTOM:
        raw = _get(params, 'sizeDistribution')
        if not isinstance(raw, (list, tuple)):
            raise OrderValidationError('sizeDistribution', "must be an array")
        if len(raw) != levels:
            raise OrderValidationError('sizeDistribution', f"must have exactly {levels} entries")
        weights = []
        for weight in raw:
            try:
                value = to_decimal(weight)
            except ValueError:
                raise OrderValidationError('sizeDistribution', "entries must be decimal numbers")
            if value < 0:
                raise OrderValidationError('sizeDistribution', "entries must not be negative")
            weights.append(value)
        if abs(sum(weights) - Decimal("1")) > SIZE_DISTRIBUTION_TOLERANCE:
            raise OrderValidationError('sizeDistribution', "must sum to 1.0")

    return ScaledParameters(
        levels=levels,
        price_start=price_start,
        price_end=price_end,
        distribution=distribution,
        size_distribution=weights,
    )


def _parse_iceberg(params: Mapping[str, Any], total_size: Optional[Decimal]) -> IcebergParameters:
    display = _positive('displaySize', _decimal(params, 'displaySize'))
    if total_size is not None and display > total_size:
        raise OrderValidationError('displaySize', "must not exceed totalSize")
    price_limit = _positive('priceLimit', _decimal(params, 'priceLimit'))
    refresh = _choice(params, 'refreshBehavior', RefreshBehavior)

    delay = _number(params, 'refreshDelaySeconds', required=refresh is RefreshBehavior.DELAYED)
    _positive('refreshDelaySeconds', delay)

    return IcebergParameters(
        display_size=display,
        price_limit=price_limit,
        refresh_behavior=refresh,
        refresh_delay_seconds=delay,
    )


def _parse_oco(params: Mapping[str, Any], total_size: Optional[Decimal]) -> OCOParameters:
    raw_legs = _get(params, 'orders')
    if not isinstance(raw_legs, (list, tuple)) or len(raw_legs) != 2:
        raise OrderValidationError('orders', "must contain exactly two legs")

    legs = []
    for index, raw in enumerate(raw_legs):
        prefix = f"orders[{index}]"
        if not isinstance(raw, Mapping):
            raise OrderValidationError(prefix, "must be an object")
        try:
            leg_type = _choice(raw, 'type', OcoLegType)
            price = _positive('price', _decimal(raw, 'price'))
            size = _positive('size', _decimal(raw, 'size'))
        except OrderValidationError as e:
            raise OrderValidationError(f"{prefix}.{e.field}", e.reason)
        legs.append(OcoLeg(type=leg_type, price=price, size=size))

    return OCOParameters(legs=tuple(legs))


def _parse_trailing_tp(params: Mapping[str, Any], total_size: Optional[Decimal]) -> TrailingTPParameters:
    position_id = _get(params, 'positionId')
    if not isinstance(position_id, str) or not position_id.strip():
        raise OrderValidationError('positionId', "must be a non-empty string")
    trail = _positive('trailDistance', _decimal(params, 'trailDistance'))
    min_profit = _decimal(params, 'minProfit')
    if min_profit < 0:
        raise OrderValidationError('minProfit', "must not be negative")
    interval = _positive('updateIntervalSeconds', _number(params, 'updateIntervalSeconds'))

    return TrailingTPParameters(
        position_id=position_id,
        trail_distance=trail,
        min_profit=min_profit,
        update_interval_seconds=interval,
    )


_PARSERS: Dict[AdvancedOrderType, Callable[[Mapping[str, Any], Optional[Decimal]], OrderParameters]] = {
    AdvancedOrderType.TWAP: _parse_twap,
    AdvancedOrderType.LIMIT_CHASE: _parse_limit_chase,
    AdvancedOrderType.SCALED: _parse_scaled,
    AdvancedOrderType.ICEBERG: _parse_iceberg,
    AdvancedOrderType.OCO: _parse_oco,
    AdvancedOrderType.TRAILING_TP: _parse_trailing_tp,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_order_type(value: Any) -> AdvancedOrderType:
    try:
        return value if isinstance(value, AdvancedOrderType) else AdvancedOrderType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in AdvancedOrderType)
        raise OrderValidationError('orderType', f"must be one of: {allowed}")


def parse_parameters(order_type: Any, parameters: Any,
                     total_size: Optional[Decimal] = None) -> OrderParameters:
    """
    Parse and validate raw parameters into their typed variant

    Args:
        order_type: AdvancedOrderType or its string value
        parameters: Raw parameter mapping (camelCase keys, as sent by clients)
        total_size: Order total size, needed for cross-field checks (iceberg)

    Returns:
        The typed parameter variant for the order type

    Raises:
        OrderValidationError: on the first violated constraint
    """
    order_type = parse_order_type(order_type)
    if not isinstance(parameters, Mapping):
        raise OrderValidationError('parameters', "must be an object")
    return _PARSERS[order_type](parameters, total_size)


def validate(order_type: Any, parameters: Any,
             total_size: Optional[Decimal] = None) -> Optional[OrderValidationError]:
    """Return None when the parameters are valid, else the first violation"""
    try:
        parse_parameters(order_type, parameters, total_size)
    except OrderValidationError as e:
        return e
    return None


def validate_order_request(order_type: Any, symbol: Any, side: Any, size: Any,
                           parameters: Any) -> Dict[str, Any]:
    """
    Validate a full order envelope (type, symbol, side, size, parameters)

    Returns:
        Dict with parsed 'order_type', 'symbol', 'side', 'total_size', 'parameters'
    """
    parsed_type = parse_order_type(order_type)

    if not isinstance(symbol, str) or not symbol.strip():
        raise OrderValidationError('symbol', "must be a non-empty string")

    try:
        parsed_side = side if isinstance(side, OrderSide) else OrderSide(side)
    except ValueError:
        raise OrderValidationError('side', "must be one of: buy, sell")

    try:
        total_size = to_decimal(size)
    except ValueError:
        raise OrderValidationError('size', "must be a decimal number")
    if total_size <= 0:
        raise OrderValidationError('size', "must be greater than 0")

    return {
        'order_type': parsed_type,
        'symbol': symbol.strip(),
        'side': parsed_side,
        'total_size': total_size,
        'parameters': parse_parameters(parsed_type, parameters, total_size),
    }


def parameters_from_dict(order_type: AdvancedOrderType, data: Dict[str, Any]) -> OrderParameters:
    """Rehydrate persisted parameters (already validated at creation time)"""
    return parse_parameters(order_type, data)
