"""
Advanced Orders Module

Autonomous execution of multi-step orders (TWAP, limit chase, scaled,
iceberg, OCO, trailing take-profit) against an exchange gateway, with
pause/resume/cancel control and an append-only execution trail.

Core Components:
- Validator: Per-order-type parameter checks
- ExchangeGateway: Venue interface (PaperExchangeGateway for simulation)
- Strategies: Per-order-type decision logic
- ExecutionRecordStore: Orders and their execution log (SQLAlchemy)
- AdvancedOrderExecutionEngine: Per-user container of order loops
- EngineManager: Single-flight per-user engine registry
"""

from .order_schemas import (
    AdvancedOrder, AdvancedOrderExecution, AdvancedOrderType, AdvancedOrderStatus,
    ExecutionAction, ExecutionResultStatus, ChildOrderKind, OrderSide,
)
from .validator import OrderValidationError, validate, validate_order_request
from .gateway import (
    ExchangeGateway, GatewayError, TransientGatewayError, RejectedGatewayError,
    RetriesExhaustedError,
)
from .paper_gateway import PaperExchangeGateway
from .record_store import ExecutionRecordStore, AdvancedOrderError, OrderNotFoundError
from .config import RetryPolicy, EngineConfig, ServiceConfig, load_service_config, configure_logging
from .engine import AdvancedOrderExecutionEngine, InvalidTransitionError
from .manager import EngineManager, EngineNotFoundError

__all__ = [
    # Schemas
    'AdvancedOrder',
    'AdvancedOrderExecution',
    'AdvancedOrderType',
    'AdvancedOrderStatus',
    'ExecutionAction',
    'ExecutionResultStatus',
    'ChildOrderKind',
    'OrderSide',

    # Validation
    'OrderValidationError',
    'validate',
    'validate_order_request',

    # Gateway
    'ExchangeGateway',
    'PaperExchangeGateway',
    'GatewayError',
    'TransientGatewayError',
    'RejectedGatewayError',
    'RetriesExhaustedError',

    # Engine
    'ExecutionRecordStore',
    'AdvancedOrderExecutionEngine',
    'EngineManager',
    'AdvancedOrderError',
    'OrderNotFoundError',
    'InvalidTransitionError',
    'EngineNotFoundError',

    # Configuration
    'RetryPolicy',
    'EngineConfig',
    'ServiceConfig',
    'load_service_config',
    'configure_logging',
]
