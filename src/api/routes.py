"""
Advanced order endpoints

- POST /advanced-orders                          create (validated, pending)
- GET  /advanced-orders                          list the caller's orders
- GET  /advanced-orders/{order_id}               order + execution history
- POST /advanced-orders/{order_id}/execute       pending/paused -> active
- POST /advanced-orders/{order_id}/pause         active -> paused
- POST /advanced-orders/{order_id}/resume        paused -> active
- POST /advanced-orders/{order_id}/cancel        any non-terminal -> cancelled

The caller is identified by the X-User-Id header. Dependencies come from
app.state so tests can build isolated apps.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Header, Request, status
from loguru import logger

from ..advanced_orders.manager import EngineManager
from ..advanced_orders.order_schemas import AdvancedOrder
from ..advanced_orders.record_store import ExecutionRecordStore, OrderNotFoundError
from ..advanced_orders.validator import validate_order_request
from .schemas import (
    CreateAdvancedOrderRequest, AdvancedOrderListResponse, AdvancedOrderDetailResponse,
    ErrorResponse,
)

router = APIRouter(prefix="/advanced-orders", tags=["Advanced Orders"])


def get_manager(request: Request) -> EngineManager:
    return request.app.state.manager


def get_store(request: Request) -> ExecutionRecordStore:
    return request.app.state.store


def get_user_id(x_user_id: str = Header(..., alias="X-User-Id", min_length=1)) -> str:
    return x_user_id


@router.post("", status_code=status.HTTP_201_CREATED, responses={400: {"model": ErrorResponse}})
async def create_advanced_order(body: CreateAdvancedOrderRequest,
                                user_id: str = Depends(get_user_id),
                                store: ExecutionRecordStore = Depends(get_store)) -> Dict[str, Any]:
    parsed = validate_order_request(body.orderType, body.symbol, body.side, body.size,
                                    body.parameters)
    order = AdvancedOrder(
        id=AdvancedOrder.generate_order_id(),
        user_id=user_id,
        **parsed,
    )
    store.create_order(order)
    logger.info(f"Created {order} for user {user_id}")
    return order.to_dict()


@router.get("", response_model=AdvancedOrderListResponse)
async def list_advanced_orders(user_id: str = Depends(get_user_id),
                               store: ExecutionRecordStore = Depends(get_store)):
    orders = store.list_orders(user_id)
    return AdvancedOrderListResponse(orders=[o.to_dict() for o in orders], count=len(orders))


@router.get("/{order_id}", response_model=AdvancedOrderDetailResponse,
            responses={404: {"model": ErrorResponse}})
async def get_advanced_order(order_id: str,
                             user_id: str = Depends(get_user_id),
                             store: ExecutionRecordStore = Depends(get_store)):
    order = store.get_order(order_id, user_id=user_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return AdvancedOrderDetailResponse(
        order=order.to_dict(),
        executions=[e.to_dict() for e in store.load_history(order_id)],
        lastError=store.latest_error(order_id),
    )


@router.post("/{order_id}/execute")
async def execute_advanced_order(order_id: str,
                                 user_id: str = Depends(get_user_id),
                                 manager: EngineManager = Depends(get_manager)) -> Dict[str, Any]:
    engine = await manager.get_or_create_engine(user_id)
    order = await engine.execute_order(order_id)
    return order.to_dict()


@router.post("/{order_id}/pause")
async def pause_advanced_order(order_id: str,
                               user_id: str = Depends(get_user_id),
                               manager: EngineManager = Depends(get_manager)) -> Dict[str, Any]:
    engine = manager.require_engine(user_id)
    order = await engine.pause_order(order_id)
    return order.to_dict()


@router.post("/{order_id}/resume")
async def resume_advanced_order(order_id: str,
                                user_id: str = Depends(get_user_id),
                                manager: EngineManager = Depends(get_manager)) -> Dict[str, Any]:
    engine = await manager.get_or_create_engine(user_id)
    order = await engine.resume_order(order_id)
    return order.to_dict()


@router.post("/{order_id}/cancel")
async def cancel_advanced_order(order_id: str,
                                user_id: str = Depends(get_user_id),
                                manager: EngineManager = Depends(get_manager)) -> Dict[str, Any]:
    engine = await manager.get_or_create_engine(user_id)
    order = await engine.cancel_order(order_id)
    return order.to_dict()
