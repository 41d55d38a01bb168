"""
REST request / response models for advanced orders

Request fields are deliberately loose; range and type checks live in the
order parameter validator so every rejection carries the same
{error, field} shape.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CreateAdvancedOrderRequest(BaseModel):
    """Body of POST /advanced-orders"""

    orderType: Optional[Any] = None
    symbol: Optional[Any] = None
    side: Optional[Any] = None
    size: Optional[Any] = None
    parameters: Optional[Any] = None


class ErrorResponse(BaseModel):
    error: str
    field: Optional[str] = None


class AdvancedOrderListResponse(BaseModel):
    orders: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class AdvancedOrderDetailResponse(BaseModel):
    order: Dict[str, Any]
    executions: List[Dict[str, Any]] = Field(default_factory=list)
    lastError: Optional[str] = None
