"""
FastAPI application factory for the advanced order service
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from ..advanced_orders.engine import InvalidTransitionError
from ..advanced_orders.gateway import GatewayError
from ..advanced_orders.manager import EngineManager, EngineNotFoundError
from ..advanced_orders.record_store import ExecutionRecordStore, OrderNotFoundError
from ..advanced_orders.validator import OrderValidationError
from .routes import router


def _error(status_code: int, message: str, field: str = None) -> JSONResponse:
    body = {'error': message}
    if field is not None:
        body['field'] = field
    return JSONResponse(status_code=status_code, content=body)


def create_app(manager: EngineManager, store: ExecutionRecordStore,
               title: str = "Advanced Order Execution API") -> FastAPI:
    """
    Build the REST app around an engine manager and a record store

    Engines are stopped when the app shuts down; orders they were driving
    stay active and are picked up again by the next engine for that user.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting advanced order API...")
        yield
        logger.info("Shutting down advanced order API...")
        await manager.shutdown()

    app = FastAPI(title=title, lifespan=lifespan)
    app.state.manager = manager
    app.state.store = store
    app.include_router(router)

    @app.exception_handler(OrderValidationError)
    async def validation_error_handler(request: Request, exc: OrderValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, exc.reason, exc.field)

    @app.exception_handler(RequestValidationError)
    async def request_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = first.get('loc', ())
        field = str(location[-1]) if location else None
        return _error(status.HTTP_400_BAD_REQUEST, first.get('msg', 'invalid request'), field)

    @app.exception_handler(OrderNotFoundError)
    async def order_not_found_handler(request: Request, exc: OrderNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(EngineNotFoundError)
    async def engine_not_found_handler(request: Request, exc: EngineNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.error(f"Gateway error surfaced to API: {exc}")
        return _error(status.HTTP_502_BAD_GATEWAY, "exchange unavailable")

    return app
