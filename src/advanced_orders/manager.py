"""
Engine Manager - per-user registry of advanced order engines

Creates engines on demand with single-flight semantics: concurrent requests
for the same user always end up with the same engine instance.
"""

import asyncio
from typing import Callable, Dict, Optional

from loguru import logger

from .config import EngineConfig
from .engine import AdvancedOrderExecutionEngine
from .gateway import ExchangeGateway
from .record_store import AdvancedOrderError, ExecutionRecordStore


GatewayFactory = Callable[[str], ExchangeGateway]


class EngineNotFoundError(AdvancedOrderError):
    """No engine is running for this user"""

    def __init__(self, user_id: str):
        super().__init__(f"no execution engine for user {user_id}")
        self.user_id = user_id


class EngineManager:
    """
    Owns one AdvancedOrderExecutionEngine per user

    Args:
        gateway_factory: Builds the exchange gateway for a user
        store: Record store shared by every engine
        config: Engine configuration shared by every engine
    """

    def __init__(self, gateway_factory: GatewayFactory, store: ExecutionRecordStore,
                 config: Optional[EngineConfig] = None, **engine_kwargs):
        self.gateway_factory = gateway_factory
        self.store = store
        self.config = config or EngineConfig()
        self.engine_kwargs = engine_kwargs       # e.g. clock, rng for tests

        self._engines: Dict[str, AdvancedOrderExecutionEngine] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get_or_create_engine(self, user_id: str) -> AdvancedOrderExecutionEngine:
        """Return the user's engine, creating and starting it exactly once"""
        engine = self._engines.get(user_id)
        if engine is not None:
            return engine

        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            engine = self._engines.get(user_id)
            if engine is not None:
                return engine

            gateway = self.gateway_factory(user_id)
            engine = AdvancedOrderExecutionEngine(user_id, gateway, self.store, self.config,
                                                  **self.engine_kwargs)
            await engine.start()
            self._engines[user_id] = engine
            logger.info(f"Created execution engine for user {user_id} ({gateway.venue})")
            return engine

    def get_engine(self, user_id: str) -> Optional[AdvancedOrderExecutionEngine]:
        return self._engines.get(user_id)

    def require_engine(self, user_id: str) -> AdvancedOrderExecutionEngine:
        engine = self.get_engine(user_id)
        if engine is None:
            raise EngineNotFoundError(user_id)
        return engine

    async def stop_user_engine(self, user_id: str) -> bool:
        """Stop and forget a user's engine; its active orders stay active"""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            engine = self._engines.pop(user_id, None)
            if engine is None:
                return False
            await engine.stop()
            await engine.gateway.close()
            logger.info(f"Stopped execution engine for user {user_id}")
            return True

    async def shutdown(self) -> None:
        """Stop every engine"""
        for user_id in list(self._engines):
            await self.stop_user_engine(user_id)
        logger.info("EngineManager shut down")

    def __len__(self) -> int:
        return len(self._engines)
