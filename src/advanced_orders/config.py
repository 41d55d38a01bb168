"""
Configuration for the advanced order service

Dataclass configs with defaults, overridable from the environment (and a
.env file via python-dotenv). Environment variables use the ADV_ORDERS_
prefix, e.g. ADV_ORDERS_MAX_RETRIES=5.
"""

import os
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from loguru import logger


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient gateway failures"""

    max_retries: int = 3                    # Retries after the first attempt
    base_delay_ms: int = 200                # Delay before the first retry
    backoff_multiplier: float = 2.0         # Growth per retry
    max_delay_ms: int = 5000                # Cap on a single delay

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (1-based)"""
        delay_ms = self.base_delay_ms * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay_ms, self.max_delay_ms) / 1000.0


@dataclass
class EngineConfig:
    """Configuration for the Order Execution Engine"""

    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Gateway calls
    gateway_timeout_seconds: float = 10.0   # Exceeding it counts as transient
    poll_child_status: bool = True          # Pull fills when nothing was pushed

    # Scheduling
    idle_poll_seconds: float = 1.0          # Re-check cadence while waiting on fills
    min_tick_interval_seconds: float = 0.0  # Floor between consecutive ticks

    # Numeric precision
    size_quantum: Decimal = Decimal("0.00000001")
    price_quantum: Decimal = Decimal("0.00000001")
    default_tick_size: Decimal = Decimal("0.01")

    # TWAP
    twap_jitter: float = 0.2                # +/- fraction applied when randomizing


@dataclass
class ServiceConfig:
    """Top-level service configuration"""

    engine: EngineConfig = field(default_factory=EngineConfig)
    database_url: str = "sqlite:///advanced_orders.db"
    log_level: str = "INFO"
    log_file: Optional[str] = None


def _env(name: str, default=None):
    return os.getenv(f"ADV_ORDERS_{name}", default)


def load_service_config(env_file: Optional[str] = None) -> ServiceConfig:
    """
    Build the service configuration from environment variables

    Args:
        env_file: Optional path of a .env file to load first

    Returns:
        ServiceConfig populated from ADV_ORDERS_* variables
    """
    load_dotenv(env_file)

    retry = RetryPolicy(
        max_retries=int(_env("MAX_RETRIES", RetryPolicy.max_retries)),
        base_delay_ms=int(_env("BASE_DELAY_MS", RetryPolicy.base_delay_ms)),
        backoff_multiplier=float(_env("BACKOFF_MULTIPLIER", RetryPolicy.backoff_multiplier)),
        max_delay_ms=int(_env("MAX_DELAY_MS", RetryPolicy.max_delay_ms)),
    )

    engine = EngineConfig(
        retry=retry,
        gateway_timeout_seconds=float(_env("GATEWAY_TIMEOUT_SECONDS", EngineConfig.gateway_timeout_seconds)),
        poll_child_status=_env("POLL_CHILD_STATUS", "true").lower() in ("1", "true", "yes"),
        idle_poll_seconds=float(_env("IDLE_POLL_SECONDS", EngineConfig.idle_poll_seconds)),
        default_tick_size=Decimal(_env("DEFAULT_TICK_SIZE", str(EngineConfig.default_tick_size))),
    )

    return ServiceConfig(
        engine=engine,
        database_url=_env("DATABASE_URL", ServiceConfig.database_url),
        log_level=_env("LOG_LEVEL", ServiceConfig.log_level),
        log_file=_env("LOG_FILE"),
    )


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Install loguru sinks for the service process"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file:
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention=5, enqueue=True)
