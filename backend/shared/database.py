"""asyncpg pool for the miner's event store and the migration script.

The miner holds one long-lived pool; writes come from the event store's
single writer task, so the pool stays small. Port 6543 is treated as a
PgBouncer transaction pooler, which cannot keep prepared statements.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, ClassVar
from urllib.parse import urlparse

import asyncpg

logger = logging.getLogger(__name__)

TRANSACTION_POOLER_PORT = 6543


class PoolerMode(str, Enum):
    SESSION = "session"
    TRANSACTION = "transaction"

    @classmethod
    def from_url(cls, database_url: str) -> PoolerMode:
        port = urlparse(database_url).port
        return cls.TRANSACTION if port == TRANSACTION_POOLER_PORT else cls.SESSION


@dataclass
class PoolConfig:
    min_size: int = 1
    max_size: int = 5
    timeout: float = 5.0
    command_timeout: float = 15.0
    idle_lifetime: float = 30.0
    max_retries: int = 3
    retry_delay: float = 3.0
    ssl: str | None = "prefer"
    application_name: str = "lurk"

    _PRESETS: ClassVar[dict[str, dict]] = {
        "miner": {"min_size": 1, "max_size": 4, "application_name": "lurk-miner"},
        "scripts": {"min_size": 1, "max_size": 2, "max_retries": 1, "application_name": "lurk-scripts"},
    }

    @classmethod
    def for_service(cls, service: str, **overrides) -> PoolConfig:
        """Preset for *service*; unknown override keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = {**cls._PRESETS.get(service, {}), **overrides}
        return cls(**{k: v for k, v in values.items() if k in known})


class DatabaseManager:
    """Owns the asyncpg pool: connect with backoff, health probe, close."""

    def __init__(self, database_url: str, config: PoolConfig | None = None):
        self.database_url = database_url
        self.config = config or PoolConfig()
        self.mode = PoolerMode.from_url(database_url)
        self._pool: asyncpg.Pool | None = None

    async def _on_connect(self, conn: asyncpg.Connection) -> None:
        await conn.execute(f"SET statement_timeout = {int(self.config.command_timeout * 1000)}")

    def pool_kwargs(self) -> dict[str, Any]:
        cfg = self.config
        kwargs: dict[str, Any] = {
            "dsn": self.database_url,
            "min_size": cfg.min_size,
            "max_size": cfg.max_size,
            "timeout": cfg.timeout,
            "command_timeout": cfg.command_timeout,
            "ssl": cfg.ssl,
            "server_settings": {"application_name": cfg.application_name},
        }
        if self.mode is PoolerMode.TRANSACTION:
            # PgBouncer drops server state between transactions
            kwargs.update(min_size=0, statement_cache_size=0, max_inactive_connection_lifetime=0)
        else:
            kwargs.update(
                statement_cache_size=100,
                max_inactive_connection_lifetime=cfg.idle_lifetime,
                init=self._on_connect,
            )
        return kwargs

    # ==================== Lifecycle ====================

    async def connect(self) -> None:
        if self._pool is not None:
            logger.warning("Database pool already connected")
            return

        cfg = self.config
        target = urlparse(self.database_url)
        logger.info(f"Connecting to {target.hostname}:{target.port or 5432} ({self.mode.value} mode)")

        for attempt in range(1, cfg.max_retries + 1):
            pool: asyncpg.Pool | None = None
            try:
                pool = await asyncpg.create_pool(**self.pool_kwargs())
                async with pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
            except Exception as e:
                if pool is not None:
                    await pool.close()
                if attempt == cfg.max_retries:
                    logger.error(f"Database unreachable after {attempt} attempts: {type(e).__name__}: {e}")
                    raise
                delay = cfg.retry_delay * 2 ** (attempt - 1)
                logger.warning(
                    f"Database connect attempt {attempt}/{cfg.max_retries} failed "
                    f"({type(e).__name__}), retrying in {delay:.0f}s"
                )
                await asyncio.sleep(delay)
                continue

            self._pool = pool
            logger.info(f"Database pool ready (size {cfg.min_size}-{cfg.max_size})")
            return

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        try:
            await pool.close()
            logger.info("Database pool closed")
        except Exception as e:
            logger.exception(f"Error closing database pool: {e}")

    async def check_health(self) -> bool:
        """True when a pooled connection answers ``SELECT 1``."""
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire(timeout=2.0) as conn:
                await conn.fetchval("SELECT 1")
        except Exception:
            return False
        return True

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not connected, call connect() first")
        return self._pool
