"""
Postgres connection pool with bounded acquisition.

Wraps an asyncpg pool. The pool is the only owner of physical connections:
callers check a connection out through ``get_connection()`` and it is
returned (or discarded, if the caller terminated it) when the block exits.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg
from asyncpg import Pool
from asyncpg.exceptions import CannotConnectNowError, TooManyConnectionsError

from ..errors import PoolExhaustedError

LOGGER = logging.getLogger(__name__)

_TRANSIENT_CONNECT_ERRORS = (
    CannotConnectNowError,
    TooManyConnectionsError,
    ConnectionRefusedError,
)


class PostgresConnectionPool:
    """Async connection pool with retrying startup and admission control."""

    def __init__(
        self,
        dsn: str,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        min_size: int = 1,
        max_size: int = 5,
        acquire_timeout: float = 2.0,
        max_retries: int = 3,
        retry_delay: float = 0.25,
        server_settings: Optional[Dict[str, str]] = None,
        pool_name: str = "default",
    ):
        self.dsn = dsn
        self.user = user
        self.password = password
        self.min_size = min_size
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.server_settings = dict(server_settings or {})
        self.pool_name = pool_name

        self._pool: Optional[Pool] = None
        self._initialized = False

        LOGGER.info(
            "[%s] Postgres pool configured: user=%s size=%s-%s",
            pool_name,
            user or "<from dsn>",
            min_size,
            max_size,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create the underlying pool, retrying transient connect failures."""
        if self._initialized:
            return

        LOGGER.info("[%s] Creating Postgres connection pool...", self.pool_name)
        connect_kwargs: Dict[str, Any] = {}
        if self.user:
            connect_kwargs["user"] = self.user
        if self.password is not None:
            connect_kwargs["password"] = self.password

        for attempt in range(self.max_retries):
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    server_settings=self.server_settings or None,
                    **connect_kwargs,
                )
                self._initialized = True
                LOGGER.info(
                    "[%s] Postgres pool ready (size: %s-%s)",
                    self.pool_name,
                    self.min_size,
                    self.max_size,
                )
                return
            except _TRANSIENT_CONNECT_ERRORS as exc:
                if attempt < self.max_retries - 1:
                    LOGGER.warning(
                        "[%s] Pool creation attempt %s failed, retrying: %s",
                        self.pool_name,
                        attempt + 1,
                        exc,
                    )
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                else:
                    LOGGER.error(
                        "[%s] Failed to create pool after %s attempts",
                        self.pool_name,
                        self.max_retries,
                    )
                    raise

    async def _acquire(self, timeout: Optional[float]) -> asyncpg.Connection:
        if not self._initialized:
            await self.initialize()
        if self._pool is None:
            raise RuntimeError(f"[{self.pool_name}] pool not initialized")

        budget = self.acquire_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget
        attempt = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PoolExhaustedError(
                    f"[{self.pool_name}] no connection available within {budget:g}s"
                )
            try:
                return await self._pool.acquire(timeout=remaining)
            except asyncio.TimeoutError as exc:
                raise PoolExhaustedError(
                    f"[{self.pool_name}] no connection available within {budget:g}s"
                ) from exc
            except _TRANSIENT_CONNECT_ERRORS as exc:
                attempt += 1
                if attempt >= self.max_retries:
                    raise
                LOGGER.warning(
                    "[%s] Connection attempt %s failed, retrying: %s",
                    self.pool_name,
                    attempt,
                    exc,
                )
                await asyncio.sleep(
                    max(0.0, min(self.retry_delay * attempt, deadline - loop.time()))
                )

    @asynccontextmanager
    async def get_connection(
        self, timeout: Optional[float] = None
    ) -> AsyncIterator[asyncpg.Connection]:
        """
        Check out a connection for the duration of the block.

        Usage:
            async with pool.get_connection() as conn:
                await conn.fetchval("SELECT 1")

        Raises:
            PoolExhaustedError: no connection freed up within the timeout.
        """
        conn = await self._acquire(timeout)
        try:
            yield conn
        finally:
            await self._pool.release(conn)

    async def fetch_val(self, query: str, *args: Any) -> Any:
        async with self.get_connection() as conn:
            return await conn.fetchval(query, *args)

    def get_pool_stats(self) -> Dict[str, Any]:
        if not self._initialized or self._pool is None:
            return {"initialized": False, "size": 0, "free": 0}
        return {
            "initialized": True,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "size": self._pool.get_size(),
            "free": self._pool.get_idle_size(),
            "in_use": self._pool.get_size() - self._pool.get_idle_size(),
        }

    async def close(self) -> None:
        if self._pool is not None:
            LOGGER.info("[%s] Closing Postgres connection pool...", self.pool_name)
            await self._pool.close()
            self._pool = None
            self._initialized = False
