"""
Dataset reset: restore the shared practice dataset to its seed state.

The seed script and the learner-role grants run in one admin transaction, so
concurrent learner queries see either the old tables or the new ones and a
failed reset leaves the previous dataset untouched. Only one reset runs at a
time; a second request while one is in flight is refused, not queued.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional, Union

import anyio

from .errors import PoolExhaustedError
from .executors.pool import PostgresConnectionPool
from .models import ErrorKind, ResetOutcome, ResetState

LOGGER = logging.getLogger(__name__)

DEFAULT_SEED_PATH = Path(__file__).resolve().parent / "seeds" / "001-ecommerce.sql"

RESET_SUCCESS_MESSAGE = "Dataset reset to initial state."
RESET_IN_PROGRESS_MESSAGE = (
    "A dataset reset is already in progress. Wait for it to finish before "
    "requesting another one."
)
RESET_FAILED_MESSAGE = "Dataset reset failed. The previous data is unchanged."

# Each entry is a format() template with %I/%L placeholders for (object, role).
LEARNER_GRANTS = (
    "GRANT CONNECT ON DATABASE %I TO %I",
    "GRANT USAGE ON SCHEMA %I TO %I",
    "REVOKE ALL ON ALL TABLES IN SCHEMA %I FROM %I",
    "GRANT SELECT ON ALL TABLES IN SCHEMA %I TO %I",
    "REVOKE ALL ON ALL SEQUENCES IN SCHEMA %I FROM %I",
    "REVOKE CREATE ON SCHEMA %I FROM %I",
    "ALTER DEFAULT PRIVILEGES IN SCHEMA %I GRANT SELECT ON TABLES TO %I",
)


class DatasetResetManager:
    """Serializes resets and tracks ``ResetState`` for the query path."""

    def __init__(
        self,
        pool: PostgresConnectionPool,
        *,
        learner_role: str,
        learner_password: Optional[str] = None,
        learner_schema: str = "public",
        seed_path: Union[str, Path] = DEFAULT_SEED_PATH,
        provision_learner_role: bool = True,
        lock_timeout_seconds: float = 10.0,
    ):
        self.pool = pool
        self.learner_role = learner_role
        self.learner_password = learner_password
        self.learner_schema = learner_schema
        self.seed_path = Path(seed_path)
        self.provision_learner_role = provision_learner_role
        self.lock_timeout_seconds = lock_timeout_seconds
        self._state = ResetState.IDLE
        self._lock = anyio.Lock()

    @property
    def state(self) -> ResetState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._state is ResetState.RESETTING

    async def startup(self) -> None:
        await self.pool.initialize()

    async def close(self) -> None:
        await self.pool.close()

    async def reset(self) -> ResetOutcome:
        try:
            self._lock.acquire_nowait()
        except anyio.WouldBlock:
            LOGGER.info("Reset requested while another reset is running; refusing")
            return ResetOutcome(
                success=False,
                kind=ErrorKind.RESET_IN_PROGRESS,
                message=RESET_IN_PROGRESS_MESSAGE,
            )

        self._state = ResetState.RESETTING
        started = time.perf_counter()
        try:
            seed_sql = await anyio.Path(self.seed_path).read_text(encoding="utf-8")
            async with self.pool.get_connection() as conn:
                async with conn.transaction():
                    lock_timeout_ms = max(1, int(self.lock_timeout_seconds * 1000))
                    await conn.execute(f"SET LOCAL lock_timeout = {lock_timeout_ms}")
                    await conn.execute(seed_sql)
                    if self.provision_learner_role:
                        await self._apply_learner_grants(conn)
        except Exception as exc:
            LOGGER.exception("Dataset reset failed; transaction rolled back")
            kind = (
                ErrorKind.CONNECTION_UNAVAILABLE
                if isinstance(exc, (PoolExhaustedError, ConnectionError))
                else ErrorKind.UNKNOWN
            )
            return ResetOutcome(success=False, kind=kind, message=RESET_FAILED_MESSAGE)
        finally:
            self._state = ResetState.IDLE
            self._lock.release()

        LOGGER.info(
            "Dataset reset completed in %.0f ms (seed=%s)",
            (time.perf_counter() - started) * 1000,
            self.seed_path.name,
        )
        return ResetOutcome(success=True, message=RESET_SUCCESS_MESSAGE)

    async def _execute_formatted(self, conn, template: str, *identifiers: str) -> None:
        placeholders = ", ".join(f"${i + 2}::text" for i in range(len(identifiers)))
        statement = await conn.fetchval(
            f"SELECT format($1, {placeholders})", template, *identifiers
        )
        await conn.execute(statement)

    async def _apply_learner_grants(self, conn) -> None:
        role = self.learner_role
        exists = await conn.fetchval(
            "SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = $1", role
        )
        if not exists:
            if self.learner_password is None:
                raise RuntimeError(
                    f"Learner role {role!r} does not exist and no password is configured"
                )
            LOGGER.info("Creating learner role %s", role)
            await self._execute_formatted(
                conn, "CREATE ROLE %I WITH LOGIN PASSWORD %L", role, self.learner_password
            )

        database = await conn.fetchval("SELECT current_database()")
        await self._execute_formatted(conn, LEARNER_GRANTS[0], database, role)
        for template in LEARNER_GRANTS[1:]:
            await self._execute_formatted(conn, template, self.learner_schema, role)
        await self._execute_formatted(
            conn, "ALTER ROLE %I SET default_transaction_read_only = on", role
        )
