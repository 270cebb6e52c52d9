"""
Postgres-backed executor for classified learner statements.

Each call checks out one pooled connection authenticated as the learner role
and runs the statement inside a READ ONLY transaction that is always rolled
back. The statement timeout is applied server-side with SET LOCAL, so a
runaway query is cancelled by Postgres itself; an anyio deadline around the
whole unit is only the client-side backstop.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Tuple, TypeVar

import anyio
import asyncpg

from ..errors import classify_error
from ..models import Allowed, ExecutionOutcome, ExecutionPolicy, PlanSuccess
from ..normalizer import normalize_result
from .base import Executor
from .pool import PostgresConnectionPool

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


async def fetch_capped(
    conn: asyncpg.Connection, statement: str, row_limit: int
) -> Tuple[List[str], List[Any], bool]:
    """Fetch at most ``row_limit`` rows, probing one extra to detect truncation."""
    prepared = await conn.prepare(statement)
    columns = [attr.name for attr in prepared.get_attributes()]
    cursor = await prepared.cursor()
    records = await cursor.fetch(row_limit + 1)
    limited = len(records) > row_limit
    return columns, list(records[:row_limit]), limited


class PostgresExecutor(Executor):
    def __init__(self, pool: PostgresConnectionPool):
        self.pool = pool

    async def startup(self) -> None:
        await self.pool.initialize()

    async def close(self) -> None:
        await self.pool.close()

    async def _run_read_only(
        self,
        policy: ExecutionPolicy,
        work: Callable[[asyncpg.Connection], Awaitable[T]],
    ) -> T:
        async with self.pool.get_connection(timeout=policy.acquire_timeout_seconds) as conn:
            transaction = conn.transaction(readonly=True)
            await transaction.start()
            try:
                await conn.execute(
                    f"SET LOCAL statement_timeout = {policy.statement_timeout_ms}"
                )
                return await work(conn)
            except anyio.get_cancelled_exc_class():
                # Mid-statement cancellation leaves the protocol state unknown.
                conn.terminate()
                raise
            finally:
                if not conn.is_closed():
                    try:
                        await transaction.rollback()
                    except Exception as exc:
                        LOGGER.warning("Rollback failed; discarding connection: %s", exc)
                        conn.terminate()

    async def execute(self, verdict: Allowed, policy: ExecutionPolicy) -> ExecutionOutcome:
        async def work(conn: asyncpg.Connection):
            return await fetch_capped(conn, verdict.statement, policy.row_limit)

        try:
            with anyio.fail_after(policy.deadline_seconds):
                columns, records, limited = await self._run_read_only(policy, work)
        except Exception as exc:
            return classify_error(exc, policy)
        return normalize_result(columns, records, limited)

    async def explain(self, verdict: Allowed, policy: ExecutionPolicy) -> ExecutionOutcome:
        if verdict.statement_type == "explain":

            async def work(conn: asyncpg.Connection):
                _, records, _ = await fetch_capped(conn, verdict.statement, policy.row_limit)
                return "\n".join(str(record[0]) for record in records)

        else:

            async def work(conn: asyncpg.Connection):
                raw = await conn.fetchval(f"EXPLAIN (FORMAT JSON) {verdict.statement}")
                return json.loads(raw) if isinstance(raw, str) else raw

        try:
            with anyio.fail_after(policy.deadline_seconds):
                plan = await self._run_read_only(policy, work)
        except Exception as exc:
            return classify_error(exc, policy)
        return PlanSuccess(plan=plan)

    async def health(self) -> Dict[str, Any]:
        try:
            with anyio.fail_after(self.pool.acquire_timeout + 1):
                now = await self.pool.fetch_val("SELECT NOW()")
        except Exception as exc:
            LOGGER.warning("Database health check failed: %s", exc)
            return {"connected": False, "time": None, "pool": self.pool.get_pool_stats()}
        return {
            "connected": True,
            "time": now.isoformat() if hasattr(now, "isoformat") else str(now),
            "pool": self.pool.get_pool_stats(),
        }
