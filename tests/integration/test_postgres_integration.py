"""
Integration tests against a real PostgreSQL server.

Set SANDBOX_TEST_DATABASE_URL to an admin DSN for a scratch database; the
tests reset it to the packaged seed, create the learner role, and run
learner queries through the real pool and executor.
"""

import os
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "sandbox-server"))

from sql_sandbox.execution import run_sandboxed  # noqa: E402
from sql_sandbox.executors import PostgresConnectionPool, create_sandbox_executor  # noqa: E402
from sql_sandbox.models import (  # noqa: E402
    Allowed,
    ErrorKind,
    ExecutionPolicy,
    PlanSuccess,
    QueryMode,
    QueryRequest,
    QuerySuccess,
)
from sql_sandbox.reset import DatasetResetManager  # noqa: E402


ADMIN_DSN = os.environ.get("SANDBOX_TEST_DATABASE_URL")
LEARNER_ROLE = os.environ.get("SANDBOX_TEST_LEARNER_USER", "sql_katas_learner")
LEARNER_PASSWORD = os.environ.get("SANDBOX_TEST_LEARNER_PASSWORD", "learner")


@pytest.fixture(scope="module", autouse=True)
def require_database():
    if not ADMIN_DSN:
        pytest.skip("Skipping Postgres integration tests: SANDBOX_TEST_DATABASE_URL not set")


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _policy(**overrides):
    values = {
        "statement_timeout_seconds": 2,
        "row_limit": 1000,
        "connection_role": LEARNER_ROLE,
        "acquire_timeout_seconds": 2,
    }
    values.update(overrides)
    return ExecutionPolicy(**values)


@asynccontextmanager
async def _sandbox():
    """Reset the dataset, then yield (executor, reset_manager)."""
    reset_manager = DatasetResetManager(
        PostgresConnectionPool(ADMIN_DSN, max_size=2, pool_name="admin-test"),
        learner_role=LEARNER_ROLE,
        learner_password=LEARNER_PASSWORD,
    )
    executor = create_sandbox_executor(
        provider="postgres",
        dsn=ADMIN_DSN,
        user=LEARNER_ROLE,
        password=LEARNER_PASSWORD,
        max_size=3,
    )
    await reset_manager.startup()
    try:
        outcome = await reset_manager.reset()
        assert outcome.success, outcome.message
        await executor.startup()
        yield executor, reset_manager
    finally:
        await executor.close()
        await reset_manager.close()


async def _run(executor, sql, policy=None, mode=QueryMode.EXECUTE):
    return await run_sandboxed(executor, policy or _policy(), QueryRequest(sql=sql, mode=mode))


@pytest.mark.anyio
async def test_orders_query_returns_seed_rows():
    async with _sandbox() as (executor, _):
        out = await _run(executor, "SELECT * FROM orders ORDER BY id")

    assert isinstance(out, QuerySuccess)
    assert out.row_count == 50
    assert out.limited is False
    assert out.columns[:3] == ["id", "customer_id", "order_date"]
    assert out.rows[0]["order_date"] == "2024-02-01"
    assert out.rows[0]["total_amount"] == 94.98


@pytest.mark.anyio
async def test_row_limit_truncates_with_probe():
    async with _sandbox() as (executor, _):
        capped = await _run(executor, "SELECT id FROM orders", _policy(row_limit=10))
        exact = await _run(executor, "SELECT id FROM orders", _policy(row_limit=50))

    assert capped.row_count == 10
    assert capped.limited is True
    assert exact.row_count == 50
    assert exact.limited is False


@pytest.mark.anyio
async def test_long_running_query_times_out_and_pool_recovers():
    async with _sandbox() as (executor, _):
        started = time.monotonic()
        slow = await _run(executor, "SELECT pg_sleep(5)", _policy(statement_timeout_seconds=0.5))
        elapsed = time.monotonic() - started
        after = await _run(executor, "SELECT 1 AS ok")
        stats = executor.pool.get_pool_stats()

    assert slow.kind == ErrorKind.TIMEOUT
    assert elapsed < 2.0
    assert isinstance(after, QuerySuccess)
    assert stats["in_use"] == 0


@pytest.mark.anyio
async def test_database_errors_are_classified():
    async with _sandbox() as (executor, _):
        missing = await _run(executor, "SELECT * FROM ordrs")
        division = await _run(executor, "SELECT 1 / 0")

    assert missing.kind == ErrorKind.SYNTAX_ERROR
    assert 'relation "ordrs" does not exist' in missing.message
    assert division.kind == ErrorKind.DATA_ERROR


@pytest.mark.anyio
async def test_learner_role_cannot_write_even_past_classifier():
    async with _sandbox() as (executor, _):
        verdict = Allowed(
            statement="INSERT INTO categories (name) VALUES ('sneaky')",
            statement_type="select",
        )
        out = await executor.execute(verdict, _policy())
        count = await _run(executor, "SELECT count(*) AS n FROM categories")

    assert out.kind == ErrorKind.PERMISSION_DENIED
    assert count.rows == [{"n": 10}]


@pytest.mark.anyio
async def test_explain_returns_json_plan():
    async with _sandbox() as (executor, _):
        out = await _run(executor, "SELECT * FROM orders WHERE id = 1", mode=QueryMode.EXPLAIN)

    assert isinstance(out, PlanSuccess)
    assert "Plan" in out.plan[0]


@pytest.mark.anyio
async def test_reset_is_idempotent():
    async with _sandbox() as (executor, reset_manager):
        first = await _run(executor, "SELECT count(*) AS n FROM order_items")
        outcome = await reset_manager.reset()
        second = await _run(executor, "SELECT count(*) AS n FROM order_items")
        orders = await _run(executor, "SELECT count(*) AS n FROM orders")

    assert outcome.success is True
    assert first.rows == second.rows
    assert orders.rows == [{"n": 50}]


@pytest.mark.anyio
async def test_stacked_drop_is_rejected_and_orders_survive():
    async with _sandbox() as (executor, _):
        out = await _run(executor, "SELECT 1; DROP TABLE orders;")
        orders = await _run(executor, "SELECT count(*) AS n FROM orders")

    assert out.kind == ErrorKind.MULTIPLE_STATEMENTS
    assert out.to_response()["success"] is False
    assert orders.rows == [{"n": 50}]
