"""
Executor factory for selecting the sandbox backend.
"""

from __future__ import annotations

from typing import Optional

from .base import Executor
from .pool import PostgresConnectionPool
from .postgres_executor import PostgresExecutor


def create_sandbox_executor(
    *,
    provider: str,
    dsn: str,
    user: Optional[str] = None,
    password: Optional[str] = None,
    min_size: int = 1,
    max_size: int = 5,
    acquire_timeout_seconds: float = 2.0,
    statement_timeout_seconds: float = 5.0,
    application_name: str = "sql-katas-sandbox",
) -> Executor:
    normalized = (provider or "postgres").strip().lower()
    if normalized == "postgres":
        pool = PostgresConnectionPool(
            dsn,
            user=user,
            password=password,
            min_size=min_size,
            max_size=max_size,
            acquire_timeout=acquire_timeout_seconds,
            server_settings={
                "application_name": application_name,
                # Session defaults; each query still sets its own LOCAL timeout.
                "default_transaction_read_only": "on",
                "statement_timeout": str(max(1, int(statement_timeout_seconds * 1000))),
            },
            pool_name="learner",
        )
        return PostgresExecutor(pool)
    raise ValueError(f"Unsupported sandbox provider: {provider}")
