"""Execution backend implementations."""

from .base import Executor
from .factory import create_sandbox_executor
from .pool import PostgresConnectionPool
from .postgres_executor import PostgresExecutor

__all__ = [
    "Executor",
    "PostgresConnectionPool",
    "PostgresExecutor",
    "create_sandbox_executor",
]
