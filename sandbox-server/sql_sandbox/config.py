"""
Runtime configuration for the SQL Katas sandbox.

Kept apart from main.py so command-line tools can build settings and a reset
manager without constructing the FastAPI app.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .executors import PostgresConnectionPool
from .models import ExecutionPolicy
from .reset import DEFAULT_SEED_PATH, DatasetResetManager

try:
    from dotenv import load_dotenv
except Exception:  # pragma: no cover
    load_dotenv = None


class Settings(BaseModel):
    """Runtime configuration for the server."""

    database_url: str = Field(default="postgres://localhost:5432/sql_katas")
    learner_database_url: Optional[str] = Field(default=None)
    learner_db_user: str = Field(default="sql_katas_learner")
    learner_db_password: Optional[str] = Field(default="learner")
    sandbox_provider: Literal["postgres"] = Field(default="postgres")
    statement_timeout_seconds: float = Field(default=5.0)
    row_limit: int = Field(default=1000)
    max_query_length: int = Field(default=10000)
    pool_min_size: int = Field(default=1)
    pool_max_size: int = Field(default=5)
    pool_acquire_timeout_seconds: float = Field(default=2.0)
    timeout_grace_seconds: float = Field(default=1.0)
    reset_lock_timeout_seconds: float = Field(default=10.0)
    seed_path: Optional[str] = Field(default=None)
    learner_schema: str = Field(default="public")
    provision_learner_role: bool = Field(default=True)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="info")

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.statement_timeout_seconds <= 0:
            raise ValueError("statement_timeout_seconds must be > 0")
        if self.row_limit <= 0:
            raise ValueError("row_limit must be > 0")
        if self.max_query_length <= 0:
            raise ValueError("max_query_length must be > 0")
        if self.pool_min_size < 0 or self.pool_max_size <= 0:
            raise ValueError("pool sizes must be positive")
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size must be <= pool_max_size")
        if self.pool_acquire_timeout_seconds <= 0:
            raise ValueError("pool_acquire_timeout_seconds must be > 0")
        if not self.learner_db_user.strip():
            raise ValueError("learner_db_user is required")
        return self

    @property
    def learner_dsn(self) -> str:
        return self.learner_database_url or self.database_url

    def execution_policy(self) -> ExecutionPolicy:
        return ExecutionPolicy(
            statement_timeout_seconds=self.statement_timeout_seconds,
            row_limit=self.row_limit,
            connection_role=self.learner_db_user,
            acquire_timeout_seconds=self.pool_acquire_timeout_seconds,
            timeout_grace_seconds=self.timeout_grace_seconds,
        )


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Build Settings from the environment (and any .env file)."""
    if load_dotenv:
        repo_root = Path(__file__).resolve().parents[2]
        load_dotenv(repo_root / ".env", override=False)
        load_dotenv(Path.cwd() / ".env", override=False)

    return Settings(
        database_url=os.getenv("DATABASE_URL", "postgres://localhost:5432/sql_katas"),
        learner_database_url=os.getenv("LEARNER_DATABASE_URL") or None,
        learner_db_user=os.getenv("LEARNER_DB_USER", "sql_katas_learner"),
        learner_db_password=os.getenv("LEARNER_DB_PASSWORD", "learner"),
        sandbox_provider=os.getenv("SANDBOX_PROVIDER", "postgres"),
        statement_timeout_seconds=float(os.getenv("STATEMENT_TIMEOUT_SECONDS", "5")),
        row_limit=int(os.getenv("ROW_LIMIT", "1000")),
        max_query_length=int(os.getenv("MAX_QUERY_LENGTH", "10000")),
        pool_min_size=int(os.getenv("POOL_MIN_SIZE", "1")),
        pool_max_size=int(os.getenv("POOL_MAX_SIZE", "5")),
        pool_acquire_timeout_seconds=float(
            os.getenv("POOL_ACQUIRE_TIMEOUT_SECONDS", "2")
        ),
        timeout_grace_seconds=float(os.getenv("TIMEOUT_GRACE_SECONDS", "1")),
        reset_lock_timeout_seconds=float(os.getenv("RESET_LOCK_TIMEOUT_SECONDS", "10")),
        seed_path=os.getenv("SEED_PATH") or None,
        learner_schema=os.getenv("LEARNER_SCHEMA", "public"),
        provision_learner_role=_env_bool("PROVISION_LEARNER_ROLE", "true"),
        cors_origins=[
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ],
        log_level=os.getenv("LOG_LEVEL", "info"),
    )


def create_reset_manager(settings: Settings) -> DatasetResetManager:
    """Reset manager on its own small admin pool (never the learner pool)."""
    admin_pool = PostgresConnectionPool(
        settings.database_url,
        min_size=1,
        max_size=2,
        acquire_timeout=settings.reset_lock_timeout_seconds,
        server_settings={"application_name": "sql-katas-admin"},
        pool_name="admin",
    )
    return DatasetResetManager(
        admin_pool,
        learner_role=settings.learner_db_user,
        learner_password=settings.learner_db_password,
        learner_schema=settings.learner_schema,
        seed_path=settings.seed_path or DEFAULT_SEED_PATH,
        provision_learner_role=settings.provision_learner_role,
        lock_timeout_seconds=settings.reset_lock_timeout_seconds,
    )

