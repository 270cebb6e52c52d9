"""
FastAPI query sandbox server for SQL Katas.

Entry points:
  - create_app(settings, executor, reset_manager): factory used by production and tests
  - module-level `app = create_app()`: picked up by uvicorn
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, create_reset_manager, load_settings
from .execution import run_sandboxed
from .executors import Executor, create_sandbox_executor
from .models import QueryMode, QueryRequest
from .reset import DatasetResetManager


LOGGER = logging.getLogger("sql-katas-sandbox")


# ── API Models ────────────────────────────────────────────────────────────


class QueryBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = None
    client_id: Optional[str] = Field(default=None, alias="clientId")


# ── App ───────────────────────────────────────────────────────────────────


def create_app(
    settings: Optional[Settings] = None,
    executor: Optional[Executor] = None,
    reset_manager: Optional[DatasetResetManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings:      Override Settings (loaded from env if None).
        executor:      Injected Executor; skips the factory when provided (used by tests).
        reset_manager: Injected reset manager; skips the admin pool when provided.
    """
    settings = settings or load_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO)
    )

    policy = settings.execution_policy()

    sandbox_executor = executor or create_sandbox_executor(
        provider=settings.sandbox_provider,
        dsn=settings.learner_dsn,
        user=settings.learner_db_user,
        password=settings.learner_db_password,
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
        acquire_timeout_seconds=settings.pool_acquire_timeout_seconds,
        statement_timeout_seconds=settings.statement_timeout_seconds,
    )
    dataset_reset = reset_manager or create_reset_manager(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        # A sandbox that cannot reach its database should not start.
        await dataset_reset.startup()
        await sandbox_executor.startup()
        LOGGER.info(
            "Sandbox ready: role=%s row_limit=%s statement_timeout=%ss",
            policy.connection_role,
            policy.row_limit,
            policy.statement_timeout_seconds,
        )
        try:
            yield
        finally:
            await sandbox_executor.close()
            await dataset_reset.close()

    app = FastAPI(title="SQL Katas Query Sandbox", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # ── routes ──────────────────────────────────────────────────────────

    async def _run(body: QueryBody, mode: QueryMode):
        request = QueryRequest(sql=body.query or "", client_id=body.client_id, mode=mode)
        outcome = await run_sandboxed(
            sandbox_executor,
            policy,
            request,
            reset_manager=dataset_reset,
            max_length=settings.max_query_length,
        )
        return outcome.to_response()

    @app.post("/api/query")
    async def query(body: QueryBody):
        return await _run(body, QueryMode.EXECUTE)

    @app.post("/api/explain")
    async def explain(body: QueryBody):
        return await _run(body, QueryMode.EXPLAIN)

    @app.post("/api/reset")
    async def reset():
        outcome = await dataset_reset.reset()
        return outcome.to_response()

    @app.get("/api/health")
    async def health():
        info = await sandbox_executor.health()
        connected = bool(info.get("connected"))
        payload = {
            "status": "ok" if connected else "error",
            "database": "connected" if connected else "disconnected",
            "time": info.get("time"),
            "resetInProgress": dataset_reset.in_progress,
            "pool": info.get("pool", {}),
        }
        if not connected:
            return JSONResponse(status_code=503, content=payload)
        return payload

    return app


# Module-level app instance for uvicorn; guarded so test imports don't fail
# when the environment holds invalid settings.
try:
    app = create_app()
except Exception:  # pragma: no cover
    app = None  # type: ignore[assignment]
