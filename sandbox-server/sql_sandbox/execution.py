"""Shared sandbox execution helper.

Single entry point for running one learner request: classify, check the
reset state, dispatch to the executor. The HTTP routes and the tests both
call ``run_sandboxed``; it always returns an outcome and never raises.
"""

from __future__ import annotations

import logging
from typing import Optional

from .errors import UNKNOWN_MESSAGE
from .executors.base import Executor
from .models import (
    Allowed,
    ErrorKind,
    ExecutionOutcome,
    ExecutionPolicy,
    QueryFailure,
    QueryMode,
    QueryRequest,
)
from .reset import DatasetResetManager
from .validators.sql_policy import DEFAULT_MAX_QUERY_LENGTH, classify_statement

LOGGER = logging.getLogger(__name__)

RESET_BLOCKS_QUERY_MESSAGE = (
    "The practice dataset is being reset. Run your query again once the reset "
    "has finished."
)

_LOGGED_SQL_CHARS = 200


def _preview(sql: Optional[str]) -> str:
    text = " ".join((sql or "").split())
    if len(text) > _LOGGED_SQL_CHARS:
        return text[:_LOGGED_SQL_CHARS] + "..."
    return text


async def run_sandboxed(
    executor: Executor,
    policy: ExecutionPolicy,
    request: QueryRequest,
    *,
    reset_manager: Optional[DatasetResetManager] = None,
    max_length: int = DEFAULT_MAX_QUERY_LENGTH,
) -> ExecutionOutcome:
    """Classify *request* and run it through *executor* under *policy*."""
    verdict = classify_statement(request.sql, max_length=max_length)
    if not isinstance(verdict, Allowed):
        LOGGER.info(
            "Rejected query (client=%s, kind=%s): %s",
            request.client_id or "-",
            verdict.kind.value,
            _preview(request.sql),
        )
        return QueryFailure(kind=verdict.kind, message=verdict.message)

    if reset_manager is not None and reset_manager.in_progress:
        LOGGER.info("Query refused during dataset reset (client=%s)", request.client_id or "-")
        return QueryFailure(
            kind=ErrorKind.RESET_IN_PROGRESS, message=RESET_BLOCKS_QUERY_MESSAGE
        )

    LOGGER.debug(
        "Running %s %s query (client=%s): %s",
        request.mode.value,
        verdict.statement_type,
        request.client_id or "-",
        _preview(verdict.statement),
    )
    try:
        if request.mode is QueryMode.EXPLAIN:
            outcome = await executor.explain(verdict, policy)
        else:
            outcome = await executor.execute(verdict, policy)
    except Exception:
        LOGGER.exception("Executor raised for query: %s", _preview(verdict.statement))
        return QueryFailure(kind=ErrorKind.UNKNOWN, message=UNKNOWN_MESSAGE)

    if isinstance(outcome, QueryFailure):
        LOGGER.info(
            "Query failed (client=%s, kind=%s)",
            request.client_id or "-",
            outcome.kind.value,
        )
    return outcome
