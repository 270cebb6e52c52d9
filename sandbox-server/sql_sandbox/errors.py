"""
Map database and driver failures onto the sandbox error taxonomy.

Classification keys off SQLSTATE codes rather than message text, so it is
stable across PostgreSQL versions and locales. Only syntax and data errors
pass the database message through; everything else gets a fixed,
learner-facing message and the real cause stays in the server log.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import asyncpg

from .models import ErrorKind, ExecutionPolicy, QueryFailure

LOGGER = logging.getLogger(__name__)


class PoolExhaustedError(Exception):
    """No pooled connection became free within the acquire timeout."""


PERMISSION_DENIED_MESSAGE = (
    "This operation is not permitted in the sandbox. "
    "Only read-only SELECT queries can be run."
)
RESOURCE_EXCEEDED_MESSAGE = (
    "This query is too expensive to run in the sandbox. "
    "Try narrowing it down with a WHERE clause or a LIMIT."
)
CONNECTION_UNAVAILABLE_MESSAGE = (
    "The practice database is busy or unreachable right now. "
    "Please try again in a moment."
)
UNKNOWN_MESSAGE = "Something went wrong while running your query. Please try again."

_CONNECTION_SQLSTATES = {"53300", "57P01", "57P02", "57P03"}
_PERMISSION_SQLSTATES = {"42501", "25006"}


def timeout_message(policy: ExecutionPolicy) -> str:
    return (
        f"Your query ran for more than {policy.statement_timeout_seconds:g} seconds "
        "and was stopped. Look for accidental cross joins or unbounded recursion, "
        "and try filtering the data before joining it."
    )


def _sqlstate(exc: BaseException) -> Optional[str]:
    state = getattr(exc, "sqlstate", None)
    return state if isinstance(state, str) else None


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (TimeoutError, asyncio.TimeoutError)) or isinstance(
        exc, asyncpg.exceptions.QueryCanceledError
    )


def _is_connection_failure(exc: BaseException, sqlstate: Optional[str]) -> bool:
    if isinstance(exc, (PoolExhaustedError, OSError)):
        return True
    if isinstance(
        exc,
        (
            asyncpg.exceptions.ConnectionDoesNotExistError,
            asyncpg.exceptions.CannotConnectNowError,
            asyncpg.exceptions.TooManyConnectionsError,
        ),
    ):
        return True
    if sqlstate is None:
        return False
    return sqlstate in _CONNECTION_SQLSTATES or sqlstate.startswith("08")


def classify_error(exc: BaseException, policy: ExecutionPolicy) -> QueryFailure:
    """Return the learner-facing failure for a raw execution error."""
    sqlstate = _sqlstate(exc)

    if _is_timeout(exc) or sqlstate == "57014":
        return QueryFailure(kind=ErrorKind.TIMEOUT, message=timeout_message(policy))

    if _is_connection_failure(exc, sqlstate):
        LOGGER.warning("Learner connection unavailable: %s", exc)
        return QueryFailure(
            kind=ErrorKind.CONNECTION_UNAVAILABLE,
            message=CONNECTION_UNAVAILABLE_MESSAGE,
        )

    if sqlstate in _PERMISSION_SQLSTATES:
        # A statement got past the classifier but the role refused it.
        LOGGER.warning(
            "Classifier gap: database denied a statement for role %s (sqlstate=%s): %s",
            policy.connection_role,
            sqlstate,
            exc,
        )
        return QueryFailure(
            kind=ErrorKind.PERMISSION_DENIED, message=PERMISSION_DENIED_MESSAGE
        )

    if sqlstate is not None:
        if sqlstate.startswith("42"):
            return QueryFailure(kind=ErrorKind.SYNTAX_ERROR, message=_db_message(exc))
        if sqlstate.startswith(("21", "22")):
            return QueryFailure(kind=ErrorKind.DATA_ERROR, message=_db_message(exc))
        if sqlstate.startswith(("53", "54")):
            LOGGER.info("Resource limit hit (sqlstate=%s): %s", sqlstate, exc)
            return QueryFailure(
                kind=ErrorKind.RESOURCE_EXCEEDED, message=RESOURCE_EXCEEDED_MESSAGE
            )

    LOGGER.error(
        "Unclassified execution error (%s, sqlstate=%s): %s",
        type(exc).__name__,
        sqlstate,
        exc,
        exc_info=exc,
    )
    return QueryFailure(kind=ErrorKind.UNKNOWN, message=UNKNOWN_MESSAGE)


def _db_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc)
    detail = getattr(exc, "detail", None)
    hint = getattr(exc, "hint", None)
    parts = [message]
    if detail:
        parts.append(f"DETAIL: {detail}")
    if hint:
        parts.append(f"HINT: {hint}")
    return "\n".join(parts)
