import asyncio
import logging
import sys
from pathlib import Path

import asyncpg
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "sandbox-server"))

from sql_sandbox.errors import (  # noqa: E402
    CONNECTION_UNAVAILABLE_MESSAGE,
    PERMISSION_DENIED_MESSAGE,
    RESOURCE_EXCEEDED_MESSAGE,
    UNKNOWN_MESSAGE,
    PoolExhaustedError,
    classify_error,
)
from sql_sandbox.models import ErrorKind, ExecutionPolicy  # noqa: E402


class _FakePgError(Exception):
    """Carries the attributes asyncpg sets on server errors."""

    def __init__(self, sqlstate, message, detail=None, hint=None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.message = message
        self.detail = detail
        self.hint = hint


POLICY = ExecutionPolicy(statement_timeout_seconds=5)


def test_classify_error_syntax_passes_database_message():
    exc = _FakePgError(
        "42P01",
        'relation "ordrs" does not exist',
        hint='Perhaps you meant to reference the table "orders".',
    )
    failure = classify_error(exc, POLICY)
    assert failure.kind == ErrorKind.SYNTAX_ERROR
    assert 'relation "ordrs" does not exist' in failure.message
    assert "HINT:" in failure.message
    assert failure.to_response()["retryable"] is False


def test_classify_error_data_error_passes_database_message():
    failure = classify_error(_FakePgError("22012", "division by zero"), POLICY)
    assert failure.kind == ErrorKind.DATA_ERROR
    assert failure.message == "division by zero"


@pytest.mark.parametrize(
    "exc",
    [
        TimeoutError(),
        asyncio.TimeoutError(),
        asyncpg.exceptions.QueryCanceledError("canceling statement due to statement timeout"),
        _FakePgError("57014", "canceling statement due to statement timeout"),
    ],
)
def test_classify_error_timeout_names_limit(exc):
    failure = classify_error(exc, POLICY)
    assert failure.kind == ErrorKind.TIMEOUT
    assert "5 seconds" in failure.message


@pytest.mark.parametrize("sqlstate", ["42501", "25006"])
def test_classify_error_permission_denied_logs_classifier_gap(sqlstate, caplog):
    caplog.set_level(logging.WARNING, logger="sql_sandbox.errors")
    failure = classify_error(_FakePgError(sqlstate, "permission denied for table orders"), POLICY)
    assert failure.kind == ErrorKind.PERMISSION_DENIED
    assert failure.message == PERMISSION_DENIED_MESSAGE
    assert "Classifier gap" in caplog.text


def test_classify_error_permission_denied_from_asyncpg_exception():
    exc = asyncpg.exceptions.InsufficientPrivilegeError("permission denied for table orders")
    assert classify_error(exc, POLICY).kind == ErrorKind.PERMISSION_DENIED


@pytest.mark.parametrize("sqlstate", ["53100", "53200", "54001"])
def test_classify_error_resource_exceeded(sqlstate):
    failure = classify_error(_FakePgError(sqlstate, "out of memory"), POLICY)
    assert failure.kind == ErrorKind.RESOURCE_EXCEEDED
    assert failure.message == RESOURCE_EXCEEDED_MESSAGE


@pytest.mark.parametrize(
    "exc",
    [
        PoolExhaustedError("no connection available within 2s"),
        ConnectionRefusedError(),
        _FakePgError("53300", "sorry, too many clients already"),
        _FakePgError("08006", "connection failure"),
        _FakePgError("57P01", "terminating connection due to administrator command"),
    ],
)
def test_classify_error_connection_unavailable_is_retryable(exc):
    failure = classify_error(exc, POLICY)
    assert failure.kind == ErrorKind.CONNECTION_UNAVAILABLE
    assert failure.message == CONNECTION_UNAVAILABLE_MESSAGE
    assert failure.to_response()["retryable"] is True


def test_classify_error_unknown_hides_internal_details(caplog):
    caplog.set_level(logging.ERROR, logger="sql_sandbox.errors")
    failure = classify_error(RuntimeError("internal pool state corrupted"), POLICY)
    assert failure.kind == ErrorKind.UNKNOWN
    assert failure.message == UNKNOWN_MESSAGE
    assert "internal pool state" not in failure.message
    assert "internal pool state corrupted" in caplog.text


def test_query_failure_response_shape():
    payload = classify_error(_FakePgError("22012", "division by zero"), POLICY).to_response()
    assert payload == {
        "success": False,
        "error": "division by zero",
        "kind": "DataError",
        "retryable": False,
    }
