"""
Value types shared by the classifier, executor and HTTP layer.

Every request produces exactly one outcome: a ``QuerySuccess``, a
``PlanSuccess`` (explain mode) or a ``QueryFailure``. Failures carry an
``ErrorKind`` from a single vocabulary so the classifier, the database error
mapping and the reset manager all serialize the same way.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Scalar = Union[None, bool, int, float, str]


class ErrorKind(str, Enum):
    """Stable failure taxonomy returned to clients."""

    SYNTAX_ERROR = "SyntaxError"
    DATA_ERROR = "DataError"
    EMPTY_STATEMENT = "EmptyStatement"
    STATEMENT_TOO_LONG = "StatementTooLong"
    MULTIPLE_STATEMENTS = "MultipleStatements"
    FORBIDDEN_STATEMENT_TYPE = "ForbiddenStatementType"
    TIMEOUT = "Timeout"
    PERMISSION_DENIED = "PermissionDenied"
    RESOURCE_EXCEEDED = "ResourceExceeded"
    CONNECTION_UNAVAILABLE = "ConnectionUnavailable"
    RESET_IN_PROGRESS = "ResetInProgress"
    UNKNOWN = "Unknown"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.CONNECTION_UNAVAILABLE


class QueryMode(str, Enum):
    EXECUTE = "execute"
    EXPLAIN = "explain"


class QueryRequest(BaseModel):
    """A single inbound query, discarded once the response is written."""

    model_config = ConfigDict(frozen=True)

    sql: str
    client_id: Optional[str] = None
    mode: QueryMode = QueryMode.EXECUTE


# ── Classification ────────────────────────────────────────────────────────


class Allowed(BaseModel):
    """Verdict for a statement that may be sent to the database."""

    model_config = ConfigDict(frozen=True)

    statement: str
    statement_type: Literal["select", "with", "explain"]


class Rejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


StatementVerdict = Union[Allowed, Rejected]


# ── Policy ────────────────────────────────────────────────────────────────


class ExecutionPolicy(BaseModel):
    """Process-wide execution limits, built once from Settings."""

    model_config = ConfigDict(frozen=True)

    statement_timeout_seconds: float = Field(default=5.0, gt=0)
    row_limit: int = Field(default=1000, gt=0)
    connection_role: str = Field(default="sql_katas_learner")
    acquire_timeout_seconds: float = Field(default=2.0, gt=0)
    timeout_grace_seconds: float = Field(default=1.0, ge=0)

    @property
    def statement_timeout_ms(self) -> int:
        return max(1, int(self.statement_timeout_seconds * 1000))

    @property
    def deadline_seconds(self) -> float:
        """Client-side budget for acquire + run + rollback."""
        return (
            self.acquire_timeout_seconds
            + self.statement_timeout_seconds
            + self.timeout_grace_seconds
        )


# ── Outcomes ──────────────────────────────────────────────────────────────


class QuerySuccess(BaseModel):
    success: Literal[True] = True
    columns: List[str]
    rows: List[Dict[str, Scalar]]
    row_count: int
    limited: bool

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "columns": self.columns,
            "rows": self.rows,
            "rowCount": self.row_count,
            "limited": self.limited,
        }


class PlanSuccess(BaseModel):
    success: Literal[True] = True
    plan: Any

    def to_response(self) -> Dict[str, Any]:
        return {"success": True, "plan": self.plan}


class QueryFailure(BaseModel):
    success: Literal[False] = False
    kind: ErrorKind
    message: str

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "kind": self.kind.value,
            "retryable": self.kind.retryable,
        }


ExecutionOutcome = Union[QuerySuccess, PlanSuccess, QueryFailure]


# ── Reset ─────────────────────────────────────────────────────────────────


class ResetState(str, Enum):
    IDLE = "idle"
    RESETTING = "resetting"


class ResetOutcome(BaseModel):
    success: bool
    message: Optional[str] = None
    kind: Optional[ErrorKind] = None

    def to_response(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "message": self.message}
        return {
            "success": False,
            "error": self.message,
            "kind": self.kind.value if self.kind else ErrorKind.UNKNOWN.value,
        }
