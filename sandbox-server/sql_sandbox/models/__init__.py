"""
Data models for the SQL Katas query sandbox.
"""

from .outcomes import (
    Allowed,
    ErrorKind,
    ExecutionOutcome,
    ExecutionPolicy,
    PlanSuccess,
    QueryFailure,
    QueryMode,
    QueryRequest,
    QuerySuccess,
    Rejected,
    ResetOutcome,
    ResetState,
    Scalar,
    StatementVerdict,
)

__all__ = [
    "Allowed",
    "ErrorKind",
    "ExecutionOutcome",
    "ExecutionPolicy",
    "PlanSuccess",
    "QueryFailure",
    "QueryMode",
    "QueryRequest",
    "QuerySuccess",
    "Rejected",
    "ResetOutcome",
    "ResetState",
    "Scalar",
    "StatementVerdict",
]
