"""Shared error taxonomy and Problem Details helpers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar
from uuid import uuid4

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, METHOD_NOT_FOUND, ErrorData

# Server-defined JSON-RPC codes live in the -32000..-32099 band.
TIMEOUT_ERROR = -32001
POOL_EXHAUSTED = -32002
POOL_CONNECTION_ERROR = -32003


def generate_correlation_id() -> str:
    """
    Return a new correlation identifier for tracing errors.

    Returns
    -------
    str
        UUID4 correlation identifier.
    """
    return str(uuid4())


@dataclass(frozen=True)
class ProblemDetail:
    """
    RFC 9457 Problem Details payload.

    Fields mirror the standard shape with optional extras for diagnostics.
    """

    type: str
    title: str
    detail: str
    status: int | None = None
    instance: str = field(default_factory=generate_correlation_id)
    code: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize to a JSON-friendly dict.

        Returns
        -------
        dict[str, Any]
            Problem detail payload as a plain dictionary.
        """
        payload: dict[str, Any] = {
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
            "instance": self.instance,
        }
        if self.status is not None:
            payload["status"] = self.status
        if self.code is not None:
            payload["code"] = self.code
        if self.extras:
            payload["extras"] = self.extras
        return payload


def problem(
    code: str,
    title: str,
    detail: str,
    *,
    status: int | None = None,
    extras: dict[str, Any] | None = None,
) -> ProblemDetail:
    """
    Create a ProblemDetail whose type URI is derived from ``code``.

    Every problem gets a fresh correlation id as its ``instance`` so one
    failed request can be traced from the JSON-RPC error data to the log.

    Returns
    -------
    ProblemDetail
        Structured problem payload.
    """
    return ProblemDetail(
        type=f"https://problems.querygate.dev/{code}",
        title=title,
        detail=detail,
        status=status,
        code=code,
        extras=extras or {},
    )


def log_problem(logger: logging.Logger | logging.LoggerAdapter, detail: ProblemDetail) -> None:
    """Emit a Problem Detail as a structured error log."""
    logger.error(json.dumps(detail.to_dict(), default=str))


class ProblemError(Exception):
    """Base exception carrying a ProblemDetail payload."""

    rpc_code: ClassVar[int] = INTERNAL_ERROR

    def __init__(self, detail: ProblemDetail) -> None:
        super().__init__(detail.detail)
        self.problem_detail = detail

    def to_error_data(self) -> ErrorData:
        """
        Render the error as a JSON-RPC error object.

        Returns
        -------
        ErrorData
            Code, message and Problem Details data for the wire.
        """
        return ErrorData(
            code=self.rpc_code,
            message=self.problem_detail.detail,
            data=self.problem_detail.to_dict(),
        )


class StartupError(ProblemError):
    """Configuration, database or transport failure before serving begins."""


class UnknownOperationError(ProblemError):
    """Request names an operation that is not registered."""

    rpc_code = METHOD_NOT_FOUND


class ValidationError(ProblemError):
    """Operation parameters are missing or have the wrong shape."""

    rpc_code = INVALID_PARAMS


class QueryExecutionError(ProblemError):
    """The database rejected a statement."""


class OperationTimeoutError(ProblemError):
    """An operation exceeded its call budget."""

    rpc_code = TIMEOUT_ERROR


class PoolExhaustedError(ProblemError):
    """No pooled connection became available within the wait bound."""

    rpc_code = POOL_EXHAUSTED


class PoolConnectionError(ProblemError, ConnectionError):
    """The pool could not open a database connection."""

    rpc_code = POOL_CONNECTION_ERROR


class TransportError(ProblemError):
    """I/O fault on the peer stream."""


class FatalProcessError(ProblemError):
    """Uncaught exception after which process invariants cannot be trusted."""


def unknown_operation(name: str) -> UnknownOperationError:
    """
    Construct an unknown-operation error.

    Returns
    -------
    UnknownOperationError
        Error wrapping a ProblemDetail payload.
    """
    return UnknownOperationError(
        problem(
            code="operation.unknown",
            title="Unknown operation",
            detail=f"Unknown operation: {name}",
            status=404,
            extras={"operation": name},
        )
    )


def unknown_method(method: str) -> UnknownOperationError:
    """
    Construct an error for a protocol method the server does not implement.

    Returns
    -------
    UnknownOperationError
        Error wrapping a ProblemDetail payload.
    """
    return UnknownOperationError(
        problem(
            code="method.unknown",
            title="Method not found",
            detail=f"Method not found: {method}",
            status=404,
            extras={"method": method},
        )
    )


def invalid_params(operation: str, issues: list[dict[str, Any]]) -> ValidationError:
    """
    Construct a parameter-validation error from validator issues.

    Returns
    -------
    ValidationError
        Error wrapping a ProblemDetail payload.
    """
    summary = "; ".join(
        f"{'.'.join(str(part) for part in issue.get('loc', ())) or '<root>'}: {issue.get('msg')}"
        for issue in issues
    )
    return ValidationError(
        problem(
            code="operation.invalid_params",
            title="Invalid parameters",
            detail=f"Invalid parameters for {operation}: {summary}",
            status=400,
            extras={"operation": operation, "issues": issues},
        )
    )


def query_failed(operation: str, exc: BaseException) -> QueryExecutionError:
    """
    Construct a query-execution error from a database exception.

    Returns
    -------
    QueryExecutionError
        Error wrapping a ProblemDetail payload.
    """
    return QueryExecutionError(
        problem(
            code="query.failed",
            title="Query execution failed",
            detail=str(exc),
            status=500,
            extras={"operation": operation, "error_type": type(exc).__name__},
        )
    )


def timed_out(operation: str, seconds: float) -> OperationTimeoutError:
    """
    Construct a timeout error for an abandoned operation.

    Returns
    -------
    OperationTimeoutError
        Error wrapping a ProblemDetail payload.
    """
    return OperationTimeoutError(
        problem(
            code="operation.timeout",
            title="Operation timed out",
            detail=f"Timeout after {seconds:g}s: {operation}",
            status=504,
            extras={"operation": operation, "timeout_seconds": seconds},
        )
    )


def internal_failure(operation: str, exc: BaseException) -> ProblemError:
    """
    Construct a generic failure for unexpected handler exceptions.

    Returns
    -------
    ProblemError
        Error wrapping a ProblemDetail payload.
    """
    return ProblemError(
        problem(
            code="operation.failed",
            title="Operation failed",
            detail=str(exc) or type(exc).__name__,
            status=500,
            extras={"operation": operation, "error_type": type(exc).__name__},
        )
    )
