# chunkflow/core/errors.py

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    EXTERNAL_CALL = "external_call_error"
    PARSE = "parse_error"
    AGGREGATION = "aggregation_error"
    GRAPH_NONTERMINATION = "graph_nontermination"
    EXECUTION = "execution_error"


class ChunkFlowError(Exception):
    """Base class for expected workflow failures.

    Each subclass maps onto one ErrorKind. ``retryable`` is the default
    classification used by RetryPolicy; ``attempt`` is stamped by the policy
    once it gives up.
    """

    kind: ErrorKind = ErrorKind.EXECUTION
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        retryable: Optional[bool] = None,
        attempt: int = 1,
        chunk_index: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.retryable = self.default_retryable if retryable is None else bool(retryable)
        self.attempt = attempt
        self.chunk_index = chunk_index
        self.details = dict(details or {})

    def to_record(self, *, step: Optional[str] = None, attempt: Optional[int] = None):
        from chunkflow.core.state import ErrorRecord

        return ErrorRecord(
            kind=self.kind,
            message=self.message,
            step=step or self.step or "",
            retryable=self.retryable,
            attempt=attempt if attempt is not None else self.attempt,
            chunk_index=self.chunk_index,
            details=self.details,
        )


class ValidationError(ChunkFlowError):
    kind = ErrorKind.VALIDATION


class ExternalCallError(ChunkFlowError):
    kind = ErrorKind.EXTERNAL_CALL
    default_retryable = True


class ParseError(ChunkFlowError):
    kind = ErrorKind.PARSE


class AggregationError(ChunkFlowError):
    kind = ErrorKind.AGGREGATION


class GraphNonterminationError(ChunkFlowError):
    kind = ErrorKind.GRAPH_NONTERMINATION


class TerminalStateError(RuntimeError):
    """Raised when something tries to change a completed or failed state."""


_ERRORS_BY_KIND = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.EXTERNAL_CALL: ExternalCallError,
    ErrorKind.PARSE: ParseError,
    ErrorKind.AGGREGATION: AggregationError,
    ErrorKind.GRAPH_NONTERMINATION: GraphNonterminationError,
    ErrorKind.EXECUTION: ChunkFlowError,
}


def error_from_record(record: Any) -> ChunkFlowError:
    """Rebuilds the exception for an ErrorRecord so it can travel through RetryPolicy."""
    cls = _ERRORS_BY_KIND.get(ErrorKind(record.kind), ChunkFlowError)
    return cls(
        record.message,
        step=record.step or None,
        retryable=record.retryable,
        attempt=record.attempt,
        chunk_index=record.chunk_index,
        details=dict(record.details or {}),
    )


def execution_error_record(exc: BaseException, *, step: str, attempt: int = 1):
    """Converts an unexpected exception into an execution_error record."""
    from chunkflow.core.state import ErrorRecord

    return ErrorRecord(
        kind=ErrorKind.EXECUTION,
        message=f"{type(exc).__name__}: {exc}",
        step=step,
        retryable=False,
        attempt=attempt,
        details={"exception_type": type(exc).__name__},
    )
