# chunkflow/core/state.py

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chunkflow.core.errors import ErrorKind, TerminalStateError


class WorkflowStatus(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    PROCESSING_CHUNK = "processing_chunk"
    CHECKING_CHUNKS = "checking_chunks"
    AGGREGATING = "aggregating"
    STORING = "storing"
    ERROR = "error"
    ERROR_HANDLING = "error_handling"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    return uuid.uuid4().hex


class ErrorRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    step: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)
    retryable: bool = False
    attempt: int = 1
    chunk_index: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class Chunk(BaseModel):
    """A slice of the source document.

    ``line_start`` / ``line_end`` index the document's non-empty lines
    (end exclusive); the first ``overlap`` lines repeat the previous chunk.
    """

    model_config = ConfigDict(frozen=True)

    index: int
    text: str
    line_start: int = 0
    line_end: int = 0
    overlap: int = 0


class ChunkResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    output: str
    tokens_used: int = 0
    attempts: int = 1


def default_metrics() -> Dict[str, Any]:
    return {"tokens_used": 0, "execution_time_ms": 0, "step_count": 0}


class WorkflowState(BaseModel):
    id: str = Field(default_factory=new_run_id)
    run_id: str = Field(default_factory=new_run_id)
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    start_time: float = Field(default_factory=time.time)
    end_time: Optional[float] = None
    error_count: int = 0
    errors: List[ErrorRecord] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=default_metrics)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    domain: Dict[str, Any] = Field(default_factory=dict)
    error_summary: Optional[str] = None

    @model_validator(mode="after")
    def _sync_error_count(self) -> "WorkflowState":
        if self.error_count != len(self.errors):
            self.error_count = len(self.errors)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def last_error(self) -> Optional[ErrorRecord]:
        return self.errors[-1] if self.errors else None

    def get(self, key: str, default: Any = None) -> Any:
        return self.domain.get(key, default)


Reducer = Callable[[Any, Any], Any]


def replace_reducer(current: Any, value: Any) -> Any:
    return value


def append_reducer(current: Any, value: Any) -> List[Any]:
    merged = list(current or [])
    if isinstance(value, (list, tuple)):
        merged.extend(value)
    else:
        merged.append(value)
    return merged


def dict_merge_reducer(current: Any, value: Any) -> Dict[str, Any]:
    merged = dict(current or {})
    merged.update(value or {})
    return merged


DEFAULT_DOMAIN_REDUCERS: Dict[str, Reducer] = {
    "partial_results": append_reducer,
    "chunk_results": append_reducer,
}

DERIVED_FIELDS = {"error_count"}


def _as_error_records(value: Any) -> List[ErrorRecord]:
    items = value if isinstance(value, (list, tuple)) else [value]
    return [item if isinstance(item, ErrorRecord) else ErrorRecord.model_validate(item) for item in items]


def merge_update(
    state: WorkflowState,
    update: Optional[Mapping[str, Any]],
    domain_reducers: Optional[Mapping[str, Reducer]] = None,
) -> WorkflowState:
    """Returns a new state with ``update`` merged in; ``state`` is left untouched.

    ``errors`` append, ``metrics`` and ``metadata`` merge shallowly, other
    state fields are replaced. Keys that are not state fields land in
    ``domain`` and go through ``domain_reducers`` (replace by default).
    """
    if not update:
        return state
    if state.is_terminal:
        raise TerminalStateError(
            f"Run {state.run_id} is {state.status.value}; refusing update with keys {sorted(update)}"
        )

    reducers: Dict[str, Reducer] = dict(DEFAULT_DOMAIN_REDUCERS)
    if domain_reducers:
        reducers.update(domain_reducers)

    payload: Dict[str, Any] = {name: getattr(state, name) for name in WorkflowState.model_fields}
    errors = list(state.errors)
    metrics = dict(state.metrics)
    metadata = dict(state.metadata)
    domain = dict(state.domain)

    def merge_domain(key: str, value: Any) -> None:
        reducer = reducers.get(key, replace_reducer)
        domain[key] = reducer(domain.get(key), value)

    for key, value in update.items():
        if key == "errors":
            errors.extend(_as_error_records(value))
        elif key == "metrics":
            metrics = dict_merge_reducer(metrics, value)
        elif key == "metadata":
            metadata = dict_merge_reducer(metadata, value)
        elif key == "domain":
            for domain_key, domain_value in dict(value or {}).items():
                merge_domain(domain_key, domain_value)
        elif key in DERIVED_FIELDS:
            continue
        elif key in WorkflowState.model_fields:
            payload[key] = value
        else:
            merge_domain(key, value)

    payload.update(
        errors=errors,
        error_count=len(errors),
        metrics=metrics,
        metadata=metadata,
        domain=domain,
    )
    return WorkflowState.model_validate(payload)
