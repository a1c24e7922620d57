from __future__ import annotations

import copy
import threading
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel


def sanitize_jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, BaseModel):
        return sanitize_jsonable(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): sanitize_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_jsonable(item) for item in value]
    return str(value)


def prepare_result_for_storage(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {str(key): sanitize_jsonable(value) for key, value in payload.items()}


class ResultStore(Protocol):
    def set(self, run_id: str, payload: Dict[str, Any]) -> None: ...

    def get(self, run_id: str) -> Optional[Dict[str, Any]]: ...


class InMemoryResultStore:
    def __init__(self) -> None:
        self._results: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def set(self, run_id: str, payload: Dict[str, Any]) -> None:
        stored = prepare_result_for_storage(payload)
        with self._lock:
            self._results[run_id] = copy.deepcopy(stored)

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            payload = self._results.get(run_id)
            return copy.deepcopy(payload) if payload is not None else None

    def list(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {run_id: copy.deepcopy(payload) for run_id, payload in self._results.items()}
