# chunkflow/engine/executor.py

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from chunkflow.core.errors import ChunkFlowError, execution_error_record
from chunkflow.core.state import ErrorRecord, WorkflowState, WorkflowStatus
from chunkflow.engine.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

StepFn = Callable[[WorkflowState], Any]


@dataclass(frozen=True)
class StepDefinition:
    name: str
    invoke: StepFn
    retryable: bool = False
    status: Optional[WorkflowStatus] = None


@dataclass
class StepOutcome:
    update: Dict[str, Any] = field(default_factory=dict)
    errors: List[ErrorRecord] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)


def _stamp_step(record: ErrorRecord, step: str) -> ErrorRecord:
    if record.step:
        return record
    return record.model_copy(update={"step": step})


class StepExecutor:
    """Runs one step against a private copy of the state.

    Steps may be sync or async and may return a partial update dict, an
    ErrorRecord or None. Whatever a step raises ends up as an ErrorRecord.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.retry_policy = retry_policy

    def _resolve(self, step: StepDefinition) -> StepDefinition:
        if step.retryable and self.retry_policy is not None:
            return with_retry(step, policy=self.retry_policy)
        return step

    async def invoke(self, step: StepDefinition, state: WorkflowState) -> StepOutcome:
        target = self._resolve(step)
        snapshot = state.model_copy(deep=True)
        try:
            result = target.invoke(snapshot)
            if inspect.isawaitable(result):
                result = await result
        except ChunkFlowError as exc:
            logger.warning("Step '%s' failed (kind=%s): %s", step.name, exc.kind.value, exc.message)
            return StepOutcome(errors=[exc.to_record(step=exc.step or step.name)])
        except Exception as exc:
            logger.error("Step '%s' raised unexpectedly", step.name, exc_info=True)
            return StepOutcome(errors=[execution_error_record(exc, step=step.name)])

        if result is None:
            return StepOutcome()
        if isinstance(result, ErrorRecord):
            return StepOutcome(errors=[_stamp_step(result, step.name)])
        if not isinstance(result, dict):
            exc = TypeError(f"step returned {type(result).__name__}, expected dict, ErrorRecord or None")
            return StepOutcome(errors=[execution_error_record(exc, step=step.name)])

        update = dict(result)
        raw_errors = update.pop("errors", None) or []
        if not isinstance(raw_errors, (list, tuple)):
            raw_errors = [raw_errors]
        try:
            errors = [
                _stamp_step(item if isinstance(item, ErrorRecord) else ErrorRecord.model_validate(item), step.name)
                for item in raw_errors
            ]
        except (ValueError, TypeError) as exc:
            logger.error("Step '%s' returned malformed error records: %s", step.name, exc)
            return StepOutcome(errors=[execution_error_record(exc, step=step.name)])
        return StepOutcome(update=update, errors=errors)
