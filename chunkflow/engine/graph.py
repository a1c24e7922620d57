# chunkflow/engine/graph.py

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from chunkflow.core.config import config
from chunkflow.core.errors import ErrorKind, GraphNonterminationError, TerminalStateError, execution_error_record
from chunkflow.core.state import (
    TERMINAL_STATUSES,
    ErrorRecord,
    Reducer,
    WorkflowState,
    WorkflowStatus,
    merge_update,
    utc_now_iso,
)
from chunkflow.engine.executor import StepDefinition, StepExecutor
from chunkflow.engine.retry import RetryPolicy
from chunkflow.engine.tracing import NoopTraceSink, TraceSink

logger = logging.getLogger(__name__)

END = "__end__"
ERROR = "__error__"
SENTINELS = (END, ERROR)

COMPLETE_STEP = "complete"
ERROR_HANDLER_STEP = "error_handler"

RouteFn = Callable[[WorkflowState], str]
Routes = Union[RouteFn, Mapping[str, Union[str, RouteFn]]]


def linear_route(order: Sequence[str]) -> RouteFn:
    """Routes each step in ``order`` to the next one, and the last one to END."""
    following = {name: (order[i + 1] if i + 1 < len(order) else END) for i, name in enumerate(order)}

    def route(state: WorkflowState) -> str:
        return following.get(str(state.metadata.get("last_step") or ""), ERROR)

    return route


def format_error_summary(state: WorkflowState) -> str:
    last = state.last_error
    if last is None:
        return "Workflow failed without an error record"
    where = f" in step '{last.step}'" if last.step else ""
    chunk = f" (chunk {last.chunk_index})" if last.chunk_index is not None else ""
    attempts = f" after {last.attempt} attempts" if last.attempt > 1 else ""
    return f"{last.kind.value}{where}{chunk}{attempts}: {last.message}"


def _elapsed_ms(state: WorkflowState, end_time: float) -> int:
    return max(0, int((end_time - state.start_time) * 1000))


def complete_state(state: WorkflowState) -> WorkflowState:
    """Marks the run completed. A terminal state is returned unchanged."""
    if state.is_terminal:
        return state
    end_time = time.time()
    return merge_update(
        state,
        {
            "status": WorkflowStatus.COMPLETED,
            "end_time": end_time,
            "metrics": {"execution_time_ms": _elapsed_ms(state, end_time)},
            "metadata": {"completed_at": utc_now_iso()},
        },
    )


def handle_error_state(state: WorkflowState) -> WorkflowState:
    """Summarizes the latest error and marks the run failed; keeps every record."""
    if state.is_terminal:
        return state
    update: Dict[str, Any] = {"status": WorkflowStatus.ERROR_HANDLING}
    if not state.errors:
        update["errors"] = [
            ErrorRecord(
                kind=ErrorKind.EXECUTION,
                message="Workflow routed to the error branch without an error record",
                step=ERROR_HANDLER_STEP,
            )
        ]
    handling = merge_update(state, update)
    end_time = time.time()
    return merge_update(
        handling,
        {
            "status": WorkflowStatus.FAILED,
            "end_time": end_time,
            "error_summary": format_error_summary(handling),
            "metrics": {"execution_time_ms": _elapsed_ms(handling, end_time)},
            "metadata": {"failed_at": utc_now_iso()},
        },
    )


class WorkflowGraph:
    """A closed set of named steps plus routing, with a bounded run loop.

    The graph keeps no per-run state, so one instance can serve any number
    of concurrent ``run`` calls.
    """

    def __init__(
        self,
        name: str,
        steps: Iterable[StepDefinition],
        route: Routes,
        *,
        start: Optional[str] = None,
        max_steps: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        domain_reducers: Optional[Mapping[str, Reducer]] = None,
    ) -> None:
        self.name = name
        self.steps: Dict[str, StepDefinition] = {}
        for step in steps:
            if step.name in SENTINELS or step.name in (COMPLETE_STEP, ERROR_HANDLER_STEP):
                raise ValueError(f"step name '{step.name}' is reserved")
            if step.name in self.steps:
                raise ValueError(f"duplicate step name '{step.name}'")
            self.steps[step.name] = step
        if not self.steps:
            raise ValueError("graph needs at least one step")

        self.start = start or next(iter(self.steps))
        if self.start not in self.steps:
            raise ValueError(f"start step '{self.start}' is not defined")

        if isinstance(route, Mapping):
            unknown = [key for key in route if key not in self.steps]
            if unknown:
                raise ValueError(f"routes reference undefined steps: {unknown}")
        elif not callable(route):
            raise ValueError("route must be a callable or a mapping of step name to route")
        self.route = route

        self.max_steps = max(1, max_steps if max_steps is not None else config.engine.max_steps)
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.domain_reducers: Dict[str, Reducer] = dict(domain_reducers or {})

    def new_state(self, **domain: Any) -> WorkflowState:
        return WorkflowState(domain=dict(domain), metadata={"graph": self.name})

    def _next_step(self, state: WorkflowState, step_name: str) -> str:
        route = self.route
        if isinstance(route, Mapping):
            target = route.get(step_name)
            if target is None:
                raise LookupError(f"no route defined after step '{step_name}'")
            if isinstance(target, str):
                return target
            return target(state)
        return route(state)

    def _merge(self, state: WorkflowState, update: Dict[str, Any], step_name: str) -> WorkflowState:
        status = update.get("status")
        try:
            if status is not None and WorkflowStatus(status) in TERMINAL_STATUSES:
                raise TerminalStateError(f"step '{step_name}' may not set terminal status '{status}'; route to END or ERROR")
            return merge_update(state, update, self.domain_reducers)
        except (TerminalStateError, ValueError, TypeError) as exc:
            logger.error("Graph '%s' could not merge update from step '%s': %s", self.name, step_name, exc)
            return merge_update(
                state,
                {
                    "status": WorkflowStatus.ERROR,
                    "errors": [*(update.get("errors") or []), execution_error_record(exc, step=step_name)],
                    "metrics": update.get("metrics") or {},
                    "metadata": update.get("metadata") or {},
                },
            )

    def _notify(self, sink: Any, method: str, *args: Any) -> None:
        # Sinks get copies; whatever they do to them never reaches the run.
        args = tuple(arg.model_copy(deep=True) if isinstance(arg, WorkflowState) else arg for arg in args)
        try:
            getattr(sink, method)(*args)
        except Exception as exc:
            logger.warning("Trace sink %s.%s failed: %s", type(sink).__name__, method, exc)

    def _prepare_state(self, initial_state: Optional[WorkflowState], domain: Dict[str, Any]) -> WorkflowState:
        if initial_state is None:
            return self.new_state(**domain)
        if initial_state.is_terminal:
            raise TerminalStateError(f"Run {initial_state.run_id} is already {initial_state.status.value}")
        state = initial_state.model_copy(deep=True)
        if domain:
            state = merge_update(state, {"domain": domain}, self.domain_reducers)
        return state

    async def run(
        self,
        initial_state: Optional[WorkflowState] = None,
        trace_sink: Optional[TraceSink] = None,
        **domain: Any,
    ) -> WorkflowState:
        sink = trace_sink if trace_sink is not None else NoopTraceSink()
        state = self._prepare_state(initial_state, domain)
        executor = StepExecutor(self.retry_policy)

        logger.info("Graph '%s' run %s started", self.name, state.run_id)
        self._notify(sink, "on_run_start", state.run_id, {"graph": self.name, "start": self.start})

        current = self.start
        steps_taken = 0
        while current not in SENTINELS:
            if steps_taken >= self.max_steps:
                error = GraphNonterminationError(
                    f"Graph '{self.name}' exceeded {self.max_steps} steps without terminating",
                    step=current,
                    details={"max_steps": self.max_steps},
                )
                logger.error("%s (next step '%s')", error.message, current)
                state = merge_update(state, {"status": WorkflowStatus.ERROR, "errors": [error.to_record()]})
                current = ERROR
                break

            step = self.steps[current]
            before = state
            if step.status is not None and state.status != step.status:
                state = merge_update(state, {"status": step.status})

            outcome = await executor.invoke(step, state)
            steps_taken += 1

            update = dict(outcome.update)
            update["metrics"] = {**dict(update.get("metrics") or {}), "step_count": steps_taken}
            update["metadata"] = {**dict(update.get("metadata") or {}), "last_step": step.name}
            if outcome.failed:
                update["errors"] = outcome.errors
                update["status"] = WorkflowStatus.ERROR
            state = self._merge(state, update, step.name)
            self._notify(sink, "on_transition", step.name, before, state)

            if state.status == WorkflowStatus.ERROR:
                current = ERROR
                continue

            current, state = self._choose_next(state, step.name)

        before = state
        if current == END:
            state = complete_state(state)
            self._notify(sink, "on_transition", COMPLETE_STEP, before, state)
        else:
            state = handle_error_state(state)
            self._notify(sink, "on_transition", ERROR_HANDLER_STEP, before, state)

        logger.info(
            "Graph '%s' run %s finished (status=%s steps=%s errors=%s)",
            self.name,
            state.run_id,
            state.status.value,
            steps_taken,
            state.error_count,
        )
        self._notify(sink, "on_run_end", state.run_id, state, {"graph": self.name, "steps": steps_taken})
        return state

    def _choose_next(self, state: WorkflowState, step_name: str) -> Tuple[str, WorkflowState]:
        try:
            target = self._next_step(state, step_name)
            if not isinstance(target, str) or (target not in SENTINELS and target not in self.steps):
                raise LookupError(f"route after step '{step_name}' returned unknown step {target!r}")
        except Exception as exc:
            logger.error("Graph '%s' routing after step '%s' failed: %s", self.name, step_name, exc)
            record = execution_error_record(exc, step=step_name)
            return ERROR, merge_update(state, {"status": WorkflowStatus.ERROR, "errors": [record]})
        return target, state
