from __future__ import annotations

import asyncio
import logging

import pytest

from chunkflow.core.errors import ErrorKind, TerminalStateError
from chunkflow.core.state import ErrorRecord, WorkflowState, WorkflowStatus
from chunkflow.engine.executor import StepDefinition
from chunkflow.engine.graph import (
    END,
    ERROR,
    WorkflowGraph,
    complete_state,
    handle_error_state,
    linear_route,
)


def _trail_step(name: str) -> StepDefinition:
    def step(state):
        return {"trail": list(state.get("trail") or []) + [name]}

    return StepDefinition(name, step)


class RecordingSink:
    def __init__(self):
        self.events = []

    def on_run_start(self, run_id, meta):
        self.events.append(("start", run_id))

    def on_transition(self, step_name, before, after):
        self.events.append(("transition", step_name, after.status))

    def on_run_end(self, run_id, final_state, meta):
        self.events.append(("end", run_id, final_state.status))


class BrokenSink:
    def on_run_start(self, run_id, meta):
        raise RuntimeError("sink down")

    def on_transition(self, step_name, before, after):
        raise RuntimeError("sink down")

    def on_run_end(self, run_id, final_state, meta):
        raise RuntimeError("sink down")


def test_linear_pipeline_completes():
    names = ["a", "b", "c"]
    graph = WorkflowGraph("linear", [_trail_step(n) for n in names], linear_route(names))

    final = asyncio.run(graph.run())

    assert final.status == WorkflowStatus.COMPLETED
    assert final.get("trail") == ["a", "b", "c"]
    assert final.metrics["step_count"] == 3
    assert final.end_time is not None
    assert final.metrics["execution_time_ms"] >= 0
    assert "completed_at" in final.metadata


def test_bounded_loop_routes_back_until_done():
    def inc(state):
        return {"n": int(state.get("n") or 0) + 1}

    graph = WorkflowGraph(
        "loop",
        [StepDefinition("inc", inc)],
        {"inc": lambda state: "inc" if state.get("n") < 5 else END},
    )

    final = asyncio.run(graph.run())
    assert final.status == WorkflowStatus.COMPLETED
    assert final.get("n") == 5
    assert final.metrics["step_count"] == 5


def test_iteration_cap_fails_with_graph_nontermination():
    graph = WorkflowGraph("spin", [StepDefinition("spin", lambda state: None)], {"spin": "spin"}, max_steps=10)

    final = asyncio.run(graph.run())

    assert final.status == WorkflowStatus.FAILED
    assert final.metrics["step_count"] == 10
    assert final.errors[-1].kind == ErrorKind.GRAPH_NONTERMINATION
    assert final.errors[-1].retryable is False
    assert "graph_nontermination" in final.error_summary


def test_raising_step_forces_error_branch():
    calls = []

    def boom(state):
        raise RuntimeError("boom")

    def after(state):
        calls.append("after")
        return None

    graph = WorkflowGraph(
        "raise",
        [StepDefinition("boom", boom), StepDefinition("after", after)],
        {"boom": "after", "after": END},
    )

    final = asyncio.run(graph.run())

    assert calls == []
    assert final.status == WorkflowStatus.FAILED
    assert final.error_count == 1
    assert final.errors[0].kind == ErrorKind.EXECUTION
    assert final.errors[0].step == "boom"
    assert "boom" in final.error_summary
    assert final.end_time is not None


def test_error_handler_keeps_every_record_and_summarizes_last():
    def two_errors(state):
        return {
            "errors": [
                ErrorRecord(kind=ErrorKind.PARSE, message="first"),
                ErrorRecord(kind=ErrorKind.AGGREGATION, message="second"),
            ]
        }

    graph = WorkflowGraph("errs", [StepDefinition("two", two_errors)], {"two": END})
    final = asyncio.run(graph.run())

    assert final.status == WorkflowStatus.FAILED
    assert [e.message for e in final.errors] == ["first", "second"]
    assert final.error_summary.startswith("aggregation_error in step 'two'")


def test_route_to_error_without_record_adds_generic_error():
    graph = WorkflowGraph("explicit", [StepDefinition("only", lambda state: None)], {"only": ERROR})
    final = asyncio.run(graph.run())

    assert final.status == WorkflowStatus.FAILED
    assert final.error_count == 1
    assert final.errors[0].kind == ErrorKind.EXECUTION


def test_raising_route_is_recorded_as_execution_error():
    def bad_route(state):
        raise KeyError("no such key")

    graph = WorkflowGraph("route", [StepDefinition("only", lambda state: None)], bad_route)
    final = asyncio.run(graph.run())

    assert final.status == WorkflowStatus.FAILED
    assert final.errors[0].kind == ErrorKind.EXECUTION
    assert "KeyError" in final.errors[0].message


def test_unknown_route_target_is_recorded_as_execution_error():
    graph = WorkflowGraph("route", [StepDefinition("only", lambda state: None)], {"only": lambda state: "nowhere"})
    final = asyncio.run(graph.run())

    assert final.status == WorkflowStatus.FAILED
    assert "unknown step" in final.errors[0].message


def test_step_cannot_set_terminal_status():
    graph = WorkflowGraph(
        "sneaky",
        [StepDefinition("sneaky", lambda state: {"status": "completed"})],
        {"sneaky": END},
    )
    final = asyncio.run(graph.run())

    assert final.status == WorkflowStatus.FAILED
    assert "terminal status" in final.errors[0].message


def test_step_status_hint_is_visible_to_the_step():
    seen = []

    def step(state):
        seen.append(state.status)
        return None

    graph = WorkflowGraph(
        "hint",
        [StepDefinition("work", step, status=WorkflowStatus.PROCESSING_CHUNK)],
        {"work": END},
    )
    asyncio.run(graph.run())
    assert seen == [WorkflowStatus.PROCESSING_CHUNK]


def test_terminal_steps_are_idempotent():
    completed = complete_state(WorkflowState())
    assert complete_state(completed) is completed
    assert handle_error_state(completed) is completed

    failed = handle_error_state(WorkflowState())
    assert failed.status == WorkflowStatus.FAILED
    assert handle_error_state(failed) is failed
    assert complete_state(failed) is failed


def test_trace_sink_sees_run_start_transitions_and_end():
    sink = RecordingSink()
    graph = WorkflowGraph("traced", [_trail_step("a"), _trail_step("b")], linear_route(["a", "b"]))

    final = asyncio.run(graph.run(trace_sink=sink))

    assert sink.events[0] == ("start", final.run_id)
    assert [e[1] for e in sink.events if e[0] == "transition"] == ["a", "b", "complete"]
    assert sink.events[-1] == ("end", final.run_id, WorkflowStatus.COMPLETED)


def test_trace_sink_failures_never_change_the_outcome(caplog):
    graph = WorkflowGraph("traced", [_trail_step("a")], linear_route(["a"]))

    with caplog.at_level(logging.WARNING):
        final = asyncio.run(graph.run(trace_sink=BrokenSink()))

    assert final.status == WorkflowStatus.COMPLETED
    assert final.errors == []
    assert "Trace sink BrokenSink.on_transition failed" in caplog.text


class MeddlingSink(RecordingSink):
    def on_transition(self, step_name, before, after):
        super().on_transition(step_name, before, after)
        after.domain.setdefault("trail", []).append("sink")
        after.metadata["last_step"] = "meddled"

    def on_run_end(self, run_id, final_state, meta):
        super().on_run_end(run_id, final_state, meta)
        final_state.metrics["step_count"] = -1


def test_trace_sink_mutations_never_reach_the_run():
    graph = WorkflowGraph("traced", [_trail_step("a"), _trail_step("b")], linear_route(["a", "b"]))

    final = asyncio.run(graph.run(trace_sink=MeddlingSink()))

    assert final.status == WorkflowStatus.COMPLETED
    assert final.get("trail") == ["a", "b"]
    assert final.metadata["last_step"] == "b"
    assert final.metrics["step_count"] == 2


def test_graph_runs_are_independent_when_concurrent():
    async def slow_echo(state):
        await asyncio.sleep(0.01)
        return {"echo": state.get("document")}

    graph = WorkflowGraph("echo", [StepDefinition("echo", slow_echo)], {"echo": END})

    async def scenario():
        return await asyncio.gather(graph.run(document="one"), graph.run(document="two"))

    first, second = asyncio.run(scenario())
    assert first.get("echo") == "one"
    assert second.get("echo") == "two"
    assert first.run_id != second.run_id


def test_run_does_not_mutate_initial_state():
    graph = WorkflowGraph("linear", [_trail_step("a")], linear_route(["a"]))
    initial = graph.new_state(document="doc")

    final = asyncio.run(graph.run(initial))

    assert initial.status == WorkflowStatus.INITIALIZING
    assert initial.get("trail") is None
    assert final.get("trail") == ["a"]


def test_run_rejects_terminal_initial_state():
    graph = WorkflowGraph("linear", [_trail_step("a")], linear_route(["a"]))
    with pytest.raises(TerminalStateError):
        asyncio.run(graph.run(complete_state(WorkflowState())))


def test_graph_validates_its_definition():
    with pytest.raises(ValueError):
        WorkflowGraph("dup", [_trail_step("a"), _trail_step("a")], linear_route(["a"]))
    with pytest.raises(ValueError):
        WorkflowGraph("reserved", [_trail_step("complete")], linear_route(["complete"]))
    with pytest.raises(ValueError):
        WorkflowGraph("missing", [_trail_step("a")], {"b": END})
    with pytest.raises(ValueError):
        WorkflowGraph("start", [_trail_step("a")], linear_route(["a"]), start="zzz")
