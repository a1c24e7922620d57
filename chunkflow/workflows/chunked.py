# chunkflow/workflows/chunked.py

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from chunkflow.core.config import ChunkFlowConfig, config
from chunkflow.core.state import ErrorRecord, WorkflowState, WorkflowStatus
from chunkflow.core.stores import ResultStore
from chunkflow.engine.aggregator import DEFAULT_DELIMITER, Aggregator, Combine
from chunkflow.engine.chunker import TextChunker
from chunkflow.engine.graph import END, WorkflowGraph
from chunkflow.engine.retry import RetryPolicy
from chunkflow.engine.steps import (
    AGGREGATE,
    CHECK_CHUNKS,
    INITIALIZE,
    PREPARE_CHUNKS,
    PROCESS_CHUNK,
    PROCESS_CHUNKS,
    STORE_RESULTS,
    ResultParser,
    aggregate_step,
    check_chunks_step,
    initialize_step,
    prepare_chunks_step,
    process_chunk_step,
    process_chunks_step,
    store_results_step,
)
from chunkflow.engine.tracing import TraceSink

logger = logging.getLogger(__name__)


class WorkflowResult(BaseModel):
    run_id: str
    success: bool
    status: WorkflowStatus
    output: Optional[Dict[str, Any]] = None
    error_summary: Optional[str] = None
    errors: List[ErrorRecord] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    partial_results: List[str] = Field(default_factory=list)
    chunks_completed: int = 0
    chunks_total: int = 0

    @classmethod
    def from_state(cls, state: WorkflowState) -> "WorkflowResult":
        success = state.status == WorkflowStatus.COMPLETED
        partial_results = [str(item) for item in state.get("partial_results") or []]
        return cls(
            run_id=state.run_id,
            success=success,
            status=state.status,
            output=state.get("final_result") if success else None,
            error_summary=state.error_summary,
            errors=list(state.errors),
            metrics=dict(state.metrics),
            metadata=dict(state.metadata),
            partial_results=partial_results,
            chunks_completed=int(state.get("chunks_completed") or len(partial_results)),
            chunks_total=int(state.get("chunks_total") or 0),
        )


def next_chunk_or_aggregate(state: WorkflowState) -> str:
    if int(state.get("current_chunk_index") or 0) < int(state.get("chunks_total") or 0):
        return PROCESS_CHUNK
    return AGGREGATE


def build_chunked_workflow(
    executor: Any,
    *,
    chunk_capability: str,
    aggregate_capability: str,
    concurrent: bool = True,
    store: Optional[ResultStore] = None,
    settings: Optional[ChunkFlowConfig] = None,
    max_chunk_tokens: Optional[int] = None,
    chunk_overlap_units: Optional[int] = None,
    max_concurrent: Optional[int] = None,
    max_retries: Optional[int] = None,
    timeout_s: Optional[float] = None,
    retry_policy: Optional[RetryPolicy] = None,
    delimiter: str = DEFAULT_DELIMITER,
    combine: Optional[Combine] = None,
    result_parser: Optional[ResultParser] = None,
    chunk_parameters: Optional[Dict[str, Any]] = None,
    aggregate_parameters: Optional[Dict[str, Any]] = None,
    name: str = "chunked-workflow",
) -> WorkflowGraph:
    """Builds initialize -> prepare_chunks -> chunk processing -> aggregate -> store_results.

    ``concurrent=False`` walks the chunks one by one through the
    process_chunk / check_chunks loop; otherwise a single process_chunks
    step fans them out under ``max_concurrent``.
    """
    settings = settings or config
    engine = settings.engine
    if retry_policy is None:
        overrides = {"max_retries": max_retries} if max_retries is not None else {}
        retry_policy = RetryPolicy.from_config(engine, **overrides)
    timeout_s = timeout_s if timeout_s is not None else engine.call_timeout_s

    chunker = TextChunker(
        max_chunk_tokens if max_chunk_tokens is not None else settings.chunking.max_chunk_tokens,
        chunk_overlap_units if chunk_overlap_units is not None else settings.chunking.chunk_overlap_units,
    )
    aggregator = Aggregator(
        executor,
        aggregate_capability,
        retry_policy=retry_policy,
        timeout_s=timeout_s,
        delimiter=delimiter,
        combine=combine,
    )

    steps = [initialize_step(), prepare_chunks_step(chunker)]
    routes: Dict[str, Any] = {INITIALIZE: PREPARE_CHUNKS}
    if concurrent:
        steps.append(
            process_chunks_step(
                executor,
                chunk_capability,
                retry_policy=retry_policy,
                timeout_s=timeout_s,
                max_concurrent=max_concurrent if max_concurrent is not None else engine.max_concurrent_chunks,
                parameters=chunk_parameters,
            )
        )
        routes[PREPARE_CHUNKS] = PROCESS_CHUNKS
        routes[PROCESS_CHUNKS] = AGGREGATE
    else:
        steps.append(
            process_chunk_step(
                executor,
                chunk_capability,
                retry_policy=retry_policy,
                timeout_s=timeout_s,
                parameters=chunk_parameters,
            )
        )
        steps.append(check_chunks_step())
        routes[PREPARE_CHUNKS] = PROCESS_CHUNK
        routes[PROCESS_CHUNK] = CHECK_CHUNKS
        routes[CHECK_CHUNKS] = next_chunk_or_aggregate

    steps.append(aggregate_step(aggregator, parameters=aggregate_parameters, result_parser=result_parser))
    steps.append(store_results_step(store))
    routes[AGGREGATE] = STORE_RESULTS
    routes[STORE_RESULTS] = END

    return WorkflowGraph(
        name,
        steps,
        routes,
        start=INITIALIZE,
        max_steps=engine.max_steps,
        retry_policy=retry_policy,
    )


async def run_chunked_workflow(
    document: str,
    executor: Any,
    *,
    trace_sink: Optional[TraceSink] = None,
    metadata: Optional[Dict[str, Any]] = None,
    **options: Any,
) -> WorkflowResult:
    """Runs one document through a freshly built chunked workflow.

    Expected failures never raise: they come back as a failed WorkflowResult.
    """
    graph = build_chunked_workflow(executor, **options)
    state = graph.new_state(document=document)
    if metadata:
        state = state.model_copy(update={"metadata": {**state.metadata, **metadata}})
    final_state = await graph.run(state, trace_sink)
    result = WorkflowResult.from_state(final_state)
    if not result.success:
        logger.warning(
            "Chunked workflow run %s failed after %s/%s chunks: %s",
            result.run_id,
            result.chunks_completed,
            result.chunks_total,
            result.error_summary,
        )
    return result
