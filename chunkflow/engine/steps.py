# chunkflow/engine/steps.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from chunkflow.core.errors import ChunkFlowError, ValidationError, execution_error_record
from chunkflow.core.state import Chunk, ChunkResult, ErrorRecord, WorkflowState, WorkflowStatus, utc_now_iso
from chunkflow.core.stores import ResultStore
from chunkflow.engine.aggregator import AggregationOutcome, Aggregator
from chunkflow.engine.capability import CapabilityRequest
from chunkflow.engine.chunker import TextChunker
from chunkflow.engine.executor import StepDefinition
from chunkflow.engine.limiter import ConcurrencyLimiter
from chunkflow.engine.retry import RetryPolicy, call_capability_with_retry

logger = logging.getLogger(__name__)

INITIALIZE = "initialize"
PREPARE_CHUNKS = "prepare_chunks"
PROCESS_CHUNK = "process_chunk"
PROCESS_CHUNKS = "process_chunks"
CHECK_CHUNKS = "check_chunks"
AGGREGATE = "aggregate"
STORE_RESULTS = "store_results"

ResultParser = Callable[[AggregationOutcome], Dict[str, Any]]


def _tokens_so_far(state: WorkflowState) -> int:
    return int(state.metrics.get("tokens_used") or 0)


def _chunks(state: WorkflowState) -> List[Chunk]:
    return [item if isinstance(item, Chunk) else Chunk.model_validate(item) for item in state.get("chunks") or []]


def initialize_step() -> StepDefinition:
    def initialize(state: WorkflowState) -> Dict[str, Any]:
        document = state.get("document")
        if not isinstance(document, str) or not document.strip():
            raise ValidationError("Document is empty", step=INITIALIZE)
        return {
            "status": WorkflowStatus.READY,
            "metadata": {"initialized_at": utc_now_iso(), "document_chars": len(document)},
        }

    return StepDefinition(name=INITIALIZE, invoke=initialize)


def prepare_chunks_step(chunker: TextChunker) -> StepDefinition:
    def prepare_chunks(state: WorkflowState) -> Dict[str, Any]:
        chunks = chunker.chunk(state.get("document") or "")
        if not chunks:
            raise ValidationError("Document has no non-empty lines", step=PREPARE_CHUNKS)
        return {
            "status": WorkflowStatus.READY,
            "chunks": chunks,
            "chunks_total": len(chunks),
            "current_chunk_index": 0,
            "metadata": {"max_chunk_tokens": chunker.max_tokens, "chunk_overlap_units": chunker.overlap_units},
        }

    return StepDefinition(name=PREPARE_CHUNKS, invoke=prepare_chunks)


def _chunk_request(chunk: Chunk, total: int, capability: str, parameters: Dict[str, Any]) -> CapabilityRequest:
    return CapabilityRequest(
        input=chunk.text,
        capability=capability,
        parameters=dict(parameters),
        context={"chunk_index": chunk.index, "chunk_number": chunk.index + 1, "chunks_total": total},
    )


def process_chunk_step(
    executor: Any,
    capability: str,
    *,
    retry_policy: RetryPolicy,
    timeout_s: Optional[float],
    parameters: Optional[Dict[str, Any]] = None,
) -> StepDefinition:
    """Sequential variant: handles the chunk at ``current_chunk_index``."""
    parameters = dict(parameters or {})

    async def process_chunk(state: WorkflowState) -> Dict[str, Any]:
        chunks = _chunks(state)
        index = int(state.get("current_chunk_index") or 0)
        if index >= len(chunks):
            raise ValidationError(f"No chunk at index {index}", step=PROCESS_CHUNK, chunk_index=index)
        chunk = chunks[index]
        logger.info("Processing chunk %s/%s (%s chars)", index + 1, len(chunks), len(chunk.text))

        try:
            response, attempts = await call_capability_with_retry(
                executor,
                _chunk_request(chunk, len(chunks), capability, parameters),
                policy=retry_policy,
                timeout_s=timeout_s,
                label=f"Chunk {chunk.index}",
            )
        except ChunkFlowError as exc:
            exc.chunk_index = chunk.index
            raise

        result = ChunkResult(index=chunk.index, output=response.output, tokens_used=response.tokens_used, attempts=attempts)
        return {
            "chunk_results": [result],
            "partial_results": [result.output],
            "chunks_completed": len(state.get("chunk_results") or []) + 1,
            "metrics": {"tokens_used": _tokens_so_far(state) + result.tokens_used},
        }

    return StepDefinition(name=PROCESS_CHUNK, invoke=process_chunk, status=WorkflowStatus.PROCESSING_CHUNK)


def check_chunks_step() -> StepDefinition:
    def check_chunks(state: WorkflowState) -> Dict[str, Any]:
        return {"current_chunk_index": int(state.get("current_chunk_index") or 0) + 1}

    return StepDefinition(name=CHECK_CHUNKS, invoke=check_chunks, status=WorkflowStatus.CHECKING_CHUNKS)


def process_chunks_step(
    executor: Any,
    capability: str,
    *,
    retry_policy: RetryPolicy,
    timeout_s: Optional[float],
    max_concurrent: int,
    parameters: Optional[Dict[str, Any]] = None,
) -> StepDefinition:
    """Concurrent variant: fans every chunk out through a ConcurrencyLimiter.

    The first chunk that fails for good sets a shared cancel flag: tasks
    that have not reached the capability yet never call it, and in-flight
    ones are cancelled. Finished chunks are still reported, in document order.
    """
    parameters = dict(parameters or {})

    async def process_chunks(state: WorkflowState) -> Dict[str, Any]:
        chunks = _chunks(state)
        limiter = ConcurrencyLimiter(max_concurrent)
        cancel = asyncio.Event()
        lock = asyncio.Lock()
        results: Dict[int, ChunkResult] = {}
        failures: List[ErrorRecord] = []
        invoked: List[int] = []

        async def run_chunk(chunk: Chunk) -> None:
            if cancel.is_set():
                return
            async with limiter.slot():
                if cancel.is_set():
                    return
                invoked.append(chunk.index)
                try:
                    response, attempts = await call_capability_with_retry(
                        executor,
                        _chunk_request(chunk, len(chunks), capability, parameters),
                        policy=retry_policy,
                        timeout_s=timeout_s,
                        label=f"Chunk {chunk.index}",
                    )
                except ChunkFlowError as exc:
                    exc.chunk_index = chunk.index
                    record = exc.to_record(step=PROCESS_CHUNKS)
                except Exception as exc:
                    logger.error("Chunk %s raised unexpectedly", chunk.index, exc_info=True)
                    record = execution_error_record(exc, step=PROCESS_CHUNKS).model_copy(
                        update={"chunk_index": chunk.index}
                    )
                else:
                    async with lock:
                        results[chunk.index] = ChunkResult(
                            index=chunk.index,
                            output=response.output,
                            tokens_used=response.tokens_used,
                            attempts=attempts,
                        )
                    return
                async with lock:
                    failures.append(record)
                if not cancel.is_set():
                    logger.warning("Chunk %s failed; cancelling remaining chunks", chunk.index)
                cancel.set()

        tasks = [asyncio.create_task(run_chunk(chunk)) for chunk in chunks]
        pending = set(tasks)
        try:
            while pending:
                _, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if cancel.is_set() and pending:
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    pending = set()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        ordered = [results[index] for index in sorted(results)]
        logger.info(
            "Processed %s/%s chunks (peak concurrency %s, failures %s)",
            len(ordered),
            len(chunks),
            limiter.peak_active,
            len(failures),
        )
        update: Dict[str, Any] = {
            "chunk_results": ordered,
            "partial_results": [result.output for result in ordered],
            "chunks_completed": len(ordered),
            "current_chunk_index": len(chunks),
            "metrics": {"tokens_used": _tokens_so_far(state) + sum(result.tokens_used for result in ordered)},
            "metadata": {"peak_concurrency": limiter.peak_active, "chunks_invoked": len(invoked)},
        }
        if failures:
            update["errors"] = failures
        return update

    return StepDefinition(name=PROCESS_CHUNKS, invoke=process_chunks, status=WorkflowStatus.PROCESSING_CHUNK)


def aggregate_step(
    aggregator: Aggregator,
    *,
    parameters: Optional[Dict[str, Any]] = None,
    result_parser: Optional[ResultParser] = None,
) -> StepDefinition:
    async def aggregate(state: WorkflowState) -> Dict[str, Any]:
        outcome = await aggregator.aggregate(
            state.get("chunk_results") or [],
            parameters=parameters,
            context={"run_id": state.run_id},
        )
        final_result = result_parser(outcome) if result_parser else outcome.result
        return {
            "final_result": final_result,
            "aggregation_input": outcome.input_text,
            "aggregation_raw": outcome.raw_text,
            "metrics": {"tokens_used": _tokens_so_far(state) + outcome.tokens_used},
            "metadata": {"aggregation_parsed": outcome.parsed, "aggregation_attempts": outcome.attempts},
        }

    return StepDefinition(name=AGGREGATE, invoke=aggregate, status=WorkflowStatus.AGGREGATING)


def store_results_step(store: Optional[ResultStore] = None) -> StepDefinition:
    def store_results(state: WorkflowState) -> Dict[str, Any]:
        if store is None:
            return {"metadata": {"stored": False}}
        store.set(
            state.run_id,
            {
                "run_id": state.run_id,
                "final_result": state.get("final_result"),
                "partial_results": state.get("partial_results") or [],
                "chunks_total": state.get("chunks_total") or 0,
                "metrics": state.metrics,
                "metadata": state.metadata,
                "stored_at": utc_now_iso(),
            },
        )
        return {"metadata": {"stored": True, "stored_at": utc_now_iso()}}

    return StepDefinition(name=STORE_RESULTS, invoke=store_results, status=WorkflowStatus.STORING)
