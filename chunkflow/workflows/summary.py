from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from chunkflow.core.state import WorkflowStatus
from chunkflow.core.stores import ResultStore
from chunkflow.engine.aggregator import RAW_FALLBACK_KEY, AggregationOutcome
from chunkflow.engine.chunker import estimate_tokens
from chunkflow.engine.tracing import TraceSink
from chunkflow.workflows.chunked import WorkflowResult, build_chunked_workflow

logger = logging.getLogger(__name__)

SUMMARIZE_CHUNK = "summarize-chunk"
GENERATE_FINAL_SUMMARY = "generate-final-summary"


class SummaryOptions(BaseModel):
    include_tags: bool = True
    include_keypoints: bool = True
    max_summary_length: int = 500


class SummaryResult(BaseModel):
    run_id: str
    document_id: Optional[str] = None
    user_id: Optional[str] = None
    summary: str
    keypoints: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    status: WorkflowStatus
    success: bool
    error_summary: Optional[str] = None
    chunks_completed: int = 0
    chunks_total: int = 0
    metrics: Dict[str, Any] = Field(default_factory=dict)


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if str(item).strip()]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def normalize_summary(outcome: AggregationOutcome) -> Dict[str, Any]:
    """Shapes the synthesis result into summary / keypoints / tags.

    Unparsable output becomes the summary itself; the raw text is kept under
    ``rawAnalysis`` as well.
    """
    result = outcome.result
    if not outcome.parsed:
        return {
            "summary": outcome.raw_text.strip(),
            "keypoints": [],
            "tags": [],
            RAW_FALLBACK_KEY: result.get(RAW_FALLBACK_KEY, outcome.raw_text),
        }
    summary = result.get("summary")
    return {
        "summary": str(summary).strip() if summary else outcome.raw_text.strip(),
        "keypoints": _string_list(result.get("keypoints") or result.get("keyPoints")),
        "tags": _string_list(result.get("tags")),
    }


class SummaryWorkflow:
    def __init__(
        self,
        executor: Any,
        *,
        store: Optional[ResultStore] = None,
        concurrent: bool = True,
        **workflow_options: Any,
    ) -> None:
        self.executor = executor
        self.store = store
        self.concurrent = concurrent
        self.workflow_options = workflow_options

    def build(self, options: SummaryOptions):
        parameters = options.model_dump()
        return build_chunked_workflow(
            self.executor,
            chunk_capability=SUMMARIZE_CHUNK,
            aggregate_capability=GENERATE_FINAL_SUMMARY,
            concurrent=self.concurrent,
            store=self.store,
            result_parser=normalize_summary,
            chunk_parameters=parameters,
            aggregate_parameters=parameters,
            name="summary-generation",
            **self.workflow_options,
        )

    async def summarize(
        self,
        document: str,
        *,
        document_id: Optional[str] = None,
        user_id: Optional[str] = None,
        options: Optional[SummaryOptions] = None,
        trace_sink: Optional[TraceSink] = None,
    ) -> SummaryResult:
        options = options or SummaryOptions()
        graph = self.build(options)
        state = graph.new_state(document=document)
        state = state.model_copy(
            update={"metadata": {**state.metadata, "document_id": document_id, "user_id": user_id}}
        )
        final_state = await graph.run(state, trace_sink)
        result = WorkflowResult.from_state(final_state)

        metrics = {
            "execution_time_ms": result.metrics.get("execution_time_ms", 0),
            "tokens_used": result.metrics.get("tokens_used", 0),
            "content_length": len(document or ""),
            "content_tokens": estimate_tokens(document or ""),
        }
        if not result.success:
            logger.warning("Summary for document %s failed: %s", document_id, result.error_summary)
            return SummaryResult(
                run_id=result.run_id,
                document_id=document_id,
                user_id=user_id,
                summary=f"Error: {result.error_summary}",
                status=result.status,
                success=False,
                error_summary=result.error_summary,
                chunks_completed=result.chunks_completed,
                chunks_total=result.chunks_total,
                metrics=metrics,
            )

        output = result.output or {}
        return SummaryResult(
            run_id=result.run_id,
            document_id=document_id,
            user_id=user_id,
            summary=output.get("summary", ""),
            keypoints=output.get("keypoints", []) if options.include_keypoints else [],
            tags=output.get("tags", []) if options.include_tags else [],
            status=result.status,
            success=True,
            chunks_completed=result.chunks_completed,
            chunks_total=result.chunks_total,
            metrics=metrics,
        )
