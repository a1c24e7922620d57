# chunkflow/workflows/meeting_analysis.py

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from chunkflow.core.stores import ResultStore
from chunkflow.engine.aggregator import AggregationOutcome, parse_structured_output
from chunkflow.engine.tracing import TraceSink
from chunkflow.workflows.chunked import WorkflowResult, build_chunked_workflow

logger = logging.getLogger(__name__)

CHUNK_ANALYSIS = "chunk-analysis"
FINAL_ANALYSIS = "final-analysis"

SEGMENT_SEPARATOR = "\n\n--- Analysis Segment ---\n\n"
SENTIMENT_KEYS = ("overall", "positive", "negative", "neutral")
DEFAULT_MEETING_TITLE = "Untitled Meeting"


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _dedupe(items: List[Any], key_fn) -> List[Any]:
    seen: Dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        key = key_fn(item)
        if key and key not in seen:
            seen[key] = item
    return list(seen.values())


def merge_partial_analyses(partials: List[str]) -> str:
    """Combines per-segment analyses before the final synthesis.

    Parsed segments are merged: summaries concatenated in order, topics
    de-duplicated by title, action items by action and assignee, decisions
    by text, and sentiment scores averaged. Segments that do not parse are
    kept under ``additionalAnalysis``. If none parse, the raw segments are
    joined with a separator.
    """
    if len(partials) <= 1:
        return "\n\n".join(partials)

    parsed: List[Dict[str, Any]] = []
    unparsed: List[str] = []
    for text in partials:
        value = parse_structured_output(text)
        if value is None:
            unparsed.append(text)
        else:
            parsed.append(value)

    if not parsed:
        return SEGMENT_SEPARATOR.join(partials)

    def collect(field: str) -> List[Any]:
        items: List[Any] = []
        for analysis in parsed:
            value = analysis.get(field)
            if isinstance(value, list):
                items.extend(value)
        return items

    merged: Dict[str, Any] = {
        "summary": " ".join(str(a["summary"]).strip() for a in parsed if a.get("summary")).strip(),
        "topics": _dedupe(collect("topics"), lambda t: str(t.get("title") or "").lower()),
        "actionItems": _dedupe(
            collect("actionItems"),
            lambda i: f"{i.get('action')}-{i.get('assignee') or 'unassigned'}" if i.get("action") else "",
        ),
        "decisions": _dedupe(collect("decisions"), lambda d: str(d.get("decision") or "")),
        "sentimentAnalysis": {},
        "keyPoints": collect("keyPoints"),
    }

    sentiments = [a["sentimentAnalysis"] for a in parsed if isinstance(a.get("sentimentAnalysis"), dict)]
    if sentiments:
        merged["sentimentAnalysis"] = {
            key: sum(_number(s.get(key)) for s in sentiments) / len(sentiments) for key in SENTIMENT_KEYS
        }
    if unparsed:
        merged["additionalAnalysis"] = "\n\n".join(unparsed)

    logger.info(
        "Merged %s segment analyses (topics=%s action_items=%s decisions=%s unparsed=%s)",
        len(parsed),
        len(merged["topics"]),
        len(merged["actionItems"]),
        len(merged["decisions"]),
        len(unparsed),
    )
    return json.dumps(merged, ensure_ascii=False, indent=2)


class MeetingAnalysisOptions(BaseModel):
    include_topics: bool = True
    include_action_items: bool = True
    include_sentiment: bool = True


_OPTIONAL_SECTIONS = (
    ("include_topics", "topics"),
    ("include_action_items", "actionItems"),
    ("include_sentiment", "sentimentAnalysis"),
)


def analysis_result_parser(options: MeetingAnalysisOptions) -> Callable[[AggregationOutcome], Dict[str, Any]]:
    """Drops the sections the caller opted out of from a parsed analysis."""

    def parse(outcome: AggregationOutcome) -> Dict[str, Any]:
        result = dict(outcome.result)
        if outcome.parsed:
            for flag, key in _OPTIONAL_SECTIONS:
                if not getattr(options, flag):
                    result.pop(key, None)
        return result

    return parse


class MeetingAnalysisWorkflow:
    def __init__(
        self,
        executor: Any,
        *,
        store: Optional[ResultStore] = None,
        concurrent: bool = False,
        **workflow_options: Any,
    ) -> None:
        self.executor = executor
        self.store = store
        self.concurrent = concurrent
        self.workflow_options = workflow_options

    def build(self, options: MeetingAnalysisOptions, meeting: Dict[str, Any]):
        chunk_parameters = options.model_dump()
        aggregate_parameters = {
            **chunk_parameters,
            "title": meeting["title"],
            "participant_ids": meeting["participant_ids"],
        }
        return build_chunked_workflow(
            self.executor,
            chunk_capability=CHUNK_ANALYSIS,
            aggregate_capability=FINAL_ANALYSIS,
            concurrent=self.concurrent,
            store=self.store,
            combine=merge_partial_analyses,
            result_parser=analysis_result_parser(options),
            chunk_parameters=chunk_parameters,
            aggregate_parameters=aggregate_parameters,
            name="meeting-analysis",
            **self.workflow_options,
        )

    async def analyze(
        self,
        transcript: str,
        *,
        meeting_id: Optional[str] = None,
        title: Optional[str] = None,
        participant_ids: Optional[List[str]] = None,
        user_id: Optional[str] = None,
        options: Optional[MeetingAnalysisOptions] = None,
        trace_sink: Optional[TraceSink] = None,
    ) -> WorkflowResult:
        options = options or MeetingAnalysisOptions()
        meeting = {
            "meeting_id": meeting_id,
            "title": title or DEFAULT_MEETING_TITLE,
            "participant_ids": list(participant_ids or []),
            "user_id": user_id,
        }
        graph = self.build(options, meeting)
        state = graph.new_state(document=transcript)
        state = state.model_copy(update={"metadata": {**state.metadata, **meeting}})
        final_state = await graph.run(state, trace_sink)
        result = WorkflowResult.from_state(final_state)
        if not result.success:
            logger.warning("Analysis of meeting %s failed: %s", meeting_id, result.error_summary)
        return result
