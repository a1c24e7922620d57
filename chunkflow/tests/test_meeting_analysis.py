from __future__ import annotations

import asyncio
import json

import pytest

from chunkflow.core.state import WorkflowStatus
from chunkflow.engine.retry import RetryPolicy
from chunkflow.workflows.meeting_analysis import (
    SEGMENT_SEPARATOR,
    MeetingAnalysisOptions,
    MeetingAnalysisWorkflow,
    merge_partial_analyses,
)


def _analysis(summary, topics=(), actions=(), decisions=(), sentiment=None):
    payload = {
        "summary": summary,
        "topics": [{"title": t, "description": ""} for t in topics],
        "actionItems": [{"action": a, "assignee": who} for a, who in actions],
        "decisions": [{"decision": d} for d in decisions],
    }
    if sentiment is not None:
        payload["sentimentAnalysis"] = sentiment
    return json.dumps(payload)


def test_merge_partial_analyses_dedupes_and_averages():
    partials = [
        _analysis(
            "Kickoff.",
            topics=["Budget", "Hiring"],
            actions=[("Send deck", "ana")],
            decisions=["Ship in May"],
            sentiment={"overall": 0.4, "positive": 0.6, "negative": 0.2, "neutral": 0.2},
        ),
        "```json\n"
        + _analysis(
            "Wrap-up.",
            topics=["budget", "Launch"],
            actions=[("Send deck", "ana"), ("Book venue", None)],
            decisions=["Ship in May", "Freeze scope"],
            sentiment={"overall": 0.8, "positive": 0.8, "negative": 0.0, "neutral": 0.2},
        )
        + "\n```",
        "free text notes about the meeting",
    ]

    merged = json.loads(merge_partial_analyses(partials))

    assert merged["summary"] == "Kickoff. Wrap-up."
    assert [t["title"] for t in merged["topics"]] == ["Budget", "Hiring", "Launch"]
    assert [(i["action"], i["assignee"]) for i in merged["actionItems"]] == [("Send deck", "ana"), ("Book venue", None)]
    assert [d["decision"] for d in merged["decisions"]] == ["Ship in May", "Freeze scope"]
    assert merged["sentimentAnalysis"]["overall"] == pytest.approx(0.6)
    assert merged["sentimentAnalysis"]["negative"] == pytest.approx(0.1)
    assert merged["additionalAnalysis"] == "free text notes about the meeting"


def test_merge_partial_analyses_joins_unparsable_segments():
    assert merge_partial_analyses(["one", "two"]) == "one" + SEGMENT_SEPARATOR + "two"


def test_merge_partial_analyses_passes_single_segment_through():
    assert merge_partial_analyses(["only one"]) == "only one"


class MeetingCapability:
    def __init__(self, final_output=None):
        self.final_output = final_output
        self.final_inputs = []
        self.requests = []

    async def execute(self, request):
        self.requests.append(request)
        if request.capability == "chunk-analysis":
            n = request.context["chunk_number"]
            return _analysis(f"Segment {n}.", topics=["Roadmap", f"Item {n}"])
        self.final_inputs.append(request.input)
        if self.final_output is not None:
            return self.final_output
        return '```json\n{"summary": "Roadmap review", "topics": [{"title": "Roadmap"}]}\n```'


def test_meeting_analysis_workflow_merges_segments_before_synthesis():
    transcript = "Alice: roadmap first\nBob: item one\nAlice: item two\nBob: wrap up now"
    capability = MeetingCapability()
    workflow = MeetingAnalysisWorkflow(
        capability,
        max_chunk_tokens=7,
        chunk_overlap_units=0,
        retry_policy=RetryPolicy(max_retries=0, backoff_base_s=0),
    )

    result = asyncio.run(workflow.analyze(transcript, meeting_id="m-1"))

    assert result.status == WorkflowStatus.COMPLETED
    assert result.output == {"summary": "Roadmap review", "topics": [{"title": "Roadmap"}]}
    assert result.chunks_total == 2
    merged = json.loads(capability.final_inputs[0])
    assert merged["summary"] == "Segment 1. Segment 2."
    assert [t["title"] for t in merged["topics"]] == ["Roadmap", "Item 1", "Item 2"]


def _workflow(capability):
    return MeetingAnalysisWorkflow(
        capability,
        max_chunk_tokens=7,
        chunk_overlap_units=0,
        retry_policy=RetryPolicy(max_retries=0, backoff_base_s=0),
    )


def test_meeting_analysis_records_meeting_fields_and_defaults():
    capability = MeetingCapability()
    result = asyncio.run(_workflow(capability).analyze("Alice: hello\nBob: hi", meeting_id="m-2", user_id="u-9"))

    assert result.metadata["meeting_id"] == "m-2"
    assert result.metadata["title"] == "Untitled Meeting"
    assert result.metadata["participant_ids"] == []
    assert result.metadata["user_id"] == "u-9"
    for request in capability.requests:
        assert request.parameters["include_topics"] is True
        assert request.parameters["include_action_items"] is True
        assert request.parameters["include_sentiment"] is True
    final = [r for r in capability.requests if r.capability == "final-analysis"][0]
    assert final.parameters["title"] == "Untitled Meeting"


def test_meeting_analysis_options_drop_disabled_sections():
    capability = MeetingCapability(
        final_output=json.dumps(
            {
                "summary": "Weekly sync",
                "topics": [{"title": "Hiring"}],
                "actionItems": [{"action": "Post role"}],
                "sentimentAnalysis": {"overall": 0.5},
            }
        )
    )
    options = MeetingAnalysisOptions(include_topics=False, include_sentiment=False)

    result = asyncio.run(
        _workflow(capability).analyze(
            "Alice: hello\nBob: hi",
            title="Weekly sync",
            participant_ids=["alice", "bob"],
            options=options,
        )
    )

    assert result.status == WorkflowStatus.COMPLETED
    assert result.output == {"summary": "Weekly sync", "actionItems": [{"action": "Post role"}]}
    assert result.metadata["participant_ids"] == ["alice", "bob"]
    chunk_request = capability.requests[0]
    assert chunk_request.parameters == {"include_topics": False, "include_action_items": True, "include_sentiment": False}
