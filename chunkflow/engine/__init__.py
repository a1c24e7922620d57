# chunkflow/engine/__init__.py

from .aggregator import Aggregator, parse_structured_output
from .capability import CapabilityExecutor, CapabilityRequest, CapabilityResponse
from .chunker import TextChunker, chunk_text, estimate_tokens
from .executor import StepDefinition, StepExecutor, StepOutcome
from .graph import END, ERROR, WorkflowGraph, linear_route
from .limiter import ConcurrencyLimiter, with_limit
from .retry import RetryPolicy, call_capability, with_retry
from .tracing import LoggingTraceSink, NoopTraceSink, TraceSink, WebhookTraceSink

__all__ = [
    "Aggregator",
    "parse_structured_output",
    "CapabilityExecutor",
    "CapabilityRequest",
    "CapabilityResponse",
    "TextChunker",
    "chunk_text",
    "estimate_tokens",
    "StepDefinition",
    "StepExecutor",
    "StepOutcome",
    "END",
    "ERROR",
    "WorkflowGraph",
    "linear_route",
    "ConcurrencyLimiter",
    "with_limit",
    "RetryPolicy",
    "call_capability",
    "with_retry",
    "LoggingTraceSink",
    "NoopTraceSink",
    "TraceSink",
    "WebhookTraceSink",
]
