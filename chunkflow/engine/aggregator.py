# chunkflow/engine/aggregator.py

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from chunkflow.core.config import config
from chunkflow.core.errors import AggregationError
from chunkflow.core.state import ChunkResult
from chunkflow.engine.capability import CapabilityRequest
from chunkflow.engine.retry import RetryPolicy, call_capability_with_retry

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = "\n\n"
RAW_FALLBACK_KEY = "rawAnalysis"

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

Combine = Callable[[List[str]], str]


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except (TypeError, ValueError):
        return None


def parse_structured_output(text: str) -> Optional[Dict[str, Any]]:
    """Best-effort JSON extraction from model output.

    Tries the whole text, then a fenced ```json block, then the outermost
    ``{...}`` span. Returns None when nothing parses.
    """
    if not text or not text.strip():
        return None

    candidates = [text.strip()]
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())

    for candidate in candidates:
        value = _loads(candidate)
        if isinstance(value, dict):
            return value
        if value is not None:
            return {"result": value}

    start = text.find("{")
    end = text.rfind("}")
    if 0 <= start < end:
        value = _loads(text[start : end + 1])
        if isinstance(value, dict):
            return value
    return None


def _as_chunk_result(item: Any) -> ChunkResult:
    if isinstance(item, ChunkResult):
        return item
    return ChunkResult.model_validate(item)


def order_partials(results: Iterable[Any]) -> List[ChunkResult]:
    """Restores document order; completion order is irrelevant."""
    return sorted((_as_chunk_result(item) for item in results), key=lambda result: result.index)


@dataclass
class AggregationOutcome:
    result: Dict[str, Any]
    raw_text: str
    parsed: bool
    input_text: str
    tokens_used: int = 0
    attempts: int = 1


class Aggregator:
    def __init__(
        self,
        executor: Any,
        capability: str,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_s: Optional[float] = None,
        delimiter: str = DEFAULT_DELIMITER,
        combine: Optional[Combine] = None,
    ) -> None:
        self.executor = executor
        self.capability = capability
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.timeout_s = timeout_s if timeout_s is not None else config.engine.call_timeout_s
        self.delimiter = delimiter
        self._combine = combine

    def combine(self, ordered_texts: List[str]) -> str:
        if self._combine is not None:
            return self._combine(ordered_texts)
        return self.delimiter.join(ordered_texts)

    def build_input(self, results: Iterable[Any]) -> str:
        return self.combine([result.output for result in order_partials(results)])

    async def aggregate(
        self,
        results: Iterable[Any],
        *,
        parameters: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AggregationOutcome:
        results = list(results)
        if not results:
            raise AggregationError("No partial results to aggregate", step="aggregate")

        input_text = self.build_input(results)
        if not input_text.strip():
            raise AggregationError(
                "Partial results are empty; nothing to synthesize",
                step="aggregate",
                details={"partials": len(results)},
            )

        request = CapabilityRequest(
            input=input_text,
            capability=self.capability,
            parameters=dict(parameters or {}),
            context={"partials": len(results), **dict(context or {})},
        )
        response, attempts = await call_capability_with_retry(
            self.executor,
            request,
            policy=self.retry_policy,
            timeout_s=self.timeout_s,
            label=f"Aggregation '{self.capability}'",
        )

        raw_text = response.output or ""
        parsed = parse_structured_output(raw_text)
        if parsed is None:
            logger.warning(
                "Synthesis output from '%s' is not valid JSON; keeping raw text (%s chars)",
                self.capability,
                len(raw_text),
            )
            result: Dict[str, Any] = {RAW_FALLBACK_KEY: raw_text}
        else:
            result = parsed

        return AggregationOutcome(
            result=result,
            raw_text=raw_text,
            parsed=parsed is not None,
            input_text=input_text,
            tokens_used=response.tokens_used,
            attempts=attempts,
        )
