from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Optional

from chunkflow.core.config import LLMConfig, config
from chunkflow.core.errors import ExternalCallError
from chunkflow.engine.capability import CapabilityRequest, CapabilityResponse
from chunkflow.engine.chunker import estimate_tokens
from chunkflow.engine.llm_provider import chat_openai_init_kwargs, llm_available, missing_reason

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPTS: Dict[str, str] = {
    "summarize-chunk": (
        "You summarize one part of a longer document. Keep names, numbers and decisions. "
        "Reply with plain text."
    ),
    "generate-final-summary": (
        "You combine partial summaries of one document into a single result. Reply with a JSON object "
        'with keys "summary" (string), "keypoints" (list of strings) and "tags" (list of strings).'
    ),
    "chunk-analysis": (
        "You analyze one segment of a meeting transcript. Reply with a JSON object with keys "
        '"summary", "topics", "actionItems", "decisions" and "sentimentAnalysis".'
    ),
    "final-analysis": (
        "You merge meeting segment analyses into one final analysis. Reply with a JSON object using "
        "the same keys as the segments."
    ),
}

DEFAULT_SYNTHESIS_CAPABILITIES = ("generate-final-summary", "final-analysis")


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text") or ""))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content)


class LangChainCapabilityExecutor:
    """Capability executor backed by an OpenAI-compatible chat model.

    Chunk-level capabilities use ``llm.chunk_model``; synthesis capabilities
    use ``llm.synthesis_model``. A pre-built chat model can be passed as
    ``llm`` (anything with ``ainvoke``).
    """

    def __init__(
        self,
        *,
        llm: Any = None,
        llm_config: Optional[LLMConfig] = None,
        system_prompts: Optional[Dict[str, str]] = None,
        synthesis_capabilities: Iterable[str] = DEFAULT_SYNTHESIS_CAPABILITIES,
    ) -> None:
        self.llm_config = llm_config or config.llm
        self.system_prompts = {**DEFAULT_SYSTEM_PROMPTS, **(system_prompts or {})}
        self.synthesis_capabilities = set(synthesis_capabilities)
        self._llm_override = llm
        self._models: Dict[str, Any] = {}

    def model_for(self, capability: str) -> str:
        if capability in self.synthesis_capabilities:
            return self.llm_config.synthesis_model
        return self.llm_config.chunk_model

    def _chat_model(self, model: str) -> Any:
        if self._llm_override is not None:
            return self._llm_override
        if model not in self._models:
            if not llm_available():
                raise ExternalCallError(missing_reason(), retryable=False, details={"model": model})
            from langchain_openai import ChatOpenAI

            self._models[model] = ChatOpenAI(
                **chat_openai_init_kwargs(
                    model=model,
                    temperature=self.llm_config.temperature,
                    max_tokens=self.llm_config.max_tokens,
                )
            )
        return self._models[model]

    def system_prompt(self, request: CapabilityRequest) -> str:
        prompt = self.system_prompts.get(request.capability) or f"Perform the '{request.capability}' task."
        if request.parameters:
            prompt += "\nParameters: " + json.dumps(request.parameters, ensure_ascii=False, default=str)
        if request.context:
            prompt += "\nContext: " + json.dumps(request.context, ensure_ascii=False, default=str)
        return prompt

    async def execute(self, request: CapabilityRequest) -> CapabilityResponse:
        from langchain_core.messages import HumanMessage, SystemMessage

        model = self.model_for(request.capability)
        llm = self._chat_model(model)
        message = await llm.ainvoke(
            [SystemMessage(content=self.system_prompt(request)), HumanMessage(content=request.input)]
        )
        output = _message_text(message)

        usage = getattr(message, "usage_metadata", None) or {}
        tokens_used = usage.get("total_tokens") if isinstance(usage, dict) else None
        if not tokens_used:
            tokens_used = estimate_tokens(request.input) + estimate_tokens(output)
        logger.debug("Capability '%s' on %s used %s tokens", request.capability, model, tokens_used)
        return CapabilityResponse(output=output, metrics={"tokens_used": int(tokens_used), "model": model})
