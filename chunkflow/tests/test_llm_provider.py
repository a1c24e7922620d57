from __future__ import annotations

import asyncio

import pytest

from chunkflow.core.config import LLMConfig
from chunkflow.core.errors import ExternalCallError
from chunkflow.engine import llm_provider
from chunkflow.engine.capability import CapabilityRequest
from chunkflow.engine.llm_executor import LangChainCapabilityExecutor


def _clear_provider_env(monkeypatch):
    for name in (
        "OPENAI_API_KEY",
        "OPENROUTER_API_KEY",
        *llm_provider.BASE_URL_ENV_VARS,
        *llm_provider.REFERER_ENV_VARS,
        *llm_provider.TITLE_ENV_VARS,
    ):
        monkeypatch.delenv(name, raising=False)


def test_provider_prefers_openai_api_key(monkeypatch):
    _clear_provider_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "openai-key")
    monkeypatch.setenv("OPENROUTER_API_KEY", "openrouter-key")

    provider = llm_provider.resolve_provider()
    assert provider.api_key == "openai-key"
    assert provider.base_url == llm_provider.OPENROUTER_DEFAULT_BASE_URL


def test_provider_uses_openrouter_defaults(monkeypatch):
    _clear_provider_env(monkeypatch)
    monkeypatch.setenv("OPENROUTER_API_KEY", "openrouter-key")

    kwargs = llm_provider.chat_openai_init_kwargs(model="gpt-4o-mini", temperature=0.1, max_tokens=256)
    assert kwargs is not None
    assert kwargs["api_key"] == "openrouter-key"
    assert kwargs["base_url"] == llm_provider.OPENROUTER_DEFAULT_BASE_URL
    assert kwargs["max_tokens"] == 256
    assert "default_headers" not in kwargs


def test_provider_headers_prefer_chunkflow_env(monkeypatch):
    _clear_provider_env(monkeypatch)
    monkeypatch.setenv("OPENROUTER_HTTP_REFERER", "https://example.org")
    monkeypatch.setenv("OPENROUTER_X_TITLE", "Upstream Title")
    assert llm_provider.resolve_provider().headers == {
        "HTTP-Referer": "https://example.org",
        "X-Title": "Upstream Title",
    }

    monkeypatch.setenv("CHUNKFLOW_LLM_HTTP_REFERER", "https://custom.example")
    monkeypatch.setenv("CHUNKFLOW_LLM_APP_NAME", "ChunkFlow Custom")
    assert llm_provider.resolve_provider().headers == {
        "HTTP-Referer": "https://custom.example",
        "X-Title": "ChunkFlow Custom",
    }


def test_no_key_means_no_llm(monkeypatch):
    _clear_provider_env(monkeypatch)
    assert llm_provider.chat_openai_init_kwargs(model="gpt-4o", temperature=0.2) is None
    assert llm_provider.llm_available() is False
    assert "OPENROUTER_API_KEY" in llm_provider.missing_reason()


class FakeMessage:
    def __init__(self, content, usage=None):
        self.content = content
        self.usage_metadata = usage


class FakeChatModel:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        return self.reply


def test_langchain_executor_sends_system_and_human_messages():
    llm = FakeChatModel(FakeMessage("short summary", usage={"total_tokens": 42}))
    executor = LangChainCapabilityExecutor(llm=llm)
    request = CapabilityRequest(
        input="chunk text",
        capability="summarize-chunk",
        parameters={"max_summary_length": 100},
        context={"chunk_number": 1},
    )

    response = asyncio.run(executor.execute(request))

    assert response.output == "short summary"
    assert response.tokens_used == 42
    system, human = llm.calls[0]
    assert "summarize one part" in system.content
    assert '"max_summary_length": 100' in system.content
    assert human.content == "chunk text"


def test_langchain_executor_picks_model_per_capability():
    executor = LangChainCapabilityExecutor(
        llm=FakeChatModel(FakeMessage("x")),
        llm_config=LLMConfig(chunk_model="small", synthesis_model="large"),
    )
    assert executor.model_for("summarize-chunk") == "small"
    assert executor.model_for("generate-final-summary") == "large"
    assert executor.model_for("final-analysis") == "large"


def test_langchain_executor_estimates_tokens_and_joins_content_parts():
    llm = FakeChatModel(FakeMessage([{"type": "text", "text": "part one "}, {"type": "text", "text": "part two"}]))
    response = asyncio.run(
        LangChainCapabilityExecutor(llm=llm).execute(CapabilityRequest(input="a b c", capability="chunk-analysis"))
    )
    assert response.output == "part one part two"
    assert response.tokens_used == 3 + 4


def test_langchain_executor_without_credentials_fails_fatally(monkeypatch):
    _clear_provider_env(monkeypatch)
    executor = LangChainCapabilityExecutor()

    with pytest.raises(ExternalCallError) as exc_info:
        asyncio.run(executor.execute(CapabilityRequest(input="x", capability="summarize-chunk")))
    assert exc_info.value.retryable is False
