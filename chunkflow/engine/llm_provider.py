from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

OPENROUTER_DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

BASE_URL_ENV_VARS = ("CHUNKFLOW_LLM_BASE_URL", "OPENAI_BASE_URL", "OPENROUTER_BASE_URL")
REFERER_ENV_VARS = ("CHUNKFLOW_LLM_HTTP_REFERER", "OPENROUTER_HTTP_REFERER", "OPENROUTER_SITE_URL")
TITLE_ENV_VARS = ("CHUNKFLOW_LLM_APP_NAME", "OPENROUTER_X_TITLE", "OPENROUTER_APP_NAME")


def _first_env(names: tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = str(os.getenv(name) or "").strip()
        if value:
            return value
    return None


class ProviderSettings(BaseModel):
    """Where the OpenAI-compatible chat endpoint lives and how to authenticate."""

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def available(self) -> bool:
        return bool(self.api_key)


def resolve_provider() -> ProviderSettings:
    openai_key = _first_env(("OPENAI_API_KEY",))
    openrouter_key = _first_env(("OPENROUTER_API_KEY",))

    base_url = _first_env(BASE_URL_ENV_VARS)
    if base_url is None and openrouter_key:
        base_url = OPENROUTER_DEFAULT_BASE_URL

    headers: Dict[str, str] = {}
    referer = _first_env(REFERER_ENV_VARS)
    title = _first_env(TITLE_ENV_VARS)
    if referer:
        headers["HTTP-Referer"] = referer
    if title:
        headers["X-Title"] = title

    return ProviderSettings(api_key=openai_key or openrouter_key, base_url=base_url, headers=headers)


def llm_available() -> bool:
    return resolve_provider().available


def missing_reason() -> str:
    return "OPENAI_API_KEY / OPENROUTER_API_KEY missing"


def chat_openai_init_kwargs(
    *,
    model: str,
    temperature: float,
    max_tokens: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    provider = resolve_provider()
    if not provider.available:
        return None
    kwargs: Dict[str, Any] = {
        "model": model,
        "temperature": temperature,
        "api_key": provider.api_key,
    }
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    if provider.base_url:
        kwargs["base_url"] = provider.base_url
    if provider.headers:
        kwargs["default_headers"] = dict(provider.headers)
    return kwargs
