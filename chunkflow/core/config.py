# chunkflow/core/config.py

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class LLMConfig(BaseModel):
    """Model settings for the default capability executor."""
    chunk_model: str = "gpt-4o-mini"
    synthesis_model: str = "gpt-4o"
    max_tokens: int = 4000
    temperature: float = 0.2


class ChunkingConfig(BaseModel):
    """Chunk budget and overlap."""
    max_chunk_tokens: int = 2000
    chunk_overlap_units: int = 3


class EngineConfig(BaseModel):
    """Run loop, concurrency and retry limits."""
    max_concurrent_chunks: int = 5
    max_retries: int = 2
    call_timeout_s: float = 120.0
    backoff_base_ms: int = 250
    backoff_max_ms: int = 4000
    max_steps: int = 10_000

    @property
    def backoff_base_s(self) -> float:
        return max(0, self.backoff_base_ms) / 1000.0

    @property
    def backoff_max_s(self) -> float:
        return max(0, self.backoff_max_ms) / 1000.0


class TraceConfig(BaseModel):
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_max_attempts: int = 3
    webhook_timeout_s: float = 5.0
    webhook_backoff_base_ms: int = 250
    webhook_backoff_max_ms: int = 2000

    @property
    def webhook_backoff_base_s(self) -> float:
        return max(0, self.webhook_backoff_base_ms) / 1000.0

    @property
    def webhook_backoff_max_s(self) -> float:
        return max(0, self.webhook_backoff_max_ms) / 1000.0


class ChunkFlowConfig(BaseModel):
    """Top-level chunkflow configuration."""
    llm: LLMConfig = LLMConfig()
    chunking: ChunkingConfig = ChunkingConfig()
    engine: EngineConfig = EngineConfig()
    trace: TraceConfig = TraceConfig()

    @classmethod
    def from_env(cls) -> "ChunkFlowConfig":
        """Loads configuration from CHUNKFLOW_* environment variables."""
        return cls(
            llm=LLMConfig(
                chunk_model=_env("CHUNKFLOW_CHUNK_MODEL", "gpt-4o-mini"),
                synthesis_model=_env("CHUNKFLOW_SYNTHESIS_MODEL", "gpt-4o"),
                max_tokens=_env_int("CHUNKFLOW_MAX_TOKENS", 4000),
                temperature=_env_float("CHUNKFLOW_TEMPERATURE", 0.2),
            ),
            chunking=ChunkingConfig(
                max_chunk_tokens=max(1, _env_int("CHUNKFLOW_MAX_CHUNK_TOKENS", 2000)),
                chunk_overlap_units=max(0, _env_int("CHUNKFLOW_CHUNK_OVERLAP_UNITS", 3)),
            ),
            engine=EngineConfig(
                max_concurrent_chunks=max(1, _env_int("CHUNKFLOW_MAX_CONCURRENT_CHUNKS", 5)),
                max_retries=max(0, _env_int("CHUNKFLOW_MAX_RETRIES", 2)),
                call_timeout_s=max(0.1, _env_float("CHUNKFLOW_CALL_TIMEOUT_S", 120.0)),
                backoff_base_ms=max(0, _env_int("CHUNKFLOW_BACKOFF_BASE_MS", 250)),
                backoff_max_ms=max(0, _env_int("CHUNKFLOW_BACKOFF_MAX_MS", 4000)),
                max_steps=max(1, _env_int("CHUNKFLOW_MAX_STEPS", 10_000)),
            ),
            trace=TraceConfig(
                webhook_url=(_env("CHUNKFLOW_TRACE_WEBHOOK_URL", "").strip() or None),
                webhook_secret=(_env("CHUNKFLOW_TRACE_WEBHOOK_SECRET", "").strip() or None),
                webhook_max_attempts=max(1, _env_int("CHUNKFLOW_TRACE_WEBHOOK_MAX_ATTEMPTS", 3)),
                webhook_timeout_s=max(0.1, _env_float("CHUNKFLOW_TRACE_WEBHOOK_TIMEOUT_S", 5.0)),
                webhook_backoff_base_ms=max(0, _env_int("CHUNKFLOW_TRACE_WEBHOOK_BACKOFF_BASE_MS", 250)),
                webhook_backoff_max_ms=max(0, _env_int("CHUNKFLOW_TRACE_WEBHOOK_BACKOFF_MAX_MS", 2000)),
            ),
        )


config = ChunkFlowConfig.from_env()
