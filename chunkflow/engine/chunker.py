# chunkflow/engine/chunker.py

from __future__ import annotations

import logging
from typing import List, Optional

from chunkflow.core.config import config
from chunkflow.core.errors import ValidationError
from chunkflow.core.state import Chunk

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: whitespace-delimited words."""
    return len(text.split())


def split_lines(text: str) -> List[str]:
    return [line for line in (text or "").splitlines() if line.strip()]


def chunk_text(text: str, max_tokens: int, overlap_units: int = 0) -> List[Chunk]:
    """Splits text into ordered, line-aligned chunks of at most ``max_tokens``.

    When a chunk closes, the next one is seeded with the last
    ``overlap_units`` lines of the closed chunk. The seed is trimmed from the
    front until it fits the budget together with the incoming line. A single
    line over budget still becomes a chunk of its own.
    """
    if max_tokens < 1:
        raise ValidationError("max_tokens must be >= 1", step="chunking")
    if overlap_units < 0:
        raise ValidationError("overlap_units must be >= 0", step="chunking")

    lines = split_lines(text)
    chunks: List[Chunk] = []
    if not lines:
        return chunks

    costs = [estimate_tokens(line) for line in lines]
    start = 0
    overlap = 0
    tokens = 0

    def flush(end: int) -> None:
        chunks.append(
            Chunk(
                index=len(chunks),
                text="\n".join(lines[start:end]),
                line_start=start,
                line_end=end,
                overlap=overlap,
            )
        )

    for position, cost in enumerate(costs):
        if position > start and tokens + cost > max_tokens:
            flush(position)
            seed_start = max(start, position - overlap_units) if overlap_units else position
            seed_tokens = sum(costs[seed_start:position])
            while seed_start < position and seed_tokens + cost > max_tokens:
                seed_tokens -= costs[seed_start]
                seed_start += 1
            start = seed_start
            overlap = position - seed_start
            tokens = seed_tokens
        tokens += cost

    flush(len(lines))
    return chunks


def reconstruct_lines(chunks: List[Chunk]) -> List[str]:
    """Rebuilds the non-empty line sequence by dropping each chunk's overlap."""
    lines: List[str] = []
    for chunk in chunks:
        chunk_lines = chunk.text.split("\n")
        lines.extend(chunk_lines[chunk.overlap:])
    return lines


class TextChunker:
    def __init__(self, max_tokens: Optional[int] = None, overlap_units: Optional[int] = None) -> None:
        self.max_tokens = max_tokens if max_tokens is not None else config.chunking.max_chunk_tokens
        self.overlap_units = overlap_units if overlap_units is not None else config.chunking.chunk_overlap_units

    def chunk(self, text: str) -> List[Chunk]:
        chunks = chunk_text(text, self.max_tokens, self.overlap_units)
        logger.info(
            "Split document into %s chunks (max_tokens=%s overlap_units=%s)",
            len(chunks),
            self.max_tokens,
            self.overlap_units,
        )
        return chunks
