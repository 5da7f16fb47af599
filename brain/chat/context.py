"""
context.py — Context Assembler.

Turns the (possibly reranked) chunk list into the bounded, attributed context
the model sees. Pure and deterministic: same chunks + same settings → same
context, byte for byte.

Rules, applied in descending score order (chunk_id breaks ties):
  - a chunk whose source is already represented is skipped unless
    allow_multiple_per_source is set
  - blank chunks are skipped
  - chunks are appended while the running text length stays within max_chars;
    the first chunk that would overflow is cut to the remaining budget and
    assembly stops there
total_length counts chunk text only (no headers or separators).
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict

from brain.retrieval.schemas import RetrievedChunk


class AssembledContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunks: tuple[RetrievedChunk, ...] = ()
    total_length: int = 0
    source_count: int = 0
    truncated: bool = False

    @property
    def best_score(self) -> Optional[float]:
        return max((c.score for c in self.chunks), default=None)

    def sources(self) -> list[dict]:
        """Per-chunk attribution — echoed in the response and the message audit column."""
        return [
            {
                "chunk_id": c.chunk_id,
                "source_id": c.source_id,
                "document_title": c.document_title,
                "score": round(c.score, 4),
                "length": len(c.text),
            }
            for c in self.chunks
        ]


def assemble_context(
    chunks: list[RetrievedChunk],
    max_chars: int,
    allow_multiple_per_source: bool = False,
) -> AssembledContext:
    ordered = sorted(chunks, key=lambda c: (-c.score, c.chunk_id))
    included: list[RetrievedChunk] = []
    seen_sources: set[str] = set()
    total = 0
    truncated = False

    for chunk in ordered:
        if not chunk.text.strip():
            continue
        if not allow_multiple_per_source and chunk.source_id in seen_sources:
            continue
        remaining = max_chars - total
        if remaining <= 0:
            break
        if len(chunk.text) > remaining:
            included.append(chunk.model_copy(update={"text": chunk.text[:remaining]}))
            seen_sources.add(chunk.source_id)
            total += remaining
            truncated = True
            break
        included.append(chunk)
        seen_sources.add(chunk.source_id)
        total += len(chunk.text)

    return AssembledContext(
        chunks=tuple(included),
        total_length=total,
        source_count=len(seen_sources),
        truncated=truncated,
    )
