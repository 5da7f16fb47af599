"""
reranker.py — optional second-stage reordering of retrieved chunks.

Variants (all implement Reranker.rerank):
  NoOpReranker            identity — used when the plan disables reranking
  LexicalOverlapReranker  query-term overlap blended with the retrieval score;
                          no model, selected with rerank_model="lexical"
  CrossEncoderReranker    sentence-transformers CrossEncoder, logits squashed to [0, 1]

apply_rerank() is the only entry point the pipeline uses. A reranker must
return a permutation of its input; anything else, an exception or a timeout
falls back to the pre-rerank order with degraded=True.
"""
import asyncio
import logging
import math
import threading
from typing import Optional, Protocol

from brain.retrieval.retriever import tokenize
from brain.retrieval.schemas import RetrievedChunk

logger = logging.getLogger(__name__)

LEXICAL_MODEL = "lexical"
NOOP_MODEL = "none"


class Reranker(Protocol):
    def rerank(self, query: str, chunks: list[RetrievedChunk]) -> list[RetrievedChunk]: ...


def _reorder(chunks: list[RetrievedChunk], scores: list[float]) -> list[RetrievedChunk]:
    scored = [
        (chunk, min(1.0, max(0.0, float(score))))
        for chunk, score in zip(chunks, scores)
    ]
    scored.sort(key=lambda pair: (-pair[1], pair[0].chunk_id))
    return [
        chunk.model_copy(update={"score": score, "rank": rank})
        for rank, (chunk, score) in enumerate(scored)
    ]


class NoOpReranker:
    def rerank(self, query: str, chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
        return list(chunks)


class LexicalOverlapReranker:
    """
    relevance = fraction of distinct query terms present in the chunk
    score     = relevance_weight * relevance + (1 - relevance_weight) * retrieval score
    """

    def __init__(self, relevance_weight: float = 0.7) -> None:
        self.relevance_weight = relevance_weight

    def rerank(self, query: str, chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
        terms = set(tokenize(query))
        if not terms:
            return list(chunks)
        scores = []
        for chunk in chunks:
            overlap = len(terms & set(tokenize(chunk.text))) / len(terms)
            scores.append(
                self.relevance_weight * overlap + (1.0 - self.relevance_weight) * chunk.score
            )
        return _reorder(chunks, scores)


class CrossEncoderReranker:
    """Scores (query, passage) pairs with a cross-encoder; loads the model on first use."""

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._model = None
        self._lock = threading.Lock()

    def _load(self):
        with self._lock:
            if self._model is None:
                from sentence_transformers import CrossEncoder

                logger.info("Loading reranker model: %s", self.model_name)
                self._model = CrossEncoder(self.model_name)
            return self._model

    def rerank(self, query: str, chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
        if not chunks:
            return []
        model = self._load()
        logits = model.predict([(query, c.text) for c in chunks], show_progress_bar=False)
        scores = [1.0 / (1.0 + math.exp(-float(x))) for x in logits]
        return _reorder(chunks, scores)


class RerankerRegistry:
    """Hands out one reranker instance per model name."""

    def __init__(self) -> None:
        self._rerankers: dict[str, Reranker] = {
            LEXICAL_MODEL: LexicalOverlapReranker(),
            NOOP_MODEL: NoOpReranker(),
        }

    def register(self, name: str, reranker: Reranker) -> None:
        self._rerankers[name] = reranker

    def get(self, model_name: Optional[str]) -> Reranker:
        if not model_name:
            return self._rerankers[NOOP_MODEL]
        reranker = self._rerankers.get(model_name)
        if reranker is None:
            reranker = CrossEncoderReranker(model_name)
            self._rerankers[model_name] = reranker
        return reranker


def _is_permutation(before: list[RetrievedChunk], after: list[RetrievedChunk]) -> bool:
    return len(before) == len(after) and sorted(c.chunk_id for c in before) == sorted(
        c.chunk_id for c in after
    )


async def apply_rerank(
    reranker: Reranker,
    query: str,
    chunks: list[RetrievedChunk],
    timeout: float,
    context: Optional[dict] = None,
) -> tuple[list[RetrievedChunk], bool]:
    """
    Rerank off the event loop under a timeout.
    Returns (chunks, degraded); degraded chunks are the input, untouched.

    A model call cannot be interrupted: after a timeout or cancellation the
    worker thread finishes rerank() and the result is dropped.
    """
    if not chunks:
        return chunks, False
    ctx = " ".join(f"{k}={v}" for k, v in (context or {}).items())
    try:
        reranked = await asyncio.wait_for(
            asyncio.to_thread(reranker.rerank, query, list(chunks)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Rerank timed out after %.1fs — using retrieval order %s", timeout, ctx)
        return chunks, True
    except Exception as exc:
        logger.warning("Rerank failed (%s) — using retrieval order %s", type(exc).__name__, ctx)
        return chunks, True

    if not _is_permutation(chunks, reranked):
        logger.warning("Reranker returned a non-permutation — using retrieval order %s", ctx)
        return chunks, True
    return reranked, False
