"""
retriever.py — VectorRetriever: per-agent FAISS + BM25 retrieval with weighted fusion.

Created ONCE at FastAPI startup (lifespan). Stored on app.state.retriever.
Each agent owns an index namespace on disk:

    {index_dir}/agent_{agent_id}/kb.faiss    dense vectors (IndexFlatIP)
    {index_dir}/agent_{agent_id}/chunks.pkl  chunk metadata + text

Namespaces are loaded lazily on first query and kept in memory; a missing
namespace is a valid empty corpus (zero results, not an error).

Retrieval strategy:
  - Dense:  FAISS IndexFlatIP (cosine similarity via normalize_embeddings=True),
            negative cosine clamped to 0
  - Sparse: BM25Okapi reconstructed from chunks.pkl at load (never pickled separately),
            normalised by the best BM25 score of the query
  - Fusion: score = 0.7 * dense + 0.3 * sparse over the union of both candidate lists;
            with no lexical hits at all the dense score is used alone (weight 1.0)
  - Order:  descending score, chunk_id as deterministic tie-breaker
"""
import asyncio
import logging
import math
import pickle
import re
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

import faiss
import numpy as np
from rank_bm25 import BM25Okapi

from brain.errors import InvalidArgument
from brain.retrieval.schemas import RetrievedChunk
from brain.retrieval.strategy import SEMANTIC_ONLY

logger = logging.getLogger(__name__)

FAISS_FILE = "kb.faiss"
CHUNKS_FILE = "chunks.pkl"

DENSE_WEIGHT = 0.7
SPARSE_WEIGHT = 0.3
CANDIDATE_MULTIPLIER = 1.5

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_TOKEN_RE = re.compile(r"\w+")


class Embedder(Protocol):
    """What the retriever needs from an embedding model (SentenceTransformer fits)."""

    def encode(self, sentences: list[str], **kwargs: Any) -> Any: ...


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens — shared by BM25 build and query time."""
    return _TOKEN_RE.findall(text.lower())


def namespace_dir(index_dir: Path, agent_id: str) -> Path:
    if not _AGENT_ID_RE.match(agent_id):
        raise InvalidArgument(f"Malformed agent id '{agent_id}'")
    return index_dir / f"agent_{agent_id}"


def _clamp(score: float) -> float:
    return min(1.0, max(0.0, score))


def _is_set(event: Optional[threading.Event]) -> bool:
    return event is not None and event.is_set()


class AgentIndex:
    """
    One agent's loaded namespace.

    Attributes:
        index:  FAISS IndexFlatIP loaded from kb.faiss
        chunks: List of chunk dicts from chunks.pkl (chunk_id, source_id,
                document_title, chunk_index, text)
        bm25:   BM25Okapi reconstructed from chunk texts
    """

    def __init__(self, index: faiss.Index, chunks: list[dict]) -> None:
        if index.ntotal != len(chunks):
            raise ValueError(
                f"Index/chunk count mismatch: {index.ntotal} vectors vs {len(chunks)} chunks"
            )
        self.index = index
        self.chunks = chunks
        self.bm25: Optional[BM25Okapi] = (
            BM25Okapi([tokenize(c["text"]) for c in chunks]) if chunks else None
        )


class VectorRetriever:
    """
    Per-agent hybrid retriever.

    The embedder is injected: SentenceTransformer (BGE-M3) in production,
    a deterministic fake in tests. It must be the model the index was built with.
    """

    def __init__(
        self,
        index_dir: Path,
        embedder: Embedder,
        dense_weight: float = DENSE_WEIGHT,
        sparse_weight: float = SPARSE_WEIGHT,
        candidate_multiplier: float = CANDIDATE_MULTIPLIER,
    ) -> None:
        self.index_dir = Path(index_dir)
        self.embedder = embedder
        self.dense_weight = dense_weight
        self.sparse_weight = sparse_weight
        self.candidate_multiplier = candidate_multiplier
        self._indexes: dict[str, AgentIndex] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Namespace loading
    # ------------------------------------------------------------------
    def load(self, agent_id: str) -> Optional[AgentIndex]:
        """Return the agent's index, loading it on first use. None if never built."""
        ns = namespace_dir(self.index_dir, agent_id)
        with self._lock:
            cached = self._indexes.get(agent_id)
            if cached is not None:
                return cached

            faiss_path = ns / FAISS_FILE
            chunks_path = ns / CHUNKS_FILE
            if not faiss_path.exists() or not chunks_path.exists():
                logger.info("No index namespace for agent_id=%s — empty corpus", agent_id)
                return None

            logger.info("Loading FAISS index from %s", faiss_path)
            index = faiss.read_index(str(faiss_path))
            with open(chunks_path, "rb") as f:
                chunks: list[dict] = pickle.load(f)
            loaded = AgentIndex(index, chunks)
            self._indexes[agent_id] = loaded
            logger.info(
                "Index loaded agent_id=%s vectors=%d d=%d", agent_id, index.ntotal, index.d
            )
            return loaded

    def invalidate(self, agent_id: Optional[str] = None) -> None:
        """Drop cached namespaces (after a rebuild)."""
        with self._lock:
            if agent_id is None:
                self._indexes.clear()
            else:
                self._indexes.pop(agent_id, None)

    # ------------------------------------------------------------------
    # Searches
    # ------------------------------------------------------------------
    def dense_search(self, idx: AgentIndex, query: str, top_k: int) -> list[tuple[int, float]]:
        """
        Embed query and search FAISS.
        Returns (chunk_index, cosine) pairs with cosine clamped to [0, 1].
        """
        k = min(top_k, idx.index.ntotal)
        if k <= 0:
            return []
        embedding = self.embedder.encode(
            [query],
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        embedding_np = np.asarray(embedding, dtype=np.float32).reshape(1, -1)
        if embedding_np.shape[1] != idx.index.d:
            raise ValueError(
                f"Embedding dimension mismatch: query {embedding_np.shape[1]} vs index {idx.index.d}"
            )
        scores, indices = idx.index.search(embedding_np, k)
        return [
            (int(i), _clamp(float(s)))
            for i, s in zip(indices[0], scores[0])
            if i >= 0  # FAISS returns -1 for empty slots
        ]

    def sparse_search(self, idx: AgentIndex, query: str, top_k: int) -> list[tuple[int, float]]:
        """
        BM25 over the namespace. Only chunks with a positive BM25 score count
        as lexical hits; scores are divided by the best one so they lie in (0, 1].
        """
        tokens = tokenize(query)
        if idx.bm25 is None or not tokens:
            return []
        scores = idx.bm25.get_scores(tokens)
        best = float(np.max(scores)) if len(scores) else 0.0
        if best <= 0.0:
            return []
        top_indices = np.argsort(scores)[::-1][:top_k]
        return [
            (int(i), float(scores[i]) / best)
            for i in top_indices
            if scores[i] > 0.0
        ]

    def search(
        self,
        query: str,
        agent_id: str,
        mode: str,
        top_k: int = 10,
        min_similarity: float = 0.0,
        cancelled: Optional[threading.Event] = None,
    ) -> list[RetrievedChunk]:
        """
        Run one retrieval for an agent namespace.

        mode is 'semantic_only' or 'hybrid'. Results below min_similarity (and
        all zero scores) are dropped; the rest come back ordered by
        (-score, chunk_id) with 0-based ranks.

        `cancelled` is checked after loading and after embedding; once set the
        search stops early and returns nothing.
        """
        idx = self.load(agent_id)
        if idx is None or not idx.chunks or _is_set(cancelled):
            return []

        candidates = max(top_k, math.ceil(top_k * self.candidate_multiplier))
        dense = dict(self.dense_search(idx, query, candidates))
        if _is_set(cancelled):
            logger.info("Retrieval abandoned after embedding agent_id=%s", agent_id)
            return []

        if mode == SEMANTIC_ONLY:
            fused = dense
        else:
            sparse = dict(self.sparse_search(idx, query, candidates))
            if not sparse:
                fused = dense
            else:
                fused = {
                    i: self.dense_weight * dense.get(i, 0.0) + self.sparse_weight * sparse.get(i, 0.0)
                    for i in dense.keys() | sparse.keys()
                }

        hits = [
            (idx.chunks[i], _clamp(score))
            for i, score in fused.items()
            if score > 0.0 and score >= min_similarity
        ]
        hits.sort(key=lambda pair: (-pair[1], pair[0]["chunk_id"]))

        results = [
            RetrievedChunk(
                chunk_id=chunk["chunk_id"],
                source_id=str(chunk["source_id"]),
                document_title=chunk.get("document_title", ""),
                text=chunk["text"],
                score=score,
                rank=rank,
            )
            for rank, (chunk, score) in enumerate(hits[:top_k])
        ]
        logger.info(
            "Retrieval agent_id=%s mode=%s candidates=%d results=%d",
            agent_id, mode, len(fused), len(results),
        )
        return results

    async def asearch(
        self,
        query: str,
        agent_id: str,
        mode: str,
        top_k: int = 10,
        min_similarity: float = 0.0,
    ) -> list[RetrievedChunk]:
        """
        search() off the event loop; embedding and FAISS calls are blocking.

        A running embed or FAISS call cannot be interrupted. On cancellation
        the worker thread is told to stop at its next checkpoint and its
        result is discarded.
        """
        cancelled = threading.Event()
        try:
            return await asyncio.to_thread(
                self.search, query, agent_id, mode, top_k, min_similarity, cancelled
            )
        except asyncio.CancelledError:
            cancelled.set()
            raise
