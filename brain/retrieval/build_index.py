"""
build_index.py — per-agent knowledge base ingestion
===================================================
Reads .txt / .md documents from a folder, chunks them using the embedding
model's tokenizer (500-token windows, 50-token overlap), embeds with
BAAI/bge-m3, builds a FAISS IndexFlatIP (cosine-similarity ready) and
serialises chunk metadata as chunks.pkl for BM25 + retrieval.

Usage:
    python -m brain.retrieval.build_index --agent-id <id> --source-dir docs/

Outputs:
    {index_dir}/agent_{id}/kb.faiss
    {index_dir}/agent_{id}/chunks.pkl

Each file is one source: source_id is the file stem, document_title the
first non-empty line. A running server picks up a rebuilt namespace after
VectorRetriever.invalidate(agent_id) or a restart.
"""

from __future__ import annotations

import argparse
import logging
import pickle
import sys
from pathlib import Path
from typing import Any

import faiss
import numpy as np

from brain.config import settings
from brain.retrieval.retriever import CHUNKS_FILE, FAISS_FILE, namespace_dir

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Chunking hyper-parameters
# ---------------------------------------------------------------------------
CHUNK_TOKENS = 500
OVERLAP_TOKENS = 50
SOURCE_SUFFIXES = (".txt", ".md")


# ---------------------------------------------------------------------------
# Tokeniser-aware chunking
# ---------------------------------------------------------------------------
def chunk_text(
    text: str,
    tokenizer: Any,
    chunk_size: int = CHUNK_TOKENS,
    overlap: int = OVERLAP_TOKENS,
) -> list[str]:
    """
    Split *text* into overlapping token windows using *tokenizer*.

    Returns a list of decoded text chunks. Each chunk contains at most
    *chunk_size* tokens, and consecutive chunks share *overlap* tokens.
    """
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")
    token_ids: list[int] = tokenizer.encode(text, add_special_tokens=False)
    chunks: list[str] = []
    start = 0
    while start < len(token_ids):
        end = min(start + chunk_size, len(token_ids))
        piece = tokenizer.decode(token_ids[start:end], skip_special_tokens=True).strip()
        if piece:
            chunks.append(piece)
        if end == len(token_ids):
            break
        start += chunk_size - overlap
    return chunks


def _document_title(text: str, fallback: str) -> str:
    for line in text.splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            return line[:200]
    return fallback


def load_documents(source_dir: Path) -> list[dict[str, str]]:
    """Read every supported file under source_dir, sorted by path for stable chunk ids."""
    docs = []
    for path in sorted(p for p in source_dir.rglob("*") if p.suffix.lower() in SOURCE_SUFFIXES):
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            log.warning("Skipping empty document %s", path)
            continue
        docs.append(
            {
                "source_id": path.stem,
                "document_title": _document_title(text, path.stem),
                "text": text,
            }
        )
    return docs


def chunk_documents(documents: list[dict[str, str]], tokenizer: Any) -> list[dict[str, Any]]:
    all_chunks: list[dict[str, Any]] = []
    for doc in documents:
        pieces = chunk_text(doc["text"], tokenizer)
        log.info("  %s → %d chunk(s)", doc["source_id"], len(pieces))
        for idx, piece in enumerate(pieces):
            all_chunks.append(
                {
                    "chunk_id": f"{doc['source_id']}_chunk_{idx:03d}",
                    "source_id": doc["source_id"],
                    "document_title": doc["document_title"],
                    "chunk_index": idx,
                    "text": piece,
                }
            )
    return all_chunks


# ---------------------------------------------------------------------------
# Index writer
# ---------------------------------------------------------------------------
def write_agent_index(
    index_dir: Path,
    agent_id: str,
    chunks: list[dict[str, Any]],
    embedder: Any,
) -> Path:
    """
    Embed chunks and write the agent's namespace (kb.faiss + chunks.pkl).
    Returns the namespace directory.
    """
    chunk_ids = [c["chunk_id"] for c in chunks]
    if len(chunk_ids) != len(set(chunk_ids)):
        duplicates = {cid for cid in chunk_ids if chunk_ids.count(cid) > 1}
        raise ValueError(f"Duplicate chunk IDs detected: {sorted(duplicates)}")
    if not chunks:
        raise ValueError("No chunks to index")

    ns = namespace_dir(Path(index_dir), agent_id)
    ns.mkdir(parents=True, exist_ok=True)

    embeddings = np.asarray(
        embedder.encode(
            [c["text"] for c in chunks],
            batch_size=32,
            show_progress_bar=False,
            normalize_embeddings=True,   # L2-normalise for cosine via dot product
            convert_to_numpy=True,
        ),
        dtype=np.float32,
    )
    dim = embeddings.shape[1]
    index = faiss.IndexFlatIP(dim)
    index.add(embeddings)
    log.info("FAISS index built — %d vectors, dimension %d", index.ntotal, dim)

    faiss.write_index(index, str(ns / FAISS_FILE))
    with open(ns / CHUNKS_FILE, "wb") as fh:
        pickle.dump(chunks, fh)
    log.info("Namespace written → %s", ns)
    return ns


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Build an agent's vector index")
    parser.add_argument("--agent-id", required=True)
    parser.add_argument("--source-dir", required=True, type=Path)
    parser.add_argument("--index-dir", type=Path, default=Path(settings.index_dir))
    parser.add_argument("--model", default=settings.embed_model)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.source_dir.is_dir():
        log.error("Source directory not found: %s", args.source_dir)
        sys.exit(1)
    documents = load_documents(args.source_dir)
    if not documents:
        log.error("No %s documents under %s", "/".join(SOURCE_SUFFIXES), args.source_dir)
        sys.exit(1)

    from sentence_transformers import SentenceTransformer

    log.info("Loading model: %s", args.model)
    model = SentenceTransformer(args.model)
    chunks = chunk_documents(documents, model.tokenizer)
    log.info("Total chunks: %d", len(chunks))

    ns = write_agent_index(args.index_dir, args.agent_id, chunks, model)
    log.info("Indexing complete: agent_id=%s chunks=%d namespace=%s", args.agent_id, len(chunks), ns)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    main()
