"""
schemas.py — retrieval data contracts.

Defines:
  - RetrievedChunk       (one scored passage; ephemeral, lives for one request)
  - VectorSearchRequest  (POST /vectors/search body)
  - VectorSearchResult   (one hit in the /vectors/search response)
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RetrievedChunk(BaseModel):
    """
    A passage returned by the retriever.

    score is normalised to [0, 1] and lists are ordered by descending score
    with chunk_id as the tie-breaker; rank is the 0-based position.
    """
    model_config = ConfigDict(frozen=True)

    chunk_id: str
    source_id: str
    document_title: str = ""
    text: str
    score: float = Field(ge=0.0, le=1.0)
    rank: int = Field(default=0, ge=0)


class VectorSearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    query: str = Field(..., min_length=1, max_length=4000)
    agent_id: str = Field(..., min_length=1, description="Agent whose index namespace is searched")
    search_strategy: Optional[str] = Field(
        default=None,
        description="semantic_only | hybrid | hybrid_no_rerank (reranking is not applied here)",
    )
    top_k: Optional[int] = Field(default=None, ge=1, le=100)


class VectorSearchResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    text: str
    score: float
    source_id: str
    document_title: str
    chunk_id: str


__all__ = ["RetrievedChunk", "VectorSearchRequest", "VectorSearchResult"]
