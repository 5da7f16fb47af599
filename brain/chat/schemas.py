"""
schemas.py — chat API Pydantic v2 data contracts.

JSON bodies are camelCase on the wire (alias_generator=to_camel); snake_case
field names are accepted too (populate_by_name) so internal callers can build
models from store dicts directly.

Defines:
  - ChatTurn, ChatRequest, ChatResponse   (POST /chat/agents/{agentId})
  - ContextSource, Performance           (response metadata)
  - CreateSessionRequest, SessionResponse, SessionSummary
  - MessageOut, HistoryResponse
  - RatingRequest, RatingResponse
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _CamelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class CreateSessionRequest(_CamelRequest):
    agent_id: str = Field(..., min_length=1, description="Agent the session talks to")


class SessionResponse(_CamelModel):
    id: str
    agent_id: str
    agent_name: Optional[str] = None
    created_at: str


class SessionSummary(_CamelModel):
    id: str
    agent_id: str
    agent_name: Optional[str] = None
    created_at: str
    updated_at: str
    message_count: int = 0
    last_message: Optional[str] = None
    last_message_time: Optional[str] = None


class MessageOut(_CamelModel):
    id: int
    role: str
    content: str
    created_at: str
    rating: Optional[str] = None
    rating_comment: Optional[str] = None


class HistoryResponse(_CamelModel):
    session_id: str
    messages: List[MessageOut] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Chat turn
# ---------------------------------------------------------------------------

class ChatTurn(_CamelRequest):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=8000)


class ChatRequest(_CamelRequest):
    """
    Incoming chat turn.

    The last entry of messages is the question and must have role 'user'.
    sessionId is optional: without it a new session is created for this turn.
    searchStrategy / enableReranking / rerankModel override the agent's defaults.
    """
    messages: List[ChatTurn] = Field(..., min_length=1)
    session_id: Optional[str] = None
    search_strategy: Optional[str] = Field(
        default=None,
        description="semantic_only | hybrid | hybrid_no_rerank",
    )
    enable_reranking: Optional[bool] = None
    rerank_model: Optional[str] = None


class ContextSource(_CamelModel):
    chunk_id: str
    source_id: str
    document_title: str
    score: float
    length: int


class Performance(_CamelModel):
    """Wall-clock milliseconds. contextProcessingTime covers rerank plus assembly."""
    total_time: float
    vector_search_time: float = 0.0
    context_processing_time: float = 0.0
    generation_time: float = 0.0


class ChatResponse(_CamelModel):
    """
    Answer (or blocked notice) for one turn.

    blocked=True means the pipeline withheld an answer (reason says why) —
    a designed 200 outcome. rerankDegraded=True means reranking failed and the
    retrieval order was used.
    """
    message: str
    message_id: int
    session_id: str
    agent_id: str
    model: str
    provider: str
    context_used: bool
    context_length: int
    context_sources: List[ContextSource] = Field(default_factory=list)
    blocked: bool = False
    reason: Optional[str] = None
    rerank_degraded: bool = False
    strategy: Optional[str] = None
    cached: bool = False
    performance: Performance


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------

class RatingRequest(_CamelRequest):
    rating: Optional[Literal["up", "down"]] = Field(
        ...,
        description="'up', 'down', or null to clear",
    )
    comment: Optional[str] = Field(default=None, max_length=2000)


class RatingResponse(_CamelModel):
    message_id: int
    rating: Optional[str] = None
    comment: Optional[str] = None


__all__ = [
    "ChatRequest",
    "ChatResponse",
    "ChatTurn",
    "ContextSource",
    "CreateSessionRequest",
    "HistoryResponse",
    "MessageOut",
    "Performance",
    "RatingRequest",
    "RatingResponse",
    "SessionResponse",
    "SessionSummary",
]
