"""
schemas.py — shared Pydantic v2 domain types.

Defines:
  - AgentConfig   (read-only snapshot of an agent row, immutable during a turn)
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict


class AgentConfig(BaseModel):
    """
    Immutable view of an agent's configuration.

    Built from AgentORM by store.get_agent() and cached by
    directory.AgentDirectory until invalidate(agent_id) is called.
    Nullable retrieval fields fall back to PipelineConfig defaults.
    """
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str
    provider: str = "mistral"
    model: str = "mistral-small-latest"
    temperature: float = 0.7
    system_prompt: Optional[str] = None
    is_active: bool = True
    encrypted_api_key: Optional[str] = None
    encryption_salt: Optional[str] = None

    search_strategy: Optional[str] = None
    enable_reranking: Optional[bool] = None
    rerank_model: Optional[str] = None
    min_confidence: Optional[float] = None
    allow_multiple_chunks_per_source: Optional[bool] = None
    source_first: bool = False


__all__ = ["AgentConfig"]
