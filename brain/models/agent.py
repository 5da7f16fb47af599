"""
models/agent.py — SQLAlchemy ORM model for knowledge agents.

Table: agents
Owned by the agent-management service; the chat core only reads it.
Retrieval defaults are nullable: NULL means "use the global default".
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from brain.database import Base


class AgentORM(Base):
    """
    ORM model for a configured knowledge agent.

    encrypted_api_key + encryption_salt form the credential reference:
    decrypted by directory.CredentialCache, never logged.
    """
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Agent identifier (also the vector index namespace)",
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="mistral",
        comment="'mistral' or 'openai'",
    )
    model: Mapped[str] = mapped_column(String(100), nullable=False, default="mistral-small-latest")
    temperature: Mapped[float] = mapped_column(Float, nullable=False, default=0.7)
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    encrypted_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    encryption_salt: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # --- Retrieval defaults (NULL → global default) ---
    search_strategy: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    enable_reranking: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    rerank_model: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    min_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    allow_multiple_chunks_per_source: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    source_first: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Strict mode: decline general-knowledge questions before retrieval",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
