"""
models/chat_message.py — SQLAlchemy ORM model for chat messages.

Table: chat_messages
Append-only except for rating / rating_comment.
The autoincrement id is the ordering key within a session: it follows commit
order, which the per-session lock keeps equal to causal submission order.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from brain.database import Base


class ChatMessageORM(Base):
    """
    ORM model for a single message within a chat session.

    context_metadata is set on assistant messages only: strategy, blocked/reason,
    rerank_degraded and the exact context sources the answer was built from.
    JSON (not JSONB) so the same model runs on SQLite.
    """
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="'user' or 'assistant'",
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    rating: Mapped[Optional[str]] = mapped_column(
        String(8),
        nullable=True,
        comment="'up', 'down' or NULL",
    )
    rating_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
