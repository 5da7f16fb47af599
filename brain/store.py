"""
store.py — Data access facade for Company Brain.

Provides a consistent, high-level API for persisting and retrieving agents,
chat sessions and chat messages. No route or pipeline stage touches
SQLAlchemy directly.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - No raw SQL: ORM / Core expression queries only
  - Uses flush() (not commit()) — the caller owns the transaction boundary
  - Logs only ids — never message content, questions or answers
  - Returns domain objects / plain dicts, not ORM instances
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from brain.models.agent import AgentORM
from brain.models.chat_message import ChatMessageORM
from brain.models.chat_session import ChatSessionORM
from brain.schemas import AgentConfig

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _session_dict(orm: ChatSessionORM) -> dict:
    return {
        "id": orm.id,
        "agent_id": orm.agent_id,
        "user_id": orm.user_id,
        "created_at": _iso(orm.created_at),
        "updated_at": _iso(orm.updated_at),
    }


def _message_dict(orm: ChatMessageORM) -> dict:
    return {
        "id": orm.id,
        "session_id": orm.session_id,
        "role": orm.role,
        "content": orm.content,
        "rating": orm.rating,
        "rating_comment": orm.rating_comment,
        "context_metadata": orm.context_metadata,
        "created_at": _iso(orm.created_at),
    }


# ---------------------------------------------------------------------------
# Agent lookups (read-only)
# ---------------------------------------------------------------------------

async def get_agent(db: AsyncSession, agent_id: str) -> Optional[AgentConfig]:
    """Return the agent's configuration, or None if no such agent."""
    result = await db.execute(select(AgentORM).where(AgentORM.id == agent_id))
    orm = result.scalar_one_or_none()
    if orm is None:
        return None
    return AgentConfig.model_validate(orm)


async def get_agent_names(db: AsyncSession, agent_ids: list[str]) -> dict[str, str]:
    if not agent_ids:
        return {}
    result = await db.execute(
        select(AgentORM.id, AgentORM.name).where(AgentORM.id.in_(agent_ids))
    )
    return {row.id: row.name for row in result}


# ---------------------------------------------------------------------------
# Session operations
# ---------------------------------------------------------------------------

async def create_session(
    db: AsyncSession,
    agent_id: str,
    user_id: str,
    session_id: Optional[str] = None,
) -> dict:
    """
    Insert a new chat session. Every call creates a new row.
    session_id may be pre-allocated by the caller (chat turns without a session).
    """
    orm = ChatSessionORM(agent_id=agent_id, user_id=user_id)
    if session_id is not None:
        orm.id = session_id
    db.add(orm)
    await db.flush()
    logger.info("Created chat session session_id=%s agent_id=%s", orm.id, agent_id)
    return _session_dict(orm)


async def get_session(db: AsyncSession, session_id: str) -> Optional[dict]:
    """Return the session row as a dict, or None if not found (caller raises)."""
    result = await db.execute(
        select(ChatSessionORM).where(ChatSessionORM.id == session_id)
    )
    orm = result.scalar_one_or_none()
    if orm is None:
        return None
    return _session_dict(orm)


async def list_sessions(
    db: AsyncSession,
    user_id: str,
    agent_id: Optional[str] = None,
) -> list[dict]:
    """
    Session summaries for a user, newest first.

    Each summary carries message_count plus the content and time of the last
    message (None for empty sessions). Two queries regardless of session count.
    """
    stats = (
        select(
            ChatMessageORM.session_id.label("session_id"),
            func.count(ChatMessageORM.id).label("message_count"),
            func.max(ChatMessageORM.id).label("last_message_id"),
        )
        .group_by(ChatMessageORM.session_id)
        .subquery()
    )
    stmt = (
        select(ChatSessionORM, stats.c.message_count, stats.c.last_message_id)
        .outerjoin(stats, stats.c.session_id == ChatSessionORM.id)
        .where(ChatSessionORM.user_id == user_id)
        .order_by(ChatSessionORM.created_at.desc(), ChatSessionORM.id.desc())
    )
    if agent_id is not None:
        stmt = stmt.where(ChatSessionORM.agent_id == agent_id)
    rows = (await db.execute(stmt)).all()

    last_ids = [row.last_message_id for row in rows if row.last_message_id is not None]
    last_messages: dict[int, ChatMessageORM] = {}
    if last_ids:
        result = await db.execute(
            select(ChatMessageORM).where(ChatMessageORM.id.in_(last_ids))
        )
        last_messages = {m.id: m for m in result.scalars()}

    summaries = []
    for orm, message_count, last_id in rows:
        last = last_messages.get(last_id) if last_id is not None else None
        summary = _session_dict(orm)
        summary.update(
            {
                "message_count": message_count or 0,
                "last_message": last.content if last is not None else None,
                "last_message_time": _iso(last.created_at) if last is not None else None,
            }
        )
        summaries.append(summary)
    return summaries


async def delete_session(db: AsyncSession, session_id: str) -> None:
    """Delete a session and all of its messages."""
    await db.execute(delete(ChatMessageORM).where(ChatMessageORM.session_id == session_id))
    await db.execute(delete(ChatSessionORM).where(ChatSessionORM.id == session_id))
    await db.flush()
    logger.info("Deleted chat session session_id=%s", session_id)


# ---------------------------------------------------------------------------
# Message operations
# ---------------------------------------------------------------------------

async def append_message(
    db: AsyncSession,
    session_id: str,
    role: str,
    content: str,
    metadata: Optional[dict[str, Any]] = None,
) -> dict:
    """
    Append a message to a session and touch the session's updated_at.
    Logs only session_id / role / message id.
    """
    orm = ChatMessageORM(
        session_id=session_id,
        role=role,
        content=content,
        context_metadata=metadata,
    )
    db.add(orm)
    await db.execute(
        update(ChatSessionORM)
        .where(ChatSessionORM.id == session_id)
        .values(updated_at=datetime.now(timezone.utc))
    )
    await db.flush()
    logger.info("Saved chat message session_id=%s role=%s message_id=%s", session_id, role, orm.id)
    return _message_dict(orm)


async def get_messages(db: AsyncSession, session_id: str) -> list[dict]:
    """All messages of a session in causal (id) order. Empty list for a new session."""
    result = await db.execute(
        select(ChatMessageORM)
        .where(ChatMessageORM.session_id == session_id)
        .order_by(ChatMessageORM.id.asc())
    )
    return [_message_dict(row) for row in result.scalars()]


async def get_message_owner(db: AsyncSession, message_id: int) -> Optional[dict]:
    """
    Return {role, session_id, user_id} for a message, or None if not found.
    Used for rating ownership checks.
    """
    result = await db.execute(
        select(ChatMessageORM.role, ChatMessageORM.session_id, ChatSessionORM.user_id)
        .join(ChatSessionORM, ChatSessionORM.id == ChatMessageORM.session_id)
        .where(ChatMessageORM.id == message_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    return {"role": row.role, "session_id": row.session_id, "user_id": row.user_id}


async def set_message_rating(
    db: AsyncSession,
    message_id: int,
    rating: Optional[str],
    comment: Optional[str],
) -> None:
    """
    Overwrite rating and comment in a single UPDATE.
    Concurrent ratings on the same message resolve last-write-wins; repeating
    the same rating is a no-op in effect.
    """
    await db.execute(
        update(ChatMessageORM)
        .where(ChatMessageORM.id == message_id)
        .values(rating=rating, rating_comment=comment)
    )
    await db.flush()
    logger.info("Rated message message_id=%s rating=%s", message_id, rating)
