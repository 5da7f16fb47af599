"""
sessions.py — Session Manager and rating rules.

Ownership and existence checks on top of store.py:
  malformed id → InvalidArgument, missing → NotFound, someone else's → Unauthorized.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from brain import store
from brain.directory import AgentDirectory
from brain.errors import InvalidArgument, NotFound, Unauthorized

logger = logging.getLogger(__name__)

RATINGS = ("up", "down")


def parse_session_id(raw: str) -> str:
    """Canonical UUID string, or InvalidArgument."""
    try:
        return str(uuid.UUID(str(raw)))
    except (ValueError, AttributeError, TypeError) as exc:
        raise InvalidArgument(f"Malformed session id '{raw}'") from exc


def parse_message_id(raw: str) -> int:
    try:
        value = int(str(raw))
    except ValueError as exc:
        raise InvalidArgument(f"Malformed message id '{raw}'") from exc
    if value <= 0:
        raise InvalidArgument(f"Malformed message id '{raw}'")
    return value


async def create_session(
    db: AsyncSession,
    directory: AgentDirectory,
    agent_id: str,
    user_id: str,
) -> dict:
    """New session for {user, agent}; each call creates a new one."""
    agent = await directory.get(db, agent_id)
    if not agent.is_active:
        raise InvalidArgument("Agent is not active")
    session = await store.create_session(db, agent.id, user_id)
    session["agent_name"] = agent.name
    return session


async def get_session(db: AsyncSession, session_id: str, user_id: str) -> dict:
    sid = parse_session_id(session_id)
    session = await store.get_session(db, sid)
    if session is None:
        raise NotFound(f"Session {sid} not found")
    if session["user_id"] != user_id:
        logger.warning("Session access denied session_id=%s", sid)
        raise Unauthorized("Session belongs to another user")
    return session


async def list_sessions(
    db: AsyncSession,
    user_id: str,
    agent_id: Optional[str] = None,
) -> list[dict]:
    sessions = await store.list_sessions(db, user_id, agent_id)
    names = await store.get_agent_names(db, sorted({s["agent_id"] for s in sessions}))
    for s in sessions:
        s["agent_name"] = names.get(s["agent_id"])
    return sessions


async def get_history(db: AsyncSession, session_id: str, user_id: str) -> list[dict]:
    session = await get_session(db, session_id, user_id)
    return await store.get_messages(db, session["id"])


async def delete_session(db: AsyncSession, session_id: str, user_id: str) -> None:
    session = await get_session(db, session_id, user_id)
    await store.delete_session(db, session["id"])


async def rate_message(
    db: AsyncSession,
    message_id: str,
    user_id: str,
    rating: Optional[str],
    comment: Optional[str] = None,
) -> dict:
    """
    Set (or clear, with rating=None) the rating on an assistant message.
    Overwrites any previous rating and comment — last write wins.
    """
    mid = parse_message_id(message_id)
    if rating is not None and rating not in RATINGS:
        raise InvalidArgument(f"Rating must be one of {', '.join(RATINGS)} or null")
    owner = await store.get_message_owner(db, mid)
    if owner is None:
        raise NotFound(f"Message {mid} not found")
    if owner["user_id"] != user_id:
        logger.warning("Rating denied message_id=%s", mid)
        raise Unauthorized("Message belongs to another user")
    if owner["role"] != "assistant":
        raise InvalidArgument("Only assistant messages can be rated")
    await store.set_message_rating(db, mid, rating, comment)
    return {"message_id": mid, "rating": rating, "comment": comment}
