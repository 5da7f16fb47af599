"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.

Import order follows FK dependencies: agents ← chat_sessions ← chat_messages.
"""
from brain.models.agent import AgentORM
from brain.models.chat_session import ChatSessionORM
from brain.models.chat_message import ChatMessageORM

__all__ = ["AgentORM", "ChatSessionORM", "ChatMessageORM"]
