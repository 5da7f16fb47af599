"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000 UTC

Creates the chat core tables:
  - agents         (agent configuration, read by the chat core)
  - chat_sessions  (one row per user ↔ agent conversation)
  - chat_messages  (append-only turns + rating fields + context audit JSON)
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- agents table ---
    op.create_table(
        "agents",
        sa.Column("id", sa.String(length=36), nullable=False, comment="Agent identifier (also the vector index namespace)"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False, comment="'mistral' or 'openai'"),
        sa.Column("model", sa.String(length=100), nullable=False),
        sa.Column("temperature", sa.Float(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("encrypted_api_key", sa.Text(), nullable=True),
        sa.Column("encryption_salt", sa.String(length=64), nullable=True),
        sa.Column("search_strategy", sa.String(length=32), nullable=True),
        sa.Column("enable_reranking", sa.Boolean(), nullable=True),
        sa.Column("rerank_model", sa.String(length=255), nullable=True),
        sa.Column("min_confidence", sa.Float(), nullable=True),
        sa.Column("allow_multiple_chunks_per_source", sa.Boolean(), nullable=True),
        sa.Column("source_first", sa.Boolean(), nullable=False, comment="Strict mode: decline general-knowledge questions before retrieval"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- chat_sessions table ---
    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.String(length=36), nullable=False, comment="UUID session identifier"),
        sa.Column("agent_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False, comment="Owner — JWT subject of the creating user"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["agent_id"], ["agents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_chat_sessions_agent_id"), "chat_sessions", ["agent_id"], unique=False)
    op.create_index(op.f("ix_chat_sessions_user_id"), "chat_sessions", ["user_id"], unique=False)

    # --- chat_messages table ---
    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, comment="'user' or 'assistant'"),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("rating", sa.String(length=8), nullable=True, comment="'up', 'down' or NULL"),
        sa.Column("rating_comment", sa.Text(), nullable=True),
        sa.Column("context_metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["chat_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_chat_messages_session_id"), "chat_messages", ["session_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_chat_messages_session_id"), table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index(op.f("ix_chat_sessions_user_id"), table_name="chat_sessions")
    op.drop_index(op.f("ix_chat_sessions_agent_id"), table_name="chat_sessions")
    op.drop_table("chat_sessions")
    op.drop_table("agents")
