"""
database.py — SQLAlchemy 2.0 async engine and session factory.

This module owns ALL database connection infrastructure.
Nothing else in the codebase creates engines or sessions directly.

The engine and session factory are built once in the FastAPI lifespan and
stored on app.state (tests point them at a throwaway SQLite file instead).

Usage in routes (via dependency injection):
    from brain.database import get_db
    async def my_route(db: AsyncSession = Depends(get_db)): ...
"""
from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


# ---------------------------------------------------------------------------
# Declarative base — ALL ORM models inherit from this
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base.
    All ORM models in brain/models/ inherit from Base.
    Defined here (not in models/) to prevent circular imports in alembic/env.py.
    """
    pass


# ---------------------------------------------------------------------------
# Async engine — one per application lifetime
# ---------------------------------------------------------------------------
def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # SQLite (tests): default pool, no sizing knobs
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,                # Logs SQL statements in debug mode
        pool_size=5,              # Core connection pool size
        max_overflow=10,          # Extra connections under peak load
        pool_pre_ping=True,       # Detect and discard stale connections before each use
    )


# ---------------------------------------------------------------------------
# Session factory — produces AsyncSession instances
# ---------------------------------------------------------------------------
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,   # Keep objects usable after commit without re-querying
    )


# ---------------------------------------------------------------------------
# FastAPI dependency — yields session, commits or rolls back
# ---------------------------------------------------------------------------
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields an AsyncSession per request.

    Automatically commits on success or rolls back on exception.
    Always closes the session after the request (via async context manager).
    """
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
