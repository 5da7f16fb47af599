"""
cache.py — Redis answer cache for Company Brain.

Namespace conventions:
  answer:{sha256(...)}   → generated answer text   TTL 1h (3600s, configurable)

The key covers everything the answer depends on for a first turn: agent,
model, system prompt, the normalised question and the exact context chunk ids.
Only turns without prior history are cached; the turn itself is always
persisted, cache hit or not.

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis (None when disabled)
  - Helper functions take the client as a param — no module-level global state
  - Logs only key digests — never questions or answers
"""
import hashlib
import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from brain.chat.context import AssembledContext
from brain.schemas import AgentConfig

logger = logging.getLogger(__name__)

ANSWER_PREFIX = "answer"


def make_answer_key(agent: AgentConfig, question: str, context: AssembledContext) -> str:
    """
    Build Redis key for an answer cache entry.
    Normalizes the question (lowercase + strip) before hashing to maximize hit rate.
    """
    material = json.dumps(
        {
            "agent": agent.id,
            "provider": agent.provider,
            "model": agent.model,
            "temperature": agent.temperature,
            "system_prompt": agent.system_prompt or "",
            "question": question.strip().lower(),
            "chunks": [[c.chunk_id, len(c.text)] for c in context.chunks],
        },
        sort_keys=True,
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"{ANSWER_PREFIX}:{digest}"


async def create_redis_pool(redis_url: str) -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup — stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", redis_url)
    return client


async def get_cached_answer(client: aioredis.Redis, key: str) -> Optional[str]:
    """Return the cached answer text or None on a miss."""
    raw = await client.get(key)
    if raw is None:
        return None
    logger.info("Answer cache hit key=%s", key)
    return raw


async def set_cached_answer(client: aioredis.Redis, key: str, answer: str, ttl: int) -> None:
    await client.setex(key, ttl, answer)
    logger.info("Answer cached key=%s ttl=%ds", key, ttl)
