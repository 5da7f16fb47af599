"""
nodes.py — the answer pipeline's LangGraph nodes.

Each node reads what it needs from ChatTurnState, does one stage of work and
returns only the keys it owns. Resources (retriever, rerankers, providers,
credentials, cache) are passed in explicitly by graph.build_graph(); there is
no module-level registry.

Logs carry session_id / agent_id only — never question or answer text.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as aioredis

from brain.cache import get_cached_answer, make_answer_key, set_cached_answer
from brain.chat.blocking import evaluate_context, screen_question
from brain.chat.context import assemble_context
from brain.chat.generator import (
    ProviderFactory,
    build_messages,
    clamp_temperature,
    condense_history,
    generate_answer,
)
from brain.directory import CredentialCache
from brain.errors import RetrievalFailed
from brain.graph.state import ChatTurnState
from brain.retrieval.reranker import RerankerRegistry, apply_rerank
from brain.retrieval.retriever import VectorRetriever
from brain.retrieval.strategy import resolve_strategy
from brain.retry import with_retries

logger = logging.getLogger(__name__)


@dataclass
class PipelineResources:
    """Long-lived collaborators shared by every turn (built once in the lifespan)."""
    retriever: VectorRetriever
    rerankers: RerankerRegistry
    providers: ProviderFactory
    credentials: CredentialCache
    redis: Optional[aioredis.Redis] = None


def _ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 1)


def _ids(state: ChatTurnState) -> dict:
    return {"session_id": state.get("session_id"), "agent_id": state["agent"].id}


# ---------------------------------------------------------------------------
# guard: decline general-knowledge questions for strict agents
# ---------------------------------------------------------------------------
async def guard_node(state: ChatTurnState) -> dict:
    decision = screen_question(state["question"], state["agent"].source_first)
    if decision.blocked:
        logger.info("Turn blocked before retrieval reason=%s session_id=%s", decision.reason, state.get("session_id"))
        return {"decision": decision}
    return {}


def route_after_guard(state: ChatTurnState) -> str:
    decision = state.get("decision")
    return "blocked" if decision is not None and decision.blocked else "continue"


# ---------------------------------------------------------------------------
# route_strategy: resolve the retrieval plan
# ---------------------------------------------------------------------------
async def route_strategy_node(state: ChatTurnState) -> dict:
    plan = resolve_strategy(
        state["pipeline_config"],
        agent=state["agent"],
        strategy=state.get("request_strategy"),
        enable_reranking=state.get("request_rerank"),
        rerank_model=state.get("request_rerank_model"),
    )
    logger.info(
        "Strategy resolved strategy=%s rerank=%s session_id=%s",
        plan.strategy, plan.rerank_enabled, state.get("session_id"),
    )
    return {"plan": plan}


# ---------------------------------------------------------------------------
# retrieve: vector / hybrid search with retries
# ---------------------------------------------------------------------------
async def retrieve_node(state: ChatTurnState, resources: PipelineResources) -> dict:
    config = state["pipeline_config"]
    agent = state["agent"]
    plan = state["plan"]
    start = time.perf_counter()
    chunks = await with_retries(
        lambda: resources.retriever.asearch(
            state["question"],
            agent.id,
            plan.search_mode,
            top_k=config.top_k,
            min_similarity=config.min_similarity,
        ),
        failure=RetrievalFailed,
        label="Retrieval",
        attempts=config.max_attempts,
        timeout=config.retrieval_timeout,
        base_delay=config.retry_base_delay,
        context=_ids(state),
    )
    return {"chunks": chunks, "retrieval_ms": _ms(start)}


# ---------------------------------------------------------------------------
# rerank: optional; failures degrade to retrieval order
# ---------------------------------------------------------------------------
async def rerank_node(state: ChatTurnState, resources: PipelineResources) -> dict:
    plan = state["plan"]
    chunks = state.get("chunks", [])
    if not plan.rerank_enabled or not chunks:
        return {"rerank_degraded": False, "rerank_ms": 0.0}
    start = time.perf_counter()
    reranker = resources.rerankers.get(plan.rerank_model)
    reranked, degraded = await apply_rerank(
        reranker,
        state["question"],
        chunks,
        timeout=state["pipeline_config"].rerank_timeout,
        context=_ids(state),
    )
    return {"chunks": reranked, "rerank_degraded": degraded, "rerank_ms": _ms(start)}


# ---------------------------------------------------------------------------
# assemble + decide
# ---------------------------------------------------------------------------
async def assemble_node(state: ChatTurnState) -> dict:
    config = state["pipeline_config"]
    agent = state["agent"]
    allow_multiple = (
        agent.allow_multiple_chunks_per_source
        if agent.allow_multiple_chunks_per_source is not None
        else config.allow_multiple_chunks_per_source
    )
    start = time.perf_counter()
    context = assemble_context(state.get("chunks", []), config.max_context_chars, allow_multiple)
    return {"context": context, "assembly_ms": _ms(start)}


async def decide_node(state: ChatTurnState) -> dict:
    agent = state["agent"]
    min_confidence = (
        agent.min_confidence if agent.min_confidence is not None else state["pipeline_config"].min_confidence
    )
    decision = evaluate_context(state["context"], min_confidence)
    if decision.blocked:
        logger.info("Turn blocked reason=%s session_id=%s", decision.reason, state.get("session_id"))
    return {"decision": decision}


def route_after_decide(state: ChatTurnState) -> str:
    return "blocked" if state["decision"].blocked else "generate"


# ---------------------------------------------------------------------------
# generate: provider call (answer cache for first turns)
# ---------------------------------------------------------------------------
async def generate_node(state: ChatTurnState, resources: PipelineResources) -> dict:
    agent = state["agent"]
    config = state["pipeline_config"]
    context = state["context"]
    history, summary = condense_history(
        state.get("history", []),
        config.history_max_messages,
        config.history_max_chars,
        config.history_summary_threshold,
    )
    start = time.perf_counter()

    cache_key: Optional[str] = None
    if resources.redis is not None and not history and summary is None:
        cache_key = make_answer_key(agent, state["question"], context)
        try:
            cached = await get_cached_answer(resources.redis, cache_key)
        except aioredis.RedisError as exc:
            logger.warning("Answer cache read failed (%s) session_id=%s", exc, state.get("session_id"))
            cached = None
        if cached is not None:
            return {"answer": cached, "cached": True, "generation_ms": _ms(start)}

    api_key = resources.credentials.api_key_for(agent)
    provider = resources.providers.get(agent.provider, api_key)
    messages = build_messages(agent.system_prompt, context, history, state["question"], summary)
    answer = await generate_answer(
        provider,
        agent.model,
        messages,
        clamp_temperature(agent.temperature, config.default_temperature),
        config,
        log_context=_ids(state),
    )

    if cache_key is not None:
        try:
            await set_cached_answer(resources.redis, cache_key, answer, config.answer_cache_ttl)
        except aioredis.RedisError as exc:
            logger.warning("Answer cache write failed (%s) session_id=%s", exc, state.get("session_id"))

    return {"answer": answer, "cached": False, "generation_ms": _ms(start)}


def bind(node: Any, resources: PipelineResources):
    """Close a resource-taking node over `resources` for add_node()."""
    async def bound(state: ChatTurnState) -> dict:
        return await node(state, resources)

    bound.__name__ = node.__name__
    return bound
