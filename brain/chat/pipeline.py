"""
pipeline.py — ChatService: one chat turn end to end.

  1. validate the turn (last message must come from the user)
  2. resolve agent (active) and session (owned, same agent) — or allocate a new one
  3. under the session lock: load history → run the LangGraph pipeline →
     persist the user message + assistant message (answer or blocked notice)
     → commit
  4. build the response payload with context and performance metadata

Nothing is written until the pipeline has produced an outcome, so a failed
turn (RetrievalFailed / GenerationFailed / cancellation) leaves no messages
behind and the client can retry without duplicating history.
"""
import logging
import time
import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from brain import store
from brain.chat import sessions
from brain.chat.context import AssembledContext
from brain.chat.locks import SessionLockRegistry
from brain.config import PipelineConfig
from brain.directory import AgentDirectory
from brain.errors import InvalidArgument

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        graph: Any,
        directory: AgentDirectory,
        config: PipelineConfig,
        locks: Optional[SessionLockRegistry] = None,
    ) -> None:
        self.graph = graph
        self.directory = directory
        self.config = config
        self.locks = locks or SessionLockRegistry()

    async def send_message(
        self,
        db: AsyncSession,
        agent_id: str,
        user_id: str,
        messages: list[dict],
        session_id: Optional[str] = None,
        search_strategy: Optional[str] = None,
        enable_reranking: Optional[bool] = None,
        rerank_model: Optional[str] = None,
    ) -> dict:
        started = time.perf_counter()

        if not messages or messages[-1].get("role") != "user":
            raise InvalidArgument("Last message must be from the user")
        question = (messages[-1].get("content") or "").strip()
        if not question:
            raise InvalidArgument("Message content must not be empty")

        agent = await self.directory.get(db, agent_id)
        if not agent.is_active:
            raise InvalidArgument("Agent is not active")

        if session_id:
            session = await sessions.get_session(db, session_id, user_id)
            if session["agent_id"] != agent.id:
                raise InvalidArgument("Session does not belong to this agent")
            sid, is_new = session["id"], False
        else:
            sid, is_new = str(uuid.uuid4()), True

        async with self.locks.hold(sid):
            if is_new:
                # A brand-new session has no stored turns; earlier client-side turns stand in
                history = [m for m in messages[:-1] if m.get("role") in ("user", "assistant")]
            else:
                history = await store.get_messages(db, sid)

            result = await self.graph.ainvoke(
                {
                    "question": question,
                    "session_id": sid,
                    "agent": agent,
                    "pipeline_config": self.config,
                    "history": history,
                    "request_strategy": search_strategy,
                    "request_rerank": enable_reranking,
                    "request_rerank_model": rerank_model,
                }
            )

            decision = result["decision"]
            context: AssembledContext = result.get("context") or AssembledContext()
            plan = result.get("plan")
            content = decision.message if decision.blocked else result["answer"]
            metadata = {
                "strategy": plan.strategy if plan is not None else None,
                "rerank_enabled": plan.rerank_enabled if plan is not None else False,
                "rerank_degraded": result.get("rerank_degraded", False),
                "blocked": decision.blocked,
                "reason": decision.reason,
                "context_length": context.total_length,
                "sources": context.sources(),
                "cached": result.get("cached", False),
            }

            if is_new:
                await store.create_session(db, agent.id, user_id, session_id=sid)
            await store.append_message(db, sid, "user", question)
            assistant = await store.append_message(db, sid, "assistant", content, metadata)
            await db.commit()

        context_used = not decision.blocked and context.source_count > 0
        logger.info(
            "Chat turn complete session_id=%s agent_id=%s blocked=%s reason=%s sources=%d",
            sid, agent.id, decision.blocked, decision.reason, context.source_count,
        )
        return {
            "message": content,
            "message_id": assistant["id"],
            "session_id": sid,
            "agent_id": agent.id,
            "model": agent.model,
            "provider": agent.provider,
            "context_used": context_used,
            "context_length": context.total_length if context_used else 0,
            "context_sources": context.sources() if context_used else [],
            "blocked": decision.blocked,
            "reason": decision.reason,
            "rerank_degraded": metadata["rerank_degraded"],
            "strategy": metadata["strategy"],
            "cached": metadata["cached"],
            "performance": {
                "total_time": round((time.perf_counter() - started) * 1000, 1),
                "vector_search_time": result.get("retrieval_ms", 0.0),
                "context_processing_time": round(
                    result.get("rerank_ms", 0.0) + result.get("assembly_ms", 0.0), 1
                ),
                "generation_time": result.get("generation_ms", 0.0),
            },
        }
