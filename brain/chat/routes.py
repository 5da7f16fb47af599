"""
routes.py — chat HTTP endpoints.

POST   /chat/sessions                 — create a session for {user, agent}
GET    /chat/sessions?agentId=        — the caller's session summaries, newest first
GET    /chat/sessions/{id}/history    — messages of one session in order
DELETE /chat/sessions/{id}            — delete a session and its messages
POST   /chat/agents/{agentId}         — run one chat turn
PUT    /chat/messages/{id}/rating     — rate an assistant message

All endpoints require a bearer JWT (auth.get_current_user).
app.state resources (chat_service, directory) are set in main.py lifespan.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from brain.auth import get_current_user
from brain.chat import sessions
from brain.chat.pipeline import ChatService
from brain.chat.schemas import (
    ChatRequest,
    ChatResponse,
    CreateSessionRequest,
    HistoryResponse,
    RatingRequest,
    RatingResponse,
    SessionResponse,
    SessionSummary,
)
from brain.database import get_db
from brain.directory import AgentDirectory

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/chat", tags=["Chat"])


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_directory(request: Request) -> AgentDirectory:
    return request.app.state.directory


@router.post("/sessions", status_code=201, response_model=SessionResponse)
async def create_session_endpoint(
    body: CreateSessionRequest,
    user_id: str = Depends(get_current_user),
    directory: AgentDirectory = Depends(get_directory),
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    """Create a new chat session. Every call creates a new session."""
    session = await sessions.create_session(db, directory, body.agent_id, user_id)
    return SessionResponse(**session)


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions_endpoint(
    agent_id: Optional[str] = Query(default=None, alias="agentId"),
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[SessionSummary]:
    """
    The caller's sessions, newest first, optionally filtered to one agent.
    Each summary carries messageCount, lastMessage and lastMessageTime.
    """
    rows = await sessions.list_sessions(db, user_id, agent_id)
    logger.info("Session list request sessions=%d", len(rows))
    return [SessionSummary(**row) for row in rows]


@router.get("/sessions/{session_id}/history", response_model=HistoryResponse)
async def history_endpoint(
    session_id: str,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> HistoryResponse:
    """Messages of a session in causal order. Empty list for a new session."""
    messages = await sessions.get_history(db, session_id, user_id)
    logger.info("Chat history request session_id=%s messages=%d", session_id, len(messages))
    return HistoryResponse(session_id=session_id, messages=messages)


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session_endpoint(
    session_id: str,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await sessions.delete_session(db, session_id, user_id)
    return Response(status_code=204)


@router.post("/agents/{agent_id}", response_model=ChatResponse)
async def chat_endpoint(
    agent_id: str,
    body: ChatRequest,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    db: AsyncSession = Depends(get_db),
) -> ChatResponse:
    """
    Send a message to an agent and receive a grounded answer.

    Flow: session resolve → strategy → retrieval → rerank → context assembly
    → blocking policy → generation → persist both messages → respond.

    Returns 200 with blocked=true when there is not enough evidence to answer.
    Returns 502/504 when retrieval or generation fails after retries;
    nothing is persisted in that case.
    """
    result = await service.send_message(
        db,
        agent_id,
        user_id,
        [turn.model_dump() for turn in body.messages],
        session_id=body.session_id,
        search_strategy=body.search_strategy,
        enable_reranking=body.enable_reranking,
        rerank_model=body.rerank_model,
    )
    return ChatResponse(**result)


@router.put("/messages/{message_id}/rating", response_model=RatingResponse)
async def rate_message_endpoint(
    message_id: str,
    body: RatingRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> RatingResponse:
    """Set, replace or clear (rating=null) the rating of an assistant message."""
    result = await sessions.rate_message(db, message_id, user_id, body.rating, body.comment)
    return RatingResponse(**result)
