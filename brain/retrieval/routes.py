"""
routes.py — direct vector search endpoint.

POST /vectors/search — run the retriever for an agent namespace without
generation. Reranking is never applied here; hybrid_no_rerank behaves as hybrid.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from brain.auth import get_current_user
from brain.config import PipelineConfig
from brain.database import get_db
from brain.directory import AgentDirectory
from brain.errors import RetrievalFailed
from brain.retrieval.retriever import VectorRetriever
from brain.retrieval.schemas import VectorSearchRequest, VectorSearchResult
from brain.retrieval.strategy import resolve_strategy
from brain.retry import with_retries

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/vectors", tags=["Vectors"])


@router.post("/search", response_model=List[VectorSearchResult])
async def vector_search_endpoint(
    body: VectorSearchRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[VectorSearchResult]:
    directory: AgentDirectory = request.app.state.directory
    retriever: VectorRetriever = request.app.state.retriever
    config: PipelineConfig = request.app.state.pipeline_config

    agent = await directory.get(db, body.agent_id)
    plan = resolve_strategy(config, agent=agent, strategy=body.search_strategy, enable_reranking=False)
    top_k = body.top_k or config.top_k

    chunks = await with_retries(
        lambda: retriever.asearch(
            body.query, agent.id, plan.search_mode, top_k=top_k, min_similarity=config.min_similarity
        ),
        failure=RetrievalFailed,
        label="Retrieval",
        attempts=config.max_attempts,
        timeout=config.retrieval_timeout,
        base_delay=config.retry_base_delay,
        context={"agent_id": agent.id},
    )
    logger.info("Vector search agent_id=%s strategy=%s results=%d", agent.id, plan.strategy, len(chunks))
    return [
        VectorSearchResult(
            text=c.text,
            score=c.score,
            source_id=c.source_id,
            document_title=c.document_title,
            chunk_id=c.chunk_id,
        )
        for c in chunks
    ]
