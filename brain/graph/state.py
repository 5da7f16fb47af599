"""
state.py — ChatTurnState TypedDict for the LangGraph answer pipeline.

One state value flows through every node of a single chat turn:
  guard → route_strategy → retrieve → rerank → assemble → decide → generate

Inputs are set by ChatService before graph.ainvoke(); every node adds or
overwrites only the keys it owns. Session resolution and persistence live
outside the graph.
"""
from __future__ import annotations

from typing import Any, Optional
from typing_extensions import TypedDict


class ChatTurnState(TypedDict, total=False):
    """
    Shared state for one chat turn.
    'total=False' means all fields are optional at graph construction time.
    """

    # ---- Inputs (set before graph.ainvoke) ----------------------------------
    question: str
    session_id: str
    agent: Any                           # AgentConfig snapshot, immutable for the turn
    pipeline_config: Any                 # PipelineConfig for this turn
    history: list[dict]                  # Prior {role, content} turns, oldest first
    request_strategy: Optional[str]
    request_rerank: Optional[bool]
    request_rerank_model: Optional[str]

    # ---- route_strategy -----------------------------------------------------
    plan: Any                            # RetrievalPlan

    # ---- retrieve / rerank --------------------------------------------------
    chunks: list[Any]                    # RetrievedChunk, ordered by score
    rerank_degraded: bool
    retrieval_ms: float
    rerank_ms: float

    # ---- assemble / decide --------------------------------------------------
    context: Any                         # AssembledContext
    assembly_ms: float
    decision: Any                        # BlockDecision

    # ---- generate -----------------------------------------------------------
    answer: str
    cached: bool
    generation_ms: float
