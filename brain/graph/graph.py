"""
graph.py — Company Brain LangGraph StateGraph for one chat turn.

    guard ──blocked──────────────────────────────────────────────┐
      │continue                                                   │
    route_strategy → retrieve → rerank → assemble → decide ─blocked┤
                                                        │generate  │
                                                     generate ─────┴→ END

Usage:
    from brain.graph.graph import build_graph
    from brain.graph.nodes import PipelineResources

    # At FastAPI startup:
    app.state.chat_graph = build_graph(PipelineResources(...))

    # At request time (via ChatService):
    result = await graph.ainvoke(initial_state)
"""
from __future__ import annotations

import logging

from langgraph.graph import END, StateGraph

from brain.graph.nodes import (
    PipelineResources,
    assemble_node,
    bind,
    decide_node,
    generate_node,
    guard_node,
    rerank_node,
    retrieve_node,
    route_after_decide,
    route_after_guard,
    route_strategy_node,
)
from brain.graph.state import ChatTurnState

logger = logging.getLogger(__name__)


def build_graph(resources: PipelineResources):
    """
    Builds and compiles the answer pipeline around the given resources.
    Each call returns an independent compiled graph (tests build their own).
    """
    workflow = StateGraph(ChatTurnState)

    workflow.add_node("guard", guard_node)
    workflow.add_node("route_strategy", route_strategy_node)
    workflow.add_node("retrieve", bind(retrieve_node, resources))
    workflow.add_node("rerank", bind(rerank_node, resources))
    workflow.add_node("assemble", assemble_node)
    workflow.add_node("decide", decide_node)
    workflow.add_node("generate", bind(generate_node, resources))

    workflow.set_entry_point("guard")
    workflow.add_conditional_edges(
        "guard",
        route_after_guard,
        {"blocked": END, "continue": "route_strategy"},
    )
    workflow.add_edge("route_strategy", "retrieve")
    workflow.add_edge("retrieve", "rerank")
    workflow.add_edge("rerank", "assemble")
    workflow.add_edge("assemble", "decide")
    workflow.add_conditional_edges(
        "decide",
        route_after_decide,
        {"blocked": END, "generate": "generate"},
    )
    workflow.add_edge("generate", END)

    compiled = workflow.compile()
    logger.info("Chat LangGraph pipeline compiled")
    return compiled
