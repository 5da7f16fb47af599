"""
blocking.py — Blocking Policy: is there enough evidence to answer at all?

A blocked turn is a normal outcome (HTTP 200, blocked=true), never an error.

  no_relevant_sources      the assembled context is empty — always blocks
  low_confidence           the best chunk scores below min_confidence
                           (agent value, else the global default)
  general_knowledge_query  strict agent asked for jokes, weather, news and
                           similar things no uploaded source can answer;
                           checked before retrieval runs
"""
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

from brain.chat.context import AssembledContext

NO_RELEVANT_SOURCES = "no_relevant_sources"
LOW_CONFIDENCE = "low_confidence"
GENERAL_KNOWLEDGE_QUERY = "general_knowledge_query"

BLOCKED_MESSAGES = {
    NO_RELEVANT_SOURCES: (
        "I couldn't find anything in this agent's sources that answers your question. "
        "Try rephrasing it, or ask about a topic covered by the uploaded documents."
    ),
    LOW_CONFIDENCE: (
        "The sources I found don't match your question closely enough for a reliable answer. "
        "Could you ask more specifically about the uploaded content?"
    ),
    GENERAL_KNOWLEDGE_QUERY: (
        "I'm designed to help with information from your uploaded sources. "
        "I can't provide general information like jokes, weather, or current events. "
        "Is there something specific about your content I can help you with instead?"
    ),
}

GENERAL_KNOWLEDGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"tell me a joke",
        r"what is (the|a) weather",
        r"(current events|news|latest)",
        r"what is (the capital|population) of",
        r"who is (the president|prime minister)",
        r"what happened (today|yesterday|in)",
        r"explain (physics|chemistry|biology|math)",
        r"calculate|solve this",
        r"what time is it",
        r"what day is it",
    )
]


class BlockDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    blocked: bool
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return BLOCKED_MESSAGES.get(self.reason) if self.reason else None


ALLOW = BlockDecision(blocked=False)


def is_general_knowledge_query(question: str) -> bool:
    normalized = question.strip().lower()
    return any(p.search(normalized) for p in GENERAL_KNOWLEDGE_PATTERNS)


def screen_question(question: str, source_first: bool) -> BlockDecision:
    """Pre-retrieval check; only strict agents decline general-knowledge questions."""
    if source_first and is_general_knowledge_query(question):
        return BlockDecision(blocked=True, reason=GENERAL_KNOWLEDGE_QUERY)
    return ALLOW


def evaluate_context(context: AssembledContext, min_confidence: float) -> BlockDecision:
    """Post-assembly check; applies to every agent, strict or not."""
    if context.source_count == 0:
        return BlockDecision(blocked=True, reason=NO_RELEVANT_SOURCES)
    best = context.best_score or 0.0
    if best < min_confidence:
        return BlockDecision(blocked=True, reason=LOW_CONFIDENCE)
    return ALLOW
