"""
generator.py — Answer Generator: prompt assembly + provider call.

Components:
  build_context_block()  numbered, attributed, delimited source blocks
  trim_history()         caps prior turns by count and characters (oldest dropped first)
  condense_history()     trim_history() plus an extractive summary of the dropped turns
  build_messages()       system prompt + context, then history, then the question
  MistralProvider / OpenAIProvider  thin async wrappers with one complete() method
  ProviderFactory        provider name + API key → cached provider client
  generate_answer()      provider call under with_retries(); empty answer → GenerationFailed

No HTTPException anywhere — this is pure business logic, HTTP layer is routes.py.
"""
import logging
import re
from typing import Any, Optional, Protocol

from mistralai import Mistral
from openai import AsyncOpenAI

from brain.chat.context import AssembledContext
from brain.config import PipelineConfig
from brain.errors import GenerationFailed, InvalidArgument
from brain.retry import with_retries

logger = logging.getLogger(__name__)

FALLBACK_SYSTEM_PROMPT = """You are a company knowledge assistant.

Rules you MUST follow:
1. Answer ONLY from the sources provided. Do not use outside knowledge.
2. If the sources do not contain the answer, say so plainly.
3. Cite the sources you used by their number, e.g. [Source 2].
4. Keep answers concise and factual."""

CONTEXT_OPEN = "=== SOURCES ==="
CONTEXT_CLOSE = "=== END SOURCES ==="
SUMMARY_HEADER = "Summary of the earlier conversation:"

MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

def build_context_block(context: AssembledContext) -> str:
    blocks = []
    for i, chunk in enumerate(context.chunks, 1):
        title = chunk.document_title or chunk.source_id
        blocks.append(f"[Source {i} — {title} (id: {chunk.source_id})]\n{chunk.text}")
    return f"{CONTEXT_OPEN}\n" + "\n\n".join(blocks) + f"\n{CONTEXT_CLOSE}"


def _dialogue(history: list[dict]) -> list[dict]:
    return [
        {"role": m["role"], "content": m["content"]}
        for m in history
        if m.get("role") in ("user", "assistant") and m.get("content")
    ]


def trim_history(
    history: list[dict],
    max_messages: int,
    max_chars: int,
) -> list[dict]:
    """
    Keep the most recent turns that fit both caps, in original order.
    Only user/assistant turns are kept.
    """
    turns = _dialogue(history)
    if max_messages <= 0:
        return []
    kept: list[dict] = []
    used = 0
    for turn in reversed(turns[-max_messages:]):
        if used + len(turn["content"]) > max_chars:
            break
        kept.append(turn)
        used += len(turn["content"])
    kept.reverse()
    return kept


# ---------------------------------------------------------------------------
# History summarization
# ---------------------------------------------------------------------------

TOPIC_PATTERNS = [
    re.compile(p)
    for p in (
        r"\b(?:about|regarding|concerning)\s+([^.!?]+)[.!?]",
        r"\b(?:discussing|talking about|explaining)\s+([^.!?]+)[.!?]",
        r"\b(?:what is|how to|explain)\s+([^.!?]+)[.!?]",
        r"\b(?:tell me about|information on)\s+([^.!?]+)[.!?]",
    )
]
MAX_TOPICS = 5
MIN_TOPIC_CHARS = 4
MAX_TOPIC_CHARS = 49
SUMMARY_WINDOW = 12      # most recent dropped turns that get a line each
QUESTION_PREVIEW = 60
ANSWER_PREVIEW = 100
CONTENT_PREVIEW = 80


def _preview(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "..."


def extract_topics(turns: list[dict]) -> list[str]:
    """Phrases like 'tell me about X.' / 'how to Y?' from the turns, first seen first."""
    content = " ".join(t["content"] for t in turns).lower()
    topics: list[str] = []
    for pattern in TOPIC_PATTERNS:
        for match in pattern.finditer(content):
            topic = match.group(1).strip()
            if MIN_TOPIC_CHARS <= len(topic) <= MAX_TOPIC_CHARS and topic not in topics:
                topics.append(topic)
    return topics[:MAX_TOPICS]


def summarize_turns(turns: list[dict]) -> str:
    """
    Short extractive digest of earlier turns: detected topics, then one
    Q/A line pair per exchange over the last SUMMARY_WINDOW turns.
    """
    lines: list[str] = []
    window = turns[-SUMMARY_WINDOW:]
    i = 0
    while i < len(window):
        turn = window[i]
        nxt = window[i + 1] if i + 1 < len(window) else None
        if turn["role"] == "user" and nxt is not None and nxt["role"] == "assistant":
            lines.append(f"Q: {_preview(turn['content'], QUESTION_PREVIEW)}")
            lines.append(f"A: {_preview(nxt['content'], ANSWER_PREVIEW)}")
            i += 2
            continue
        speaker = "User" if turn["role"] == "user" else "Assistant"
        lines.append(f"{speaker}: {_preview(turn['content'], CONTENT_PREVIEW)}")
        i += 1

    summary = ""
    topics = extract_topics(turns)
    if topics:
        summary += f"Topics discussed: {', '.join(topics)}.\n\n"
    if len(turns) > len(window):
        summary += f"({len(turns) - len(window)} older messages omitted)\n"
    return summary + "\n".join(lines)


def condense_history(
    history: list[dict],
    max_messages: int,
    max_chars: int,
    summary_threshold: int,
) -> tuple[list[dict], Optional[str]]:
    """
    trim_history() plus a summary of whatever it dropped.

    Returns (kept turns, summary). The summary is None unless the conversation
    has more than summary_threshold turns and trimming removed at least one.
    """
    turns = _dialogue(history)
    kept = trim_history(turns, max_messages, max_chars)
    dropped = turns[: len(turns) - len(kept)]
    if not dropped or len(turns) <= summary_threshold:
        return kept, None
    return kept, summarize_turns(dropped)


def build_messages(
    system_prompt: Optional[str],
    context: AssembledContext,
    history: list[dict],
    question: str,
    summary: Optional[str] = None,
) -> list[dict]:
    system = (system_prompt or "").strip() or FALLBACK_SYSTEM_PROMPT
    content = (
        f"{system}\n\n"
        "Use the sources below to answer. Each source is numbered and attributed.\n\n"
        f"{build_context_block(context)}"
    )
    if summary:
        content += f"\n\n{SUMMARY_HEADER}\n{summary}"
    return [
        {"role": "system", "content": content},
        *history,
        {"role": "user", "content": question},
    ]


def clamp_temperature(value: Optional[float], default: float) -> float:
    t = default if value is None else value
    return min(MAX_TEMPERATURE, max(MIN_TEMPERATURE, t))


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ChatProvider(Protocol):
    name: str

    async def complete(
        self, model: str, messages: list[dict], temperature: float, max_tokens: int
    ) -> str: ...


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # Chunked content (list of text parts)
    return "".join(getattr(part, "text", "") or "" for part in content)


class MistralProvider:
    name = "mistral"

    def __init__(self, api_key: str = "", client: Optional[Any] = None) -> None:
        self.client = client if client is not None else Mistral(api_key=api_key)

    async def complete(
        self, model: str, messages: list[dict], temperature: float, max_tokens: int
    ) -> str:
        response = await self.client.chat.complete_async(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return _content_text(response.choices[0].message.content)


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str = "", client: Optional[Any] = None) -> None:
        self.client = client if client is not None else AsyncOpenAI(api_key=api_key, max_retries=0)

    async def complete(
        self, model: str, messages: list[dict], temperature: float, max_tokens: int
    ) -> str:
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return _content_text(response.choices[0].message.content)


PROVIDERS: dict[str, type] = {
    MistralProvider.name: MistralProvider,
    OpenAIProvider.name: OpenAIProvider,
}


class ProviderFactory:
    """One client per (provider, key) — reuses HTTP connection pools across turns."""

    def __init__(self) -> None:
        self._clients: dict[tuple[str, str], ChatProvider] = {}

    def get(self, provider: str, api_key: str) -> ChatProvider:
        cls = PROVIDERS.get(provider)
        if cls is None:
            raise InvalidArgument(f"Unsupported model provider '{provider}'")
        key = (provider, api_key)
        client = self._clients.get(key)
        if client is None:
            client = cls(api_key=api_key)
            self._clients[key] = client
        return client


# ---------------------------------------------------------------------------
# Main async generation function
# ---------------------------------------------------------------------------

async def generate_answer(
    provider: ChatProvider,
    model: str,
    messages: list[dict],
    temperature: float,
    config: PipelineConfig,
    log_context: Optional[dict] = None,
) -> str:
    """
    Call the provider with bounded retries.
    Raises GenerationFailed on exhaustion (502/504) or an empty answer.
    """
    logger.info(
        "Calling provider=%s model=%s messages=%d %s",
        provider.name,
        model,
        len(messages),
        " ".join(f"{k}={v}" for k, v in (log_context or {}).items()),
    )
    answer = await with_retries(
        lambda: provider.complete(model, messages, temperature, config.max_tokens),
        failure=GenerationFailed,
        label="Generation",
        attempts=config.max_attempts,
        timeout=config.generation_timeout,
        base_delay=config.retry_base_delay,
        context=log_context,
    )
    answer = answer.strip()
    if not answer:
        logger.error("Provider returned an empty answer provider=%s model=%s", provider.name, model)
        raise GenerationFailed("Model provider returned an empty answer")
    logger.info("Provider response received answer_len=%d", len(answer))
    return answer
