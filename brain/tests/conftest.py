"""
Test configuration for Company Brain tests.

sys.path is configured so 'from brain...' resolves when pytest runs from the
project root without an editable install.

Shared fixtures:
  - KeywordEmbedder: deterministic bag-of-words embedder over a fixed vocabulary
    (stands in for BGE-M3 — the real faiss / rank_bm25 code paths still run)
  - index_dir:       tmp index with one namespace per seeded agent
  - session_factory: SQLite (aiosqlite) database with the schema + seeded agents
  - client:          httpx AsyncClient over ASGITransport with app.state wired
                     to the fakes (the lifespan does not run under ASGITransport)
"""
import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

_project_root = Path(__file__).resolve().parent.parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from brain.config import PipelineConfig
from brain.retrieval.retriever import tokenize

AGENT_ID = "agent-handbook"
STRICT_AGENT_ID = "agent-strict"
INACTIVE_AGENT_ID = "agent-retired"
EMPTY_AGENT_ID = "agent-empty"
USER_ID = "user-1"
OTHER_USER_ID = "user-2"

# One chunk per line of policy text; no word is shared between sources.
CORPUS_CHUNKS = [
    {
        "chunk_id": "vacation_policy_chunk_000",
        "source_id": "vacation_policy",
        "document_title": "Vacation Policy",
        "chunk_index": 0,
        "text": "Employees accrue twenty vacation days per year.",
    },
    {
        "chunk_id": "vacation_policy_chunk_001",
        "source_id": "vacation_policy",
        "document_title": "Vacation Policy",
        "chunk_index": 1,
        "text": "Unused vacation days roll over until March.",
    },
    {
        "chunk_id": "expense_policy_chunk_000",
        "source_id": "expense_policy",
        "document_title": "Expense Policy",
        "chunk_index": 0,
        "text": "Travel expenses require itemized receipts and managers approve travel expenses within one week.",
    },
    {
        "chunk_id": "security_handbook_chunk_000",
        "source_id": "security_handbook",
        "document_title": "Security Handbook",
        "chunk_index": 0,
        "text": "Laptops must use full disk encryption. Report phishing emails to the security team immediately.",
    },
]

EXACT_MATCH_QUESTION = CORPUS_CHUNKS[3]["text"]
ZERO_MATCH_QUESTION = "quantum banana orbit"


class KeywordEmbedder:
    """
    Maps each vocabulary word to one dimension; unknown words are ignored.
    Rows are L2-normalised, so identical texts score cosine 1.0 and texts with
    no shared vocabulary score 0.0.
    """

    def __init__(self, vocabulary: list[str]) -> None:
        self.vocab = {w: i for i, w in enumerate(sorted(set(vocabulary)))}

    @classmethod
    def from_texts(cls, texts: list[str]) -> "KeywordEmbedder":
        words: list[str] = []
        for text in texts:
            words.extend(tokenize(text))
        return cls(words)

    def encode(self, sentences: list[str], **kwargs: Any) -> np.ndarray:
        out = np.zeros((len(sentences), len(self.vocab)), dtype=np.float32)
        for row, sentence in enumerate(sentences):
            for token in tokenize(sentence):
                col = self.vocab.get(token)
                if col is not None:
                    out[row, col] += 1.0
            norm = np.linalg.norm(out[row])
            if norm > 0:
                out[row] /= norm
        return out


class StaticProviderFactory:
    """ProviderFactory stand-in: every agent talks to the same mocked Mistral client."""

    def __init__(self, client: Any) -> None:
        self.client = client
        self.calls: list[tuple[str, str]] = []

    def get(self, provider: str, api_key: str):
        from brain.chat.generator import MistralProvider

        self.calls.append((provider, api_key))
        return MistralProvider(client=self.client)


def make_mistral_response(content: str) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


def make_mock_mistral(answer: str = "Report phishing to the security team [Source 1].") -> MagicMock:
    """Mock Mistral client returning a canned answer."""
    mock = MagicMock()
    mock.chat.complete_async = AsyncMock(return_value=make_mistral_response(answer))
    return mock


def make_echo_mistral() -> MagicMock:
    """Mock Mistral client that answers 'answer to: <question>'."""
    async def complete_async(**kwargs):
        question = kwargs["messages"][-1]["content"]
        return make_mistral_response(f"answer to: {question}")

    mock = MagicMock()
    mock.chat.complete_async = AsyncMock(side_effect=complete_async)
    return mock


def auth_headers(user_id: str = USER_ID) -> dict:
    from brain.auth import create_access_token

    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


# ---------------------------------------------------------------------------
# Retrieval fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder.from_texts([c["text"] for c in CORPUS_CHUNKS])


@pytest.fixture
def index_dir(tmp_path: Path, embedder: KeywordEmbedder) -> Path:
    from brain.retrieval.build_index import write_agent_index

    root = tmp_path / "indexes"
    for agent_id in (AGENT_ID, STRICT_AGENT_ID, INACTIVE_AGENT_ID):
        write_agent_index(root, agent_id, [dict(c) for c in CORPUS_CHUNKS], embedder)
    return root


@pytest.fixture
def retriever(index_dir: Path, embedder: KeywordEmbedder):
    from brain.retrieval.retriever import VectorRetriever

    return VectorRetriever(index_dir, embedder)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        rerank_model="lexical",
        retry_base_delay=0.0,
        generation_timeout=2.0,
        retrieval_timeout=5.0,
        rerank_timeout=5.0,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    """File-backed SQLite with all tables and four seeded agents."""
    import brain.models  # noqa: F401 (registers tables)
    from brain.database import Base, build_engine, build_session_factory
    from brain.models.agent import AgentORM

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'brain-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = build_session_factory(engine)
    async with factory() as db:
        db.add_all(
            [
                AgentORM(id=AGENT_ID, name="Handbook", provider="mistral", model="mistral-small-latest",
                         temperature=0.4, system_prompt="You answer questions about the employee handbook."),
                AgentORM(id=STRICT_AGENT_ID, name="Strict Handbook", provider="mistral",
                         model="mistral-small-latest", temperature=0.4, source_first=True,
                         min_confidence=0.5),
                AgentORM(id=INACTIVE_AGENT_ID, name="Retired", provider="mistral",
                         model="mistral-small-latest", is_active=False),
                AgentORM(id=EMPTY_AGENT_ID, name="Empty", provider="mistral", model="mistral-small-latest"),
            ]
        )
        await db.commit()

    yield factory
    await engine.dispose()


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mistral_client() -> MagicMock:
    return make_mock_mistral()


@pytest_asyncio.fixture
async def client(session_factory, retriever, pipeline_config, mistral_client):
    """Async httpx client using ASGI transport — no live server needed."""
    from brain.chat.pipeline import ChatService
    from brain.directory import AgentDirectory, CredentialCache
    from brain.graph.graph import build_graph
    from brain.graph.nodes import PipelineResources
    from brain.main import app
    from brain.retrieval.reranker import RerankerRegistry

    directory = AgentDirectory()
    resources = PipelineResources(
        retriever=retriever,
        rerankers=RerankerRegistry(),
        providers=StaticProviderFactory(mistral_client),
        credentials=CredentialCache("test-secret", fallback_keys={"mistral": "test-key"}),
    )
    app.state.session_factory = session_factory
    app.state.directory = directory
    app.state.retriever = retriever
    app.state.pipeline_config = pipeline_config
    app.state.chat_service = ChatService(build_graph(resources), directory, pipeline_config)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
