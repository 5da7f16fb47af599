"""
strategy.py — Strategy Router: which retrieval plan a turn runs.

Pure function of (request overrides, agent defaults, global defaults); each
field resolves independently with precedence request → agent → global.

  semantic_only     dense vector search only
  hybrid            dense + BM25 lexical, weighted fusion
  hybrid_no_rerank  hybrid with reranking forced off

pinecone_hybrid / simple_hybrid are accepted as legacy names for hybrid.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict

from brain.config import PipelineConfig
from brain.errors import InvalidArgument
from brain.schemas import AgentConfig

SEMANTIC_ONLY = "semantic_only"
HYBRID = "hybrid"
HYBRID_NO_RERANK = "hybrid_no_rerank"

STRATEGIES = (SEMANTIC_ONLY, HYBRID, HYBRID_NO_RERANK)

_ALIASES = {
    "pinecone_hybrid": HYBRID,
    "simple_hybrid": HYBRID,
}


class RetrievalPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: str
    rerank_enabled: bool
    rerank_model: Optional[str] = None

    @property
    def search_mode(self) -> str:
        """What the retriever executes: 'semantic_only' or 'hybrid'."""
        return SEMANTIC_ONLY if self.strategy == SEMANTIC_ONLY else HYBRID


def normalize_strategy(name: str) -> str:
    key = name.strip().lower()
    key = _ALIASES.get(key, key)
    if key not in STRATEGIES:
        raise InvalidArgument(
            f"Unknown search strategy '{name}'",
            details=[{"field": "searchStrategy", "issue": f"must be one of {', '.join(STRATEGIES)}"}],
        )
    return key


def resolve_strategy(
    config: PipelineConfig,
    agent: Optional[AgentConfig] = None,
    strategy: Optional[str] = None,
    enable_reranking: Optional[bool] = None,
    rerank_model: Optional[str] = None,
) -> RetrievalPlan:
    """Resolve the retrieval plan for one turn. Unknown names raise InvalidArgument."""
    name = strategy or (agent.search_strategy if agent else None) or config.default_strategy
    resolved = normalize_strategy(name)

    if enable_reranking is not None:
        rerank = enable_reranking
    elif agent is not None and agent.enable_reranking is not None:
        rerank = agent.enable_reranking
    else:
        rerank = config.default_enable_reranking

    if resolved == HYBRID_NO_RERANK:
        rerank = False

    model = rerank_model or (agent.rerank_model if agent else None) or config.rerank_model
    return RetrievalPlan(strategy=resolved, rerank_enabled=rerank, rerank_model=model if rerank else None)
