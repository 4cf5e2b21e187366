"""
config.py - Central configuration for TenderQA.

Every tunable knob of the retrieval-and-confidence pipeline lives here:
chunk window sizes, hybrid weights, rerank threshold, context budget,
confidence thresholds, retry budgets and cache lifetimes. Deployments
override the defaults through environment variables; tests build their
own Config instances and pass them in explicitly.

The weights and thresholds below are starting points carried over from
the tender QA design notes, not tuned constants. Change them here, never
inline in the module that uses them.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import os
import logging

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass
class ChunkingConfig:
    """
    Window parameters for the chunker.

    Windows are expected in the 250-500 token range with an overlap of
    20-30% of the window. Values outside those ranges are accepted but
    logged at startup.
    """
    window_tokens: int = _env_int("CHUNK_WINDOW_TOKENS", 400)
    overlap_tokens: int = _env_int("CHUNK_OVERLAP_TOKENS", 100)
    split_on_page_breaks: bool = True
    tiktoken_model: str = "cl100k_base"


@dataclass
class EmbeddingConfig:
    """Embedding provider settings. dimension must match the model output."""
    provider: str = os.getenv("EMBEDDING_PROVIDER", "sentence-transformers")
    model_name: str = os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2")
    dimension: int = _env_int("EMBEDDING_DIM", 384)
    batch_size: int = 32


@dataclass
class RetrievalConfig:
    """
    Hybrid retrieval settings.

    final_score = vector_weight * vector + lexical_weight * lexical
                  + rerank_weight * rerank
    The rerank term is 0 until the reranker runs.
    """
    vector_backend: str = os.getenv("VECTOR_BACKEND", "memory")  # memory | chroma
    lexical_backend: Optional[str] = os.getenv("LEXICAL_BACKEND", "bm25") or None
    chroma_persist_dir: Optional[str] = os.getenv("CHROMA_PERSIST_DIR") or None
    chroma_collection: str = "tender_chunks"
    initial_vector_k: int = 15
    lexical_k: int = 15
    vector_weight: float = _env_float("RETRIEVAL_VECTOR_WEIGHT", 0.6)
    lexical_weight: float = _env_float("RETRIEVAL_LEXICAL_WEIGHT", 0.2)
    rerank_weight: float = _env_float("RETRIEVAL_RERANK_WEIGHT", 0.2)


@dataclass
class RerankConfig:
    """Cross-encoder reranking. provider=None disables the stage."""
    provider: Optional[str] = os.getenv("RERANK_PROVIDER", "cross-encoder") or None
    model_name: str = os.getenv("RERANK_MODEL", "cross-encoder/ms-marco-MiniLM-L-6-v2")
    threshold: float = _env_float("RERANK_THRESHOLD", 0.45)
    final_top_k: int = 4


@dataclass
class ContextConfig:
    token_budget: int = _env_int("CONTEXT_TOKEN_BUDGET", 1500)


@dataclass
class LLMConfig:
    """
    Answer generator settings (llama-cpp-python, GGUF model on disk).

    Low temperature keeps answers close to the context; 0.0 makes
    llama.cpp greedy and prone to repetition loops.
    """
    provider: str = os.getenv("LLM_PROVIDER", "llama-cpp")
    model_path: str = os.getenv(
        "LLM_MODEL_PATH",
        "models/mistral-7b-instruct-v0.2.Q4_K_M.gguf",
    )
    n_ctx: int = 4096
    max_tokens: int = 512
    temperature: float = 0.1
    n_threads: int = 0  # 0 = auto-detect


@dataclass
class ConfidenceConfig:
    """
    Tier thresholds and escalation policy.

    low:  generator_confidence < low_confidence, a major rule check failed,
          or no evidence.
    high: generator_confidence >= high_confidence and
          similarity >= high_similarity and every rule check passed.
    """
    low_confidence: float = _env_float("CONFIDENCE_LOW", 0.6)
    high_confidence: float = _env_float("CONFIDENCE_HIGH", 0.85)
    high_similarity: float = _env_float("SIMILARITY_HIGH", 0.7)
    numeric_major_ratio: float = 0.5
    high_stakes_classifications: Tuple[str, ...] = ("LEGAL_CLARIFICATION", "NEGOTIATION")
    # Negotiation is never settled by the model, whatever the tier
    always_escalate_classifications: Tuple[str, ...] = ("UNKNOWN", "NEGOTIATION")
    score_weights: Tuple[float, float, float] = (0.5, 0.3, 0.2)
    escalation_notice: str = (
        "Your question has been forwarded to the tender team for review. "
        "You will receive a response once it has been answered."
    )


@dataclass
class ResilienceConfig:
    """
    Per-stage timeouts (seconds) and the shared retry budget for every
    external call. max_retries counts retries after the first attempt.
    """
    embed_timeout: float = _env_float("EMBED_TIMEOUT", 10.0)
    search_timeout: float = _env_float("SEARCH_TIMEOUT", 5.0)
    rerank_timeout: float = _env_float("RERANK_TIMEOUT", 10.0)
    generation_timeout: float = _env_float("GENERATION_TIMEOUT", 120.0)
    max_retries: int = _env_int("MAX_RETRIES", 2)
    base_delay: float = 0.5
    max_delay: float = 8.0


@dataclass
class CacheConfig:
    enabled: bool = True
    ttl_seconds: float = _env_float("ANSWER_CACHE_TTL", 300.0)
    max_entries: int = 512


@dataclass
class IndexingConfig:
    """retained_versions counts the active generation."""
    retained_versions: int = 2
    max_workers: int = _env_int("INDEX_WORKERS", 4)
    embed_max_retries: int = 3
    embed_base_delay: float = 1.0
    embed_max_delay: float = 16.0


@dataclass
class Config:
    """Master config - instantiated once, used everywhere."""
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    rerank: RerankConfig = field(default_factory=RerankConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    # One JSON file per question; unset keeps questions in memory
    questions_dir: Optional[str] = os.getenv("QUESTIONS_DIR") or None
    # Chunk records and active versions; unset keeps them in memory
    store_dir: Optional[str] = os.getenv("STORE_DIR") or None

    def __post_init__(self):
        """Validate on startup so a bad deploy fails before the first query."""
        r = self.retrieval
        for name in ("vector_weight", "lexical_weight", "rerank_weight"):
            value = getattr(r, name)
            if not 0 <= value <= 1:
                raise ValueError(f"{name} must be in [0,1], got {value}")

        weight_sum = r.vector_weight + r.lexical_weight + r.rerank_weight
        if abs(weight_sum - 1.0) > 0.01:
            logger.warning(
                "Retrieval weights sum to %.2f (expected 1.0). "
                "This may give unexpected ranking results.", weight_sum
            )

        c = self.chunking
        if c.window_tokens <= 0:
            raise ValueError(f"window_tokens must be positive, got {c.window_tokens}")
        if not 0 <= c.overlap_tokens < c.window_tokens:
            raise ValueError(
                f"overlap_tokens must be in [0, window_tokens), got {c.overlap_tokens}"
            )
        if not 250 <= c.window_tokens <= 500:
            logger.warning("window_tokens=%d is outside the usual 250-500 range", c.window_tokens)
        ratio = c.overlap_tokens / c.window_tokens
        if not 0.2 <= ratio <= 0.3:
            logger.warning("overlap is %.0f%% of the window (usual: 20-30%%)", ratio * 100)

        conf = self.confidence
        if not 0 <= conf.low_confidence <= conf.high_confidence <= 1:
            raise ValueError(
                "Confidence thresholds must satisfy 0 <= low <= high <= 1, got "
                f"low={conf.low_confidence} high={conf.high_confidence}"
            )
        if not 0 <= self.rerank.threshold <= 1:
            raise ValueError(f"rerank threshold must be in [0,1], got {self.rerank.threshold}")
        if self.context.token_budget <= 0:
            raise ValueError("context token_budget must be positive")
        if self.indexing.retained_versions < 1:
            raise ValueError("retained_versions must keep at least the active version")


# Singleton - every module falls back to this same instance
config = Config()
