"""
reranking.py - Cross-encoder reranking of hybrid candidates.

A cross-encoder reads (question, chunk) pairs jointly and is far more
precise than the bi-encoder used for retrieval, but too slow to run over
the whole tender. It only sees the handful of hybrid candidates.

rerank() fills rerank_score, drops candidates under the threshold,
recomputes
    final = vector_weight * vector + lexical_weight * lexical
            + rerank_weight * rerank
and keeps final_top_k. Dropping everything is allowed: the question then
goes on with zero evidence and is escalated.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

from tender_qa.config import RerankConfig, RetrievalConfig, config
from tender_qa.retrieval import sort_candidates
from tender_qa.schemas import RetrievalCandidate

logger = logging.getLogger(__name__)


class BaseReranker(ABC):
    @abstractmethod
    def score(self, query: str, texts: Sequence[str]) -> List[float]:
        """Relevance of each text to query on a [0, 1] scale, 1:1 with texts."""


class CrossEncoderReranker(BaseReranker):
    """sentence-transformers CrossEncoder, lazy-loaded on first use."""

    def __init__(self, rerank_config: Optional[RerankConfig] = None):
        self._config = rerank_config or config.rerank
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import CrossEncoder

            logger.info("Loading cross-encoder reranker: %s ...", self._config.model_name)
            self._model = CrossEncoder(self._config.model_name, max_length=512)
            logger.info("Cross-encoder loaded.")
        return self._model

    def score(self, query: str, texts: Sequence[str]) -> List[float]:
        if not texts:
            return []
        raw = [float(s) for s in self._get_model().predict([(query, t) for t in texts])]
        return normalize_scores(raw)


def normalize_scores(raw: Sequence[float]) -> List[float]:
    """
    Bring cross-encoder output onto [0, 1].

    Models with a sigmoid head already return probabilities; models that
    return raw logits get the sigmoid applied here.
    """
    if all(0.0 <= s <= 1.0 for s in raw):
        return list(raw)
    return [_sigmoid(s) for s in raw]


def _sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def scores_usable(scores: Any, expected: int) -> bool:
    """One finite number per candidate; anything else is a reranker fault."""
    if not isinstance(scores, (list, tuple)) or len(scores) != expected:
        return False
    for s in scores:
        if isinstance(s, bool) or not isinstance(s, (int, float)):
            return False
        if not math.isfinite(s):
            return False
    return True


def rerank(
    candidates: Sequence[RetrievalCandidate],
    rerank_scores: Sequence[float],
    rerank_config: Optional[RerankConfig] = None,
    retrieval_config: Optional[RetrievalConfig] = None,
) -> List[RetrievalCandidate]:
    """
    Apply reranker scores (1:1 with candidates) and return the surviving
    top-k, best first.
    """
    rk = rerank_config or config.rerank
    rc = retrieval_config or config.retrieval
    if len(candidates) != len(rerank_scores):
        raise ValueError(
            f"{len(rerank_scores)} rerank scores for {len(candidates)} candidates"
        )

    kept: List[RetrievalCandidate] = []
    dropped = 0
    for cand, score in zip(candidates, rerank_scores):
        score = min(1.0, max(0.0, float(score)))
        if score < rk.threshold:
            dropped += 1
            continue
        kept.append(cand.model_copy(update={
            "rerank_score": score,
            "final_score": (
                rc.vector_weight * cand.vector_score
                + rc.lexical_weight * cand.lexical_score
                + rc.rerank_weight * score
            ),
        }))

    result = sort_candidates(kept)[:rk.final_top_k]
    logger.info("Reranked %d candidates: %d below threshold %.2f, kept %d",
                len(candidates), dropped, rk.threshold, len(result))
    return result
