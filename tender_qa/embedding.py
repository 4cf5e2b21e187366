"""
embedding.py - Text embedders and batched embedding for indexing.

The rest of the package only sees BaseEmbedder: embed() for the single
query vector, embed_batch() for chunk vectors. Which model sits behind it
is configuration (EmbeddingConfig.provider).

Indexing always goes through embed_in_batches(), which cuts the chunk
texts into provider-sized batches and retries failed batches with capped
exponential backoff. When the provider reports which items of a batch
failed (EmbeddingError.failed_indices) only those items are re-sent.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import numpy as np

from tender_qa.config import EmbeddingConfig, IndexingConfig, config
from tender_qa.errors import EmbeddingError
from tender_qa.resilience import backoff_delay

logger = logging.getLogger(__name__)


class BaseEmbedder(ABC):
    """Maps text to a fixed-length vector."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this embedder returns."""

    @abstractmethod
    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts, order-preserving and 1:1 with the input."""

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]


class SentenceTransformerEmbedder(BaseEmbedder):
    """
    sentence-transformers model, lazy-loaded on first use.

    Loading takes a few seconds, so the model is created once per
    embedder instance rather than at import time.
    """

    def __init__(self, embedding_config: Optional[EmbeddingConfig] = None):
        self._config = embedding_config or config.embedding
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model: %s ...", self._config.model_name)
            self._model = SentenceTransformer(self._config.model_name)
            logger.info("Embedding model loaded (dim=%d).",
                        self._model.get_sentence_embedding_dimension())
        return self._model

    @property
    def dimension(self) -> int:
        return self._config.dimension

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = self._get_model().encode(
            list(texts),
            batch_size=self._config.batch_size,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [row.astype("float32").tolist() for row in vectors]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 when either vector is all zeros."""
    va = np.asarray(a, dtype="float64")
    vb = np.asarray(b, dtype="float64")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom < 1e-12:
        return 0.0
    return float(np.dot(va, vb) / denom)


def embed_in_batches(
    embedder: BaseEmbedder,
    texts: Sequence[str],
    batch_size: Optional[int] = None,
    indexing_config: Optional[IndexingConfig] = None,
) -> List[List[float]]:
    """
    Embed texts in batches with retry. Returns vectors 1:1 with texts.

    Raises:
        EmbeddingError: a batch still had failures after the retry budget,
            or the provider returned vectors of the wrong dimension.
    """
    ic = indexing_config or config.indexing
    size = batch_size or config.embedding.batch_size
    vectors: List[List[float]] = []

    for offset in range(0, len(texts), size):
        batch = list(texts[offset:offset + size])
        vectors.extend(_embed_one_batch(embedder, batch, offset, ic))

    for i, vec in enumerate(vectors):
        if len(vec) != embedder.dimension:
            raise EmbeddingError(
                f"Vector {i} has dimension {len(vec)}, expected {embedder.dimension}"
            )
    return vectors


def _embed_one_batch(
    embedder: BaseEmbedder,
    batch: List[str],
    offset: int,
    ic: IndexingConfig,
) -> List[List[float]]:
    done: Dict[int, List[float]] = {}
    pending = list(range(len(batch)))
    attempts = ic.embed_max_retries + 1

    for attempt in range(1, attempts + 1):
        try:
            result = embedder.embed_batch([batch[i] for i in pending])
            if len(result) != len(pending):
                raise EmbeddingError(
                    f"Provider returned {len(result)} vectors for {len(pending)} inputs"
                )
            for i, vec in zip(pending, result):
                done[i] = vec
            pending = []
        except EmbeddingError as exc:
            if exc.failed_indices is not None and exc.partial_results:
                # Positions are relative to the request we just sent
                failed = set(exc.failed_indices)
                for k, i in enumerate(pending):
                    if k not in failed and k in exc.partial_results:
                        done[i] = exc.partial_results[k]
                pending = [i for i in pending if i not in done]
            logger.warning(
                "Embedding batch at offset %d attempt %d/%d failed: %s (%d items pending)",
                offset, attempt, attempts, exc, len(pending),
            )
        except Exception as exc:
            logger.warning(
                "Embedding batch at offset %d attempt %d/%d failed: %s",
                offset, attempt, attempts, exc,
            )

        if not pending:
            return [done[i] for i in range(len(batch))]
        if attempt < attempts:
            time.sleep(backoff_delay(attempt, ic.embed_base_delay, ic.embed_max_delay))

    raise EmbeddingError(
        f"Embedding batch at offset {offset} failed after {attempts} attempts "
        f"({len(pending)} of {len(batch)} items unembedded)",
        failed_indices=[offset + i for i in pending],
    )
