"""
lexical_index.py - BM25 keyword scoring over the same chunk set.

Embeddings are weak on exact tokens that matter in tenders: standard codes
("IS 456"), clause numbers, dates, EMD amounts. BM25 catches those, and
the hybrid retriever blends both scores.

BM25 statistics (IDF, average length) are computed over the filtered
corpus at query time, i.e. over the active chunks of the tender being
asked about. Scores are clamped at 0 and divided by the best score of
the query so they sit on the same [0, 1] scale as cosine similarity.

Okapi's IDF, log((N - n + 0.5) / (n + 0.5)), is 0 or negative whenever a
term sits in half the chunks or more, which on a one- or two-chunk scope
is every matching term. The index uses the Lucene form
log(1 + (N - n + 0.5) / (n + 0.5)) instead: always positive, same ranking
on large corpora.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence, Tuple

from rank_bm25 import BM25Okapi

from tender_qa.schemas import RetrievalFilter
from tender_qa.vector_index import Hit, require_filter, rank_hits

logger = logging.getLogger(__name__)

# Keeps "2025-12-01", "3.2.1" and "a/b" together as single terms
_TOKEN_RE = re.compile(r"[a-z0-9]+(?:[-./][a-z0-9]+)*")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class _PositiveIdfBM25(BM25Okapi):
    """BM25Okapi scoring with a non-negative IDF."""

    def _calc_idf(self, nd):
        for word, doc_count in nd.items():
            self.idf[word] = math.log(
                1.0 + (self.corpus_size - doc_count + 0.5) / (doc_count + 0.5)
            )


class BaseLexicalIndex(ABC):
    """Keyword index; same ids, metadata and filter contract as the vector index."""

    @abstractmethod
    def upsert_many(
        self,
        chunk_ids: Sequence[str],
        texts: Sequence[str],
        metadatas: Sequence[Dict[str, Any]],
    ) -> None:
        ...

    def upsert(self, chunk_id: str, text: str, metadata: Dict[str, Any]) -> None:
        self.upsert_many([chunk_id], [text], [metadata])

    @abstractmethod
    def search(self, query_text: str, k: int, filter: RetrievalFilter) -> List[Hit]:
        ...

    @abstractmethod
    def delete(self, chunk_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    def ids_for_generation(self, generation: str) -> List[str]:
        ...


class BM25LexicalIndex(BaseLexicalIndex):
    """In-process BM25 index (Okapi term weighting, positive IDF)."""

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self._k1 = k1
        self._b = b
        self._docs: Dict[str, Tuple[List[str], Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._docs)

    def upsert_many(self, chunk_ids, texts, metadatas) -> None:
        if not (len(chunk_ids) == len(texts) == len(metadatas)):
            raise ValueError("upsert length mismatch")
        with self._lock:
            for cid, text, meta in zip(chunk_ids, texts, metadatas):
                self._docs[cid] = (tokenize(text), dict(meta))

    def search(self, query_text, k, filter) -> List[Hit]:
        flt = require_filter(filter)
        query_tokens = tokenize(query_text)
        if not flt.generations or not query_tokens or k <= 0:
            return []

        with self._lock:
            scoped = sorted(
                (cid, tokens) for cid, (tokens, meta) in self._docs.items()
                if flt.matches(meta)
            )
        # BM25Okapi divides by the average document length
        scoped = [(cid, tokens) for cid, tokens in scoped if tokens]
        if not scoped:
            return []

        bm25 = _PositiveIdfBM25([tokens for _, tokens in scoped], k1=self._k1, b=self._b)
        raw = [max(0.0, float(s)) for s in bm25.get_scores(query_tokens)]
        best = max(raw)
        if best <= 0:
            return []
        hits = [(cid, score / best) for (cid, _), score in zip(scoped, raw) if score > 0]
        return rank_hits(hits, k)

    def delete(self, chunk_ids) -> None:
        with self._lock:
            for cid in chunk_ids:
                self._docs.pop(cid, None)

    def ids_for_generation(self, generation: str) -> List[str]:
        with self._lock:
            return sorted(
                cid for cid, (_, meta) in self._docs.items()
                if meta.get("generation") == generation
            )
