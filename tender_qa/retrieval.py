"""
retrieval.py - Hybrid vector + BM25 retrieval.

Per query:
  1. one embedding call for the question
  2. vector search (k = initial_vector_k) and BM25 search run concurrently
     under the same mandatory filter
  3. merge by chunk_id:
         final = vector_weight * vector + lexical_weight * lexical
     a score missing from one side counts as 0
  4. resolve the chunk records and order by (final desc, chunk_id asc)

The rerank term of the final score is added later by reranking.rerank().
Each external call goes through call_with_retry; when any of them runs out
of retries the query gets RetrievalFailure, which the pipeline turns into
an escalation with no evidence.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from tender_qa.config import Config, config as default_config
from tender_qa.embedding import BaseEmbedder
from tender_qa.errors import RetrievalFailure, StageExhausted
from tender_qa.lexical_index import BaseLexicalIndex
from tender_qa.resilience import call_with_retry
from tender_qa.schemas import Chunk, RetrievalCandidate, RetrievalFilter
from tender_qa.stores import ChunkStore
from tender_qa.vector_index import BaseVectorIndex, Hit

logger = logging.getLogger(__name__)


def merge_hits(
    vector_hits: Sequence[Hit],
    lexical_hits: Sequence[Hit],
    vector_weight: float,
    lexical_weight: float,
) -> List[RetrievalCandidate]:
    """
    Merge vector and lexical hits by chunk_id into candidates.

    Cosine similarity is clamped to [0, 1] before weighting so that an
    anti-correlated chunk cannot pull the hybrid score below zero.
    """
    vector = {cid: min(1.0, max(0.0, score)) for cid, score in vector_hits}
    lexical = {cid: min(1.0, max(0.0, score)) for cid, score in lexical_hits}

    candidates: List[RetrievalCandidate] = []
    for cid in set(vector) | set(lexical):
        v = vector.get(cid, 0.0)
        lx = lexical.get(cid, 0.0)
        candidates.append(RetrievalCandidate(
            chunk_id=cid,
            vector_score=v,
            lexical_score=lx,
            final_score=vector_weight * v + lexical_weight * lx,
        ))
    return sort_candidates(candidates)


def sort_candidates(candidates: List[RetrievalCandidate]) -> List[RetrievalCandidate]:
    return sorted(candidates, key=lambda c: (-round(c.final_score, 9), c.chunk_id))


class HybridRetriever:
    """
    Usage:
        retriever = HybridRetriever(embedder, vector_index, chunk_store,
                                    lexical_index=bm25)
        candidates = await retriever.retrieve("EMD amount?", flt)
    """

    def __init__(
        self,
        embedder: BaseEmbedder,
        vector_index: BaseVectorIndex,
        chunk_store: ChunkStore,
        lexical_index: Optional[BaseLexicalIndex] = None,
        cfg: Optional[Config] = None,
    ):
        self._embedder = embedder
        self._vector_index = vector_index
        self._lexical_index = lexical_index
        self._chunk_store = chunk_store
        self._config = cfg or default_config

    async def retrieve(self, query_text: str, filter: RetrievalFilter) -> List[RetrievalCandidate]:
        """
        Hybrid candidates for query_text inside filter, best first.

        Raises:
            RetrievalFailure: embedding or index search exhausted retries.
        """
        if not isinstance(filter, RetrievalFilter):
            raise ValueError("retrieve() requires a RetrievalFilter")
        if not filter.generations:
            logger.info("No active documents for tender %s; nothing to retrieve", filter.tender_id)
            return []

        rc = self._config.retrieval
        res = self._config.resilience
        try:
            query_vector = await call_with_retry(
                "query embedding", self._embedder.embed, query_text,
                timeout=res.embed_timeout, resilience=res,
            )
        except StageExhausted as exc:
            raise RetrievalFailure(str(exc)) from exc

        searches = [asyncio.ensure_future(call_with_retry(
            "vector search", self._vector_index.search,
            query_vector, rc.initial_vector_k, filter,
            timeout=res.search_timeout, resilience=res,
        ))]
        if self._lexical_index is not None:
            searches.append(asyncio.ensure_future(call_with_retry(
                "lexical search", self._lexical_index.search,
                query_text, rc.lexical_k, filter,
                timeout=res.search_timeout, resilience=res,
            )))
        try:
            results = await asyncio.gather(*searches)
        except BaseException as exc:
            # The first failure (or our own cancellation) ends both searches
            for task in searches:
                task.cancel()
            await asyncio.gather(*searches, return_exceptions=True)
            if isinstance(exc, StageExhausted):
                raise RetrievalFailure(str(exc)) from exc
            raise

        vector_hits = results[0]
        lexical_hits = results[1] if len(results) > 1 else []
        merged = merge_hits(vector_hits, lexical_hits, rc.vector_weight, rc.lexical_weight)
        candidates = self._attach_chunks(merged, filter)

        logger.info(
            "Retrieved %d candidates for '%s...' (%d vector, %d lexical, top=%.3f)",
            len(candidates), query_text[:40], len(vector_hits), len(lexical_hits),
            candidates[0].final_score if candidates else 0.0,
        )
        return candidates

    def _attach_chunks(
        self,
        candidates: List[RetrievalCandidate],
        filter: RetrievalFilter,
    ) -> List[RetrievalCandidate]:
        """Resolve chunk records; drop ids the chunk store does not know."""
        found: Dict[str, Chunk] = self._chunk_store.get_many([c.chunk_id for c in candidates])
        resolved: List[RetrievalCandidate] = []
        for cand in candidates:
            chunk = found.get(cand.chunk_id)
            if chunk is None:
                logger.warning("Index returned unknown chunk %s; skipping", cand.chunk_id)
                continue
            if chunk.tender_id != filter.tender_id:
                # Index metadata and chunk store disagree; never serve it
                logger.error("Chunk %s belongs to tender %s, not %s",
                             chunk.chunk_id, chunk.tender_id, filter.tender_id)
                continue
            resolved.append(cand.model_copy(update={
                "chunk": chunk,
                "document_id": chunk.document_id,
                "page_start": chunk.page_start,
                "page_end": chunk.page_end,
            }))
        return resolved
