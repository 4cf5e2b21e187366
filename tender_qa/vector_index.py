"""
vector_index.py - Chunk vector storage and filtered cosine search.

Two backends share one contract:

  InMemoryVectorIndex  numpy, exact cosine; tests and single-process setups
  ChromaVectorIndex    chromadb collection with hnsw:space=cosine; vectors
                       are computed by our embedder and passed in, the
                       collection never embeds anything itself

search() has no optional filter: every query is scoped to a tender and to
the active generations of its documents, so a chunk from another tender or
from a superseded version cannot come back. Results are ordered by
similarity descending with ties broken by ascending chunk_id.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from tender_qa.schemas import RetrievalFilter

logger = logging.getLogger(__name__)

Hit = Tuple[str, float]

# Scores equal to this many decimals count as ties
_TIE_DECIMALS = 9


def rank_hits(hits: Iterable[Hit], k: int) -> List[Hit]:
    """Order hits by score descending, then chunk_id ascending; keep k."""
    ordered = sorted(hits, key=lambda h: (-round(h[1], _TIE_DECIMALS), h[0]))
    return ordered[:k]


def require_filter(filter: Optional[RetrievalFilter]) -> RetrievalFilter:
    if not isinstance(filter, RetrievalFilter):
        raise ValueError("Index search requires a RetrievalFilter scoped to a tender")
    return filter


class BaseVectorIndex(ABC):
    """Vector store for chunk embeddings."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    def upsert_many(
        self,
        chunk_ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadatas: Sequence[Dict[str, Any]],
    ) -> None:
        """Insert or replace. Re-upserting a chunk_id replaces vector and metadata."""

    def upsert(self, chunk_id: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        self.upsert_many([chunk_id], [vector], [metadata])

    @abstractmethod
    def search(self, query_vector: Sequence[float], k: int, filter: RetrievalFilter) -> List[Hit]:
        """Top-k (chunk_id, cosine similarity) within the filter."""

    @abstractmethod
    def delete(self, chunk_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    def ids_for_generation(self, generation: str) -> List[str]:
        ...

    @abstractmethod
    def get_vectors(self, chunk_ids: Sequence[str]) -> Dict[str, List[float]]:
        ...

    def _check_batch(self, chunk_ids, vectors, metadatas) -> None:
        if not (len(chunk_ids) == len(vectors) == len(metadatas)):
            raise ValueError(
                f"upsert length mismatch: {len(chunk_ids)} ids, "
                f"{len(vectors)} vectors, {len(metadatas)} metadatas"
            )
        for cid, vec in zip(chunk_ids, vectors):
            if len(vec) != self.dimension:
                raise ValueError(
                    f"Vector for {cid} has dimension {len(vec)}, expected {self.dimension}"
                )


class InMemoryVectorIndex(BaseVectorIndex):
    """Exact cosine search over vectors held in process memory."""

    def __init__(self, dimension: int):
        self._dimension = dimension
        self._raw: Dict[str, List[float]] = {}
        self._unit: Dict[str, np.ndarray] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    @property
    def dimension(self) -> int:
        return self._dimension

    def __len__(self) -> int:
        return len(self._raw)

    def upsert_many(self, chunk_ids, vectors, metadatas) -> None:
        self._check_batch(chunk_ids, vectors, metadatas)
        with self._lock:
            for cid, vec, meta in zip(chunk_ids, vectors, metadatas):
                arr = np.asarray(vec, dtype="float64")
                norm = float(np.linalg.norm(arr))
                self._raw[cid] = [float(x) for x in vec]
                self._unit[cid] = arr / norm if norm > 0 else arr
                self._metadata[cid] = dict(meta)

    def search(self, query_vector, k, filter) -> List[Hit]:
        flt = require_filter(filter)
        if not flt.generations or k <= 0:
            return []
        q = np.asarray(query_vector, dtype="float64")
        q_norm = float(np.linalg.norm(q))
        if q_norm == 0:
            return []
        q = q / q_norm

        with self._lock:
            scoped = [cid for cid, meta in self._metadata.items() if flt.matches(meta)]
            if not scoped:
                return []
            matrix = np.stack([self._unit[cid] for cid in scoped])
        scores = matrix @ q
        return rank_hits(zip(scoped, (float(s) for s in scores)), k)

    def delete(self, chunk_ids) -> None:
        with self._lock:
            for cid in chunk_ids:
                self._raw.pop(cid, None)
                self._unit.pop(cid, None)
                self._metadata.pop(cid, None)

    def ids_for_generation(self, generation: str) -> List[str]:
        with self._lock:
            return sorted(
                cid for cid, meta in self._metadata.items()
                if meta.get("generation") == generation
            )

    def get_vectors(self, chunk_ids) -> Dict[str, List[float]]:
        with self._lock:
            return {cid: list(self._raw[cid]) for cid in chunk_ids if cid in self._raw}


class ChromaVectorIndex(BaseVectorIndex):
    """
    chromadb-backed index.

    persist_dir=None gives an in-process ephemeral client. HNSW is
    approximate, so search asks chromadb for twice the requested k and
    re-ranks locally; that keeps tie-breaking deterministic at the cut.
    """

    _BATCH_SIZE = 500  # chromadb rejects very large add/upsert calls

    def __init__(
        self,
        dimension: int,
        persist_dir: Optional[str] = None,
        collection_name: str = "tender_chunks",
        client: Any = None,
    ):
        import chromadb

        self._dimension = dimension
        if client is None:
            client = (
                chromadb.PersistentClient(path=persist_dir)
                if persist_dir
                else chromadb.EphemeralClient()
            )
        self._client = client
        self._collection = client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )
        logger.info("ChromaDB collection '%s' ready (%d vectors)",
                    collection_name, self._collection.count())

    @property
    def dimension(self) -> int:
        return self._dimension

    def upsert_many(self, chunk_ids, vectors, metadatas) -> None:
        self._check_batch(chunk_ids, vectors, metadatas)
        for i in range(0, len(chunk_ids), self._BATCH_SIZE):
            self._collection.upsert(
                ids=list(chunk_ids[i:i + self._BATCH_SIZE]),
                embeddings=[[float(x) for x in v] for v in vectors[i:i + self._BATCH_SIZE]],
                metadatas=[dict(m) for m in metadatas[i:i + self._BATCH_SIZE]],
            )

    def search(self, query_vector, k, filter) -> List[Hit]:
        flt = require_filter(filter)
        if not flt.generations or k <= 0:
            return []

        conditions: List[Dict[str, Any]] = [
            {"tender_id": {"$eq": flt.tender_id}},
            {"generation": {"$in": list(flt.generations)}},
        ]
        if flt.document_ids is not None:
            if not flt.document_ids:
                return []
            conditions.append({"document_id": {"$in": list(flt.document_ids)}})

        result = self._collection.query(
            query_embeddings=[[float(x) for x in query_vector]],
            n_results=k * 2,
            where={"$and": conditions},
            include=["distances"],
        )
        hits: List[Hit] = []
        if result and result.get("ids") and result["ids"][0]:
            for cid, distance in zip(result["ids"][0], result["distances"][0]):
                # cosine distance -> similarity
                hits.append((cid, 1.0 - float(distance)))
        return rank_hits(hits, k)

    def delete(self, chunk_ids) -> None:
        ids = list(chunk_ids)
        if ids:
            self._collection.delete(ids=ids)

    def ids_for_generation(self, generation: str) -> List[str]:
        result = self._collection.get(where={"generation": generation}, include=[])
        return sorted(result.get("ids") or [])

    def get_vectors(self, chunk_ids) -> Dict[str, List[float]]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        result = self._collection.get(ids=ids, include=["embeddings"])
        embeddings = result.get("embeddings")
        if embeddings is None:
            return {}
        return {
            cid: [float(x) for x in emb]
            for cid, emb in zip(result["ids"], embeddings)
        }
