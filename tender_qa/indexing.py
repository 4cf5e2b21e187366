"""
indexing.py - Index / re-index documents with atomic version cutover.

A document version becomes searchable in two steps:

  stage_document()  chunk -> embed in batches -> write chunk store, vector
                    index and lexical index under one chunk_id set, then
                    delete orphans left in the same generation by an
                    earlier, longer run
  commit()          flip the document's active-version pointer and prune
                    generations beyond retained_versions

Retrieval only sees generations the VersionRegistry marks active, so a new
version staged next to the old one is invisible until commit(), and a
failed staging leaves the old version serving untouched.

Staging is idempotent: chunk ids are derived from (document, version,
chunk_index) and the chunker is deterministic, so re-running identical
input rewrites identical records. created_at of an unchanged chunk is
preserved.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from tender_qa.chunking import create_chunks
from tender_qa.config import Config, config as default_config
from tender_qa.embedding import BaseEmbedder, embed_in_batches
from tender_qa.errors import EmbeddingError, IndexingFailure, StageExhausted
from tender_qa.lexical_index import BaseLexicalIndex
from tender_qa.resilience import retry_call
from tender_qa.schemas import Chunk, LayoutMetadata, utcnow, generation_key
from tender_qa.stores import ChunkStore, VersionRegistry
from tender_qa.vector_index import BaseVectorIndex

logger = logging.getLogger(__name__)


@dataclass
class IndexRequest:
    tender_id: str
    document_id: str
    text: str
    version: str
    layout: Optional[LayoutMetadata] = None


class IndexCoordinator:
    """
    Usage:
        coordinator = IndexCoordinator(embedder, vector_index, chunk_store,
                                       registry, lexical_index=bm25)
        n = coordinator.index_document("T-1", "rfp", text, layout, "2")
    """

    def __init__(
        self,
        embedder: BaseEmbedder,
        vector_index: BaseVectorIndex,
        chunk_store: ChunkStore,
        registry: VersionRegistry,
        lexical_index: Optional[BaseLexicalIndex] = None,
        cfg: Optional[Config] = None,
    ):
        if embedder.dimension != vector_index.dimension:
            raise ValueError(
                f"Embedder dimension {embedder.dimension} does not match "
                f"vector index dimension {vector_index.dimension}"
            )
        self._embedder = embedder
        self._vector_index = vector_index
        self._lexical_index = lexical_index
        self._chunk_store = chunk_store
        self._registry = registry
        self._config = cfg or default_config
        self._doc_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _doc_lock(self, tender_id: str, document_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._doc_locks.setdefault((tender_id, document_id), threading.Lock())

    # ── Public API ────────────────────────────────────────────────────────

    def index_document(
        self,
        tender_id: str,
        document_id: str,
        text: str,
        layout: Optional[LayoutMetadata] = None,
        version: str = "1",
    ) -> int:
        """
        Stage and commit one document version. Returns the chunk count.

        Raises:
            IndexingFailure: nothing was activated; the previous active
                version (if any) keeps serving.
        """
        with self._doc_lock(tender_id, document_id):
            count = self.stage_document(tender_id, document_id, text, layout, version)
            self.commit(tender_id, document_id, version)
        return count

    def index_documents(
        self,
        requests: Sequence[IndexRequest],
    ) -> Dict[str, Union[int, Exception]]:
        """
        Index several documents on a bounded worker pool.

        Returns document_id -> chunk count, or the exception that document
        failed with. One failure never aborts the others.
        """
        outcomes: Dict[str, Union[int, Exception]] = {}
        workers = max(1, min(self._config.indexing.max_workers, len(requests) or 1))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="indexer") as pool:
            futures = {
                pool.submit(
                    self.index_document,
                    req.tender_id, req.document_id, req.text, req.layout, req.version,
                ): req
                for req in requests
            }
            for future in as_completed(futures):
                req = futures[future]
                try:
                    outcomes[req.document_id] = future.result()
                except Exception as exc:
                    logger.error("Indexing %s@%s failed: %s", req.document_id, req.version, exc)
                    outcomes[req.document_id] = exc

        ok = sum(1 for v in outcomes.values() if isinstance(v, int))
        logger.info("Indexed %d/%d documents", ok, len(requests))
        return outcomes

    # ── Steps ─────────────────────────────────────────────────────────────

    def stage_document(
        self,
        tender_id: str,
        document_id: str,
        text: str,
        layout: Optional[LayoutMetadata] = None,
        version: str = "1",
    ) -> int:
        """
        Write every record of one generation without activating it.

        Raises:
            IndexingFailure: zero chunks, embedding failure or a store
                write that exhausted its retries.
        """
        generation = generation_key(document_id, version)
        chunks = create_chunks(
            text, layout,
            document_id=document_id, version=version, tender_id=tender_id,
            chunking_config=self._config.chunking,
        )
        if not chunks:
            raise IndexingFailure(document_id, "chunking produced zero chunks (empty or garbled text)")

        existing = self._chunk_store.get_many([c.chunk_id for c in chunks])
        for old in existing.values():
            if old.tender_id != tender_id:
                raise IndexingFailure(
                    document_id,
                    f"document id already indexed under tender '{old.tender_id}'",
                )

        try:
            vectors = embed_in_batches(
                self._embedder, [c.text for c in chunks],
                batch_size=self._config.embedding.batch_size,
                indexing_config=self._config.indexing,
            )
        except EmbeddingError as exc:
            self._discard_if_inactive(tender_id, document_id, version)
            raise IndexingFailure(document_id, f"embedding failed: {exc}") from exc

        chunks = self._stamp(chunks, existing)
        try:
            self._write(chunks, vectors)
            self._delete_orphans(generation, {c.chunk_id for c in chunks})
        except StageExhausted as exc:
            self._discard_if_inactive(tender_id, document_id, version)
            raise IndexingFailure(document_id, str(exc)) from exc

        logger.info("Staged %s for tender %s: %d chunks", generation, tender_id, len(chunks))
        return len(chunks)

    def commit(self, tender_id: str, document_id: str, version: str) -> Optional[str]:
        """Atomic cutover to version, then prune old generations. Returns the previous version."""
        previous = self._registry.activate(tender_id, document_id, version)
        self._prune(tender_id, document_id)
        return previous

    def restore_lexical_index(self) -> int:
        """
        Reload the in-process lexical index from the chunk store, e.g.
        after a restart over persisted chunk records. Returns the number
        of chunks loaded.
        """
        if self._lexical_index is None:
            return 0
        restored = 0
        for generation in self._chunk_store.generations():
            chunks = self._chunk_store.get_generation(generation)
            self._lexical_index.upsert_many(
                [c.chunk_id for c in chunks],
                [c.text for c in chunks],
                [c.index_metadata() for c in chunks],
            )
            restored += len(chunks)
        logger.info("Lexical index restored with %d chunks", restored)
        return restored

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _stamp(chunks: List[Chunk], existing: Dict[str, Chunk]) -> List[Chunk]:
        now = utcnow()
        stamped: List[Chunk] = []
        for chunk in chunks:
            old = existing.get(chunk.chunk_id)
            if old is not None and old.created_at is not None and old.text == chunk.text:
                created = old.created_at
            else:
                created = now
            stamped.append(chunk.model_copy(update={"created_at": created}))
        return stamped

    def _retry(self, stage: str, fn, *args):
        ic = self._config.indexing
        return retry_call(
            stage, fn, *args,
            max_retries=self._config.resilience.max_retries,
            base_delay=ic.embed_base_delay,
            max_delay=ic.embed_max_delay,
        )

    def _write(self, chunks: List[Chunk], vectors: List[List[float]]) -> None:
        # Chunk records first: the index must never return an id the
        # chunk store cannot resolve
        ids = [c.chunk_id for c in chunks]
        metadatas = [c.index_metadata() for c in chunks]
        self._retry("chunk store write", self._chunk_store.put_many, chunks)
        self._retry("vector upsert", self._vector_index.upsert_many, ids, vectors, metadatas)
        if self._lexical_index is not None:
            self._retry(
                "lexical upsert", self._lexical_index.upsert_many,
                ids, [c.text for c in chunks], metadatas,
            )

    def _delete_orphans(self, generation: str, keep: set) -> None:
        stale = sorted(set(self._chunk_store.ids_for_generation(generation)) - keep)
        stale_vectors = sorted(set(self._vector_index.ids_for_generation(generation)) - keep)
        stale_lexical: List[str] = []
        if self._lexical_index is not None:
            stale_lexical = sorted(set(self._lexical_index.ids_for_generation(generation)) - keep)
        if not (stale or stale_vectors or stale_lexical):
            return

        logger.info("Removing %d orphaned chunks from %s", len(set(stale) | set(stale_vectors)), generation)
        if stale_vectors:
            self._retry("vector delete", self._vector_index.delete, stale_vectors)
        if stale_lexical:
            self._retry("lexical delete", self._lexical_index.delete, stale_lexical)
        if stale:
            self._retry("chunk store delete", self._chunk_store.delete, stale)

    def _delete_generation(self, generation: str) -> None:
        self._delete_orphans(generation, set())

    def _discard_if_inactive(self, tender_id: str, document_id: str, version: str) -> None:
        """Best-effort cleanup of a failed, never-activated staging run."""
        if self._registry.active_version(tender_id, document_id) == version:
            return
        try:
            self._delete_generation(generation_key(document_id, version))
        except StageExhausted as exc:
            logger.warning("Could not clean up failed staging of %s@%s: %s",
                           document_id, version, exc)

    def _prune(self, tender_id: str, document_id: str) -> None:
        retained = self._config.indexing.retained_versions
        history = self._registry.history(tender_id, document_id)
        for version in history[:-retained]:
            generation = generation_key(document_id, version)
            try:
                self._delete_generation(generation)
            except StageExhausted as exc:
                # Inactive data is invisible to retrieval; retry on next commit
                logger.warning("Pruning %s failed: %s", generation, exc)
                continue
            self._registry.forget(tender_id, document_id, version)
            logger.info("Pruned generation %s", generation)
