"""
stores.py - Narrow persistence interfaces used by the core.

  ChunkStore       chunk records keyed by chunk_id
  QuestionStore    question records; written once per question, after the
                   pipeline knows the terminal state
  VersionRegistry  the active-version pointer of every document, plus its
                   activation history for pruning

The physical schema behind these belongs to whoever implements them. The
in-memory versions serve tests and single-process deployments. The Json*
versions write pretty-printed JSON files, the same way extraction results
used to be written to the outputs folder, so a restarted process finds
the chunk records and active versions that match a persisted vector
collection:

  JsonChunkStore        one <generation>.json per generation
  JsonQuestionStore     one <question_id>.json per question
  JsonVersionRegistry   one registry file
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

from tender_qa.schemas import Chunk, Question, generation_key

logger = logging.getLogger(__name__)


def _write_json(path: Path, data: Any) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    # Readers never see a half-written file
    os.replace(tmp, path)


def _read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ── Chunks ────────────────────────────────────────────────────────────────

class ChunkStore(ABC):
    @abstractmethod
    def put_many(self, chunks: Sequence[Chunk]) -> None:
        ...

    @abstractmethod
    def get_many(self, chunk_ids: Sequence[str]) -> Dict[str, Chunk]:
        ...

    @abstractmethod
    def ids_for_generation(self, generation: str) -> List[str]:
        ...

    @abstractmethod
    def generations(self) -> List[str]:
        """Every generation with at least one stored chunk."""

    @abstractmethod
    def delete(self, chunk_ids: Sequence[str]) -> None:
        ...

    def get_generation(self, generation: str) -> List[Chunk]:
        """Chunks of one generation in chunk_index order."""
        found = self.get_many(self.ids_for_generation(generation))
        return sorted(found.values(), key=lambda c: c.chunk_index)


class InMemoryChunkStore(ChunkStore):
    def __init__(self):
        self._chunks: Dict[str, Chunk] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._chunks)

    def put_many(self, chunks) -> None:
        with self._lock:
            for chunk in chunks:
                self._chunks[chunk.chunk_id] = chunk

    def get_many(self, chunk_ids) -> Dict[str, Chunk]:
        with self._lock:
            return {cid: self._chunks[cid] for cid in chunk_ids if cid in self._chunks}

    def ids_for_generation(self, generation: str) -> List[str]:
        with self._lock:
            return sorted(cid for cid, c in self._chunks.items() if c.generation == generation)

    def generations(self) -> List[str]:
        with self._lock:
            return sorted({c.generation for c in self._chunks.values()})

    def delete(self, chunk_ids) -> None:
        with self._lock:
            for cid in chunk_ids:
                self._chunks.pop(cid, None)


class JsonChunkStore(InMemoryChunkStore):
    """
    Chunk records held in memory and mirrored to one JSON file per
    generation under directory. Every write rewrites the files of the
    generations it touched; a generation left empty loses its file.
    """

    def __init__(self, directory: str):
        super().__init__()
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        for path in sorted(self._dir.glob("*.json")):
            for record in _read_json(path):
                chunk = Chunk.model_validate(record)
                self._chunks[chunk.chunk_id] = chunk
        logger.info("Loaded %d chunk records from %s", len(self._chunks), self._dir)

    def _path(self, generation: str) -> Path:
        # Document ids may carry path separators
        return self._dir / f"{quote(generation, safe='@')}.json"

    def _flush(self, generations: Iterable[str]) -> None:
        for generation in sorted(set(generations)):
            chunks = self.get_generation(generation)
            path = self._path(generation)
            if chunks:
                _write_json(path, [c.model_dump(mode="json") for c in chunks])
            elif path.exists():
                path.unlink()

    def put_many(self, chunks) -> None:
        chunks = list(chunks)
        with self._lock:
            super().put_many(chunks)
            self._flush(c.generation for c in chunks)

    def delete(self, chunk_ids) -> None:
        with self._lock:
            touched = [self._chunks[cid].generation for cid in chunk_ids if cid in self._chunks]
            super().delete(chunk_ids)
            self._flush(touched)


# ── Questions ─────────────────────────────────────────────────────────────

class QuestionStore(ABC):
    @abstractmethod
    def save(self, question: Question) -> None:
        ...

    @abstractmethod
    def get(self, question_id: str) -> Optional[Question]:
        ...


class InMemoryQuestionStore(QuestionStore):
    def __init__(self):
        self._questions: Dict[str, Question] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._questions)

    def save(self, question: Question) -> None:
        with self._lock:
            self._questions[question.question_id] = question.model_copy(deep=True)

    def get(self, question_id: str) -> Optional[Question]:
        with self._lock:
            found = self._questions.get(question_id)
        return found.model_copy(deep=True) if found is not None else None


class JsonQuestionStore(QuestionStore):
    """One <question_id>.json per question under directory."""

    def __init__(self, directory: str):
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, question_id: str) -> Path:
        return self._dir / f"{question_id}.json"

    def save(self, question: Question) -> None:
        path = self._path(question.question_id)
        _write_json(path, question.model_dump(mode="json"))
        logger.debug("Question %s written to %s", question.question_id, path)

    def get(self, question_id: str) -> Optional[Question]:
        path = self._path(question_id)
        if not path.exists():
            return None
        return Question.model_validate(_read_json(path))


# ── Active versions ───────────────────────────────────────────────────────

class VersionRegistry:
    """
    Active-version pointer per (tender_id, document_id).

    activate() is the atomic cutover: retrieval resolves the active
    generations once per query, so a query sees either the old or the new
    generation, never a mix. Listeners are called after every cutover with
    the tender id (the answer cache uses this to invalidate).
    """

    def __init__(self):
        self._active: Dict[Tuple[str, str], str] = {}
        self._history: Dict[Tuple[str, str], List[str]] = {}
        self._epochs: Dict[str, int] = {}
        self._listeners: List[Callable[[str], None]] = []
        self._lock = threading.RLock()

    def subscribe(self, listener: Callable[[str], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def activate(self, tender_id: str, document_id: str, version: str) -> Optional[str]:
        """Point the document at version. Returns the previously active version."""
        key = (tender_id, document_id)
        with self._lock:
            previous = self._active.get(key)
            self._active[key] = version
            history = self._history.setdefault(key, [])
            if version in history:
                history.remove(version)
            history.append(version)
            self._epochs[tender_id] = self._epochs.get(tender_id, 0) + 1
            self._changed()
            listeners = list(self._listeners)

        logger.info("Activated %s@%s for tender %s (was %s)",
                    document_id, version, tender_id, previous)
        for listener in listeners:
            listener(tender_id)
        return previous

    def active_version(self, tender_id: str, document_id: str) -> Optional[str]:
        with self._lock:
            return self._active.get((tender_id, document_id))

    def active_generations(
        self,
        tender_id: str,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[str]:
        with self._lock:
            gens = [
                generation_key(doc, version)
                for (tid, doc), version in self._active.items()
                if tid == tender_id and (document_ids is None or doc in document_ids)
            ]
        return sorted(gens)

    def history(self, tender_id: str, document_id: str) -> List[str]:
        """Activated versions, oldest first, the active one last."""
        with self._lock:
            return list(self._history.get((tender_id, document_id), []))

    def forget(self, tender_id: str, document_id: str, version: str) -> None:
        """Drop a pruned, non-active version from the history."""
        with self._lock:
            if self._active.get((tender_id, document_id)) == version:
                raise ValueError(f"Cannot forget active version {document_id}@{version}")
            history = self._history.get((tender_id, document_id), [])
            if version in history:
                history.remove(version)
                self._changed()

    def epoch(self, tender_id: str) -> int:
        """Increases on every cutover inside the tender."""
        with self._lock:
            return self._epochs.get(tender_id, 0)

    def _changed(self) -> None:
        """Called under the lock after every mutation."""

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "documents": [
                {
                    "tender_id": tid,
                    "document_id": doc,
                    "active": self._active.get((tid, doc)),
                    "history": list(history),
                }
                for (tid, doc), history in sorted(self._history.items())
            ],
            "epochs": dict(sorted(self._epochs.items())),
        }


class JsonVersionRegistry(VersionRegistry):
    """VersionRegistry saved to one JSON file after every cutover and prune."""

    def __init__(self, path: str):
        super().__init__()
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if self._path.exists():
            data = _read_json(self._path)
            for record in data.get("documents", []):
                key = (record["tender_id"], record["document_id"])
                if record.get("active") is not None:
                    self._active[key] = record["active"]
                self._history[key] = list(record.get("history", []))
            self._epochs = {tid: int(n) for tid, n in data.get("epochs", {}).items()}
            logger.info("Loaded %d active documents from %s", len(self._active), self._path)

    def _changed(self) -> None:
        _write_json(self._path, self._snapshot())
