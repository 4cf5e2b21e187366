"""
errors.py - Exception taxonomy for the indexing and query paths.

Only IndexingFailure and ServiceUnavailable ever reach a caller. Retrieval
and generation failures are caught by the query pipeline and turned into
an ESCALATED question, so bidders always get a structured response.
Low confidence is not an error at all; it is the ESCALATED outcome.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class TenderQAError(Exception):
    """Base class for everything raised by tender_qa."""


class StageExhausted(TenderQAError):
    """An external call kept failing after its whole retry budget."""

    def __init__(self, stage: str, last_error: Optional[BaseException] = None):
        self.stage = stage
        self.last_error = last_error
        super().__init__(f"{stage} failed after retries: {last_error!r}")


class EmbeddingError(TenderQAError):
    """
    Embedding provider failure.

    Providers that support partial batch failure set failed_indices and
    hand back the vectors that did succeed in partial_results (keyed by
    position in the request); only the failed items are retried. Without
    them the whole batch is retried.
    """

    def __init__(
        self,
        message: str,
        failed_indices: Optional[List[int]] = None,
        partial_results: Optional[Dict[int, List[float]]] = None,
    ):
        super().__init__(message)
        self.failed_indices = failed_indices
        self.partial_results = partial_results or {}


class GenerationError(TenderQAError):
    """Generator returned nothing usable (transport error or unparseable output)."""


class IndexingFailure(TenderQAError):
    """
    A document could not be indexed. The document stays at its previous
    active version.
    """

    def __init__(self, document_id: str, reason: str):
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"Indexing failed for document '{document_id}': {reason}")


class RetrievalFailure(TenderQAError):
    """Embedding, vector or lexical search unavailable after retries."""


class GenerationFailure(TenderQAError):
    """Answer generator unavailable or unparseable after retries."""


class ServiceUnavailable(TenderQAError):
    """The escalation path itself (question persistence) is down."""
