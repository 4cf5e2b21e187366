"""
schemas.py - Pydantic v2 models for the indexing and query paths.

Three groups live here:
  - OCR input (LayoutMetadata and friends), frozen because the core never
    mutates what the OCR collaborator hands over
  - indexing records (Chunk), frozen because chunks are immutable once
    written; a re-index produces a new generation instead
  - query-time records (RetrievalCandidate, BuiltContext, Question and the
    confidence models), which carry every input of the escalation decision
    so a persisted Question can be re-evaluated later
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generation_key(document_id: str, version: str) -> str:
    """Identifier of one chunk generation of a document."""
    return f"{document_id}@{version}"


def make_chunk_id(document_id: str, version: str, chunk_index: int) -> str:
    """
    Zero-padded so that ascending chunk_id order equals chunk_index order
    within a generation.
    """
    return f"{document_id}::v{version}::{chunk_index:05d}"


# ── OCR input ─────────────────────────────────────────────────────────────

class PageSpan(BaseModel):
    """Character range [start, end) of one page in the document text."""
    model_config = ConfigDict(frozen=True)

    page: int = Field(..., ge=1)
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)


class Heading(BaseModel):
    model_config = ConfigDict(frozen=True)

    offset: int = Field(..., ge=0)
    text: str
    level: int = Field(default=1, ge=1)


class TableRegion(BaseModel):
    """A detected table. headers/rows are present when the cells were extractable."""
    model_config = ConfigDict(frozen=True)

    table_id: str
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    page: Optional[int] = None
    headers: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)


class LayoutMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    pages: List[PageSpan] = Field(default_factory=list)
    headings: List[Heading] = Field(default_factory=list)
    tables: List[TableRegion] = Field(default_factory=list)


class OCRDocument(BaseModel):
    """What the OCR collaborator delivers per document."""
    text: str
    layout: LayoutMetadata = Field(default_factory=LayoutMetadata)


# ── Indexing records ──────────────────────────────────────────────────────

class TablePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_id: str
    headers: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)


class Chunk(BaseModel):
    """A bounded, page-addressable slice of a document; the unit of retrieval."""
    model_config = ConfigDict(frozen=True)

    chunk_id: str
    tender_id: str
    document_id: str
    version: str
    chunk_index: int = Field(..., ge=0)
    text: str
    page_start: int = Field(default=1, ge=1)
    page_end: int = Field(default=1, ge=1)
    section: Optional[str] = None
    chunk_type: str = Field(default="text")  # text | table
    table: Optional[TablePayload] = None
    token_count: int = Field(default=0, ge=0)
    char_start: int = Field(default=0, ge=0)
    char_end: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None

    @property
    def generation(self) -> str:
        return generation_key(self.document_id, self.version)

    def index_metadata(self) -> Dict[str, Any]:
        """Flat metadata written next to the vector (no None values)."""
        return {
            "tender_id": self.tender_id,
            "document_id": self.document_id,
            "version": self.version,
            "generation": self.generation,
            "chunk_index": self.chunk_index,
            "page_start": self.page_start,
            "page_end": self.page_end,
            "section": self.section or "",
            "chunk_type": self.chunk_type,
        }


# ── Retrieval ─────────────────────────────────────────────────────────────

class RetrievalFilter(BaseModel):
    """
    Mandatory scope of every index search. generations lists the active
    "<document_id>@<version>" keys the caller may see; an empty list
    matches nothing.
    """
    model_config = ConfigDict(frozen=True)

    tender_id: str = Field(..., min_length=1)
    generations: List[str] = Field(default_factory=list)
    document_ids: Optional[List[str]] = None

    def matches(self, metadata: Dict[str, Any]) -> bool:
        if metadata.get("tender_id") != self.tender_id:
            return False
        if metadata.get("generation") not in self.generations:
            return False
        if self.document_ids is not None and metadata.get("document_id") not in self.document_ids:
            return False
        return True


class RetrievalCandidate(BaseModel):
    """Per-query scoring record. The resolved chunk is never serialised."""
    chunk_id: str
    document_id: str = ""
    page_start: int = 1
    page_end: int = 1
    vector_score: float = 0.0
    lexical_score: float = 0.0
    rerank_score: Optional[float] = None
    final_score: float = 0.0
    chunk: Optional[Chunk] = Field(default=None, exclude=True)


class SourceReference(BaseModel):
    chunk_id: str
    page_start: int
    page_end: int
    label: str
    truncated: bool = False


class BuiltContext(BaseModel):
    """
    text is what the generator sees. passages holds the included chunk
    texts without labels, 1:1 with sources, for the numeric check.
    """
    text: str = ""
    passages: List[str] = Field(default_factory=list)
    sources: List[SourceReference] = Field(default_factory=list)
    token_count: int = 0


# ── Generation ────────────────────────────────────────────────────────────

class GenerationResponse(BaseModel):
    """Structured output expected from the answer generator."""
    answer: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence: List[str] = Field(default_factory=list)

    @field_validator("answer")
    @classmethod
    def answer_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("answer cannot be empty or whitespace")
        return v.strip()


# ── Decision ──────────────────────────────────────────────────────────────

# Spellings seen from the upstream classifier.
_CLASSIFICATION_ALIASES = {
    "LEAGAL_CLARIFICATION": "LEGAL_CLARIFICATION",
    "LEGAL": "LEGAL_CLARIFICATION",
    "NEGOTIATIONS": "NEGOTIATION",
}


class Classification(str, Enum):
    TECHNICAL = "TECHNICAL"
    COMMERCIAL = "COMMERCIAL"
    ELIGIBILITY = "ELIGIBILITY"
    TIMELINE = "TIMELINE"
    GENERAL = "GENERAL"
    LEGAL_CLARIFICATION = "LEGAL_CLARIFICATION"
    NEGOTIATION = "NEGOTIATION"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().upper().replace(" ", "_").replace("-", "_")
            key = _CLASSIFICATION_ALIASES.get(key, key)
            if key in cls.__members__:
                return cls[key]
        return cls.UNKNOWN


class ConfidenceTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QuestionStatus(str, Enum):
    PENDING = "PENDING"
    AI_ANSWERED = "AI_ANSWERED"
    ESCALATED = "ESCALATED"
    HUMAN_ANSWERED = "HUMAN_ANSWERED"


class RuleCheck(BaseModel):
    name: str
    passed: bool
    major: bool = False
    detail: str = ""


class ConfidenceInputs(BaseModel):
    """Everything the escalation decision reads. Nothing else may influence it."""
    generator_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    similarity: float = Field(default=0.0, ge=-1.0, le=1.0)
    checks: List[RuleCheck] = Field(default_factory=list)
    classification: Classification = Classification.UNKNOWN
    evidence_count: int = Field(default=0, ge=0)
    failure: Optional[str] = None

    @field_validator("classification", mode="before")
    @classmethod
    def _coerce_classification(cls, v: Any) -> Any:
        return Classification(v) if isinstance(v, str) else v


class ConfidenceAssessment(BaseModel):
    generator_confidence: float
    similarity: float
    checks: List[RuleCheck] = Field(default_factory=list)
    tier: ConfidenceTier
    escalate: bool
    status: QuestionStatus
    confidence_score: float
    reasons: List[str] = Field(default_factory=list)


class Question(BaseModel):
    question_id: str
    tender_id: str
    bidder_id: str
    question_text: str
    classification: Classification = Classification.UNKNOWN
    retrieved_chunks: List[RetrievalCandidate] = Field(default_factory=list)
    context_used: str = ""
    sources: List[SourceReference] = Field(default_factory=list)
    ai_answer: Optional[str] = None
    generator_confidence: float = 0.0
    similarity_score: float = 0.0
    rule_checks: List[RuleCheck] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    failure: Optional[str] = None
    confidence_score: float = 0.0
    confidence_tier: Optional[ConfidenceTier] = None
    status: QuestionStatus = QuestionStatus.PENDING
    escalation_reasons: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    answered_at: Optional[datetime] = None

    @field_validator("classification", mode="before")
    @classmethod
    def _coerce_classification(cls, v: Any) -> Any:
        return Classification(v) if isinstance(v, str) else v

    def decision_inputs(self) -> ConfidenceInputs:
        """Rebuild the decision inputs from persisted fields alone."""
        return ConfidenceInputs(
            generator_confidence=self.generator_confidence,
            similarity=self.similarity_score,
            checks=list(self.rule_checks),
            classification=self.classification,
            evidence_count=len(self.evidence),
            failure=self.failure,
        )


class AskResponse(BaseModel):
    """What the bidder receives. Escalation is a status, never an error."""
    question_id: str
    answer: str
    confidence_tier: ConfidenceTier
    status: QuestionStatus
    evidence: List[SourceReference] = Field(default_factory=list)
