"""
test_pipeline.py - End-to-end tests for TenderQA.

These tests run the whole ask() path with in-process fakes (no models, no
network). They validate:
  - bidder-visible responses for answered and escalated questions
  - escalation instead of errors when retrieval or generation fails
  - atomic version cutover as seen by queries
  - the answer cache and its invalidation on cutover
  - cancellation and persistence failure semantics
  - that a stored Question is enough to recompute its decision

Run with:
    python tests/test_pipeline.py
    python -m pytest tests/test_pipeline.py -v
"""

from __future__ import annotations

import asyncio
import logging
import sys
import tempfile
from pathlib import Path

import pytest

from fakes import (
    BrokenQuestionStore,
    FailingGenerator,
    FlakyIndex,
    GatedGenerator,
    KeywordReranker,
    ScriptedGenerator,
    make_config,
    make_pipeline,
    run_suite,
)

from tender_qa.confidence import NUMERIC_CHECK, reassess
from tender_qa.config import CacheConfig, ChunkingConfig
from tender_qa.errors import ServiceUnavailable
from tender_qa.reranking import BaseReranker
from tender_qa.schemas import Classification, QuestionStatus
from tender_qa.stores import (
    InMemoryQuestionStore,
    JsonChunkStore,
    JsonQuestionStore,
    JsonVersionRegistry,
)
from tender_qa.vector_index import InMemoryVectorIndex

logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")
logger = logging.getLogger(__name__)

SUBMISSION_TEXT = (
    "Instructions to bidders. The last date of submission of bids is 2025-12-01 "
    "at 15:00 hours. Late bids shall not be accepted."
)
EMD_V1 = "Earnest Money Deposit: each bidder shall furnish an EMD of Rs. 2,00,000."
EMD_V2 = "Earnest Money Deposit: each bidder shall furnish an EMD of Rs. 3,00,000."


def _ask(pipeline, question, tender="T-1", classification=Classification.COMMERCIAL,
         document_ids=None):
    return asyncio.run(pipeline.ask(tender, "bidder-7", question, classification, document_ids))


class BrokenReranker(BaseReranker):
    def score(self, query, texts):
        raise RuntimeError("reranker model crashed")


# ── Answered path ─────────────────────────────────────────────────────────

def test_simple_answer_is_grounded():
    """A one-chunk document answers a timeline question with its own date."""
    cfg = make_config(chunking=ChunkingConfig(window_tokens=500, overlap_tokens=125))
    generator = ScriptedGenerator("The last date of submission is 2025-12-01.", confidence=0.9)
    pipeline = make_pipeline(cfg=cfg, generator=generator)
    assert pipeline.index_document("T-1", "rfp", SUBMISSION_TEXT) == 1

    response = _ask(pipeline, "What is the last date of submission?", classification="TIMELINE")
    assert response.status == QuestionStatus.AI_ANSWERED
    assert response.answer == "The last date of submission is 2025-12-01."
    assert [e.chunk_id for e in response.evidence] == ["rfp::v1::00000"]
    assert response.evidence[0].page_start == 1

    question = pipeline.get_question(response.question_id)
    assert question.retrieved_chunks[0].vector_score > 0
    assert question.retrieved_chunks[0].lexical_score == 1.0
    numeric = next(c for c in question.rule_checks if c.name == NUMERIC_CHECK)
    assert numeric.passed
    assert question.answered_at is not None
    assert question.evidence == ["rfp::v1::00000"]
    print("  ✓ test_simple_answer_is_grounded")


def test_queries_stay_inside_their_tender():
    pipeline = make_pipeline()
    pipeline.index_document("T-A", "rfp-a", EMD_V1)
    pipeline.index_document("T-B", "rfp-b", EMD_V2)

    response = _ask(pipeline, "What is the EMD amount?", tender="T-B")
    question = pipeline.get_question(response.question_id)
    assert question.sources
    assert all(s.chunk_id.startswith("rfp-b::") for s in question.sources)
    assert "2,00,000" not in question.context_used
    print("  ✓ test_queries_stay_inside_their_tender")


def test_negotiation_is_escalated_with_notice():
    generator = ScriptedGenerator("The EMD can be reduced to Rs. 2,00,000.", confidence=0.95)
    cfg = make_config()
    pipeline = make_pipeline(cfg=cfg, generator=generator)
    pipeline.index_document("T-1", "rfp", EMD_V1)

    response = _ask(pipeline, "Can we negotiate the EMD?", classification="NEGOTIATION")
    assert response.status == QuestionStatus.ESCALATED
    assert response.answer == cfg.confidence.escalation_notice
    assert response.evidence == []

    question = pipeline.get_question(response.question_id)
    assert question.ai_answer == "The EMD can be reduced to Rs. 2,00,000."
    assert question.answered_at is None
    print("  ✓ test_negotiation_is_escalated_with_notice")


# ── Failure paths ─────────────────────────────────────────────────────────

def test_search_timeout_escalates_without_error():
    cfg = make_config()
    flaky = FlakyIndex(InMemoryVectorIndex(cfg.embedding.dimension))
    generator = ScriptedGenerator()
    pipeline = make_pipeline(cfg=cfg, vector_index=flaky, generator=generator)
    pipeline.index_document("T-1", "rfp", EMD_V1)

    response = _ask(pipeline, "What is the EMD amount?")
    assert response.status == QuestionStatus.ESCALATED
    assert response.evidence == []
    assert generator.calls == []

    question = pipeline.get_question(response.question_id)
    assert question.failure.startswith("retrieval")
    assert any("stage failure" in r for r in question.escalation_reasons)
    print("  ✓ test_search_timeout_escalates_without_error")


def test_generation_failure_escalates():
    cfg = make_config()
    generator = FailingGenerator()
    pipeline = make_pipeline(cfg=cfg, generator=generator)
    pipeline.index_document("T-1", "rfp", EMD_V1)

    response = _ask(pipeline, "What is the EMD amount?")
    assert response.status == QuestionStatus.ESCALATED
    assert generator.calls == cfg.resilience.max_retries + 1
    question = pipeline.get_question(response.question_id)
    assert question.failure.startswith("generation")
    assert question.sources, "context is kept for the human reviewer"
    print("  ✓ test_generation_failure_escalates")


def test_no_surviving_evidence_skips_generation():
    generator = ScriptedGenerator()
    pipeline = make_pipeline(generator=generator, reranker=KeywordReranker())
    pipeline.index_document("T-1", "rfp", EMD_V1)

    response = _ask(pipeline, "helicopter landing permits")
    assert response.status == QuestionStatus.ESCALATED
    assert generator.calls == []
    question = pipeline.get_question(response.question_id)
    assert question.sources == [] and question.evidence == []
    assert "no supporting evidence" in question.escalation_reasons
    print("  ✓ test_no_surviving_evidence_skips_generation")


def test_citations_outside_context_count_as_no_evidence():
    generator = ScriptedGenerator(evidence=["other::v1::00009"])
    pipeline = make_pipeline(generator=generator)
    pipeline.index_document("T-1", "rfp", EMD_V1)

    response = _ask(pipeline, "What is the EMD amount?")
    assert response.status == QuestionStatus.ESCALATED
    question = pipeline.get_question(response.question_id)
    assert question.evidence == []
    assert any(not c.passed for c in question.rule_checks)
    print("  ✓ test_citations_outside_context_count_as_no_evidence")


def test_reranker_failure_degrades_to_hybrid_order():
    pipeline = make_pipeline(reranker=BrokenReranker())
    pipeline.index_document("T-1", "rfp", EMD_V1)

    response = _ask(pipeline, "What is the EMD amount?")
    assert response.status == QuestionStatus.AI_ANSWERED
    question = pipeline.get_question(response.question_id)
    assert all(c.rerank_score is None for c in question.retrieved_chunks)
    print("  ✓ test_reranker_failure_degrades_to_hybrid_order")


class MiscountingReranker(BaseReranker):
    """Returns the wrong number of scores, then a NaN."""

    def __init__(self):
        self.calls = 0

    def score(self, query, texts):
        self.calls += 1
        if self.calls == 1:
            return [0.9]
        return [float("nan")] * len(texts)


def test_malformed_reranker_scores_degrade_to_hybrid_order():
    reranker = MiscountingReranker()
    pipeline = make_pipeline(reranker=reranker, cfg=make_config(cache=CacheConfig(enabled=False)))
    pipeline.index_document("T-1", "rfp", EMD_V1)
    pipeline.index_document("T-1", "sched", SUBMISSION_TEXT)

    for _ in range(2):
        response = _ask(pipeline, "What is the EMD amount?")
        question = pipeline.get_question(response.question_id)
        assert question.failure is None
        assert question.ai_answer == "See the cited clause."
        assert len(question.retrieved_chunks) == 2
        assert all(c.rerank_score is None for c in question.retrieved_chunks)
    assert reranker.calls == 2
    print("  ✓ test_malformed_reranker_scores_degrade_to_hybrid_order")


def test_reranker_scores_recorded():
    reranker = KeywordReranker()
    pipeline = make_pipeline(reranker=reranker)
    pipeline.index_document("T-1", "rfp", EMD_V1)
    pipeline.index_document("T-1", "sched", SUBMISSION_TEXT)

    response = _ask(pipeline, "earnest money deposit EMD")
    question = pipeline.get_question(response.question_id)
    assert reranker.calls == 1
    assert [c.chunk_id for c in question.retrieved_chunks] == ["rfp::v1::00000"]
    assert question.retrieved_chunks[0].rerank_score == 1.0
    print("  ✓ test_reranker_scores_recorded")


def test_unpersistable_question_is_service_unavailable():
    pipeline = make_pipeline(question_store=BrokenQuestionStore())
    pipeline.index_document("T-1", "rfp", EMD_V1)
    with pytest.raises(ServiceUnavailable):
        _ask(pipeline, "What is the EMD amount?")
    print("  ✓ test_unpersistable_question_is_service_unavailable")


def test_cancelled_question_writes_nothing():
    store = InMemoryQuestionStore()
    generator = GatedGenerator()
    pipeline = make_pipeline(generator=generator, question_store=store)
    pipeline.index_document("T-1", "rfp", EMD_V1)

    async def scenario():
        task = asyncio.create_task(
            pipeline.ask("T-1", "bidder-7", "What is the EMD amount?", "COMMERCIAL"))
        assert await asyncio.to_thread(generator.entered.wait, 5)
        task.cancel()
        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            # The worker thread must finish before the loop shuts down
            generator.release()

    asyncio.run(scenario())
    assert len(store) == 0
    print("  ✓ test_cancelled_question_writes_nothing")


# ── Versions and cache ────────────────────────────────────────────────────

def test_version_cutover_is_atomic_for_queries():
    cfg = make_config(cache=CacheConfig(enabled=False))
    pipeline = make_pipeline(cfg=cfg)
    pipeline.index_document("T-1", "rfp", EMD_V1, version="1")

    pipeline.indexer.stage_document("T-1", "rfp", EMD_V2, version="2")
    staged = pipeline.get_question(_ask(pipeline, "What is the EMD amount?").question_id)
    assert "2,00,000" in staged.context_used
    assert "3,00,000" not in staged.context_used

    pipeline.indexer.commit("T-1", "rfp", "2")
    live = pipeline.get_question(_ask(pipeline, "What is the EMD amount?").question_id)
    assert "3,00,000" in live.context_used
    assert "2,00,000" not in live.context_used
    assert [s.chunk_id for s in live.sources] == ["rfp::v2::00000"]
    print("  ✓ test_version_cutover_is_atomic_for_queries")


def test_cache_reuses_answer_but_recomputes_decision():
    generator = ScriptedGenerator()
    pipeline = make_pipeline(generator=generator)
    pipeline.index_document("T-1", "rfp", EMD_V1)

    first = _ask(pipeline, "What is the EMD amount?")
    second = _ask(pipeline, "what is the  EMD amount", classification="NEGOTIATION")
    assert len(generator.calls) == 1
    assert first.question_id != second.question_id
    assert first.status == QuestionStatus.AI_ANSWERED
    assert second.status == QuestionStatus.ESCALATED
    assert pipeline.get_question(second.question_id).classification == Classification.NEGOTIATION

    # Scoped questions are never served from the cache
    _ask(pipeline, "What is the EMD amount?", document_ids=["rfp"])
    assert len(generator.calls) == 2
    print("  ✓ test_cache_reuses_answer_but_recomputes_decision")


def test_cutover_invalidates_cached_answers():
    generator = ScriptedGenerator()
    pipeline = make_pipeline(generator=generator)
    pipeline.index_document("T-1", "rfp", EMD_V1, version="1")
    _ask(pipeline, "What is the EMD amount?")
    assert len(pipeline.cache) == 1

    pipeline.index_document("T-1", "rfp", EMD_V2, version="2")
    assert len(pipeline.cache) == 0
    response = _ask(pipeline, "What is the EMD amount?")
    assert len(generator.calls) == 2
    assert "3,00,000" in generator.calls[-1]
    assert [e.chunk_id for e in response.evidence] == ["rfp::v2::00000"]
    print("  ✓ test_cutover_invalidates_cached_answers")


# ── Persistence ───────────────────────────────────────────────────────────

def test_stored_question_reproduces_decision():
    """Every decision input is persisted; recomputing gives the same outcome."""
    generator = ScriptedGenerator("The EMD is Rs. 2,00,000.", confidence=0.7)
    cfg = make_config()
    pipeline = make_pipeline(cfg=cfg, generator=generator)
    pipeline.index_document("T-1", "rfp", EMD_V1)

    for classification in ("COMMERCIAL", "LEGAL_CLARIFICATION", "NEGOTIATION", "UNKNOWN"):
        response = _ask(pipeline, "What is the EMD amount?", classification=classification)
        question = pipeline.get_question(response.question_id)
        again = reassess(question, cfg.confidence)
        assert again.tier == question.confidence_tier
        assert again.status == question.status == response.status
        assert again.confidence_score == question.confidence_score
    print("  ✓ test_stored_question_reproduces_decision")


def test_json_question_store_round_trip():
    with tempfile.TemporaryDirectory() as tmp:
        store = JsonQuestionStore(tmp)
        pipeline = make_pipeline(question_store=store)
        pipeline.index_document("T-1", "rfp", EMD_V1)

        response = _ask(pipeline, "What is the EMD amount?")
        assert (Path(tmp) / f"{response.question_id}.json").exists()

        question = pipeline.get_question(response.question_id)
        assert question.status == response.status
        assert question.retrieved_chunks[0].chunk is None
        assert [s.chunk_id for s in question.sources] == ["rfp::v1::00000"]
        assert store.get("missing") is None
    print("  ✓ test_json_question_store_round_trip")


def test_restart_over_persisted_stores_keeps_answering():
    """A new process over the same stores and vectors serves the same evidence."""
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        cfg = make_config(cache=CacheConfig(enabled=False))
        vectors = InMemoryVectorIndex(cfg.embedding.dimension)

        first = make_pipeline(
            cfg=cfg, vector_index=vectors,
            chunk_store=JsonChunkStore(str(root / "chunks")),
            registry=JsonVersionRegistry(str(root / "versions.json")),
        )
        first.index_document("T-1", "rfp", EMD_V1)
        before = _ask(first, "What is the EMD amount?")

        second = make_pipeline(
            cfg=cfg, vector_index=vectors,
            chunk_store=JsonChunkStore(str(root / "chunks")),
            registry=JsonVersionRegistry(str(root / "versions.json")),
        )
        assert second.indexer.restore_lexical_index() == 1
        after = _ask(second, "What is the EMD amount?")

        assert after.status == before.status
        assert [e.chunk_id for e in after.evidence] == [e.chunk_id for e in before.evidence]
        question = second.get_question(after.question_id)
        assert [c.chunk_id for c in question.retrieved_chunks] == ["rfp::v1::00000"]
        assert question.retrieved_chunks[0].lexical_score > 0
    print("  ✓ test_restart_over_persisted_stores_keeps_answering")


def run_all_tests():
    return run_suite("TenderQA - Pipeline Tests", [
        test_simple_answer_is_grounded,
        test_queries_stay_inside_their_tender,
        test_negotiation_is_escalated_with_notice,
        test_search_timeout_escalates_without_error,
        test_generation_failure_escalates,
        test_no_surviving_evidence_skips_generation,
        test_citations_outside_context_count_as_no_evidence,
        test_reranker_failure_degrades_to_hybrid_order,
        test_malformed_reranker_scores_degrade_to_hybrid_order,
        test_reranker_scores_recorded,
        test_unpersistable_question_is_service_unavailable,
        test_cancelled_question_writes_nothing,
        test_version_cutover_is_atomic_for_queries,
        test_cache_reuses_answer_but_recomputes_decision,
        test_cutover_invalidates_cached_answers,
        test_stored_question_reproduces_decision,
        test_json_question_store_round_trip,
        test_restart_over_persisted_stores_keeps_answering,
    ])


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
