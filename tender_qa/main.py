"""
main.py - Query pipeline orchestration and CLI for TenderQA.

TenderQAPipeline ties the components together. One ask() call is one
asyncio task:

  [1/5] retrieve     query embedding, then vector + BM25 search in parallel
  [2/5] rerank       cross-encoder over the hybrid candidates (optional)
  [3/5] context      token-bounded, labelled context from the survivors
  [4/5] generate     grounded JSON answer from the LLM
  [5/5] decide       similarity + rule checks -> tier and escalation

Every external call has its own timeout and retry budget. A retrieval or
generation failure never reaches the bidder: the question is escalated
with the failing stage recorded. The Question record is written exactly
once, after the terminal state is known; a cancelled task writes nothing.

The classification-independent part of an answer is cached per
(tender_id, normalised question) until a document of the tender changes
active version. The decision itself is always recomputed.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Sequence, Union

from tender_qa.cache import AnswerCache
from tender_qa.confidence import assess, run_rule_checks
from tender_qa.config import Config, config as default_config
from tender_qa.context import ContextBuilder
from tender_qa.embedding import BaseEmbedder, SentenceTransformerEmbedder, cosine_similarity
from tender_qa.errors import (
    GenerationFailure,
    IndexingFailure,
    RetrievalFailure,
    ServiceUnavailable,
    StageExhausted,
)
from tender_qa.generation import BaseGenerator, LlamaCppGenerator
from tender_qa.indexing import IndexCoordinator, IndexRequest
from tender_qa.lexical_index import BaseLexicalIndex, BM25LexicalIndex
from tender_qa.reranking import BaseReranker, CrossEncoderReranker, rerank, scores_usable
from tender_qa.resilience import call_with_retry
from tender_qa.retrieval import HybridRetriever
from tender_qa.schemas import (
    AskResponse,
    BuiltContext,
    Classification,
    ConfidenceInputs,
    GenerationResponse,
    LayoutMetadata,
    OCRDocument,
    Question,
    QuestionStatus,
    RetrievalCandidate,
    RetrievalFilter,
    RuleCheck,
    utcnow,
)
from tender_qa.stores import (
    ChunkStore,
    InMemoryChunkStore,
    InMemoryQuestionStore,
    JsonChunkStore,
    JsonQuestionStore,
    JsonVersionRegistry,
    QuestionStore,
    VersionRegistry,
)
from tender_qa.vector_index import BaseVectorIndex, ChromaVectorIndex, InMemoryVectorIndex

logger = logging.getLogger("tender_qa")


@dataclass
class _Outcome:
    """Classification-independent result of the retrieval and generation stages."""
    candidates: List[RetrievalCandidate] = field(default_factory=list)
    context: BuiltContext = field(default_factory=BuiltContext)
    generation: Optional[GenerationResponse] = None
    similarity: float = 0.0
    checks: List[RuleCheck] = field(default_factory=list)
    evidence: List[str] = field(default_factory=list)
    failure: Optional[str] = None
    epoch: int = 0


class TenderQAPipeline:
    """
    Retrieval-and-confidence pipeline for bidder questions.

    Usage:
        pipeline = build_pipeline()
        pipeline.index_document("T-1", "rfp", text, layout, version="1")
        response = asyncio.run(pipeline.ask("T-1", "bidder-7",
                                            "What is the EMD amount?",
                                            Classification.COMMERCIAL))
    """

    def __init__(
        self,
        *,
        embedder: BaseEmbedder,
        vector_index: BaseVectorIndex,
        generator: BaseGenerator,
        chunk_store: Optional[ChunkStore] = None,
        question_store: Optional[QuestionStore] = None,
        registry: Optional[VersionRegistry] = None,
        lexical_index: Optional[BaseLexicalIndex] = None,
        reranker: Optional[BaseReranker] = None,
        cache: Optional[AnswerCache] = None,
        cfg: Optional[Config] = None,
    ):
        self.config = cfg or default_config
        self.chunk_store = chunk_store if chunk_store is not None else InMemoryChunkStore()
        self.question_store = question_store if question_store is not None else InMemoryQuestionStore()
        self.registry = registry if registry is not None else VersionRegistry()
        self.cache = cache if cache is not None else AnswerCache(self.config.cache)

        self._embedder = embedder
        self._generator = generator
        self._reranker = reranker
        self.retriever = HybridRetriever(
            embedder, vector_index, self.chunk_store,
            lexical_index=lexical_index, cfg=self.config,
        )
        self.indexer = IndexCoordinator(
            embedder, vector_index, self.chunk_store, self.registry,
            lexical_index=lexical_index, cfg=self.config,
        )
        self.context_builder = ContextBuilder(self.config.context)

        # Any cutover inside a tender makes its cached answers stale
        self.registry.subscribe(self.cache.invalidate_tender)

    # ── Indexing ──────────────────────────────────────────────────────────

    def index_document(
        self,
        tender_id: str,
        document_id: str,
        text: str,
        layout: Optional[LayoutMetadata] = None,
        version: str = "1",
    ) -> int:
        return self.indexer.index_document(tender_id, document_id, text, layout, version)

    def index_documents(self, requests: Sequence[IndexRequest]):
        return self.indexer.index_documents(requests)

    # ── Questions ─────────────────────────────────────────────────────────

    def get_question(self, question_id: str) -> Optional[Question]:
        return self.question_store.get(question_id)

    async def ask(
        self,
        tender_id: str,
        bidder_id: str,
        question_text: str,
        classification: Union[Classification, str] = Classification.UNKNOWN,
        document_ids: Optional[Sequence[str]] = None,
    ) -> AskResponse:
        """
        Answer one bidder question or escalate it.

        Raises:
            ServiceUnavailable: the question record could not be persisted.
                Every other failure becomes an ESCALATED response.
        """
        if isinstance(classification, str):
            classification = Classification(classification)
        question_id = uuid.uuid4().hex
        created_at = utcnow()
        t0 = time.time()
        logger.info("Question %s for tender %s (%s): %s",
                    question_id, tender_id, classification.value, question_text[:80])

        # Scoped questions bypass the cache; its key has no document scope
        key = self.cache.key(tender_id, question_text) if document_ids is None else None
        epoch = self.registry.epoch(tender_id)
        outcome = self.cache.get(key) if key is not None else None
        if outcome is not None and outcome.epoch == epoch:
            logger.info("  ✓ Answer cache hit")
        else:
            outcome = await self._answer(tender_id, question_text, document_ids)
            if (key is not None and outcome.failure is None
                    and self.registry.epoch(tender_id) == epoch):
                self.cache.put(key, replace(outcome, epoch=epoch))

        generation = outcome.generation
        inputs = ConfidenceInputs(
            generator_confidence=generation.confidence if generation else 0.0,
            similarity=outcome.similarity,
            checks=outcome.checks,
            classification=classification,
            evidence_count=len(outcome.evidence),
            failure=outcome.failure,
        )
        logger.info("[5/5] Deciding ...")
        assessment = assess(inputs, self.config.confidence)

        question = Question(
            question_id=question_id,
            tender_id=tender_id,
            bidder_id=bidder_id,
            question_text=question_text,
            classification=classification,
            retrieved_chunks=outcome.candidates,
            context_used=outcome.context.text,
            sources=outcome.context.sources,
            ai_answer=generation.answer if generation else None,
            generator_confidence=inputs.generator_confidence,
            similarity_score=inputs.similarity,
            rule_checks=outcome.checks,
            evidence=outcome.evidence,
            failure=outcome.failure,
            confidence_score=assessment.confidence_score,
            confidence_tier=assessment.tier,
            status=assessment.status,
            escalation_reasons=assessment.reasons,
            created_at=created_at,
            answered_at=utcnow() if assessment.status == QuestionStatus.AI_ANSWERED else None,
        )

        try:
            await asyncio.to_thread(self.question_store.save, question)
        except Exception as exc:
            logger.error("Could not persist question %s: %s", question_id, exc)
            raise ServiceUnavailable(f"question store unavailable: {exc}") from exc

        logger.info("  ✓ %s | tier=%s | score=%.2f | %.1fs%s",
                    question.status.value, assessment.tier.value,
                    assessment.confidence_score, time.time() - t0,
                    f" | {'; '.join(assessment.reasons)}" if assessment.reasons else "")
        return self._response(question)

    # ── Stages ────────────────────────────────────────────────────────────

    async def _answer(
        self,
        tender_id: str,
        question_text: str,
        document_ids: Optional[Sequence[str]],
    ) -> _Outcome:
        flt = RetrievalFilter(
            tender_id=tender_id,
            generations=self.registry.active_generations(tender_id, document_ids),
            document_ids=list(document_ids) if document_ids is not None else None,
        )

        logger.info("[1/5] Retrieving ...")
        try:
            candidates = await self.retriever.retrieve(question_text, flt)
        except RetrievalFailure as exc:
            logger.warning("  ✗ Retrieval failed, escalating: %s", exc)
            return _Outcome(failure=f"retrieval: {exc}")

        logger.info("[2/5] Reranking %d candidates ...", len(candidates))
        candidates = await self._rerank(question_text, candidates)

        logger.info("[3/5] Building context ...")
        context = self.context_builder.build(candidates, self.config.context.token_budget)
        if not context.sources:
            logger.info("  ⊘ No evidence survived; skipping generation")
            return _Outcome(candidates=candidates, context=context)

        logger.info("[4/5] Generating answer ...")
        try:
            generation = await self._generate(question_text, context)
        except GenerationFailure as exc:
            logger.warning("  ✗ Generation failed, escalating: %s", exc)
            return _Outcome(candidates=candidates, context=context,
                            failure=f"generation: {exc}")

        source_ids = [s.chunk_id for s in context.sources]
        evidence = [cid for cid in generation.evidence if cid in source_ids]
        similarity = await self._similarity(generation.answer, context.passages[0])
        checks = run_rule_checks(
            generation.answer,
            "\n\n".join(context.passages),
            generation.evidence,
            source_ids,
            self.config.confidence,
        )
        return _Outcome(
            candidates=candidates,
            context=context,
            generation=generation,
            similarity=similarity,
            checks=checks,
            evidence=evidence,
        )

    async def _rerank(
        self,
        question_text: str,
        candidates: List[RetrievalCandidate],
    ) -> List[RetrievalCandidate]:
        top_k = self.config.rerank.final_top_k
        if self._reranker is None or not candidates:
            return candidates[:top_k]

        res = self.config.resilience
        try:
            scores = await call_with_retry(
                "rerank", self._reranker.score,
                question_text, [c.chunk.text for c in candidates],
                timeout=res.rerank_timeout, resilience=res,
            )
        except StageExhausted as exc:
            logger.warning("Reranker unavailable (%s); using hybrid order", exc)
            return candidates[:top_k]
        if not scores_usable(scores, len(candidates)):
            logger.warning("Reranker returned unusable scores for %d candidates; "
                           "using hybrid order", len(candidates))
            return candidates[:top_k]
        return rerank(candidates, scores, self.config.rerank, self.config.retrieval)

    async def _generate(self, question_text: str, context: BuiltContext) -> GenerationResponse:
        res = self.config.resilience
        try:
            return await call_with_retry(
                "generation", self._generator.generate,
                question_text, context.text,
                timeout=res.generation_timeout, resilience=res,
            )
        except StageExhausted as exc:
            raise GenerationFailure(str(exc)) from exc

    async def _similarity(self, answer: str, top_passage: str) -> float:
        """Cosine similarity of answer and top evidence; 0.0 when embedding fails."""
        res = self.config.resilience
        try:
            vectors = await call_with_retry(
                "similarity embedding", self._embedder.embed_batch, [answer, top_passage],
                timeout=res.embed_timeout, resilience=res,
            )
        except StageExhausted as exc:
            logger.warning("Similarity check unavailable (%s); using 0.0", exc)
            return 0.0
        return min(1.0, max(-1.0, cosine_similarity(vectors[0], vectors[1])))

    def _response(self, question: Question) -> AskResponse:
        answered = question.status == QuestionStatus.AI_ANSWERED
        evidence = set(question.evidence)
        return AskResponse(
            question_id=question.question_id,
            answer=question.ai_answer if answered else self.config.confidence.escalation_notice,
            confidence_tier=question.confidence_tier,
            status=question.status,
            evidence=[s for s in question.sources if s.chunk_id in evidence] if answered else [],
        )


# ── Wiring ────────────────────────────────────────────────────────────────

def build_pipeline(cfg: Optional[Config] = None) -> TenderQAPipeline:
    """Select providers from configuration. Models load lazily on first use."""
    cfg = cfg or default_config

    if cfg.embedding.provider != "sentence-transformers":
        raise ValueError(f"Unknown embedding provider: {cfg.embedding.provider}")
    embedder = SentenceTransformerEmbedder(cfg.embedding)

    r = cfg.retrieval
    if r.vector_backend == "memory":
        vector_index: BaseVectorIndex = InMemoryVectorIndex(cfg.embedding.dimension)
    elif r.vector_backend == "chroma":
        vector_index = ChromaVectorIndex(
            cfg.embedding.dimension,
            persist_dir=r.chroma_persist_dir,
            collection_name=r.chroma_collection,
        )
    else:
        raise ValueError(f"Unknown vector backend: {r.vector_backend}")

    if r.lexical_backend is None:
        lexical_index = None
    elif r.lexical_backend == "bm25":
        lexical_index = BM25LexicalIndex()
    else:
        raise ValueError(f"Unknown lexical backend: {r.lexical_backend}")

    if cfg.rerank.provider is None:
        reranker = None
    elif cfg.rerank.provider == "cross-encoder":
        reranker = CrossEncoderReranker(cfg.rerank)
    else:
        raise ValueError(f"Unknown rerank provider: {cfg.rerank.provider}")

    if cfg.llm.provider != "llama-cpp":
        raise ValueError(f"Unknown LLM provider: {cfg.llm.provider}")
    generator = LlamaCppGenerator(cfg.llm)

    question_store = (
        JsonQuestionStore(cfg.questions_dir) if cfg.questions_dir else InMemoryQuestionStore()
    )

    if cfg.store_dir:
        chunk_store: ChunkStore = JsonChunkStore(os.path.join(cfg.store_dir, "chunks"))
        registry = JsonVersionRegistry(os.path.join(cfg.store_dir, "versions.json"))
    else:
        chunk_store = InMemoryChunkStore()
        registry = VersionRegistry()
    vectors_persist = r.vector_backend == "chroma" and bool(r.chroma_persist_dir)
    if vectors_persist != bool(cfg.store_dir):
        logger.warning(
            "Vectors are %s but chunk records and active versions are %s; "
            "a restart will leave them out of step",
            "persisted" if vectors_persist else "in memory",
            "persisted" if cfg.store_dir else "in memory",
        )

    pipeline = TenderQAPipeline(
        embedder=embedder,
        vector_index=vector_index,
        generator=generator,
        chunk_store=chunk_store,
        question_store=question_store,
        registry=registry,
        lexical_index=lexical_index,
        reranker=reranker,
        cfg=cfg,
    )
    if cfg.store_dir:
        pipeline.indexer.restore_lexical_index()
    return pipeline


# ── CLI ───────────────────────────────────────────────────────────────────

def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="tender_qa",
        description="TenderQA - Answer bidder questions from OCR'd tender documents",
    )
    parser.add_argument("files", nargs="+",
                        help="OCR JSON files ({text, layout}); document id = file stem")
    parser.add_argument("--tender", "-t", required=True, help="Tender id")
    parser.add_argument("--question", "-q", required=True, help="Bidder question")
    parser.add_argument("--classification", "-c", default="GENERAL",
                        help="Question classification (default: GENERAL)")
    parser.add_argument("--bidder", default="cli", help="Bidder id (default: cli)")
    parser.add_argument("--version", default="1", help="Document version to index (default: 1)")
    parser.add_argument("--audit", action="store_true",
                        help="Output the full question record instead of the bidder response")
    parser.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else getattr(logging, default_config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        pipeline = build_pipeline()
        requests = []
        for path in args.files:
            doc = OCRDocument.model_validate_json(Path(path).read_text(encoding="utf-8"))
            requests.append(IndexRequest(
                tender_id=args.tender,
                document_id=Path(path).stem,
                text=doc.text,
                layout=doc.layout,
                version=args.version,
            ))

        outcomes = pipeline.index_documents(requests)
        failed = {doc: exc for doc, exc in outcomes.items() if isinstance(exc, Exception)}
        for doc, exc in failed.items():
            logger.error("Skipping %s: %s", doc, exc)
        if len(failed) == len(requests):
            logger.error("No document could be indexed.")
            sys.exit(1)

        response = asyncio.run(pipeline.ask(
            args.tender, args.bidder, args.question, args.classification,
        ))
        if args.audit:
            result = pipeline.get_question(response.question_id).model_dump(mode="json")
        else:
            result = response.model_dump(mode="json")

        if args.output:
            os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
            with open(args.output, "w", encoding="utf-8") as f:
                json.dump(result, f, indent=2, ensure_ascii=False)
            logger.info("Output written to: %s", args.output)
        else:
            print(json.dumps(result, indent=2, ensure_ascii=False))
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        sys.exit(1)
    except (ValueError, IndexingFailure) as exc:
        logger.error("Invalid input: %s", exc)
        sys.exit(1)
    except ServiceUnavailable as exc:
        logger.error("Service unavailable: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
