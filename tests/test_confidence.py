"""
test_confidence.py - Tests for rule checks, the escalation decision and
generator output parsing.

Run with:
    python tests/test_confidence.py
    python -m pytest tests/test_confidence.py -v
"""

from __future__ import annotations

import sys

import pytest

from fakes import run_suite

from tender_qa.confidence import (
    CITATION_CHECK,
    NUMERIC_CHECK,
    assess,
    canonical_number,
    check_citation_integrity,
    check_numeric_consistency,
    confidence_score,
    extract_dates,
    reassess,
    run_rule_checks,
)
from tender_qa.config import ConfidenceConfig
from tender_qa.errors import GenerationError
from tender_qa.generation import normalize_evidence, parse_generation
from tender_qa.schemas import (
    Classification,
    ConfidenceInputs,
    ConfidenceTier,
    Question,
    QuestionStatus,
    RuleCheck,
)

CC = ConfidenceConfig()
CONTEXT = (
    "Earnest Money Deposit: Rs. 2,50,000 by bank guarantee valid for 180 days. "
    "Last date of submission: 01/12/2025. Penalty 0.5% per week, capped at 10%."
)
PASSED = [
    RuleCheck(name=NUMERIC_CHECK, passed=True),
    RuleCheck(name=CITATION_CHECK, passed=True),
]


def _inputs(g=0.9, s=0.8, checks=None, classification=Classification.COMMERCIAL,
            evidence_count=2, failure=None) -> ConfidenceInputs:
    return ConfidenceInputs(
        generator_confidence=g,
        similarity=s,
        checks=PASSED if checks is None else checks,
        classification=classification,
        evidence_count=evidence_count,
        failure=failure,
    )


# ── Numeric consistency ───────────────────────────────────────────────────

def test_numeric_check_passes_when_values_match():
    check = check_numeric_consistency(
        "The EMD is Rs. 2,50,000 and bids close on 2025-12-01.", CONTEXT, CC)
    assert check.name == NUMERIC_CHECK
    assert check.passed, check.detail
    print("  ✓ test_numeric_check_passes_when_values_match")


def test_numeric_check_without_numbers_passes():
    check = check_numeric_consistency("Bids are submitted online.", CONTEXT, CC)
    assert check.passed and not check.major
    print("  ✓ test_numeric_check_without_numbers_passes")


def test_numeric_check_minor_mismatch():
    """One missing value out of three is a minor failure."""
    check = check_numeric_consistency(
        "Penalty is 0.5% per week capped at 10% across 40 poles.", CONTEXT, CC)
    assert not check.passed
    assert not check.major
    assert "40" in check.detail
    print("  ✓ test_numeric_check_minor_mismatch")


def test_numeric_check_major_mismatch():
    check = check_numeric_consistency("The EMD is Rs. 3,00,000 valid for 90 days.", CONTEXT, CC)
    assert not check.passed and check.major
    print("  ✓ test_numeric_check_major_mismatch")


def test_missing_date_is_always_major():
    check = check_numeric_consistency(
        "Bids close on 2025-12-05; the EMD is Rs. 2,50,000, valid 180 days, penalty 10%.",
        CONTEXT, CC)
    assert not check.passed and check.major
    assert "2025-12-05" in check.detail
    print("  ✓ test_missing_date_is_always_major")


def test_date_formats_compare_equal():
    for answer in ("The deadline is 1 December 2025.",
                   "The deadline is December 1, 2025.",
                   "The deadline is 1st Dec 2025.",
                   "The deadline is 2025-12-01."):
        check = check_numeric_consistency(answer, CONTEXT, CC)
        assert check.passed, (answer, check.detail)
    print("  ✓ test_date_formats_compare_equal")


def test_number_canonicalisation():
    assert canonical_number("2,50,000") == "250000"
    assert canonical_number("250,000.00") == "250000"
    assert canonical_number("0.50") == "0.5"
    assert canonical_number("05") == "5"
    assert canonical_number("100") == "100"
    check = check_numeric_consistency("The EMD is Rs. 250,000.00.", CONTEXT, CC)
    assert check.passed, check.detail
    print("  ✓ test_number_canonicalisation")


def test_extract_dates_readings():
    dates = extract_dates("Submit by 01.12.2025 or 2nd Jan 2026.")
    assert [surface for surface, _, _ in dates] == ["01.12.2025", "2nd Jan 2026"]
    assert dates[0][1] == {"2025-12-01", "2025-01-12"}
    assert dates[1][1] == {"2026-01-02"}
    assert extract_dates("Clause 45/99/7 applies") == []
    print("  ✓ test_extract_dates_readings")


def test_citation_integrity():
    ok = check_citation_integrity(["a"], ["a", "b"])
    assert ok.passed
    bad = check_citation_integrity(["a", "x"], ["a", "b"])
    assert not bad.passed and not bad.major
    assert "x" in bad.detail
    checks = run_rule_checks("No numbers here.", CONTEXT, ["a"], ["a"], CC)
    assert [c.name for c in checks] == [NUMERIC_CHECK, CITATION_CHECK]
    print("  ✓ test_citation_integrity")


# ── Decision ──────────────────────────────────────────────────────────────

def test_tier_mapping():
    high = assess(_inputs(), CC)
    assert high.tier == ConfidenceTier.HIGH
    assert high.status == QuestionStatus.AI_ANSWERED and not high.escalate
    assert high.reasons == []

    assert assess(_inputs(g=0.7), CC).tier == ConfidenceTier.MEDIUM
    assert assess(_inputs(s=0.5), CC).tier == ConfidenceTier.MEDIUM
    minor = [PASSED[0], RuleCheck(name=CITATION_CHECK, passed=False)]
    medium = assess(_inputs(checks=minor), CC)
    assert medium.tier == ConfidenceTier.MEDIUM
    assert medium.status == QuestionStatus.AI_ANSWERED

    low = assess(_inputs(g=0.5), CC)
    assert low.tier == ConfidenceTier.LOW and low.status == QuestionStatus.ESCALATED

    major = [RuleCheck(name=NUMERIC_CHECK, passed=False, major=True, detail="1/1 missing"),
             PASSED[1]]
    assert assess(_inputs(g=0.95, s=0.95, checks=major), CC).tier == ConfidenceTier.LOW
    print("  ✓ test_tier_mapping")


def test_low_confidence_always_escalates():
    """Below the low threshold nothing is ever answered automatically."""
    for g in (0.0, 0.2, 0.45, 0.59):
        for s in (-0.5, 0.0, 0.8, 1.0):
            for classification in Classification:
                result = assess(_inputs(g=g, s=s, classification=classification), CC)
                assert result.tier == ConfidenceTier.LOW
                assert result.status == QuestionStatus.ESCALATED
    print("  ✓ test_low_confidence_always_escalates")


def test_legal_clarification_escalates_unless_high():
    medium = assess(_inputs(g=0.7, classification="LEAGAL_CLARIFICATION"), CC)
    assert medium.tier == ConfidenceTier.MEDIUM
    assert medium.status == QuestionStatus.ESCALATED
    assert any("LEGAL_CLARIFICATION" in r for r in medium.reasons)

    high = assess(_inputs(classification=Classification.LEGAL_CLARIFICATION), CC)
    assert high.tier == ConfidenceTier.HIGH
    assert high.status == QuestionStatus.AI_ANSWERED
    print("  ✓ test_legal_clarification_escalates_unless_high")


def test_negotiation_escalates_even_when_high():
    result = assess(_inputs(g=0.95, s=0.9, classification=Classification.NEGOTIATION), CC)
    assert result.tier == ConfidenceTier.HIGH
    assert result.status == QuestionStatus.ESCALATED
    assert result.escalate
    print("  ✓ test_negotiation_escalates_even_when_high")


def test_unknown_classification_escalates():
    result = assess(_inputs(classification="something new"), CC)
    assert result.tier == ConfidenceTier.HIGH
    assert result.status == QuestionStatus.ESCALATED
    print("  ✓ test_unknown_classification_escalates")


def test_zero_evidence_escalates():
    result = assess(_inputs(g=0.95, s=0.9, evidence_count=0), CC)
    assert result.tier == ConfidenceTier.LOW
    assert result.status == QuestionStatus.ESCALATED
    assert "no supporting evidence" in result.reasons

    failed = assess(_inputs(failure="retrieval: search timed out"), CC)
    assert failed.status == QuestionStatus.ESCALATED
    assert failed.reasons[0].startswith("stage failure")
    print("  ✓ test_zero_evidence_escalates")


def test_confidence_score_formula():
    assert confidence_score(0.9, 0.8, PASSED, CC) == pytest.approx(0.89)
    half = [PASSED[0], RuleCheck(name=CITATION_CHECK, passed=False)]
    assert confidence_score(0.5, -0.3, half, CC) == pytest.approx(0.35)
    assert confidence_score(0.8, 0.5, [], CC) == pytest.approx(0.55)
    assert 0.0 <= confidence_score(1.0, 1.0, PASSED, CC) <= 1.0
    print("  ✓ test_confidence_score_formula")


def test_reassess_from_persisted_question():
    """A stored question carries everything needed to recompute its decision."""
    question = Question(
        question_id="q-1", tender_id="T-1", bidder_id="b-1",
        question_text="Can the penalty cap be negotiated?",
        classification=Classification.LEGAL_CLARIFICATION,
        generator_confidence=0.72, similarity_score=0.66,
        rule_checks=PASSED, evidence=["rfp::v1::00003"],
    )
    original = assess(question.decision_inputs(), CC)
    restored = Question.model_validate_json(question.model_dump_json())
    again = reassess(restored, CC)
    assert again == original
    assert again.status == QuestionStatus.ESCALATED
    print("  ✓ test_reassess_from_persisted_question")


# ── Generator output ──────────────────────────────────────────────────────

def test_parse_generation_strategies():
    direct = parse_generation(
        '{"answer": "EMD is Rs. 2,50,000.", "confidence": 0.82, "evidence": ["rfp::v1::00000"]}')
    assert direct.answer == "EMD is Rs. 2,50,000."
    assert direct.confidence == 0.82
    assert direct.evidence == ["rfp::v1::00000"]

    fenced = parse_generation('```json\n{"answer": "Yes.", "confidence": 0.6, "evidence": []}\n```')
    assert fenced.answer == "Yes." and fenced.evidence == []

    prose = parse_generation(
        'Here is the answer: {"answer": "180 days", "confidence": 0.4, '
        '"evidence": "[SOURCE rfp::v1::00002 | page 4]"} Hope this helps.')
    assert prose.evidence == ["rfp::v1::00002"]
    print("  ✓ test_parse_generation_strategies")


def test_parse_generation_rejects_bad_output():
    for raw in (
        "I cannot answer that.",
        '{"answer": "x", "confidence": 1.5, "evidence": []}',
        '{"answer": "   ", "confidence": 0.5}',
        '{"answer": "x"}',
        '["not", "an", "object"]',
    ):
        with pytest.raises(GenerationError):
            parse_generation(raw)
    print("  ✓ test_parse_generation_rejects_bad_output")


def test_normalize_evidence():
    assert normalize_evidence([
        "[SOURCE a::v1::00001 | page 2]", {"chunk_id": "b"}, "a::v1::00001", " c ",
    ]) == ["a::v1::00001", "b", "c"]
    assert normalize_evidence(None) == []
    assert normalize_evidence(5) == []
    print("  ✓ test_normalize_evidence")


def test_classification_aliases():
    assert Classification("LEAGAL_CLARIFICATION") == Classification.LEGAL_CLARIFICATION
    assert Classification("legal clarification") == Classification.LEGAL_CLARIFICATION
    assert Classification("commercial") == Classification.COMMERCIAL
    assert Classification("nonsense") == Classification.UNKNOWN
    print("  ✓ test_classification_aliases")


def run_all_tests():
    return run_suite("TenderQA - Confidence Tests", [
        test_numeric_check_passes_when_values_match,
        test_numeric_check_without_numbers_passes,
        test_numeric_check_minor_mismatch,
        test_numeric_check_major_mismatch,
        test_missing_date_is_always_major,
        test_date_formats_compare_equal,
        test_number_canonicalisation,
        test_extract_dates_readings,
        test_citation_integrity,
        test_tier_mapping,
        test_low_confidence_always_escalates,
        test_legal_clarification_escalates_unless_high,
        test_negotiation_escalates_even_when_high,
        test_unknown_classification_escalates,
        test_zero_evidence_escalates,
        test_confidence_score_formula,
        test_reassess_from_persisted_question,
        test_parse_generation_strategies,
        test_parse_generation_rejects_bad_output,
        test_normalize_evidence,
        test_classification_aliases,
    ])


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
