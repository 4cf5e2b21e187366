"""
confidence.py - Rule checks and the escalation decision.

Everything here is a pure function of its arguments. The decision reads
only ConfidenceInputs (generator confidence, similarity, rule checks,
classification, evidence count, forced failure), all of which are
persisted on the Question, so any stored decision can be recomputed with
assess(question.decision_inputs()).

Tier mapping, first match wins:
  low     g < low_confidence, a major rule check failed, no evidence,
          or a stage failure forced the outcome
  high    g >= high_confidence and s >= high_similarity and every rule
          check passed
  medium  otherwise

Overrides on top of the tier:
  - high-stakes classifications (legal clarification, negotiation)
    escalate unless the tier is high
  - always-escalate classifications (UNKNOWN, NEGOTIATION) and zero
    evidence escalate whatever the tier

status is ESCALATED iff the tier is low or an override fired.

Numbers are where answers go wrong in tenders (EMD amounts, submission
dates, penalty percentages), so every date and number in the answer must
appear in the context the generator actually saw.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import List, Optional, Sequence, Set, Tuple

from tender_qa.config import ConfidenceConfig, config
from tender_qa.schemas import (
    ConfidenceAssessment,
    ConfidenceInputs,
    ConfidenceTier,
    Question,
    QuestionStatus,
    RuleCheck,
)

logger = logging.getLogger(__name__)

NUMERIC_CHECK = "numeric_consistency"
CITATION_CHECK = "citation_integrity"

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_NAME = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?"
    r"|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_ORD = r"(?:st|nd|rd|th)?"

_DATE_PATTERNS = [
    # 2025-12-01
    re.compile(r"\b(?P<y>\d{4})-(?P<m>\d{1,2})-(?P<d>\d{1,2})\b"),
    # 01/12/2025, 01.12.2025, 01-12-2025
    re.compile(r"\b(?P<a>\d{1,2})[/.-](?P<b>\d{1,2})[/.-](?P<y>\d{2}|\d{4})\b"),
    # 1 December 2025, 1st Dec, 2025
    re.compile(rf"\b(?P<d>\d{{1,2}}){_ORD}\s+(?:of\s+)?(?P<mon>{_MONTH_NAME})\.?,?\s+(?P<y>\d{{4}})\b",
               re.IGNORECASE),
    # December 1, 2025
    re.compile(rf"\b(?P<mon>{_MONTH_NAME})\.?\s+(?P<d>\d{{1,2}}){_ORD},?\s+(?P<y>\d{{4}})\b",
               re.IGNORECASE),
]
_NUMBER_RE = re.compile(r"\d+(?:,\d+)*(?:\.\d+)?")


# ── Token extraction ──────────────────────────────────────────────────────

def _safe_date(y: int, m: int, d: int) -> Optional[str]:
    try:
        return date(y, m, d).isoformat()
    except ValueError:
        return None


def _date_readings(match: "re.Match[str]") -> Set[str]:
    """ISO readings of one date match. Slash dates can be read both ways."""
    groups = match.groupdict()
    year = int(groups["y"])
    if year < 100:
        year += 2000

    if groups.get("mon"):
        month = _MONTHS[groups["mon"][:3].lower()]
        readings = {_safe_date(year, month, int(groups["d"]))}
    elif groups.get("a"):
        a, b = int(groups["a"]), int(groups["b"])
        readings = {_safe_date(year, b, a), _safe_date(year, a, b)}
    else:
        readings = {_safe_date(year, int(groups["m"]), int(groups["d"]))}
    return {r for r in readings if r}


def extract_dates(text: str) -> List[Tuple[str, Set[str], Tuple[int, int]]]:
    """(surface text, ISO readings, span) for every date in text."""
    found: List[Tuple[str, Set[str], Tuple[int, int]]] = []
    taken: List[Tuple[int, int]] = []
    for pattern in _DATE_PATTERNS:
        for m in pattern.finditer(text):
            span = m.span()
            if any(s < span[1] and span[0] < e for s, e in taken):
                continue
            readings = _date_readings(m)
            if not readings:
                continue
            taken.append(span)
            found.append((m.group(0), readings, span))
    found.sort(key=lambda item: item[2])
    return found


def canonical_number(token: str) -> str:
    """'2,50,000.00' -> '250000'; '05' -> '5'; '0.50' -> '0.5'."""
    value = token.replace(",", "")
    if "." in value:
        value = value.rstrip("0").rstrip(".")
    whole, dot, frac = value.partition(".")
    whole = whole.lstrip("0") or "0"
    return f"{whole}{dot}{frac}"


def extract_numbers(text: str, skip_spans: Sequence[Tuple[int, int]] = ()) -> List[str]:
    """Canonical numbers in text, ignoring anything inside skip_spans."""
    numbers: List[str] = []
    for m in _NUMBER_RE.finditer(text):
        if any(s <= m.start() and m.end() <= e for s, e in skip_spans):
            continue
        numbers.append(canonical_number(m.group(0)))
    return numbers


# ── Rule checks ───────────────────────────────────────────────────────────

def check_numeric_consistency(
    answer: str,
    context_text: str,
    confidence_config: Optional[ConfidenceConfig] = None,
) -> RuleCheck:
    """
    Every date and number in the answer must appear in the context.

    Failure is major when any date is missing or at least
    numeric_major_ratio of the tokens are missing.
    """
    cc = confidence_config or config.confidence

    answer_dates = extract_dates(answer)
    answer_numbers = extract_numbers(answer, [span for _, _, span in answer_dates])
    total = len(answer_dates) + len(answer_numbers)
    if total == 0:
        return RuleCheck(name=NUMERIC_CHECK, passed=True, detail="no numeric tokens in answer")

    context_dates: Set[str] = set()
    for _, readings, _ in extract_dates(context_text):
        context_dates |= readings
    context_numbers = set(extract_numbers(context_text))

    missing_dates = [surface for surface, readings, _ in answer_dates
                     if not readings & context_dates]
    missing_numbers = [n for n in answer_numbers if n not in context_numbers]
    missing = missing_dates + missing_numbers

    if not missing:
        return RuleCheck(name=NUMERIC_CHECK, passed=True,
                         detail=f"{total} numeric token(s) found in context")

    major = bool(missing_dates) or len(missing) / total >= cc.numeric_major_ratio
    return RuleCheck(
        name=NUMERIC_CHECK,
        passed=False,
        major=major,
        detail=f"{len(missing)}/{total} not in context: {', '.join(missing)}",
    )


def check_citation_integrity(cited_ids: Sequence[str], source_ids: Sequence[str]) -> RuleCheck:
    """Every chunk id the generator cites must be one of the included sources."""
    unknown = [cid for cid in cited_ids if cid not in set(source_ids)]
    if unknown:
        return RuleCheck(name=CITATION_CHECK, passed=False, major=False,
                         detail=f"cited ids not in context: {', '.join(unknown)}")
    return RuleCheck(name=CITATION_CHECK, passed=True,
                     detail=f"{len(cited_ids)} citation(s) verified")


def run_rule_checks(
    answer: str,
    context_text: str,
    cited_ids: Sequence[str],
    source_ids: Sequence[str],
    confidence_config: Optional[ConfidenceConfig] = None,
) -> List[RuleCheck]:
    return [
        check_numeric_consistency(answer, context_text, confidence_config),
        check_citation_integrity(cited_ids, source_ids),
    ]


# ── Decision ──────────────────────────────────────────────────────────────

def assess(
    inputs: ConfidenceInputs,
    confidence_config: Optional[ConfidenceConfig] = None,
) -> ConfidenceAssessment:
    """Map decision inputs to tier, escalation and reasons."""
    cc = confidence_config or config.confidence
    g = inputs.generator_confidence
    s = inputs.similarity
    failed = [c for c in inputs.checks if not c.passed]
    major = [c for c in failed if c.major]

    reasons: List[str] = []
    if inputs.failure:
        reasons.append(f"stage failure: {inputs.failure}")
    if g < cc.low_confidence:
        reasons.append(f"generator confidence {g:.2f} below {cc.low_confidence:.2f}")
    for check in major:
        reasons.append(f"major rule check failed: {check.name} ({check.detail})")
    if inputs.evidence_count == 0:
        reasons.append("no supporting evidence")

    if reasons:
        tier = ConfidenceTier.LOW
    elif g >= cc.high_confidence and s >= cc.high_similarity and not failed:
        tier = ConfidenceTier.HIGH
    else:
        tier = ConfidenceTier.MEDIUM

    override = False
    classification = inputs.classification.value
    if classification in cc.always_escalate_classifications:
        override = True
        reasons.append(f"classification {classification} is always escalated")
    elif classification in cc.high_stakes_classifications and tier != ConfidenceTier.HIGH:
        override = True
        reasons.append(f"high-stakes classification {classification} with {tier.value} confidence")
    if inputs.evidence_count == 0:
        override = True

    escalate = tier == ConfidenceTier.LOW or override
    logger.debug("Decision g=%.2f s=%.2f tier=%s escalate=%s reasons=%s",
                 g, s, tier.value, escalate, reasons)
    return ConfidenceAssessment(
        generator_confidence=g,
        similarity=s,
        checks=list(inputs.checks),
        tier=tier,
        escalate=escalate,
        status=QuestionStatus.ESCALATED if escalate else QuestionStatus.AI_ANSWERED,
        confidence_score=confidence_score(g, s, inputs.checks, cc),
        reasons=reasons,
    )


def confidence_score(
    g: float,
    s: float,
    checks: Sequence[RuleCheck],
    confidence_config: Optional[ConfidenceConfig] = None,
) -> float:
    """Weighted blend of g, s and the passed-check ratio, clamped to [0, 1]."""
    cc = confidence_config or config.confidence
    w_g, w_s, w_c = cc.score_weights
    passed_ratio = sum(1 for c in checks if c.passed) / len(checks) if checks else 0.0
    score = w_g * g + w_s * max(0.0, s) + w_c * passed_ratio
    return round(min(1.0, max(0.0, score)), 4)


def reassess(
    question: Question,
    confidence_config: Optional[ConfidenceConfig] = None,
) -> ConfidenceAssessment:
    """Recompute the decision of a persisted question from its stored fields."""
    return assess(question.decision_inputs(), confidence_config)
