"""
context.py - Token-bounded context assembly for the answer generator.

Each included chunk becomes one block:

    [SOURCE <chunk_id> | pages 3-4]
    <chunk text>

The bracketed label is the citation handle. The generator is told to cite
chunk ids exactly as written there, which is what makes evidence
verifiable afterwards.

Blocks are added greedily by final_score. The token count of the whole
serialised context never exceeds the budget: a block that does not fit is
cut back to the last sentence (or table row) boundary that fits, and
assembly stops there.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from tender_qa.chunking import count_tokens
from tender_qa.config import ContextConfig, config
from tender_qa.retrieval import sort_candidates
from tender_qa.schemas import BuiltContext, Chunk, RetrievalCandidate, SourceReference

logger = logging.getLogger(__name__)

_BLOCK_SEPARATOR = "\n\n"
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*(?=\s|$)")
_LINE_END_RE = re.compile(r"(?=\n)")


def source_label(chunk: Chunk) -> str:
    if chunk.page_start == chunk.page_end:
        pages = f"page {chunk.page_start}"
    else:
        pages = f"pages {chunk.page_start}-{chunk.page_end}"
    return f"[SOURCE {chunk.chunk_id} | {pages}]"


def _cut_points(text: str) -> List[int]:
    """Offsets where text may be cut: after sentence ends and before line breaks."""
    points = {m.end() for m in _SENTENCE_END_RE.finditer(text)}
    points.update(m.start() for m in _LINE_END_RE.finditer(text))
    return sorted(p for p in points if 0 < p < len(text))


class ContextBuilder:
    def __init__(self, context_config: Optional[ContextConfig] = None):
        self._config = context_config or config.context

    def build(
        self,
        candidates: Sequence[RetrievalCandidate],
        token_budget: Optional[int] = None,
    ) -> BuiltContext:
        budget = token_budget if token_budget is not None else self._config.token_budget
        blocks: List[str] = []
        passages: List[str] = []
        sources: List[SourceReference] = []

        for cand in sort_candidates(list(candidates)):
            chunk = cand.chunk
            if chunk is None:
                logger.warning("Candidate %s has no chunk attached; skipping", cand.chunk_id)
                continue

            label = source_label(chunk)
            block = f"{label}\n{chunk.text}"
            if count_tokens(_BLOCK_SEPARATOR.join(blocks + [block])) <= budget:
                blocks.append(block)
                passages.append(chunk.text)
                sources.append(self._reference(chunk, label, truncated=False))
                continue

            cut = self._truncate(blocks, label, chunk.text, budget)
            if cut is not None:
                blocks.append(f"{label}\n{cut}")
                passages.append(cut)
                sources.append(self._reference(chunk, label, truncated=True))
            break

        text = _BLOCK_SEPARATOR.join(blocks)
        token_count = count_tokens(text)
        logger.info("Context: %d/%d candidates, %d/%d tokens",
                    len(sources), len(candidates), token_count, budget)
        return BuiltContext(
            text=text,
            passages=passages,
            sources=sources,
            token_count=token_count,
        )

    @staticmethod
    def _truncate(blocks: List[str], label: str, text: str, budget: int) -> Optional[str]:
        """Longest boundary-aligned prefix of text that still fits, or None."""
        for point in reversed(_cut_points(text)):
            prefix = text[:point].rstrip()
            if not prefix:
                continue
            trial = _BLOCK_SEPARATOR.join(blocks + [f"{label}\n{prefix}"])
            if count_tokens(trial) <= budget:
                return prefix
        return None

    @staticmethod
    def _reference(chunk: Chunk, label: str, truncated: bool) -> SourceReference:
        return SourceReference(
            chunk_id=chunk.chunk_id,
            page_start=chunk.page_start,
            page_end=chunk.page_end,
            label=label,
            truncated=truncated,
        )
