"""
chunking.py - Structure-aware, overlapping, deterministic chunking.

Documents arrive as plain OCR text plus layout metadata (page spans,
headings, detected tables). Chunking runs in two passes:

  1. Structural split. Tables are carved out as atomic regions, then the
     remaining text is cut at every heading offset and (optionally) every
     page start. A chunk never straddles a heading or a table edge.

  2. Windowing. Each text section is cut into windows of window_tokens
     with overlap_tokens of overlap. Windows end on a word boundary, and
     end early on a sentence boundary when one falls in the back half of
     the window. Every window is an exact substring of the source, so the
     union of chunk ranges covers every non-whitespace character.

Tables are never windowed as text. When the OCR layer extracted cells, the
chunk carries a row serialisation with the header line repeated, plus the
cells as a structured payload. A table too large for one window is split
into row groups, each repeating the header.

The output is a pure function of (text, layout, ids, config): chunk ids
are built from document id, version and chunk index, and no timestamps are
set here. Re-indexing identical input therefore rewrites identical chunks.
"""

from __future__ import annotations

import bisect
import logging
import re
from typing import List, Optional, Tuple

import tiktoken

from tender_qa.config import ChunkingConfig, config
from tender_qa.schemas import (
    Chunk,
    LayoutMetadata,
    TablePayload,
    TableRegion,
    make_chunk_id,
)

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\S+")
# A word that closes a sentence, allowing trailing quotes/brackets: 'done."'
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*$")

_encoder = None
_encoder_failed = False

# (start, end, table) - table is None for text sections
_Segment = Tuple[int, int, Optional[TableRegion]]


def count_tokens(text: str) -> int:
    """
    Count tokens with tiktoken for accurate budget estimation.

    Falls back to a ceil(len/4) heuristic when the encoding cannot be loaded
    (tiktoken fetches its BPE files on first use, which fails on hosts
    without network access). The fallback is sticky for the process so
    counts stay consistent between indexing and querying.
    """
    global _encoder, _encoder_failed
    if not text:
        return 0
    if _encoder is None and not _encoder_failed:
        try:
            _encoder = tiktoken.get_encoding(config.chunking.tiktoken_model)
        except Exception as exc:
            _encoder_failed = True
            logger.warning("tiktoken encoding unavailable (%s); using len/4 heuristic", exc)
    if _encoder is not None:
        return len(_encoder.encode(text, disallowed_special=()))
    # Ceiling keeps per-word counts an upper bound of the joined text
    return -(-len(text) // 4)


def create_chunks(
    text: str,
    layout: Optional[LayoutMetadata] = None,
    *,
    document_id: str,
    version: str,
    tender_id: str,
    chunking_config: Optional[ChunkingConfig] = None,
) -> List[Chunk]:
    """
    Split one document into ordered, overlapping chunks.

    Args:
        text:      Plain OCR text of the whole document.
        layout:    Page spans, headings and tables as character offsets
                   into text. Missing layout means one untitled section
                   on page 1.
        document_id, version, tender_id: identity of the generation.

    Returns:
        Chunks in document order, chunk_index starting at 0.
    """
    cfg = chunking_config or config.chunking
    layout = layout or LayoutMetadata()
    if not text or not text.strip():
        return []

    pages = sorted(layout.pages, key=lambda p: p.start)
    page_starts = [p.start for p in pages]
    headings = sorted(layout.headings, key=lambda h: h.offset)
    heading_offsets = [h.offset for h in headings]

    def page_at(offset: int) -> int:
        if not pages:
            return 1
        idx = bisect.bisect_right(page_starts, offset) - 1
        return pages[max(idx, 0)].page

    def section_at(offset: int) -> Optional[str]:
        idx = bisect.bisect_right(heading_offsets, offset) - 1
        return headings[idx].text.strip() if idx >= 0 else None

    chunks: List[Chunk] = []

    def emit(piece: str, start: int, end: int, table: Optional[TableRegion] = None,
             payload: Optional[TablePayload] = None) -> None:
        index = len(chunks)
        if table is not None and table.page is not None:
            page_start = page_end = table.page
        else:
            page_start, page_end = page_at(start), page_at(max(start, end - 1))
        chunks.append(Chunk(
            chunk_id=make_chunk_id(document_id, version, index),
            tender_id=tender_id,
            document_id=document_id,
            version=version,
            chunk_index=index,
            text=piece,
            page_start=page_start,
            page_end=max(page_start, page_end),
            section=section_at(start),
            chunk_type="table" if table is not None else "text",
            table=payload,
            token_count=count_tokens(piece),
            char_start=start,
            char_end=end,
        ))

    for start, end, table in _structural_segments(text, layout, cfg):
        if table is not None:
            for piece, payload in _table_pieces(text, table, cfg):
                emit(piece, start, end, table, payload)
            continue
        for w_start, w_end in _window_section(text, start, end, cfg):
            emit(text[w_start:w_end], w_start, w_end)

    logger.info(
        "Chunked document %s@%s into %d chunks (%d table, %d text)",
        document_id, version, len(chunks),
        sum(1 for c in chunks if c.chunk_type == "table"),
        sum(1 for c in chunks if c.chunk_type != "table"),
    )
    return chunks


def _structural_segments(
    text: str,
    layout: LayoutMetadata,
    cfg: ChunkingConfig,
) -> List[_Segment]:
    """Cut the document at tables, headings and (optionally) page starts."""
    n = len(text)
    cuts = {h.offset for h in layout.headings}
    if cfg.split_on_page_breaks:
        cuts.update(p.start for p in layout.pages)

    tables = sorted(
        (t for t in layout.tables if t.start < t.end and t.start < n),
        key=lambda t: (t.start, t.end),
    )

    segments: List[_Segment] = []
    cursor = 0
    for table in tables:
        if table.start < cursor:
            logger.warning(
                "Table %s overlaps the previous table; chunking it as text",
                table.table_id,
            )
            continue
        segments.extend(_split_at(cursor, table.start, cuts))
        table_end = min(table.end, n)
        segments.append((table.start, table_end, table))
        cursor = table_end
    segments.extend(_split_at(cursor, n, cuts))
    return segments


def _split_at(start: int, end: int, cuts) -> List[_Segment]:
    points = [start] + sorted(c for c in cuts if start < c < end) + [end]
    return [(a, b, None) for a, b in zip(points, points[1:]) if a < b]


def _window_section(
    text: str,
    start: int,
    end: int,
    cfg: ChunkingConfig,
) -> List[Tuple[int, int]]:
    """
    Overlapping windows over text[start:end] as absolute (start, end)
    offsets. A section that fits in one window yields exactly one; an
    empty or whitespace-only section yields none.
    """
    # Leave room for the whitespace a word is costed with
    word_limit = max(1, cfg.window_tokens - 1)
    words: List[Tuple[int, int]] = []
    for m in _WORD_RE.finditer(text, start, end):
        if count_tokens(m.group()) > word_limit:
            logger.warning(
                "Splitting a %d-character run without whitespace at offset %d "
                "to fit the %d-token window", m.end() - m.start(), m.start(), cfg.window_tokens,
            )
            words.extend(_split_long_word(text, m.start(), m.end(), word_limit))
        else:
            words.append((m.start(), m.end()))
    if not words:
        return []

    # A word is costed with the whitespace before it, as it appears in a window
    gap_starts = [start] + [b for _, b in words[:-1]]
    costs = [count_tokens(text[g:b]) for g, (_, b) in zip(gap_starts, words)]
    n = len(words)
    windows: List[Tuple[int, int]] = []
    i = 0
    while i < n:
        j = i
        total = 0
        # Always take at least one word, even one longer than the window
        while j < n and (j == i or total + costs[j] <= cfg.window_tokens):
            total += costs[j]
            j += 1
        if j < n:
            j = _snap_to_sentence(text, words, i, j)

        windows.append((words[i][0], words[j - 1][1]))
        if j >= n:
            break

        # Step back from the window end until the overlap budget is spent.
        # k stays > i so every iteration makes progress.
        k = j
        overlap = 0
        while k - 1 > i and overlap + costs[k - 1] <= cfg.overlap_tokens:
            k -= 1
            overlap += costs[k]
        i = k

    return windows


def _split_long_word(text: str, a: int, b: int, limit: int) -> List[Tuple[int, int]]:
    """Cut text[a:b] into consecutive spans of at most limit tokens each."""
    pieces: List[Tuple[int, int]] = []
    while a < b:
        cut = b
        while cut - a > 1 and count_tokens(text[a:cut]) > limit:
            cut = a + (cut - a + 1) // 2
        pieces.append((a, cut))
        a = cut
    return pieces


def _snap_to_sentence(text: str, words, i: int, j: int) -> int:
    """Pull the window end back to a sentence end in the back half, if any."""
    floor = i + (j - i) // 2
    for k in range(j, floor, -1):
        a, b = words[k - 1]
        if _SENTENCE_END_RE.search(text[a:b]):
            return k
    return j


def _table_pieces(
    text: str,
    table: TableRegion,
    cfg: ChunkingConfig,
) -> List[Tuple[str, Optional[TablePayload]]]:
    """
    Chunk texts for one table region.

    With extracted cells every row is rendered as "[Row n]: a | b | c"
    below a "[Table Headers]: ..." line, because a row like
    "500 | kg | IS 456" is meaningless without its headers. Rows are
    grouped greedily so that each group fits the window.
    """
    if not table.rows:
        raw = text[table.start:table.end].strip()
        return [(raw, None)] if raw else []

    header_line = f"[Table Headers]: {' | '.join(table.headers)}" if table.headers else ""
    header_cost = count_tokens(header_line)

    pieces: List[Tuple[str, Optional[TablePayload]]] = []
    lines: List[str] = []
    rows: List[List[str]] = []
    used = header_cost

    def flush() -> None:
        if not lines:
            return
        body = "\n".join(([header_line] if header_line else []) + lines)
        payload = TablePayload(table_id=table.table_id, headers=list(table.headers), rows=list(rows))
        pieces.append((body, payload))
        lines.clear()
        rows.clear()

    for row_idx, row in enumerate(table.rows):
        if not any(cell.strip() for cell in row):
            continue
        line = f"[Row {row_idx + 1}]: {' | '.join(row)}"
        cost = count_tokens(line)
        if header_cost + cost > cfg.window_tokens:
            # Rows stay whole; this chunk will be over the window
            logger.warning(
                "Row %d of table %s needs %d tokens with its headers, over the %d-token window",
                row_idx + 1, table.table_id, header_cost + cost, cfg.window_tokens,
            )
        if lines and used + cost > cfg.window_tokens:
            flush()
            used = header_cost
        lines.append(line)
        rows.append(list(row))
        used += cost
    flush()

    if not pieces:
        raw = text[table.start:table.end].strip()
        return [(raw, None)] if raw else []
    return pieces
