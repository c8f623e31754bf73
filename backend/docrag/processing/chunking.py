"""
Chip-Chunk Builder
══════════════════

Splits cleaned text into overlapping word windows and prefixes every window
with a metadata header built from the document's chips:

    [DOCUMENT CONTEXT]
    Property Address: 123 Main St
    Tenant Name: Acme Corp
    [CONTENT]
    <original text slice>

Embedding the document's identity into every chunk lets a query such as
"when does the Acme lease end?" land on chunks whose body never mentions
Acme.

Algorithm
─────────
  1. Header from non-empty chips (snake_case keys → "Title Case" labels).
  2. Optional split on section-break lines ("---", produced by the cleaner).
  3. Per section: ≤ target words → one segment; otherwise windows of
     `target` words advancing by `target − overlap` (step ≤ 0 → `target`).
     Each window maps back to its exact character span in the cleaned
     text (first word start to last word end), so original formatting
     (tables, indentation) is kept instead of re-joining tokens.
  4. A final segment below `min_words` merges into its predecessor when
     there is one; a lone undersized segment is valid on its own.
  5. Header + "\\n" + slice, indices 0..N-1.

An empty document still yields one chunk: header followed by [NO CONTENT].
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field

from docrag.core.config import settings

logger = logging.getLogger(__name__)

HEADER_OPEN       = "[DOCUMENT CONTEXT]"
HEADER_CLOSE      = "[CONTENT]"
NO_CONTENT_MARKER = "[NO CONTENT]"

_WORD_RE          = re.compile(r"\S+")
_SECTION_BREAK_RE = re.compile(r"^[ \t]*---[ \t]*$", re.M)


# ---------------------------------------------------------------------------
# Options / results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkingOptions:
    target_words:           int  = 400
    overlap_words:          int  = 50
    min_words:              int  = 100
    respect_section_breaks: bool = True

    @classmethod
    def from_settings(cls) -> "ChunkingOptions":
        return cls(
            target_words=settings.chunk_target_words,
            overlap_words=settings.chunk_overlap_words,
            min_words=settings.chunk_min_words,
            respect_section_breaks=settings.respect_section_breaks,
        )

    @property
    def step(self) -> int:
        step = self.target_words - self.overlap_words
        return step if step > 0 else self.target_words


@dataclass
class ChunkResult:
    """
    One chip-chunk.

    Attributes:
        index:      Zero-based position within the document.
        content:    Header + "\\n" + text — the string that gets embedded.
        text:       The content slice alone (no header).
        word_count: Words in `text`.
        start_char: Offset of the slice start in the cleaned text.
        end_char:   Offset one past the slice end in the cleaned text.
        embedding:  Filled in by the embedder.
    """
    index:      int
    content:    str
    text:       str
    word_count: int
    start_char: int
    end_char:   int
    embedding:  list[float] | None = None


@dataclass
class ChunkingResult:
    chunks:        list[ChunkResult] = field(default_factory=list)
    total_chunks:  int               = 0
    average_words: int               = 0
    chip_header:   str               = ""


@dataclass
class _Segment:
    text:       str
    word_count: int
    start:      int
    end:        int


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

def chip_label(key: str) -> str:
    """property_address → Property Address"""
    return " ".join(part[:1].upper() + part[1:] for part in key.split("_"))


def build_chip_header(chips: dict[str, str]) -> str:
    lines = [HEADER_OPEN]
    for key, value in chips.items():
        value = (value or "").strip()
        if value:
            lines.append(f"{chip_label(key)}: {value}")
    lines.append(HEADER_CLOSE)
    return "\n".join(lines)


def word_count(text: str) -> int:
    return sum(1 for _ in _WORD_RE.finditer(text))


def estimate_chunk_count(text: str, options: ChunkingOptions | None = None) -> int:
    opts  = options or ChunkingOptions()
    words = word_count(text)
    return max(1, math.ceil(words / opts.step))


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class ChipChunker:

    def __init__(self, options: ChunkingOptions | None = None) -> None:
        self.options = options or ChunkingOptions()
        if self.options.target_words <= 0:
            raise ValueError("target_words must be positive")

    def chunk(self, text: str, chips: dict[str, str] | None = None) -> ChunkingResult:
        header   = build_chip_header(chips or {})
        segments = self._split(text)

        if not segments:
            chunk = ChunkResult(
                index=0,
                content=f"{header}\n{NO_CONTENT_MARKER}",
                text="",
                word_count=0,
                start_char=0,
                end_char=0,
            )
            logger.info("Chunker | empty document, emitted placeholder chunk")
            return ChunkingResult(chunks=[chunk], total_chunks=1, average_words=0, chip_header=header)

        chunks = [
            ChunkResult(
                index=i,
                content=f"{header}\n{seg.text}",
                text=seg.text,
                word_count=seg.word_count,
                start_char=seg.start,
                end_char=seg.end,
            )
            for i, seg in enumerate(segments)
        ]
        average = round(sum(c.word_count for c in chunks) / len(chunks))

        logger.info(
            "Chunker | chunks=%d avg_words=%d header_chars=%d target=%d overlap=%d",
            len(chunks), average, len(header), self.options.target_words, self.options.overlap_words,
        )
        return ChunkingResult(chunks=chunks, total_chunks=len(chunks), average_words=average, chip_header=header)

    # ------------------------------------------------------------------
    # Segmentation
    # ------------------------------------------------------------------

    def _split(self, text: str) -> list[_Segment]:
        segments: list[_Segment] = []
        for offset, section in self._sections(text):
            segments.extend(self._split_section(section, offset))

        if len(segments) > 1 and segments[-1].word_count < self.options.min_words:
            tail = segments.pop()
            prev = segments[-1]
            merged = text[prev.start:tail.end]
            segments[-1] = _Segment(
                text=merged,
                word_count=word_count(merged),
                start=prev.start,
                end=tail.end,
            )
        return segments

    def _sections(self, text: str) -> list[tuple[int, str]]:
        """(absolute offset, stripped section text), empty sections dropped."""
        if self.options.respect_section_breaks:
            bounds, position = [], 0
            for match in _SECTION_BREAK_RE.finditer(text):
                bounds.append((position, match.start()))
                position = match.end()
            bounds.append((position, len(text)))
        else:
            bounds = [(0, len(text))]

        sections = []
        for start, end in bounds:
            raw      = text[start:end]
            stripped = raw.strip()
            if stripped:
                lead = len(raw) - len(raw.lstrip())
                sections.append((start + lead, stripped))
        return sections

    def _split_section(self, section: str, offset: int) -> list[_Segment]:
        words  = list(_WORD_RE.finditer(section))
        target = self.options.target_words

        if len(words) <= target:
            return [_Segment(section, len(words), offset, offset + len(section))]

        segments: list[_Segment] = []
        step = self.options.step
        i = 0
        while i < len(words):
            window = words[i:i + target]
            start  = window[0].start()
            end    = window[-1].end()
            slice_text = section[start:end]
            segments.append(_Segment(
                text=slice_text,
                word_count=len(window),
                start=offset + start,
                end=offset + start + len(slice_text),
            ))
            if i + target >= len(words):
                break
            i += step
        return segments
