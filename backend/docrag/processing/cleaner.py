"""
Extraction Artifact Cleaner
═══════════════════════════

Pure text → text transform applied between extraction and classification.
No I/O, no state, deterministic for a given (text, options) pair.

Steps, in order
───────────────
  1. Strip instruction echo   prompt fragments the page-to-text model leaked
  2. Page markers             "--- PAGE n ---" → "\\n---\\n" section break
                              (or a plain newline when breaks are not kept)
  3. Footer noise             bare page numbers, "Page X of Y", "- 5 -",
                              dotted system footers ("system.footer.id")
  4. Structural markers       [TABLE] / [END TABLE] / [HANDWRITTEN: …]
                              kept verbatim unless strip_special_markers
  5. Whitespace               LF line endings, no trailing blanks, at most
                              one blank line in a row, inline space runs
                              collapsed (aggressive or conservative)

Conservative mode (the default) only shortens runs of 3+ spaces to two so
column alignment inside tables survives; aggressive mode collapses every run
and left-trims non-table lines.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

SECTION_BREAK = "\n---\n"

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

PAGE_MARKER_RE = re.compile(r"^---\s*PAGE\s+\d+\s*---\s*$", re.M)

_INSTRUCTION_ECHO_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"INSTRUCTIONS:\s*\n(?:.*\n)*?.*\[END TABLE\]\s*\n?", re.I),
    re.compile(r"^\d+\.\s*TABLES:\s*Format tables clearly:.*$", re.M),
    re.compile(r"^\s*\|\s*Column\s*\d+\s*\|.*\|.*$", re.M),      # example table header
    re.compile(r"^\s*\|\s*-+\s*\|.*$", re.M),                    # example table separator
    re.compile(r"^\s*\|\s*value\s*\|.*value.*\|.*$", re.M),      # example table values
    re.compile(r"\d+\.\s*HANDWRITING:\s*Mark handwritten text:\s*\n\s*\[HANDWRITTEN:\s*content here\]\s*\n?", re.I),
    re.compile(r"\d+\.\s*Keep section numbers.*formatting intact\.?\s*\n?", re.I),
    re.compile(r"\d+\.\s*Return ONLY the extracted text.*\n?", re.I),
    re.compile(r"\d+\.\s*Output the extracted text.*\n?", re.I),
    re.compile(r"\d+\.\s*Preserve paragraph breaks.*\n?", re.I),
)

# Whatever is left of an "INSTRUCTIONS:" block, up to the next real paragraph
_INSTRUCTION_BLOCK_RE = re.compile(
    r"INSTRUCTIONS:[\s\S]*?(?=\n\n[A-Z]|\n\n\d+\.(?!\s*TABLES)|\n---\n|\Z)",
    re.I,
)

_FOOTER_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*\d{1,3}\s*$", re.M),                        # bare page number
    re.compile(r"^[a-z]+\.[a-z]+\.[a-z]+\s*$", re.M | re.I),     # system footer ids
    re.compile(r"^Page\s+\d+\s+of\s+\d+\s*$", re.M | re.I),
    re.compile(r"^-\s*\d+\s*-\s*$", re.M),                       # centred "- 5 -"
)

_TABLE_OPEN_RE   = re.compile(r"\[TABLE\]\s*")
_TABLE_CLOSE_RE  = re.compile(r"\[END TABLE\]\s*")
_HANDWRITTEN_RE  = re.compile(r"\[HANDWRITTEN:\s*([^\]]*)\]")

_TRAILING_WS_RE  = re.compile(r"[ \t]+$", re.M)
_BLANK_RUN_RE    = re.compile(r"\n{3,}")
_INLINE_RUN_RE   = re.compile(r"[ \t]{2,}")
_SPACE_RUN_RE    = re.compile(r" {3,}")


# ---------------------------------------------------------------------------
# Options / stats
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CleaningOptions:
    preserve_page_breaks:  bool = True    # page markers become section breaks
    strip_special_markers: bool = False   # drop [TABLE]/[HANDWRITTEN:] wrappers
    aggressive_whitespace: bool = False   # may damage table alignment


@dataclass
class CleaningStats:
    original_length:      int
    cleaned_length:       int
    reduction:            str    # e.g. "12.5%"
    page_markers_removed: int


@dataclass
class SpecialMarkerCounts:
    tables:      int
    handwritten: int


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def clean_text(text: str, options: CleaningOptions | None = None) -> str:
    opts = options or CleaningOptions()

    cleaned = strip_instruction_echo(text)

    replacement = SECTION_BREAK if opts.preserve_page_breaks else "\n"
    cleaned = PAGE_MARKER_RE.sub(replacement, cleaned)

    for pattern in _FOOTER_RES:
        cleaned = pattern.sub("", cleaned)

    if opts.strip_special_markers:
        cleaned = strip_special_markers(cleaned)

    cleaned = normalize_whitespace(cleaned, aggressive=opts.aggressive_whitespace)
    return cleaned.strip()


def strip_instruction_echo(text: str) -> str:
    cleaned = text
    for pattern in _INSTRUCTION_ECHO_RES:
        cleaned = pattern.sub("", cleaned)
    return _INSTRUCTION_BLOCK_RE.sub("", cleaned)


def strip_special_markers(text: str) -> str:
    """Remove structural wrappers; handwritten content itself is kept."""
    text = _TABLE_OPEN_RE.sub("", text)
    text = _TABLE_CLOSE_RE.sub("", text)
    return _HANDWRITTEN_RE.sub(lambda m: m.group(1).strip(), text)


def normalize_whitespace(text: str, aggressive: bool = False) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    normalized = _TRAILING_WS_RE.sub("", normalized)
    normalized = _BLANK_RUN_RE.sub("\n\n", normalized)

    if not aggressive:
        return _SPACE_RUN_RE.sub("  ", normalized)

    normalized = _INLINE_RUN_RE.sub(" ", normalized)
    lines = []
    for line in normalized.split("\n"):
        # table rows keep their leading indentation
        if line.strip().startswith("|") or "|---|" in line:
            lines.append(line)
        else:
            lines.append(line.lstrip())
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

def section_breaks(text: str) -> list[int]:
    """Character offsets of every line that is exactly a section marker."""
    offsets: list[int] = []
    position = 0
    for line in text.split("\n"):
        if line.strip() == "---":
            offsets.append(position)
        position += len(line) + 1
    return offsets


def special_marker_counts(text: str) -> SpecialMarkerCounts:
    return SpecialMarkerCounts(
        tables=text.count("[TABLE]"),
        handwritten=text.count("[HANDWRITTEN:"),
    )


def cleaning_stats(original: str, cleaned: str) -> CleaningStats:
    reduction = (1 - len(cleaned) / len(original)) * 100 if original else 0.0
    return CleaningStats(
        original_length=len(original),
        cleaned_length=len(cleaned),
        reduction=f"{reduction:.1f}%",
        page_markers_removed=len(PAGE_MARKER_RE.findall(original)),
    )
