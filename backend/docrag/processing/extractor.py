"""
Page-by-Page Text Extraction
════════════════════════════

Turns a source file into one page-ordered string:

    --- PAGE 1 ---

    <text of page 1>

    --- PAGE 2 ---

    <text of page 2>

Supported inputs
────────────────
  .pdf  Every page is rasterized (PyMuPDF, JPEG @ 150 dpi) into a private
        per-run workspace and sent to a PageTextService with a fixed
        instruction. Works identically for scanned and born-digital PDFs.
  .txt  Passed through unchanged; progress jumps straight to 100 %.

Failure model
─────────────
  • Each page is retried through a RetryPolicy (3 attempts, 2 s → 4 s).
  • A page that still fails becomes an explicit marker
        [EXTRACTION FAILED FOR PAGE n: <error>]
    and extraction moves on; one bad page never aborts the document.
  • The cancellation token is checked before every page; a set token raises
    OperationCancelled("Extraction cancelled").
  • The workspace directory is removed on every exit path.

Pages are processed strictly one at a time to bound memory and keep the
page-to-text service under its rate limits.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import re
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from docrag.core.cancellation import CancellationToken, checkpoint
from docrag.core.config import settings
from docrag.core.exceptions import (
    ExtractionError,
    OperationCancelled,
    RetryExhaustedError,
    UnsupportedFileTypeError,
)
from docrag.core.retry import RetryPolicy, exponential_backoff
from docrag.llm.base import PageTextService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset({".pdf", ".txt"})

PAGE_IMAGE_MEDIA_TYPE = "image/jpeg"
PAGE_IMAGE_SUFFIX     = ".jpg"

CANCELLED_MESSAGE = "Extraction cancelled"

EXTRACTION_INSTRUCTION = """You are a document text extractor. Extract ALL visible text from the document image.

Format rules:
- Tables: Wrap in [TABLE] and [END TABLE] markers, use | for columns
- Handwritten text: Wrap in [HANDWRITTEN: content]
- Preserve section numbers (1.01, 1.02) exactly as shown
- Preserve paragraph breaks and logical structure

Output the extracted text only. Do not include any preamble, commentary, or explanation.

Begin extraction now:"""

# Fragments of EXTRACTION_INSTRUCTION the page-to-text model sometimes echoes
# back at the top of its answer.
_ECHO_PATTERNS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"^INSTRUCTIONS:\s*\n(?:.*\n)*?(?=\n[A-Z0-9]|\n\d+\.\d+|\n[A-Z]{2,})", re.I), 1),
    (re.compile(r"^Format rules:\s*\n(?:.*\n)*?(?=\n[A-Z0-9]|\n\d+\.\d+|\n[A-Z]{2,})", re.I), 1),
    (re.compile(r"\[TABLE\]\s*\n\s*\|\s*Column\s+\d+.*\n.*\n.*value.*\n\s*\[END TABLE\]\s*\n?", re.I), 0),
    (re.compile(r"^Begin extraction now:\s*\n?", re.I), 1),
    (re.compile(r"^Output the extracted text only[.:\s]*\n?", re.I), 1),
    (re.compile(r"^\d+\.\s*(TABLES|HANDWRITING|Keep section|Preserve|Output)[:.].*\n?", re.I | re.M), 0),
)


def page_marker(page_number: int) -> str:
    return f"--- PAGE {page_number} ---"


def page_failure_marker(page_number: int, error: BaseException | str) -> str:
    return f"[EXTRACTION FAILED FOR PAGE {page_number}: {error}]"


def strip_instruction_echo(text: str) -> str:
    """Remove leaked instruction fragments from one page of model output."""
    cleaned = text
    for pattern, count in _ECHO_PATTERNS:
        cleaned = pattern.sub("", cleaned, count=count)
    return cleaned.lstrip()


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ExtractionProgress:
    current_page: int
    total_pages:  int
    percent:      int


ProgressCallback = Callable[[ExtractionProgress], Any]


@dataclass
class PageExtraction:
    page_number: int
    text:        str
    failed:      bool = False


@dataclass
class ExtractionResult:
    """
    Attributes:
        text:         All pages, each prefixed with its page marker (PDF) or
                      the raw file content (plain text).
        source_type:  "pdf" | "txt"
        total_pages:  Page count (1 for plain text).
        failed_pages: 1-based numbers of pages that became failure markers.
        elapsed_ms:   Wall-clock time for the whole extraction.
    """
    text:         str
    source_type:  str
    total_pages:  int
    failed_pages: list[int] = field(default_factory=list)
    elapsed_ms:   float     = 0.0

    @property
    def succeeded_pages(self) -> int:
        return self.total_pages - len(self.failed_pages)


def _percent(current: int, total: int) -> int:
    if total <= 0:
        return 100
    return math.floor(current / total * 100 + 0.5)


def _report(callback: ProgressCallback | None, progress: ExtractionProgress) -> None:
    if callback is None:
        return
    try:
        callback(progress)
    except Exception:
        logger.warning("Extractor | progress callback raised; continuing", exc_info=True)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class DocumentExtractor:
    """
    Stateless between runs: every call to extract() gets its own workspace
    directory, so concurrent runs over different documents never collide.
    """

    def __init__(
        self,
        page_service:   PageTextService,
        retry_policy:   RetryPolicy | None = None,
        dpi:            int | None = None,
        workspace_root: str | Path | None = None,
    ) -> None:
        self._service = page_service
        self._retry   = retry_policy or RetryPolicy(
            max_attempts=settings.extraction_max_retries,
            backoff=exponential_backoff(settings.extraction_retry_base_delay),
        )
        self._dpi            = dpi or settings.extraction_dpi
        self._workspace_root = str(workspace_root) if workspace_root else None

    async def extract(
        self,
        path:         str | Path,
        progress:     ProgressCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ExtractionResult:
        source    = Path(path)
        extension = source.suffix.lower()
        if extension not in SUPPORTED_EXTENSIONS:
            raise UnsupportedFileTypeError(extension)

        if extension == ".txt":
            return await self._extract_text_file(source, progress)
        return await self._extract_pdf(source, progress, cancellation)

    # ------------------------------------------------------------------
    # Plain text
    # ------------------------------------------------------------------

    async def _extract_text_file(
        self,
        source:   Path,
        progress: ProgressCallback | None,
    ) -> ExtractionResult:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()
        try:
            text = await loop.run_in_executor(
                None, functools.partial(source.read_text, encoding="utf-8", errors="replace"),
            )
        except OSError as exc:
            raise ExtractionError(f"Cannot read {source.name}: {exc}") from exc

        _report(progress, ExtractionProgress(current_page=1, total_pages=1, percent=100))
        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info("Extractor | txt file=%s chars=%d elapsed_ms=%.0f", source.name, len(text), elapsed_ms)
        return ExtractionResult(text=text, source_type="txt", total_pages=1, elapsed_ms=elapsed_ms)

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    async def _extract_pdf(
        self,
        source:       Path,
        progress:     ProgressCallback | None,
        cancellation: CancellationToken | None,
    ) -> ExtractionResult:
        loop   = asyncio.get_event_loop()
        t0     = time.monotonic()
        run_id = cancellation.run_id if cancellation and cancellation.run_id else uuid.uuid4().hex

        doc = await loop.run_in_executor(None, self._open_pdf, source)
        pages: list[PageExtraction] = []

        try:
            with tempfile.TemporaryDirectory(
                prefix=f"docrag-extract-{run_id}-", dir=self._workspace_root,
            ) as workspace:
                total = doc.page_count
                logger.info("Extractor | pdf file=%s pages=%d workspace=%s", source.name, total, workspace)
                _report(progress, ExtractionProgress(current_page=0, total_pages=total, percent=0))

                for page_number in range(1, total + 1):
                    await checkpoint(cancellation, CANCELLED_MESSAGE)

                    image_path = await loop.run_in_executor(
                        None, self._rasterize_page, doc, page_number, Path(workspace),
                    )
                    pages.append(await self._extract_page(image_path, page_number, total))

                    _report(progress, ExtractionProgress(
                        current_page=page_number,
                        total_pages=total,
                        percent=_percent(page_number, total),
                    ))
        finally:
            doc.close()

        text = "\n\n".join(f"{page_marker(p.page_number)}\n\n{p.text}" for p in pages)
        failed = [p.page_number for p in pages if p.failed]
        elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "Extractor | done file=%s pages=%d failed=%d chars=%d elapsed_ms=%.0f",
            source.name, len(pages), len(failed), len(text), elapsed_ms,
        )
        return ExtractionResult(
            text=text,
            source_type="pdf",
            total_pages=len(pages),
            failed_pages=failed,
            elapsed_ms=elapsed_ms,
        )

    async def _extract_page(self, image_path: Path, page_number: int, total: int) -> PageExtraction:
        loop  = asyncio.get_event_loop()
        image = await loop.run_in_executor(None, image_path.read_bytes)
        image_path.unlink(missing_ok=True)

        try:
            raw = await self._retry.run(
                lambda: self._service.extract_page(image, PAGE_IMAGE_MEDIA_TYPE, EXTRACTION_INSTRUCTION),
                label=f"page {page_number}/{total}",
            )
        except OperationCancelled:
            raise
        except RetryExhaustedError as exc:
            logger.error("Extractor | page=%d/%d gave up: %s", page_number, total, exc.last_error)
            return PageExtraction(page_number, page_failure_marker(page_number, exc.last_error), failed=True)
        except Exception as exc:
            logger.error("Extractor | page=%d/%d non-retryable failure: %s", page_number, total, exc)
            return PageExtraction(page_number, page_failure_marker(page_number, exc), failed=True)

        text = strip_instruction_echo(raw)
        logger.debug("Extractor | page=%d/%d chars=%d", page_number, total, len(text))
        return PageExtraction(page_number, text)

    # ------------------------------------------------------------------
    # Blocking helpers, run in the default thread executor
    # ------------------------------------------------------------------

    @staticmethod
    def _open_pdf(source: Path):
        import fitz  # PyMuPDF

        try:
            return fitz.open(str(source))
        except Exception as exc:
            raise ExtractionError(f"Cannot open PDF {source.name}: {exc}") from exc

    def _rasterize_page(self, doc, page_number: int, workspace: Path) -> Path:
        """Render one page to a JPEG inside the run's workspace."""
        pixmap = doc.load_page(page_number - 1).get_pixmap(dpi=self._dpi)
        image_path = workspace / f"page-{page_number:04d}{PAGE_IMAGE_SUFFIX}"
        pixmap.save(str(image_path))
        return image_path
