"""
Unit Tests — DocumentExtractor
═══════════════════════════════

PDFs are real files written by PyMuPDF (make_pdf fixture); the page-to-text
service is FakePageTextService, so no vision calls are made.

Coverage targets:
  ✅ .txt passes through unchanged, progress jumps to 100
  ✅ Unsupported extension rejected
  ✅ Unreadable PDF → ExtractionError
  ✅ PDF pages extracted in order, each prefixed with its page marker
  ✅ Per-page progress percentages
  ✅ Page retried with 2 s → 4 s backoff, then a failure marker; run continues
  ✅ Leaked instruction text stripped from page output
  ✅ Cancellation between pages; workspace removed on every exit path
"""

from __future__ import annotations

import pytest

from docrag.core.cancellation import CancellationToken
from docrag.core.exceptions import ExtractionError, OperationCancelled, UnsupportedFileTypeError
from docrag.processing.extractor import (
    EXTRACTION_INSTRUCTION,
    PAGE_IMAGE_MEDIA_TYPE,
    page_failure_marker,
    page_marker,
)


def _workspaces(root):
    return sorted(root.glob("docrag-extract-*"))


# ─────────────────────────────────────────────────────────────────────────────
# Plain text and rejection paths
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestTextAndRejections:

    async def test_txt_passes_through(self, extractor, lease_txt, page_service):
        updates = []
        result = await extractor.extract(lease_txt, progress=updates.append)

        assert result.text == lease_txt.read_text(encoding="utf-8")
        assert result.source_type == "txt"
        assert result.total_pages == 1
        assert result.failed_pages == []
        assert [u.percent for u in updates] == [100]
        assert page_service.calls == []

    async def test_unsupported_extension(self, extractor, tmp_path):
        path = tmp_path / "notes.docx"
        path.write_bytes(b"PK\x03\x04")

        with pytest.raises(UnsupportedFileTypeError) as exc_info:
            await extractor.extract(path)
        assert exc_info.value.extension == ".docx"

    async def test_corrupt_pdf(self, extractor, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"this is not a pdf")

        with pytest.raises(ExtractionError):
            await extractor.extract(path)


# ─────────────────────────────────────────────────────────────────────────────
# PDF pages
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestPdfExtraction:

    async def test_pages_in_order_with_markers(self, extractor, make_pdf, page_service, tmp_path):
        result = await extractor.extract(make_pdf(pages=3))

        assert result.source_type == "pdf"
        assert result.total_pages == 3
        assert result.failed_pages == []
        assert result.text == "\n\n".join(
            f"{page_marker(n)}\n\nText of page {n}" for n in (1, 2, 3)
        )
        assert len(page_service.calls) == 3
        image, media_type, instruction = page_service.calls[0]
        assert image[:2] == b"\xff\xd8"
        assert media_type == PAGE_IMAGE_MEDIA_TYPE
        assert instruction == EXTRACTION_INSTRUCTION
        assert _workspaces(tmp_path) == []

    async def test_progress_per_page(self, extractor, make_pdf):
        updates = []
        await extractor.extract(make_pdf(pages=3), progress=updates.append)

        assert [(u.current_page, u.percent) for u in updates] == [(0, 0), (1, 33), (2, 67), (3, 100)]
        assert {u.total_pages for u in updates} == {3}

    async def test_failing_progress_callback_is_ignored(self, extractor, make_pdf):
        def _explode(update):
            raise RuntimeError("ui gone")

        result = await extractor.extract(make_pdf(pages=2), progress=_explode)
        assert result.total_pages == 2

    async def test_page_recovers_after_retry(self, extractor, make_pdf, page_service, no_sleep):
        page_service.responses = [RuntimeError("flaky"), "Recovered page"]

        result = await extractor.extract(make_pdf(pages=1))

        assert result.failed_pages == []
        assert result.text == f"{page_marker(1)}\n\nRecovered page"
        no_sleep.assert_awaited_once_with(2.0)

    async def test_exhausted_page_becomes_marker(self, extractor, make_pdf, page_service, no_sleep):
        page_service.responses = [RuntimeError("vision down")] * 3 + ["Second page"]

        result = await extractor.extract(make_pdf(pages=2))

        assert result.failed_pages == [1]
        assert result.succeeded_pages == 1
        assert page_failure_marker(1, "vision down") in result.text
        assert "[EXTRACTION FAILED FOR PAGE 1: vision down]" in result.text
        assert result.text.endswith("Second page")
        assert [c.args[0] for c in no_sleep.await_args_list] == [2.0, 4.0]

    async def test_instruction_echo_stripped(self, extractor, make_pdf, page_service):
        page_service.responses = ["Begin extraction now:\nLease Agreement\n1.01 Parties"]

        result = await extractor.extract(make_pdf(pages=1))

        assert "Begin extraction now" not in result.text
        assert result.text.endswith("Lease Agreement\n1.01 Parties")


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestExtractionCancellation:

    async def test_cancel_after_two_of_five_pages(self, extractor, make_pdf, page_service, tmp_path):
        token = CancellationToken(run_id="run-1")
        page_service.on_call = lambda n: token.cancel() if n == 2 else None
        updates = []

        with pytest.raises(OperationCancelled) as exc_info:
            await extractor.extract(make_pdf(pages=5), progress=updates.append, cancellation=token)

        assert exc_info.value.message == "Extraction cancelled"
        assert len(page_service.calls) == 2
        assert updates[-1].current_page == 2
        assert _workspaces(tmp_path) == []

    async def test_cancelled_before_first_page(self, extractor, make_pdf, page_service):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await extractor.extract(make_pdf(pages=2), cancellation=token)
        assert page_service.calls == []

    async def test_abort_probe_observed(self, extractor, make_pdf, page_service):
        aborted = {"flag": False}
        token = CancellationToken(probe=lambda: aborted["flag"])

        def _abort_after_first(n):
            aborted["flag"] = True

        page_service.on_call = _abort_after_first

        with pytest.raises(OperationCancelled):
            await extractor.extract(make_pdf(pages=3), cancellation=token)
        assert len(page_service.calls) == 1
        assert token.reason == "external abort signal"
