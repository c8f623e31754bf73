"""
Unit Tests — Cancellation
══════════════════════════

Coverage targets:
  ✅ CancellationToken: flag, reason, probe, async watchers, checkpoint helper
  ✅ CancellationRegistry: register / cancel / release
  ✅ Cancel during extraction → run stops, chunks_deleted=0, document deleted
  ✅ Cancel from another process (separate registry) → run stops at the next page
  ✅ Row marked cancelled elsewhere → run stops, status stays cancelled
  ✅ Cancel after completion → no-op success
  ✅ Cancel of an unknown document → idempotent success
  ✅ Cancel during reprocessing refused
  ✅ Store failure → success=False with the error
  ✅ mark_cancelled keeps the row; document_status; orphan cleanup
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from docrag.core.cancellation import CancellationToken, checkpoint
from docrag.core.exceptions import OperationCancelled, StoreError
from docrag.services.cancellation import CancellationRegistry, DocumentCanceller
from docrag.vectorstore.memory_store import StoredChunk
from tests.conftest import unit_vector


# ─────────────────────────────────────────────────────────────────────────────
# Token + registry
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCancellationToken:

    def test_cancel_sets_flag_once(self):
        token = CancellationToken(run_id="r1")
        assert token.cancelled is False

        token.cancel("user clicked cancel")
        token.cancel("second reason")

        assert token.cancelled is True
        assert token.reason == "user clicked cancel"

    def test_probe_observed(self):
        signal = {"aborted": False}
        token = CancellationToken(probe=lambda: signal["aborted"])
        assert token.cancelled is False

        signal["aborted"] = True
        assert token.cancelled is True
        assert token.reason == "external abort signal"

    async def test_checkpoint_helper(self):
        await checkpoint(None)
        token = CancellationToken()
        await checkpoint(token)

        token.cancel()
        with pytest.raises(OperationCancelled, match="Embedding cancelled"):
            await checkpoint(token, "Embedding cancelled")

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel()
        with pytest.raises(OperationCancelled, match="Saving cancelled"):
            token.raise_if_cancelled("Saving cancelled")

    async def test_watcher_polled_at_checkpoint(self):
        watcher = AsyncMock(side_effect=[False, True])
        token = CancellationToken()
        token.watch(watcher, "document withdrawn")

        await token.checkpoint()
        assert token.cancelled is False

        with pytest.raises(OperationCancelled):
            await token.checkpoint()
        assert token.reason == "document withdrawn"

        await token.poll()
        assert watcher.await_count == 2

    def test_registry(self):
        registry = CancellationRegistry()
        document_id = uuid.uuid4()
        token = CancellationToken()

        assert registry.cancel(document_id) is False
        registry.register(document_id, token)
        assert document_id in registry
        assert registry.get(document_id) is token

        assert registry.cancel(document_id, "stop") is True
        assert token.cancelled is True

        registry.release(document_id)
        assert len(registry) == 0


# ─────────────────────────────────────────────────────────────────────────────
# DocumentCanceller
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestDocumentCanceller:

    async def test_cancel_during_extraction(self, orchestrator, canceller, store, make_pdf, page_service):
        results = []
        original = page_service.extract_page

        async def _extract_then_cancel(image, media_type, instruction):
            text = await original(image, media_type, instruction)
            if len(page_service.calls) == 2:
                document_id = next(iter(store._documents))
                results.append(await canceller.cancel(document_id))
            return text

        page_service.extract_page = _extract_then_cancel

        with pytest.raises(OperationCancelled):
            await orchestrator.ingest(make_pdf(pages=5))

        (result,) = results
        assert result.success is True
        assert result.chunks_deleted == 0
        assert result.document_deleted is True
        assert len(page_service.calls) == 2
        assert store._documents == {}
        assert store._chunks == {}

    async def test_cancel_from_another_worker(self, orchestrator, store, make_pdf, page_service, registry, caplog):
        remote = DocumentCanceller(store, registry=CancellationRegistry())
        results = []
        original = page_service.extract_page

        async def _extract_then_cancel(image, media_type, instruction):
            text = await original(image, media_type, instruction)
            if len(page_service.calls) == 2:
                results.append(await remote.cancel(next(iter(store._documents))))
            return text

        page_service.extract_page = _extract_then_cancel
        updates = []

        with pytest.raises(OperationCancelled) as exc_info:
            await orchestrator.ingest(make_pdf(pages=5), progress=updates.append)

        assert exc_info.value.message == "Extraction cancelled"
        assert len(page_service.calls) == 2
        (result,) = results
        assert (result.success, result.chunks_deleted, result.document_deleted) == (True, 0, True)
        assert store._documents == {}
        assert store._chunks == {}
        assert updates[-1].stage == "cancelled"
        assert "final status update failed" not in caplog.text
        assert len(registry) == 0

    async def test_row_marked_cancelled_elsewhere(self, orchestrator, store, make_pdf, page_service):
        remote = DocumentCanceller(store, registry=CancellationRegistry())
        original = page_service.extract_page

        async def _extract_then_mark(image, media_type, instruction):
            text = await original(image, media_type, instruction)
            if len(page_service.calls) == 3:
                await remote.mark_cancelled(next(iter(store._documents)))
            return text

        page_service.extract_page = _extract_then_mark

        with pytest.raises(OperationCancelled):
            await orchestrator.ingest(make_pdf(pages=5))

        assert len(page_service.calls) == 3
        (document,) = store._documents.values()
        assert document.status == "cancelled"
        assert await store.count_chunks(document.id) == 0

    async def test_cancel_after_completion_is_noop(self, orchestrator, canceller, store, lease_txt):
        ingested = await orchestrator.ingest(lease_txt)

        result = await canceller.cancel(ingested.document_id)

        assert result.success is True
        assert result.chunks_deleted == 0
        assert result.document_deleted is False
        assert await store.count_chunks(ingested.document_id) == ingested.chunk_count

    async def test_cancel_unknown_document(self, canceller):
        result = await canceller.cancel(uuid.uuid4())
        assert result.success is True
        assert result.document_deleted is False

    async def test_cancel_removes_partial_chunks(self, canceller, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf", status="processing")
        await store.insert_chunks(record.id, make_embedded_chunks(3))

        result = await canceller.cancel(record.id)

        assert (result.chunks_deleted, result.document_deleted) == (3, True)

    async def test_cancel_signals_registered_run(self, canceller, store, registry):
        record = await store.create_document("lease.pdf", status="processing")
        token = CancellationToken()
        registry.register(record.id, token)

        await canceller.cancel(record.id)
        assert token.cancelled is True

    async def test_reprocessing_document_refused(self, canceller, store):
        record = await store.create_document("lease.pdf", status="reprocessing")

        result = await canceller.cancel(record.id)

        assert result.success is False
        assert "reprocessed" in result.error
        assert await store.get_document(record.id) is not None

    async def test_store_failure_reported(self, canceller, store, monkeypatch):
        record = await store.create_document("lease.pdf", status="processing")
        monkeypatch.setattr(store, "delete_chunks", AsyncMock(side_effect=StoreError("connection lost")))

        result = await canceller.cancel(record.id)

        assert result.success is False
        assert result.error == "connection lost"

    async def test_mark_cancelled_keeps_row(self, canceller, store):
        record = await store.create_document("lease.pdf", status="processing")

        assert await canceller.mark_cancelled(record.id) is True
        document = await store.get_document(record.id)
        assert document.status == "cancelled"
        assert document.processed_at is not None

    async def test_mark_cancelled_missing_document(self, canceller):
        assert await canceller.mark_cancelled(uuid.uuid4()) is False

    async def test_document_status(self, canceller, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf", status="processing")
        await store.insert_chunks(record.id, make_embedded_chunks(2))

        info = await canceller.document_status(record.id)

        assert info.status.value == "processing"
        assert info.chunk_count == 2
        assert info.original_name == "lease.pdf"
        assert await canceller.document_status(uuid.uuid4()) is None

    async def test_orphan_cleanup(self, canceller, store):
        ghost = uuid.uuid4()
        store._chunks[ghost] = [StoredChunk(uuid.uuid4(), ghost, 0, "orphan", 1, 0, 6, unit_vector(0))]

        assert await canceller.cleanup_orphaned_chunks() == 1

    async def test_orphan_cleanup_failure_returns_zero(self, store):
        store.delete_orphaned_chunks = AsyncMock(side_effect=StoreError("timeout"))
        assert await DocumentCanceller(store).cleanup_orphaned_chunks() == 0
