"""
Ingestion cancellation.

Two halves:
  CancellationRegistry   document id → live CancellationToken for runs in
                         this process. The orchestrator registers its token
                         once the document row exists and releases it when
                         the run ends.
  DocumentCanceller      signals the run (if it is local) and rolls back
                         what it wrote: chunks first, then the document row.

Outcomes of cancel(document_id):
  unknown document          success, nothing deleted (already gone)
  status complete           success, nothing deleted (nothing to roll back)
  status reprocessing       refused; cancellation applies to ingestion runs
  anything else             token signalled, chunks + document deleted
  store failure             success=False with the error message
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from uuid import UUID

from docrag.core.cancellation import CancellationToken
from docrag.core.exceptions import DocRagError
from docrag.schemas.documents import CancelResult, DocumentStatus, DocumentStatusInfo
from docrag.vectorstore.base import ChunkStoreBase

logger = logging.getLogger(__name__)


class CancellationRegistry:

    def __init__(self) -> None:
        self._tokens: dict[UUID, CancellationToken] = {}
        self._lock = threading.Lock()

    def register(self, document_id: UUID, token: CancellationToken) -> None:
        with self._lock:
            self._tokens[document_id] = token

    def get(self, document_id: UUID) -> CancellationToken | None:
        with self._lock:
            return self._tokens.get(document_id)

    def cancel(self, document_id: UUID, reason: str = "cancelled by caller") -> bool:
        """Signal the run's token. False when no local run is registered."""
        token = self.get(document_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def release(self, document_id: UUID) -> None:
        with self._lock:
            self._tokens.pop(document_id, None)

    def __contains__(self, document_id: UUID) -> bool:
        with self._lock:
            return document_id in self._tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class DocumentCanceller:

    def __init__(self, store: ChunkStoreBase, registry: CancellationRegistry | None = None) -> None:
        self._store    = store
        self._registry = registry or CancellationRegistry()

    @property
    def registry(self) -> CancellationRegistry:
        return self._registry

    async def cancel(self, document_id: UUID) -> CancelResult:
        logger.info("Canceller | cancelling document=%s", document_id)
        try:
            document = await self._store.get_document(document_id)
            if document is None:
                self._registry.cancel(document_id)
                logger.info("Canceller | document=%s not found, nothing to clean up", document_id)
                return CancelResult(success=True, document_id=document_id)

            if document.status == DocumentStatus.COMPLETE.value:
                logger.info("Canceller | document=%s already complete, no-op", document_id)
                return CancelResult(success=True, document_id=document_id)

            if document.status == DocumentStatus.REPROCESSING.value:
                return CancelResult(
                    success=False,
                    document_id=document_id,
                    error="Document is being reprocessed; only ingestion runs can be cancelled",
                )

            signalled = self._registry.cancel(document_id)
            chunks_deleted   = await self._store.delete_chunks(document_id)
            document_deleted = await self._store.delete_document(document_id)
        except DocRagError as exc:
            logger.error("Canceller | document=%s cleanup failed: %s", document_id, exc)
            return CancelResult(success=False, document_id=document_id, error=str(exc))

        logger.info(
            "Canceller | document=%s signalled=%s chunks_deleted=%d document_deleted=%s",
            document_id, signalled, chunks_deleted, document_deleted,
        )
        return CancelResult(
            success=True,
            document_id=document_id,
            chunks_deleted=chunks_deleted,
            document_deleted=document_deleted,
        )

    async def document_status(self, document_id: UUID) -> DocumentStatusInfo | None:
        document = await self._store.get_document(document_id)
        if document is None:
            return None
        return DocumentStatusInfo(
            document_id=document.id,
            original_name=document.original_name,
            status=DocumentStatus(document.status),
            chunk_count=await self._store.count_chunks(document_id),
            file_type=document.file_type,
            error_message=document.error_message,
        )

    async def mark_cancelled(self, document_id: UUID) -> bool:
        """Keep the row but flag it cancelled (and stop a local run)."""
        self._registry.cancel(document_id)
        try:
            await self._store.update_document(
                document_id,
                status=DocumentStatus.CANCELLED.value,
                processed_at=datetime.now(timezone.utc),
            )
        except DocRagError as exc:
            logger.error("Canceller | mark_cancelled document=%s failed: %s", document_id, exc)
            return False
        return True

    async def cleanup_orphaned_chunks(self) -> int:
        try:
            return await self._store.delete_orphaned_chunks()
        except DocRagError as exc:
            logger.error("Canceller | orphan cleanup failed: %s", exc)
            return 0
