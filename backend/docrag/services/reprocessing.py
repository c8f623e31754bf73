"""
Reprocessor — regenerate chip-chunks after a chip edit

Skips extraction and classification entirely: the stored cleaned text is
re-chunked under the merged chips (auto_chips overlaid by custom_chips,
custom wins), re-embedded, and swapped in with one atomic replace_chunks()
call, so the old and new chunk sets are never visible together.

Progress (stage, percent):
    fetching 0 → fetching 10 → chunking 15 → chunking 30 → embedding 35
    → embedding 75 → saving 80 → saving 95 → complete 100      (error → 0)

Status: reprocessing while running, then exactly one final update to
complete (with the new chips) or error (with the message).
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from uuid import UUID

from docrag.core.exceptions import DocumentNotFoundError, ReprocessingError
from docrag.processing.chunking import ChipChunker, ChunkingOptions
from docrag.processing.embeddings import Embedder
from docrag.schemas.documents import (
    DocumentStatus,
    ProgressUpdate,
    ReprocessResult,
    ReprocessStage,
)
from docrag.services.progress import ProgressSink, emit_progress
from docrag.vectorstore.base import ChunkStoreBase

logger = logging.getLogger(__name__)

_BUSY_STATUSES = {DocumentStatus.PROCESSING.value, DocumentStatus.REPROCESSING.value}


class Reprocessor:

    def __init__(
        self,
        embedder:         Embedder,
        store:            ChunkStoreBase,
        chunking_options: ChunkingOptions | None = None,
    ) -> None:
        self._embedder = embedder
        self._store    = store
        self._chunking = chunking_options or ChunkingOptions.from_settings()

    async def reprocess(
        self,
        document_id:  UUID,
        custom_chips: dict[str, str],
        progress:     ProgressSink | None = None,
    ) -> ReprocessResult:

        def emit(stage: ReprocessStage, percent: float, message: str = "", **detail) -> None:
            emit_progress(progress, ProgressUpdate(
                document_id=document_id,
                stage=stage.value,
                message=message,
                percent=percent,
                detail=detail,
            ))

        t0 = time.monotonic()
        timings: dict[str, float] = {}
        status_claimed = False
        final_fields: dict | None = None

        logger.info("Reprocess start | document=%s custom_chips=%s", document_id, sorted(custom_chips))

        try:
            # ---- Stage 1: fetch -----------------------------------------
            emit(ReprocessStage.FETCHING, 0, "Fetching document...")
            stage_t  = time.monotonic()
            document = await self._store.get_document(document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            if not document.full_text:
                raise ReprocessingError("Document has no stored text. Full reprocessing required.")
            if not document.file_type:
                raise ReprocessingError("Document has no file_type. Full reprocessing required.")
            if document.status in _BUSY_STATUSES:
                raise ReprocessingError(f"Document is currently {document.status}")

            previous_count = await self._store.count_chunks(document_id)
            await self._store.update_document(document_id, status=DocumentStatus.REPROCESSING.value)
            status_claimed = True
            timings["fetch"] = _ms_since(stage_t)
            emit(ReprocessStage.FETCHING, 10, f"Fetched {document.original_name}")

            # ---- Stage 2: chunking --------------------------------------
            emit(ReprocessStage.CHUNKING, 15, "Rebuilding chunks...")
            stage_t     = time.monotonic()
            auto_chips  = dict(document.auto_chips or {})
            merged      = {**auto_chips, **custom_chips}
            chunking    = ChipChunker(self._chunking).chunk(document.full_text, merged)
            timings["chunking"] = _ms_since(stage_t)
            emit(ReprocessStage.CHUNKING, 30, f"Created {chunking.total_chunks} chunks")

            # ---- Stage 3: embedding -------------------------------------
            emit(ReprocessStage.EMBEDDING, 35, "Generating vector embeddings...")
            stage_t  = time.monotonic()
            embedded = await self._embedder.embed_chunks(chunking.chunks)
            timings["embedding"] = _ms_since(stage_t)
            emit(ReprocessStage.EMBEDDING, 75, f"Embedded {len(embedded.chunks)} chunks")

            # ---- Stage 4: save ------------------------------------------
            emit(ReprocessStage.SAVING, 80, "Replacing chunks...")
            stage_t = time.monotonic()
            deleted, inserted = await self._store.replace_chunks(document_id, embedded.chunks)
            timings["saving"] = _ms_since(stage_t)

            final_fields = {
                "status":        DocumentStatus.COMPLETE.value,
                "custom_chips":  dict(custom_chips),
                "auto_chips":    auto_chips,
                "error_message": None,
                "processed_at":  datetime.now(timezone.utc),
            }
            emit(ReprocessStage.SAVING, 95, f"Replaced {deleted} chunks with {inserted}")

        except Exception as exc:
            if status_claimed:
                final_fields = {"status": DocumentStatus.ERROR.value, "error_message": str(exc)}
            logger.error("Reprocess failed | document=%s: %s", document_id, exc)
            emit(ReprocessStage.ERROR, 0, str(exc), error=str(exc))
            raise

        finally:
            if status_claimed and final_fields is not None:
                await self._finalize(document_id, final_fields)

        total_ms = _ms_since(t0)
        emit(ReprocessStage.COMPLETE, 100, "Reprocessing complete", chips=merged, custom_chips=custom_chips)
        logger.info(
            "Reprocess done | document=%s chunks=%d→%d tokens=%d total_ms=%.0f",
            document_id, previous_count, inserted, embedded.total_tokens, total_ms,
        )
        return ReprocessResult(
            document_id=document_id,
            previous_chunk_count=previous_count,
            new_chunk_count=inserted,
            merged_chips=merged,
            total_tokens=embedded.total_tokens,
            estimated_cost=embedded.estimated_cost,
            timings_ms=timings,
            total_ms=total_ms,
        )

    async def _finalize(self, document_id: UUID, fields: dict) -> None:
        try:
            await self._store.update_document(document_id, **fields)
        except Exception as exc:
            logger.warning(
                "Reprocess | final status update failed document=%s status=%s: %s",
                document_id, fields.get("status"), exc,
            )


def _ms_since(start: float) -> float:
    return (time.monotonic() - start) * 1000
