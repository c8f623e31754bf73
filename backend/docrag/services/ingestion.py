"""
Document Ingestion Orchestrator

Runs one source file through the full pipeline:
  0. Create documents row (status=pending → processing)
  1. Extract text          (vision per page, or plain read)
  2. Clean                 (markers, echoes, whitespace)
  3. Classify              (type + chips; never fails the run)
  4. Chunk                 (chip header + word windows)
  5. Embed                 (sequential batches, retry, dimension check)
  6. Save                  (one chunk batch, then final document update)

Status discipline:
  Whatever happens, the document row gets exactly ONE final status update,
  written from a `finally` block:
      success        → complete   (file_type, full_text, auto_chips, processed_at)
      failure        → error      (error_message; text/chips kept when known) then re-raise
      cancellation   → cancelled  then re-raise OperationCancelled
  A run with skip_embedding but not skip_save finishes `pending`: text and
  chips are stored, chunks are left for a later reprocess.
  The final update is best-effort: if it fails (e.g. the canceller already
  deleted the row) the failure is logged and never masks the run's outcome.

Cancellation checkpoints: between pages, before classification, before each
embedding batch, before saving. Besides the token's own signals, every
checkpoint re-reads the document row: a row that was deleted or marked
`cancelled` (by a canceller in any process) stops the run there, and a
deleted row gets no final status update.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from uuid import UUID

from docrag.core.cancellation import CancellationToken
from docrag.core.exceptions import OperationCancelled, StoreError
from docrag.processing.chunking import ChipChunker, ChunkingOptions
from docrag.processing.classifier import DocumentClassifier
from docrag.processing.cleaner import CleaningOptions, clean_text, cleaning_stats
from docrag.processing.embeddings import Embedder
from docrag.processing.extractor import DocumentExtractor, ExtractionProgress
from docrag.processing.templates import DocumentTemplate
from docrag.schemas.documents import (
    ClassificationSummary,
    DocumentStatus,
    IngestionStage,
    IngestResult,
    ProgressUpdate,
)
from docrag.services.cancellation import CancellationRegistry
from docrag.services.progress import (
    EXTRACTION_SPAN,
    INGESTION_PERCENT,
    ProgressSink,
    emit_progress,
)
from docrag.vectorstore.base import ChunkStoreBase

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Ingestion cancelled"


@dataclass(frozen=True)
class IngestOptions:
    chunking:       ChunkingOptions | None        = None
    cleaning:       CleaningOptions | None        = None
    templates:      list[DocumentTemplate] | None = None
    skip_embedding: bool                          = False
    skip_save:      bool                          = False


class IngestionOrchestrator:
    """
    Stateless between runs; every dependency is injected.

    Usage:
        orchestrator = IngestionOrchestrator(extractor, classifier, embedder, store)
        result = await orchestrator.ingest("uploads/lease.pdf", progress=sink, cancellation=token)
    """

    def __init__(
        self,
        extractor:        DocumentExtractor,
        classifier:       DocumentClassifier,
        embedder:         Embedder,
        store:            ChunkStoreBase,
        chunking_options: ChunkingOptions | None = None,
        registry:         CancellationRegistry | None = None,
    ) -> None:
        self._extractor  = extractor
        self._classifier = classifier
        self._embedder   = embedder
        self._store      = store
        self._chunking   = chunking_options or ChunkingOptions.from_settings()
        self._registry   = registry

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def ingest(
        self,
        path:          str | Path,
        original_name: str | None = None,
        progress:      ProgressSink | None = None,
        cancellation:  CancellationToken | None = None,
        options:       IngestOptions | None = None,
    ) -> IngestResult:
        opts  = options or IngestOptions()
        token = cancellation or CancellationToken()
        name  = original_name or Path(path).name

        t0 = time.monotonic()
        timings: dict[str, float] = {}
        document_id: UUID | None = None
        final_fields: dict | None = None
        stored_fields: dict = {}
        row_deleted = False

        async def document_withdrawn() -> bool:
            nonlocal row_deleted
            try:
                document = await self._store.get_document(document_id)
            except StoreError as exc:
                logger.warning("Ingest | withdrawal check failed document=%s: %s", document_id, exc)
                return False
            row_deleted = document is None
            return row_deleted or document.status == DocumentStatus.CANCELLED.value

        def emit(stage: IngestionStage, message: str, percent: float | None = None, **detail) -> None:
            if percent is None:
                percent = INGESTION_PERCENT.get(stage)
            emit_progress(progress, ProgressUpdate(
                document_id=document_id,
                stage=stage.value,
                message=message,
                percent=percent,
                detail=detail,
            ))

        logger.info(
            "Ingest start | file=%s skip_embedding=%s skip_save=%s",
            name, opts.skip_embedding, opts.skip_save,
        )

        try:
            # ---- Stage 0: document record --------------------------------
            if not opts.skip_save:
                emit(IngestionStage.CREATING, "Creating document record...")
                record = await self._store.create_document(name, status=DocumentStatus.PENDING.value)
                document_id = record.id
                token.run_id = token.run_id or str(document_id)
                if self._registry is not None:
                    self._registry.register(document_id, token)
                token.watch(document_withdrawn, "document withdrawn")
                await self._store.update_document(document_id, status=DocumentStatus.PROCESSING.value)

            # ---- Stage 1: extraction ------------------------------------
            emit(IngestionStage.EXTRACTING, "Extracting text from document...")
            stage_t = time.monotonic()

            def on_page(p: ExtractionProgress) -> None:
                emit(
                    IngestionStage.EXTRACTING,
                    f"Extracting page {p.current_page} of {p.total_pages}",
                    percent=round(p.percent / 100 * EXTRACTION_SPAN, 1),
                    current_page=p.current_page,
                    total_pages=p.total_pages,
                )

            extraction = await self._extractor.extract(path, progress=on_page, cancellation=token)
            timings["extraction"] = _ms_since(stage_t)

            # ---- Stage 2: cleaning --------------------------------------
            emit(IngestionStage.CLEANING, "Cleaning and normalizing text...")
            stage_t = time.monotonic()
            cleaned = clean_text(extraction.text, opts.cleaning)
            stats   = cleaning_stats(extraction.text, cleaned)
            timings["cleaning"] = _ms_since(stage_t)
            stored_fields["full_text"] = cleaned

            # ---- Stage 3: classification --------------------------------
            emit(IngestionStage.CLASSIFYING, "Classifying document and extracting metadata...")
            stage_t = time.monotonic()
            classification = await self._classifier.classify(cleaned, templates=opts.templates, cancellation=token)
            timings["classification"] = _ms_since(stage_t)
            stored_fields["file_type"]  = classification.file_type
            stored_fields["auto_chips"] = dict(classification.chips)

            # ---- Stage 4: chunking --------------------------------------
            emit(
                IngestionStage.CHUNKING, "Splitting into chunks...",
                file_type=classification.file_type, chips=classification.chips,
            )
            stage_t = time.monotonic()
            chunking = ChipChunker(opts.chunking or self._chunking).chunk(cleaned, classification.chips)
            timings["chunking"] = _ms_since(stage_t)

            # ---- Stage 5: embedding -------------------------------------
            total_tokens, estimated_cost = 0, 0.0
            chunks = chunking.chunks
            if not opts.skip_embedding:
                emit(IngestionStage.EMBEDDING, "Generating vector embeddings...", chunks=chunking.total_chunks)
                stage_t  = time.monotonic()
                embedded = await self._embedder.embed_chunks(chunking.chunks, cancellation=token)
                chunks, total_tokens, estimated_cost = embedded.chunks, embedded.total_tokens, embedded.estimated_cost
                timings["embedding"] = _ms_since(stage_t)

            # ---- Stage 6: save ------------------------------------------
            saved = False
            if document_id is not None and not opts.skip_embedding:
                await token.checkpoint(CANCELLED_MESSAGE)
                emit(IngestionStage.SAVING, "Saving to database...")
                stage_t = time.monotonic()
                await self._store.insert_chunks(document_id, chunks)
                timings["saving"] = _ms_since(stage_t)
                saved = True

            final_fields = {
                **stored_fields,
                "status":        DocumentStatus.COMPLETE.value if saved else DocumentStatus.PENDING.value,
                "error_message": None,
                "processed_at":  datetime.now(timezone.utc) if saved else None,
            }

        except OperationCancelled as exc:
            final_fields = {"status": DocumentStatus.CANCELLED.value, "processed_at": datetime.now(timezone.utc)}
            logger.info("Ingest cancelled | document=%s file=%s: %s", document_id, name, exc.message)
            emit(IngestionStage.CANCELLED, exc.message)
            raise

        except Exception as exc:
            if await token.poll():
                # the canceller removed rows underneath an in-flight write
                final_fields = {"status": DocumentStatus.CANCELLED.value, "processed_at": datetime.now(timezone.utc)}
                logger.info("Ingest cancelled during write | document=%s: %s", document_id, exc)
                emit(IngestionStage.CANCELLED, CANCELLED_MESSAGE)
                raise OperationCancelled(CANCELLED_MESSAGE) from exc

            final_fields = {
                **stored_fields,
                "status":        DocumentStatus.ERROR.value,
                "error_message": str(exc),
            }
            logger.error("Ingest failed | document=%s file=%s: %s", document_id, name, exc)
            emit(IngestionStage.ERROR, str(exc), percent=0.0, error=str(exc))
            raise

        finally:
            if document_id is not None and not row_deleted:
                await self._finalize(document_id, final_fields or {"status": DocumentStatus.ERROR.value})
                if self._registry is not None:
                    self._registry.release(document_id)

        total_ms = _ms_since(t0)
        emit(
            IngestionStage.COMPLETE, "Ingestion complete",
            file_type=classification.file_type, chips=classification.chips,
        )
        logger.info(
            "Ingest done | document=%s type=%s chunks=%d tokens=%d total_ms=%.0f",
            document_id, classification.file_type, chunking.total_chunks, total_tokens, total_ms,
        )

        return IngestResult(
            document_id=document_id,
            original_name=name,
            classification=ClassificationSummary(
                file_type=classification.file_type,
                confidence=classification.confidence,
                chips=classification.chips,
                reasoning=classification.reasoning,
            ),
            chunk_count=chunking.total_chunks,
            average_words=chunking.average_words,
            chip_header=chunking.chip_header,
            total_pages=extraction.total_pages,
            failed_pages=list(extraction.failed_pages),
            cleaned_length=stats.cleaned_length,
            cleaning_reduction=stats.reduction,
            embedded=not opts.skip_embedding,
            saved=saved,
            total_tokens=total_tokens,
            estimated_cost=estimated_cost,
            timings_ms=timings,
            total_ms=total_ms,
        )

    async def ingest_dry(
        self,
        path:          str | Path,
        original_name: str | None = None,
        progress:      ProgressSink | None = None,
        cancellation:  CancellationToken | None = None,
        options:       IngestOptions | None = None,
    ) -> IngestResult:
        """Extract, clean, classify and chunk only. No embedding calls, no store writes."""
        opts = replace(options or IngestOptions(), skip_embedding=True, skip_save=True)
        return await self.ingest(path, original_name, progress=progress, cancellation=cancellation, options=opts)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _finalize(self, document_id: UUID, fields: dict) -> None:
        try:
            await self._store.update_document(document_id, **fields)
        except Exception as exc:
            logger.warning(
                "Ingest | final status update failed document=%s status=%s: %s",
                document_id, fields.get("status"), exc,
            )


def _ms_since(start: float) -> float:
    return (time.monotonic() - start) * 1000
