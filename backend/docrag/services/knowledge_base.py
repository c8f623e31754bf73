"""
KnowledgeBase — the four caller-facing operations in one place

    ingest(path)                  → IngestResult
    reprocess(document_id, chips) → ReprocessResult
    cancel(document_id)           → CancelResult
    retrieve(query)               → RetrievalResult

Owns the per-process CancellationRegistry (so cancel() can reach a local
run) and, optionally, a ProgressStore that every run reports into in
addition to the caller's own sink.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable
from uuid import UUID

from docrag.core.cancellation import CancellationToken
from docrag.processing.chunking import ChunkingOptions
from docrag.processing.classifier import DocumentClassifier
from docrag.processing.embeddings import Embedder
from docrag.processing.extractor import DocumentExtractor
from docrag.processing.templates import TemplateProvider
from docrag.rag.retriever import Retriever
from docrag.schemas.documents import (
    CancelResult,
    IngestionStage,
    IngestResult,
    ProgressUpdate,
    ReprocessResult,
    RetrievalResult,
)
from docrag.services.cancellation import CancellationRegistry, DocumentCanceller
from docrag.services.ingestion import IngestionOrchestrator, IngestOptions
from docrag.services.progress import ProgressSink, ProgressStore, fan_out
from docrag.services.reprocessing import Reprocessor
from docrag.vectorstore.base import ChunkStoreBase

logger = logging.getLogger(__name__)


class KnowledgeBase:

    def __init__(
        self,
        orchestrator:   IngestionOrchestrator,
        reprocessor:    Reprocessor,
        canceller:      DocumentCanceller,
        retriever:      Retriever,
        progress_store: ProgressStore | None = None,
    ) -> None:
        self.orchestrator   = orchestrator
        self.reprocessor    = reprocessor
        self.canceller      = canceller
        self.retriever      = retriever
        self.progress_store = progress_store

    @property
    def registry(self) -> CancellationRegistry:
        return self.canceller.registry

    def _sink(self, progress: ProgressSink | None, file_name: str | None = None) -> ProgressSink | None:
        if self.progress_store is None:
            return progress
        return fan_out(progress, self.progress_store.sink(file_name=file_name))

    async def ingest(
        self,
        path:          str | Path,
        original_name: str | None = None,
        progress:      ProgressSink | None = None,
        options:       IngestOptions | None = None,
        abort_probe:   Callable[[], bool] | None = None,
    ) -> IngestResult:
        name  = original_name or Path(path).name
        token = CancellationToken(probe=abort_probe)
        return await self.orchestrator.ingest(
            path,
            original_name=name,
            progress=self._sink(progress, file_name=name),
            cancellation=token,
            options=options,
        )

    async def reprocess(
        self,
        document_id:  UUID,
        custom_chips: dict[str, str],
        progress:     ProgressSink | None = None,
    ) -> ReprocessResult:
        return await self.reprocessor.reprocess(document_id, custom_chips, progress=self._sink(progress))

    async def cancel(self, document_id: UUID) -> CancelResult:
        result = await self.canceller.cancel(document_id)
        if self.progress_store is not None and result.success and result.document_deleted:
            self.progress_store.record(ProgressUpdate(
                document_id=document_id,
                stage=IngestionStage.CANCELLED.value,
                message="Cancelled",
            ))
        return result

    async def retrieve(
        self,
        query:          str,
        top_k:          int | None = None,
        min_similarity: float | None = None,
        document_ids:   list[UUID] | None = None,
    ) -> RetrievalResult:
        return await self.retriever.retrieve(
            query, top_k=top_k, min_similarity=min_similarity, document_ids=document_ids,
        )


def build_knowledge_base(
    store:             ChunkStoreBase | None = None,
    template_provider: TemplateProvider | None = None,
    chunking_options:  ChunkingOptions | None = None,
    progress_store:    ProgressStore | None = None,
) -> KnowledgeBase:
    """Wire the OpenAI-backed services and the configured chunk store from settings."""
    from docrag.llm.openai_services import (
        OpenAIEmbeddingService,
        OpenAIPageTextService,
        OpenAIReasoningService,
    )
    from docrag.vectorstore.factory import get_chunk_store

    store    = store or get_chunk_store()
    registry = CancellationRegistry()
    embedder = Embedder(OpenAIEmbeddingService())
    chunking = chunking_options or ChunkingOptions.from_settings()

    if template_provider is None and store.backend_name == "pgvector":
        from docrag.db.session import AsyncSessionLocal
        from docrag.processing.templates import DatabaseTemplateProvider
        template_provider = DatabaseTemplateProvider(AsyncSessionLocal)

    orchestrator = IngestionOrchestrator(
        extractor=DocumentExtractor(OpenAIPageTextService()),
        classifier=DocumentClassifier(OpenAIReasoningService(), template_provider=template_provider),
        embedder=embedder,
        store=store,
        chunking_options=chunking,
        registry=registry,
    )
    logger.info("KnowledgeBase | store=%s model=%s", store.backend_name, embedder.model_info()["model"])
    return KnowledgeBase(
        orchestrator=orchestrator,
        reprocessor=Reprocessor(embedder, store, chunking_options=chunking),
        canceller=DocumentCanceller(store, registry=registry),
        retriever=Retriever(embedder, store),
        progress_store=progress_store,
    )
