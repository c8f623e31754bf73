"""
Chunk Retriever — query embedding + cosine similarity search

    query ──► Embedder.embed_query ──► ChunkStoreBase.similarity_search ──► RetrievalResult

Defaults: top_k = 5, similarity floor = 0.3 (settings). Results are ordered
by descending similarity (ties by chunk_index). Nothing is cached, and any
embedding or store failure propagates with no partial result.

ChipChunkRetriever wraps the same flow as a LangChain BaseRetriever so LCEL
chains can consume chip-chunks as Documents.
"""

from __future__ import annotations

import asyncio
import logging
import time
from uuid import UUID

from langchain_core.callbacks import (
    AsyncCallbackManagerForRetrieverRun,
    CallbackManagerForRetrieverRun,
)
from langchain_core.documents import Document
from langchain_core.retrievers import BaseRetriever
from pydantic import ConfigDict

from docrag.core.config import settings
from docrag.processing.embeddings import Embedder
from docrag.schemas.documents import RetrievalResult, RetrievedChunk
from docrag.vectorstore.base import ChunkStoreBase

logger = logging.getLogger(__name__)


class Retriever:

    def __init__(
        self,
        embedder:       Embedder,
        store:          ChunkStoreBase,
        top_k:          int | None = None,
        min_similarity: float | None = None,
    ) -> None:
        self._embedder       = embedder
        self._store          = store
        self._top_k          = top_k if top_k is not None else settings.retrieval_top_k
        self._min_similarity = min_similarity if min_similarity is not None else settings.retrieval_min_similarity

    async def retrieve(
        self,
        query:          str,
        top_k:          int | None = None,
        min_similarity: float | None = None,
        document_ids:   list[UUID] | None = None,
    ) -> RetrievalResult:
        limit = top_k if top_k is not None else self._top_k
        floor = min_similarity if min_similarity is not None else self._min_similarity
        if not 0.0 <= floor <= 1.0:
            raise ValueError(f"min_similarity must be within [0, 1], got {floor}")

        t0 = time.monotonic()
        query_embedding = await self._embedder.embed_query(query)

        t_search = time.monotonic()
        chunks = await self._store.similarity_search(
            query_embedding.vector,
            min_similarity=floor,
            limit=limit,
            document_ids=document_ids,
        )
        search_ms = (time.monotonic() - t_search) * 1000
        total_ms  = (time.monotonic() - t0) * 1000

        logger.info(
            "Retriever | results=%d top_k=%d floor=%.2f top_similarity=%s tokens=%d total_ms=%.0f",
            len(chunks), limit, floor,
            f"{chunks[0].similarity:.3f}" if chunks else "n/a",
            query_embedding.tokens, total_ms,
        )
        return RetrievalResult(
            query=query,
            chunks=chunks,
            query_embedding_tokens=query_embedding.tokens,
            embedding_ms=query_embedding.elapsed_ms,
            search_ms=search_ms,
            total_ms=total_ms,
        )


def chunk_to_document(chunk: RetrievedChunk) -> Document:
    return Document(
        page_content=chunk.content,
        metadata={
            "chunk_id":      str(chunk.id),
            "document_id":   str(chunk.document_id),
            "chunk_index":   chunk.chunk_index,
            "similarity":    chunk.similarity,
            "document_name": chunk.document_name,
            "file_type":     chunk.file_type,
        },
    )


class ChipChunkRetriever(BaseRetriever):
    """
    LangChain BaseRetriever backed by Retriever.

    The async path is the real one; the sync path runs it on a private
    event loop and must not be called from inside a running loop.
    """

    retriever:      Retriever
    top_k:          int | None   = None
    min_similarity: float | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def _get_relevant_documents(
        self,
        query: str,
        *,
        run_manager: CallbackManagerForRetrieverRun,
    ) -> list[Document]:
        return asyncio.run(self._search(query))

    async def _aget_relevant_documents(
        self,
        query: str,
        *,
        run_manager: AsyncCallbackManagerForRetrieverRun,
    ) -> list[Document]:
        return await self._search(query)

    async def _search(self, query: str) -> list[Document]:
        result = await self.retriever.retrieve(query, top_k=self.top_k, min_similarity=self.min_similarity)
        return [chunk_to_document(chunk) for chunk in result.chunks]
