"""
In-process chunk store.

Same contract as the pgvector backend, held in dicts. Used by the test suite
and by `ingest_dry`-style local runs where no database is available.
Similarity is exact cosine similarity computed in Python; fine for the
hundreds-of-chunks scale these runs use.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from uuid import UUID

from docrag.core.config import settings
from docrag.core.exceptions import DocumentNotFoundError, StoreError
from docrag.processing.chunking import ChunkResult
from docrag.schemas.documents import ChunkStats, RetrievedChunk
from docrag.vectorstore.base import (
    ChunkStoreBase,
    DocumentRecord,
    require_embeddings,
    validate_update_fields,
)

logger = logging.getLogger(__name__)


@dataclass
class StoredChunk:
    id:          UUID
    document_id: UUID
    chunk_index: int
    content:     str
    word_count:  int
    start_char:  int
    end_char:    int
    embedding:   list[float]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    dot    = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryChunkStore(ChunkStoreBase):

    def __init__(self, dimensions: int | None = None) -> None:
        self._dimensions = dimensions or settings.embedding_dimensions
        self._documents: dict[UUID, DocumentRecord]    = {}
        self._chunks:    dict[UUID, list[StoredChunk]] = {}
        self._lock = asyncio.Lock()

    @property
    def backend_name(self) -> str:
        return "memory"

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(self, original_name: str, status: str = "pending") -> DocumentRecord:
        now = _now()
        record = DocumentRecord(
            id=uuid.uuid4(),
            original_name=original_name,
            status=status,
            uploaded_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._documents[record.id] = record
        return replace(record)

    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        record = self._documents.get(document_id)
        return replace(record, auto_chips=dict(record.auto_chips), custom_chips=dict(record.custom_chips)) if record else None

    async def update_document(self, document_id: UUID, **fields) -> None:
        validate_update_fields(fields)
        async with self._lock:
            record = self._documents.get(document_id)
            if record is None:
                raise DocumentNotFoundError(document_id)
            self._documents[document_id] = replace(record, **fields, updated_at=_now())

    async def delete_document(self, document_id: UUID) -> bool:
        async with self._lock:
            existed = self._documents.pop(document_id, None) is not None
            if existed:
                self._chunks.pop(document_id, None)
            return existed

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def _build_rows(self, document_id: UUID, chunks: list[ChunkResult]) -> list[StoredChunk]:
        if document_id not in self._documents:
            raise StoreError(f"Document {document_id} does not exist", provider_name=self.backend_name)
        require_embeddings(chunks, self._dimensions)
        indices = [c.index for c in chunks]
        if len(set(indices)) != len(indices):
            raise StoreError("Duplicate chunk_index in batch", provider_name=self.backend_name)
        return [
            StoredChunk(
                id=uuid.uuid4(),
                document_id=document_id,
                chunk_index=c.index,
                content=c.content,
                word_count=c.word_count,
                start_char=c.start_char,
                end_char=c.end_char,
                embedding=list(c.embedding),
            )
            for c in chunks
        ]

    async def insert_chunks(self, document_id: UUID, chunks: list[ChunkResult]) -> int:
        async with self._lock:
            rows     = self._build_rows(document_id, chunks)
            existing = self._chunks.get(document_id, [])
            taken    = {c.chunk_index for c in existing}
            if any(r.chunk_index in taken for r in rows):
                raise StoreError("chunk_index already stored for document", provider_name=self.backend_name)
            self._chunks[document_id] = existing + rows
        return len(rows)

    async def delete_chunks(self, document_id: UUID) -> int:
        async with self._lock:
            return len(self._chunks.pop(document_id, []))

    async def replace_chunks(self, document_id: UUID, chunks: list[ChunkResult]) -> tuple[int, int]:
        async with self._lock:
            rows    = self._build_rows(document_id, chunks)
            deleted = len(self._chunks.get(document_id, []))
            self._chunks[document_id] = rows
        return deleted, len(rows)

    async def count_chunks(self, document_id: UUID) -> int:
        return len(self._chunks.get(document_id, []))

    # ------------------------------------------------------------------
    # Search / maintenance
    # ------------------------------------------------------------------

    async def similarity_search(
        self,
        vector:         list[float],
        min_similarity: float,
        limit:          int,
        document_ids:   list[UUID] | None = None,
    ) -> list[RetrievedChunk]:
        if limit <= 0:
            return []

        wanted = set(document_ids) if document_ids else None
        scored: list[tuple[float, StoredChunk]] = []
        for document_id, rows in self._chunks.items():
            if wanted is not None and document_id not in wanted:
                continue
            if document_id not in self._documents:
                continue
            for row in rows:
                similarity = min(1.0, max(0.0, cosine_similarity(vector, row.embedding)))
                if similarity >= min_similarity:
                    scored.append((similarity, row))

        scored.sort(key=lambda pair: (-pair[0], pair[1].chunk_index, pair[1].document_id, pair[1].id))
        results = []
        for similarity, row in scored[:limit]:
            document = self._documents[row.document_id]
            results.append(RetrievedChunk(
                id=row.id,
                document_id=row.document_id,
                chunk_index=row.chunk_index,
                content=row.content,
                similarity=similarity,
                document_name=document.original_name,
                file_type=document.file_type,
            ))
        return results

    async def chunk_stats(self) -> ChunkStats:
        counts = [len(rows) for rows in self._chunks.values() if rows]
        total  = sum(counts)
        return ChunkStats(
            total_chunks=total,
            total_documents=len(counts),
            average_chunks_per_document=round(total / len(counts), 2) if counts else 0.0,
        )

    async def delete_orphaned_chunks(self) -> int:
        async with self._lock:
            orphans = [doc_id for doc_id in self._chunks if doc_id not in self._documents]
            deleted = sum(len(self._chunks.pop(doc_id)) for doc_id in orphans)
        if deleted:
            logger.warning("InMemoryStore | removed orphaned chunks=%d", deleted)
        return deleted
