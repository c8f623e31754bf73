"""
pgvector Chunk Store — PostgreSQL + SQLAlchemy async

Similarity model:
  pgvector's `<=>` operator returns cosine DISTANCE in [0, 2].
  similarity = 1 − distance, clamped to [0, 1] on the way out.
  The floor is pushed into SQL as `distance <= 1 − min_similarity` so the
  database never ships rows the caller would discard.

Transactions:
  Every public call runs in its own `session.begin()` block. A failure
  inside the block rolls back everything written by that call; no public
  method ever commits a partial batch. SQLAlchemy errors surface as
  StoreError (provider_name="pgvector").
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docrag.core.config import settings
from docrag.core.exceptions import DocumentNotFoundError, StoreError
from docrag.models.documents import ChipChunk, SourceDocument
from docrag.processing.chunking import ChunkResult
from docrag.schemas.documents import ChunkStats, RetrievedChunk
from docrag.vectorstore.base import (
    ChunkStoreBase,
    DocumentRecord,
    require_embeddings,
    validate_update_fields,
)

logger = logging.getLogger(__name__)


def _to_record(row: SourceDocument) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        original_name=row.original_name,
        status=row.status,
        file_type=row.file_type,
        full_text=row.full_text,
        auto_chips=dict(row.auto_chips or {}),
        custom_chips=dict(row.custom_chips or {}),
        error_message=row.error_message,
        uploaded_at=row.uploaded_at,
        processed_at=row.processed_at,
        updated_at=row.updated_at,
    )


def similarity_statement(
    vector:         list[float],
    min_similarity: float,
    limit:          int,
    document_ids:   list[UUID] | None = None,
) -> Select:
    """Best first; equal distances fall back to (chunk_index, document_id, id)."""
    distance = ChipChunk.embedding.cosine_distance(vector)
    stmt = (
        select(
            ChipChunk.id,
            ChipChunk.document_id,
            ChipChunk.chunk_index,
            ChipChunk.content,
            (1 - distance).label("similarity"),
            SourceDocument.original_name,
            SourceDocument.file_type,
        )
        .join(SourceDocument, SourceDocument.id == ChipChunk.document_id)
        .where(ChipChunk.embedding.is_not(None))
        .where(distance <= 1 - min_similarity)
        .order_by(distance, ChipChunk.chunk_index, ChipChunk.document_id, ChipChunk.id)
        .limit(limit)
    )
    if document_ids:
        stmt = stmt.where(ChipChunk.document_id.in_(document_ids))
    return stmt


def _to_rows(document_id: UUID, chunks: list[ChunkResult]) -> list[ChipChunk]:
    return [
        ChipChunk(
            document_id=document_id,
            chunk_index=chunk.index,
            content=chunk.content,
            word_count=chunk.word_count,
            start_char=chunk.start_char,
            end_char=chunk.end_char,
            embedding=chunk.embedding,
        )
        for chunk in chunks
    ]


class PgVectorChunkStore(ChunkStoreBase):
    """
    Usage:
        store = PgVectorChunkStore()                      # process-wide session factory
        store = PgVectorChunkStore(session_factory=sf)    # tests / alternate engine
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dimensions:      int | None = None,
    ) -> None:
        if session_factory is None:
            from docrag.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._dimensions      = dimensions or settings.embedding_dimensions

    @property
    def backend_name(self) -> str:
        return "pgvector"

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("PgVectorStore | %s failed: %s", operation, exc)
            raise StoreError(f"{operation} failed: {exc}", provider_name=self.backend_name) from exc

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(self, original_name: str, status: str = "pending") -> DocumentRecord:
        async with self._transaction("create_document") as session:
            row = SourceDocument(original_name=original_name, status=status, auto_chips={}, custom_chips={})
            session.add(row)
            await session.flush()
            await session.refresh(row)
            record = _to_record(row)
        logger.info("PgVectorStore | document created id=%s name=%s", record.id, original_name)
        return record

    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        async with self._transaction("get_document") as session:
            row = await session.get(SourceDocument, document_id)
            return _to_record(row) if row is not None else None

    async def update_document(self, document_id: UUID, **fields) -> None:
        validate_update_fields(fields)
        if not fields:
            return
        async with self._transaction("update_document") as session:
            result = await session.execute(
                update(SourceDocument)
                .where(SourceDocument.id == document_id)
                .values(**fields, updated_at=func.now())
            )
            if result.rowcount == 0:
                raise DocumentNotFoundError(document_id)

    async def delete_document(self, document_id: UUID) -> bool:
        async with self._transaction("delete_document") as session:
            # chip_chunks rows go with it (ON DELETE CASCADE)
            result = await session.execute(delete(SourceDocument).where(SourceDocument.id == document_id))
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def insert_chunks(self, document_id: UUID, chunks: list[ChunkResult]) -> int:
        require_embeddings(chunks, self._dimensions)
        async with self._transaction("insert_chunks") as session:
            session.add_all(_to_rows(document_id, chunks))
        logger.info("PgVectorStore | inserted doc=%s chunks=%d", document_id, len(chunks))
        return len(chunks)

    async def delete_chunks(self, document_id: UUID) -> int:
        async with self._transaction("delete_chunks") as session:
            result = await session.execute(delete(ChipChunk).where(ChipChunk.document_id == document_id))
            return result.rowcount

    async def replace_chunks(self, document_id: UUID, chunks: list[ChunkResult]) -> tuple[int, int]:
        require_embeddings(chunks, self._dimensions)
        async with self._transaction("replace_chunks") as session:
            result  = await session.execute(delete(ChipChunk).where(ChipChunk.document_id == document_id))
            deleted = result.rowcount
            # flush the DELETE before the INSERTs so (document_id, chunk_index) stays unique
            await session.flush()
            session.add_all(_to_rows(document_id, chunks))
        logger.info("PgVectorStore | replaced doc=%s deleted=%d inserted=%d", document_id, deleted, len(chunks))
        return deleted, len(chunks)

    async def count_chunks(self, document_id: UUID) -> int:
        async with self._transaction("count_chunks") as session:
            return await session.scalar(
                select(func.count()).select_from(ChipChunk).where(ChipChunk.document_id == document_id)
            ) or 0

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

        stmt = similarity_statement(vector, min_similarity, limit, document_ids)

        async with self._transaction("similarity_search") as session:
            rows = (await session.execute(stmt)).all()

        return [
            RetrievedChunk(
                id=row.id,
                document_id=row.document_id,
                chunk_index=row.chunk_index,
                content=row.content,
                similarity=min(1.0, max(0.0, float(row.similarity))),
                document_name=row.original_name,
                file_type=row.file_type,
            )
            for row in rows
        ]

    async def chunk_stats(self) -> ChunkStats:
        async with self._transaction("chunk_stats") as session:
            row = (
                await session.execute(
                    select(
                        func.count(ChipChunk.id),
                        func.count(func.distinct(ChipChunk.document_id)),
                    )
                )
            ).one()
        total_chunks, total_documents = int(row[0] or 0), int(row[1] or 0)
        return ChunkStats(
            total_chunks=total_chunks,
            total_documents=total_documents,
            average_chunks_per_document=round(total_chunks / total_documents, 2) if total_documents else 0.0,
        )

    async def delete_orphaned_chunks(self) -> int:
        has_parent = select(SourceDocument.id).where(SourceDocument.id == ChipChunk.document_id).exists()
        async with self._transaction("delete_orphaned_chunks") as session:
            result = await session.execute(delete(ChipChunk).where(~has_parent))
            deleted = result.rowcount
        if deleted:
            logger.warning("PgVectorStore | removed orphaned chunks=%d", deleted)
        return deleted
