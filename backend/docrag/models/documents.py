"""
SQLAlchemy ORM Models — Documents, Templates & Chip-Chunks

Using SQLAlchemy 2.x mapped classes for full async support. The embedding
column is a pgvector ``vector(N)``; similarity search is delegated to the
database (``<=>`` cosine distance operator).

Tables:
    file_type_templates — read-only document-type definitions (chip fields)
    documents           — one row per ingested source file
    chip_chunks         — header-prefixed text segments + embeddings
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from docrag.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# FileTypeTemplate — file_type_templates
# ---------------------------------------------------------------------------

class FileTypeTemplate(Base):
    """
    A document type the classifier may choose, plus the chip fields to
    extract for it. Provisioned externally; the pipeline only reads it.
    """

    __tablename__ = "file_type_templates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    type_name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    chip_fields: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
        comment="Ordered list of chip field identifiers",
    )
    extraction_prompt: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Optional hint appended to the classification prompt",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<FileTypeTemplate type={self.type_name!r} fields={len(self.chip_fields or [])}>"


# ---------------------------------------------------------------------------
# SourceDocument — documents
# ---------------------------------------------------------------------------

class SourceDocument(Base):
    """
    Master record for one ingested file.

    State machine (status column):
        pending      — row created, extraction not yet started
        processing   — orchestrator running extraction → persistence
        reprocessing — chips changed, chunks being regenerated
        complete     — chunks + embeddings persisted, searchable
        error        — unrecoverable stage failure (see error_message)
        cancelled    — run stopped at a cancellation checkpoint
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'reprocessing', 'complete', 'error', 'cancelled')",
            name="documents_status_check",
        ),
        Index("idx_documents_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Template type_name chosen by the classifier (NULL until classified)",
    )
    full_text: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Cleaned text; NULL until extraction completes",
    )

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    auto_chips: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Classifier-extracted metadata",
    )
    custom_chips: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="User overrides; win over auto_chips on key collision",
    )

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    chunks: Mapped[list["ChipChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<SourceDocument id={self.id} status={self.status} file={self.original_name!r}>"


# ---------------------------------------------------------------------------
# ChipChunk — chip_chunks
# ---------------------------------------------------------------------------

class ChipChunk(Base):
    """
    One header-prefixed text segment of a SourceDocument plus its embedding.
    Rows for a document are always written (and replaced) as a single batch.
    """

    __tablename__ = "chip_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chip_chunks_position"),
        Index("idx_chip_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content:     Mapped[str] = mapped_column(Text, nullable=False, comment="[DOCUMENT CONTEXT] header + content slice")
    word_count:  Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    start_char:  Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    end_char:    Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[SourceDocument] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return f"<ChipChunk doc={self.document_id} index={self.chunk_index} words={self.word_count}>"
