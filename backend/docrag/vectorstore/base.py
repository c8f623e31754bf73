"""
Chunk Store — Abstract Base

Every persistence backend (pgvector, in-memory) implements this interface.
Orchestrator, reprocessor, canceller and retriever only speak this protocol,
so the backend is swappable without touching pipeline code.

Storage contract (enforced by ALL implementations):
  - Chunks for a document are written as one batch: insert_chunks() either
    stores every row or none.
  - replace_chunks() swaps the old set for the new set atomically; readers
    never observe a mix of old and new rows.
  - Deleting a document deletes its chunks.
  - similarity_search() returns at most `limit` rows with similarity ≥ the
    floor, best first, ties broken by chunk_index, then document_id, then
    chunk id (all ascending), so equal scores order the same on every backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from docrag.core.exceptions import StoreError
from docrag.processing.chunking import ChunkResult
from docrag.schemas.documents import ChunkStats, RetrievedChunk

# Columns callers may change through update_document()
UPDATABLE_DOCUMENT_FIELDS = frozenset({
    "status",
    "file_type",
    "full_text",
    "auto_chips",
    "custom_chips",
    "error_message",
    "processed_at",
})


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class DocumentRecord:
    """Detached snapshot of one documents row."""
    id:            UUID
    original_name: str
    status:        str
    file_type:     str | None      = None
    full_text:     str | None      = None
    auto_chips:    dict[str, str]  = field(default_factory=dict)
    custom_chips:  dict[str, str]  = field(default_factory=dict)
    error_message: str | None      = None
    uploaded_at:   datetime | None = None
    processed_at:  datetime | None = None
    updated_at:    datetime | None = None

    @property
    def merged_chips(self) -> dict[str, str]:
        """auto_chips overlaid with custom_chips (custom wins)."""
        return {**(self.auto_chips or {}), **(self.custom_chips or {})}


def validate_update_fields(fields: dict) -> None:
    unknown = set(fields) - UPDATABLE_DOCUMENT_FIELDS
    if unknown:
        raise ValueError(f"Cannot update document field(s): {', '.join(sorted(unknown))}")


def require_embeddings(chunks: list[ChunkResult], dimensions: int) -> None:
    """Reject a batch before any row is written if a vector is missing or malformed."""
    for chunk in chunks:
        if chunk.embedding is None:
            raise StoreError(f"Chunk {chunk.index} has no embedding")
        if len(chunk.embedding) != dimensions:
            raise StoreError(
                f"Chunk {chunk.index} embedding has {len(chunk.embedding)} dimensions, expected {dimensions}"
            )


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class ChunkStoreBase(ABC):
    """Document + chip-chunk persistence with cosine similarity lookup."""

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """'pgvector' | 'memory'"""

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_document(self, original_name: str, status: str = "pending") -> DocumentRecord:
        """Insert a documents row and return its snapshot (id assigned)."""

    @abstractmethod
    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        """Return the document snapshot, or None when the id is unknown."""

    @abstractmethod
    async def update_document(self, document_id: UUID, **fields) -> None:
        """
        Update columns listed in UPDATABLE_DOCUMENT_FIELDS.
        Raises DocumentNotFoundError when the id is unknown.
        """

    @abstractmethod
    async def delete_document(self, document_id: UUID) -> bool:
        """Delete the document and, by cascade, its chunks. Returns False if absent."""

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_chunks(self, document_id: UUID, chunks: list[ChunkResult]) -> int:
        """Insert one batch of embedded chunks. Returns rows written."""

    @abstractmethod
    async def delete_chunks(self, document_id: UUID) -> int:
        """Delete every chunk of a document. Returns rows deleted."""

    @abstractmethod
    async def replace_chunks(self, document_id: UUID, chunks: list[ChunkResult]) -> tuple[int, int]:
        """Atomically swap a document's chunks. Returns (deleted, inserted)."""

    @abstractmethod
    async def count_chunks(self, document_id: UUID) -> int:
        ...

    # ------------------------------------------------------------------
    # Search / maintenance
    # ------------------------------------------------------------------

    @abstractmethod
    async def similarity_search(
        self,
        vector:         list[float],
        min_similarity: float,
        limit:          int,
        document_ids:   list[UUID] | None = None,
    ) -> list[RetrievedChunk]:
        """Top-`limit` chunks by cosine similarity (1 − cosine distance)."""

    @abstractmethod
    async def chunk_stats(self) -> ChunkStats:
        ...

    @abstractmethod
    async def delete_orphaned_chunks(self) -> int:
        """Remove chunks whose document row no longer exists."""
