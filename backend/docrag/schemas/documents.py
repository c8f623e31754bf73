"""
Pipeline-facing Pydantic schemas

Everything a caller (API layer, Celery task, script) receives back from the
ingestion / reprocessing / cancellation / retrieval entry points, plus the
progress payloads pushed to progress sinks.

Design decisions:
  - Stage enums are separate from the document status column: status is the
    only persisted lifecycle state, stages are transient progress labels.
  - Timings are milliseconds (float), keyed by stage name.
  - All models are JSON-serialisable (model_dump(mode="json")) so they can
    travel through Celery's JSON serializer unchanged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Lifecycle status (mirrors documents.status CHECK constraint)
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Transitions: pending → processing → complete | error | cancelled
                 complete → reprocessing → complete | error
    """
    PENDING      = "pending"
    PROCESSING   = "processing"
    REPROCESSING = "reprocessing"
    COMPLETE     = "complete"
    ERROR        = "error"
    CANCELLED    = "cancelled"


# ---------------------------------------------------------------------------
# Progress stages
# ---------------------------------------------------------------------------

class IngestionStage(str, Enum):
    CREATING    = "creating"
    EXTRACTING  = "extracting"
    CLEANING    = "cleaning"
    CLASSIFYING = "classifying"
    CHUNKING    = "chunking"
    EMBEDDING   = "embedding"
    SAVING      = "saving"
    COMPLETE    = "complete"
    ERROR       = "error"
    CANCELLED   = "cancelled"


class ReprocessStage(str, Enum):
    FETCHING  = "fetching"
    CHUNKING  = "chunking"
    EMBEDDING = "embedding"
    SAVING    = "saving"
    COMPLETE  = "complete"
    ERROR     = "error"


class ProgressUpdate(BaseModel):
    """One event pushed to a progress sink."""
    document_id: UUID | None = None
    stage:       str
    message:     str                 = ""
    percent:     float | None        = Field(None, ge=0.0, le=100.0)
    detail:      dict[str, Any]      = Field(default_factory=dict)
    emitted_at:  datetime            = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProgressSnapshot(BaseModel):
    """
    Latest known state of one run, as held by the caller-owned ProgressStore
    and polled by clients.
    """
    document_id:     UUID | None     = None
    status:          str             = "processing"   # processing | complete | error | cancelled
    stage:           str             = IngestionStage.CREATING.value
    percent:         float           = 0.0
    message:         str             = ""
    file_name:       str | None      = None
    file_type:       str | None      = None
    extracted_chips: dict[str, str]  = Field(default_factory=dict)
    custom_chips:    dict[str, str]  = Field(default_factory=dict)
    error:           str | None      = None
    updated_at:      datetime        = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class ClassificationSummary(BaseModel):
    file_type:  str
    confidence: float          = Field(..., ge=0.0, le=1.0)
    chips:      dict[str, str] = Field(default_factory=dict)
    reasoning:  str | None     = None


class IngestResult(BaseModel):
    document_id:        UUID | None
    original_name:      str
    classification:     ClassificationSummary
    chunk_count:        int
    average_words:      int               = 0
    chip_header:        str               = ""
    total_pages:        int               = 0
    failed_pages:       list[int]         = Field(default_factory=list)
    cleaned_length:     int               = 0
    cleaning_reduction: str               = "0.0%"
    embedded:           bool              = True
    saved:              bool              = True
    total_tokens:       int               = 0
    estimated_cost:     float             = 0.0
    timings_ms:         dict[str, float]  = Field(default_factory=dict)
    total_ms:           float             = 0.0


class ReprocessResult(BaseModel):
    document_id:          UUID
    previous_chunk_count: int
    new_chunk_count:      int
    merged_chips:         dict[str, str]   = Field(default_factory=dict)
    total_tokens:         int              = 0
    estimated_cost:       float            = 0.0
    timings_ms:           dict[str, float] = Field(default_factory=dict)
    total_ms:             float            = 0.0


class CancelResult(BaseModel):
    success:          bool
    document_id:      UUID
    chunks_deleted:   int        = 0
    document_deleted: bool       = False
    error:            str | None = None


class DocumentStatusInfo(BaseModel):
    document_id:   UUID
    original_name: str
    status:        DocumentStatus
    chunk_count:   int        = 0
    file_type:     str | None = None
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class RetrievedChunk(BaseModel):
    """A stored chip-chunk plus its similarity to the query. Never persisted."""
    id:            UUID
    document_id:   UUID
    chunk_index:   int
    content:       str
    similarity:    float      = Field(..., ge=0.0, le=1.0)
    document_name: str
    file_type:     str | None = None


class RetrievalResult(BaseModel):
    query:                  str
    chunks:                 list[RetrievedChunk] = Field(default_factory=list)
    query_embedding_tokens: int                  = 0
    embedding_ms:           float                = 0.0
    search_ms:              float                = 0.0
    total_ms:               float                = 0.0


class ChunkStats(BaseModel):
    total_chunks:              int
    total_documents:           int
    average_chunks_per_document: float
