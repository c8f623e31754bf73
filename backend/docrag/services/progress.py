"""
Progress reporting.

The pipeline core never owns progress state. Orchestrator and Reprocessor
accept a ProgressSink, a plain callable that receives ProgressUpdate events,
and callers decide where those events go: a Celery `update_state`, a log
line, or the ProgressStore below.

ProgressStore is the caller-owned keyed cache that replaces a process-wide
progress map: latest snapshot per document id, evicted after a TTL so
finished runs stay pollable for a while and then disappear.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable
from uuid import UUID

from cachetools import TTLCache

from docrag.core.config import settings
from docrag.schemas.documents import (
    IngestionStage,
    ProgressSnapshot,
    ProgressUpdate,
    ReprocessStage,
)

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressUpdate], None]

# Stage → coarse percent for ingestion runs. Extraction fills 0–70 from
# per-page progress; the remaining stages step up to 100.
INGESTION_PERCENT: dict[IngestionStage, float] = {
    IngestionStage.CREATING:    0.0,
    IngestionStage.EXTRACTING:  0.0,
    IngestionStage.CLEANING:    70.0,
    IngestionStage.CLASSIFYING: 72.0,
    IngestionStage.CHUNKING:    82.0,
    IngestionStage.EMBEDDING:   90.0,
    IngestionStage.SAVING:      96.0,
    IngestionStage.COMPLETE:    100.0,
}
EXTRACTION_SPAN = 70.0

_TERMINAL_STATUS = {
    IngestionStage.COMPLETE.value:  "complete",
    IngestionStage.ERROR.value:     "error",
    IngestionStage.CANCELLED.value: "cancelled",
    ReprocessStage.COMPLETE.value:  "complete",
    ReprocessStage.ERROR.value:     "error",
}


def emit_progress(sink: ProgressSink | None, update: ProgressUpdate) -> None:
    """Deliver one update; a failing sink is logged and never breaks the run."""
    if sink is None:
        return
    try:
        sink(update)
    except Exception:
        logger.warning("Progress | sink raised for stage=%s; continuing", update.stage, exc_info=True)


def fan_out(*sinks: ProgressSink | None) -> ProgressSink:
    """Combine several sinks into one; None entries are ignored."""
    active = [s for s in sinks if s is not None]

    def _sink(update: ProgressUpdate) -> None:
        for sink in active:
            emit_progress(sink, update)

    return _sink


class ProgressStore:
    """
    Latest ProgressSnapshot per document id, TTL-evicted.

    Usage:
        store = ProgressStore()
        await orchestrator.ingest(path, progress=store.sink(file_name="lease.pdf"))
        store.get(document_id)
    """

    def __init__(self, ttl_seconds: int | None = None, max_entries: int | None = None) -> None:
        self._cache: TTLCache = TTLCache(
            maxsize=max_entries or settings.progress_max_entries,
            ttl=ttl_seconds or settings.progress_ttl_seconds,
        )
        self._lock = threading.Lock()

    def sink(self, file_name: str | None = None) -> ProgressSink:
        def _sink(update: ProgressUpdate) -> None:
            self.record(update, file_name=file_name)
        return _sink

    def record(self, update: ProgressUpdate, file_name: str | None = None) -> ProgressSnapshot | None:
        if update.document_id is None:
            # dry runs and pre-creation events have no key to file under
            return None

        with self._lock:
            current = self._cache.get(update.document_id) or ProgressSnapshot(
                document_id=update.document_id,
                file_name=file_name,
            )
            changes: dict = {
                "stage":      update.stage,
                "message":    update.message,
                "updated_at": update.emitted_at,
                "status":     _TERMINAL_STATUS.get(update.stage, current.status),
            }
            if update.percent is not None:
                changes["percent"] = update.percent
            if update.stage in (IngestionStage.ERROR.value, ReprocessStage.ERROR.value):
                changes["error"] = update.detail.get("error") or update.message
            if "file_type" in update.detail:
                changes["file_type"] = update.detail["file_type"]
            if "chips" in update.detail:
                changes["extracted_chips"] = dict(update.detail["chips"])
            if "custom_chips" in update.detail:
                changes["custom_chips"] = dict(update.detail["custom_chips"])

            snapshot = current.model_copy(update=changes)
            self._cache[update.document_id] = snapshot
        return snapshot

    def get(self, document_id: UUID) -> ProgressSnapshot | None:
        with self._lock:
            return self._cache.get(document_id)

    def set_custom_chips(self, document_id: UUID, chips: dict[str, str]) -> None:
        with self._lock:
            current = self._cache.get(document_id)
            if current is not None:
                self._cache[document_id] = current.model_copy(update={"custom_chips": dict(chips)})

    def discard(self, document_id: UUID) -> None:
        with self._lock:
            self._cache.pop(document_id, None)

    def active(self) -> list[ProgressSnapshot]:
        with self._lock:
            return [s for s in self._cache.values() if s.status == "processing"]

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
