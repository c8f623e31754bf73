"""
Celery Tasks — Document Pipeline

Task: ingest_document
  Runs IngestionOrchestrator on a file already on shared storage. Progress
  events become `update_state(state="PROGRESS", meta=...)`; an abort
  (AbortableAsyncResult(task_id).abort()) is observed through the run's
  cancellation token at the next checkpoint.

Task: reprocess_document
  Re-chunks + re-embeds a stored document under new custom chips.

Task: cancel_document
  Deletes a document's partial data (chunks, then row). The ingest run,
  wherever it executes, sees the missing row at its next checkpoint and
  stops as cancelled.

None of these tasks auto-retry: a failed ingestion has already marked its
document `error`, and re-running would create a second document row.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery.contrib.abortable import AbortableTask

from docrag.core.exceptions import OperationCancelled
from docrag.schemas.documents import ProgressUpdate
from docrag.services.ingestion import IngestOptions
from docrag.services.knowledge_base import KnowledgeBase, build_knowledge_base
from docrag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Per-process knowledge base (lazy)
# ---------------------------------------------------------------------------

_knowledge_base: KnowledgeBase | None = None


def get_knowledge_base() -> KnowledgeBase:
    global _knowledge_base
    if _knowledge_base is None:
        _knowledge_base = build_knowledge_base()
    return _knowledge_base


async def _release_connections() -> None:
    # every task runs in a fresh event loop; pooled asyncpg connections can't cross loops
    from docrag.db.session import engine
    await engine.dispose()


def _progress_reporter(task):
    def _report(update: ProgressUpdate) -> None:
        task.update_state(state="PROGRESS", meta=update.model_dump(mode="json"))
    return _report


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docrag.workers.tasks.ingest_document",
    bind=True,
    base=AbortableTask,
    acks_late=True,
    reject_on_worker_lost=True,
)
def ingest_document(
    self: AbortableTask,
    *,
    file_path:      str,
    original_name:  str | None = None,
    skip_embedding: bool = False,
) -> dict[str, Any]:
    return run_async(_ingest_async(self, file_path, original_name, skip_embedding))


async def _ingest_async(task, file_path: str, original_name: str | None, skip_embedding: bool) -> dict[str, Any]:
    kb = get_knowledge_base()
    try:
        result = await kb.ingest(
            file_path,
            original_name=original_name,
            progress=_progress_reporter(task),
            options=IngestOptions(skip_embedding=skip_embedding),
            abort_probe=task.is_aborted,
        )
    except OperationCancelled as exc:
        logger.info("Ingest task cancelled | file=%s: %s", file_path, exc.message)
        return {"status": "cancelled", "message": exc.message}
    finally:
        await _release_connections()
    return {"status": "complete", **result.model_dump(mode="json")}


@celery_app.task(
    name="docrag.workers.tasks.reprocess_document",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def reprocess_document(self, *, document_id: str, custom_chips: dict[str, str]) -> dict[str, Any]:
    return run_async(_reprocess_async(self, uuid.UUID(document_id), custom_chips))


async def _reprocess_async(task, document_id: uuid.UUID, custom_chips: dict[str, str]) -> dict[str, Any]:
    kb = get_knowledge_base()
    try:
        result = await kb.reprocess(document_id, custom_chips, progress=_progress_reporter(task))
    finally:
        await _release_connections()
    return {"status": "complete", **result.model_dump(mode="json")}


@celery_app.task(name="docrag.workers.tasks.cancel_document")
def cancel_document(*, document_id: str) -> dict[str, Any]:
    return run_async(_cancel_async(uuid.UUID(document_id)))


async def _cancel_async(document_id: uuid.UUID) -> dict[str, Any]:
    kb = get_knowledge_base()
    try:
        result = await kb.cancel(document_id)
    finally:
        await _release_connections()
    return result.model_dump(mode="json")
