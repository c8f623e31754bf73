"""
Celery Application Factory

Runs ingestion and reprocessing fire-and-forget, one document per task.
Broker: Redis by default (RabbitMQ works unchanged via CELERY_BROKER_URL).
Result backend: Redis, needed for progress polling (state=PROGRESS) and for
AbortableTask's abort flag.

Queue topology:
  documents.ingest     — full pipeline runs (slow, vision-bound)
  documents.reprocess  — chip edits: re-chunk + re-embed only
  documents.control    — cancellations

Task payloads carry file paths and ids only, never file bytes.
"""

from __future__ import annotations

import asyncio
import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun, worker_init
from kombu import Exchange, Queue

from docrag.core.config import settings
from docrag.core.log_config import apply_format, configure_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue("documents.ingest",    exchange=DOCUMENTS_EXCHANGE, routing_key="documents.ingest",    durable=True),
    Queue("documents.reprocess", exchange=DOCUMENTS_EXCHANGE, routing_key="documents.reprocess", durable=True),
    Queue("documents.control",   exchange=DOCUMENTS_EXCHANGE, routing_key="documents.control",   durable=True),
)

TASK_ROUTES = {
    "docrag.workers.tasks.ingest_document":    {"queue": "documents.ingest"},
    "docrag.workers.tasks.reprocess_document": {"queue": "documents.reprocess"},
    "docrag.workers.tasks.cancel_document":    {"queue": "documents.control"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docrag")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (JSON only) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one document at a time per worker process
        task_track_started=True,

        # --- Result TTL (matches the progress cache TTL) ---
        result_expires=settings.progress_ttl_seconds,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=200,
        worker_hijack_root_logger=False,
    )

    app.autodiscover_tasks(["docrag.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(logger, *args, **kwargs):
    apply_format(logger)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, kwargs.get("document_id") or kwargs.get("original_name", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "?"), exception,
        exc_info=True,
    )


# ---------------------------------------------------------------------------
# Worker boot
# ---------------------------------------------------------------------------

@worker_init.connect
def on_worker_init(**_):
    configure_logging()
    logger.info("Worker boot | env=%s store=%s", settings.app_env, settings.chunk_store_backend)
    if settings.chunk_store_backend == "pgvector":
        asyncio.run(_bootstrap_schema())


async def _bootstrap_schema() -> None:
    from docrag.db import session

    try:
        await session.init_schema()
    finally:
        await session.engine.dispose()
