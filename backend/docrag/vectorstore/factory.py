"""
Chunk Store Factory

Selects the backend (pgvector | memory) from config. Pipeline code only
imports get_chunk_store(); concrete classes stay behind this seam.
"""

from __future__ import annotations

from docrag.core.config import settings
from docrag.vectorstore.base import ChunkStoreBase


def get_chunk_store(backend: str | None = None) -> ChunkStoreBase:
    backend = (backend or settings.chunk_store_backend).lower()

    if backend == "pgvector":
        from docrag.vectorstore.pgvector_store import PgVectorChunkStore
        return PgVectorChunkStore()

    if backend == "memory":
        from docrag.vectorstore.memory_store import InMemoryChunkStore
        return InMemoryChunkStore()

    raise ValueError(
        f"Unknown chunk store backend: '{backend}'. "
        f"Valid options: 'pgvector', 'memory'"
    )
