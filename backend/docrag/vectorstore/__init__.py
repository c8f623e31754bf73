from docrag.vectorstore.base import ChunkStoreBase, DocumentRecord
from docrag.vectorstore.factory import get_chunk_store
from docrag.vectorstore.memory_store import InMemoryChunkStore

__all__ = ["ChunkStoreBase", "DocumentRecord", "InMemoryChunkStore", "get_chunk_store"]
