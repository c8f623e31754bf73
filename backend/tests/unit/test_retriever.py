"""
Unit Tests — Retriever and LangChain adapter
═════════════════════════════════════════════

Query vectors are controlled through FakeEmbeddingService.vector_fn so each
test knows the exact similarity of every stored chunk.

Coverage targets:
  ✅ Top-k ordering by similarity with metadata filled in
  ✅ Floor above the best match → empty result, not an error
  ✅ Per-call overrides of top_k / min_similarity
  ✅ Floor outside [0, 1] rejected before any service call
  ✅ Embedding failure propagates as a single error
  ✅ ChipChunkRetriever returns LangChain Documents (async + sync)
"""

from __future__ import annotations

import math

import pytest
from langchain_core.documents import Document

from docrag.core.exceptions import EmbeddingError
from docrag.rag.retriever import ChipChunkRetriever, Retriever, chunk_to_document
from tests.conftest import DIMS, unit_vector


def _vector_with_similarity(similarity: float) -> list[float]:
    """Unit vector whose cosine to unit_vector(0) equals `similarity`."""
    vector = [0.0] * DIMS
    vector[0] = similarity
    vector[1] = math.sqrt(1 - similarity ** 2)
    return vector


@pytest.fixture
async def seeded_store(store, make_embedded_chunks):
    """lease.pdf with chunks at similarity 0.85, 0.6 and 0.2 to unit_vector(0)."""
    record = await store.create_document("lease.pdf")
    await store.update_document(record.id, file_type="lease", status="complete")
    vectors = [_vector_with_similarity(s) for s in (0.6, 0.85, 0.2)]
    await store.insert_chunks(record.id, make_embedded_chunks(3, vectors=vectors))
    return store


@pytest.fixture
def query_on_axis(embedding_service):
    embedding_service.vector_fn = lambda text: unit_vector(0)
    return embedding_service


@pytest.mark.unit
@pytest.mark.retrieval
class TestRetriever:

    async def test_ranked_results(self, retriever, seeded_store, query_on_axis):
        result = await retriever.retrieve("when does the lease end?")

        assert [c.chunk_index for c in result.chunks] == [1, 0]
        assert result.chunks[0].similarity == pytest.approx(0.85)
        assert result.chunks[0].document_name == "lease.pdf"
        assert result.chunks[0].file_type == "lease"
        assert result.query_embedding_tokens == 10
        assert result.total_ms >= result.search_ms

    async def test_floor_above_best_match_returns_empty(self, retriever, seeded_store, query_on_axis):
        result = await retriever.retrieve("anything", min_similarity=0.9)
        assert result.chunks == []

    async def test_per_call_overrides(self, retriever, seeded_store, query_on_axis):
        assert len((await retriever.retrieve("q", min_similarity=0.0)).chunks) == 3
        assert [c.chunk_index for c in (await retriever.retrieve("q", top_k=1)).chunks] == [1]

    @pytest.mark.parametrize("floor", [-0.1, 1.5])
    async def test_floor_out_of_range(self, retriever, embedding_service, floor):
        with pytest.raises(ValueError):
            await retriever.retrieve("q", min_similarity=floor)
        assert embedding_service.calls == []

    async def test_document_filter(self, retriever, seeded_store, query_on_axis, make_embedded_chunks):
        other = await seeded_store.create_document("other.pdf")
        await seeded_store.insert_chunks(other.id, make_embedded_chunks(1, vectors=[unit_vector(0)]))

        result = await retriever.retrieve("q", document_ids=[other.id])
        assert [c.document_name for c in result.chunks] == ["other.pdf"]

    async def test_embedding_failure_propagates(self, store, embedder, embedding_service):
        embedding_service.failures = [RuntimeError("down")] * 3

        with pytest.raises(EmbeddingError):
            await Retriever(embedder, store).retrieve("q")


@pytest.mark.unit
@pytest.mark.retrieval
class TestLangChainAdapter:

    async def test_async_invoke(self, retriever, seeded_store, query_on_axis):
        adapter = ChipChunkRetriever(retriever=retriever, top_k=1)
        documents = await adapter.ainvoke("when does the lease end?")

        assert len(documents) == 1
        assert isinstance(documents[0], Document)
        assert documents[0].metadata["chunk_index"] == 1
        assert documents[0].metadata["document_name"] == "lease.pdf"
        assert documents[0].metadata["similarity"] == pytest.approx(0.85)

    def test_sync_invoke(self, retriever, store, make_embedded_chunks, query_on_axis):
        import asyncio

        async def _seed():
            record = await store.create_document("deed.pdf")
            await store.insert_chunks(record.id, make_embedded_chunks(1, vectors=[unit_vector(0)]))

        asyncio.run(_seed())
        documents = ChipChunkRetriever(retriever=retriever).invoke("who is the grantor?")

        assert [d.metadata["document_name"] for d in documents] == ["deed.pdf"]

    async def test_chunk_to_document(self, retriever, seeded_store, query_on_axis):
        chunk = (await retriever.retrieve("q")).chunks[0]
        document = chunk_to_document(chunk)

        assert document.page_content == chunk.content
        assert document.metadata["chunk_id"] == str(chunk.id)
        assert document.metadata["document_id"] == str(chunk.document_id)
