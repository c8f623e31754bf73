"""
Unit Tests — InMemoryChunkStore
════════════════════════════════
The in-process backend shares ChunkStoreBase with pgvector; these tests pin
the contract both implement.

Coverage targets:
  ✅ Document create / get / update / delete
  ✅ Unknown update fields and missing documents rejected
  ✅ Batch insert validates embeddings before writing anything
  ✅ replace_chunks swaps the whole set atomically
  ✅ Similarity search: floor, top-k, clamp to [0, 1], tie-break (index, then document), filter
  ✅ Stats and orphan cleanup
"""

from __future__ import annotations

import uuid

import pytest

from docrag.core.exceptions import DocumentNotFoundError, StoreError
from docrag.vectorstore.factory import get_chunk_store
from docrag.vectorstore.memory_store import InMemoryChunkStore, StoredChunk, cosine_similarity
from tests.conftest import DIMS, unit_vector


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestDocuments:

    async def test_create_and_get(self, store):
        record = await store.create_document("lease.pdf")
        fetched = await store.get_document(record.id)

        assert fetched.original_name == "lease.pdf"
        assert fetched.status == "pending"
        assert fetched.uploaded_at is not None

    async def test_update_fields(self, store):
        record = await store.create_document("lease.pdf")
        await store.update_document(
            record.id,
            status="complete",
            file_type="lease",
            auto_chips={"tenant_name": "Acme"},
            custom_chips={"tenant_name": "Acme Corp", "unit": "4B"},
        )
        fetched = await store.get_document(record.id)

        assert fetched.status == "complete"
        assert fetched.file_type == "lease"
        assert fetched.merged_chips == {"tenant_name": "Acme Corp", "unit": "4B"}

    async def test_returned_records_are_copies(self, store):
        record = await store.create_document("lease.pdf")
        await store.update_document(record.id, auto_chips={"a": "1"})

        fetched = await store.get_document(record.id)
        fetched.auto_chips["a"] = "changed"

        assert (await store.get_document(record.id)).auto_chips == {"a": "1"}

    async def test_unknown_field_rejected(self, store):
        record = await store.create_document("lease.pdf")
        with pytest.raises(ValueError, match="original_name"):
            await store.update_document(record.id, original_name="other.pdf")

    async def test_update_missing_document(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.update_document(uuid.uuid4(), status="error")

    async def test_delete_document_drops_chunks(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        await store.insert_chunks(record.id, make_embedded_chunks(2))

        assert await store.delete_document(record.id) is True
        assert await store.delete_document(record.id) is False
        assert await store.count_chunks(record.id) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Chunks
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChunks:

    async def test_insert_and_count(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        assert await store.insert_chunks(record.id, make_embedded_chunks(3)) == 3
        assert await store.count_chunks(record.id) == 3

    async def test_missing_embedding_rejects_whole_batch(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        chunks = make_embedded_chunks(3)
        chunks[2].embedding = None

        with pytest.raises(StoreError, match="Chunk 2 has no embedding"):
            await store.insert_chunks(record.id, chunks)
        assert await store.count_chunks(record.id) == 0

    async def test_wrong_dimension_rejected(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        chunks = make_embedded_chunks(1, vectors=[[1.0] * (DIMS + 2)])

        with pytest.raises(StoreError, match="expected 8"):
            await store.insert_chunks(record.id, chunks)

    async def test_duplicate_index_rejected(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        await store.insert_chunks(record.id, make_embedded_chunks(2))

        with pytest.raises(StoreError):
            await store.insert_chunks(record.id, make_embedded_chunks(1))

    async def test_insert_for_unknown_document(self, store, make_embedded_chunks):
        with pytest.raises(StoreError):
            await store.insert_chunks(uuid.uuid4(), make_embedded_chunks(1))

    async def test_replace_chunks(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        await store.insert_chunks(record.id, make_embedded_chunks(4))

        deleted, inserted = await store.replace_chunks(record.id, make_embedded_chunks(2))

        assert (deleted, inserted) == (4, 2)
        assert await store.count_chunks(record.id) == 2

    async def test_failed_replace_keeps_old_set(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        await store.insert_chunks(record.id, make_embedded_chunks(4))
        bad = make_embedded_chunks(2)
        bad[1].embedding = None

        with pytest.raises(StoreError):
            await store.replace_chunks(record.id, bad)
        assert await store.count_chunks(record.id) == 4

    async def test_delete_chunks(self, store, make_embedded_chunks):
        record = await store.create_document("lease.pdf")
        await store.insert_chunks(record.id, make_embedded_chunks(3))

        assert await store.delete_chunks(record.id) == 3
        assert await store.delete_chunks(record.id) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Similarity search
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.retrieval
class TestSimilaritySearch:

    @pytest.fixture
    async def seeded(self, store, make_embedded_chunks):
        """One document, chunks pointing along axes 0, 1 and a 0/1 diagonal."""
        record = await store.create_document("lease.pdf")
        await store.update_document(record.id, file_type="lease")
        diagonal = [0.0] * DIMS
        diagonal[0] = diagonal[1] = 1.0
        await store.insert_chunks(
            record.id,
            make_embedded_chunks(3, vectors=[unit_vector(0), unit_vector(1), diagonal]),
        )
        return record

    async def test_ranked_by_similarity(self, store, seeded):
        results = await store.similarity_search(unit_vector(0), min_similarity=0.0, limit=10)

        assert [r.chunk_index for r in results] == [0, 2, 1]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].similarity == pytest.approx(0.7071, abs=1e-4)
        assert results[0].document_name == "lease.pdf"
        assert results[0].file_type == "lease"

    async def test_floor_and_limit(self, store, seeded):
        assert [r.chunk_index for r in await store.similarity_search(unit_vector(0), 0.5, 10)] == [0, 2]
        assert [r.chunk_index for r in await store.similarity_search(unit_vector(0), 0.0, 1)] == [0]
        assert await store.similarity_search(unit_vector(0), 0.0, 0) == []

    async def test_negative_similarity_clamped(self, store, seeded):
        opposite = [-x for x in unit_vector(0)]
        results = await store.similarity_search(opposite, 0.0, 10)

        assert all(0.0 <= r.similarity <= 1.0 for r in results)
        assert [r.chunk_index for r in results] == [0, 1, 2]

    async def test_ties_broken_by_chunk_index(self, store, make_embedded_chunks):
        record = await store.create_document("same.pdf")
        await store.insert_chunks(record.id, make_embedded_chunks(3, vectors=[unit_vector(3)] * 3))

        results = await store.similarity_search(unit_vector(3), 0.0, 10)
        assert [r.chunk_index for r in results] == [0, 1, 2]

    async def test_equal_index_ties_ordered_by_document_id(self, store, make_embedded_chunks):
        first  = await store.create_document("first.pdf")
        second = await store.create_document("second.pdf")
        low, high = sorted([first.id, second.id])
        await store.insert_chunks(high, make_embedded_chunks(2, vectors=[unit_vector(4)] * 2))
        await store.insert_chunks(low, make_embedded_chunks(2, vectors=[unit_vector(4)] * 2))

        results = await store.similarity_search(unit_vector(4), 0.0, 10)

        assert [(r.chunk_index, r.document_id) for r in results] == [(0, low), (0, high), (1, low), (1, high)]

    async def test_document_filter(self, store, seeded, make_embedded_chunks):
        other = await store.create_document("other.pdf")
        await store.insert_chunks(other.id, make_embedded_chunks(1, vectors=[unit_vector(0)]))

        results = await store.similarity_search(unit_vector(0), 0.9, 10, document_ids=[other.id])
        assert [r.document_id for r in results] == [other.id]

    def test_cosine_similarity_zero_norm(self):
        assert cosine_similarity([0.0] * DIMS, unit_vector(0)) == 0.0
        assert cosine_similarity(unit_vector(2), unit_vector(2)) == pytest.approx(1.0)


# ─────────────────────────────────────────────────────────────────────────────
# Maintenance
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestMaintenance:

    async def test_chunk_stats(self, store, make_embedded_chunks):
        first = await store.create_document("a.pdf")
        second = await store.create_document("b.pdf")
        await store.insert_chunks(first.id, make_embedded_chunks(3))
        await store.insert_chunks(second.id, make_embedded_chunks(1))

        stats = await store.chunk_stats()
        assert stats.total_chunks == 4
        assert stats.total_documents == 2
        assert stats.average_chunks_per_document == 2.0

    async def test_orphaned_chunks_removed(self, store, make_embedded_chunks):
        record = await store.create_document("a.pdf")
        await store.insert_chunks(record.id, make_embedded_chunks(2))
        ghost = uuid.uuid4()
        store._chunks[ghost] = [
            StoredChunk(uuid.uuid4(), ghost, 0, "orphan", 1, 0, 6, unit_vector(0)),
        ]

        assert await store.delete_orphaned_chunks() == 1
        assert ghost not in store._chunks
        assert await store.count_chunks(record.id) == 2

    def test_factory(self):
        assert isinstance(get_chunk_store("memory"), InMemoryChunkStore)
        with pytest.raises(ValueError):
            get_chunk_store("chroma")
