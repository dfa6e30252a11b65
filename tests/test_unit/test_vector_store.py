"""
Unit Tests for Vector Stores

In-memory store against real numpy math; Supabase and Pinecone stores
against mocked clients.
"""
import math
from unittest.mock import Mock, patch

import httpx
import pytest
from pinecone.exceptions import PineconeException
from postgrest.exceptions import APIError as PostgrestAPIError
from tenacity import wait_none

from app.exceptions import DimensionMismatchError, PartialWriteError, StoreUnavailableError
from app.models.schemas import ChunkInput, SearchOptions
from app.services.vector_store import InMemoryVectorStore, PineconeVectorStore, SupabaseVectorStore


def unit_vector(cosine: float):
    """2-d vector whose cosine with [1, 0] is ``cosine``."""
    return [cosine, math.sqrt(1 - cosine ** 2)]


def chunk_input(content: str, embedding, index: int = 0, parent: str = "doc-1", **metadata) -> ChunkInput:
    return ChunkInput(
        title=f"Doc - Part {index + 1}",
        content=content,
        embedding=embedding,
        chunk_index=index,
        parent_document_id=parent,
        metadata=metadata,
    )


QUERY = [1.0, 0.0]


# ═══════════════════════════════════════════════════════════════
# IN-MEMORY
# ═══════════════════════════════════════════════════════════════

class TestInMemoryVectorStore:

    @pytest.mark.asyncio
    async def test_store_assigns_ids(self, memory_store):
        ids = await memory_store.store_documents([
            chunk_input("a", unit_vector(0.9)),
            ChunkInput(id="fixed", title="t", content="b", embedding=unit_vector(0.8), chunk_index=1),
        ])

        assert len(ids) == 2
        assert ids[1] == "fixed"
        assert len(set(ids)) == 2
        assert len(memory_store) == 2

    @pytest.mark.asyncio
    async def test_threshold_above_best_match_returns_nothing(self, memory_store):
        """
        Best match has similarity 0.5, threshold 0.9.

        Expected: no chunks, total_results 0
        """
        await memory_store.store_documents([chunk_input("only", unit_vector(0.5))])

        result = await memory_store.search_similar(QUERY, SearchOptions(similarity_threshold=0.9))

        assert result.chunks == []
        assert result.metadata.total_results == 0

    @pytest.mark.asyncio
    async def test_results_sorted_with_stable_ties(self, memory_store):
        await memory_store.store_documents([
            chunk_input("low", unit_vector(0.6), 0),
            chunk_input("tie-first", unit_vector(0.8), 1),
            chunk_input("best", unit_vector(0.95), 2),
            chunk_input("tie-second", unit_vector(0.8), 3),
        ])

        result = await memory_store.search_similar(QUERY, SearchOptions(similarity_threshold=0.5, max_results=10))

        assert [s.chunk.content for s in result.chunks] == ["best", "tie-first", "tie-second", "low"]
        assert result.chunks[0].similarity == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_max_results_and_threshold(self, memory_store):
        await memory_store.store_documents(
            [chunk_input(f"c{i}", unit_vector(s), i) for i, s in enumerate([0.9, 0.8, 0.5, 0.2, 0.1])]
        )

        result = await memory_store.search_similar(QUERY, SearchOptions(max_results=2, similarity_threshold=0.3))

        assert [round(s.similarity, 2) for s in result.chunks] == [0.9, 0.8]

    @pytest.mark.asyncio
    async def test_parent_scope_and_filters(self, memory_store):
        await memory_store.store_documents([
            chunk_input("doc1", unit_vector(0.9), parent="doc-1", lang="en"),
            chunk_input("doc2", unit_vector(0.95), parent="doc-2", lang="en"),
            chunk_input("doc1-es", unit_vector(0.85), 1, parent="doc-1", lang="es"),
        ])

        scoped = await memory_store.search_similar(QUERY, SearchOptions(parent_document_id="doc-1", similarity_threshold=0))
        filtered = await memory_store.search_similar(
            QUERY, SearchOptions(parent_document_id="doc-1", filters={"lang": "es"}, similarity_threshold=0)
        )

        assert [s.chunk.content for s in scoped.chunks] == ["doc1", "doc1-es"]
        assert [s.chunk.content for s in filtered.chunks] == ["doc1-es"]

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, memory_store):
        await memory_store.store_documents([chunk_input("a", [1.0, 0.0])])

        with pytest.raises(DimensionMismatchError):
            await memory_store.search_similar([1.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatchError):
            await memory_store.store_documents([chunk_input("b", [1.0, 0.0, 0.0])])

    @pytest.mark.asyncio
    async def test_zero_vector_scores_zero(self, memory_store):
        await memory_store.store_documents([chunk_input("zero", [0.0, 0.0])])

        result = await memory_store.search_similar(QUERY, SearchOptions(similarity_threshold=0.0))

        assert result.chunks[0].similarity == 0.0

    @pytest.mark.asyncio
    async def test_get_and_delete_by_parent(self, memory_store):
        await memory_store.store_documents([
            chunk_input("second", unit_vector(0.5), 1),
            chunk_input("first", unit_vector(0.5), 0),
            chunk_input("other", unit_vector(0.5), 0, parent="doc-2"),
        ])

        chunks = await memory_store.get_by_parent_id("doc-1")
        deleted = await memory_store.delete_by_parent_id("doc-1")

        assert [c.content for c in chunks] == ["first", "second"]
        assert deleted == 2
        assert await memory_store.get_by_parent_id("doc-1") == []
        assert len(memory_store) == 1


# ═══════════════════════════════════════════════════════════════
# SUPABASE
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def mock_supabase():
    """Supabase client whose inserts echo back every row id."""
    client = Mock()

    def insert(rows):
        return Mock(execute=Mock(return_value=Mock(data=[{"id": r["id"]} for r in rows])))

    client.table.return_value.insert.side_effect = insert
    return client


@pytest.fixture
def no_read_retry_wait():
    with patch.object(SupabaseVectorStore._read_with_retry.retry, "wait", wait_none()):
        yield


def supabase_row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "title": "Doc - Part 1",
        "content": "content",
        "chunk_index": 0,
        "parent_document_id": "doc-1",
        "metadata": {"file_name": "a.pdf"},
        "created_at": "2026-01-28T00:00:00+00:00",
        "updated_at": "2026-01-28T00:00:00+00:00",
    }
    row.update(overrides)
    return row


class TestSupabaseVectorStore:

    @pytest.mark.asyncio
    async def test_store_inserts_rows_in_order(self, mock_supabase):
        store = SupabaseVectorStore(mock_supabase)
        chunks = [chunk_input(f"c{i}", [0.1, 0.2], i) for i in range(3)]

        ids = await store.store_documents(chunks)

        rows = mock_supabase.table.return_value.insert.call_args.args[0]
        assert [r["id"] for r in rows] == ids
        assert [r["chunk_index"] for r in rows] == [0, 1, 2]
        assert rows[0]["embedding"] == [0.1, 0.2]
        mock_supabase.table.assert_called_with("documents")

    @pytest.mark.asyncio
    async def test_short_insert_is_partial_write(self, mock_supabase):
        mock_supabase.table.return_value.insert.side_effect = lambda rows: Mock(
            execute=Mock(return_value=Mock(data=[{"id": rows[0]["id"]}]))
        )
        store = SupabaseVectorStore(mock_supabase)

        with pytest.raises(PartialWriteError) as exc_info:
            await store.store_documents([chunk_input("a", [0.1]), chunk_input("b", [0.2], 1)])

        assert len(exc_info.value.written_ids) == 1

    @pytest.mark.asyncio
    async def test_failure_after_first_batch_is_partial_write(self, mock_supabase):
        calls = {"n": 0}

        def insert(rows):
            calls["n"] += 1
            if calls["n"] == 2:
                return Mock(execute=Mock(side_effect=httpx.ConnectError("down")))
            return Mock(execute=Mock(return_value=Mock(data=[{"id": r["id"]} for r in rows])))

        mock_supabase.table.return_value.insert.side_effect = insert
        store = SupabaseVectorStore(mock_supabase)
        chunks = [chunk_input(f"c{i}", [0.1], i) for i in range(SupabaseVectorStore.INSERT_BATCH_SIZE + 5)]

        with pytest.raises(PartialWriteError) as exc_info:
            await store.store_documents(chunks)

        assert len(exc_info.value.written_ids) == SupabaseVectorStore.INSERT_BATCH_SIZE

    @pytest.mark.asyncio
    async def test_search_sends_threshold_and_scope_to_rpc(self, mock_supabase):
        mock_supabase.rpc.return_value.execute.return_value = Mock(
            data=[supabase_row(similarity=0.91), supabase_row(id="2", chunk_index=1, similarity=0.82)]
        )
        store = SupabaseVectorStore(mock_supabase)

        result = await store.search_similar(
            [0.1, 0.2],
            SearchOptions(max_results=3, similarity_threshold=0.8, parent_document_id="doc-1", filters={"lang": "en"}),
        )

        mock_supabase.rpc.assert_called_once_with(
            "match_documents",
            {
                "query_embedding": [0.1, 0.2],
                "match_threshold": 0.8,
                "match_count": 3,
                "filter_parent_id": "doc-1",
                "filter": {"lang": "en"},
            },
        )
        assert [s.similarity for s in result.chunks] == [0.91, 0.82]
        assert result.chunks[0].chunk.metadata == {"file_name": "a.pdf"}
        assert result.metadata.total_results == 2

    @pytest.mark.asyncio
    async def test_search_dimension_checked_locally(self, mock_supabase):
        store = SupabaseVectorStore(mock_supabase, dimensions=3)

        with pytest.raises(DimensionMismatchError):
            await store.search_similar([0.1, 0.2])
        mock_supabase.rpc.assert_not_called()

    @pytest.mark.asyncio
    async def test_postgres_dimension_error_mapped(self, mock_supabase):
        mock_supabase.rpc.return_value.execute.side_effect = PostgrestAPIError(
            {"message": "different vector dimensions 1536 and 2", "code": "22000", "hint": None, "details": None}
        )
        store = SupabaseVectorStore(mock_supabase)

        with pytest.raises(DimensionMismatchError):
            await store.search_similar([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_connection_error_is_store_unavailable(self, mock_supabase, no_read_retry_wait):
        mock_supabase.rpc.return_value.execute.side_effect = httpx.ConnectError("connection refused")
        store = SupabaseVectorStore(mock_supabase)

        with pytest.raises(StoreUnavailableError):
            await store.search_similar([0.1, 0.2])
        assert mock_supabase.rpc.return_value.execute.call_count == 3

    @pytest.mark.asyncio
    async def test_get_by_parent_parses_vector_strings(self, mock_supabase):
        query = mock_supabase.table.return_value.select.return_value.eq.return_value.order.return_value
        query.execute.return_value = Mock(data=[supabase_row(embedding="[0.5,0.25]")])
        store = SupabaseVectorStore(mock_supabase)

        chunks = await store.get_by_parent_id("doc-1")

        mock_supabase.table.return_value.select.return_value.eq.assert_called_with("parent_document_id", "doc-1")
        mock_supabase.table.return_value.select.return_value.eq.return_value.order.assert_called_with("chunk_index")
        assert chunks[0].embedding == [0.5, 0.25]

    @pytest.mark.asyncio
    async def test_delete_returns_count(self, mock_supabase):
        mock_supabase.table.return_value.delete.return_value.eq.return_value.execute.return_value = Mock(
            data=[{"id": "1"}, {"id": "2"}]
        )
        store = SupabaseVectorStore(mock_supabase)

        assert await store.delete_by_parent_id("doc-1") == 2


# ═══════════════════════════════════════════════════════════════
# PINECONE
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def mock_index():
    index = Mock()
    index.describe_index_stats.return_value = Mock(dimension=2)
    return index


def pinecone_match(vector_id, score, content, created_at="2026-01-28T00:00:00+00:00", chunk_index=0):
    return Mock(
        id=vector_id,
        score=score,
        metadata={
            "title": "Doc - Part 1",
            "content": content,
            "chunk_index": chunk_index,
            "parent_document_id": "doc-1",
            "metadata_json": '{"file_name": "a.pdf"}',
            "created_at": created_at,
        },
    )


class TestPineconeVectorStore:

    @pytest.mark.asyncio
    async def test_store_prefixes_ids_with_parent(self, mock_index):
        store = PineconeVectorStore(mock_index, namespace="tests")

        ids = await store.store_documents([chunk_input("a", [0.1, 0.2], lang="en", nested={"x": 1})])

        vectors = mock_index.upsert.call_args.kwargs["vectors"]
        assert ids[0].startswith("doc-1#")
        assert vectors[0]["id"] == ids[0]
        assert vectors[0]["metadata"]["lang"] == "en"
        assert "nested" not in vectors[0]["metadata"]
        assert mock_index.upsert.call_args.kwargs["namespace"] == "tests"

    @pytest.mark.asyncio
    async def test_search_applies_threshold_and_scope(self, mock_index):
        mock_index.query.return_value = Mock(matches=[
            pinecone_match("doc-1#a", 0.92, "best"),
            pinecone_match("doc-1#b", 0.40, "weak"),
        ])
        store = PineconeVectorStore(mock_index)

        result = await store.search_similar(
            [1.0, 0.0], SearchOptions(similarity_threshold=0.7, parent_document_id="doc-1")
        )

        assert mock_index.query.call_args.kwargs["filter"] == {"parent_document_id": {"$eq": "doc-1"}}
        assert [s.chunk.content for s in result.chunks] == ["best"]
        assert result.chunks[0].chunk.metadata == {"file_name": "a.pdf"}

    @pytest.mark.asyncio
    async def test_search_dimension_mismatch(self, mock_index):
        store = PineconeVectorStore(mock_index)

        with pytest.raises(DimensionMismatchError):
            await store.search_similar([1.0, 0.0, 0.0])
        mock_index.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_lists_by_prefix(self, mock_index):
        mock_index.list.return_value = iter([["doc-1#a", "doc-1#b"], ["doc-1#c"]])
        store = PineconeVectorStore(mock_index)

        deleted = await store.delete_by_parent_id("doc-1")

        mock_index.list.assert_called_once_with(prefix="doc-1#", namespace="")
        assert mock_index.delete.call_args.kwargs["ids"] == ["doc-1#a", "doc-1#b", "doc-1#c"]
        assert deleted == 3

    @pytest.mark.asyncio
    async def test_get_by_parent_sorted_by_chunk_index(self, mock_index):
        mock_index.list.return_value = iter([["doc-1#b", "doc-1#a"]])
        second = pinecone_match("doc-1#b", 0, "second", chunk_index=1)
        first = pinecone_match("doc-1#a", 0, "first", chunk_index=0)
        mock_index.fetch.return_value = Mock(vectors={
            "doc-1#b": Mock(values=[0.1, 0.2], metadata=second.metadata),
            "doc-1#a": Mock(values=[0.3, 0.4], metadata=first.metadata),
        })
        store = PineconeVectorStore(mock_index)

        chunks = await store.get_by_parent_id("doc-1")

        assert [c.content for c in chunks] == ["first", "second"]
        assert chunks[0].embedding == [0.3, 0.4]

    @pytest.mark.asyncio
    async def test_pinecone_error_is_store_unavailable(self, mock_index):
        mock_index.upsert.side_effect = PineconeException("service unavailable")
        store = PineconeVectorStore(mock_index)

        with pytest.raises(StoreUnavailableError):
            await store.store_documents([chunk_input("a", [0.1, 0.2])])
