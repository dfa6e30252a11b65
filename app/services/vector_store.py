"""
Vector Store Service
Stores document chunks with their embeddings and runs cosine similarity search.

Three backends share the ``VectorStore`` port:
- SupabaseVectorStore: pgvector table, search through the ``match_documents`` RPC
- PineconeVectorStore: cosine index, chunks listed by id prefix
- InMemoryVectorStore: numpy, for local runs and tests
"""
import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import httpx
import numpy as np
import structlog
from pinecone.exceptions import PineconeException
from postgrest.exceptions import APIError as PostgrestAPIError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.exceptions import DimensionMismatchError, PartialWriteError, StoreUnavailableError
from app.models.schemas import (
    ChunkInput,
    DocumentChunk,
    ScoredChunk,
    SearchMetadata,
    SearchOptions,
    SearchResult,
)
from app.services.ports import VectorStore

logger = structlog.get_logger()


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _new_chunk_id(chunk: ChunkInput) -> str:
    return chunk.id or str(uuid4())


# ─────────────────────────────────────────────────────────────
# Supabase (pgvector)
# ─────────────────────────────────────────────────────────────

class SupabaseVectorStore(VectorStore):
    """
    Chunks live in one pgvector table. Similarity search runs in Postgres
    through an RPC function that applies the threshold, the parent scope and
    the metadata filter before ranking (see sql/match_documents.sql).
    """

    # Rows per insert request
    INSERT_BATCH_SIZE = 100

    def __init__(
        self,
        client,
        table: str = "documents",
        match_function: str = "match_documents",
        dimensions: Optional[int] = None,
    ):
        self.client = client
        self.table = table
        self.match_function = match_function
        self.dimensions = dimensions

        logger.info("Vector store initialized", provider="supabase", table=table)

    async def store_documents(self, chunks: List[ChunkInput]) -> List[str]:
        if not chunks:
            return []

        rows = [
            {
                "id": _new_chunk_id(chunk),
                "title": chunk.title,
                "content": chunk.content,
                "embedding": chunk.embedding,
                "chunk_index": chunk.chunk_index,
                "parent_document_id": chunk.parent_document_id,
                "metadata": chunk.metadata,
            }
            for chunk in chunks
        ]

        logger.info("Storing chunks", table=self.table, count=len(rows))

        written: List[str] = []
        for i in range(0, len(rows), self.INSERT_BATCH_SIZE):
            batch = rows[i:i + self.INSERT_BATCH_SIZE]
            try:
                response = await self._execute(self.client.table(self.table).insert(batch).execute)
            except StoreUnavailableError as e:
                if written:
                    raise PartialWriteError(
                        f"Stored {len(written)} of {len(rows)} chunks before failing: {e}",
                        written_ids=written,
                    ) from e
                raise

            inserted = [row["id"] for row in (response.data or [])]
            written.extend(inserted)
            if len(inserted) != len(batch):
                raise PartialWriteError(
                    f"Store accepted {len(written)} of {len(rows)} chunks",
                    written_ids=written,
                )

            logger.info("Batch stored", batch_num=i // self.INSERT_BATCH_SIZE + 1, count=len(batch))

        logger.info("Chunks stored successfully", total=len(written))
        # Ids come back in the order they were generated, not the order PostgREST returned them
        return [row["id"] for row in rows]

    async def search_similar(
        self,
        query_embedding: List[float],
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        opts = options or SearchOptions()
        if self.dimensions is not None and len(query_embedding) != self.dimensions:
            raise DimensionMismatchError(self.dimensions, len(query_embedding))

        start = time.perf_counter()
        params = {
            "query_embedding": query_embedding,
            "match_threshold": opts.similarity_threshold,
            "match_count": opts.max_results,
            "filter_parent_id": opts.parent_document_id,
            "filter": opts.filters or {},
        }

        try:
            response = await self._read(self.client.rpc(self.match_function, params).execute)
        except StoreUnavailableError as e:
            if "dimension" in str(e).lower():
                raise DimensionMismatchError(self.dimensions, len(query_embedding)) from e
            raise

        scored = [
            ScoredChunk(chunk=self._row_to_chunk(row), similarity=float(row["similarity"]))
            for row in (response.data or [])
        ]

        logger.info("Search complete", results=len(scored), threshold=opts.similarity_threshold)
        return SearchResult(
            chunks=scored,
            metadata=SearchMetadata(total_results=len(scored), time_taken=_elapsed_ms(start)),
        )

    async def delete_by_parent_id(self, parent_document_id: str) -> int:
        logger.info("Deleting document chunks", parent_document_id=parent_document_id)

        response = await self._execute(
            self.client.table(self.table)
            .delete()
            .eq("parent_document_id", parent_document_id)
            .execute
        )
        deleted = len(response.data or [])

        logger.info("Document chunks deleted", count=deleted)
        return deleted

    async def get_by_parent_id(self, parent_document_id: str) -> List[DocumentChunk]:
        response = await self._read(
            self.client.table(self.table)
            .select("*")
            .eq("parent_document_id", parent_document_id)
            .order("chunk_index")
            .execute
        )
        return [self._row_to_chunk(row) for row in (response.data or [])]

    async def _execute(self, call: Callable):
        try:
            return await asyncio.to_thread(call)
        except PostgrestAPIError as e:
            logger.error("Supabase request failed", error=e.message, code=e.code)
            raise StoreUnavailableError(f"Supabase request failed: {e.message}") from e
        except httpx.HTTPError as e:
            logger.error("Supabase unreachable", error=str(e))
            raise StoreUnavailableError(f"Supabase unreachable: {e}") from e

    @retry(
        retry=retry_if_exception_type(StoreUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _read_with_retry(self, call: Callable):
        try:
            return await asyncio.to_thread(call)
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"Supabase unreachable: {e}") from e

    async def _read(self, call: Callable):
        """Idempotent reads retry on transport errors; API errors fail immediately."""
        try:
            return await self._read_with_retry(call)
        except PostgrestAPIError as e:
            logger.error("Supabase request failed", error=e.message, code=e.code)
            raise StoreUnavailableError(f"Supabase request failed: {e.message}") from e
        except httpx.HTTPError as e:
            logger.error("Supabase unreachable", error=str(e))
            raise StoreUnavailableError(f"Supabase unreachable: {e}") from e

    @staticmethod
    def _row_to_chunk(row: Dict[str, Any]) -> DocumentChunk:
        embedding = row.get("embedding")
        # pgvector columns come back from PostgREST as "[0.1,0.2,...]"
        if isinstance(embedding, str):
            embedding = json.loads(embedding)

        data = {
            "id": str(row["id"]),
            "title": row.get("title") or "",
            "content": row.get("content") or "",
            "embedding": embedding,
            "chunk_index": row.get("chunk_index") or 0,
            "parent_document_id": row.get("parent_document_id"),
            "metadata": row.get("metadata") or {},
        }
        for field in ("created_at", "updated_at"):
            if row.get(field):
                data[field] = row[field]
        return DocumentChunk(**data)


# ─────────────────────────────────────────────────────────────
# Pinecone
# ─────────────────────────────────────────────────────────────

class PineconeVectorStore(VectorStore):
    """
    Chunks are vectors in a cosine Pinecone index. Vector ids are prefixed
    with the parent document id (``<parent>#<chunk>``) so a document's
    chunks can be listed and deleted by prefix.

    Pinecone has no server-side score threshold, so the threshold is applied
    to the ``max_results`` nearest matches it returns.
    """

    UPSERT_BATCH_SIZE = 100
    DELETE_BATCH_SIZE = 1000
    FETCH_BATCH_SIZE = 100
    # Keys managed by the store; caller metadata cannot overwrite them
    RESERVED_KEYS = {"title", "content", "chunk_index", "parent_document_id", "metadata_json", "created_at"}

    def __init__(self, index, namespace: str = "", dimensions: Optional[int] = None):
        self.index = index
        self.namespace = namespace
        self.dimensions = dimensions

        logger.info("Vector store initialized", provider="pinecone", namespace=namespace or "default")

    async def store_documents(self, chunks: List[ChunkInput]) -> List[str]:
        if not chunks:
            return []

        created_at = datetime.now(timezone.utc).isoformat()
        vectors = []
        for chunk in chunks:
            if self.dimensions is not None and len(chunk.embedding) != self.dimensions:
                raise DimensionMismatchError(self.dimensions, len(chunk.embedding))
            vectors.append({
                "id": self._vector_id(chunk),
                "values": chunk.embedding,
                "metadata": self._to_metadata(chunk, created_at),
            })

        logger.info("Upserting vectors", namespace=self.namespace or "default", count=len(vectors))

        written: List[str] = []
        for i in range(0, len(vectors), self.UPSERT_BATCH_SIZE):
            batch = vectors[i:i + self.UPSERT_BATCH_SIZE]
            try:
                await self._call(self.index.upsert, vectors=batch, namespace=self.namespace)
            except StoreUnavailableError as e:
                if written:
                    raise PartialWriteError(
                        f"Upserted {len(written)} of {len(vectors)} vectors before failing: {e}",
                        written_ids=written,
                    ) from e
                raise
            written.extend(v["id"] for v in batch)

            logger.info("Batch upserted", batch_num=i // self.UPSERT_BATCH_SIZE + 1, count=len(batch))

        logger.info("Vectors upserted successfully", total=len(written))
        return written

    async def search_similar(
        self,
        query_embedding: List[float],
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        opts = options or SearchOptions()
        await self._check_dimension(len(query_embedding))

        start = time.perf_counter()
        query_filter: Dict[str, Any] = {
            key: {"$eq": value} for key, value in (opts.filters or {}).items()
        }
        if opts.parent_document_id:
            query_filter["parent_document_id"] = {"$eq": opts.parent_document_id}

        results = await self._call(
            self.index.query,
            namespace=self.namespace,
            vector=query_embedding,
            filter=query_filter or None,
            top_k=opts.max_results,
            include_metadata=True,
        )

        matches = [m for m in results.matches if m.score >= opts.similarity_threshold]
        scored = [
            ScoredChunk(chunk=self._to_chunk(m.id, m.metadata or {}), similarity=float(m.score))
            for m in matches
        ]
        # Equal scores fall back to insertion order
        scored.sort(key=lambda s: (-s.similarity, s.chunk.created_at, s.chunk.chunk_index))

        logger.info("Query complete", results=len(scored))
        return SearchResult(
            chunks=scored,
            metadata=SearchMetadata(total_results=len(scored), time_taken=_elapsed_ms(start)),
        )

    async def delete_by_parent_id(self, parent_document_id: str) -> int:
        logger.info("Deleting document vectors", parent_document_id=parent_document_id)

        ids = await self._list_ids(parent_document_id)
        for i in range(0, len(ids), self.DELETE_BATCH_SIZE):
            await self._call(
                self.index.delete,
                ids=ids[i:i + self.DELETE_BATCH_SIZE],
                namespace=self.namespace,
            )

        logger.info("Document vectors deleted", count=len(ids))
        return len(ids)

    async def get_by_parent_id(self, parent_document_id: str) -> List[DocumentChunk]:
        ids = await self._list_ids(parent_document_id)

        chunks: List[DocumentChunk] = []
        for i in range(0, len(ids), self.FETCH_BATCH_SIZE):
            response = await self._call(
                self.index.fetch,
                ids=ids[i:i + self.FETCH_BATCH_SIZE],
                namespace=self.namespace,
            )
            for vector_id, vector in response.vectors.items():
                chunk = self._to_chunk(vector_id, vector.metadata or {})
                chunk.embedding = list(vector.values) if vector.values else None
                chunks.append(chunk)

        chunks.sort(key=lambda c: c.chunk_index)
        return chunks

    async def _list_ids(self, parent_document_id: str) -> List[str]:
        def collect() -> List[str]:
            ids: List[str] = []
            for page in self.index.list(prefix=f"{parent_document_id}#", namespace=self.namespace):
                ids.extend(page)
            return ids

        return await self._call(collect)

    async def _check_dimension(self, actual: int) -> None:
        if self.dimensions is None:
            stats = await self._call(self.index.describe_index_stats)
            self.dimensions = stats.dimension
        if actual != self.dimensions:
            raise DimensionMismatchError(self.dimensions, actual)

    async def _call(self, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except PineconeException as e:
            logger.error("Pinecone request failed", error=str(e))
            raise StoreUnavailableError(f"Pinecone request failed: {e}") from e

    @staticmethod
    def _vector_id(chunk: ChunkInput) -> str:
        chunk_id = _new_chunk_id(chunk)
        if chunk.parent_document_id and not chunk_id.startswith(f"{chunk.parent_document_id}#"):
            return f"{chunk.parent_document_id}#{chunk_id}"
        return chunk_id

    def _to_metadata(self, chunk: ChunkInput, created_at: str) -> Dict[str, Any]:
        # Pinecone metadata is flat; scalar caller fields are copied so they can be filtered on
        metadata: Dict[str, Any] = {
            key: value
            for key, value in chunk.metadata.items()
            if key not in self.RESERVED_KEYS and isinstance(value, (str, int, float, bool))
        }
        metadata.update({
            "title": chunk.title,
            "content": chunk.content,
            "chunk_index": chunk.chunk_index,
            "metadata_json": json.dumps(chunk.metadata, default=str),
            "created_at": created_at,
        })
        if chunk.parent_document_id:
            metadata["parent_document_id"] = chunk.parent_document_id
        return metadata

    @staticmethod
    def _to_chunk(vector_id: str, metadata: Dict[str, Any]) -> DocumentChunk:
        data = {
            "id": vector_id,
            "title": metadata.get("title", ""),
            "content": metadata.get("content", ""),
            "chunk_index": int(metadata.get("chunk_index", 0)),
            "parent_document_id": metadata.get("parent_document_id"),
            "metadata": json.loads(metadata.get("metadata_json") or "{}"),
        }
        if metadata.get("created_at"):
            data["created_at"] = metadata["created_at"]
            data["updated_at"] = metadata["created_at"]
        return DocumentChunk(**data)


# ─────────────────────────────────────────────────────────────
# In-memory (numpy)
# ─────────────────────────────────────────────────────────────

class InMemoryVectorStore(VectorStore):
    """Process-local store with exact cosine search. Not shared across workers."""

    def __init__(self, dimensions: Optional[int] = None):
        self.dimensions = dimensions
        self._chunks: List[DocumentChunk] = []

        logger.info("Vector store initialized", provider="memory")

    def __len__(self) -> int:
        return len(self._chunks)

    async def store_documents(self, chunks: List[ChunkInput]) -> List[str]:
        for chunk in chunks:
            self._check_dimension(len(chunk.embedding))

        ids = []
        for chunk in chunks:
            stored = DocumentChunk(
                id=_new_chunk_id(chunk),
                title=chunk.title,
                content=chunk.content,
                embedding=list(chunk.embedding),
                chunk_index=chunk.chunk_index,
                parent_document_id=chunk.parent_document_id,
                metadata=dict(chunk.metadata),
            )
            self._chunks.append(stored)
            ids.append(stored.id)

        logger.info("Chunks stored", count=len(ids), total=len(self._chunks))
        return ids

    async def search_similar(
        self,
        query_embedding: List[float],
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        opts = options or SearchOptions()
        start = time.perf_counter()

        if self._chunks:
            self._check_dimension(len(query_embedding))
        elif self.dimensions is not None and len(query_embedding) != self.dimensions:
            raise DimensionMismatchError(self.dimensions, len(query_embedding))

        candidates = [c for c in self._chunks if self._matches(c, opts)]
        scored: List[ScoredChunk] = []
        if candidates:
            matrix = np.array([c.embedding for c in candidates], dtype=float)
            query = np.array(query_embedding, dtype=float)
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
            with np.errstate(divide="ignore", invalid="ignore"):
                similarities = np.where(norms > 0, matrix @ query / norms, 0.0)

            # Stable sort keeps insertion order among equal scores
            for i in np.argsort(-similarities, kind="stable"):
                similarity = float(similarities[i])
                if similarity < opts.similarity_threshold:
                    break
                scored.append(ScoredChunk(chunk=candidates[i], similarity=similarity))
                if len(scored) >= opts.max_results:
                    break

        return SearchResult(
            chunks=scored,
            metadata=SearchMetadata(total_results=len(scored), time_taken=_elapsed_ms(start)),
        )

    async def delete_by_parent_id(self, parent_document_id: str) -> int:
        before = len(self._chunks)
        self._chunks = [c for c in self._chunks if c.parent_document_id != parent_document_id]
        deleted = before - len(self._chunks)

        logger.info("Document chunks deleted", parent_document_id=parent_document_id, count=deleted)
        return deleted

    async def get_by_parent_id(self, parent_document_id: str) -> List[DocumentChunk]:
        chunks = [c for c in self._chunks if c.parent_document_id == parent_document_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    def _check_dimension(self, actual: int) -> None:
        if self.dimensions is None:
            self.dimensions = actual
        elif actual != self.dimensions:
            raise DimensionMismatchError(self.dimensions, actual)

    @staticmethod
    def _matches(chunk: DocumentChunk, opts: SearchOptions) -> bool:
        if opts.parent_document_id and chunk.parent_document_id != opts.parent_document_id:
            return False
        for key, value in (opts.filters or {}).items():
            if chunk.metadata.get(key) != value:
                return False
        return True
