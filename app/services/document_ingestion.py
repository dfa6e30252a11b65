"""
Document Ingestion Service
Chunks a document, embeds every chunk in one batch and stores them.

Stages: received -> chunked -> embedded -> stored -> done (failed from any step)
"""
import time
from enum import Enum
from typing import Optional
from uuid import uuid4
import structlog

from app.exceptions import EmptyDocumentError, IngestionError, InvalidInputError, PartialWriteError
from app.models.schemas import (
    ChunkInput,
    ChunkOptions,
    IngestionStats,
    StoreDocumentRequest,
    StoreDocumentResult,
    StoredDocument,
)
from app.services.ports import DocumentChunker, EmbeddingGenerator, VectorStore

logger = structlog.get_logger()


class IngestionStage(str, Enum):
    RECEIVED = "received"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    STORED = "stored"
    DONE = "done"
    FAILED = "failed"


class DocumentIngestionService:
    """Composes chunker, embedding generator and vector store to persist a document."""

    def __init__(
        self,
        chunker: DocumentChunker,
        embedding_generator: EmbeddingGenerator,
        vector_store: VectorStore,
        chunk_options: Optional[ChunkOptions] = None,
    ):
        self.chunker = chunker
        self.embedding_generator = embedding_generator
        self.vector_store = vector_store
        self.chunk_options = chunk_options

    async def execute(self, request: StoreDocumentRequest) -> StoreDocumentResult:
        """
        Ingest one document.

        Args:
            request: Extracted text plus file metadata

        Returns:
            StoreDocumentResult with the StoredDocument record, chunk ids and stats

        Raises:
            EmptyDocumentError: if the text is blank or yields no chunks
            InvalidInputError: if the chunk options are invalid
            IngestionError: if any later step fails; ``stage`` names the step
        """
        start = time.perf_counter()
        generated_parent_id = request.parent_document_id is None
        parent_document_id = request.parent_document_id or str(uuid4())
        title = request.title or request.file_name
        log = logger.bind(file_name=request.file_name, parent_document_id=parent_document_id)

        stage = IngestionStage.RECEIVED
        log.info(f"Stage: {stage.value}", text_length=len(request.full_text))

        if not request.full_text.strip():
            log.warning("Document has no text to ingest")
            raise EmptyDocumentError("Document chunking produced no chunks")

        try:
            chunk_result = await self.chunker.chunk(request.full_text, self.chunk_options)
            if not chunk_result.chunks:
                raise EmptyDocumentError("Document chunking produced no chunks")
            stage = IngestionStage.CHUNKED
            log.info(f"Stage: {stage.value}", chunk_count=len(chunk_result.chunks))

            embedding_result = await self.embedding_generator.generate_embeddings(chunk_result.chunks)
            if len(embedding_result.embeddings) != len(chunk_result.chunks):
                raise IngestionError(
                    IngestionStage.EMBEDDED.value,
                    ValueError(
                        f"Got {len(embedding_result.embeddings)} embeddings "
                        f"for {len(chunk_result.chunks)} chunks"
                    ),
                )
            stage = IngestionStage.EMBEDDED
            log.info(
                f"Stage: {stage.value}",
                dimensions=embedding_result.metadata.dimensions,
                total_tokens=embedding_result.metadata.total_tokens,
            )

            chunks = [
                ChunkInput(
                    title=f"{title} - Part {index + 1}",
                    content=text,
                    embedding=embedding,
                    chunk_index=index,
                    parent_document_id=parent_document_id,
                    metadata={
                        **request.metadata,
                        "file_name": request.file_name,
                        "file_size": request.file_size,
                        "mime_type": request.mime_type,
                        "char_offset": offset,
                    },
                )
                for index, (text, embedding, offset) in enumerate(
                    zip(chunk_result.chunks, embedding_result.embeddings, chunk_result.offsets)
                )
            ]

            chunk_ids = await self._store(chunks, parent_document_id, generated_parent_id)
            stage = IngestionStage.STORED
            log.info(f"Stage: {stage.value}", stored=len(chunk_ids))

        except InvalidInputError:
            log.info(f"Stage: {IngestionStage.FAILED.value}", failed_after=stage.value)
            raise
        except IngestionError:
            log.error(f"Stage: {IngestionStage.FAILED.value}", failed_after=stage.value)
            raise
        except Exception as e:
            failed_step = self._next_stage(stage)
            log.error(f"Stage: {IngestionStage.FAILED.value}", failed_step=failed_step.value, error=str(e))
            raise IngestionError(failed_step.value, e) from e

        document = StoredDocument(
            id=parent_document_id,
            file_name=request.file_name,
            file_size=request.file_size,
            mime_type=request.mime_type,
            title=title,
            full_text=request.full_text,
            chunk_count=chunk_result.metadata.total_chunks,
            metadata={
                **request.metadata,
                "embedding_model": embedding_result.metadata.model,
                "embedding_dimensions": embedding_result.metadata.dimensions,
            },
        )
        time_taken = round((time.perf_counter() - start) * 1000, 2)

        stage = IngestionStage.DONE
        log.info(f"Stage: {stage.value}", chunk_count=len(chunk_ids), time_taken_ms=time_taken)

        return StoreDocumentResult(
            document=document,
            chunk_ids=chunk_ids,
            stats=IngestionStats(
                chunk_count=chunk_result.metadata.total_chunks,
                average_chunk_size=chunk_result.metadata.average_chunk_size,
                total_tokens=embedding_result.metadata.total_tokens,
                time_taken=time_taken,
            ),
        )

    async def _store(self, chunks, parent_document_id: str, generated_parent_id: bool):
        try:
            return await self.vector_store.store_documents(chunks)
        except PartialWriteError as e:
            # Only a parent id minted by this run is safe to roll back
            if generated_parent_id:
                await self._rollback(parent_document_id, len(e.written_ids))
            raise

    async def _rollback(self, parent_document_id: str, written: int) -> None:
        try:
            deleted = await self.vector_store.delete_by_parent_id(parent_document_id)
            logger.warning("Partial write rolled back", parent_document_id=parent_document_id, deleted=deleted)
        except Exception as e:
            logger.error(
                "Partial write rollback failed",
                parent_document_id=parent_document_id,
                written=written,
                error=str(e),
            )

    @staticmethod
    def _next_stage(stage: IngestionStage) -> IngestionStage:
        order = [
            IngestionStage.RECEIVED,
            IngestionStage.CHUNKED,
            IngestionStage.EMBEDDED,
            IngestionStage.STORED,
            IngestionStage.DONE,
        ]
        return order[order.index(stage) + 1]
