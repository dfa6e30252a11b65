"""
FastAPI Application
Document ingestion, keyword analysis and chat-with-documents (RAG) APIs.
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.config import Settings, get_settings
from app.container import RAGContainer, build_container
from app.exceptions import (
    ChatProviderError,
    DimensionMismatchError,
    EmbeddingProviderError,
    ExtractionFailedError,
    InvalidInputError,
    PipelineError,
    StoreUnavailableError,
    UnsupportedFormatError,
)
from app.models.schemas import (
    AnalyzeDocumentResult,
    ChatMessage,
    ChatRequestConfig,
    ChatRole,
    ChatWithDocsRequest,
    ChatWithDocsResult,
    IngestionStats,
    SearchOptions,
    StoreDocumentRequest,
)

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    """Console output in development, JSON lines everywhere else."""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment == "development"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


# ─────────────────────────────────────────────────────────────
# Request/Response Models
# ─────────────────────────────────────────────────────────────

class DocumentResponse(BaseModel):
    id: str              # Parent document id shared by all chunks
    title: str
    file_name: str
    file_size: int
    mime_type: str
    chunk_count: int
    created_at: datetime
    chunk_ids: List[str]
    stats: IngestionStats


class ChunkView(BaseModel):
    id: str
    title: str
    chunk_index: int
    content: str
    metadata: Dict[str, Any]


class DocumentChunksResponse(BaseModel):
    document_id: str
    chunks: List[ChunkView]


class DeleteResponse(BaseModel):
    document_id: str
    deleted: int


class HistoryMessage(BaseModel):
    role: ChatRole
    content: str


class ChatRequest(BaseModel):
    question: str
    history: List[HistoryMessage] = Field(default_factory=list)
    parent_document_id: Optional[str] = None
    config: ChatRequestConfig = Field(default_factory=ChatRequestConfig)


class DebugSearchRequest(BaseModel):
    query: str = "test"
    parent_document_id: Optional[str] = None
    max_results: int = Field(default=10, gt=0, le=50)


class DebugSearchHit(BaseModel):
    id: str
    title: str
    parent_document_id: Optional[str]
    similarity: float
    content_preview: str


class DebugSearchResponse(BaseModel):
    query: str
    embedding_dimensions: int
    total_results: int
    time_taken: float
    results: List[DebugSearchHit]


# ─────────────────────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────────────────────

def status_code_for(error: Exception) -> int:
    """HTTP status for a pipeline error. Pipeline errors map by their cause."""
    if isinstance(error, PipelineError):
        error = error.cause

    if isinstance(error, InvalidInputError):
        return 400
    if isinstance(error, UnsupportedFormatError):
        return 415
    if isinstance(error, ExtractionFailedError):
        return 422
    if isinstance(error, DimensionMismatchError):
        return 500
    if isinstance(error, StoreUnavailableError):
        return 503
    if isinstance(error, (EmbeddingProviderError, ChatProviderError)):
        return 502
    return 500


def http_error(action: str, error: Exception) -> HTTPException:
    code = status_code_for(error)
    if code >= 500:
        logger.error(f"{action} failed", error=str(error), status_code=code)
    else:
        logger.warning(f"{action} rejected", error=str(error), status_code=code)
    return HTTPException(status_code=code, detail=f"{action} failed: {error}")


def get_container(request: Request) -> RAGContainer:
    return request.app.state.container


# ─────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────

def create_app(container: Optional[RAGContainer] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        container: Prebuilt object graph (tests); built from settings at startup when omitted
        settings: Settings to use when no container is given
    """
    settings = container.settings if container else (settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container(settings)
        yield

    app = FastAPI(
        title="Document Chat (RAG) API",
        description="Document ingestion + retrieval-augmented chat",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Context-Chunks", "X-Relevant-Chunks-Count", "X-Preparation-Time"],
    )

    # ─────────────────────────────────────────────────────────
    # Documents
    # ─────────────────────────────────────────────────────────

    @app.post("/documents", response_model=DocumentResponse)
    async def store_document(
        request: Request,
        file: UploadFile = File(...),
        title: Optional[str] = Form(None),
        parent_document_id: Optional[str] = Form(None),
    ):
        """Extract text from an uploaded document, chunk, embed and store it."""
        rag = get_container(request)
        content = await file.read()

        if len(content) > settings.max_upload_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File size exceeds {settings.max_upload_mb}MB limit",
            )

        logger.info("Stage: Processing upload", file_name=file.filename, size_bytes=len(content))

        try:
            extracted = await rag.text_extractor.extract_text(content, file.content_type)
            result = await rag.ingestion.execute(
                StoreDocumentRequest(
                    file_name=file.filename or "document",
                    file_size=len(content),
                    mime_type=extracted.mime_type,
                    full_text=extracted.full_text,
                    title=title or None,
                    parent_document_id=parent_document_id or None,
                    metadata={"uploaded_at": datetime.now(timezone.utc).isoformat()},
                )
            )
        except Exception as e:
            raise http_error("Document ingestion", e)

        document = result.document
        return DocumentResponse(
            id=document.id,
            title=document.title,
            file_name=document.file_name,
            file_size=document.file_size,
            mime_type=document.mime_type,
            chunk_count=document.chunk_count,
            created_at=document.created_at,
            chunk_ids=result.chunk_ids,
            stats=result.stats,
        )

    @app.get("/documents/{document_id}/chunks", response_model=DocumentChunksResponse)
    async def list_document_chunks(document_id: str, request: Request):
        """List a document's chunks in order."""
        try:
            chunks = await get_container(request).vector_store.get_by_parent_id(document_id)
        except Exception as e:
            raise http_error("Listing chunks", e)

        if not chunks:
            raise HTTPException(status_code=404, detail="Document not found")

        return DocumentChunksResponse(
            document_id=document_id,
            chunks=[
                ChunkView(
                    id=c.id,
                    title=c.title,
                    chunk_index=c.chunk_index,
                    content=c.content,
                    metadata=c.metadata,
                )
                for c in chunks
            ],
        )

    @app.delete("/documents/{document_id}", response_model=DeleteResponse)
    async def delete_document(document_id: str, request: Request):
        """Delete a document and all of its chunks."""
        try:
            deleted = await get_container(request).vector_store.delete_by_parent_id(document_id)
        except Exception as e:
            raise http_error("Document deletion", e)

        if deleted == 0:
            raise HTTPException(status_code=404, detail="Document not found")

        logger.info("Document deleted", document_id=document_id, chunks=deleted)
        return DeleteResponse(document_id=document_id, deleted=deleted)

    @app.post("/analyze", response_model=AnalyzeDocumentResult)
    async def analyze_document(
        request: Request,
        file: UploadFile = File(...),
        mode: str = Form("generic"),
    ):
        """Extract text and categorized keywords from a document without storing it."""
        content = await file.read()

        if len(content) > settings.max_upload_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File size exceeds {settings.max_upload_mb}MB limit",
            )

        logger.info("Stage: Analyzing upload", file_name=file.filename, mode=mode, size_bytes=len(content))

        try:
            return await get_container(request).analysis.execute(content, file.content_type, mode)
        except Exception as e:
            raise http_error("Document analysis", e)

    # ─────────────────────────────────────────────────────────
    # Chat
    # ─────────────────────────────────────────────────────────

    @app.post("/chat", response_model=ChatWithDocsResult)
    async def chat(body: ChatRequest, request: Request):
        """
        Answer a question from the stored documents.

        With ``config.stream`` the answer is streamed as plain text and the
        citations travel in the X-Context-Chunks header.
        """
        rag = get_container(request)
        chat_request = ChatWithDocsRequest(
            question=body.question,
            conversation_history=[ChatMessage(role=m.role, content=m.content) for m in body.history],
            parent_document_id=body.parent_document_id,
            config=body.config,
        )

        try:
            if not body.config.stream:
                return await rag.chat.execute(chat_request)
            result = await rag.chat.execute_stream(chat_request)
        except Exception as e:
            raise http_error("Chat", e)

        headers = {
            "X-Context-Chunks": json.dumps([c.model_dump() for c in result.context_chunks]),
            "X-Relevant-Chunks-Count": str(result.stats.relevant_chunks_count),
            "X-Preparation-Time": str(result.stats.preparation_time),
        }
        return StreamingResponse(result.stream, media_type="text/plain; charset=utf-8", headers=headers)

    # ─────────────────────────────────────────────────────────
    # Helper Endpoints
    # ─────────────────────────────────────────────────────────

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "vector_store": settings.vector_store_provider}

    if settings.enable_debug_routes:

        @app.post("/debug/search", response_model=DebugSearchResponse)
        async def debug_search(body: DebugSearchRequest, request: Request):
            """Search with threshold 0.0 to inspect raw similarity scores."""
            rag = get_container(request)
            try:
                embedding = await rag.embedding_generator.generate_embedding(body.query)
                result = await rag.vector_store.search_similar(
                    embedding.embedding,
                    SearchOptions(
                        max_results=body.max_results,
                        similarity_threshold=0.0,
                        parent_document_id=body.parent_document_id,
                    ),
                )
            except Exception as e:
                raise http_error("Debug search", e)

            return DebugSearchResponse(
                query=body.query,
                embedding_dimensions=len(embedding.embedding),
                total_results=result.metadata.total_results,
                time_taken=result.metadata.time_taken,
                results=[
                    DebugSearchHit(
                        id=item.chunk.id,
                        title=item.chunk.title,
                        parent_document_id=item.chunk.parent_document_id,
                        similarity=item.similarity,
                        content_preview=item.chunk.content[:200],
                    )
                    for item in result.chunks
                ],
            )

    return app


def _create_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)
    return create_app(settings=settings)


app = _create_default_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
