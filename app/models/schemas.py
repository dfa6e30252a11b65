"""
Data models for the RAG pipeline.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, get_args
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


ChatRole = Literal["user", "assistant", "system"]

DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────
# Domain entities
# ─────────────────────────────────────────────────────────────

class DocumentChunk(BaseModel):
    """A bounded segment of a document, the unit of embedding and retrieval."""
    id: str = Field(default_factory=_new_id)
    title: str
    content: str
    embedding: Optional[List[float]] = None
    chunk_index: int = Field(ge=0)
    parent_document_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ScoredChunk(BaseModel):
    """A chunk paired with its cosine similarity to a query."""
    chunk: DocumentChunk
    similarity: float


class ContextDocument(BaseModel):
    """Compact citation of a chunk used to answer a question."""
    id: str
    title: str
    similarity: float


class ChatMessage(BaseModel):
    """One conversation log entry. Never mutated once created."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    role: ChatRole
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    context_documents: Optional[List[ContextDocument]] = None
    metadata: Optional[Dict[str, Any]] = None


class StoredDocument(BaseModel):
    """Aggregate metadata for an ingested source; id is the chunks' parent id."""
    id: str = Field(default_factory=_new_id)
    file_name: str
    file_size: int
    mime_type: str
    title: str
    full_text: str
    chunk_count: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ChatContextConfig(BaseModel):
    max_messages: int = 10
    max_chunks: int = 5
    min_similarity: float = 0.7


class ChatContext(BaseModel):
    """Per-request context window. Rebuilt on every chat turn, never persisted."""
    messages: List[ChatMessage] = Field(default_factory=list)
    relevant_chunks: List[ScoredChunk] = Field(default_factory=list)
    config: ChatContextConfig = Field(default_factory=ChatContextConfig)

    def with_message(self, message: ChatMessage) -> "ChatContext":
        """Return a copy with ``message`` appended, keeping the last max_messages."""
        messages = [*self.messages, message][-self.config.max_messages:]
        return self.model_copy(update={"messages": messages})


# ─────────────────────────────────────────────────────────────
# Chunker
# ─────────────────────────────────────────────────────────────

class ChunkOptions(BaseModel):
    chunk_size: int = 1000
    chunk_overlap: int = 200
    separators: List[str] = Field(default_factory=lambda: list(DEFAULT_SEPARATORS))


class ChunkingMetadata(BaseModel):
    total_chunks: int
    average_chunk_size: int
    original_length: int


class ChunkingResult(BaseModel):
    chunks: List[str]
    offsets: List[int]  # start of each chunk in the original text
    metadata: ChunkingMetadata


# ─────────────────────────────────────────────────────────────
# Embeddings
# ─────────────────────────────────────────────────────────────

class EmbeddingMetadata(BaseModel):
    model: str
    dimensions: int
    token_count: Optional[int] = None


class EmbeddingResult(BaseModel):
    embedding: List[float]
    metadata: EmbeddingMetadata


class BatchEmbeddingMetadata(BaseModel):
    model: str
    dimensions: int
    total_tokens: Optional[int] = None


class BatchEmbeddingResult(BaseModel):
    embeddings: List[List[float]]
    metadata: BatchEmbeddingMetadata


# ─────────────────────────────────────────────────────────────
# Vector store
# ─────────────────────────────────────────────────────────────

class ChunkInput(BaseModel):
    """A chunk ready to be written to the vector store."""
    id: Optional[str] = None
    title: str
    content: str
    embedding: List[float]
    chunk_index: int = Field(ge=0)
    parent_document_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchOptions(BaseModel):
    max_results: int = 5
    similarity_threshold: float = 0.7
    parent_document_id: Optional[str] = None
    filters: Optional[Dict[str, Any]] = None


class SearchMetadata(BaseModel):
    total_results: int
    time_taken: float  # milliseconds


class SearchResult(BaseModel):
    chunks: List[ScoredChunk]
    metadata: SearchMetadata


# ─────────────────────────────────────────────────────────────
# Chat port
# ─────────────────────────────────────────────────────────────

class ChatOptions(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ChatResponseMetadata(BaseModel):
    model: str
    total_tokens: Optional[int] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    finish_reason: Optional[str] = None


class ChatResponse(BaseModel):
    message: ChatMessage
    metadata: ChatResponseMetadata


@dataclass
class StreamChatResponse:
    """Live token stream from the chat provider. The consumer pulls."""
    stream: AsyncIterator[str]
    model: str


# ─────────────────────────────────────────────────────────────
# Text extraction
# ─────────────────────────────────────────────────────────────

class ExtractedText(BaseModel):
    full_text: str
    mime_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────
# Document ingestion
# ─────────────────────────────────────────────────────────────

class StoreDocumentRequest(BaseModel):
    file_name: str
    file_size: int
    mime_type: str
    full_text: str
    title: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    parent_document_id: Optional[str] = None


class IngestionStats(BaseModel):
    chunk_count: int
    average_chunk_size: int
    total_tokens: Optional[int] = None
    time_taken: float  # milliseconds


class StoreDocumentResult(BaseModel):
    document: StoredDocument
    chunk_ids: List[str]
    stats: IngestionStats


# ─────────────────────────────────────────────────────────────
# Chat with documents
# ─────────────────────────────────────────────────────────────

class ChatRequestConfig(BaseModel):
    max_chunks: Optional[int] = None
    min_similarity: Optional[float] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    deduplicate: bool = True
    stream: bool = False


class ChatWithDocsRequest(BaseModel):
    question: str
    conversation_history: List[ChatMessage] = Field(default_factory=list)
    parent_document_id: Optional[str] = None
    config: ChatRequestConfig = Field(default_factory=ChatRequestConfig)


class ChatStats(BaseModel):
    relevant_chunks_count: int
    average_similarity: float
    total_tokens: Optional[int] = None
    time_taken: float  # milliseconds


class ChatWithDocsResult(BaseModel):
    response: ChatMessage
    context_chunks: List[ContextDocument]
    stats: ChatStats


class StreamStats(BaseModel):
    relevant_chunks_count: int
    average_similarity: float
    preparation_time: float  # milliseconds, excludes streaming


@dataclass
class ChatWithDocsStreamResult:
    stream: AsyncIterator[str]
    context_chunks: List[ContextDocument]
    stats: StreamStats
    model: str


# ─────────────────────────────────────────────────────────────
# Keyword analysis
# ─────────────────────────────────────────────────────────────

AnalysisMode = Literal["generic", "legal", "academic", "finance"]

ANALYSIS_MODES = get_args(AnalysisMode)

KEYWORD_KINDS = ["person", "organization", "date", "amount", "location", "topic", "other"]


class Keyword(BaseModel):
    phrase: str
    kind: str = "other"


class KeywordOptions(BaseModel):
    mode: AnalysisMode = "generic"
    locale: Literal["en", "es"] = "en"
    min_items: int = 8
    max_items: int = 20
    categories: List[str] = Field(default_factory=lambda: list(KEYWORD_KINDS))
    extra_guidance: str = ""


class AnalyzeDocumentResult(BaseModel):
    keywords: List[Keyword]
    full_text: str
    mime_type: str
