"""
Service Ports
Capabilities the orchestrators depend on. Providers are added as new
implementations and selected once, at composition time.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from app.models.schemas import (
    BatchEmbeddingResult,
    ChatMessage,
    ChatOptions,
    ChatResponse,
    ChunkInput,
    ChunkOptions,
    ChunkingResult,
    DocumentChunk,
    EmbeddingResult,
    ExtractedText,
    Keyword,
    KeywordOptions,
    SearchOptions,
    SearchResult,
    StreamChatResponse,
)


class DocumentChunker(ABC):
    """Splits raw document text into overlapping segments."""

    @abstractmethod
    async def chunk(self, text: str, options: Optional[ChunkOptions] = None) -> ChunkingResult:
        pass


class EmbeddingGenerator(ABC):
    """Maps text to fixed-length vectors."""

    @abstractmethod
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        pass

    @abstractmethod
    async def generate_embeddings(self, texts: List[str]) -> BatchEmbeddingResult:
        """Embed a batch. Output order always matches input order."""
        pass


class VectorStore(ABC):
    """Persists chunks with embeddings and runs cosine similarity search."""

    @abstractmethod
    async def store_documents(self, chunks: List[ChunkInput]) -> List[str]:
        """
        Store chunks and return their ids in input order.

        Raises:
            PartialWriteError: if only some chunks were written
            StoreUnavailableError: on connectivity failures
        """
        pass

    @abstractmethod
    async def search_similar(
        self,
        query_embedding: List[float],
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        """
        Return chunks with similarity >= threshold, best first.

        Raises:
            DimensionMismatchError: if the query dimension differs from the store's
        """
        pass

    @abstractmethod
    async def delete_by_parent_id(self, parent_document_id: str) -> int:
        pass

    @abstractmethod
    async def get_by_parent_id(self, parent_document_id: str) -> List[DocumentChunk]:
        """Return every chunk of a document ordered by chunk_index."""
        pass


class ChatService(ABC):
    """Chat/LLM generation port. Retry policy is the implementation's concern."""

    @abstractmethod
    async def chat(
        self,
        messages: List[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        pass

    @abstractmethod
    async def chat_stream(
        self,
        messages: List[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> StreamChatResponse:
        pass


class TextExtractor(ABC):
    """Turns an uploaded binary document into plain text."""

    @abstractmethod
    async def extract_text(self, data: bytes, mime_type: Optional[str] = None) -> ExtractedText:
        """
        Raises:
            UnsupportedFormatError: if the MIME type is not a supported document
            ExtractionFailedError: if the document cannot be read
        """
        pass


class KeywordExtractor(ABC):
    """Pulls categorized key phrases out of a document's text."""

    @abstractmethod
    async def extract(self, text: str, options: Optional[KeywordOptions] = None) -> List[Keyword]:
        pass
