"""
Shared Test Fixtures for RAG Pipeline Tests

This file contains:
- FastAPI TestClient setup over an in-memory container
- Deterministic fakes for the embedding and chat providers
- Test data generators
"""
from typing import AsyncIterator, Callable, Generator, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.container import RAGContainer, limits_from_settings
from app.main import create_app
from app.models.schemas import (
    BatchEmbeddingMetadata,
    BatchEmbeddingResult,
    ChatMessage,
    ChatOptions,
    ChatResponse,
    ChatResponseMetadata,
    DocumentChunk,
    EmbeddingMetadata,
    EmbeddingResult,
    ExtractedText,
    Keyword,
    ScoredChunk,
    StreamChatResponse,
)
from app.services.chat_with_docs import ChatWithDocsService
from app.services.chunking_service import RecursiveTextChunker
from app.services.document_analysis import DocumentAnalysisService
from app.services.document_ingestion import DocumentIngestionService
from app.services.ports import ChatService, EmbeddingGenerator, KeywordExtractor
from app.services.vector_store import InMemoryVectorStore


# ═══════════════════════════════════════════════════════════════
# PROVIDER FAKES
# ═══════════════════════════════════════════════════════════════

FAKE_ALPHABET = "abcdefghijklmnopqrstuvwxyz"


class FakeEmbeddingGenerator(EmbeddingGenerator):
    """Letter-frequency vectors: deterministic, offline, similar texts score high."""

    model = "fake-embedding"

    def __init__(self):
        self.batch_calls: List[List[str]] = []

    @staticmethod
    def vector(text: str) -> List[float]:
        lowered = text.lower()
        return [float(lowered.count(c)) + 0.01 for c in FAKE_ALPHABET]

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(
            embedding=self.vector(text),
            metadata=EmbeddingMetadata(model=self.model, dimensions=len(FAKE_ALPHABET), token_count=len(text) // 4),
        )

    async def generate_embeddings(self, texts: List[str]) -> BatchEmbeddingResult:
        self.batch_calls.append(list(texts))
        return BatchEmbeddingResult(
            embeddings=[self.vector(t) for t in texts],
            metadata=BatchEmbeddingMetadata(
                model=self.model,
                dimensions=len(FAKE_ALPHABET),
                total_tokens=sum(len(t) // 4 for t in texts),
            ),
        )


class FakeChatService(ChatService):
    """Echoes a fixed answer and records the messages it was sent."""

    def __init__(self, answer: str = "The answer is in the documents."):
        self.answer = answer
        self.calls: List[List[ChatMessage]] = []
        self.options: List[Optional[ChatOptions]] = []

    async def chat(self, messages, options=None) -> ChatResponse:
        self.calls.append(list(messages))
        self.options.append(options)
        model = (options.model if options else None) or "fake-chat"
        return ChatResponse(
            message=ChatMessage(role="assistant", content=self.answer, metadata={"model": model, "token_count": 42}),
            metadata=ChatResponseMetadata(model=model, total_tokens=42, prompt_tokens=30, completion_tokens=12),
        )

    async def chat_stream(self, messages, options=None) -> StreamChatResponse:
        self.calls.append(list(messages))
        self.options.append(options)

        async def tokens() -> AsyncIterator[str]:
            for word in self.answer.split(" "):
                yield word + " "

        return StreamChatResponse(stream=tokens(), model="fake-chat")


class FakeKeywordExtractor(KeywordExtractor):
    """Returns fixed keywords and records the text and options it was given."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.keywords = [
            Keyword(phrase="Quarterly report", kind="topic"),
            Keyword(phrase="twelve percent", kind="amount"),
        ]

    async def extract(self, text, options=None) -> List[Keyword]:
        self.calls.append((text, options))
        return list(self.keywords)


# ═══════════════════════════════════════════════════════════════
# COMPONENT FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def settings() -> Settings:
    """Offline settings: in-memory store, debug routes on."""
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        vector_store_provider="memory",
        environment="test",
        enable_debug_routes=True,
        max_upload_mb=1,
    )


@pytest.fixture
def fake_embeddings() -> FakeEmbeddingGenerator:
    return FakeEmbeddingGenerator()


@pytest.fixture
def fake_chat() -> FakeChatService:
    return FakeChatService()


@pytest.fixture
def fake_keywords() -> FakeKeywordExtractor:
    return FakeKeywordExtractor()


@pytest.fixture
def memory_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def mock_text_extractor():
    """Text extractor returning a fixed document, so API tests need no libmagic."""
    extractor = Mock()
    extractor.extract_text = AsyncMock(
        return_value=ExtractedText(
            full_text="Quarterly report. Revenue grew twelve percent.\n\nCosts were flat.",
            mime_type="application/pdf",
            metadata={"element_count": 2},
        )
    )
    return extractor


@pytest.fixture
def container(settings, fake_embeddings, fake_chat, fake_keywords, memory_store, mock_text_extractor) -> RAGContainer:
    chunker = RecursiveTextChunker()
    return RAGContainer(
        settings=settings,
        chunker=chunker,
        embedding_generator=fake_embeddings,
        vector_store=memory_store,
        chat_service=fake_chat,
        text_extractor=mock_text_extractor,
        ingestion=DocumentIngestionService(chunker, fake_embeddings, memory_store),
        chat=ChatWithDocsService(fake_embeddings, memory_store, fake_chat, limits=limits_from_settings(settings)),
        keyword_extractor=fake_keywords,
        analysis=DocumentAnalysisService(mock_text_extractor, fake_keywords),
    )


# ═══════════════════════════════════════════════════════════════
# FASTAPI CLIENT FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def client(container) -> Generator[TestClient, None, None]:
    """Synchronous FastAPI test client over the in-memory container."""
    with TestClient(create_app(container)) as c:
        yield c


# ═══════════════════════════════════════════════════════════════
# TEST DATA FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def make_scored_chunk() -> Callable[..., ScoredChunk]:
    """Factory for search hits."""
    def _make(
        similarity: float,
        content: Optional[str] = None,
        title: str = "Report - Part 1",
        chunk_index: int = 0,
        parent_document_id: str = "doc-1",
    ) -> ScoredChunk:
        chunk = DocumentChunk(
            title=title,
            content=content if content is not None else f"Passage with similarity {similarity}",
            chunk_index=chunk_index,
            parent_document_id=parent_document_id,
        )
        return ScoredChunk(chunk=chunk, similarity=similarity)

    return _make


@pytest.fixture
def sample_document_text() -> str:
    """Multi-paragraph document."""
    paragraphs = [
        "Revenue for the quarter grew twelve percent compared to last year. " * 5,
        "Operating costs remained flat thanks to the new procurement process. " * 5,
        "The board approved a dividend of forty cents per share. " * 5,
    ]
    return "\n\n".join(p.strip() for p in paragraphs)


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid PDF bytes for testing."""
    return b"""%PDF-1.4
1 0 obj << /Type /Catalog /Pages 2 0 R >> endobj
2 0 obj << /Type /Pages /Kids [3 0 R] /Count 1 >> endobj
3 0 obj << /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >> endobj
xref
0 4
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
trailer << /Size 4 /Root 1 0 R >>
startxref
196
%%EOF"""
