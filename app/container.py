"""
Composition Root
Builds every client and adapter once from Settings and wires them into the
orchestrators. The FastAPI app keeps the result on ``app.state``.
"""
from dataclasses import dataclass
import structlog
from openai import AsyncOpenAI
from pinecone import Pinecone
from supabase import create_client

from app.config import Settings
from app.models.schemas import ChunkOptions
from app.services.chat_service import OpenAIChatService
from app.services.chat_with_docs import ChatWithDocsService, RetrievalLimits
from app.services.chunking_service import RecursiveTextChunker
from app.services.document_analysis import DocumentAnalysisService
from app.services.document_ingestion import DocumentIngestionService
from app.services.embedding_service import OpenAIEmbeddingGenerator
from app.services.keyword_extractor import OpenAIKeywordExtractor
from app.services.ports import (
    ChatService,
    DocumentChunker,
    EmbeddingGenerator,
    KeywordExtractor,
    TextExtractor,
    VectorStore,
)
from app.services.text_extractor import DocumentTextExtractor
from app.services.vector_store import InMemoryVectorStore, PineconeVectorStore, SupabaseVectorStore

logger = structlog.get_logger()


@dataclass
class RAGContainer:
    settings: Settings
    chunker: DocumentChunker
    embedding_generator: EmbeddingGenerator
    vector_store: VectorStore
    chat_service: ChatService
    text_extractor: TextExtractor
    ingestion: DocumentIngestionService
    chat: ChatWithDocsService
    keyword_extractor: KeywordExtractor
    analysis: DocumentAnalysisService


def build_vector_store(settings: Settings) -> VectorStore:
    """Select the vector store backend named by VECTOR_STORE_PROVIDER."""
    provider = settings.vector_store_provider

    if provider == "supabase":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the supabase vector store")
        client = create_client(settings.supabase_url, settings.supabase_service_key)
        return SupabaseVectorStore(
            client,
            table=settings.supabase_table,
            match_function=settings.supabase_match_function,
            dimensions=settings.embedding_dimensions,
        )

    if provider == "pinecone":
        if not settings.pinecone_api_key:
            raise ValueError("PINECONE_API_KEY is required for the pinecone vector store")
        pc = Pinecone(api_key=settings.pinecone_api_key)
        return PineconeVectorStore(
            pc.Index(settings.pinecone_index),
            namespace=settings.pinecone_namespace,
            dimensions=settings.embedding_dimensions,
        )

    return InMemoryVectorStore(dimensions=settings.embedding_dimensions)


def build_container(settings: Settings) -> RAGContainer:
    """Build the full object graph for one process."""
    openai_client = AsyncOpenAI(api_key=settings.openai_api_key)

    chunker = RecursiveTextChunker(
        ChunkOptions(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap)
    )
    embedding_generator = OpenAIEmbeddingGenerator(
        openai_client,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
    )
    vector_store = build_vector_store(settings)
    chat_service = OpenAIChatService(
        openai_client,
        default_model=settings.chat_model,
        default_temperature=settings.chat_temperature,
        default_max_tokens=settings.chat_max_tokens,
    )

    logger.info(
        "Container built",
        vector_store=settings.vector_store_provider,
        embedding_model=settings.embedding_model,
        chat_model=settings.chat_model,
    )

    text_extractor = DocumentTextExtractor()
    keyword_extractor = OpenAIKeywordExtractor(openai_client, model=settings.keyword_model)

    return RAGContainer(
        settings=settings,
        chunker=chunker,
        embedding_generator=embedding_generator,
        vector_store=vector_store,
        chat_service=chat_service,
        text_extractor=text_extractor,
        ingestion=DocumentIngestionService(chunker, embedding_generator, vector_store),
        chat=ChatWithDocsService(
            embedding_generator,
            vector_store,
            chat_service,
            limits=limits_from_settings(settings),
        ),
        keyword_extractor=keyword_extractor,
        analysis=DocumentAnalysisService(
            text_extractor,
            keyword_extractor,
            min_items=settings.keyword_min_items,
            max_items=settings.keyword_max_items,
        ),
    )


def limits_from_settings(settings: Settings) -> RetrievalLimits:
    """Request defaults and caps; the default chunk count never exceeds its cap."""
    return RetrievalLimits(
        max_chunks=min(settings.rag_max_results, settings.rag_max_chunks_cap),
        min_similarity=settings.rag_similarity_threshold,
        max_chunks_cap=settings.rag_max_chunks_cap,
        max_tokens_cap=settings.chat_max_tokens_cap,
        max_history_messages=settings.rag_max_history_messages,
    )
