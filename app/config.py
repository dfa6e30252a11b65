"""
Application Configuration
Loads environment variables and provides typed configuration.
"""
from typing import Literal, Optional
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI
    openai_api_key: Optional[str] = None

    # Embedding Settings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: Optional[int] = None
    embedding_batch_size: int = Field(default=2048, gt=0, le=2048)

    # Chat Settings
    chat_model: str = "gpt-4o-mini"
    chat_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    chat_max_tokens: int = Field(default=2000, gt=0)
    chat_max_tokens_cap: int = Field(default=4096, gt=0)

    # Keyword analysis
    keyword_model: str = "gpt-4o-mini"
    keyword_min_items: int = Field(default=8, gt=0)
    keyword_max_items: int = Field(default=20, gt=0)

    # Chunking
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)

    # Retrieval
    rag_max_results: int = Field(default=5, gt=0)
    rag_similarity_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    rag_max_chunks_cap: int = Field(default=20, gt=0)
    rag_max_history_messages: int = Field(default=10, gt=0)

    # Vector store
    vector_store_provider: Literal["supabase", "pinecone", "memory"] = "supabase"

    # Supabase
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    supabase_table: str = "documents"
    supabase_match_function: str = "match_documents"

    # Pinecone
    pinecone_api_key: Optional[str] = None
    pinecone_index: str = "doc-chat"
    pinecone_namespace: str = ""

    # App Settings
    environment: str = "development"
    log_level: str = "INFO"
    max_upload_mb: int = Field(default=20, gt=0)
    enable_debug_routes: bool = True

    @model_validator(mode="after")
    def check_ranges(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"CHUNK_OVERLAP ({self.chunk_overlap}) must be smaller than CHUNK_SIZE ({self.chunk_size})"
            )
        if self.keyword_min_items > self.keyword_max_items:
            raise ValueError("KEYWORD_MIN_ITEMS must not exceed KEYWORD_MAX_ITEMS")
        return self

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
