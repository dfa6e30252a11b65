"""
Error taxonomy for the RAG pipeline.

Caller errors (``InvalidInputError`` and its subclasses) propagate as-is.
Collaborator failures are raised by the adapters and wrapped once by the
orchestrators in a ``PipelineError`` that names the stage that failed.
"""
from typing import Optional


class RAGError(Exception):
    """Base class for every error raised by the pipeline."""


class InvalidInputError(RAGError):
    """Empty/blank text or bad option values supplied by the caller."""


class EmptyDocumentError(InvalidInputError):
    """An ingested document produced no chunks."""


class EmbeddingProviderError(RAGError):
    """The embedding provider failed or returned an unusable response."""


class StoreUnavailableError(RAGError):
    """The vector store could not be reached or rejected the operation."""


class PartialWriteError(StoreUnavailableError):
    """Only some of the chunks in a write were persisted."""

    def __init__(self, message: str, written_ids: Optional[list] = None):
        super().__init__(message)
        self.written_ids = written_ids or []


class DimensionMismatchError(RAGError):
    """Query vector and stored vectors have different dimensionality."""

    def __init__(self, expected: Optional[int], actual: int):
        if expected is None:
            message = f"Vector dimension mismatch (got {actual})"
        else:
            message = f"Vector dimension mismatch: expected {expected}, got {actual}"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ChatProviderError(RAGError):
    """The chat/LLM provider failed."""


class UnsupportedFormatError(RAGError):
    """The uploaded document type cannot be converted to text."""


class ExtractionFailedError(RAGError):
    """Text extraction failed on a corrupt or unreadable document."""


class PipelineError(RAGError):
    """A step of an orchestrated pipeline failed; the rest was aborted."""

    pipeline = "pipeline"

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"{self.pipeline} failed at stage '{stage}': {cause}")
        self.stage = stage
        self.cause = cause


class IngestionError(PipelineError):
    pipeline = "Document ingestion"


class ChatPipelineError(PipelineError):
    pipeline = "Chat with documents"
