"""
Chunking Service
Splits raw document text into overlapping chunks with LangChain's
RecursiveCharacterTextSplitter.
"""
from typing import List, Optional, Tuple
import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter

from app.exceptions import InvalidInputError
from app.models.schemas import ChunkOptions, ChunkingMetadata, ChunkingResult
from app.services.ports import DocumentChunker

logger = structlog.get_logger()


class RecursiveTextChunker(DocumentChunker):
    """
    Splits on the first separator (in priority order) present in the text,
    recursing into oversized pieces with the next separators. Adjacent chunks
    share up to ``chunk_overlap`` characters.

    Separators stay attached to the piece they end and nothing is stripped,
    so every chunk is a verbatim slice of the original text starting at its
    reported offset. Whitespace-only chunks are dropped.
    """

    def __init__(self, default_options: Optional[ChunkOptions] = None):
        self.default_options = default_options or ChunkOptions()

    async def chunk(self, text: str, options: Optional[ChunkOptions] = None) -> ChunkingResult:
        """
        Split a document into overlapping chunks.

        Args:
            text: Raw document text
            options: Chunk size, overlap and separators (defaults from construction)

        Returns:
            ChunkingResult with chunks, their start offsets and summary metadata

        Raises:
            InvalidInputError: if the text is empty/blank or the options are invalid
        """
        opts = options or self.default_options
        self._validate(text, opts)

        logger.info(
            "Starting chunking",
            original_length=len(text),
            chunk_size=opts.chunk_size,
            chunk_overlap=opts.chunk_overlap,
        )

        chunks, offsets = self._split(text, opts)

        total_length = sum(len(c) for c in chunks)
        average = int(total_length / len(chunks) + 0.5) if chunks else 0

        logger.info("Chunking complete", total_chunks=len(chunks), average_chunk_size=average)

        return ChunkingResult(
            chunks=chunks,
            offsets=offsets,
            metadata=ChunkingMetadata(
                total_chunks=len(chunks),
                average_chunk_size=average,
                original_length=len(text),
            ),
        )

    def _validate(self, text: str, opts: ChunkOptions) -> None:
        if not isinstance(text, str):
            raise InvalidInputError(f"Invalid text input for chunking. Received: {type(text).__name__}")
        if not text.strip():
            raise InvalidInputError("Cannot chunk empty text")
        if opts.chunk_size <= 0:
            raise InvalidInputError(f"chunk_size must be positive, got {opts.chunk_size}")
        if opts.chunk_overlap < 0 or opts.chunk_overlap >= opts.chunk_size:
            raise InvalidInputError(
                f"chunk_overlap must be in [0, chunk_size), got {opts.chunk_overlap}"
            )
        if not opts.separators:
            raise InvalidInputError("At least one separator is required")

    @staticmethod
    def _split(text: str, opts: ChunkOptions) -> Tuple[List[str], List[int]]:
        splitter = RecursiveCharacterTextSplitter(
            chunk_size=opts.chunk_size,
            chunk_overlap=opts.chunk_overlap,
            separators=list(opts.separators),
            keep_separator="end",
            strip_whitespace=False,
            add_start_index=True,
        )
        documents = splitter.create_documents([text])

        chunks: List[str] = []
        offsets: List[int] = []
        dropped = 0
        for doc in documents:
            # Runs of blank lines longer than chunk_size come out as blank chunks
            if not doc.page_content.strip():
                dropped += 1
                continue
            chunks.append(doc.page_content)
            offsets.append(doc.metadata["start_index"])

        if dropped:
            logger.info("Dropped whitespace-only chunks", count=dropped)

        return chunks, offsets
