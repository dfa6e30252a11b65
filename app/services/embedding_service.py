"""
Embedding Service
Generates vector embeddings using OpenAI's text-embedding-3 models.
"""
import asyncio
from typing import Any, Dict, List, Optional, Tuple
import structlog
from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.exceptions import EmbeddingProviderError, InvalidInputError
from app.models.schemas import (
    BatchEmbeddingMetadata,
    BatchEmbeddingResult,
    EmbeddingMetadata,
    EmbeddingResult,
)
from app.services.ports import EmbeddingGenerator

logger = structlog.get_logger()

# Native output size per model, used when no explicit dimensions are configured
MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)


class OpenAIEmbeddingGenerator(EmbeddingGenerator):
    """Generates embeddings using OpenAI's embedding models."""

    # Maximum tokens per input (model limit)
    MAX_TOKENS_PER_INPUT = 8191
    # Provider limit on inputs per request
    MAX_BATCH_SIZE = 2048

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "text-embedding-3-small",
        dimensions: Optional[int] = None,
        batch_size: int = MAX_BATCH_SIZE,
    ):
        self.client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = min(batch_size, self.MAX_BATCH_SIZE)

    @property
    def output_dimensions(self) -> int:
        if self.dimensions is not None:
            return self.dimensions
        return MODEL_DIMENSIONS.get(self.model, 1536)

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            EmbeddingResult with the vector and usage metadata
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidInputError("Cannot generate embedding for empty text")

        response = await self._create([self._truncate(text)])
        embedding = response.data[0].embedding

        return EmbeddingResult(
            embedding=embedding,
            metadata=EmbeddingMetadata(
                model=response.model or self.model,
                dimensions=len(embedding),
                token_count=self._usage_tokens(response),
            ),
        )

    async def generate_embeddings(self, texts: List[str]) -> BatchEmbeddingResult:
        """
        Generate embeddings for multiple texts.

        Inputs above the provider batch limit are split into sub-batches that
        run concurrently; the output keeps the input order regardless of the
        order in which the provider answers.

        Args:
            texts: List of texts to embed

        Returns:
            BatchEmbeddingResult with one vector per input text
        """
        if not texts:
            return BatchEmbeddingResult(
                embeddings=[],
                metadata=BatchEmbeddingMetadata(
                    model=self.model,
                    dimensions=self.output_dimensions,
                    total_tokens=0,
                ),
            )

        for i, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                raise InvalidInputError(f"Cannot generate embedding for empty text at index {i}")

        batches = [
            [self._truncate(t) for t in texts[i:i + self.batch_size]]
            for i in range(0, len(texts), self.batch_size)
        ]

        logger.info("Generating embeddings", count=len(texts), batches=len(batches))

        results = await asyncio.gather(*(self._embed_batch(batch) for batch in batches))

        all_embeddings: List[List[float]] = []
        total_tokens: Optional[int] = 0
        model = self.model
        for embeddings, tokens, response_model in results:
            all_embeddings.extend(embeddings)
            model = response_model or model
            if tokens is None or total_tokens is None:
                total_tokens = None
            else:
                total_tokens += tokens

        if len(all_embeddings) != len(texts):
            raise EmbeddingProviderError(
                f"Expected {len(texts)} embeddings, provider returned {len(all_embeddings)}"
            )

        dimensions = len(all_embeddings[0])
        logger.info("Embeddings complete", total=len(all_embeddings), dimensions=dimensions)

        return BatchEmbeddingResult(
            embeddings=all_embeddings,
            metadata=BatchEmbeddingMetadata(
                model=model,
                dimensions=dimensions,
                total_tokens=total_tokens,
            ),
        )

    async def _embed_batch(self, batch: List[str]) -> Tuple[List[List[float]], Optional[int], Optional[str]]:
        response = await self._create(batch)
        # The provider tags each item with its input position; it does not promise order.
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered], self._usage_tokens(response), response.model

    async def _create(self, inputs: List[str]):
        try:
            return await self._create_with_retry(inputs)
        except APIError as e:
            logger.error("Embedding request failed", error=str(e), inputs=len(inputs))
            raise EmbeddingProviderError(f"Embedding generation failed: {e}") from e

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _create_with_retry(self, inputs: List[str]):
        kwargs: Dict[str, Any] = {"model": self.model, "input": inputs}
        if self.dimensions is not None:
            kwargs["dimensions"] = self.dimensions
        return await self.client.embeddings.create(**kwargs)

    def _truncate(self, text: str) -> str:
        # Rough estimate: 4 chars per token
        max_chars = self.MAX_TOKENS_PER_INPUT * 4
        if len(text) > max_chars:
            logger.warning("Text truncated for embedding", original_length=len(text))
            return text[:max_chars]
        return text

    @staticmethod
    def _usage_tokens(response) -> Optional[int]:
        usage = getattr(response, "usage", None)
        return getattr(usage, "total_tokens", None) if usage is not None else None
