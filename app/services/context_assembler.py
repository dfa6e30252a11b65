"""
Context Assembler
Turns raw similarity-search hits into the ranked context used for a chat turn.
"""
import re
from typing import Dict, List, Optional

from app.exceptions import InvalidInputError
from app.models.schemas import ChatContext, ScoredChunk

# Length of the normalized content prefix used as the duplicate key
DEDUP_KEY_LENGTH = 100

_WHITESPACE = re.compile(r"\s+")


def _by_similarity(chunks: List[ScoredChunk]) -> List[ScoredChunk]:
    # sorted() is stable, so equal scores keep their retrieval order
    return sorted(chunks, key=lambda item: item.similarity, reverse=True)


class ContextAssembler:
    """
    Stateless helpers over ``ChatContext``. The stats helpers return zeroed
    values on empty input: no relevant context is an expected outcome.
    """

    def assemble_context(self, context: ChatContext, search_results: List[ScoredChunk]) -> ChatContext:
        """
        Filter by the context's minimum similarity, sort best first and keep
        at most ``max_chunks``. Returns a new context; the input is not modified.
        """
        relevant = self.filter_by_min_similarity(search_results, context.config.min_similarity)
        relevant = _by_similarity(relevant)[:context.config.max_chunks]
        return context.model_copy(update={"relevant_chunks": relevant})

    def get_most_relevant_chunks(self, context: ChatContext, limit: Optional[int] = None) -> List[ScoredChunk]:
        if limit is None:
            limit = context.config.max_chunks
        if limit < 0:
            raise InvalidInputError(f"limit must be >= 0, got {limit}")
        return _by_similarity(context.relevant_chunks)[:limit]

    def filter_by_min_similarity(self, chunks: List[ScoredChunk], threshold: float) -> List[ScoredChunk]:
        return [item for item in chunks if item.similarity >= threshold]

    def deduplicate_chunks(self, chunks: List[ScoredChunk]) -> List[ScoredChunk]:
        """
        Drop chunks whose first 100 normalized characters match an earlier one.

        Normalization lowercases, collapses whitespace runs and strips. The
        first occurrence wins, so deduplicating a ranked list keeps the best hit.
        """
        seen = set()
        unique = []
        for item in chunks:
            key = self.dedup_key(item.chunk.content)
            if key in seen:
                continue
            seen.add(key)
            unique.append(item)
        return unique

    @staticmethod
    def dedup_key(content: str) -> str:
        return _WHITESPACE.sub(" ", content.lower()).strip()[:DEDUP_KEY_LENGTH]

    def has_sufficient_context(self, context: ChatContext) -> bool:
        return len(context.relevant_chunks) > 0

    def get_average_similarity(self, context: ChatContext) -> float:
        if not context.relevant_chunks:
            return 0.0
        return sum(item.similarity for item in context.relevant_chunks) / len(context.relevant_chunks)

    def get_context_stats(self, context: ChatContext) -> Dict[str, float]:
        chunks = context.relevant_chunks
        if not chunks:
            return {
                "chunk_count": 0,
                "average_similarity": 0.0,
                "min_similarity": 0.0,
                "max_similarity": 0.0,
                "total_content_length": 0,
            }

        similarities = [item.similarity for item in chunks]
        return {
            "chunk_count": len(chunks),
            "average_similarity": self.get_average_similarity(context),
            "min_similarity": min(similarities),
            "max_similarity": max(similarities),
            "total_content_length": sum(len(item.chunk.content) for item in chunks),
        }
