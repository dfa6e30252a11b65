"""
Chat With Documents Service
Answers a question from the stored documents, buffered or streamed.

Stages: embed_question -> search -> assemble_context -> build_prompt -> generate -> done
(failed from any step)
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import structlog

from app.exceptions import ChatPipelineError, InvalidInputError
from app.models.schemas import (
    ChatContext,
    ChatContextConfig,
    ChatMessage,
    ChatOptions,
    ChatStats,
    ChatWithDocsRequest,
    ChatWithDocsResult,
    ChatWithDocsStreamResult,
    ContextDocument,
    SearchOptions,
    StreamStats,
)
from app.services.context_assembler import ContextAssembler
from app.services.ports import ChatService, EmbeddingGenerator, VectorStore
from app.services.prompt_builder import ChatPromptBuilder

logger = structlog.get_logger()


class ChatStage(str, Enum):
    EMBED_QUESTION = "embed_question"
    SEARCH = "search"
    ASSEMBLE_CONTEXT = "assemble_context"
    BUILD_PROMPT = "build_prompt"
    GENERATE = "generate"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RetrievalLimits:
    """Request defaults and the hard caps request overrides are clamped to."""
    max_chunks: int = 5
    min_similarity: float = 0.7
    max_chunks_cap: int = 20
    max_tokens_cap: int = 4096
    max_history_messages: int = 10


@dataclass
class _PreparedChat:
    messages: List[ChatMessage]
    context: ChatContext
    context_chunks: List[ContextDocument]
    average_similarity: float
    options: ChatOptions


class ChatWithDocsService:
    """Composes retrieval, context assembly, prompting and generation for one question."""

    def __init__(
        self,
        embedding_generator: EmbeddingGenerator,
        vector_store: VectorStore,
        chat_service: ChatService,
        limits: Optional[RetrievalLimits] = None,
        context_assembler: Optional[ContextAssembler] = None,
        prompt_builder: Optional[ChatPromptBuilder] = None,
    ):
        self.embedding_generator = embedding_generator
        self.vector_store = vector_store
        self.chat_service = chat_service
        self.limits = limits or RetrievalLimits()
        self.context_assembler = context_assembler or ContextAssembler()
        self.prompt_builder = prompt_builder or ChatPromptBuilder(self.context_assembler)

    async def execute(self, request: ChatWithDocsRequest) -> ChatWithDocsResult:
        """
        Answer with one assistant message.

        Returns:
            ChatWithDocsResult with the answer, the chunks it was grounded on
            (id/title/similarity) and stats

        Raises:
            InvalidInputError: on a blank question or out-of-range overrides
            ChatPipelineError: if any step fails; ``stage`` names the step
        """
        start = time.perf_counter()
        prepared = await self._prepare(request)

        self._log_stage(ChatStage.GENERATE)
        try:
            response = await self.chat_service.chat(prepared.messages, prepared.options)
        except Exception as e:
            raise self._failed(ChatStage.GENERATE, e) from e

        answer = response.message.model_copy(update={"context_documents": prepared.context_chunks})
        time_taken = round((time.perf_counter() - start) * 1000, 2)

        self._log_stage(ChatStage.DONE, total_tokens=response.metadata.total_tokens, time_taken_ms=time_taken)

        return ChatWithDocsResult(
            response=answer,
            context_chunks=prepared.context_chunks,
            stats=ChatStats(
                relevant_chunks_count=len(prepared.context_chunks),
                average_similarity=prepared.average_similarity,
                total_tokens=response.metadata.total_tokens,
                time_taken=time_taken,
            ),
        )

    async def execute_stream(self, request: ChatWithDocsRequest) -> ChatWithDocsStreamResult:
        """
        Run retrieval and prompting eagerly, then hand back the live token
        stream with the citations and stats already computed, so callers can
        render sources before the first token arrives. ``preparation_time``
        covers everything up to opening the stream.
        """
        start = time.perf_counter()
        prepared = await self._prepare(request)

        self._log_stage(ChatStage.GENERATE, stream=True)
        try:
            stream_response = await self.chat_service.chat_stream(prepared.messages, prepared.options)
        except Exception as e:
            raise self._failed(ChatStage.GENERATE, e) from e

        preparation_time = round((time.perf_counter() - start) * 1000, 2)
        self._log_stage(ChatStage.DONE, stream=True, preparation_time_ms=preparation_time)

        return ChatWithDocsStreamResult(
            stream=stream_response.stream,
            context_chunks=prepared.context_chunks,
            stats=StreamStats(
                relevant_chunks_count=len(prepared.context_chunks),
                average_similarity=prepared.average_similarity,
                preparation_time=preparation_time,
            ),
            model=stream_response.model,
        )

    async def _prepare(self, request: ChatWithDocsRequest) -> _PreparedChat:
        question = request.question
        if not question or not question.strip():
            raise InvalidInputError("Question cannot be empty")

        config = request.config
        max_chunks = self._resolve_max_chunks(config.max_chunks)
        min_similarity = self._resolve_min_similarity(config.min_similarity)
        max_tokens = config.max_tokens
        if max_tokens is not None:
            if max_tokens <= 0:
                raise InvalidInputError(f"max_tokens must be positive, got {max_tokens}")
            max_tokens = min(max_tokens, self.limits.max_tokens_cap)

        logger.info(
            "Chat request received",
            question=question[:50],
            parent_document_id=request.parent_document_id,
            max_chunks=max_chunks,
            min_similarity=min_similarity,
        )

        stage = ChatStage.EMBED_QUESTION
        try:
            self._log_stage(stage)
            embedding = await self.embedding_generator.generate_embedding(question)

            stage = ChatStage.SEARCH
            self._log_stage(stage)
            # Over-fetch when deduplicating so duplicates do not crowd out distinct hits
            max_results = max_chunks * 2 if config.deduplicate else max_chunks
            search_result = await self.vector_store.search_similar(
                embedding.embedding,
                SearchOptions(
                    max_results=max_results,
                    similarity_threshold=min_similarity,
                    parent_document_id=request.parent_document_id,
                ),
            )
            logger.info("Search results", found=search_result.metadata.total_results)

            stage = ChatStage.ASSEMBLE_CONTEXT
            self._log_stage(stage)
            hits = search_result.chunks
            if config.deduplicate:
                hits = self.context_assembler.deduplicate_chunks(hits)
            history = request.conversation_history[-self.limits.max_history_messages:]
            context = self.context_assembler.assemble_context(
                ChatContext(
                    messages=history,
                    config=ChatContextConfig(
                        max_messages=self.limits.max_history_messages,
                        max_chunks=max_chunks,
                        min_similarity=min_similarity,
                    ),
                ),
                hits,
            )
            stats = self.context_assembler.get_context_stats(context)

            stage = ChatStage.BUILD_PROMPT
            self._log_stage(stage, relevant_chunks=stats["chunk_count"])
            messages = self.prompt_builder.build_context_messages(question, context)
        except InvalidInputError:
            raise
        except Exception as e:
            raise self._failed(stage, e) from e

        return _PreparedChat(
            messages=messages,
            context=context,
            context_chunks=[
                ContextDocument(id=item.chunk.id, title=item.chunk.title, similarity=item.similarity)
                for item in context.relevant_chunks
            ],
            average_similarity=stats["average_similarity"],
            options=ChatOptions(model=config.model, temperature=config.temperature, max_tokens=max_tokens),
        )

    def _resolve_max_chunks(self, requested: Optional[int]) -> int:
        if requested is None:
            return self.limits.max_chunks
        if requested < 1:
            raise InvalidInputError(f"max_chunks must be >= 1, got {requested}")
        return min(requested, self.limits.max_chunks_cap)

    def _resolve_min_similarity(self, requested: Optional[float]) -> float:
        if requested is None:
            return self.limits.min_similarity
        if not -1.0 <= requested <= 1.0:
            raise InvalidInputError(f"min_similarity must be within [-1, 1], got {requested}")
        return requested

    @staticmethod
    def _log_stage(stage: ChatStage, **kwargs) -> None:
        logger.info(f"Stage: {stage.value}", **kwargs)

    @staticmethod
    def _failed(stage: ChatStage, error: Exception) -> ChatPipelineError:
        logger.error(f"Stage: {ChatStage.FAILED.value}", failed_step=stage.value, error=str(error))
        return ChatPipelineError(stage.value, error)
