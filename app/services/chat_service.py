"""
Chat Service
Generates answers with OpenAI chat completions, buffered or streamed.
"""
from typing import Any, AsyncIterator, Dict, List, Optional
import structlog
from openai import APIError, AsyncOpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.exceptions import ChatProviderError
from app.models.schemas import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    ChatResponseMetadata,
    StreamChatResponse,
)
from app.services.embedding_service import TRANSIENT_ERRORS
from app.services.ports import ChatService

logger = structlog.get_logger()


class OpenAIChatService(ChatService):
    """Chat port backed by the OpenAI chat completions API."""

    def __init__(
        self,
        client: AsyncOpenAI,
        default_model: str = "gpt-4o-mini",
        default_temperature: float = 0.7,
        default_max_tokens: int = 2000,
    ):
        self.client = client
        self.default_model = default_model
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens

    async def chat(
        self,
        messages: List[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        """
        Generate a complete response.

        Args:
            messages: Conversation in the system/user/assistant shape
            options: Model, temperature and max tokens overrides

        Returns:
            ChatResponse with the assistant message and token usage
        """
        params = self._params(messages, options)

        try:
            completion = await self._create(**params)
        except APIError as e:
            logger.error("Chat completion failed", error=str(e), model=params["model"])
            raise ChatProviderError(f"Failed to generate chat response: {e}") from e

        choice = completion.choices[0]
        usage = completion.usage
        total_tokens = usage.total_tokens if usage else None

        logger.info(
            "Chat completion received",
            model=completion.model,
            total_tokens=total_tokens,
            finish_reason=choice.finish_reason,
        )

        message = ChatMessage(
            role="assistant",
            content=choice.message.content or "",
            metadata={"model": params["model"], "token_count": total_tokens},
        )
        return ChatResponse(
            message=message,
            metadata=ChatResponseMetadata(
                model=params["model"],
                total_tokens=total_tokens,
                prompt_tokens=usage.prompt_tokens if usage else None,
                completion_tokens=usage.completion_tokens if usage else None,
                finish_reason=choice.finish_reason,
            ),
        )

    async def chat_stream(
        self,
        messages: List[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> StreamChatResponse:
        """
        Open a streaming completion. The request is sent before returning, so
        connection errors surface here; the returned stream yields text deltas.
        """
        params = self._params(messages, options)

        try:
            stream = await self._create(
                **params,
                stream=True,
                stream_options={"include_usage": True},
            )
        except APIError as e:
            logger.error("Chat stream failed to start", error=str(e), model=params["model"])
            raise ChatProviderError(f"Failed to generate streaming chat response: {e}") from e

        return StreamChatResponse(stream=self._text_deltas(stream, params["model"]), model=params["model"])

    async def _text_deltas(self, stream, model: str) -> AsyncIterator[str]:
        text_length = 0
        finish_reason = None
        usage = None
        try:
            async for chunk in stream:
                if chunk.usage is not None:
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = choice.delta.content if choice.delta else None
                if delta:
                    text_length += len(delta)
                    yield delta
        except APIError as e:
            logger.error("Chat stream interrupted", error=str(e), model=model)
            raise ChatProviderError(f"Chat stream interrupted: {e}") from e

        logger.info(
            "Stream finished",
            model=model,
            text_length=text_length,
            total_tokens=usage.total_tokens if usage else None,
            finish_reason=finish_reason,
        )

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _create(self, **kwargs):
        return await self.client.chat.completions.create(**kwargs)

    def _params(self, messages: List[ChatMessage], options: Optional[ChatOptions]) -> Dict[str, Any]:
        opts = options or ChatOptions()
        return {
            "model": opts.model or self.default_model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": opts.temperature if opts.temperature is not None else self.default_temperature,
            "max_tokens": opts.max_tokens if opts.max_tokens is not None else self.default_max_tokens,
        }
