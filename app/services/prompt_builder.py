"""
Prompt Builder
Builds the message sequence sent to the chat model for a RAG turn.
"""
import math
from typing import List, Optional

from app.models.schemas import ChatContext, ChatMessage, ContextDocument, ScoredChunk
from app.services.context_assembler import ContextAssembler

CONTEXT_DELIMITER = "\n\n---\n\n"

SYSTEM_PROMPT = """You are an intelligent assistant specialized in analyzing documents and answering questions about them.

Your job is to:
1. Answer questions based ONLY on the provided context
2. If the information is not in the context, say clearly that you do not have that information
3. Cite the relevant sections of the context when appropriate
4. Be precise, clear and concise in your answers
5. Keep a professional and friendly tone

IMPORTANT:
- Do NOT make up information that is not in the context
- If you are not sure, say so clearly
- You may draw reasonable inferences from the provided context"""

SIMPLE_SYSTEM_PROMPT = "You are an intelligent and helpful assistant. Answer clearly, precisely and in a friendly manner."


def _relevance_percent(similarity: float) -> int:
    return math.floor(similarity * 100 + 0.5)


class ChatPromptBuilder:
    """Builds grounded (RAG) and plain chat message sequences."""

    def __init__(self, context_assembler: Optional[ContextAssembler] = None):
        self.context_assembler = context_assembler or ContextAssembler()

    def build_system_prompt(self) -> str:
        return SYSTEM_PROMPT

    def build_user_prompt_with_context(self, question: str, relevant_chunks: List[ScoredChunk]) -> str:
        if not relevant_chunks:
            return (
                f"Question: {question}\n\n"
                "Context: No relevant documents were found to answer this question."
            )

        sections = CONTEXT_DELIMITER.join(
            f"[Document {i}] (Relevance: {_relevance_percent(item.similarity)}%)\n"
            f"Title: {item.chunk.title}\n"
            f"Content:\n{item.chunk.content}"
            for i, item in enumerate(relevant_chunks, start=1)
        )

        return (
            f"Relevant context from the documents:\n\n{sections}\n\n---\n\n"
            f"User question: {question}\n\n"
            "Please answer the question based only on the context provided above."
        )

    def build_rag_messages(
        self,
        question: str,
        relevant_chunks: List[ScoredChunk],
        history: Optional[List[ChatMessage]] = None,
    ) -> List[ChatMessage]:
        """
        System rules, then the non-system history, then the question with its
        serialized context. The user message carries the citations used.
        """
        messages = [ChatMessage(role="system", content=self.build_system_prompt())]
        messages.extend(self._without_system(history))
        messages.append(
            ChatMessage(
                role="user",
                content=self.build_user_prompt_with_context(question, relevant_chunks),
                context_documents=[
                    ContextDocument(id=item.chunk.id, title=item.chunk.title, similarity=item.similarity)
                    for item in relevant_chunks
                ],
            )
        )
        return messages

    def build_context_messages(self, question: str, context: ChatContext) -> List[ChatMessage]:
        """Build from an assembled context, choosing grounded or plain "nothing found" framing."""
        if self.context_assembler.has_sufficient_context(context):
            chunks = self.context_assembler.get_most_relevant_chunks(context)
        else:
            chunks = []
        return self.build_rag_messages(question, chunks, context.messages)

    def build_simple_chat_messages(
        self,
        question: str,
        history: Optional[List[ChatMessage]] = None,
    ) -> List[ChatMessage]:
        messages = [ChatMessage(role="system", content=SIMPLE_SYSTEM_PROMPT)]
        messages.extend(self._without_system(history))
        messages.append(ChatMessage(role="user", content=question))
        return messages

    @staticmethod
    def _without_system(history: Optional[List[ChatMessage]]) -> List[ChatMessage]:
        # A second system message would duplicate the instructions
        return [m for m in (history or []) if m.role != "system"]
