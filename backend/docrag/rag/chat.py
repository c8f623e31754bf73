"""
Chat Pipeline — grounded question answering over chip-chunks
═════════════════════════════════════════════════════════════

    question
      │
      ▼
    Retriever             top-k chip-chunks above the similarity floor
      │
      ▼
    ConversationHistory   prior turns, oldest first (bounded)
      │
      ▼
    build_prompt          system prompt with {chunks} rendered + history + question
      │
      ▼
    ChatCompletionService LangChain ChatOpenAI
      │
      ▼
    save user/assistant pair (unless skip_save)

An unknown or missing conversation id starts a new conversation rather than
failing the turn.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from uuid import UUID

from docrag.llm.base import ChatCompletionService, ChatMessage
from docrag.rag.history import ConversationHistory
from docrag.rag.retriever import Retriever
from docrag.schemas.documents import RetrievedChunk

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant that answers questions about documents.

You have access to relevant document excerpts provided below. Use these to answer the user's questions accurately.

INSTRUCTIONS:
- Answer based on the provided document context
- If the answer is in the documents, cite which document it came from
- If the answer is NOT in the provided context, say so clearly
- Be concise but complete
- If asked about specific terms, dates, or numbers, quote them exactly from the documents

DOCUMENT CONTEXT:
{chunks}

Answer the user's question based on the above context."""

NO_CONTEXT_TEXT = "[No relevant documents found]"
CHUNKS_PLACEHOLDER = "{chunks}"


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------

@dataclass
class BuiltPrompt:
    system_prompt:    str
    messages:         list[ChatMessage] = field(default_factory=list)
    chunk_count:      int               = 0
    history_count:    int               = 0
    estimated_tokens: int               = 0


def format_chunks(chunks: list[RetrievedChunk]) -> str:
    if not chunks:
        return NO_CONTEXT_TEXT
    return "\n\n".join(
        f"--- Document {i}: {chunk.document_name} "
        f"(chunk {chunk.chunk_index}, similarity: {chunk.similarity:.3f}) ---\n{chunk.content}"
        for i, chunk in enumerate(chunks, start=1)
    )


def build_prompt(
    chunks:        list[RetrievedChunk],
    history:       list[ChatMessage],
    question:      str,
    system_prompt: str | None = None,
) -> BuiltPrompt:
    template = system_prompt or DEFAULT_SYSTEM_PROMPT
    rendered = template.replace(CHUNKS_PLACEHOLDER, format_chunks(chunks), 1)

    messages = [ChatMessage(role=m.role, content=m.content) for m in history]
    messages.append(ChatMessage(role="user", content=question))

    total_chars = len(rendered) + sum(len(m.content) for m in messages)
    return BuiltPrompt(
        system_prompt=rendered,
        messages=messages,
        chunk_count=len(chunks),
        history_count=len(history),
        estimated_tokens=math.ceil(total_chars / 4),
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class ChatResponse:
    answer:               str
    conversation_id:      UUID
    chunks_used:          int
    top_chunk_similarity: float | None
    input_tokens:         int   = 0
    output_tokens:        int   = 0
    embedding_tokens:     int   = 0
    retrieval_ms:         float = 0.0
    llm_ms:               float = 0.0
    total_ms:             float = 0.0
    sources:              list[RetrievedChunk] = field(default_factory=list)


class ChatPipeline:

    def __init__(
        self,
        retriever:     Retriever,
        history:       ConversationHistory,
        chat_service:  ChatCompletionService,
        system_prompt: str | None = None,
    ) -> None:
        self._retriever     = retriever
        self._history       = history
        self._chat_service  = chat_service
        self._system_prompt = system_prompt

    async def start_conversation(self) -> UUID:
        return await self._history.create_conversation()

    async def chat(
        self,
        conversation_id: UUID | None,
        question:        str,
        top_k:           int | None = None,
        min_similarity:  float | None = None,
        skip_save:       bool = False,
    ) -> ChatResponse:
        t0 = time.monotonic()

        if conversation_id is None or not await self._history.conversation_exists(conversation_id):
            conversation_id = await self._history.create_conversation()

        retrieval = await self._retriever.retrieve(question, top_k=top_k, min_similarity=min_similarity)
        history   = await self._history.get_messages(conversation_id)
        prompt    = build_prompt(retrieval.chunks, history, question, self._system_prompt)

        t_llm = time.monotonic()
        completion = await self._chat_service.complete_chat(prompt.system_prompt, prompt.messages)
        llm_ms = (time.monotonic() - t_llm) * 1000

        if not skip_save:
            await self._history.save_message_pair(conversation_id, question, completion.content)

        total_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "ChatPipeline | conversation=%s chunks=%d history=%d in=%d out=%d total_ms=%.0f",
            conversation_id, prompt.chunk_count, prompt.history_count,
            completion.input_tokens, completion.output_tokens, total_ms,
        )
        return ChatResponse(
            answer=completion.content,
            conversation_id=conversation_id,
            chunks_used=len(retrieval.chunks),
            top_chunk_similarity=retrieval.chunks[0].similarity if retrieval.chunks else None,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            embedding_tokens=retrieval.query_embedding_tokens,
            retrieval_ms=retrieval.total_ms,
            llm_ms=llm_ms,
            total_ms=total_ms,
            sources=list(retrieval.chunks),
        )
