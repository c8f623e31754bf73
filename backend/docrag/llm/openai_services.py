"""
OpenAI-backed implementations of the model service interfaces.

  OpenAIPageTextService    chat.completions with a base64 image_url part
  OpenAIReasoningService   chat.completions, single user turn, temperature 0
  OpenAIEmbeddingService   embeddings.create (text-embedding-3-*)
  LangChainChatService     langchain_openai.ChatOpenAI over ordered history

Every class accepts an already-built client so tests (and alternative
deployments, e.g. Azure endpoints) can inject their own.
"""

from __future__ import annotations

import base64
import logging
import time

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from openai import AsyncOpenAI

from docrag.core.config import settings
from docrag.llm.base import (
    ChatCompletion,
    ChatCompletionService,
    ChatMessage,
    EmbeddingResponse,
    EmbeddingService,
    IndexedVector,
    PageTextService,
    ReasoningService,
)

logger = logging.getLogger(__name__)


def _build_client(api_key: str | None) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key or settings.openai_api_key or None)


# ---------------------------------------------------------------------------
# Page-to-text
# ---------------------------------------------------------------------------

class OpenAIPageTextService(PageTextService):

    def __init__(
        self,
        model:      str | None = None,
        max_tokens: int | None = None,
        api_key:    str | None = None,
        client:     AsyncOpenAI | None = None,
    ) -> None:
        self._model      = model or settings.vision_model
        self._max_tokens = max_tokens or settings.extraction_max_tokens
        self._client     = client or _build_client(api_key)

    @property
    def provider_name(self) -> str:
        return "openai"

    async def extract_page(self, image: bytes, media_type: str, instruction: str) -> str:
        encoded = base64.b64encode(image).decode("ascii")
        response = await self._client.chat.completions.create(
            model=self._model,
            max_tokens=self._max_tokens,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{media_type};base64,{encoded}"},
                        },
                    ],
                }
            ],
        )
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Classification reasoning
# ---------------------------------------------------------------------------

class OpenAIReasoningService(ReasoningService):

    def __init__(
        self,
        model:      str | None = None,
        max_tokens: int | None = None,
        api_key:    str | None = None,
        client:     AsyncOpenAI | None = None,
    ) -> None:
        self._model      = model or settings.classification_model
        self._max_tokens = max_tokens or settings.classification_max_tokens
        self._client     = client or _build_client(api_key)

    @property
    def provider_name(self) -> str:
        return "openai"

    async def complete(self, prompt: str) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=0,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class OpenAIEmbeddingService(EmbeddingService):
    """
    text-embedding-3-small → 1536 dims (default)
    text-embedding-3-large → 3072 dims
    """

    def __init__(
        self,
        model:      str | None = None,
        dimensions: int | None = None,
        api_key:    str | None = None,
        client:     AsyncOpenAI | None = None,
    ) -> None:
        self._model      = model or settings.embedding_model
        self._dimensions = dimensions or settings.embedding_dimensions
        self._client     = client or _build_client(api_key)

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, texts: list[str]) -> EmbeddingResponse:
        # dimensions param only works for text-embedding-3-* models
        extra = {"dimensions": self._dimensions} if self._model.startswith("text-embedding-3") else {}
        response = await self._client.embeddings.create(
            model=self._model,
            input=texts,
            **extra,
        )
        usage = getattr(response, "usage", None)
        return EmbeddingResponse(
            items=[IndexedVector(index=item.index, vector=list(item.embedding)) for item in response.data],
            total_tokens=usage.total_tokens if usage else 0,
            model=getattr(response, "model", self._model),
        )


# ---------------------------------------------------------------------------
# Chat completion
# ---------------------------------------------------------------------------

class LangChainChatService(ChatCompletionService):
    """ChatOpenAI wrapper that replays history as LangChain messages."""

    def __init__(self, llm: ChatOpenAI | None = None) -> None:
        self._llm = llm or ChatOpenAI(
            model=settings.llm_model,
            api_key=settings.openai_api_key or None,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    async def complete_chat(self, system_prompt: str, messages: list[ChatMessage]) -> ChatCompletion:
        lc_messages: list[BaseMessage] = [SystemMessage(content=system_prompt)]
        for message in messages:
            if message.role == "assistant":
                lc_messages.append(AIMessage(content=message.content))
            else:
                lc_messages.append(HumanMessage(content=message.content))

        t0 = time.perf_counter()
        reply = await self._llm.ainvoke(lc_messages)
        latency_ms = (time.perf_counter() - t0) * 1000

        usage    = getattr(reply, "usage_metadata", None) or {}
        metadata = getattr(reply, "response_metadata", None) or {}
        content  = reply.content if isinstance(reply.content, str) else str(reply.content)

        logger.debug(
            "Chat completion | model=%s in=%s out=%s latency=%.0fms",
            metadata.get("model_name"), usage.get("input_tokens"), usage.get("output_tokens"), latency_ms,
        )
        return ChatCompletion(
            content=content,
            model=metadata.get("model_name", settings.llm_model),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            stop_reason=metadata.get("finish_reason") or "unknown",
            metadata={"latency_ms": latency_ms},
        )
