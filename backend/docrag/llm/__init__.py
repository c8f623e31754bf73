"""
Model Service Package

Narrow async interfaces over the external model capabilities the pipeline
needs, plus their OpenAI / LangChain implementations.

Public API::

    from docrag.llm import OpenAIEmbeddingService

    embedder_service = OpenAIEmbeddingService()
    response = await embedder_service.embed(["first chunk", "second chunk"])
"""

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
from docrag.llm.openai_services import (
    LangChainChatService,
    OpenAIEmbeddingService,
    OpenAIPageTextService,
    OpenAIReasoningService,
)

__all__ = [
    "ChatCompletion",
    "ChatCompletionService",
    "ChatMessage",
    "EmbeddingResponse",
    "EmbeddingService",
    "IndexedVector",
    "PageTextService",
    "ReasoningService",
    "LangChainChatService",
    "OpenAIEmbeddingService",
    "OpenAIPageTextService",
    "OpenAIReasoningService",
]
