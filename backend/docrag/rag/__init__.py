"""
RAG package — retrieval and grounded chat.

Heavy wiring (database session factory) is only touched when the
ConversationHistory is constructed, so the retriever and prompt builder can
be imported and tested without a database.
"""

from docrag.rag.chat import DEFAULT_SYSTEM_PROMPT, ChatPipeline, ChatResponse, build_prompt
from docrag.rag.history import ConversationHistory
from docrag.rag.retriever import ChipChunkRetriever, Retriever

__all__ = [
    "ChatPipeline",
    "ChatResponse",
    "ChipChunkRetriever",
    "ConversationHistory",
    "DEFAULT_SYSTEM_PROMPT",
    "Retriever",
    "build_prompt",
]
