"""
Model Service Interfaces

The pipeline talks to four external capabilities, each behind a narrow
async interface so vendors can be swapped (or faked in tests) without
touching pipeline code:

  PageTextService         extract page   — one page image + instruction → text
  ReasoningService        classify       — one prompt → free-form text (JSON expected)
  EmbeddingService        embed          — batch of strings → indexed vectors
  ChatCompletionService   complete chat  — system prompt + ordered messages → reply

Implementations are constructed once and injected into the stage that needs
them. None of them retries: retry policy belongs to the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Literal


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass
class IndexedVector:
    """One embedding tagged with the position of its input string."""
    index:  int
    vector: list[float]


@dataclass
class EmbeddingResponse:
    """
    Attributes:
        items:        Vectors in whatever order the service returned them.
        total_tokens: Billed input tokens for the whole batch.
        model:        Model that produced the vectors.
    """
    items:        list[IndexedVector]
    total_tokens: int = 0
    model:        str = ""


@dataclass
class ChatMessage:
    role:    Literal["user", "assistant"]
    content: str


@dataclass
class ChatCompletion:
    content:       str
    model:         str = ""
    input_tokens:  int = 0
    output_tokens: int = 0
    stop_reason:   str = "unknown"
    metadata:      dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class PageTextService(ABC):

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short identifier used in logs and errors."""

    @abstractmethod
    async def extract_page(self, image: bytes, media_type: str, instruction: str) -> str:
        """Return the text visible on one rasterized page."""


class ReasoningService(ABC):

    @property
    @abstractmethod
    def provider_name(self) -> str: ...

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Single-turn completion; the classifier parses the returned text."""


class EmbeddingService(ABC):

    @property
    @abstractmethod
    def provider_name(self) -> str: ...

    @property
    @abstractmethod
    def model(self) -> str: ...

    @property
    @abstractmethod
    def dimensions(self) -> int: ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> EmbeddingResponse:
        """One call, one vector per input; each item keeps its input index."""


class ChatCompletionService(ABC):

    @property
    @abstractmethod
    def provider_name(self) -> str: ...

    @abstractmethod
    async def complete_chat(self, system_prompt: str, messages: list[ChatMessage]) -> ChatCompletion:
        ...
