"""
Exception hierarchy for the ingestion and retrieval pipeline.

    DocRagError                 (base, carries optional provider_name)
    +-- UnsupportedFileTypeError  file extension the extractor cannot handle
    +-- ExtractionError           source file cannot be opened / rasterized
    +-- RetryExhaustedError       a RetryPolicy ran out of attempts
    +-- EmbeddingError            terminal embedding failure
    |   +-- EmbeddingDimensionError   vector length != configured dimension
    +-- StoreError                persistence / similarity lookup failure
    +-- DocumentNotFoundError     document id not present in the store
    +-- ReprocessingError         document is not eligible for reprocessing

OperationCancelled is not a DocRagError: cancellation is a
control-flow path that triggers cleanup, not a failure marker.
"""

from __future__ import annotations


class DocRagError(Exception):
    """Base exception. ``str()`` prefixes the provider name when present."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


class UnsupportedFileTypeError(DocRagError):
    """Raised when the extractor receives a file it has no strategy for."""

    def __init__(self, extension: str) -> None:
        self.extension = extension
        super().__init__(f"Unsupported file type: {extension or '<none>'}")


class ExtractionError(DocRagError):
    """Raised when the source document itself cannot be read."""


class RetryExhaustedError(DocRagError):
    """Raised by RetryPolicy.run() after the final failed attempt."""

    def __init__(self, label: str, attempts: int, last_error: BaseException) -> None:
        self.label      = label
        self.attempts   = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")


class EmbeddingError(DocRagError):
    """Terminal embedding failure. Aborts the run; nothing is persisted."""


class EmbeddingDimensionError(EmbeddingError):
    """The embedding service returned a vector of the wrong length."""

    def __init__(self, expected: int, actual: int, position: int) -> None:
        self.expected = expected
        self.actual   = actual
        self.position = position
        super().__init__(
            f"Embedding dimension mismatch at position {position}: "
            f"expected {expected}, got {actual}"
        )


class StoreError(DocRagError):
    """Raised when the chunk store rejects a read or write."""


class DocumentNotFoundError(DocRagError):
    def __init__(self, document_id: object) -> None:
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class ReprocessingError(DocRagError):
    """Document lacks the stored state (full text, file type) needed to reprocess."""


class OperationCancelled(Exception):
    """Raised at a cancellation checkpoint once the run's token is set."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        self.message = message
        super().__init__(message)
