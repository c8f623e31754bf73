"""
Chip-Chunk Embedder  —  Sequential Batches with Retry & Validation
═══════════════════════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one service call per EMBEDDING_BATCH_SIZE chunks
  • Deterministic ordering: batches run one after another, and each batch's
    vectors are re-sorted by the service's per-item index before being
    attached, so chunk[i].embedding always belongs to chunk[i].content
  • All-or-nothing: vectors are attached only once every batch succeeded;
    a terminal failure leaves the input chunks untouched
  • Integrity: every vector length is checked against the configured
    dimension; a mismatch is an error, never a silent pad/truncate

Retry policy (per batch):
  rate limit ("rate" / "429" / RateLimitError) → base × 2^attempt
  anything else                                → base × attempt
  AuthenticationError / PermissionDeniedError  → fail immediately

Cost accounting:
  text-embedding-3-small ≈ $0.00002 / 1K tokens
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace

from docrag.core.cancellation import CancellationToken, checkpoint
from docrag.core.config import settings
from docrag.core.exceptions import (
    EmbeddingDimensionError,
    EmbeddingError,
    OperationCancelled,
    RetryExhaustedError,
)
from docrag.core.retry import RetryPolicy, is_retryable_error, rate_limit_aware_backoff
from docrag.llm.base import EmbeddingResponse, EmbeddingService
from docrag.processing.chunking import ChunkResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE = 100       # texts per service call (OpenAI allows 2048)
COST_PER_1K_TOKENS   = 0.00002   # USD, text-embedding-3-small
CHARS_PER_TOKEN_EST  = 4         # rough English average, used before a call


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingResult:
    """
    chunks         : copies of the input chunks with `embedding` set, same order
    total_tokens   : billed tokens reported by the service
    batches        : number of service calls that succeeded
    estimated_cost : USD estimate from total_tokens
    elapsed_ms     : wall time for all batches
    """
    chunks:         list[ChunkResult] = field(default_factory=list)
    total_tokens:   int               = 0
    batches:        int               = 0
    estimated_cost: float             = 0.0
    elapsed_ms:     float             = 0.0


@dataclass
class QueryEmbedding:
    vector:     list[float]
    tokens:     int   = 0
    elapsed_ms: float = 0.0


@dataclass
class CostEstimate:
    estimated_tokens: int
    estimated_cost:   float


def estimate_cost(tokens: int) -> float:
    return tokens / 1000 * COST_PER_1K_TOKENS


def estimate_embedding_cost(texts: list[str]) -> CostEstimate:
    """Pre-flight estimate (no service call)."""
    tokens = sum(max(1, len(t) // CHARS_PER_TOKEN_EST) for t in texts)
    return CostEstimate(estimated_tokens=tokens, estimated_cost=estimate_cost(tokens))


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------

class Embedder:
    """
    Usage:
        embedder = Embedder(OpenAIEmbeddingService())
        result   = await embedder.embed_chunks(chunking_result.chunks)
        query    = await embedder.embed_query("when does the lease end?")
    """

    def __init__(
        self,
        service:      EmbeddingService,
        batch_size:   int | None = None,
        dimensions:   int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._service    = service
        self._batch_size = batch_size or settings.embedding_batch_size or EMBEDDING_BATCH_SIZE
        self._dimensions = dimensions or settings.embedding_dimensions
        self._retry      = retry_policy or RetryPolicy(
            max_attempts=settings.embedding_max_retries,
            backoff=rate_limit_aware_backoff(settings.embedding_retry_base_delay),
            retryable=is_retryable_error,
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def model_info(self) -> dict:
        return {
            "provider":           self._service.provider_name,
            "model":              self._service.model,
            "dimensions":         self._dimensions,
            "batch_size":         self._batch_size,
            "cost_per_1k_tokens": COST_PER_1K_TOKENS,
        }

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def embed_chunks(
        self,
        chunks:       list[ChunkResult],
        cancellation: CancellationToken | None = None,
    ) -> EmbeddingResult:
        if not chunks:
            return EmbeddingResult()

        t0 = time.monotonic()
        batches = [chunks[i:i + self._batch_size] for i in range(0, len(chunks), self._batch_size)]

        logger.info(
            "Embedder | chunks=%d batches=%d model=%s dims=%d",
            len(chunks), len(batches), self._service.model, self._dimensions,
        )

        vectors: list[list[float]] = []
        total_tokens = 0
        for batch_no, batch in enumerate(batches, start=1):
            await checkpoint(cancellation, "Embedding cancelled")

            label    = f"embedding batch {batch_no}/{len(batches)}"
            response = await self._call_with_retry([c.content for c in batch], label)
            vectors.extend(self._align(response, expected=len(batch), offset=len(vectors)))
            total_tokens += response.total_tokens

            logger.debug("Embedder | batch=%d/%d size=%d tokens=%d", batch_no, len(batches), len(batch), response.total_tokens)

        embedded   = [replace(chunk, embedding=vector) for chunk, vector in zip(chunks, vectors)]
        elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "Embedder done | vectors=%d tokens=%d cost=$%.6f elapsed_ms=%.0f",
            len(embedded), total_tokens, estimate_cost(total_tokens), elapsed_ms,
        )
        return EmbeddingResult(
            chunks=embedded,
            total_tokens=total_tokens,
            batches=len(batches),
            estimated_cost=estimate_cost(total_tokens),
            elapsed_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def embed_query(self, text: str) -> QueryEmbedding:
        if not text or not text.strip():
            raise ValueError("Query text must be non-empty")

        t0 = time.monotonic()
        response = await self._call_with_retry([text], "query embedding")
        vector   = self._align(response, expected=1, offset=0)[0]
        return QueryEmbedding(
            vector=vector,
            tokens=response.total_tokens,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call_with_retry(self, texts: list[str], label: str) -> EmbeddingResponse:
        try:
            return await self._retry.run(lambda: self._service.embed(texts), label=label)
        except OperationCancelled:
            raise
        except RetryExhaustedError as exc:
            raise EmbeddingError(
                f"Embedding failed after {exc.attempts} attempts: {exc.last_error}",
                provider_name=self._service.provider_name,
            ) from exc
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding failed: {exc}",
                provider_name=self._service.provider_name,
            ) from exc

    def _align(self, response: EmbeddingResponse, expected: int, offset: int) -> list[list[float]]:
        """Order vectors by input index and validate count + dimension."""
        items = sorted(response.items, key=lambda item: item.index)
        if [item.index for item in items] != list(range(expected)):
            raise EmbeddingError(
                f"Embedding service returned {len(items)} vectors for {expected} inputs",
                provider_name=self._service.provider_name,
            )
        for item in items:
            if len(item.vector) != self._dimensions:
                raise EmbeddingDimensionError(self._dimensions, len(item.vector), offset + item.index)
        return [item.vector for item in items]
