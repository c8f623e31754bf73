"""
Document Processing Package
════════════════════════════

The per-document stages the ingestion orchestrator runs in order:

  Extraction → Cleaning → Classification → Chip-Chunking → Embedding

Modules
───────
  extractor.py   Page-by-page vision extraction (PDF) or plain read (.txt)
  cleaner.py     Marker / echo / whitespace cleanup, cleaning stats
  templates.py   Document-type templates and their providers
  classifier.py  Single-call type classification + chip extraction
  chunking.py    Chip header + overlapping word windows
  embeddings.py  Sequential batch embedding with retry and validation

Design principles
─────────────────
  • Every stage is stateless and takes its model service by injection.
  • Recoverable failures degrade (page markers, fallback type); terminal
    failures raise and are handled by the orchestrator.
  • Every stage accepts an optional CancellationToken at its checkpoints.
"""

from docrag.processing.chunking import ChipChunker, ChunkingOptions, ChunkingResult, ChunkResult
from docrag.processing.classifier import ClassificationResult, DocumentClassifier
from docrag.processing.cleaner import CleaningOptions, clean_text, cleaning_stats
from docrag.processing.embeddings import Embedder, EmbeddingResult, estimate_embedding_cost
from docrag.processing.extractor import DocumentExtractor, ExtractionResult
from docrag.processing.templates import DocumentTemplate, StaticTemplateProvider

__all__ = [
    "ChipChunker",
    "ChunkingOptions",
    "ChunkingResult",
    "ChunkResult",
    "ClassificationResult",
    "DocumentClassifier",
    "CleaningOptions",
    "clean_text",
    "cleaning_stats",
    "Embedder",
    "EmbeddingResult",
    "estimate_embedding_cost",
    "DocumentExtractor",
    "ExtractionResult",
    "DocumentTemplate",
    "StaticTemplateProvider",
]
