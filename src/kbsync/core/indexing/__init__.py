"""
Core Indexing Pipeline

Resumable, time-boxed conversion of content into stored embeddings.

Components:
- pipeline.py: job state machine, batch execution, per-item processing
"""

from .pipeline import (
    IndexingPipeline,
    ItemResult,
    BatchResult,
    Embedder,
    ServiceEmbedder,
    BatchScheduler,
    AsyncioBatchScheduler,
    create_default_pipeline,
)

__all__ = [
    "IndexingPipeline",
    "ItemResult",
    "BatchResult",
    "Embedder",
    "ServiceEmbedder",
    "BatchScheduler",
    "AsyncioBatchScheduler",
    "create_default_pipeline",
]
