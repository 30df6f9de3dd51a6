"""
kbsync Preprocessing Module

Token estimation and chunking for the indexing pipeline.
"""

from kbsync.preprocessing.tokens import (
    TOKENS_PER_CHAR,
    count_words,
    estimate_token_count,
)
from kbsync.preprocessing.text_chunker import (
    Chunk,
    ChunkConfig,
    TextChunker,
    DEFAULT_CONTENT_TYPE_CONFIGS,
    MIN_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    normalize_text,
    validate_chunk_parameters,
)

__all__ = [
    "TOKENS_PER_CHAR",
    "count_words",
    "estimate_token_count",
    "Chunk",
    "ChunkConfig",
    "TextChunker",
    "DEFAULT_CONTENT_TYPE_CONFIGS",
    "MIN_CHUNK_SIZE",
    "MAX_CHUNK_SIZE",
    "normalize_text",
    "validate_chunk_parameters",
]
