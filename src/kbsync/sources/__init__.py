from .base import ContentSource, ALL_CONTENT_TYPES
from .memory import InMemoryContentSource
from .directory import DirectoryContentSource

__all__ = [
    "ContentSource",
    "ALL_CONTENT_TYPES",
    "InMemoryContentSource",
    "DirectoryContentSource",
]
