from datetime import datetime
from typing import Iterable, List, Set

from kbsync.schema import ContentItem

ALL_CONTENT_TYPES = "all"


class ContentSource:
    """
    Protocol for the content store being mirrored into the knowledge base.

    Implementations return fresh snapshots on every call; the aggregator and
    pipeline never cache them.
    """

    def content_types(self) -> List[str]:
        """Content types this source can produce."""
        raise NotImplementedError

    def scan(self, content_type: str = ALL_CONTENT_TYPES) -> List[ContentItem]:
        """Every item of ``content_type`` (or of all types for ``"all"``)."""
        raise NotImplementedError

    def fetch(self, content_type: str, content_ids: Iterable[str]) -> List[ContentItem]:
        """Current snapshots for ``content_ids`` in one read; missing ids are omitted."""
        raise NotImplementedError

    def modified_since(self, since: datetime, content_type: str = ALL_CONTENT_TYPES) -> List[ContentItem]:
        """Items whose ``modified_at`` is newer than ``since``."""
        return [
            item for item in self.scan(content_type)
            if item.modified_at is None or item.modified_at > since
        ]

    def list_ids(self, content_type: str) -> Set[str]:
        return {item.id for item in self.scan(content_type)}
