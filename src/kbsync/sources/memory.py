from typing import Dict, Iterable, List, Tuple

from kbsync.core.logging import get_logger
from kbsync.schema import ContentItem, utcnow
from .base import ALL_CONTENT_TYPES, ContentSource

logger = get_logger(__name__)


class InMemoryContentSource(ContentSource):
    """Dict-backed content source, insertion ordered."""

    def __init__(self, items: Iterable[ContentItem] = ()):
        self._items: Dict[Tuple[str, str], ContentItem] = {}
        for item in items:
            self.put(item)

    def put(self, item: ContentItem) -> ContentItem:
        """Add or replace an item, stamping ``modified_at`` if unset."""
        if item.modified_at is None:
            item = item.model_copy(update={"modified_at": utcnow()})
        self._items[(item.type, item.id)] = item
        return item

    def remove(self, content_type: str, content_id: str):
        self._items.pop((content_type, str(content_id)), None)

    def content_types(self) -> List[str]:
        return list(dict.fromkeys(content_type for content_type, _ in self._items))

    def scan(self, content_type: str = ALL_CONTENT_TYPES) -> List[ContentItem]:
        return [
            item for (item_type, _), item in self._items.items()
            if content_type == ALL_CONTENT_TYPES or item_type == content_type
        ]

    def fetch(self, content_type: str, content_ids: Iterable[str]) -> List[ContentItem]:
        items = []
        for content_id in content_ids:
            item = self._items.get((content_type, str(content_id)))
            if item is not None:
                items.append(item)
        return items
