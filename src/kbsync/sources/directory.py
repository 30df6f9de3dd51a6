"""
Directory-backed content source.

Treats a folder of Markdown / text files as the content store:
- content type = first-level folder name
- id = POSIX path relative to the root
- title = first "# " heading, else the file stem
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from kbsync.core.logging import get_logger
from kbsync.schema import ContentItem
from .base import ALL_CONTENT_TYPES, ContentSource

logger = get_logger(__name__)

DEFAULT_EXTENSIONS = (".md", ".txt")


class DirectoryContentSource(ContentSource):
    def __init__(self, root: str, extensions: Sequence[str] = DEFAULT_EXTENSIONS):
        self.root = Path(root)
        self.extensions = tuple(ext.lower() for ext in extensions)

    def content_types(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir())

    def scan(self, content_type: str = ALL_CONTENT_TYPES) -> List[ContentItem]:
        types = self.content_types() if content_type == ALL_CONTENT_TYPES else [content_type]

        items = []
        for type_name in types:
            type_dir = self.root / type_name
            if not type_dir.is_dir():
                continue
            for path in sorted(type_dir.rglob("*")):
                if path.is_file() and path.suffix.lower() in self.extensions:
                    item = self._read(path)
                    if item is not None:
                        items.append(item)
        return items

    def fetch(self, content_type: str, content_ids: Iterable[str]) -> List[ContentItem]:
        items = []
        for content_id in content_ids:
            if ".." in Path(content_id).parts:
                continue
            path = self.root / content_id
            if not path.is_file() or self._type_of(path) != content_type:
                continue
            item = self._read(path)
            if item is not None:
                items.append(item)
        return items

    def _type_of(self, path: Path) -> Optional[str]:
        parts = path.relative_to(self.root).parts
        return parts[0] if len(parts) > 1 else None

    def _read(self, path: Path) -> Optional[ContentItem]:
        try:
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            # Fallback for non-utf8
            content = path.read_text(encoding="latin-1")
        except OSError as e:
            logger.warning("content_file_unreadable", path=str(path), error=str(e))
            return None

        return ContentItem(
            type=self._type_of(path),
            id=path.relative_to(self.root).as_posix(),
            title=self._extract_title(content) or path.stem,
            content=content,
            modified_at=datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).replace(tzinfo=None),
        )

    @staticmethod
    def _extract_title(content: str) -> Optional[str]:
        for line in content.splitlines():
            if line.startswith("# "):
                return line[2:].strip()
        return None
