"""
Periodic resync jobs.

Change events are dropped when dispatch fails, so these jobs bring the
knowledge base back in line with the content source:

- perform_full_sync(): re-index everything and remove orphaned chunks
- perform_incremental_sync(): flush pending events, re-index recently
  modified items and remove items that disappeared from the source
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from kbsync.config import Settings, settings as default_settings
from kbsync.core.events import ChangeEventAggregator
from kbsync.core.indexing import IndexingPipeline
from kbsync.core.logging import get_logger
from kbsync.schema import utcnow
from kbsync.sources import ALL_CONTENT_TYPES, ContentSource
from kbsync.storage import ChunkStore, OptionStore

logger = get_logger(__name__)

LAST_FULL_SYNC_OPTION = "last_full_sync"
LAST_INCREMENTAL_SYNC_OPTION = "last_incremental_sync"


class SyncService:
    def __init__(
        self,
        pipeline: IndexingPipeline,
        aggregator: ChangeEventAggregator,
        option_store: OptionStore,
        chunk_store: ChunkStore,
        source: ContentSource,
        settings: Optional[Settings] = None,
    ):
        self.pipeline = pipeline
        self.aggregator = aggregator
        self.option_store = option_store
        self.chunk_store = chunk_store
        self.source = source
        self.settings = settings or default_settings

    async def perform_full_sync(self) -> Dict[str, Any]:
        """Start a full re-index and drop chunks whose source item no longer exists."""
        logger.info("full_sync_started")
        started_at = utcnow()

        try:
            start = await self.pipeline.start_indexing(ALL_CONTENT_TYPES)
            removed = await self._remove_orphans(self._current_sources())
        except Exception as e:
            logger.error("full_sync_failed", error=str(e), exc_info=True)
            return {"success": False, "message": f"Full sync failed: {e}"}

        self.option_store.set(LAST_FULL_SYNC_OPTION, started_at.isoformat())
        logger.info("full_sync_finished", indexing=start["message"], orphans_removed=removed)
        return {
            "success": start["success"],
            "message": start["message"],
            "orphans_removed": removed,
        }

    async def perform_incremental_sync(self) -> Dict[str, Any]:
        """Re-index items modified since the last incremental sync."""
        logger.info("incremental_sync_started")
        started_at = utcnow()

        try:
            await self.aggregator.flush()

            since = self._last_incremental_sync() or (
                started_at - timedelta(hours=self.settings.incremental_lookback_hours)
            )
            modified = self.source.modified_since(since)
            if modified:
                await self.pipeline.enqueue_items(modified)

            removed = await self._remove_orphans(self._current_sources())
        except Exception as e:
            logger.error("incremental_sync_failed", error=str(e), exc_info=True)
            return {"success": False, "message": f"Incremental sync failed: {e}"}

        self.option_store.set(LAST_INCREMENTAL_SYNC_OPTION, started_at.isoformat())
        logger.info(
            "incremental_sync_finished",
            since=since.isoformat(),
            modified=len(modified),
            orphans_removed=removed,
        )
        return {
            "success": True,
            "message": f"Queued {len(modified)} modified items",
            "modified": len(modified),
            "orphans_removed": removed,
        }

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "last_full_sync": self.option_store.get(LAST_FULL_SYNC_OPTION),
            "last_incremental_sync": self.option_store.get(LAST_INCREMENTAL_SYNC_OPTION),
            "indexing": self.pipeline.get_status(),
            "queue": self.aggregator.get_queue_status(),
            "chunks": self.chunk_store.get_statistics(),
        }

    def _last_incremental_sync(self) -> Optional[datetime]:
        value = self.option_store.get(LAST_INCREMENTAL_SYNC_OPTION)
        return datetime.fromisoformat(value) if value else None

    def _current_sources(self) -> Set[Tuple[str, str]]:
        return {(item.type, item.id) for item in self.source.scan(ALL_CONTENT_TYPES)}

    async def _remove_orphans(self, current: Set[Tuple[str, str]]) -> int:
        orphans: Dict[str, List[str]] = {}
        for source_type, source_id in sorted(self.chunk_store.list_sources() - current):
            orphans.setdefault(source_type, []).append(source_id)

        for source_type, source_ids in orphans.items():
            await self.pipeline.remove_from_index(source_type, source_ids)

        return sum(len(ids) for ids in orphans.values())
