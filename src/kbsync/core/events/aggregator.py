"""
Change Event Aggregator

Turns a noisy stream of content mutation notifications into compact batched
work for the indexing pipeline.

- Events queue in memory (FIFO) until the queue reaches ``max_queue_size``,
  the periodic safety-net timer fires, or a bulk operation ends.
- A flush groups events by (content_type, action) in first-appearance order.
  Create/update groups re-read current content in one fetch, so several
  events for one id collapse into a single re-index of its latest state.
  Delete groups remove the stored chunks.
- Dispatch failures are logged and dropped. Periodic full and incremental
  resyncs restore consistency.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from kbsync.config import Settings, settings as default_settings
from kbsync.core.logging import get_logger
from kbsync.schema import ChangeAction, ChangeEvent, ChangePriority, utcnow
from kbsync.sources import ContentSource

logger = get_logger(__name__)

PUBLISHED_STATUS = "publish"


def action_for_status_change(old_status: str, new_status: str) -> ChangeAction:
    """Leaving the published state deletes, entering it creates, anything else updates."""
    if old_status == PUBLISHED_STATUS and new_status != PUBLISHED_STATUS:
        return ChangeAction.DELETE
    if old_status != PUBLISHED_STATUS and new_status == PUBLISHED_STATUS:
        return ChangeAction.CREATE
    return ChangeAction.UPDATE


class ChangeEventAggregator:
    """
    Collects change events and dispatches them to the pipeline in groups.

    Args:
        source: Reads current content for create/update groups
        pipeline: Receives ``enqueue_items(items)`` and
            ``remove_from_index(content_type, ids)``
        settings: Supplies ``max_queue_size``, ``flush_interval_seconds``
            and ``watched_content_types`` unless overridden
    """

    def __init__(
        self,
        source: ContentSource,
        pipeline,
        settings: Optional[Settings] = None,
        max_queue_size: Optional[int] = None,
        flush_interval_seconds: Optional[float] = None,
        watched_content_types: Optional[Iterable[str]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = settings or default_settings
        self.source = source
        self.pipeline = pipeline
        self.max_queue_size = max_queue_size or settings.max_queue_size
        self.flush_interval_seconds = flush_interval_seconds or settings.flush_interval_seconds

        watched = settings.watched_content_types if watched_content_types is None else watched_content_types
        self.watched_content_types = set(watched) if watched else None

        self._queue: List[ChangeEvent] = []
        self._bulk_active = False
        self._flush_lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._sleep = sleep

        self.flush_count = 0
        self.last_flush_at = None

    # ========================================================================
    # NOTIFICATION INTERFACE
    # ========================================================================

    async def on_content_changed(
        self,
        content_type: str,
        content_id: Any,
        action: Any,
        metadata: Optional[Dict[str, Any]] = None,
        priority: Optional[ChangePriority] = None,
    ) -> bool:
        """
        Host callback for a single content mutation.

        Returns False when the content type is not watched.
        """
        if self.watched_content_types is not None and content_type not in self.watched_content_types:
            logger.debug("change_ignored_unwatched_type", content_type=content_type)
            return False

        action = ChangeAction(action)
        if priority is None:
            priority = ChangePriority.HIGH if action == ChangeAction.DELETE else ChangePriority.NORMAL

        await self.record_change(ChangeEvent(
            action=action,
            content_type=content_type,
            content_id=str(content_id),
            priority=priority,
            metadata=metadata or {},
        ))
        return True

    async def on_status_changed(
        self,
        content_type: str,
        content_id: Any,
        old_status: str,
        new_status: str,
    ) -> bool:
        """Host callback for a publish-status transition."""
        return await self.on_content_changed(
            content_type,
            content_id,
            action_for_status_change(old_status, new_status),
            metadata={"status_change": f"{old_status} -> {new_status}"},
        )

    async def record_change(self, event: ChangeEvent):
        """Queue ``event``; flush once the queue is full unless a bulk operation is running."""
        self._queue.append(event)
        logger.debug(
            "change_queued",
            action=event.action.value,
            content_type=event.content_type,
            content_id=event.content_id,
            queue_size=len(self._queue),
        )

        if len(self._queue) >= self.max_queue_size and not self._bulk_active:
            await self.flush()

    # ========================================================================
    # BULK OPERATIONS
    # ========================================================================

    @property
    def bulk_active(self) -> bool:
        return self._bulk_active

    def suppress_during_bulk(self):
        """Defer flushing until resume_after_bulk()."""
        if not self._bulk_active:
            self._bulk_active = True
            logger.info("bulk_operation_started", queue_size=len(self._queue))

    async def resume_after_bulk(self):
        """End the bulk window and flush whatever accumulated during it."""
        if not self._bulk_active:
            return

        self._bulk_active = False
        logger.info("bulk_operation_ended", queue_size=len(self._queue))
        if self._queue:
            await self.flush()

    # ========================================================================
    # FLUSH
    # ========================================================================

    async def flush(self) -> Dict[str, Any]:
        """
        Drain the queue and dispatch it group by group.

        The queue is taken in one step before dispatch, so events recorded
        while dispatching wait for the next flush.
        """
        async with self._flush_lock:
            events, self._queue = self._queue, []
            if not events:
                return {"events": 0, "groups": 0, "failed_groups": 0}

            groups = self._group(events)
            failed = 0

            logger.info("flushing_change_queue", events=len(events), groups=len(groups))

            for (content_type, action), content_ids in groups.items():
                try:
                    await self._dispatch(content_type, action, content_ids)
                except Exception as e:
                    failed += 1
                    logger.error(
                        "change_dispatch_failed",
                        content_type=content_type,
                        action=action.value,
                        count=len(content_ids),
                        error=str(e),
                        exc_info=True,
                    )

            self.flush_count += 1
            self.last_flush_at = utcnow()

            logger.info(
                "change_queue_flushed",
                events=len(events),
                groups=len(groups),
                failed_groups=failed,
            )
            return {"events": len(events), "groups": len(groups), "failed_groups": failed}

    async def force_flush(self) -> Dict[str, Any]:
        """Flush now regardless of size or bulk state (manual trigger)."""
        queue_size = len(self._queue)
        if queue_size == 0:
            return {"message": "Queue is empty", "processed": 0}

        result = await self.flush()
        if result["failed_groups"]:
            return {
                "message": f"Queue processed with {result['failed_groups']} failed groups",
                "processed": queue_size,
            }
        return {"message": "Queue processed successfully", "processed": queue_size}

    @staticmethod
    def _group(events: List[ChangeEvent]) -> Dict[Tuple[str, ChangeAction], List[str]]:
        """Group ids by (content_type, action), keeping first-seen order of groups and ids."""
        groups: Dict[Tuple[str, ChangeAction], List[str]] = {}
        for event in events:
            ids = groups.setdefault((event.content_type, event.action), [])
            if event.content_id not in ids:
                ids.append(event.content_id)
        return groups

    async def _dispatch(self, content_type: str, action: ChangeAction, content_ids: List[str]):
        if action == ChangeAction.DELETE:
            await self.pipeline.remove_from_index(content_type, content_ids)
            return

        items = self.source.fetch(content_type, content_ids)
        if len(items) < len(content_ids):
            logger.info(
                "changed_content_missing",
                content_type=content_type,
                requested=len(content_ids),
                found=len(items),
            )
        if items:
            await self.pipeline.enqueue_items(items)

    # ========================================================================
    # PERIODIC SAFETY NET
    # ========================================================================

    def start(self):
        """Start the periodic flush timer on the running event loop."""
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.get_running_loop().create_task(self._run_periodic_flush())
            logger.info("periodic_flush_started", interval=self.flush_interval_seconds)

    async def stop(self, flush: bool = True):
        """Stop the timer, flushing anything still queued by default."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
            logger.info("periodic_flush_stopped")

        if flush and self._queue:
            await self.flush()

    async def _run_periodic_flush(self):
        while True:
            await self._sleep(self.flush_interval_seconds)
            if self._bulk_active:
                logger.debug("periodic_flush_deferred_bulk", queue_size=len(self._queue))
                continue
            if self._queue:
                await self.flush()

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            "queue_size": len(self._queue),
            "bulk_operations_active": self._bulk_active,
            "max_queue_size": self.max_queue_size,
            "flush_interval_seconds": self.flush_interval_seconds,
            "periodic_flush_running": self._timer_task is not None and not self._timer_task.done(),
            "flush_count": self.flush_count,
            "last_flush_at": self.last_flush_at.isoformat() if self.last_flush_at else None,
        }
