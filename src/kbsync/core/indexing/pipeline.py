"""
Resumable indexing pipeline.

Coordinates: scan → chunk → embed → store → (optional) vector index mirror

The job lives in one versioned record (status, counters, work queue, errors).
Each invocation loads it, processes one time-boxed batch and writes it back
with a compare-and-swap, so short-lived invocations can pick up where the
previous one stopped.

State machine:
    idle → preparing → running → completed | failed | cancelled
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from kbsync.config import Settings, settings as default_settings
from kbsync.core.errors import (
    ChunkValidationError,
    EmbeddingError,
    EmptyContentError,
    JobStateConflictError,
    KBSyncError,
)
from kbsync.core.logging import get_logger
from kbsync.preprocessing import Chunk, TextChunker
from kbsync.schema import ContentItem, IndexingJob, JobStatus, utcnow, vector_id
from kbsync.sources import ALL_CONTENT_TYPES, ContentSource
from kbsync.storage import ActivityLog, ChunkStore, JobStateRepository
from kbsync.utils.embeddings import EmbeddingService, get_embedding_service
from kbsync.utils.vector_index import VectorIndex

logger = get_logger(__name__)

MAX_SAVE_ATTEMPTS = 3
VECTOR_PREVIEW_CHARS = 1000


# ============================================================================
# RESULT MODELS
# ============================================================================

class ItemResult(BaseModel):
    """Result from processing a single content item."""
    source_type: str
    source_id: str
    chunks_created: int = 0
    chunks_stored: int = 0
    failed_chunks: List[int] = Field(default_factory=list)
    vector_failures: List[int] = Field(default_factory=list)
    removed_chunks: List[int] = Field(default_factory=list)
    error: Optional[str] = None


class BatchResult(BaseModel):
    """Result from one batch invocation."""
    status: JobStatus
    processed: int = 0
    remaining: int = 0
    errors: List[str] = Field(default_factory=list)
    timed_out: bool = False


# ============================================================================
# COMPONENT PROTOCOLS (Abstract Interfaces)
# ============================================================================

class Embedder:
    """Protocol for embedding generation: text → vector, empty on failure."""
    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class BatchScheduler:
    """Protocol for deferring the next batch (production mode)."""
    def schedule(self, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError


# ============================================================================
# CONCRETE IMPLEMENTATIONS
# ============================================================================

class ServiceEmbedder(Embedder):
    """Adapter for the kbsync embedding service."""

    def __init__(self, embedding_service: Optional[EmbeddingService] = None):
        self.embedding_service = embedding_service or get_embedding_service()

    async def embed(self, text: str) -> List[float]:
        try:
            return await self.embedding_service.embed_async(text)
        except EmbeddingError as e:
            logger.warning("embedding_failed", error=str(e), text_length=len(text))
            return []


class AsyncioBatchScheduler(BatchScheduler):
    """Runs the next batch on the current event loop after a delay."""

    def __init__(self):
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks = set()

    def schedule(self, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_seconds, self._spawn, callback)

    def _spawn(self, callback: Callable[[], Awaitable[Any]]):
        self._handle = None
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: "asyncio.Task"):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("scheduled_batch_crashed", error=str(task.exception()))

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


# ============================================================================
# MAIN INDEXING PIPELINE
# ============================================================================

class IndexingPipeline:
    """
    Drives content through chunking, embedding and storage in resumable batches.

    Flow:
    1. start_indexing() scans content into a persisted work queue
    2. process_batch() pops up to ``batch_size`` items and processes them
       sequentially within ``max_execution_seconds``
    3. tick() (production) reschedules itself while work remains;
       run_until_drained() (dev mode) loops with a pause between batches
    4. An empty queue completes the job and appends to the activity log

    Item and chunk failures are recorded in the job's error list and never
    fail the job. Only bookkeeping failures (job state or storage) do.
    """

    def __init__(
        self,
        source: ContentSource,
        chunk_store: ChunkStore,
        job_state: JobStateRepository,
        activity_log: ActivityLog,
        embedder: Embedder,
        chunker: Optional[TextChunker] = None,
        vector_index: Optional[VectorIndex] = None,
        scheduler: Optional[BatchScheduler] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.source = source
        self.chunk_store = chunk_store
        self.job_state = job_state
        self.activity_log = activity_log
        self.embedder = embedder
        self.chunker = chunker or TextChunker()
        self.vector_index = vector_index
        self.scheduler = scheduler or AsyncioBatchScheduler()
        self.settings = settings or default_settings
        self._clock = clock
        self._sleep = sleep
        self._batch_lock = asyncio.Lock()

        logger.info(
            "indexing_pipeline_initialized",
            dev_mode=self.settings.dev_mode,
            batch_size=self.settings.batch_size,
            vector_index=self.use_vector_index,
        )

    @property
    def use_vector_index(self) -> bool:
        return self.vector_index is not None and self.settings.use_vector_index

    # ========================================================================
    # CONTROL SURFACE
    # ========================================================================

    async def start_indexing(self, content_type: str = ALL_CONTENT_TYPES) -> Dict[str, Any]:
        """
        Scan ``content_type`` (or everything) and start a new job.

        Returns ``{"success": bool, "message": str}``.
        """
        logger.info("indexing_start_requested", content_type=content_type)

        def claim(job: IndexingJob) -> Optional[IndexingJob]:
            if job.status.is_active:
                return None
            return IndexingJob(
                version=job.version,
                status=JobStatus.PREPARING,
                content_type=content_type,
                start_time=utcnow(),
            )

        try:
            job, claimed = self._update_job(claim)
        except KBSyncError as e:
            logger.error("indexing_start_failed", error=str(e))
            return {"success": False, "message": f"Failed to start indexing: {e}"}

        if not claimed:
            return {"success": False, "message": "Indexing is already in progress"}

        try:
            items = self.source.scan(content_type)
            logger.info("content_scanned", content_type=content_type, items=len(items))

            def begin(job: IndexingJob) -> Optional[IndexingJob]:
                if job.status != JobStatus.PREPARING:
                    return None
                # Items enqueued while scanning stay queued behind the scan
                queue = list(items) + list(job.queue)
                return job.model_copy(update={
                    "status": JobStatus.RUNNING,
                    "queue": queue,
                    "total_items": len(queue),
                    "processed_items": 0,
                    "errors": [],
                })

            job, started = self._update_job(begin)
        except Exception as e:
            logger.error("indexing_start_failed", content_type=content_type, error=str(e), exc_info=True)
            self._fail(str(e))
            return {"success": False, "message": f"Failed to start indexing: {e}"}

        if not started:
            return {"success": False, "message": f"Indexing was {job.status.value} before it started"}

        if not job.queue:
            self._complete()
            return {"success": True, "message": "No content found to index"}

        logger.info("indexing_started", content_type=content_type, total=job.total_items)
        await self._continue(self.settings.first_batch_delay_seconds)
        return {"success": True, "message": f"Started indexing {job.total_items} items"}

    def get_status(self) -> Dict[str, Any]:
        """Coherent snapshot of the current job."""
        job = self.job_state.load()
        return {
            "status": job.status.value,
            "progress": job.progress,
            "total": job.total_items,
            "processed": job.processed_items,
            "errors": list(job.errors),
            "message": self._status_message(job),
        }

    async def cancel(self) -> Dict[str, Any]:
        """
        Cancel the active job.

        A batch already in flight finishes its items but its results are not
        committed to the job; the queue and counters are discarded.
        """
        def mark_cancelled(job: IndexingJob) -> Optional[IndexingJob]:
            if not job.status.is_active:
                return None
            return job.model_copy(update={
                "status": JobStatus.CANCELLED,
                "queue": [],
                "total_items": 0,
                "processed_items": 0,
                "end_time": utcnow(),
            })

        self.scheduler.cancel()
        job, cancelled = self._update_job(mark_cancelled)
        if not cancelled:
            return {"success": False, "message": f"No active indexing job (status: {job.status.value})"}

        logger.info("indexing_cancelled")
        return {"success": True, "message": "Indexing cancelled"}

    # ========================================================================
    # AGGREGATOR ENTRY POINTS
    # ========================================================================

    async def enqueue_items(self, items: Iterable[ContentItem]) -> Dict[str, Any]:
        """
        Append content snapshots to the work queue.

        Joins the active job if there is one, otherwise starts a new running
        job holding just these items.
        """
        items = list(items)
        if not items:
            return {"success": True, "queued": 0}

        started_new = False

        def append(job: IndexingJob) -> IndexingJob:
            nonlocal started_new
            if job.status.is_active:
                started_new = False
                return job.model_copy(update={
                    "queue": list(job.queue) + items,
                    "total_items": job.total_items + len(items),
                })
            started_new = True
            return IndexingJob(
                version=job.version,
                status=JobStatus.RUNNING,
                content_type="changes",
                queue=items,
                total_items=len(items),
                start_time=utcnow(),
            )

        job, _ = self._update_job(append)
        logger.info("items_enqueued", count=len(items), new_job=started_new, queue_size=len(job.queue))

        if started_new:
            await self._continue(self.settings.first_batch_delay_seconds)
        return {"success": True, "queued": len(items)}

    async def enqueue_for_indexing(self, content_type: str, content_ids: Iterable[str]) -> Dict[str, Any]:
        """Fetch current snapshots for ``content_ids`` and enqueue them."""
        content_ids = [str(content_id) for content_id in content_ids]
        items = self.source.fetch(content_type, content_ids)

        missing = set(content_ids) - {item.id for item in items}
        if missing:
            logger.info("enqueue_items_missing", content_type=content_type, missing=sorted(missing))

        return await self.enqueue_items(items)

    async def remove_from_index(self, content_type: str, content_ids: Iterable[str]) -> Dict[str, Any]:
        """Delete every stored chunk (and mirrored vector) of the given items."""
        removed_chunks = 0
        content_ids = [str(content_id) for content_id in content_ids]

        for content_id in content_ids:
            indexes = self.chunk_store.delete_source(content_type, content_id)
            removed_chunks += len(indexes)

            await self._delete_vectors(content_type, content_id, indexes)

        logger.info(
            "content_removed_from_index",
            content_type=content_type,
            sources=len(content_ids),
            chunks=removed_chunks,
        )
        return {"success": True, "sources": len(content_ids), "removed_chunks": removed_chunks}

    # ========================================================================
    # BATCH EXECUTION
    # ========================================================================

    async def tick(self) -> BatchResult:
        """Scheduled entry point: process one batch, then schedule the next."""
        result = await self.process_batch()
        if result.status == JobStatus.RUNNING and result.remaining > 0:
            self.scheduler.schedule(self.settings.next_batch_delay_seconds, self.tick)
        return result

    async def run_until_drained(self, max_batches: Optional[int] = None) -> Dict[str, Any]:
        """
        Fast mode: process batches back to back until the queue is empty.

        Bounded by ``max_batches`` (default ``dev_max_batches``) and pauses
        ``dev_batch_pause_seconds`` between batches.
        """
        limit = max_batches or self.settings.dev_max_batches

        for batch_number in range(1, limit + 1):
            result = await self.process_batch()
            if result.status != JobStatus.RUNNING or result.remaining == 0:
                break
            if batch_number < limit:
                await self._sleep(self.settings.dev_batch_pause_seconds)
        else:
            logger.warning("batch_limit_reached", max_batches=limit)

        return self.get_status()

    async def process_batch(self) -> BatchResult:
        """
        Process one batch from the persisted queue.

        Items are handled strictly in queue order. Items left over when the
        time budget runs out stay queued for the next invocation.
        """
        async with self._batch_lock:
            try:
                job = self.job_state.load()
            except KBSyncError as e:
                logger.error("batch_load_failed", error=str(e))
                self._fail(str(e))
                return BatchResult(status=JobStatus.FAILED)

            if job.status != JobStatus.RUNNING:
                logger.debug("batch_skipped", status=job.status.value)
                return BatchResult(status=job.status, remaining=len(job.queue))

            if not job.queue:
                job = self._complete()
                return BatchResult(status=job.status)

            started = self._clock()
            batch = job.queue[: self.settings.batch_size]
            done: List[ContentItem] = []
            errors: List[str] = []
            timed_out = False

            for item in batch:
                if self._clock() - started > self.settings.max_execution_seconds:
                    logger.info("batch_time_budget_exhausted", processed=len(done), batch=len(batch))
                    timed_out = True
                    break

                try:
                    result = await self.process_item(item)
                    if result.error:
                        errors.append(result.error)
                except Exception as e:
                    logger.error(
                        "item_processing_failed",
                        source_type=item.type,
                        source_id=item.id,
                        error=str(e),
                        exc_info=True,
                    )
                    errors.append(f"Failed to process {item.type} #{item.id}: {e}")
                done.append(item)

            committed = False

            def apply_batch(current: IndexingJob) -> Optional[IndexingJob]:
                nonlocal committed
                committed = False
                if current.status != JobStatus.RUNNING:
                    return None
                done_keys = [item.key for item in done]
                if [item.key for item in current.queue[: len(done)]] != done_keys:
                    # Another invocation already committed these items
                    return None
                committed = True
                return current.model_copy(update={
                    "queue": list(current.queue[len(done):]),
                    "processed_items": current.processed_items + len(done),
                    "errors": list(current.errors) + errors,
                })

            try:
                job, _ = self._update_job(apply_batch)
            except KBSyncError as e:
                logger.error("batch_bookkeeping_failed", error=str(e))
                self._fail(str(e))
                return BatchResult(status=JobStatus.FAILED, processed=len(done), errors=errors)

            if not committed:
                logger.info("batch_not_committed", status=job.status.value, processed=len(done))
                return BatchResult(
                    status=job.status,
                    processed=len(done),
                    remaining=len(job.queue),
                    errors=errors,
                    timed_out=timed_out,
                )

            logger.info(
                "batch_processed",
                processed=len(done),
                errors=len(errors),
                remaining=len(job.queue),
                progress=job.progress,
            )

            if not job.queue:
                job = self._complete()

            return BatchResult(
                status=job.status,
                processed=len(done),
                remaining=len(job.queue),
                errors=errors,
                timed_out=timed_out,
            )

    async def process_item(self, item: ContentItem) -> ItemResult:
        """
        Chunk, embed and store one item.

        A chunk whose embedding fails is skipped; the rest of the item still
        goes through. Rows an earlier version of the item left at skipped
        indexes or past the new chunk count are removed, together with their
        mirrored vectors. Vector index failures never undo local storage.
        """
        result = ItemResult(source_type=item.type, source_id=item.id)
        logger.debug("processing_item", source_type=item.type, source_id=item.id)

        try:
            chunks = self._chunk_item(item)
        except EmptyContentError:
            chunks = []
        except ChunkValidationError as e:
            result.error = f"Failed to process {item.type} #{item.id}: {e}"
            return result

        if not chunks:
            logger.info("item_skipped_no_chunks", source_type=item.type, source_id=item.id)
            return result

        result.chunks_created = len(chunks)

        for chunk in chunks:
            vector = await self.embedder.embed(chunk.text)
            if not vector:
                logger.warning(
                    "chunk_skipped_no_embedding",
                    source_type=item.type,
                    source_id=item.id,
                    chunk_index=chunk.index,
                )
                result.failed_chunks.append(chunk.index)
                continue

            self.chunk_store.upsert_chunk(item, chunk, vector)
            result.chunks_stored += 1

            if self.use_vector_index:
                mirrored = await self.vector_index.upsert(
                    vector_id(item.type, item.id, chunk.index),
                    vector,
                    self._vector_metadata(item, chunk),
                )
                if not mirrored:
                    result.vector_failures.append(chunk.index)

        stale = self.chunk_store.delete_chunks(item.type, item.id, result.failed_chunks)
        stale += self.chunk_store.prune_beyond(item.type, item.id, len(chunks))
        result.removed_chunks = sorted(stale)

        vectors_removed = await self._delete_vectors(item.type, item.id, result.removed_chunks)

        problems = []
        if result.failed_chunks:
            problems.append(f"embedding failed for chunks {result.failed_chunks}")
        if result.vector_failures:
            problems.append(f"vector index upsert failed for chunks {result.vector_failures}")
        if not vectors_removed:
            problems.append(f"vector index delete failed for chunks {result.removed_chunks}")
        if problems:
            result.error = f"Failed to process {item.type} #{item.id}: " + "; ".join(problems)

        logger.info(
            "item_processed",
            source_type=item.type,
            source_id=item.id,
            chunks=len(chunks),
            stored=result.chunks_stored,
            removed=len(result.removed_chunks),
        )
        return result

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _chunk_item(self, item: ContentItem) -> List[Chunk]:
        config = self.chunker.get_config(item.type)
        metadata = {"source_type": item.type, "source_id": item.id}

        if config.preserve_structure and item.sections:
            sections = dict(item.sections)
            if item.title and "title" not in sections:
                sections = {"title": item.title, **sections}
            return self.chunker.chunk_structured_content(sections, item.type, metadata=metadata)

        if not item.content or not item.content.strip():
            return []
        return self.chunker.chunk_content(item.content, item.type, metadata=metadata)

    async def _delete_vectors(self, content_type: str, content_id: str, indexes: List[int]) -> bool:
        """Drop mirrored vectors for the given chunk indexes; False if the index refused."""
        if not indexes or not self.use_vector_index:
            return True

        deleted = await self.vector_index.delete(
            [vector_id(content_type, content_id, index) for index in indexes]
        )
        if not deleted:
            logger.warning(
                "vector_delete_failed",
                source_type=content_type,
                source_id=content_id,
                chunk_indexes=indexes,
            )
        return deleted

    @staticmethod
    def _vector_metadata(item: ContentItem, chunk: Chunk) -> Dict[str, Any]:
        return {
            "type": item.type,
            "source_id": item.id,
            "title": item.title,
            "content": chunk.text[:VECTOR_PREVIEW_CHARS],
            "chunk_index": chunk.index,
        }

    async def _continue(self, delay_seconds: float):
        """Hand the running job to the fast loop (dev) or the scheduler."""
        if self.settings.dev_mode:
            await self.run_until_drained()
        else:
            self.scheduler.schedule(delay_seconds, self.tick)

    def _update_job(self, mutate: Callable[[IndexingJob], Optional[IndexingJob]]):
        """
        Load, mutate and save the job with optimistic concurrency.

        ``mutate`` returns None to leave the record untouched. Returns
        ``(job, saved)``.
        """
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            current = self.job_state.load()
            updated = mutate(current)
            if updated is None:
                return current, False
            try:
                return self.job_state.save(updated), True
            except JobStateConflictError:
                logger.info("job_state_conflict", attempt=attempt, version=current.version)

        raise JobStateConflictError(
            current.version,
            f"Job state kept changing; gave up after {MAX_SAVE_ATTEMPTS} attempts",
        )

    def _complete(self) -> IndexingJob:
        end_time = utcnow()

        def finish(job: IndexingJob) -> Optional[IndexingJob]:
            if not job.status.is_active or job.queue:
                return None
            duration = (end_time - job.start_time).total_seconds() if job.start_time else 0.0
            return job.model_copy(update={
                "status": JobStatus.COMPLETED,
                "queue": [],
                "end_time": end_time,
                "duration_seconds": duration,
            })

        job, completed = self._update_job(finish)
        if not completed:
            return job

        details = {
            "content_type": job.content_type,
            "items_processed": job.processed_items,
            "duration": job.duration_seconds,
            "errors": len(job.errors),
        }
        try:
            self.activity_log.record("indexing_complete", details)
        except Exception as e:
            logger.error("activity_log_failed", error=str(e))

        logger.info("indexing_completed", **details)
        return job

    def _fail(self, message: str):
        """Move the job to ``failed`` and stop scheduling."""
        self.scheduler.cancel()

        def mark_failed(job: IndexingJob) -> IndexingJob:
            return job.model_copy(update={
                "status": JobStatus.FAILED,
                "error_message": message,
                "end_time": utcnow(),
            })

        try:
            self._update_job(mark_failed)
        except KBSyncError as e:
            logger.critical("job_failure_not_recorded", error=str(e), original_error=message)
            return

        logger.error("indexing_failed", error=message)

    @staticmethod
    def _status_message(job: IndexingJob) -> str:
        if job.status == JobStatus.PREPARING:
            return "Preparing content for indexing..."
        if job.status == JobStatus.RUNNING:
            return f"Indexing in progress... {job.progress}% complete"
        if job.status == JobStatus.COMPLETED:
            return f"Indexing completed successfully ({job.processed_items} items)"
        if job.status == JobStatus.FAILED:
            return f"Indexing failed: {job.error_message or 'unknown error'}"
        if job.status == JobStatus.CANCELLED:
            return "Indexing cancelled"
        return "Ready to index"


# ============================================================================
# FACTORY FUNCTION (Easy initialization with defaults)
# ============================================================================

def create_default_pipeline(
    source: Optional[ContentSource] = None,
    settings: Optional[Settings] = None,
    engine=None,
) -> IndexingPipeline:
    """
    Create an IndexingPipeline wired to the configured database, embedding
    model and (when enabled) vector index.
    """
    from kbsync.sources import DirectoryContentSource
    from kbsync.utils.db import create_db_engine, init_db
    from kbsync.utils.vector_index import PineconeVectorIndex

    settings = settings or default_settings

    if source is None:
        if not settings.content_root:
            raise ValueError("No content source given and CONTENT_ROOT is not set")
        source = DirectoryContentSource(settings.content_root)

    if engine is None:
        engine = create_db_engine(settings.database_url)
        init_db(engine)

    vector_index = None
    if settings.use_vector_index:
        if settings.vector_index_endpoint and settings.vector_index_api_key:
            vector_index = PineconeVectorIndex.from_settings(settings)
        else:
            logger.warning("vector_index_not_configured")

    pipeline = IndexingPipeline(
        source=source,
        chunk_store=ChunkStore(engine),
        job_state=JobStateRepository(engine),
        activity_log=ActivityLog(engine),
        embedder=ServiceEmbedder(get_embedding_service(settings.embedding_model)),
        vector_index=vector_index,
        settings=settings,
    )

    logger.info("default_pipeline_created")
    return pipeline
