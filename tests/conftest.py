"""
Pytest configuration and shared fixtures for kbsync tests.
"""
import pytest
from typing import Dict, List
from unittest.mock import MagicMock

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from kbsync import schema  # noqa: F401  (registers tables)
from kbsync.config import Settings
from kbsync.core.indexing import BatchScheduler, Embedder, IndexingPipeline
from kbsync.schema import ContentItem
from kbsync.sources import InMemoryContentSource
from kbsync.storage import ActivityLog, ChunkStore, JobStateRepository, OptionStore
from kbsync.utils.vector_index import VectorIndex


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def chunk_store(test_engine):
    return ChunkStore(test_engine)


@pytest.fixture
def job_state(test_engine):
    return JobStateRepository(test_engine)


@pytest.fixture
def activity_log(test_engine):
    return ActivityLog(test_engine)


@pytest.fixture
def option_store(test_engine):
    return OptionStore(test_engine)


# ============================================================================
# Mock Services
# ============================================================================

class FakeEmbedder(Embedder):
    """
    Deterministic embedder. Texts containing one of ``fail_markers``
    get an empty vector, like a failed provider call.
    """

    def __init__(self, fail_markers=()):
        self.fail_markers = list(fail_markers)
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if any(marker in text for marker in self.fail_markers):
            return []
        return [0.1] * 8


class RecordingVectorIndex(VectorIndex):
    """Vector index double that remembers what it was sent."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.upserts: Dict[str, Dict] = {}
        self.deleted: List[str] = []

    async def upsert(self, vector_id, vector, metadata) -> bool:
        if self.succeed:
            self.upserts[vector_id] = {"values": vector, "metadata": metadata}
        return self.succeed

    async def delete(self, vector_ids) -> bool:
        self.deleted.extend(vector_ids)
        return self.succeed


class ManualScheduler(BatchScheduler):
    """Captures scheduled callbacks so tests can run them explicitly."""

    def __init__(self):
        self.scheduled = []
        self.cancelled = 0

    def schedule(self, delay_seconds, callback):
        self.scheduled.append((delay_seconds, callback))

    def cancel(self):
        self.cancelled += 1

    async def run_next(self):
        _, callback = self.scheduled.pop(0)
        return await callback()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def embedder_factory():
    """Build a FakeEmbedder failing on the given markers."""
    return FakeEmbedder


@pytest.fixture
def vector_index():
    return RecordingVectorIndex()


@pytest.fixture
def failing_vector_index():
    return RecordingVectorIndex(succeed=False)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def mock_pipeline(mocker):
    """Pipeline stand-in for aggregator tests."""
    pipeline = MagicMock()
    pipeline.enqueue_items = mocker.AsyncMock(return_value={"success": True})
    pipeline.remove_from_index = mocker.AsyncMock(return_value={"success": True})
    return pipeline


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def test_settings():
    """Production-mode settings with no delays and no .env influence."""
    return Settings(
        _env_file=None,
        dev_mode=False,
        batch_size=10,
        max_execution_seconds=25.0,
        first_batch_delay_seconds=0.0,
        next_batch_delay_seconds=0.0,
        dev_batch_pause_seconds=0.0,
        vector_index_enabled=False,
    )


@pytest.fixture
def dev_settings():
    return Settings(
        _env_file=None,
        dev_mode=True,
        batch_size=3,
        dev_batch_pause_seconds=0.0,
        vector_index_enabled=True,
    )


# ============================================================================
# Sample Data Fixtures
# ============================================================================

def make_post(content_id, content=None, title=None) -> ContentItem:
    return ContentItem(
        type="post",
        id=str(content_id),
        title=title or f"Post {content_id}",
        content=content or f"This is post number {content_id}. It talks about shipping times.",
    )


@pytest.fixture(name="make_post")
def make_post_fixture():
    return make_post


@pytest.fixture
def sample_posts() -> List[ContentItem]:
    return [make_post(i) for i in range(1, 11)]


@pytest.fixture
def sample_product() -> ContentItem:
    return ContentItem(
        type="product",
        id="42",
        title="Trail Running Shoe",
        content="Lightweight trail shoe.",
        sections={
            "description": "A lightweight shoe with a grippy outsole for muddy trails.",
            "attributes": {"color": "blue", "size": "42"},
            "categories": ["Shoes", "Running"],
            "price": "$120",
        },
    )


@pytest.fixture
def content_source(sample_posts):
    return InMemoryContentSource(sample_posts)


# ============================================================================
# Pipeline Fixtures
# ============================================================================

async def _no_sleep(_seconds):
    return None


@pytest.fixture
def build_pipeline(chunk_store, job_state, activity_log, scheduler, test_settings):
    """Factory for pipelines over the shared test database."""
    def _build(source, embedder=None, vector_index=None, settings=None, clock=None):
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return IndexingPipeline(
            source=source,
            chunk_store=chunk_store,
            job_state=job_state,
            activity_log=activity_log,
            embedder=embedder or FakeEmbedder(),
            vector_index=vector_index,
            scheduler=scheduler,
            settings=settings or test_settings,
            sleep=_no_sleep,
            **kwargs,
        )
    return _build


@pytest.fixture
def pipeline(build_pipeline, content_source):
    return build_pipeline(content_source)
