from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field as PydanticField
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, JSON, Text

from .base import UUIDMixin, utcnow
from .content import ContentItem
from .enums import JobStatus

DEFAULT_JOB_KEY = "default"


class IndexingJobRecord(SQLModel, table=True):
    """
    Persisted indexing job state.

    A single row. ``version`` is the optimistic concurrency token: every
    write must name the version it read and bumps it by one.
    """
    __tablename__ = "indexing_jobs"

    job_key: str = Field(default=DEFAULT_JOB_KEY, primary_key=True)
    version: int = Field(default=0)

    status: str = Field(default=JobStatus.IDLE.value)
    content_type: str = Field(default="all")
    total_items: int = Field(default=0)
    processed_items: int = Field(default=0)

    queue: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    errors: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))

    start_time: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    end_time: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    duration_seconds: Optional[float] = None
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))


class IndexingJob(BaseModel):
    """In-memory view of the job record, mutated and saved as one unit per batch."""
    version: int = 0
    status: JobStatus = JobStatus.IDLE
    content_type: str = "all"
    total_items: int = 0
    processed_items: int = 0
    queue: List[ContentItem] = PydanticField(default_factory=list)
    errors: List[str] = PydanticField(default_factory=list)
    error_message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    @property
    def progress(self) -> int:
        """Percent complete, 0-100."""
        if self.status == JobStatus.COMPLETED:
            return 100
        if self.status == JobStatus.CANCELLED or self.total_items <= 0:
            return 0
        return min(100, round(self.processed_items / self.total_items * 100))


class ActivityLogEntry(UUIDMixin, table=True):
    """Append-only record of finished pipeline operations."""
    __tablename__ = "activity_log"

    action: str = Field(index=True)
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime, nullable=False, index=True)
    )
