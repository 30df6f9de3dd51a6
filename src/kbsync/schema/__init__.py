from .base import UUIDMixin, utcnow
from .enums import ChangeAction, ChangePriority, JobStatus
from .events import ChangeEvent
from .content import ContentItem
from .chunks import KnowledgeChunk, vector_id
from .jobs import IndexingJobRecord, IndexingJob, ActivityLogEntry, DEFAULT_JOB_KEY
from .options import OptionRecord

__all__ = [
    "UUIDMixin", "utcnow",
    "ChangeAction", "ChangePriority", "JobStatus",
    "ChangeEvent",
    "ContentItem",
    "KnowledgeChunk", "vector_id",
    "IndexingJobRecord", "IndexingJob", "ActivityLogEntry", "DEFAULT_JOB_KEY",
    "OptionRecord",
]
