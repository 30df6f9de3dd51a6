from .chunk_store import ChunkStore
from .job_state import JobStateRepository
from .options import OptionStore
from .activity import ActivityLog

__all__ = ["ChunkStore", "JobStateRepository", "OptionStore", "ActivityLog"]
