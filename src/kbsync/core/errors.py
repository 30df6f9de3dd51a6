"""
Exception hierarchy for kbsync.

Validation problems surface to the caller. Storage and job-state conflicts are
infrastructure failures that stop an indexing job. Embedding and vector index
failures are caught per chunk by the pipeline.
"""


class KBSyncError(Exception):
    """Base class for all kbsync errors."""


class ChunkValidationError(KBSyncError, ValueError):
    """Invalid chunking parameters or empty content."""


class EmptyContentError(ChunkValidationError):
    """Nothing is left to chunk once the content is normalized."""


class StorageError(KBSyncError):
    """A durable store could not be read or written."""


class JobStateConflictError(KBSyncError):
    """The job-state record changed since it was loaded."""

    def __init__(self, expected_version: int, message: str = ""):
        self.expected_version = expected_version
        super().__init__(
            message or f"Job state was modified concurrently (expected version {expected_version})"
        )


class EmbeddingError(KBSyncError):
    """The embedding provider failed to produce a vector."""


class VectorIndexError(KBSyncError):
    """The external vector index rejected or failed a request."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)
