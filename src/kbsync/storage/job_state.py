"""
Versioned job-state repository.

The whole job (status, counters, queue, errors) is one row written with a
compare-and-swap on ``version``. Two overlapping invocations cannot both
commit a batch: the second write fails with JobStateConflictError.
"""
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from kbsync.core.errors import JobStateConflictError, StorageError
from kbsync.core.logging import get_logger
from kbsync.schema import (
    ContentItem,
    DEFAULT_JOB_KEY,
    IndexingJob,
    IndexingJobRecord,
    JobStatus,
    utcnow,
)

logger = get_logger(__name__)


class JobStateRepository:
    def __init__(self, engine: Engine, job_key: str = DEFAULT_JOB_KEY):
        self.engine = engine
        self.job_key = job_key

    def load(self) -> IndexingJob:
        """Current job snapshot; an idle job at version 0 if none was ever saved."""
        try:
            with Session(self.engine) as session:
                record = session.get(IndexingJobRecord, self.job_key)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load job state: {e}") from e

        if record is None:
            return IndexingJob()

        return IndexingJob(
            version=record.version,
            status=JobStatus(record.status),
            content_type=record.content_type,
            total_items=record.total_items,
            processed_items=record.processed_items,
            queue=[ContentItem.model_validate(item) for item in (record.queue or [])],
            errors=list(record.errors or []),
            error_message=record.error_message,
            start_time=record.start_time,
            end_time=record.end_time,
            duration_seconds=record.duration_seconds,
        )

    def save(self, job: IndexingJob) -> IndexingJob:
        """
        Persist ``job`` if nobody wrote since it was loaded.

        Returns the job with its new version.

        Raises:
            JobStateConflictError: the stored version differs from ``job.version``
            StorageError: the database write failed
        """
        values = {
            "status": job.status.value,
            "content_type": job.content_type,
            "total_items": job.total_items,
            "processed_items": job.processed_items,
            "queue": [item.model_dump(mode="json") for item in job.queue],
            "errors": list(job.errors),
            "error_message": job.error_message,
            "start_time": job.start_time,
            "end_time": job.end_time,
            "duration_seconds": job.duration_seconds,
            "updated_at": utcnow(),
        }
        new_version = job.version + 1

        try:
            with Session(self.engine) as session:
                if job.version == 0:
                    session.add(IndexingJobRecord(job_key=self.job_key, version=new_version, **values))
                    session.commit()
                else:
                    result = session.exec(
                        update(IndexingJobRecord)
                        .where(
                            IndexingJobRecord.job_key == self.job_key,
                            IndexingJobRecord.version == job.version,
                        )
                        .values(version=new_version, **values)
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        raise JobStateConflictError(job.version)
                    session.commit()
        except IntegrityError as e:
            raise JobStateConflictError(job.version) from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save job state: {e}") from e

        logger.debug("job_state_saved", status=job.status.value, version=new_version)
        return job.model_copy(update={"version": new_version})
