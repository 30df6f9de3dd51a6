from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from kbsync.core.errors import StorageError
from kbsync.schema import OptionRecord, utcnow


class OptionStore:
    """Key-value option storage backed by the ``options`` table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        with Session(self.engine) as session:
            record = session.get(OptionRecord, key)
        return default if record is None else record.value

    def set(self, key: str, value: Any):
        try:
            with Session(self.engine) as session:
                record = session.get(OptionRecord, key) or OptionRecord(key=key)
                record.value = value
                record.updated_at = utcnow()
                session.add(record)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save option {key}: {e}") from e

    def delete(self, key: str):
        with Session(self.engine) as session:
            record = session.get(OptionRecord, key)
            if record is not None:
                session.delete(record)
                session.commit()
