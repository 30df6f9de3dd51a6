from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from kbsync.core.logging import get_logger
from kbsync.schema import ActivityLogEntry

logger = get_logger(__name__)


class ActivityLog:
    """Append-only activity log."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def record(self, action: str, details: Optional[Dict[str, Any]] = None) -> ActivityLogEntry:
        entry = ActivityLogEntry(action=action, details=details or {})
        with Session(self.engine) as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)

        logger.info("activity_recorded", action=action, details=details or {})
        return entry

    def recent(self, action: Optional[str] = None, limit: int = 20) -> List[ActivityLogEntry]:
        statement = select(ActivityLogEntry)
        if action is not None:
            statement = statement.where(ActivityLogEntry.action == action)
        statement = statement.order_by(ActivityLogEntry.created_at.desc()).limit(limit)

        with Session(self.engine) as session:
            return list(session.exec(statement).all())
