from datetime import datetime, timezone
from uuid import UUID, uuid4
from typing import Optional
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    """
    Naive UTC timestamp.

    Table columns are declared as plain ``DateTime`` so the value round-trips
    unchanged on both SQLite and PostgreSQL.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UUIDMixin(SQLModel):
    id: Optional[UUID] = Field(default_factory=uuid4, primary_key=True)
