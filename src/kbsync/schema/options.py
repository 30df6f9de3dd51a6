from typing import Any, Optional
from datetime import datetime
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, JSON

from .base import utcnow


class OptionRecord(SQLModel, table=True):
    """Generic key-value option (sync timestamps and similar bookkeeping)."""
    __tablename__ = "options"

    key: str = Field(primary_key=True)
    value: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
