from typing import Any, Dict, List
from datetime import datetime
from sqlmodel import Field
from sqlalchemy import Column, DateTime, Index, JSON, Text, UniqueConstraint

from .base import UUIDMixin, utcnow


class KnowledgeChunk(UUIDMixin, table=True):
    """
    One embedded chunk of a source item.

    Identity is (source_type, source_id, chunk_index); reindexing an item
    replaces the rows under that key instead of adding new ones.
    """
    __tablename__ = "knowledge_chunks"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", "chunk_index", name="uq_chunk_source_index"),
    )

    # ============================================
    # SOURCE
    # ============================================
    source_type: str = Field(index=True)
    source_id: str = Field(index=True)
    title: str = Field(default="")
    content: str = Field(default="", sa_column=Column(Text))

    # ============================================
    # CHUNK
    # ============================================
    chunk_index: int
    chunk_content: str = Field(sa_column=Column(Text, nullable=False))
    chunk_hash: str = Field(index=True)
    token_count: int = Field(default=0)

    # Serialized vector; JSON keeps the store portable across SQLite and PostgreSQL
    embedding: List[float] = Field(default_factory=list, sa_column=Column(JSON))
    metadata_: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON)
    )

    # Naive UTC; see utcnow()
    indexed_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))

    @property
    def vector_id(self) -> str:
        return vector_id(self.source_type, self.source_id, self.chunk_index)


def vector_id(source_type: str, source_id: str, chunk_index: int) -> str:
    """Composite id used for the external vector index."""
    return f"{source_type}_{source_id}_{chunk_index}"


Index("idx_chunk_source", KnowledgeChunk.source_type, KnowledgeChunk.source_id)
