"""
Durable local chunk store.

Rows are keyed by (source_type, source_id, chunk_index). Writing a chunk
for an existing key replaces the row, so reprocessing an item is idempotent.
"""
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select, delete

from kbsync.core.errors import StorageError
from kbsync.core.logging import get_logger
from kbsync.preprocessing import Chunk
from kbsync.schema import ContentItem, KnowledgeChunk, utcnow

logger = get_logger(__name__)


class ChunkStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def upsert_chunk(
        self,
        item: ContentItem,
        chunk: Chunk,
        embedding: List[float],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeChunk:
        """Insert or replace the row for ``(item.type, item.id, chunk.index)``."""
        now = utcnow()
        row_metadata = {
            "word_count": chunk.word_count,
            "char_count": chunk.char_count,
            "total_chunks": chunk.total_chunks,
            "quality_score": chunk.quality_score,
            "chunking_strategy": chunk.metadata.get("chunking_strategy"),
            "indexed_at": now.isoformat(),
        }
        row_metadata.update(metadata or {})

        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(KnowledgeChunk).where(
                        KnowledgeChunk.source_type == item.type,
                        KnowledgeChunk.source_id == item.id,
                        KnowledgeChunk.chunk_index == chunk.index,
                    )
                ).first()

                if row is None:
                    row = KnowledgeChunk(
                        source_type=item.type,
                        source_id=item.id,
                        chunk_index=chunk.index,
                        chunk_content=chunk.text,
                        chunk_hash=chunk.hash,
                    )

                row.title = item.title
                row.content = item.content
                row.chunk_content = chunk.text
                row.chunk_hash = chunk.hash
                row.token_count = chunk.token_count
                row.embedding = list(embedding)
                row.metadata_ = row_metadata
                row.indexed_at = now
                row.updated_at = now

                session.add(row)
                session.commit()
                session.refresh(row)
                return row
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to store chunk {chunk.index} of {item.type} #{item.id}: {e}"
            ) from e

    def prune_beyond(self, source_type: str, source_id: str, total_chunks: int) -> List[int]:
        """Delete rows left over from an earlier, longer version of the item."""
        return self._delete(
            source_type,
            source_id,
            KnowledgeChunk.chunk_index >= total_chunks,
        )

    def delete_chunks(self, source_type: str, source_id: str, chunk_indexes: List[int]) -> List[int]:
        """Delete specific chunk rows of one item; returns the indexes that existed."""
        if not chunk_indexes:
            return []
        return self._delete(
            source_type,
            source_id,
            col(KnowledgeChunk.chunk_index).in_(list(chunk_indexes)),
        )

    def delete_source(self, source_type: str, source_id: str) -> List[int]:
        """Delete every chunk of one source item; returns the removed chunk indexes."""
        return self._delete(source_type, source_id)

    def _delete(self, source_type: str, source_id: str, *conditions) -> List[int]:
        filters = [
            KnowledgeChunk.source_type == source_type,
            KnowledgeChunk.source_id == source_id,
            *conditions,
        ]
        try:
            with Session(self.engine) as session:
                indexes = list(session.exec(
                    select(KnowledgeChunk.chunk_index).where(*filters)
                ).all())
                if indexes:
                    session.exec(delete(KnowledgeChunk).where(*filters))
                    session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete chunks of {source_type} #{source_id}: {e}") from e

        if indexes:
            logger.debug(
                "chunks_deleted",
                source_type=source_type,
                source_id=source_id,
                count=len(indexes),
            )
        return sorted(indexes)

    def get_chunks(self, source_type: str, source_id: str) -> List[KnowledgeChunk]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(KnowledgeChunk)
                .where(
                    KnowledgeChunk.source_type == source_type,
                    KnowledgeChunk.source_id == source_id,
                )
                .order_by(KnowledgeChunk.chunk_index)
            ).all())

    def list_sources(self, source_type: Optional[str] = None) -> Set[Tuple[str, str]]:
        """Distinct ``(source_type, source_id)`` pairs currently indexed."""
        statement = select(KnowledgeChunk.source_type, KnowledgeChunk.source_id).distinct()
        if source_type is not None:
            statement = statement.where(KnowledgeChunk.source_type == source_type)

        with Session(self.engine) as session:
            return {(row[0], row[1]) for row in session.exec(statement).all()}

    def get_statistics(self) -> Dict[str, Any]:
        with Session(self.engine) as session:
            per_type = session.exec(
                select(KnowledgeChunk.source_type, func.count(KnowledgeChunk.id))
                .group_by(KnowledgeChunk.source_type)
            ).all()
            last_indexed = session.exec(select(func.max(KnowledgeChunk.indexed_at))).one()

        chunks_by_type = {row[0]: row[1] for row in per_type}
        return {
            "total_chunks": sum(chunks_by_type.values()),
            "total_sources": len(self.list_sources()),
            "chunks_by_type": chunks_by_type,
            "last_indexed_at": last_indexed.isoformat() if last_indexed else None,
        }
