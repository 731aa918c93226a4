from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence

from ..db import VaultDB, dumps_vector, loads_vector, new_id, parse_ts, utcnow
from ..objects.types import EmbeddingStatus
from .similarity import rank_by_similarity
from .types import Chunk, ChunkSpan

logger = logging.getLogger(__name__)


def row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        object_id=row["object_id"],
        content=row["content"],
        chunk_index=int(row["chunk_index"]),
        start_position=int(row["start_position"]),
        end_position=int(row["end_position"]),
        embedding=loads_vector(row["embedding"]),
        has_embedding=bool(row["has_embedding"]),
        embedding_status=EmbeddingStatus(row["embedding_status"]),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


def delete_chunks_for(con: sqlite3.Connection, object_id: str) -> int:
    """Delete every chunk of an object inside the caller's transaction."""
    return con.execute("DELETE FROM chunks WHERE object_id=?", (object_id,)).rowcount


class ChunkStore:
    """Chunks derived from object content.

    A chunk set is only ever replaced as a whole; readers see either the old
    set or the new one.
    """

    def __init__(self, db: VaultDB):
        self.db = db

    def get(self, chunk_id: str) -> Chunk | None:
        with self.db.read() as con:
            row = con.execute("SELECT * FROM chunks WHERE id=?", (chunk_id,)).fetchone()
        return row_to_chunk(row) if row else None

    def get_by_object(self, object_id: str) -> list[Chunk]:
        with self.db.read() as con:
            rows = con.execute(
                "SELECT * FROM chunks WHERE object_id=? ORDER BY chunk_index", (object_id,)
            ).fetchall()
        return [row_to_chunk(r) for r in rows]

    def count_by_object(self, object_id: str) -> int:
        with self.db.read() as con:
            row = con.execute(
                "SELECT COUNT(*) FROM chunks WHERE object_id=?", (object_id,)
            ).fetchone()
        return int(row[0])

    def delete_by_object(self, object_id: str) -> int:
        with self.db.transaction() as con:
            n = delete_chunks_for(con, object_id)
        logger.debug("Deleted %d chunks for object %s", n, object_id)
        return n

    def replace_for_object(
        self,
        object_id: str,
        chunks: Sequence[tuple[ChunkSpan, Sequence[float] | None]],
        expected_hash: str,
    ) -> list[Chunk] | None:
        """Swap the object's chunk set for ``chunks`` in one transaction.

        Returns None (and writes nothing) when the parent is gone or its
        content hash no longer equals ``expected_hash``.
        """
        expected = list(range(len(chunks)))
        if [span.index for span, _ in chunks] != expected:
            raise ValueError("chunk indexes must be 0..n-1 in order")

        now = utcnow().isoformat()
        with self.db.transaction() as con:
            row = con.execute(
                "SELECT content_hash FROM objects WHERE id=?", (object_id,)
            ).fetchone()
            if row is None or row["content_hash"] != expected_hash:
                return None
            delete_chunks_for(con, object_id)
            for span, vector in chunks:
                status = EmbeddingStatus.COMPLETED if vector is not None else EmbeddingStatus.FAILED
                con.execute(
                    """
                    INSERT INTO chunks(
                      id, object_id, content, chunk_index, start_position, end_position,
                      embedding, has_embedding, embedding_status, created_at, updated_at
                    ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        new_id(),
                        object_id,
                        span.text,
                        span.index,
                        span.start,
                        span.end,
                        dumps_vector(list(vector) if vector is not None else None),
                        int(vector is not None),
                        status.value,
                        now,
                        now,
                    ),
                )
            rows = con.execute(
                "SELECT * FROM chunks WHERE object_id=? ORDER BY chunk_index", (object_id,)
            ).fetchall()
        return [row_to_chunk(r) for r in rows]

    def iter_embedded(self) -> list[Chunk]:
        with self.db.read() as con:
            rows = con.execute(
                "SELECT * FROM chunks WHERE embedding_status='completed' AND embedding IS NOT NULL"
            ).fetchall()
        return [row_to_chunk(r) for r in rows]

    def search_by_vector(
        self,
        vector: Sequence[float],
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> list[tuple[Chunk, float]]:
        return rank_by_similarity(
            vector,
            self.iter_embedded(),
            vector_of=lambda c: c.embedding,
            recency_of=lambda c: c.updated_at,
            min_score=min_similarity,
            top_k=limit,
        )
