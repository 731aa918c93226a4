from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..db import KeyedLock, VaultDB, dumps_vector, loads_vector, new_id, parse_ts, utcnow
from ..errors import CascadeDeleteError, ConcurrencyConflict, ValidationFailure
from ..knowledge_graph.store import sweep_edges
from ..vector_indexing.chunks import delete_chunks_for
from ..vector_indexing.similarity import rank_by_similarity
from .schemas import ObjectCreate, ObjectUpdate, validate_input
from .search import matches, plan_query
from .types import (
    EmbeddingStatus,
    FileAttachment,
    KnowledgeObject,
    MentionItem,
    ObjectType,
    SearchResult,
    compute_content_hash,
    type_rule,
)

logger = logging.getLogger(__name__)

# Fields whose change makes the stored embedding stale.
CONTENT_FIELDS = ("name", "content", "aliases", "date")
FILE_FIELDS = ("original_file_name", "file_path", "file_size", "mime_type", "has_file")


def row_to_object(row: sqlite3.Row) -> KnowledgeObject:
    return KnowledgeObject(
        id=row["id"],
        type=ObjectType(row["type"]),
        name=row["name"],
        content=row["content"] or "",
        aliases=json.loads(row["aliases"] or "[]"),
        date=row["date"],
        file=FileAttachment(
            original_file_name=row["original_file_name"],
            file_path=row["file_path"],
            file_size=row["file_size"],
            mime_type=row["mime_type"],
            has_file=bool(row["has_file"]),
        ),
        embedding=loads_vector(row["embedding"]),
        has_embedding=bool(row["has_embedding"]),
        embedding_status=EmbeddingStatus(row["embedding_status"]),
        needs_embedding=bool(row["needs_embedding"]),
        is_from_ocr=bool(row["is_from_ocr"]),
        has_been_edited=bool(row["has_been_edited"]),
        content_hash=row["content_hash"],
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


@dataclass(slots=True)
class ObjectChange:
    """Outcome of an update, for callers that react to what changed."""

    object: KnowledgeObject
    content_changed: bool
    type_changed: bool
    previous_type: ObjectType


class ObjectStore:
    """Typed knowledge objects and their embedding lifecycle."""

    def __init__(self, db: VaultDB, locks: KeyedLock | None = None):
        self.db = db
        self.locks = locks or KeyedLock()

    # --- reads ---

    def get(self, object_id: str) -> KnowledgeObject | None:
        with self.db.read() as con:
            row = con.execute("SELECT * FROM objects WHERE id=?", (object_id,)).fetchone()
            return row_to_object(row) if row else None

    def get_many(self, object_ids: Sequence[str]) -> dict[str, KnowledgeObject]:
        if not object_ids:
            return {}
        ids = list(dict.fromkeys(object_ids))
        marks = ",".join("?" for _ in ids)
        with self.db.read() as con:
            rows = con.execute(f"SELECT * FROM objects WHERE id IN ({marks})", ids).fetchall()
        return {r["id"]: row_to_object(r) for r in rows}

    def list_all(self) -> list[KnowledgeObject]:
        with self.db.read() as con:
            rows = con.execute("SELECT * FROM objects ORDER BY updated_at DESC").fetchall()
        return [row_to_object(r) for r in rows]

    def list_by_type(self, object_type: ObjectType | str) -> list[KnowledgeObject]:
        t = self._coerce_type(object_type)
        with self.db.read() as con:
            rows = con.execute(
                "SELECT * FROM objects WHERE type=? ORDER BY updated_at DESC", (t.value,)
            ).fetchall()
        return [row_to_object(r) for r in rows]

    def search(self, query: str, object_type: ObjectType | str | None = None) -> SearchResult:
        pool = self.list_by_type(object_type) if object_type else self.list_all()
        plan = plan_query(query)
        found = [o for o in pool if matches(o, plan)]
        return SearchResult(objects=found, total=len(found))

    def find_by_name(self, object_type: ObjectType | str, name: str) -> KnowledgeObject | None:
        t = self._coerce_type(object_type)
        with self.db.read() as con:
            row = con.execute(
                "SELECT * FROM objects WHERE type=? AND name=? ORDER BY created_at, rowid LIMIT 1",
                (t.value, name),
            ).fetchone()
        return row_to_object(row) if row else None

    def find_by_alias(self, object_type: ObjectType | str, alias: str) -> KnowledgeObject | None:
        t = self._coerce_type(object_type)
        with self.db.read() as con:
            row = con.execute(
                """
                SELECT * FROM objects
                WHERE type=? AND EXISTS (SELECT 1 FROM json_each(objects.aliases) WHERE value=?)
                ORDER BY created_at, rowid LIMIT 1
                """,
                (t.value, alias),
            ).fetchone()
        return row_to_object(row) if row else None

    def mention_suggestions(self, query: str, limit: int = 10) -> list[MentionItem]:
        q = (query or "").strip().lower()
        if not q:
            return []
        out: list[MentionItem] = []
        for o in self.list_all():
            if q in o.name.lower() or any(q in a.lower() for a in o.aliases):
                out.append(MentionItem(id=o.id, name=o.name, type=o.type, aliases=tuple(o.aliases)))
                if len(out) >= limit:
                    break
        return out

    def objects_needing_embedding(self, limit: int | None = None) -> list[KnowledgeObject]:
        """Re-embedding queue. Unreviewed OCR objects wait until a human edits them."""
        q = """
        SELECT * FROM objects
        WHERE needs_embedding=1 AND NOT (is_from_ocr=1 AND has_been_edited=0)
        ORDER BY updated_at ASC
        """
        params: tuple[Any, ...] = ()
        if limit is not None:
            q += " LIMIT ?"
            params = (int(limit),)
        with self.db.read() as con:
            rows = con.execute(q, params).fetchall()
        return [row_to_object(r) for r in rows]

    def iter_embedded(self) -> list[KnowledgeObject]:
        with self.db.read() as con:
            rows = con.execute(
                "SELECT * FROM objects WHERE embedding_status='completed' AND embedding IS NOT NULL"
            ).fetchall()
        return [row_to_object(r) for r in rows]

    def search_by_vector(
        self,
        vector: Sequence[float],
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> list[tuple[KnowledgeObject, float]]:
        return rank_by_similarity(
            vector,
            self.iter_embedded(),
            vector_of=lambda o: o.embedding,
            recency_of=lambda o: o.updated_at,
            min_score=min_similarity,
            top_k=limit,
        )

    # --- writes ---

    def create(self, payload: ObjectCreate | dict[str, Any]) -> KnowledgeObject:
        data: ObjectCreate = validate_input(ObjectCreate, payload)
        now = utcnow().isoformat()
        obj_id = new_id()
        content_hash = compute_content_hash(
            name=data.name, content=data.content, aliases=data.aliases, date=data.date
        )
        with self.db.transaction() as con:
            con.execute(
                """
                INSERT INTO objects(
                  id, type, name, content, aliases, date,
                  original_file_name, file_path, file_size, mime_type, has_file,
                  embedding, has_embedding, embedding_status, needs_embedding,
                  is_from_ocr, has_been_edited, content_hash, created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,NULL,0,'pending',1,?,0,?,?,?)
                """,
                (
                    obj_id,
                    data.type.value,
                    data.name,
                    data.content,
                    json.dumps(data.aliases, ensure_ascii=False),
                    data.date,
                    data.original_file_name,
                    data.file_path,
                    data.file_size,
                    data.mime_type,
                    int(data.has_file),
                    int(data.is_from_ocr),
                    content_hash,
                    now,
                    now,
                ),
            )
            row = con.execute("SELECT * FROM objects WHERE id=?", (obj_id,)).fetchone()
        obj = row_to_object(row)
        logger.info("Created %s object %s (%s)", obj.type.value, obj.id, obj.name)
        return obj

    def update(self, object_id: str, changes: ObjectUpdate | dict[str, Any]) -> KnowledgeObject | None:
        res = self.update_with_changes(object_id, changes)
        return res.object if res else None

    def update_with_changes(
        self, object_id: str, changes: ObjectUpdate | dict[str, Any]
    ) -> ObjectChange | None:
        upd: ObjectUpdate = validate_input(ObjectUpdate, changes)
        provided = upd.provided()

        with self.locks.hold(object_id), self.db.transaction() as con:
            row = con.execute("SELECT * FROM objects WHERE id=?", (object_id,)).fetchone()
            if row is None:
                return None
            cur = row_to_object(row)

            def pick(name: str, current: Any, nullable: bool = False) -> Any:
                if name not in provided:
                    return current
                v = getattr(upd, name)
                if v is None and not nullable:
                    return current
                return v

            new_type: ObjectType = pick("type", cur.type)
            name = pick("name", cur.name)
            content = pick("content", cur.content)
            aliases = pick("aliases", cur.aliases)
            date = pick("date", cur.date, nullable=True)
            if date is not None and not type_rule(new_type).has_date_field:
                raise ValidationFailure(
                    f"objects of type {new_type.value} do not carry a date", field="date"
                )

            file = FileAttachment(
                original_file_name=pick("original_file_name", cur.file.original_file_name, True),
                file_path=pick("file_path", cur.file.file_path, True),
                file_size=pick("file_size", cur.file.file_size, True),
                mime_type=pick("mime_type", cur.file.mime_type, True),
                has_file=pick("has_file", cur.file.has_file),
            )
            is_from_ocr = pick("is_from_ocr", cur.is_from_ocr)
            has_been_edited = pick("has_been_edited", cur.has_been_edited)

            content_changed = (name, content, aliases, date) != (
                cur.name,
                cur.content,
                cur.aliases,
                cur.date,
            )
            type_changed = new_type != cur.type
            touched = (
                content_changed
                or type_changed
                or file != cur.file
                or is_from_ocr != cur.is_from_ocr
                or has_been_edited != cur.has_been_edited
            )
            if not touched:
                return ObjectChange(
                    object=cur, content_changed=False, type_changed=False, previous_type=cur.type
                )

            embedding = cur.embedding
            has_embedding = cur.has_embedding
            status = cur.embedding_status
            needs_embedding = cur.needs_embedding
            content_hash = cur.content_hash
            if content_changed:
                embedding = None
                has_embedding = False
                status = EmbeddingStatus.PENDING
                needs_embedding = True
                has_been_edited = True
                content_hash = compute_content_hash(
                    name=name, content=content, aliases=aliases, date=date
                )
                if content != cur.content:
                    # offsets of existing chunks no longer line up with the content
                    n = delete_chunks_for(con, object_id)
                    logger.debug("Dropped %d stale chunks for %s", n, object_id)

            con.execute(
                """
                UPDATE objects SET
                  type=?, name=?, content=?, aliases=?, date=?,
                  original_file_name=?, file_path=?, file_size=?, mime_type=?, has_file=?,
                  embedding=?, has_embedding=?, embedding_status=?, needs_embedding=?,
                  is_from_ocr=?, has_been_edited=?, content_hash=?, updated_at=?
                WHERE id=?
                """,
                (
                    new_type.value,
                    name,
                    content,
                    json.dumps(aliases, ensure_ascii=False),
                    date,
                    file.original_file_name,
                    file.file_path,
                    file.file_size,
                    file.mime_type,
                    int(file.has_file),
                    dumps_vector(embedding),
                    int(has_embedding),
                    status.value,
                    int(needs_embedding),
                    int(is_from_ocr),
                    int(has_been_edited),
                    content_hash,
                    utcnow().isoformat(),
                    object_id,
                ),
            )
            row = con.execute("SELECT * FROM objects WHERE id=?", (object_id,)).fetchone()

        return ObjectChange(
            object=row_to_object(row),
            content_changed=content_changed,
            type_changed=type_changed,
            previous_type=cur.type,
        )

    def delete(self, object_id: str) -> bool:
        """Delete an object together with its chunks and incident edges.

        Returns False when the object does not exist. A failure while sweeping
        raises CascadeDeleteError and leaves the object in place.
        """
        with self.locks.hold(object_id):
            try:
                with self.db.transaction() as con:
                    row = con.execute("SELECT 1 FROM objects WHERE id=?", (object_id,)).fetchone()
                    if row is None:
                        return False
                    n_chunks = delete_chunks_for(con, object_id)
                    n_edges = sweep_edges(con, object_id)
                    con.execute("DELETE FROM objects WHERE id=?", (object_id,))
            except ConcurrencyConflict:
                raise
            except sqlite3.Error as e:
                raise CascadeDeleteError(object_id, e) from e
        logger.info("Deleted object %s (%d chunks, %d relationships)", object_id, n_chunks, n_edges)
        return True

    def set_embedding(self, object_id: str, vector: Sequence[float], expected_hash: str) -> bool:
        """Store a completed embedding unless the content moved on since the snapshot."""
        with self.locks.hold(object_id), self.db.transaction() as con:
            cur = con.execute(
                """
                UPDATE objects SET
                  embedding=?, has_embedding=1, embedding_status='completed',
                  needs_embedding=0
                WHERE id=? AND content_hash=?
                """,
                (dumps_vector(list(vector)), object_id, expected_hash),
            )
            return cur.rowcount > 0

    def mark_embedding_failed(self, object_id: str, expected_hash: str) -> bool:
        with self.locks.hold(object_id), self.db.transaction() as con:
            cur = con.execute(
                "UPDATE objects SET embedding_status='failed' WHERE id=? AND content_hash=?",
                (object_id, expected_hash),
            )
            return cur.rowcount > 0

    def mark_ocr_edited(self, object_id: str) -> KnowledgeObject | None:
        with self.locks.hold(object_id), self.db.transaction() as con:
            con.execute(
                "UPDATE objects SET has_been_edited=1, updated_at=? WHERE id=? AND is_from_ocr=1",
                (utcnow().isoformat(), object_id),
            )
            row = con.execute("SELECT * FROM objects WHERE id=?", (object_id,)).fetchone()
        return row_to_object(row) if row else None

    def requeue(self, object_ids: Sequence[str] | None = None) -> int:
        """Flag objects for re-embedding and chunk regeneration."""
        with self.db.transaction() as con:
            if object_ids is None:
                cur = con.execute("UPDATE objects SET needs_embedding=1")
            else:
                cur = con.executemany(
                    "UPDATE objects SET needs_embedding=1 WHERE id=?",
                    [(i,) for i in object_ids],
                )
            return cur.rowcount

    @staticmethod
    def _coerce_type(object_type: ObjectType | str) -> ObjectType:
        try:
            return ObjectType(object_type)
        except ValueError as e:
            raise ValidationFailure(f"unknown object type: {object_type}", field="type") from e
