from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from typing import Any

from ..db import VaultDB, new_id, parse_ts, utcnow
from ..errors import ValidationFailure
from ..objects.types import ObjectType
from .models import (
    Direction,
    Relationship,
    RelationshipCreate,
    RelationshipFilters,
    RelationshipPage,
)

logger = logging.getLogger(__name__)


def batched(it: Iterable, batch_size: int) -> Iterable[list]:
    batch: list = []
    for x in it:
        batch.append(x)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def row_to_relationship(row: sqlite3.Row) -> Relationship:
    return Relationship(
        id=row["id"],
        source_id=row["source_id"],
        target_id=row["target_id"],
        source_type=ObjectType(row["source_type"]),
        target_type=ObjectType(row["target_type"]),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


def sweep_edges(con: sqlite3.Connection, object_id: str) -> int:
    """Delete every edge touching ``object_id`` inside the caller's transaction."""
    return con.execute(
        "DELETE FROM relationships WHERE source_id=? OR target_id=?", (object_id, object_id)
    ).rowcount


def _current_types(con: sqlite3.Connection, ids: Sequence[str]) -> dict[str, ObjectType]:
    ids = list(dict.fromkeys(ids))
    if not ids:
        return {}
    marks = ",".join("?" for _ in ids)
    rows = con.execute(f"SELECT id, type FROM objects WHERE id IN ({marks})", ids).fetchall()
    return {r["id"]: ObjectType(r["type"]) for r in rows}


_ORDER = " ORDER BY created_at DESC, rowid DESC"


class RelationshipGraph:
    """Directed typed edges between objects.

    At most one edge exists per (source_id, target_id); the table's unique
    constraint plus ``INSERT OR IGNORE`` keeps that true under concurrent
    inserts.
    """

    def __init__(self, db: VaultDB, *, batch_size: int = 500):
        self.db = db
        self.batch_size = batch_size

    # --- writes ---

    def create(self, edge: RelationshipCreate) -> Relationship | None:
        """Insert one edge, or return the edge that already joins the pair.

        Returns None when an endpoint does not exist.
        """
        with self.db.transaction() as con:
            types = _current_types(con, [edge.source_id, edge.target_id])
            resolved = self._resolve_types(edge, types)
            if resolved is None:
                return None
            src_type, dst_type = resolved
            if edge.source_type not in (None, src_type) or edge.target_type not in (None, dst_type):
                raise ValidationFailure(
                    "endpoint types do not match the referenced objects", field="source_type"
                )
            self._insert(con, edge.source_id, edge.target_id, src_type, dst_type)
            row = con.execute(
                "SELECT * FROM relationships WHERE source_id=? AND target_id=?",
                (edge.source_id, edge.target_id),
            ).fetchone()
        return row_to_relationship(row)

    def create_bulk(self, edges: Iterable[RelationshipCreate]) -> list[Relationship]:
        """Insert many edges; pairs that already exist (or repeat) are skipped.

        Returns only the edges this call inserted.
        """
        inserted: list[Relationship] = []
        for batch in batched(edges, self.batch_size):
            with self.db.transaction() as con:
                types = _current_types(
                    con, [e.source_id for e in batch] + [e.target_id for e in batch]
                )
                for edge in batch:
                    resolved = self._resolve_types(edge, types)
                    if resolved is None:
                        continue
                    src_type, dst_type = resolved
                    if edge.source_type not in (None, src_type) or edge.target_type not in (
                        None,
                        dst_type,
                    ):
                        logger.warning(
                            "Skipping edge %s -> %s: declared types disagree with objects",
                            edge.source_id,
                            edge.target_id,
                        )
                        continue
                    rel = self._insert(con, edge.source_id, edge.target_id, src_type, dst_type)
                    if rel is not None:
                        inserted.append(rel)
        logger.debug("Bulk insert created %d relationships", len(inserted))
        return inserted

    def delete(self, relationship_id: str) -> bool:
        with self.db.transaction() as con:
            n = con.execute("DELETE FROM relationships WHERE id=?", (relationship_id,)).rowcount
        return n > 0

    def delete_by_source(self, source_id: str) -> int:
        with self.db.transaction() as con:
            return con.execute(
                "DELETE FROM relationships WHERE source_id=?", (source_id,)
            ).rowcount

    def delete_by_target(self, target_id: str) -> int:
        with self.db.transaction() as con:
            return con.execute(
                "DELETE FROM relationships WHERE target_id=?", (target_id,)
            ).rowcount

    def cleanup_for_object(self, object_id: str) -> int:
        with self.db.transaction() as con:
            n = sweep_edges(con, object_id)
        if n:
            logger.info("Removed %d relationships touching %s", n, object_id)
        return n

    def refresh_endpoint_types(self, object_id: str, new_type: ObjectType | None = None) -> int:
        """Rewrite the cached endpoint types on edges incident to ``object_id``.

        Not run implicitly; edges keep the types seen at creation otherwise.
        """
        with self.db.transaction() as con:
            if new_type is None:
                row = con.execute("SELECT type FROM objects WHERE id=?", (object_id,)).fetchone()
                if row is None:
                    return 0
                new_type = ObjectType(row["type"])
            now = utcnow().isoformat()
            n = con.execute(
                "UPDATE relationships SET source_type=?, updated_at=? WHERE source_id=? AND source_type<>?",
                (new_type.value, now, object_id, new_type.value),
            ).rowcount
            n += con.execute(
                "UPDATE relationships SET target_type=?, updated_at=? WHERE target_id=? AND target_type<>?",
                (new_type.value, now, object_id, new_type.value),
            ).rowcount
        logger.debug("Refreshed endpoint type on %d edges for %s", n, object_id)
        return n

    # --- reads ---

    def get(self, relationship_id: str) -> Relationship | None:
        with self.db.read() as con:
            row = con.execute(
                "SELECT * FROM relationships WHERE id=?", (relationship_id,)
            ).fetchone()
        return row_to_relationship(row) if row else None

    def find(self, filters: RelationshipFilters | None = None) -> RelationshipPage:
        f = filters or RelationshipFilters()
        where: list[str] = []
        params: list[Any] = []
        if f.source_id is not None:
            where.append("source_id=?")
            params.append(f.source_id)
        if f.target_id is not None:
            where.append("target_id=?")
            params.append(f.target_id)
        if f.source_type is not None:
            where.append("source_type=?")
            params.append(f.source_type.value)
        if f.target_type is not None:
            where.append("target_type=?")
            params.append(f.target_type.value)
        clause = (" WHERE " + " AND ".join(where)) if where else ""

        with self.db.read() as con:
            total = int(
                con.execute(f"SELECT COUNT(*) FROM relationships{clause}", params).fetchone()[0]
            )
            q = f"SELECT * FROM relationships{clause}{_ORDER}"
            page_params = list(params)
            if f.paginated:
                limit, offset = f.page()
                q += " LIMIT ? OFFSET ?"
                page_params += [limit, offset]
            rows = con.execute(q, page_params).fetchall()
        return RelationshipPage(relationships=[row_to_relationship(r) for r in rows], total=total)

    def get_by_source(self, source_id: str) -> list[Relationship]:
        return self.find(RelationshipFilters(source_id=source_id)).relationships

    def get_by_target(self, target_id: str) -> list[Relationship]:
        return self.find(RelationshipFilters(target_id=target_id)).relationships

    def get_between(self, source_id: str, target_id: str) -> list[Relationship]:
        return self.find(RelationshipFilters(source_id=source_id, target_id=target_id)).relationships

    def neighbors(self, object_id: str, direction: Direction = "both") -> list[Relationship]:
        if direction == "outgoing":
            return self.get_by_source(object_id)
        if direction == "incoming":
            return self.get_by_target(object_id)
        if direction != "both":
            raise ValidationFailure(f"unknown direction: {direction}", field="direction")
        with self.db.read() as con:
            rows = con.execute(
                "SELECT * FROM relationships WHERE source_id=? OR target_id=?" + _ORDER,
                (object_id, object_id),
            ).fetchall()
        return [row_to_relationship(r) for r in rows]

    # --- internals ---

    @staticmethod
    def _resolve_types(
        edge: RelationshipCreate, types: dict[str, ObjectType]
    ) -> tuple[ObjectType, ObjectType] | None:
        src, dst = types.get(edge.source_id), types.get(edge.target_id)
        if src is None or dst is None:
            logger.warning(
                "Skipping edge %s -> %s: endpoint object missing", edge.source_id, edge.target_id
            )
            return None
        return src, dst

    @staticmethod
    def _insert(
        con: sqlite3.Connection,
        source_id: str,
        target_id: str,
        source_type: ObjectType,
        target_type: ObjectType,
    ) -> Relationship | None:
        now = utcnow()
        rel_id = new_id()
        cur = con.execute(
            """
            INSERT OR IGNORE INTO relationships(
              id, source_id, target_id, source_type, target_type, created_at, updated_at
            ) VALUES (?,?,?,?,?,?,?)
            """,
            (rel_id, source_id, target_id, source_type.value, target_type.value, now.isoformat(), now.isoformat()),
        )
        if cur.rowcount == 0:
            return None
        return Relationship(
            id=rel_id,
            source_id=source_id,
            target_id=target_id,
            source_type=source_type,
            target_type=target_type,
            created_at=now,
            updated_at=now,
        )
