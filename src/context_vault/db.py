from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS objects (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  name TEXT NOT NULL,
  content TEXT NOT NULL DEFAULT '',
  aliases TEXT NOT NULL DEFAULT '[]',
  date TEXT,
  original_file_name TEXT,
  file_path TEXT,
  file_size INTEGER,
  mime_type TEXT,
  has_file INTEGER NOT NULL DEFAULT 0,
  embedding TEXT,
  has_embedding INTEGER NOT NULL DEFAULT 0,
  embedding_status TEXT NOT NULL DEFAULT 'pending',
  needs_embedding INTEGER NOT NULL DEFAULT 1,
  is_from_ocr INTEGER NOT NULL DEFAULT 0,
  has_been_edited INTEGER NOT NULL DEFAULT 0,
  content_hash TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
  id TEXT PRIMARY KEY,
  object_id TEXT NOT NULL REFERENCES objects(id) ON DELETE CASCADE,
  content TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  start_position INTEGER NOT NULL,
  end_position INTEGER NOT NULL,
  embedding TEXT,
  has_embedding INTEGER NOT NULL DEFAULT 0,
  embedding_status TEXT NOT NULL DEFAULT 'pending',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(object_id, chunk_index)
);

CREATE TABLE IF NOT EXISTS relationships (
  id TEXT PRIMARY KEY,
  source_id TEXT NOT NULL,
  target_id TEXT NOT NULL,
  source_type TEXT NOT NULL,
  target_type TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(source_id, target_id)
);

CREATE INDEX IF NOT EXISTS idx_objects_type ON objects(type);
CREATE INDEX IF NOT EXISTS idx_objects_needs_embedding ON objects(needs_embedding);
CREATE INDEX IF NOT EXISTS idx_chunks_object ON chunks(object_id, chunk_index);
CREATE INDEX IF NOT EXISTS idx_rel_source ON relationships(source_id);
CREATE INDEX IF NOT EXISTS idx_rel_target ON relationships(target_id);
CREATE INDEX IF NOT EXISTS idx_rel_types ON relationships(source_type, target_type);
"""


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_ts(v: str | None) -> datetime:
    if not v:
        return utcnow()
    return datetime.fromisoformat(v)


def dumps_vector(vector: list[float] | None) -> str | None:
    if vector is None:
        return None
    return json.dumps([float(x) for x in vector])


def loads_vector(raw: str | None) -> list[float] | None:
    if raw is None:
        return None
    return json.loads(raw)


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


@dataclass
class VaultDB:
    """SQLite backing store shared by the object, chunk and relationship stores.

    One connection per operation; writes run inside ``BEGIN IMMEDIATE`` so a
    multi-row mutation is atomic and serialized against other writers.
    """

    path: str
    timeout_s: float = 5.0

    def __post_init__(self) -> None:
        p = Path(self.path).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        self.path = str(p)

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(
            self.path,
            timeout=self.timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON")
        return con

    def init(self) -> None:
        con = self.connect()
        try:
            con.executescript(SCHEMA)
        finally:
            con.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        con = self.connect()
        try:
            yield con
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise ConcurrencyConflict(str(e)) from e
            raise
        finally:
            con.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        con = self.connect()
        try:
            try:
                con.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if _is_busy(e):
                    raise ConcurrencyConflict(str(e)) from e
                raise
            try:
                yield con
            except BaseException:
                if con.in_transaction:
                    con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise ConcurrencyConflict(str(e)) from e
            raise
        finally:
            con.close()


@dataclass
class KeyedLock:
    """Per-key mutex. Entries are dropped once nobody holds or waits on them."""

    _guard: threading.Lock = field(default_factory=threading.Lock)
    _locks: dict[str, list[Any]] = field(default_factory=dict)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock: threading.Lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
