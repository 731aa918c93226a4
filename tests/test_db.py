from __future__ import annotations

import pytest

from context_vault.db import VaultDB


def _count(db: VaultDB) -> int:
    with db.read() as con:
        return con.execute("SELECT COUNT(*) FROM objects").fetchone()[0]


def _insert(con, object_id: str) -> None:
    con.execute(
        "INSERT INTO objects (id, type, name, content, aliases, content_hash, created_at, updated_at)"
        " VALUES (?, 'person', 'Ada', '', '[]', 'h', '2025-01-01T00:00:00+00:00', '2025-01-01T00:00:00+00:00')",
        (object_id,),
    )


def test_error_rolls_back(db: VaultDB) -> None:
    with pytest.raises(ValueError):
        with db.transaction() as con:
            _insert(con, "a")
            raise ValueError("boom")
    assert _count(db) == 0


def test_original_error_survives_an_earlier_rollback(db: VaultDB) -> None:
    with pytest.raises(ValueError, match="boom"):
        with db.transaction() as con:
            _insert(con, "a")
            con.execute("ROLLBACK")
            raise ValueError("boom")
    assert _count(db) == 0


def test_commit(db: VaultDB) -> None:
    with db.transaction() as con:
        _insert(con, "a")
    assert _count(db) == 1
