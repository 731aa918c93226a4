from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from context_vault.db import VaultDB
from context_vault.embedding.embedder import StubEmbedder
from context_vault.knowledge_graph.store import RelationshipGraph
from context_vault.objects.store import ObjectStore
from context_vault.objects.types import KnowledgeObject
from context_vault.vault import Vault
from context_vault.vector_indexing.chunks import ChunkStore


@pytest.fixture
def db(tmp_path: Path) -> VaultDB:
    """A fresh SQLite vault file per test."""
    d = VaultDB(str(tmp_path / "vault.db"))
    d.init()
    return d


@pytest.fixture
def objects(db: VaultDB) -> ObjectStore:
    return ObjectStore(db)


@pytest.fixture
def chunks(db: VaultDB) -> ChunkStore:
    return ChunkStore(db)


@pytest.fixture
def graph(db: VaultDB) -> RelationshipGraph:
    return RelationshipGraph(db)


@pytest.fixture
def vault(tmp_path: Path) -> Iterator[Vault]:
    v = Vault(
        VaultDB(str(tmp_path / "vault.db")),
        embedder=StubEmbedder(dim=64),
        worker_poll_interval_s=0,
        worker_delay_s=0,
    )
    try:
        yield v
    finally:
        v.close()


@pytest.fixture
def embed(objects: ObjectStore) -> Callable[[KnowledgeObject, list[float]], KnowledgeObject]:
    """Attach a hand-made embedding to an object and return the stored object."""

    def _embed(obj: KnowledgeObject, vector: list[float]) -> KnowledgeObject:
        assert objects.set_embedding(obj.id, vector, obj.content_hash)
        stored = objects.get(obj.id)
        assert stored is not None
        return stored

    return _embed
