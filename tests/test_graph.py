from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from context_vault.db import VaultDB
from context_vault.errors import ValidationFailure
from context_vault.knowledge_graph import RelationshipCreate, RelationshipFilters, RelationshipGraph
from context_vault.objects.store import ObjectStore
from context_vault.objects.types import ObjectType


@pytest.fixture
def nodes(objects: ObjectStore) -> dict[str, str]:
    return {
        "ada": objects.create({"type": "person", "name": "Ada"}).id,
        "bob": objects.create({"type": "person", "name": "Bob"}).id,
        "memo": objects.create({"type": "document", "name": "Memo"}).id,
        "acme": objects.create({"type": "entity", "name": "ACME"}).id,
    }


class TestCreate:
    def test_types_are_looked_up(self, graph: RelationshipGraph, nodes: dict) -> None:
        rel = graph.create(RelationshipCreate(nodes["memo"], nodes["ada"]))
        assert rel is not None
        assert rel.source_type is ObjectType.DOCUMENT
        assert rel.target_type is ObjectType.PERSON

    def test_existing_pair_is_returned(self, graph: RelationshipGraph, nodes: dict) -> None:
        first = graph.create(RelationshipCreate(nodes["ada"], nodes["bob"]))
        again = graph.create(RelationshipCreate(nodes["ada"], nodes["bob"]))
        assert first is not None and again is not None
        assert again.id == first.id
        assert graph.find().total == 1

    def test_missing_endpoint_is_omitted(self, graph: RelationshipGraph, nodes: dict) -> None:
        assert graph.create(RelationshipCreate(nodes["ada"], "ghost")) is None
        assert graph.find().total == 0

    def test_declared_type_must_match(self, graph: RelationshipGraph, nodes: dict) -> None:
        with pytest.raises(ValidationFailure):
            graph.create(RelationshipCreate(nodes["ada"], nodes["bob"], source_type="entity"))

    def test_requires_both_ids(self) -> None:
        with pytest.raises(ValidationFailure):
            RelationshipCreate("", "x")


class TestCreateBulk:
    def test_duplicates_in_one_batch(self, graph: RelationshipGraph, nodes: dict) -> None:
        edge = RelationshipCreate(nodes["ada"], nodes["memo"])
        created = graph.create_bulk([edge, RelationshipCreate(nodes["ada"], nodes["memo"])])
        assert len(created) == 1
        assert len(graph.get_between(nodes["ada"], nodes["memo"])) == 1

    def test_skips_existing_and_missing(self, graph: RelationshipGraph, nodes: dict) -> None:
        graph.create(RelationshipCreate(nodes["ada"], nodes["bob"]))
        created = graph.create_bulk(
            [
                RelationshipCreate(nodes["ada"], nodes["bob"]),
                RelationshipCreate(nodes["bob"], nodes["ada"]),
                RelationshipCreate(nodes["bob"], "ghost"),
                RelationshipCreate(nodes["bob"], nodes["acme"], target_type="person"),
            ]
        )
        assert [(r.source_id, r.target_id) for r in created] == [(nodes["bob"], nodes["ada"])]
        assert graph.find().total == 2

    def test_small_batches(self, db: VaultDB, nodes: dict) -> None:
        graph = RelationshipGraph(db, batch_size=2)
        ids = list(nodes.values())
        edges = [RelationshipCreate(s, t) for s in ids for t in ids if s != t]
        created = graph.create_bulk(edges + edges[:3])
        assert len(created) == len(edges) == 12
        assert graph.find().total == 12

    def test_concurrent_bulk_inserts(self, graph: RelationshipGraph, nodes: dict) -> None:
        edge = RelationshipCreate(nodes["ada"], nodes["acme"])
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: graph.create_bulk([edge]), range(16)))
        assert sum(len(r) for r in results) == 1
        assert graph.find(RelationshipFilters(source_id=nodes["ada"])).total == 1


@pytest.fixture
def web(graph: RelationshipGraph, nodes: dict) -> dict[str, str]:
    pairs = [
        ("ada", "memo"),
        ("ada", "bob"),
        ("bob", "memo"),
        ("memo", "acme"),
        ("ada", "acme"),
    ]
    ids = {}
    for s, t in pairs:
        rel = graph.create(RelationshipCreate(nodes[s], nodes[t]))
        assert rel is not None
        ids[f"{s}>{t}"] = rel.id
    return ids


class TestFind:
    def test_by_source_newest_first(self, graph: RelationshipGraph, nodes: dict, web: dict) -> None:
        page = graph.find(RelationshipFilters(source_id=nodes["ada"]))
        assert page.total == 3
        assert [r.id for r in page.relationships] == [web["ada>acme"], web["ada>bob"], web["ada>memo"]]

    def test_by_target(self, graph: RelationshipGraph, nodes: dict, web: dict) -> None:
        page = graph.find(RelationshipFilters(target_id=nodes["memo"]))
        assert {r.id for r in page.relationships} == {web["ada>memo"], web["bob>memo"]}

    def test_by_pair(self, graph: RelationshipGraph, nodes: dict, web: dict) -> None:
        page = graph.find(RelationshipFilters(source_id=nodes["bob"], target_id=nodes["memo"]))
        assert [r.id for r in page.relationships] == [web["bob>memo"]]
        assert graph.find(RelationshipFilters(source_id=nodes["memo"], target_id=nodes["bob"])).total == 0

    def test_type_filters_are_conjunctive(self, graph: RelationshipGraph, nodes: dict, web: dict) -> None:
        page = graph.find(RelationshipFilters(source_type="person", target_type="document"))
        assert {r.id for r in page.relationships} == {web["ada>memo"], web["bob>memo"]}
        page = graph.find(RelationshipFilters(source_id=nodes["ada"], target_type=ObjectType.ENTITY))
        assert [r.id for r in page.relationships] == [web["ada>acme"]]

    def test_pagination(self, graph: RelationshipGraph, web: dict) -> None:
        page = graph.find(RelationshipFilters(limit=2, offset=1))
        assert page.total == 5
        assert len(page.relationships) == 2
        assert len(graph.find(RelationshipFilters(offset=3)).relationships) == 2
        with pytest.raises(ValidationFailure):
            RelationshipFilters(limit=0)

    def test_neighbors(self, graph: RelationshipGraph, nodes: dict, web: dict) -> None:
        assert len(graph.neighbors(nodes["memo"], "outgoing")) == 1
        assert len(graph.neighbors(nodes["memo"], "incoming")) == 2
        assert len(graph.neighbors(nodes["memo"])) == 3
        with pytest.raises(ValidationFailure):
            graph.neighbors(nodes["memo"], "sideways")


class TestDelete:
    def test_delete_variants(self, graph: RelationshipGraph, nodes: dict, web: dict) -> None:
        assert graph.delete(web["memo>acme"]) is True
        assert graph.delete(web["memo>acme"]) is False
        assert graph.delete_by_target(nodes["memo"]) == 2
        assert graph.delete_by_source(nodes["ada"]) == 2
        assert graph.find().total == 0

    def test_cleanup_for_object(self, graph: RelationshipGraph, nodes: dict, web: dict) -> None:
        assert graph.cleanup_for_object(nodes["memo"]) == 3
        assert graph.neighbors(nodes["memo"]) == []
        assert graph.find().total == 2


def test_endpoint_types_are_a_cache(
    objects: ObjectStore, graph: RelationshipGraph, nodes: dict, web: dict
) -> None:
    objects.update(nodes["acme"], {"type": "person"})
    stale = graph.get(web["ada>acme"])
    assert stale is not None and stale.target_type is ObjectType.ENTITY

    assert graph.refresh_endpoint_types(nodes["acme"]) == 2
    fresh = graph.get(web["ada>acme"])
    assert fresh is not None and fresh.target_type is ObjectType.PERSON
    assert graph.find(RelationshipFilters(target_type="entity")).total == 0
