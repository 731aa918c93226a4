from __future__ import annotations

import pytest

from context_vault.knowledge_graph.store import RelationshipGraph
from context_vault.mentions import MentionResolver, parse_mentions, to_embedding_text
from context_vault.objects.store import ObjectStore
from context_vault.objects.types import ObjectType


class TestParse:
    def test_name_only(self) -> None:
        [m] = parse_mentions("@[person:張三]")
        assert m.type is ObjectType.PERSON
        assert m.name == "張三"
        assert m.alias is None
        assert m.object_id is None
        assert (m.start, m.end) == (0, len("@[person:張三]"))

    def test_name_and_alias(self) -> None:
        [m] = parse_mentions("@[document:計劃書|計劃]")
        assert m.type is ObjectType.DOCUMENT
        assert m.name == "計劃書"
        assert m.alias == "計劃"

    def test_left_to_right_offsets(self) -> None:
        text = "met @[person:Ada] about @[entity:ACME|acme] today"
        found = parse_mentions(text)
        assert [m.name for m in found] == ["Ada", "ACME"]
        for m in found:
            assert text[m.start : m.end] == m.raw

    @pytest.mark.parametrize(
        "text",
        ["@[Person:Ada]", "@[project:Ada]", "@[person:]", "@[person: ]", "@[person:Ada", "plain text"],
    )
    def test_ignored(self, text: str) -> None:
        assert parse_mentions(text) == []

    def test_to_embedding_text(self) -> None:
        text = "見 @[person:李強|老李] 和 @[entity:ACME]"
        assert to_embedding_text(text) == "見 老李 李強 和 ACME"


@pytest.fixture
def people(objects: ObjectStore) -> dict[str, str]:
    li = objects.create({"type": "person", "name": "李強", "aliases": ["李總理"]})
    ada = objects.create({"type": "person", "name": "Ada"})
    return {"li": li.id, "ada": ada.id}


class TestResolve:
    @pytest.mark.parametrize(
        "text",
        [
            "@[person:李強]",
            "@[person:Unknown|李總理]",
            "@[person:李總理]",
            "@[person:Nobody|李強]",
        ],
    )
    def test_rules(self, objects: ObjectStore, people: dict, text: str) -> None:
        resolver = MentionResolver(objects)
        mentions, ids = resolver.parse_and_resolve(text)
        assert ids == [people["li"]]
        assert mentions[0].object_id == people["li"]

    def test_declared_type_must_match(self, objects: ObjectStore, people: dict) -> None:
        mentions, ids = MentionResolver(objects).parse_and_resolve("@[entity:李強]")
        assert ids == []
        assert mentions[0].object_id is None

    def test_deduplicates(self, objects: ObjectStore, people: dict) -> None:
        text = "@[person:李強] @[person:李總理] @[person:Ada] @[person:李強]"
        mentions, ids = MentionResolver(objects).parse_and_resolve(text)
        assert ids == [people["li"], people["ada"]]
        assert all(m.object_id for m in mentions)


class TestLink:
    def test_creates_edges_once(self, objects: ObjectStore, graph: RelationshipGraph, people: dict) -> None:
        doc = objects.create({"type": "document", "name": "Memo"})
        text = "@[person:李總理] @[person:Ada] @[document:Memo] @[person:Ghost]"
        resolver = MentionResolver(objects)

        created = resolver.link(doc.id, text, graph)
        assert {r.target_id for r in created} == {people["li"], people["ada"]}
        assert all(r.source_type is ObjectType.DOCUMENT for r in created)

        assert resolver.link(doc.id, text, graph) == []
        assert len(graph.get_by_source(doc.id)) == 2
