from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from ..objects.types import OBJECT_TYPES, KnowledgeObject, ObjectType

if TYPE_CHECKING:
    from ..knowledge_graph.models import Relationship
    from ..knowledge_graph.store import RelationshipGraph

logger = logging.getLogger(__name__)

# Type token is case-sensitive; anything outside the seven types is not a mention.
MENTION_RE = re.compile(
    r"@\[(" + "|".join(OBJECT_TYPES) + r"):([^|\]]+)(?:\|([^\]]+))?\]"
)


@dataclass(slots=True)
class ParsedMention:
    start: int
    end: int
    raw: str
    type: ObjectType
    name: str
    alias: str | None = None
    object_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "raw": self.raw,
            "type": self.type.value,
            "name": self.name,
            "alias": self.alias,
            "object_id": self.object_id,
        }


def parse_mentions(text: str) -> list[ParsedMention]:
    """Left-to-right, non-overlapping scan for mention tokens."""
    if not text:
        return []
    out: list[ParsedMention] = []
    for m in MENTION_RE.finditer(text):
        name = m.group(2).strip()
        if not name:
            logger.debug("Ignoring mention with blank name at %d: %r", m.start(), m.group(0))
            continue
        alias = (m.group(3) or "").strip() or None
        out.append(
            ParsedMention(
                start=m.start(),
                end=m.end(),
                raw=m.group(0),
                type=ObjectType(m.group(1)),
                name=name,
                alias=alias,
            )
        )
    return out


def to_embedding_text(text: str) -> str:
    """Rewrite mentions as plain words: ``alias name`` or just ``name``."""

    def _sub(m: re.Match[str]) -> str:
        name = m.group(2).strip()
        alias = (m.group(3) or "").strip()
        return f"{alias} {name}" if alias else name

    return MENTION_RE.sub(_sub, text or "")


class ObjectLookup(Protocol):
    def find_by_name(self, object_type: ObjectType, name: str) -> KnowledgeObject | None: ...

    def find_by_alias(self, object_type: ObjectType, alias: str) -> KnowledgeObject | None: ...


class MentionResolver:
    """Maps parsed mentions to object ids.

    Per mention, first hit wins:
    1. same type, name == declared name
    2. same type, declared alias in the object's aliases
    3. same type, declared name in the object's aliases, or name == declared alias
    """

    def __init__(self, objects: ObjectLookup):
        self.objects = objects

    def resolve_one(self, mention: ParsedMention) -> KnowledgeObject | None:
        t, name, alias = mention.type, mention.name, mention.alias
        obj = self.objects.find_by_name(t, name)
        if obj is None and alias:
            obj = self.objects.find_by_alias(t, alias)
        if obj is None:
            obj = self.objects.find_by_alias(t, name)
            if obj is None and alias:
                obj = self.objects.find_by_name(t, alias)
        return obj

    def resolve(self, mentions: Iterable[ParsedMention]) -> list[str]:
        """Resolve in place and return the distinct object ids, in mention order."""
        ids: list[str] = []
        for m in mentions:
            obj = self.resolve_one(m)
            if obj is None:
                logger.info("Unresolved mention %s", m.raw)
                continue
            m.object_id = obj.id
            if obj.id not in ids:
                ids.append(obj.id)
        return ids

    def parse_and_resolve(self, text: str) -> tuple[list[ParsedMention], list[str]]:
        mentions = parse_mentions(text)
        return mentions, self.resolve(mentions)

    def link(self, source_id: str, text: str, graph: RelationshipGraph) -> list[Relationship]:
        """Create ``source -> mentioned`` edges for every resolvable mention in ``text``."""
        from ..knowledge_graph.models import RelationshipCreate

        _, ids = self.parse_and_resolve(text)
        edges = [RelationshipCreate(source_id=source_id, target_id=i) for i in ids if i != source_id]
        if not edges:
            return []
        return graph.create_bulk(edges)
