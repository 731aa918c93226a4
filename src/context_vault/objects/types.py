from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ObjectType(str, Enum):
    """The closed set of knowledge object types."""

    PERSON = "person"
    DOCUMENT = "document"
    LETTER = "letter"
    ENTITY = "entity"
    ISSUE = "issue"
    LOG = "log"
    MEETING = "meeting"


OBJECT_TYPES: tuple[str, ...] = tuple(t.value for t in ObjectType)


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TypeRule:
    """Per-type behaviour. Everything type-specific is looked up here."""

    label: str
    plural: str
    has_date_field: bool = False
    can_upload_file: bool = False


TYPE_RULES: dict[ObjectType, TypeRule] = {
    ObjectType.PERSON: TypeRule(label="person", plural="people"),
    ObjectType.DOCUMENT: TypeRule(
        label="document", plural="documents", has_date_field=True, can_upload_file=True
    ),
    ObjectType.LETTER: TypeRule(
        label="letter", plural="letters", has_date_field=True, can_upload_file=True
    ),
    ObjectType.ENTITY: TypeRule(label="entity", plural="entities"),
    ObjectType.ISSUE: TypeRule(label="issue", plural="issues", has_date_field=True),
    ObjectType.LOG: TypeRule(label="log", plural="logs", has_date_field=True),
    ObjectType.MEETING: TypeRule(
        label="meeting", plural="meetings", has_date_field=True, can_upload_file=True
    ),
}


def type_rule(t: ObjectType | str) -> TypeRule:
    return TYPE_RULES[ObjectType(t)]


@dataclass(frozen=True, slots=True)
class FileAttachment:
    """Metadata of an uploaded file. Changing it never forces re-embedding."""

    original_file_name: str | None = None
    file_path: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    has_file: bool = False


def compute_content_hash(
    *, name: str, content: str, aliases: list[str], date: str | None
) -> str:
    """Hash of the content-affecting fields; the object's content version."""
    payload = {"name": name, "content": content, "aliases": list(aliases), "date": date}
    s = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class KnowledgeObject:
    id: str
    type: ObjectType
    name: str
    content: str = ""
    aliases: list[str] = field(default_factory=list)
    date: str | None = None
    file: FileAttachment = field(default_factory=FileAttachment)
    embedding: list[float] | None = None
    has_embedding: bool = False
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    needs_embedding: bool = True
    is_from_ocr: bool = False
    has_been_edited: bool = False
    content_hash: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def rule(self) -> TypeRule:
        return TYPE_RULES[self.type]

    def to_dict(self, *, include_embedding: bool = False) -> dict:
        d = {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "content": self.content,
            "aliases": list(self.aliases),
            "date": self.date,
            "original_file_name": self.file.original_file_name,
            "file_path": self.file.file_path,
            "file_size": self.file.file_size,
            "mime_type": self.file.mime_type,
            "has_file": self.file.has_file,
            "has_embedding": self.has_embedding,
            "embedding_status": self.embedding_status.value,
            "needs_embedding": self.needs_embedding,
            "is_from_ocr": self.is_from_ocr,
            "has_been_edited": self.has_been_edited,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_embedding:
            d["embedding"] = self.embedding
        return d


@dataclass(frozen=True, slots=True)
class MentionItem:
    """A lightweight mention suggestion."""

    id: str
    name: str
    type: ObjectType
    aliases: tuple[str, ...] = ()


@dataclass(slots=True)
class SearchResult:
    objects: list[KnowledgeObject]
    total: int
