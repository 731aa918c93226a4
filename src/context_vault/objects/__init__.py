"""Typed knowledge objects: people, documents, letters, entities, issues, logs, meetings."""

from .types import (
    OBJECT_TYPES,
    EmbeddingStatus,
    FileAttachment,
    KnowledgeObject,
    MentionItem,
    ObjectType,
    SearchResult,
    TypeRule,
    type_rule,
)

__all__ = [
    "OBJECT_TYPES",
    "EmbeddingStatus",
    "FileAttachment",
    "KnowledgeObject",
    "MentionItem",
    "ObjectType",
    "SearchResult",
    "TypeRule",
    "type_rule",
]
