from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from ..errors import ValidationFailure
from ..objects.types import ObjectType

Direction = Literal["outgoing", "incoming", "both"]

DEFAULT_PAGE_LIMIT = 50


def _coerce_type(value: ObjectType | str | None, name: str) -> ObjectType | None:
    if value is None:
        return None
    try:
        return ObjectType(value)
    except ValueError as e:
        raise ValidationFailure(f"unknown object type: {value}", field=name) from e


@dataclass(frozen=True, slots=True)
class Relationship:
    """A directed edge between two objects.

    ``source_type``/``target_type`` are copies taken when the edge was
    created; they are not kept in sync if an endpoint later changes type.
    """

    id: str
    source_id: str
    target_id: str
    source_type: ObjectType
    target_type: ObjectType
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "source_type": self.source_type.value,
            "target_type": self.target_type.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class RelationshipCreate:
    """Edge to insert. Endpoint types are looked up when omitted."""

    source_id: str
    target_id: str
    source_type: ObjectType | None = None
    target_type: ObjectType | None = None

    def __post_init__(self) -> None:
        if not self.source_id or not self.target_id:
            raise ValidationFailure("source_id and target_id are required")
        self.source_type = _coerce_type(self.source_type, "source_type")
        self.target_type = _coerce_type(self.target_type, "target_type")


@dataclass(slots=True)
class RelationshipFilters:
    source_id: str | None = None
    target_id: str | None = None
    source_type: ObjectType | None = None
    target_type: ObjectType | None = None
    limit: int | None = None
    offset: int | None = None

    def __post_init__(self) -> None:
        self.source_type = _coerce_type(self.source_type, "source_type")
        self.target_type = _coerce_type(self.target_type, "target_type")
        if self.limit is not None and self.limit < 1:
            raise ValidationFailure("limit must be >= 1", field="limit")
        if self.offset is not None and self.offset < 0:
            raise ValidationFailure("offset must be >= 0", field="offset")

    @property
    def paginated(self) -> bool:
        return self.limit is not None or self.offset is not None

    def page(self) -> tuple[int, int]:
        return (
            self.limit if self.limit is not None else DEFAULT_PAGE_LIMIT,
            self.offset or 0,
        )


@dataclass(slots=True)
class RelationshipPage:
    relationships: list[Relationship] = field(default_factory=list)
    total: int = 0
