from __future__ import annotations

import re
from datetime import date as _date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import ValidationFailure
from .types import ObjectType, type_rule

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _check_date(v: str | None) -> str | None:
    if v is None:
        return None
    v = v.strip()
    if v == "":
        return None
    if not _ISO_DATE_RE.match(v):
        raise ValueError("date must be in YYYY-MM-DD format")
    try:
        _date.fromisoformat(v)
    except ValueError as e:
        raise ValueError(f"date is not a calendar date: {v}") from e
    return v


def _clean_aliases(v: list[str] | None) -> list[str] | None:
    if v is None:
        return None
    out: list[str] = []
    for a in v:
        a = (a or "").strip()
        if a and a not in out:
            out.append(a)
    return out


class ObjectCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=False)

    type: ObjectType
    name: str = Field(min_length=1)
    content: str = ""
    aliases: list[str] = Field(default_factory=list)
    date: str | None = None

    original_file_name: str | None = None
    file_path: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None
    has_file: bool = False

    is_from_ocr: bool = False

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("date")
    @classmethod
    def valid_date(cls, v: str | None) -> str | None:
        return _check_date(v)

    @field_validator("aliases")
    @classmethod
    def dedupe_aliases(cls, v: list[str] | None) -> list[str] | None:
        return _clean_aliases(v)

    @model_validator(mode="after")
    def date_allowed(self) -> "ObjectCreate":
        if self.date is not None and not type_rule(self.type).has_date_field:
            raise ValueError(f"objects of type {self.type.value} do not carry a date")
        return self


class ObjectUpdate(BaseModel):
    """Partial update. Only fields explicitly present are applied."""

    model_config = ConfigDict(extra="forbid")

    type: ObjectType | None = None
    name: str | None = None
    content: str | None = None
    aliases: list[str] | None = None
    date: str | None = None

    original_file_name: str | None = None
    file_path: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None
    has_file: bool | None = None

    is_from_ocr: bool | None = None
    has_been_edited: bool | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("date")
    @classmethod
    def valid_date(cls, v: str | None) -> str | None:
        return _check_date(v)

    @field_validator("aliases")
    @classmethod
    def dedupe_aliases(cls, v: list[str] | None) -> list[str] | None:
        return _clean_aliases(v)

    def provided(self) -> set[str]:
        return set(self.model_fields_set)


def validate_input(model: type[BaseModel], data: Any) -> Any:
    """Coerce ``data`` into ``model``, translating pydantic errors."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = first.get("loc") or ()
        field = str(loc[0]) if loc else None
        raise ValidationFailure(
            first.get("msg", str(e)), field=field, details=e.errors()
        ) from e
