from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..objects.types import EmbeddingStatus


@dataclass(frozen=True, slots=True)
class ChunkSpan:
    """A slice of an object's content, before it is stored.

    ``start``/``end`` are offsets into the parent content and
    ``text == content[start:end]``.
    """

    index: int
    start: int
    end: int
    text: str


@dataclass(slots=True)
class Chunk:
    """A stored chunk. Chunks of one object are numbered 0..n-1 without gaps."""

    id: str
    object_id: str
    content: str
    chunk_index: int
    start_position: int
    end_position: int
    embedding: list[float] | None = None
    has_embedding: bool = False
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None
