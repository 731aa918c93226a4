from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Literal

from ..objects.store import ObjectStore
from ..objects.types import KnowledgeObject
from ..vector_indexing.chunks import ChunkStore
from ..vector_indexing.types import Chunk
from .config import RetrievalConfig

logger = logging.getLogger(__name__)

ItemKind = Literal["object", "excerpt"]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token."""
    return math.ceil(len(text) / 4)


@dataclass(slots=True)
class Citation:
    id: int
    object_id: str
    object_name: str
    object_type: str
    chunk_indexes: list[int] | None
    relevance_score: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "object_id": self.object_id,
            "object_name": self.object_name,
            "object_type": self.object_type,
            "chunk_indexes": self.chunk_indexes,
            "relevance_score": self.relevance_score,
        }


@dataclass(slots=True)
class ContextItem:
    object: KnowledgeObject
    kind: ItemKind
    text: str
    score: float
    tokens: int
    chunk_indexes: tuple[int, ...] = ()
    citation: Citation | None = None


@dataclass(slots=True)
class UsedDoc:
    id: str
    name: str
    type: str


@dataclass(slots=True)
class RetrievalMetadata:
    total_docs: int = 0
    total_chunks: int = 0
    strategy: str = "balanced"
    estimated_tokens: int = 0
    processing_time_ms: float = 0.0


@dataclass(slots=True)
class RankedContext:
    items: list[ContextItem] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    used_docs: list[UsedDoc] = field(default_factory=list)
    context_text: str = ""
    metadata: RetrievalMetadata = field(default_factory=RetrievalMetadata)

    @classmethod
    def empty(cls, strategy: str, started: float | None = None) -> "RankedContext":
        elapsed = (time.perf_counter() - started) * 1000.0 if started is not None else 0.0
        return cls(metadata=RetrievalMetadata(strategy=strategy, processing_time_ms=elapsed))


@dataclass(slots=True)
class _ChunkHit:
    chunk: Chunk
    score: float


class RetrievalPipeline:
    """Selects objects and chunk excerpts relevant to a query vector.

    1. object hits >= min_doc_sim, best doc_top_k
    2. chunk hits >= min_chunk_sim, best chunk_top_k
    3. at most per_doc_chunk_cap chunk hits per object
    4. each chunk hit widened by context_window neighbours (not capped)
    5. objects taken whole suppress their excerpts, unless the whole text
       alone is over budget and it has excerpts
    6. greedy by score until the next item would overflow budget_tokens
    7. citations on accepted items when add_citations is set

    Un-embedded objects and chunks are simply not candidates.
    """

    def __init__(self, objects: ObjectStore, chunks: ChunkStore):
        self.objects = objects
        self.chunks = chunks

    def retrieve(
        self,
        query_vector: Sequence[float],
        query_text: str = "",
        config: RetrievalConfig | None = None,
        *,
        exclude_ids: Iterable[str] = (),
    ) -> RankedContext:
        started = time.perf_counter()
        cfg = config or RetrievalConfig()
        exclude = set(exclude_ids)

        doc_hits = [
            (o, s)
            for o, s in self.objects.search_by_vector(query_vector, min_similarity=cfg.min_doc_sim)
            if o.id not in exclude
        ][: cfg.doc_top_k]

        chunk_hits, parents = self._chunk_hits(query_vector, cfg, exclude)
        capped = self._cap_per_object(chunk_hits, cfg.per_doc_chunk_cap)
        n_chunk_hits = sum(len(v) for v in capped.values())

        if not doc_hits and not capped:
            logger.debug("No retrieval hits for query %r", query_text[:80])
            return RankedContext.empty(cfg.strategy, started)

        items: list[ContextItem] = []
        whole: set[str] = set()
        for obj, score in doc_hits:
            text = obj.content if obj.content.strip() else obj.name
            tokens = estimate_tokens(text)
            if tokens > cfg.budget_tokens and capped.get(obj.id):
                # too large to take whole; its excerpts stand in for it
                logger.debug("Object %s (%d tokens) exceeds budget; using excerpts", obj.id, tokens)
                parents.setdefault(obj.id, obj)
                continue
            whole.add(obj.id)
            items.append(ContextItem(object=obj, kind="object", text=text, score=score, tokens=tokens))

        for object_id, hits in capped.items():
            if object_id in whole:
                continue
            items.extend(self._excerpts(parents[object_id], hits, cfg.context_window))

        items.sort(
            key=lambda it: (
                it.score,
                it.kind == "object",
                it.object.updated_at.timestamp() if it.object.updated_at else 0.0,
            ),
            reverse=True,
        )

        accepted: list[ContextItem] = []
        used_tokens = 0
        for it in items:
            if used_tokens + it.tokens > cfg.budget_tokens:
                break
            accepted.append(it)
            used_tokens += it.tokens

        return self._assemble(
            accepted,
            cfg,
            total_docs=len(doc_hits),
            total_chunks=n_chunk_hits,
            used_tokens=used_tokens,
            started=started,
        )

    # --- steps ---

    def _chunk_hits(
        self, query_vector: Sequence[float], cfg: RetrievalConfig, exclude: set[str]
    ) -> tuple[list[_ChunkHit], dict[str, KnowledgeObject]]:
        raw = [
            _ChunkHit(c, s)
            for c, s in self.chunks.search_by_vector(query_vector, min_similarity=cfg.min_chunk_sim)
            if c.object_id not in exclude
        ][: cfg.chunk_top_k]
        parents = self.objects.get_many([h.chunk.object_id for h in raw])
        hits = []
        for h in raw:
            if h.chunk.object_id not in parents:
                logger.debug("Dropping chunk %s: parent %s missing", h.chunk.id, h.chunk.object_id)
                continue
            hits.append(h)
        return hits, parents

    @staticmethod
    def _cap_per_object(hits: list[_ChunkHit], cap: int) -> dict[str, list[_ChunkHit]]:
        # hits arrive best-first, so the first `cap` per object are the best
        grouped: dict[str, list[_ChunkHit]] = {}
        for h in hits:
            bucket = grouped.setdefault(h.chunk.object_id, [])
            if len(bucket) < cap:
                bucket.append(h)
        return grouped

    def _excerpts(
        self, parent: KnowledgeObject, hits: list[_ChunkHit], window: int
    ) -> list[ContextItem]:
        all_chunks = {c.chunk_index: c for c in self.chunks.get_by_object(parent.id)}
        best: dict[int, float] = {}
        for h in hits:
            i = h.chunk.chunk_index
            best[i] = max(best.get(i, h.score), h.score)

        selected: set[int] = set()
        for i in best:
            for j in range(i - window, i + window + 1):
                if j in all_chunks:
                    selected.add(j)
        selected.update(i for i in best if i not in all_chunks)

        runs: list[list[int]] = []
        for i in sorted(selected):
            if runs and i == runs[-1][-1] + 1:
                runs[-1].append(i)
            else:
                runs.append([i])

        out: list[ContextItem] = []
        for run in runs:
            text = self._span_text(parent, [all_chunks.get(i) for i in run], hits)
            score = max(best[i] for i in run if i in best)
            out.append(
                ContextItem(
                    object=parent,
                    kind="excerpt",
                    text=text,
                    score=score,
                    tokens=estimate_tokens(text),
                    chunk_indexes=tuple(run),
                )
            )
        return out

    @staticmethod
    def _span_text(
        parent: KnowledgeObject, run: list[Chunk | None], hits: list[_ChunkHit]
    ) -> str:
        chunks = [c for c in run if c is not None]
        if not chunks:
            # chunk set was replaced between the search and this read
            by_index = {h.chunk.chunk_index: h.chunk for h in hits}
            chunks = [by_index[i] for i in sorted(by_index)]
        start, end = chunks[0].start_position, chunks[-1].end_position
        if 0 <= start < end <= len(parent.content):
            return parent.content[start:end]
        return "\n".join(c.content for c in chunks)

    @staticmethod
    def _assemble(
        accepted: list[ContextItem],
        cfg: RetrievalConfig,
        *,
        total_docs: int,
        total_chunks: int,
        used_tokens: int,
        started: float,
    ) -> RankedContext:
        citations: list[Citation] = []
        used_docs: list[UsedDoc] = []
        seen: set[str] = set()
        parts: list[str] = []

        for n, it in enumerate(accepted, start=1):
            label = ""
            if cfg.add_citations:
                it.citation = Citation(
                    id=n,
                    object_id=it.object.id,
                    object_name=it.object.name,
                    object_type=it.object.type.value,
                    chunk_indexes=list(it.chunk_indexes) if it.kind == "excerpt" else None,
                    relevance_score=it.score,
                )
                citations.append(it.citation)
                label = f" [#{n}]"
            if it.object.id not in seen:
                seen.add(it.object.id)
                used_docs.append(
                    UsedDoc(id=it.object.id, name=it.object.name, type=it.object.type.value)
                )
            parts.append(f"{it.text}{label}")

        context_text = ("Retrieved Context:\n\n" + "\n\n---\n\n".join(parts)) if parts else ""
        return RankedContext(
            items=accepted,
            citations=citations,
            used_docs=used_docs,
            context_text=context_text,
            metadata=RetrievalMetadata(
                total_docs=total_docs,
                total_chunks=total_chunks,
                strategy=cfg.strategy,
                estimated_tokens=used_tokens,
                processing_time_ms=(time.perf_counter() - started) * 1000.0,
            ),
        )
