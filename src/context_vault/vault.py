from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from .db import KeyedLock, VaultDB
from .embedding.embedder import Embedder, build_embedder
from .embedding.worker import EmbeddingWorker
from .errors import ProviderFailure
from .knowledge_graph.models import (
    Direction,
    Relationship,
    RelationshipCreate,
    RelationshipFilters,
    RelationshipPage,
)
from .knowledge_graph.store import RelationshipGraph
from .mentions.parser import MentionResolver, ParsedMention, parse_mentions
from .objects.schemas import ObjectCreate, ObjectUpdate
from .objects.store import ObjectStore
from .objects.types import KnowledgeObject, MentionItem, ObjectType, SearchResult
from .retrieval.config import RetrievalConfig
from .retrieval.pipeline import RankedContext, RetrievalPipeline
from .settings import VaultSettings
from .vector_indexing.chunking import ChunkingConfig
from .vector_indexing.chunks import ChunkStore

logger = logging.getLogger(__name__)


class Vault:
    """One vault: a SQLite file plus the stores, resolver, retrieval and worker on top of it.

    Build it once per process and hand it to whoever needs it. Writes go
    through here so mention links, the embedding queue and the optional
    edge-type refresh follow every mutation.
    """

    def __init__(
        self,
        db: VaultDB,
        *,
        embedder: Embedder | None = None,
        chunking: ChunkingConfig | None = None,
        retrieval: RetrievalConfig | None = None,
        link_mentions_on_write: bool = True,
        refresh_edge_types_on_type_change: bool = False,
        worker_poll_interval_s: float = 5.0,
        worker_max_attempts: int = 3,
        worker_delay_s: float = 0.1,
    ):
        self.db = db
        self.db.init()
        self.locks = KeyedLock()
        self.objects = ObjectStore(db, self.locks)
        self.chunks = ChunkStore(db)
        self.graph = RelationshipGraph(db)
        self.resolver = MentionResolver(self.objects)
        self.pipeline = RetrievalPipeline(self.objects, self.chunks)
        self.retrieval_config = retrieval or RetrievalConfig()
        self.embedder = embedder or build_embedder()
        self.link_mentions_on_write = link_mentions_on_write
        self.worker = EmbeddingWorker(
            self.objects,
            self.chunks,
            self.embedder,
            chunking=chunking,
            poll_interval_s=worker_poll_interval_s,
            max_attempts=worker_max_attempts,
            delay_s=worker_delay_s,
        )
        self._type_sweeper = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="edge-type-refresh")
            if refresh_edge_types_on_type_change
            else None
        )
        self._closed = False

    @classmethod
    def from_settings(cls, s: VaultSettings, *, embedder: Embedder | None = None) -> "Vault":
        if embedder is None:
            embedder = build_embedder(
                st_model=s.st_model,
                dim=s.embedding_dim,
                url=s.embedding_url,
                api_key=s.embedding_api_key,
                model=s.embedding_model,
            )
        return cls(
            VaultDB(s.db_path),
            embedder=embedder,
            chunking=s.chunking_config(),
            retrieval=s.retrieval_config(),
            link_mentions_on_write=s.link_mentions_on_write,
            refresh_edge_types_on_type_change=s.refresh_edge_types_on_type_change,
            worker_poll_interval_s=s.worker_poll_interval_s,
            worker_max_attempts=s.worker_max_attempts,
            worker_delay_s=s.worker_delay_s,
        )

    # --- objects ---

    def create_object(self, payload: ObjectCreate | dict[str, Any]) -> KnowledgeObject:
        obj = self.objects.create(payload)
        self._link_mentions(obj)
        self._queue_embedding(obj)
        return obj

    def get_object(self, object_id: str) -> KnowledgeObject | None:
        return self.objects.get(object_id)

    def list_objects(self, object_type: ObjectType | str | None = None) -> list[KnowledgeObject]:
        if object_type is None:
            return self.objects.list_all()
        return self.objects.list_by_type(object_type)

    def search_objects(self, query: str, object_type: ObjectType | str | None = None) -> SearchResult:
        return self.objects.search(query, object_type)

    def update_object(
        self, object_id: str, changes: ObjectUpdate | dict[str, Any]
    ) -> KnowledgeObject | None:
        change = self.objects.update_with_changes(object_id, changes)
        if change is None:
            return None
        obj = change.object
        if change.content_changed:
            self._link_mentions(obj)
            self._queue_embedding(obj)
        if change.type_changed and self._type_sweeper is not None:
            self._type_sweeper.submit(self._refresh_edge_types, obj.id, obj.type)
        return obj

    def delete_object(self, object_id: str) -> bool:
        return self.objects.delete(object_id)

    def mark_ocr_edited(self, object_id: str) -> KnowledgeObject | None:
        obj = self.objects.mark_ocr_edited(object_id)
        if obj is not None:
            self._queue_embedding(obj)
        return obj

    def _link_mentions(self, obj: KnowledgeObject) -> None:
        if not self.link_mentions_on_write or "@[" not in obj.content:
            return
        created = self.resolver.link(obj.id, obj.content, self.graph)
        if created:
            logger.info("Linked %d mentions from %s", len(created), obj.id)

    def _queue_embedding(self, obj: KnowledgeObject) -> None:
        if obj.needs_embedding and not (obj.is_from_ocr and not obj.has_been_edited):
            self.worker.submit(obj.id)

    def _refresh_edge_types(self, object_id: str, new_type: ObjectType) -> None:
        try:
            n = self.graph.refresh_endpoint_types(object_id, new_type)
            logger.debug("Refreshed endpoint types on %d edges of %s", n, object_id)
        except Exception:
            logger.exception("Edge type refresh for %s failed", object_id)

    # --- mentions ---

    def parse_mentions(self, text: str) -> list[ParsedMention]:
        return parse_mentions(text)

    def resolve_mentions(self, text: str) -> tuple[list[ParsedMention], list[str]]:
        return self.resolver.parse_and_resolve(text)

    def mention_suggestions(self, query: str, limit: int = 10) -> list[MentionItem]:
        return self.objects.mention_suggestions(query, limit)

    # --- relationships ---

    def link(
        self,
        source_id: str,
        target_id: str,
        *,
        source_type: ObjectType | str | None = None,
        target_type: ObjectType | str | None = None,
    ) -> Relationship | None:
        return self.graph.create(
            RelationshipCreate(source_id, target_id, source_type=source_type, target_type=target_type)
        )

    def link_many(self, edges: Iterable[RelationshipCreate]) -> list[Relationship]:
        return self.graph.create_bulk(edges)

    def unlink(self, relationship_id: str) -> bool:
        return self.graph.delete(relationship_id)

    def relationships(self, filters: RelationshipFilters | None = None) -> RelationshipPage:
        return self.graph.find(filters)

    def neighbors(self, object_id: str, direction: Direction = "both") -> list[Relationship]:
        return self.graph.neighbors(object_id, direction)

    # --- retrieval ---

    def retrieve(
        self,
        query_vector: Sequence[float],
        query_text: str = "",
        *,
        exclude_ids: Iterable[str] = (),
        **overrides: Any,
    ) -> RankedContext:
        cfg = self.retrieval_config.with_overrides(**overrides)
        return self.pipeline.retrieve(query_vector, query_text, cfg, exclude_ids=exclude_ids)

    async def build_context(
        self, query_text: str, *, exclude_ids: Iterable[str] = (), **overrides: Any
    ) -> RankedContext:
        """Embed ``query_text`` and retrieve context for it.

        Never raises for provider trouble: the result is an empty context whose
        ``metadata.strategy`` says why (``disabled``, ``skipped_short``, ``error``).
        """
        started = time.perf_counter()
        cfg = self.retrieval_config.with_overrides(**overrides)
        if not cfg.auto_rag:
            return RankedContext.empty("disabled", started)
        if len(query_text.strip()) < cfg.min_query_chars:
            return RankedContext.empty("skipped_short", started)
        try:
            vectors = await self.embedder.aembed([query_text])
            if len(vectors) != 1:
                raise ProviderFailure(f"expected 1 query vector, got {len(vectors)}")
        except ProviderFailure as e:
            logger.warning("Query embedding failed; continuing without context: %s", e)
            return RankedContext.empty("error", started)
        return await asyncio.to_thread(
            self.pipeline.retrieve, vectors[0], query_text, cfg, exclude_ids=tuple(exclude_ids)
        )

    # --- embedding ---

    async def start_worker(self) -> None:
        await self.worker.start()

    async def embed_pending(self) -> Counter[str]:
        return await self.worker.drain()

    def rechunk(self, object_type: ObjectType | str | None = None) -> dict[str, int]:
        """Flag every object (or every object of one type) for chunk and embedding regeneration."""
        targets = self.list_objects(object_type)
        ids = [o.id for o in targets]
        processed = self.objects.requeue(ids) if ids else 0
        for o in targets:
            if not (o.is_from_ocr and not o.has_been_edited):
                self.worker.submit(o.id)
        logger.info("Queued %d/%d objects for rechunking", processed, len(ids))
        return {"processed": processed, "total": len(ids)}

    # --- lifecycle ---

    async def aclose(self) -> None:
        if self._closed:
            return
        await self.worker.stop(flush=True)
        self._shutdown()

    def close(self) -> None:
        if self._closed:
            return
        if self.worker.running:
            raise RuntimeError("worker is running; use `await vault.aclose()`")
        self._shutdown()

    def _shutdown(self) -> None:
        if self._type_sweeper is not None:
            self._type_sweeper.shutdown(wait=True)
        self.embedder.close()
        self._closed = True

    def __enter__(self) -> "Vault":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
