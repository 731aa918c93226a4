from __future__ import annotations

import asyncio
import logging
from collections import Counter

from ..errors import ConcurrencyConflict, ProviderFailure
from ..mentions.parser import to_embedding_text
from ..objects.store import ObjectStore
from ..vector_indexing.chunking import ChunkingConfig, chunk_text, embedding_text
from ..vector_indexing.chunks import ChunkStore
from .embedder import Embedder

logger = logging.getLogger(__name__)


class EmbeddingWorker:
    """Background embedding of objects flagged ``needs_embedding``.

    Writers call :meth:`submit` (from any thread) after a mutation commits.
    Each job snapshots the object's content hash, embeds the object text and
    its chunk spans off the event loop, then commits both guarded by that
    hash. A result for content that has since changed is dropped; the newer
    edit has already queued its own job.
    """

    def __init__(
        self,
        objects: ObjectStore,
        chunks: ChunkStore,
        embedder: Embedder,
        *,
        chunking: ChunkingConfig | None = None,
        poll_interval_s: float = 5.0,
        max_attempts: int = 3,
        delay_s: float = 0.1,
    ):
        self.objects = objects
        self.chunks = chunks
        self.embedder = embedder
        self.chunking = chunking or ChunkingConfig()
        self.poll_interval_s = poll_interval_s
        self.max_attempts = max(1, max_attempts)
        self.delay_s = delay_s

        self.stats: Counter[str] = Counter()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[str] | None = None
        self._queued: set[str] = set()
        self._backlog: set[str] = set()
        # object id -> (content hash, failed attempts for that hash)
        self._attempts: dict[str, tuple[str, int]] = {}
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # --- lifecycle ---

    async def start(self, *, sweep: bool = True) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        for object_id in sorted(self._backlog):
            self._enqueue(object_id)
        self._backlog.clear()
        self._tasks.append(asyncio.create_task(self._consume(), name="embedding-consumer"))
        if sweep and self.poll_interval_s > 0:
            self._tasks.append(asyncio.create_task(self._sweep_forever(), name="embedding-sweeper"))
        logger.info("Embedding worker started (dim=%s)", getattr(self.embedder, "dim", "?"))

    async def stop(self, *, flush: bool = True) -> None:
        if not self.running:
            return
        if flush and self._queue is not None:
            # let submits already scheduled via call_soon_threadsafe land first
            await asyncio.sleep(0)
            await self._queue.join()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._queue is not None:
            # keep unfinished ids for a later start()
            self._backlog.update(self._queued)
            self._queued.clear()
        self._queue = None
        self._loop = None
        logger.info("Embedding worker stopped (%s)", dict(self.stats))

    async def drain(self) -> Counter[str]:
        """Queue everything that needs embedding and wait until it is handled."""
        started_here = not self.running
        if started_here:
            await self.start(sweep=False)
        try:
            await self.sweep()
            assert self._queue is not None
            await self._queue.join()
        finally:
            if started_here:
                await self.stop(flush=False)
        return self.stats

    # --- queueing ---

    def submit(self, object_id: str) -> None:
        """Thread-safe. Before start() ids are held and queued on start."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._backlog.add(object_id)
            return
        loop.call_soon_threadsafe(self._enqueue, object_id)

    def _enqueue(self, object_id: str) -> None:
        if self._queue is None:
            self._backlog.add(object_id)
            return
        if object_id in self._queued:
            return
        self._queued.add(object_id)
        self._queue.put_nowait(object_id)

    async def sweep(self) -> int:
        """Queue every object the store reports as needing embedding."""
        pending = await asyncio.to_thread(self.objects.objects_needing_embedding)
        n = 0
        for obj in pending:
            seen = self._attempts.get(obj.id)
            if seen and seen[0] == obj.content_hash and seen[1] >= self.max_attempts:
                continue
            self._enqueue(obj.id)
            n += 1
        if n:
            logger.debug("Sweep queued %d objects", n)
        return n

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_s)
            try:
                await self.sweep()
            except ConcurrencyConflict as e:
                logger.warning("Embedding sweep skipped: %s", e)

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            object_id = await self._queue.get()
            self._queued.discard(object_id)
            try:
                outcome = await self.process_object(object_id)
                self.stats[outcome] += 1
            except ConcurrencyConflict as e:
                logger.warning("Store busy while embedding %s; requeueing: %s", object_id, e)
                self._retry_later(object_id)
            except Exception:
                logger.exception("Embedding job for %s crashed", object_id)
                self.stats["crashed"] += 1
            finally:
                self._queue.task_done()
            if self.delay_s:
                await asyncio.sleep(self.delay_s)

    def _retry_later(self, object_id: str) -> None:
        if self._loop is not None:
            self._loop.call_later(max(self.delay_s, 0.5), self._enqueue, object_id)

    # --- one job ---

    async def process_object(self, object_id: str) -> str:
        """Embed one object and its chunks. Returns the outcome name."""
        obj = await asyncio.to_thread(self.objects.get, object_id)
        if obj is None:
            return "missing"
        if not obj.needs_embedding or (obj.is_from_ocr and not obj.has_been_edited):
            return "skipped"

        snapshot = obj.content_hash
        spans = chunk_text(obj.content, self.chunking)
        try:
            [vector] = await self._embed([embedding_text(obj.name, obj.aliases, obj.content)])
        except ProviderFailure as e:
            return await self._failed(object_id, snapshot, e)

        # offsets stay on the raw content; only the embedded text is flattened
        chunk_vectors = await self._embed_chunks([to_embedding_text(s.text) for s in spans])
        stored = await asyncio.to_thread(
            self.chunks.replace_for_object, object_id, list(zip(spans, chunk_vectors)), snapshot
        )
        if stored is None or not await asyncio.to_thread(
            self.objects.set_embedding, object_id, vector, snapshot
        ):
            logger.debug("Discarding stale embedding for %s", object_id)
            return "stale"

        self._attempts.pop(object_id, None)
        logger.debug("Embedded %s with %d chunks", object_id, len(spans))
        return "completed"

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        try:
            vecs = await self.embedder.aembed(texts)
        except ProviderFailure:
            raise
        except Exception as e:
            raise ProviderFailure(f"{type(e).__name__}: {e}") from e
        if len(vecs) != len(texts):
            raise ProviderFailure(f"expected {len(texts)} vectors, got {len(vecs)}")
        return vecs

    async def _embed_chunks(self, texts: list[str]) -> list[list[float] | None]:
        if not texts:
            return []
        try:
            return list(await self._embed(texts))
        except ProviderFailure as e:
            logger.info("Batch chunk embedding failed (%s); retrying one by one", e)
        out: list[list[float] | None] = []
        for t in texts:
            try:
                [v] = await self._embed([t])
            except ProviderFailure as e:
                logger.warning("Chunk embedding failed: %s", e)
                v = None
            out.append(v)
        return out

    async def _failed(self, object_id: str, snapshot: str, exc: ProviderFailure) -> str:
        prev_hash, n = self._attempts.get(object_id, (snapshot, 0))
        n = n + 1 if prev_hash == snapshot else 1
        self._attempts[object_id] = (snapshot, n)
        if n < self.max_attempts:
            logger.info("Embedding %s failed (attempt %d/%d): %s", object_id, n, self.max_attempts, exc)
            self._enqueue(object_id)
            return "retry"
        logger.warning("Embedding %s failed after %d attempts: %s", object_id, n, exc)
        await asyncio.to_thread(self.objects.mark_embedding_failed, object_id, snapshot)
        return "failed"
