from __future__ import annotations

import asyncio

from context_vault.embedding.embedder import StubEmbedder
from context_vault.embedding.worker import EmbeddingWorker
from context_vault.errors import ProviderFailure
from context_vault.mentions.parser import to_embedding_text
from context_vault.objects.store import ObjectStore
from context_vault.objects.types import EmbeddingStatus
from context_vault.vector_indexing.chunking import ChunkingConfig, chunk_text
from context_vault.vector_indexing.chunks import ChunkStore

LONG = "lorem ipsum dolor sit amet, " * 150


class FailingEmbedder(StubEmbedder):
    def __init__(self) -> None:
        super().__init__(dim=8)
        self.calls = 0

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        raise ProviderFailure("provider down")


def _worker(objects: ObjectStore, chunks: ChunkStore, embedder, **kw) -> EmbeddingWorker:
    kw.setdefault("delay_s", 0)
    kw.setdefault("poll_interval_s", 0)
    return EmbeddingWorker(objects, chunks, embedder, **kw)


def test_drain_embeds_objects_and_chunks(objects: ObjectStore, chunks: ChunkStore) -> None:
    obj = objects.create({"type": "document", "name": "Essay", "content": LONG})
    short = objects.create({"type": "person", "name": "Ada", "content": "short"})
    worker = _worker(objects, chunks, StubEmbedder(dim=16))

    stats = asyncio.run(worker.drain())
    assert stats["completed"] == 2

    stored = objects.get(obj.id)
    assert stored is not None
    assert stored.has_embedding and not stored.needs_embedding
    assert stored.embedding_status is EmbeddingStatus.COMPLETED
    assert len(stored.embedding) == 16

    parts = chunks.get_by_object(obj.id)
    assert [c.chunk_index for c in parts] == list(range(len(parts)))
    assert len(parts) == len(chunk_text(LONG, ChunkingConfig()))
    assert all(c.embedding_status is EmbeddingStatus.COMPLETED for c in parts)
    assert chunks.count_by_object(short.id) == 0
    assert objects.objects_needing_embedding() == []


def test_submit_before_start_is_kept(objects: ObjectStore, chunks: ChunkStore) -> None:
    obj = objects.create({"type": "person", "name": "Ada"})
    worker = _worker(objects, chunks, StubEmbedder(dim=8))
    worker.submit(obj.id)
    worker.submit(obj.id)

    async def run() -> None:
        await worker.start(sweep=False)
        await worker.stop(flush=True)

    asyncio.run(run())
    assert worker.stats["completed"] == 1
    assert objects.get(obj.id).has_embedding


def test_stale_result_is_dropped(objects: ObjectStore, chunks: ChunkStore) -> None:
    obj = objects.create({"type": "document", "name": "Draft", "content": "v1"})

    class EditingEmbedder(StubEmbedder):
        edited = False

        def embed(self, texts: list[str]) -> list[list[float]]:
            if not self.edited:
                self.edited = True
                objects.update(obj.id, {"content": "v2"})
            return super().embed(texts)

    worker = _worker(objects, chunks, EditingEmbedder(dim=8))
    assert asyncio.run(worker.process_object(obj.id)) == "stale"
    current = objects.get(obj.id)
    assert current.content == "v2"
    assert current.needs_embedding and not current.has_embedding

    assert asyncio.run(worker.process_object(obj.id)) == "completed"
    assert objects.get(obj.id).has_embedding


def test_failures_are_retried_then_marked(objects: ObjectStore, chunks: ChunkStore) -> None:
    obj = objects.create({"type": "person", "name": "Ada"})
    embedder = FailingEmbedder()
    worker = _worker(objects, chunks, embedder, max_attempts=2)

    stats = asyncio.run(worker.drain())
    assert stats["retry"] == 1
    assert stats["failed"] == 1
    assert embedder.calls == 2

    stored = objects.get(obj.id)
    assert stored.embedding_status is EmbeddingStatus.FAILED
    assert stored.needs_embedding is True
    assert objects.search("Ada").total == 1

    # exhausted for this content; the next sweep leaves it alone
    asyncio.run(worker.drain())
    assert embedder.calls == 2


def test_failed_chunk_is_stored_without_vector(objects: ObjectStore, chunks: ChunkStore) -> None:
    obj = objects.create({"type": "document", "name": "Essay", "content": LONG})
    bad = chunk_text(LONG, ChunkingConfig())[1].text

    class PickyEmbedder(StubEmbedder):
        def embed(self, texts: list[str]) -> list[list[float]]:
            if len(texts) > 1 or texts == [bad]:
                raise ProviderFailure("nope")
            return super().embed(texts)

    worker = _worker(objects, chunks, PickyEmbedder(dim=8))
    assert asyncio.run(worker.process_object(obj.id)) == "completed"
    statuses = [c.embedding_status for c in chunks.get_by_object(obj.id)]
    assert statuses[1] is EmbeddingStatus.FAILED
    assert statuses.count(EmbeddingStatus.COMPLETED) == len(statuses) - 1
    assert chunks.get_by_object(obj.id)[1].embedding is None


def test_unreviewed_ocr_is_skipped(objects: ObjectStore, chunks: ChunkStore) -> None:
    obj = objects.create({"type": "letter", "name": "Scan", "content": "noise", "is_from_ocr": True})
    worker = _worker(objects, chunks, StubEmbedder(dim=8))
    assert asyncio.run(worker.process_object(obj.id)) == "skipped"
    assert asyncio.run(worker.process_object("missing")) == "missing"
    stats = asyncio.run(worker.drain())
    assert stats["completed"] == 0


class RecordingEmbedder(StubEmbedder):
    def __init__(self) -> None:
        super().__init__(dim=8)
        self.texts: list[str] = []

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.texts.extend(texts)
        return super().embed(texts)


def test_chunk_text_is_flattened_but_offsets_stay_raw(objects: ObjectStore, chunks: ChunkStore) -> None:
    content = "met @[person:Ada Lovelace|Countess] about the engine. " * 40
    obj = objects.create({"type": "log", "name": "Notes", "content": content})
    embedder = RecordingEmbedder()

    assert asyncio.run(_worker(objects, chunks, embedder).process_object(obj.id)) == "completed"

    spans = chunk_text(content, ChunkingConfig())
    assert embedder.texts[1:] == [to_embedding_text(s.text) for s in spans]
    assert "@[" not in embedder.texts[0]
    assert "Countess Ada Lovelace" in embedder.texts[1]
    parts = chunks.get_by_object(obj.id)
    assert len(parts) > 1
    for c in parts:
        assert c.content == content[c.start_position : c.end_position]
