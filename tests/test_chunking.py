from __future__ import annotations

import pytest

from context_vault.vector_indexing.chunking import ChunkingConfig, chunk_text, embedding_text


def _check_spans(content: str, spans) -> None:
    assert [s.index for s in spans] == list(range(len(spans)))
    for s in spans:
        assert content[s.start : s.end] == s.text
        assert s.text == s.text.strip()
    for prev, nxt in zip(spans, spans[1:]):
        assert prev.start < nxt.start


def test_short_content_is_not_chunked() -> None:
    assert chunk_text("x" * 400) == []
    assert chunk_text("") == []


def test_disabled() -> None:
    assert chunk_text("x" * 5000, ChunkingConfig(enabled=False)) == []


def test_bad_config() -> None:
    with pytest.raises(ValueError):
        ChunkingConfig(chunk_size=100, overlap=100)


def test_defaults_cover_long_text() -> None:
    content = "lorem ipsum dolor sit amet, " * 300
    spans = chunk_text(content)
    assert len(spans) >= 4
    _check_spans(content, spans)
    assert spans[0].start == 0
    assert spans[-1].end == len(content.rstrip())
    assert all(len(s.text) <= 2000 for s in spans)
    # consecutive windows share text
    for prev, nxt in zip(spans, spans[1:]):
        assert nxt.start < prev.end


def test_prefers_cjk_sentence_end() -> None:
    content = "這是一個句子。" * 60
    cfg = ChunkingConfig(chunk_size=100, overlap=10, min_chunk_size=50)
    spans = chunk_text(content, cfg)
    _check_spans(content, spans)
    assert all(s.text.endswith("。") for s in spans)


def test_breaks_on_whitespace() -> None:
    content = "word " * 100
    cfg = ChunkingConfig(chunk_size=100, overlap=0, min_chunk_size=50)
    spans = chunk_text(content, cfg)
    _check_spans(content, spans)
    for s in spans:
        assert set(s.text.split()) == {"word"}


def test_embedding_text_flattens_mentions() -> None:
    text = embedding_text("李強", ["李總理"], "見 @[person:李強|老李]")
    assert text == "李強 李總理 見 老李 李強"
    assert embedding_text("Ada", [], "") == "Ada"
