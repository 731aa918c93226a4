from __future__ import annotations

from dataclasses import dataclass

from ..mentions.parser import to_embedding_text
from .types import ChunkSpan

_SENTENCE_ENDS = ("。", "？", "！")
_BREAK_CHARS = frozenset(" \n\t，、；：")


@dataclass
class ChunkingConfig:
    enabled: bool = True
    # characters per window; consecutive windows share `overlap` characters
    chunk_size: int = 2000
    overlap: int = 200
    # content this short is covered by the object-level embedding alone
    min_chunk_size: int = 400

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if not 0 <= self.overlap < self.chunk_size:
            raise ValueError("overlap must be >= 0 and smaller than chunk_size")


def _sliding_window(text: str, *, size: int, overlap: int) -> list[tuple[int, int]]:
    n = len(text)
    out: list[tuple[int, int]] = []
    start = 0
    while start < n:
        end = min(n, start + size)
        if end < n:
            # prefer a sentence end late in the window, else any soft break
            sentence_end = max(text.rfind(p, start, end) for p in _SENTENCE_ENDS)
            if sentence_end > start + size * 0.7:
                end = sentence_end + 1
            else:
                floor = start + int(size * 0.8)
                for i in range(end - 1, floor, -1):
                    if text[i] in _BREAK_CHARS:
                        end = i + 1
                        break
        out.append((start, end))
        if end >= n:
            break
        start = max(start + 1, end - overlap)
    return out


def chunk_text(content: str, cfg: ChunkingConfig | None = None) -> list[ChunkSpan]:
    cfg = cfg or ChunkingConfig()
    if not cfg.enabled or not content or len(content) <= cfg.min_chunk_size:
        return []

    spans: list[ChunkSpan] = []
    for start, end in _sliding_window(content, size=cfg.chunk_size, overlap=cfg.overlap):
        seg = content[start:end]
        lead = len(seg) - len(seg.lstrip())
        trail = len(seg) - len(seg.rstrip())
        if lead == len(seg):
            continue
        s, e = start + lead, end - trail
        spans.append(ChunkSpan(index=len(spans), start=s, end=e, text=content[s:e]))
    return spans


def embedding_text(name: str, aliases: list[str], content: str) -> str:
    """Text sent to the embedding provider for a whole object."""
    parts = [name, *aliases, to_embedding_text(content)]
    return " ".join(p for p in parts if p)
