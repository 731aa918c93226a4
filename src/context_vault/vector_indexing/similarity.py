from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import TypeVar

import numpy as np

T = TypeVar("T")


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity in [-1, 1].

    Missing, empty, zero-norm or length-mismatched inputs score 0.0 instead of
    raising; callers rank those last.
    """
    if a is None or b is None:
        return 0.0
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    s = float(np.dot(va, vb) / (na * nb))
    if not math.isfinite(s):
        return 0.0
    return max(-1.0, min(1.0, s))


def rank_by_similarity(
    query: Sequence[float],
    candidates: Iterable[T],
    *,
    vector_of: Callable[[T], Sequence[float] | None],
    recency_of: Callable[[T], datetime | None] | None = None,
    min_score: float | None = None,
    top_k: int | None = None,
) -> list[tuple[T, float]]:
    """Score candidates against ``query``; highest first, newest first on ties."""
    scored: list[tuple[T, float]] = []
    for c in candidates:
        s = cosine_similarity(query, vector_of(c))
        if min_score is not None and s < min_score:
            continue
        scored.append((c, s))

    def _recency(c: T) -> float:
        if recency_of is None:
            return 0.0
        ts = recency_of(c)
        return ts.timestamp() if ts else 0.0

    scored.sort(key=lambda item: (item[1], _recency(item[0])), reverse=True)
    if top_k is not None:
        scored = scored[: max(0, int(top_k))]
    return scored
