from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import ProviderFailure
from .http import default_limits, default_timeout, transient_retry

logger = logging.getLogger(__name__)


class Embedder:
    dim: int

    def embed(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    async def aembed(self, texts: list[str]) -> list[list[float]]:
        return await asyncio.to_thread(self.embed, texts)

    def close(self) -> None:
        pass


@dataclass
class StubEmbedder(Embedder):
    """Deterministic hashed bag-of-bytes vectors. Good enough for tests and offline use."""

    dim: int = 384

    def embed(self, texts: list[str]) -> list[list[float]]:
        out: list[list[float]] = []
        for t in texts:
            v = [0.0] * self.dim
            b = t.encode("utf-8", errors="ignore")
            for i, ch in enumerate(b):
                v[(i + ch) % self.dim] += 1.0
            norm = sum(x * x for x in v) ** 0.5
            if norm:
                v = [x / norm for x in v]
            out.append(v)
        return out


class SentenceTransformersEmbedder(Embedder):
    def __init__(self, model_name: str):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ProviderFailure(
                "sentence-transformers is not installed. Install with: pip install 'context-vault[st]'"
            ) from e

        self._m = SentenceTransformer(model_name)
        dim = self._m.get_sentence_embedding_dimension()
        if not dim:
            raise ProviderFailure(f"cannot infer embedding dimension of {model_name}")
        self.dim = int(dim)

    def embed(self, texts: list[str]) -> list[list[float]]:
        try:
            vecs = self._m.encode(texts, normalize_embeddings=True)
        except (RuntimeError, ValueError) as e:
            raise ProviderFailure(f"sentence-transformers encode failed: {e}") from e
        return [v.tolist() for v in vecs]


class HttpEmbedder(Embedder):
    """Client for an OpenAI-compatible ``POST {base_url}/embeddings`` endpoint.

    Timeouts, connection errors and 408/429/5xx answers are retried with
    jittered backoff; whatever still fails is raised as ProviderFailure.
    """

    def __init__(
        self,
        base_url: str,
        *,
        model: str,
        dim: int,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.dim = dim
        self.model = model
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=default_timeout(),
            limits=default_limits(),
            follow_redirects=True,
            transport=transport,
        )

    @transient_retry()
    def _post(self, texts: list[str]) -> dict[str, Any]:
        r = self._client.post("/embeddings", json={"model": self.model, "input": texts})
        r.raise_for_status()
        return r.json()

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            payload = self._post(texts)
        except httpx.HTTPError as e:
            raise ProviderFailure(f"embedding request failed: {e}") from e
        return self._parse(payload, len(texts))

    def _parse(self, payload: dict[str, Any], expected: int) -> list[list[float]]:
        try:
            data = sorted(payload["data"], key=lambda d: d.get("index", 0))
            vecs = [[float(x) for x in d["embedding"]] for d in data]
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderFailure(f"malformed embedding response: {e}") from e
        if len(vecs) != expected:
            raise ProviderFailure(f"expected {expected} vectors, got {len(vecs)}")
        for v in vecs:
            if len(v) != self.dim:
                raise ProviderFailure(f"expected dimension {self.dim}, got {len(v)}")
        return vecs

    def close(self) -> None:
        self._client.close()


def build_embedder(
    *,
    st_model: str | None = None,
    dim: int = 384,
    url: str | None = None,
    api_key: str | None = None,
    model: str = "text-embedding-3-small",
) -> Embedder:
    if url:
        logger.info("Using HTTP embedder %s (model=%s)", url, model)
        return HttpEmbedder(url, model=model, dim=dim, api_key=api_key)
    if st_model:
        logger.info("Using sentence-transformers model %s", st_model)
        return SentenceTransformersEmbedder(st_model)
    return StubEmbedder(dim=dim)
