"""Embedding providers and the background embedding worker."""

from .embedder import Embedder, HttpEmbedder, SentenceTransformersEmbedder, StubEmbedder, build_embedder
from .worker import EmbeddingWorker

__all__ = [
    "Embedder",
    "EmbeddingWorker",
    "HttpEmbedder",
    "SentenceTransformersEmbedder",
    "StubEmbedder",
    "build_embedder",
]
