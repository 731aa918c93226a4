"""Retrieval ranking: object- and chunk-level vector hits merged under a token budget."""

from .config import RetrievalConfig
from .pipeline import Citation, ContextItem, RankedContext, RetrievalMetadata, RetrievalPipeline

__all__ = [
    "Citation",
    "ContextItem",
    "RankedContext",
    "RetrievalConfig",
    "RetrievalMetadata",
    "RetrievalPipeline",
]
