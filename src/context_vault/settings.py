from __future__ import annotations

from typing import Literal

from pydantic import Field

try:
    from pydantic_settings import BaseSettings, SettingsConfigDict
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "pydantic-settings is required. Install with: pip install pydantic-settings"
    ) from e

from .retrieval.config import RetrievalConfig
from .vector_indexing.chunking import ChunkingConfig


class VaultSettings(BaseSettings):
    """Unified configuration for Context Vault.

    Environment variables are prefixed with CONTEXT_VAULT_.
    """

    model_config = SettingsConfigDict(env_prefix="CONTEXT_VAULT_", extra="ignore")

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")
    db_path: str = Field(default="~/.context_vault/vault.db")

    # --- Embeddings ---
    embedding_dim: int = 384
    st_model: str | None = Field(
        default=None,
        description="sentence-transformers model name (optional). If unset, use stub embedder.",
    )
    embedding_url: str | None = Field(
        default=None, description="OpenAI-compatible embeddings endpoint base URL"
    )
    embedding_api_key: str | None = None
    embedding_model: str = "text-embedding-3-small"

    # --- Chunking policy ---
    chunking_enabled: bool = True
    chunk_size: int = Field(default=2000, ge=256, le=8000)
    chunk_overlap: int = Field(default=200, ge=0, le=2000)
    min_chunk_size: int = Field(default=400, ge=0)

    # --- Retrieval ---
    auto_rag: bool = True
    doc_top_k: int = 30
    chunk_top_k: int = 90
    per_doc_chunk_cap: int = 6
    context_window: int = 1
    min_doc_sim: float = 0.15
    min_chunk_sim: float = 0.30
    budget_tokens: int = 12000
    strategy: Literal["balanced", "aggressive", "conservative"] = "balanced"
    add_citations: bool = True
    min_query_chars: int = 10

    # --- Embedding worker ---
    worker_poll_interval_s: float = 5.0
    worker_max_attempts: int = 3
    worker_delay_s: float = 0.1

    # --- Graph ---
    link_mentions_on_write: bool = True
    refresh_edge_types_on_type_change: bool = False

    def chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(
            enabled=self.chunking_enabled,
            chunk_size=self.chunk_size,
            overlap=self.chunk_overlap,
            min_chunk_size=self.min_chunk_size,
        )

    def retrieval_config(self) -> RetrievalConfig:
        return RetrievalConfig(
            auto_rag=self.auto_rag,
            doc_top_k=self.doc_top_k,
            chunk_top_k=self.chunk_top_k,
            per_doc_chunk_cap=self.per_doc_chunk_cap,
            context_window=self.context_window,
            min_doc_sim=self.min_doc_sim,
            min_chunk_sim=self.min_chunk_sim,
            budget_tokens=self.budget_tokens,
            strategy=self.strategy,
            add_citations=self.add_citations,
            min_query_chars=self.min_query_chars,
        )


settings = VaultSettings()
