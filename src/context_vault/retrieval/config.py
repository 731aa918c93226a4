from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Strategy = Literal["balanced", "aggressive", "conservative"]


class RetrievalConfig(BaseModel):
    """Retrieval section of the app config."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    auto_rag: bool = True
    doc_top_k: int = Field(default=30, ge=1)
    chunk_top_k: int = Field(default=90, ge=1)
    per_doc_chunk_cap: int = Field(default=6, ge=1)
    # neighbouring chunks pulled in on each side of a chunk hit
    context_window: int = Field(default=1, ge=0)
    min_doc_sim: float = Field(default=0.15, ge=-1.0, le=1.0)
    min_chunk_sim: float = Field(default=0.30, ge=-1.0, le=1.0)
    budget_tokens: int = Field(default=12000, ge=1)
    strategy: Strategy = "balanced"
    add_citations: bool = True
    min_query_chars: int = Field(default=10, ge=0)

    def with_overrides(self, **overrides) -> "RetrievalConfig":
        if not overrides:
            return self
        return RetrievalConfig.model_validate({**self.model_dump(), **overrides})
