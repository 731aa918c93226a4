"""Context Vault - typed knowledge objects with mentions, relationships and RAG retrieval."""

__version__ = "0.1.0"
