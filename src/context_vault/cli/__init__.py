"""Command line interface for Context Vault."""
