"""Chunking, chunk storage and vector similarity."""
