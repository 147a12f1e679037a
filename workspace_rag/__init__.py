"""Workspace RAG: chunk, embed and index workspace files for agent retrieval."""

__version__ = "0.1.0"
