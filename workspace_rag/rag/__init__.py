"""RAG (Retrieval-Augmented Generation) indexing components.

This package contains modules for:
- Chunking files by line, paragraph or syntax tree
- Batched embedding generation with retries
- SQLite vector and keyword storage
- File processing orchestration
- Semantic retrieval
"""
from workspace_rag.rag.chunker import ChunkerConfig, Chunker, create_chunker
from workspace_rag.rag.chunk_utils import estimate_tokens
from workspace_rag.rag.embeddings import EmbeddingConfig, EmbeddingGenerator, chunk_id
from workspace_rag.rag.errors import (
    ChunkingError,
    DatabaseError,
    EmbeddingError,
    ProcessorError,
    RagError,
)
from workspace_rag.rag.processor import FileProcessor, ProcessorConfig, ProcessResult
from workspace_rag.rag.retriever import Retriever
from workspace_rag.rag.store import VectorStore
from workspace_rag.rag.types import (
    Chunk,
    ChunkMetadata,
    ChunkResult,
    ChunkingStrategy,
    FileType,
    ScoredChunk,
    SearchResult,
)

__all__ = [
    "Chunk",
    "ChunkMetadata",
    "ChunkResult",
    "Chunker",
    "ChunkerConfig",
    "ChunkingError",
    "ChunkingStrategy",
    "DatabaseError",
    "EmbeddingConfig",
    "EmbeddingError",
    "EmbeddingGenerator",
    "FileProcessor",
    "FileType",
    "ProcessResult",
    "ProcessorConfig",
    "ProcessorError",
    "RagError",
    "Retriever",
    "ScoredChunk",
    "SearchResult",
    "VectorStore",
    "chunk_id",
    "create_chunker",
    "estimate_tokens",
]
