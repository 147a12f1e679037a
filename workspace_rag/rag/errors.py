"""Error taxonomy for the indexing pipeline."""
from typing import Optional


class RagError(Exception):
    """Base error carrying the underlying cause, if any."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ChunkingError(RagError):
    """Text could not be segmented (bad syntax, parser failure)."""


class EmbeddingError(RagError):
    """Embedding provider failed or is misconfigured."""


class DatabaseError(RagError):
    """A persistence operation failed."""


class ProcessorError(RagError):
    """A file-level precondition failed (too large, empty, unreadable)."""
