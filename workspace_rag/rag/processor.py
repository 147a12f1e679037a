"""File processing pipeline for indexing workspace files.

Orchestrates, per file:
- Precondition checks (exists, size limit, non-empty, UTF-8)
- File type detection and chunker selection
- Text chunking
- Embedding generation
- Transactional storage

Every file succeeds or fails on its own; failures are reported in the
result, never raised.
"""
import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from workspace_rag import config
from workspace_rag.rag.chunker import ChunkerConfig, create_chunker
from workspace_rag.rag.embeddings import EmbeddingGenerator
from workspace_rag.rag.errors import ChunkingError, EmbeddingError, ProcessorError
from workspace_rag.rag.store import VectorStore
from workspace_rag.rag.types import CODE_FILE_TYPES, ChunkingStrategy, FileType

logger = structlog.get_logger()

UNKNOWN_ERROR = "Unknown error occurred"

EXTENSION_FILE_TYPES = {
    ".ts": FileType.TYPESCRIPT,
    ".tsx": FileType.TYPESCRIPT,
    ".js": FileType.JAVASCRIPT,
    ".jsx": FileType.JAVASCRIPT,
    ".mjs": FileType.JAVASCRIPT,
    ".cjs": FileType.JAVASCRIPT,
    ".py": FileType.PYTHON,
    ".md": FileType.MARKDOWN,
    ".markdown": FileType.MARKDOWN,
    ".txt": FileType.TEXT,
    ".json": FileType.JSON,
    ".yaml": FileType.YAML,
    ".yml": FileType.YAML,
    ".html": FileType.HTML,
    ".htm": FileType.HTML,
    ".css": FileType.CSS,
}


def detect_file_type(file_path: Union[str, Path]) -> FileType:
    """Detect a file's type from its extension; unrecognized files are text."""
    return EXTENSION_FILE_TYPES.get(Path(file_path).suffix.lower(), FileType.TEXT)


@dataclass
class ProcessorConfig:
    """File processing settings; unset fields fall back to config."""

    max_tokens: Optional[int] = None
    overlap: Optional[int] = None
    max_file_size: Optional[int] = None
    replace_existing: bool = True
    embedding_timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_tokens is None:
            self.max_tokens = config.CHUNK_MAX_TOKENS
        if self.overlap is None:
            self.overlap = config.CHUNK_OVERLAP
        if self.max_file_size is None:
            self.max_file_size = config.MAX_FILE_SIZE


@dataclass
class ProcessResult:
    """Outcome of processing one or more files."""

    processed_files: int = 0
    total_chunks: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    processing_time: float = 0.0  # milliseconds

    def merge(self, other: "ProcessResult") -> None:
        """Add another result's counts and lists into this one."""
        self.processed_files += other.processed_files
        self.total_chunks += other.total_chunks
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed_files": self.processed_files,
            "total_chunks": self.total_chunks,
            "succeeded": list(self.succeeded),
            "failed": [dict(f) for f in self.failed],
            "processing_time": self.processing_time,
        }


class FileProcessor:
    """Drives files through chunking, embedding and storage."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingGenerator,
        processor_config: ProcessorConfig = None,
    ):
        """Initialize the processor.

        Args:
            vector_store: Store that receives the embedded chunks
            embedder: Embedding generator shared across files
            processor_config: Size limits and chunking settings (default from config)
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = processor_config or ProcessorConfig()

        logger.info(
            "file_processor_initialized",
            max_tokens=self.config.max_tokens,
            overlap=self.config.overlap,
            max_file_size=self.config.max_file_size,
        )

    async def _read_file(self, path: Path) -> str:
        if not path.is_file():
            raise ProcessorError(f"File not found: {path}")

        size = path.stat().st_size
        if size > self.config.max_file_size:
            raise ProcessorError(
                f"File size exceeds limit: {size} > {self.config.max_file_size}"
            )

        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ProcessorError(f"Failed to read file: {e}", e) from e

        if not content.strip():
            raise ProcessorError("File is empty")

        return content

    async def _process(self, file_path: str) -> int:
        path = Path(file_path)
        content = await self._read_file(path)

        file_type = detect_file_type(path)
        strategy = (
            ChunkingStrategy.AST if file_type in CODE_FILE_TYPES else ChunkingStrategy.PARAGRAPH
        )

        chunker = create_chunker(
            file_path,
            file_type,
            ChunkerConfig(
                strategy=strategy,
                max_tokens=self.config.max_tokens,
                overlap=self.config.overlap,
            ),
        )

        chunks = await chunker.chunk(content)
        if not chunks:
            logger.warning("no_chunks_created", path=file_path)

        embedded = await self.embedder.embed_chunks(chunks, timeout=self.config.embedding_timeout)

        await self.vector_store.save_chunks(
            embedded,
            replace_file=file_path if self.config.replace_existing else None,
        )

        return len(embedded)

    async def process_file(self, file_path: Union[str, Path]) -> ProcessResult:
        """Chunk, embed and store one file.

        Args:
            file_path: Path of the file to index

        Returns:
            ProcessResult with either one success or one failure entry
        """
        file_path = str(file_path)
        start_time = time.perf_counter()
        result = ProcessResult()

        logger.info("processing_file", path=file_path)

        try:
            chunk_count = await self._process(file_path)

            result.processed_files = 1
            result.total_chunks = chunk_count
            result.succeeded.append(file_path)

            logger.info("file_processed", path=file_path, chunks_created=chunk_count)

        except (ChunkingError, EmbeddingError, ProcessorError) as e:
            logger.error(
                "file_processing_failed",
                path=file_path,
                error=e.message,
                error_type=type(e).__name__,
            )
            result.failed.append({"path": file_path, "error": e.message})

        except Exception as e:
            logger.exception(
                "file_processing_failed",
                path=file_path,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.failed.append({"path": file_path, "error": UNKNOWN_ERROR})

        finally:
            result.processing_time = (time.perf_counter() - start_time) * 1000

        return result

    async def process_files(self, file_paths: List[Union[str, Path]]) -> ProcessResult:
        """Process all files concurrently and merge their results.

        Args:
            file_paths: Paths of the files to index

        Returns:
            Aggregate ProcessResult
        """
        start_time = time.perf_counter()
        result = ProcessResult()

        results = await asyncio.gather(*(self.process_file(path) for path in file_paths))
        for file_result in results:
            result.merge(file_result)

        result.processing_time = (time.perf_counter() - start_time) * 1000

        logger.info(
            "process_files_completed",
            processed_files=result.processed_files,
            total_chunks=result.total_chunks,
            failed=len(result.failed),
            processing_time_ms=round(result.processing_time, 1),
        )

        return result
