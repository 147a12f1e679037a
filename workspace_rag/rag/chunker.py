"""Text chunking strategies for the indexing pipeline.

Each strategy is a plain function ``(text, chunker) -> List[ChunkResult]``;
``Chunker`` dispatches on ``ChunkingStrategy`` and ``create_chunker`` picks
the strategy for a file type. Sizes are estimated tokens (see
``estimate_tokens``), not characters.
"""
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

import structlog

from workspace_rag import config
from workspace_rag.rag.chunk_utils import build_metadata, estimate_tokens
from workspace_rag.rag.code_chunker import chunk_code
from workspace_rag.rag.errors import ChunkingError
from workspace_rag.rag.types import (
    CODE_FILE_TYPES,
    ChunkResult,
    ChunkingStrategy,
    FileType,
)

logger = structlog.get_logger()

# One or more blank lines
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

CODE_CHUNKER_DEFAULTS = {
    "min_node_size": 3,
    "include_imports": True,
    "include_comments": True,
}


@dataclass
class ChunkerConfig:
    """Chunking parameters.

    ``overlap`` is a token budget for the lines the line strategy carries
    into the next chunk; the paragraph strategy ignores it and starts fresh.
    """

    strategy: Optional[ChunkingStrategy] = None
    max_tokens: Optional[int] = None
    overlap: Optional[int] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_tokens is None:
            self.max_tokens = config.CHUNK_MAX_TOKENS
        if self.overlap is None:
            self.overlap = config.CHUNK_OVERLAP
        if self.strategy is not None:
            self.strategy = ChunkingStrategy(self.strategy)

        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.overlap < 0:
            raise ValueError(f"overlap must not be negative, got {self.overlap}")


def chunk_by_lines(text: str, chunker: "Chunker") -> List[ChunkResult]:
    """Accumulate lines until the next one would exceed the token budget.

    After each flush the next chunk is seeded with the trailing lines of
    the flushed one whose tokens add up to at most ``overlap``. The first
    flushed line is never carried, so every flush makes progress. A single
    line over budget becomes its own chunk. Positions are 0-based line
    numbers, inclusive.
    """
    lines = text.split("\n")
    max_tokens = chunker.config.max_tokens
    overlap = chunker.config.overlap

    chunks: List[ChunkResult] = []
    current: List[str] = []
    current_counts: List[int] = []
    current_tokens = 0
    start_line = 0

    for i, line in enumerate(lines):
        line_tokens = estimate_tokens(line)

        if current and current_tokens + line_tokens > max_tokens:
            chunks.append(
                ChunkResult(
                    content="\n".join(current),
                    metadata=chunker.metadata(start_line, i - 1, current_tokens),
                )
            )

            keep = 0
            kept_tokens = 0
            for count in reversed(current_counts[1:]):
                if kept_tokens + count > overlap:
                    break
                kept_tokens += count
                keep += 1

            current = current[len(current) - keep:] if keep else []
            current_counts = current_counts[len(current_counts) - keep:] if keep else []
            current_tokens = kept_tokens
            start_line = i - keep

        current.append(line)
        current_counts.append(line_tokens)
        current_tokens += line_tokens

    if current:
        chunks.append(
            ChunkResult(
                content="\n".join(current),
                metadata=chunker.metadata(start_line, len(lines) - 1, current_tokens),
            )
        )

    return chunks


def _paragraph_spans(text: str):
    """Yield (start, end) character offsets of blank-line separated paragraphs."""
    position = 0
    for match in PARAGRAPH_BREAK.finditer(text):
        yield position, match.start()
        position = match.end()
    yield position, len(text)


def chunk_by_paragraphs(text: str, chunker: "Chunker") -> List[ChunkResult]:
    """Accumulate paragraphs until the next one would exceed the token budget.

    A chunk's content is the source slice ``text[start:end]``, so the
    original separators between its paragraphs are kept. No overlap is
    carried across a flush. Positions are character offsets into ``text``
    (start inclusive, end exclusive).
    """
    max_tokens = chunker.config.max_tokens

    chunks: List[ChunkResult] = []
    current: List[str] = []
    current_tokens = 0
    start_offset = 0
    end_offset = 0

    for para_start, para_end in _paragraph_spans(text):
        paragraph = text[para_start:para_end]
        paragraph_tokens = estimate_tokens(paragraph)

        if current and current_tokens + paragraph_tokens > max_tokens:
            chunks.append(
                ChunkResult(
                    content=text[start_offset:end_offset],
                    metadata=chunker.metadata(start_offset, end_offset, current_tokens),
                )
            )
            current = []
            current_tokens = 0

        if not current:
            start_offset = para_start

        current.append(paragraph)
        current_tokens += paragraph_tokens
        end_offset = para_end

    if current:
        chunks.append(
            ChunkResult(
                content=text[start_offset:end_offset],
                metadata=chunker.metadata(start_offset, end_offset, current_tokens),
            )
        )

    return chunks


_HANDLERS: Dict[ChunkingStrategy, Callable[[str, "Chunker"], List[ChunkResult]]] = {
    ChunkingStrategy.LINE: chunk_by_lines,
    ChunkingStrategy.TOKEN: chunk_by_lines,
    ChunkingStrategy.PARAGRAPH: chunk_by_paragraphs,
    ChunkingStrategy.AST: chunk_code,
}


@dataclass(frozen=True)
class Chunker:
    """A chunking strategy bound to one file."""

    file_path: str
    file_type: FileType
    config: ChunkerConfig = field(default_factory=ChunkerConfig)

    @property
    def strategy(self) -> ChunkingStrategy:
        return self.config.strategy or ChunkingStrategy.LINE

    def option(self, name: str, default: Any = None) -> Any:
        return self.config.options.get(name, default)

    def metadata(self, start: int, end: int, token_count: int, additional: Optional[Dict[str, Any]] = None):
        return build_metadata(self.file_path, self.file_type, start, end, token_count, additional)

    async def chunk(self, text: str) -> List[ChunkResult]:
        """Split text into chunks.

        Args:
            text: Full file content (not modified)

        Returns:
            Chunks in source order (for AST: imports, declarations, exports)

        Raises:
            ChunkingError: If the text cannot be segmented
        """
        if not text:
            return []

        handler = _HANDLERS[self.strategy]
        try:
            chunks = handler(text, self)
        except ChunkingError:
            raise
        except Exception as e:
            raise ChunkingError(f"Failed to chunk {self.file_path}: {e}", e) from e

        logger.debug(
            "file_chunked",
            path=self.file_path,
            strategy=self.strategy.value,
            chunk_count=len(chunks),
        )
        return chunks


def create_chunker(
    file_path: str,
    file_type: FileType,
    chunker_config: Optional[ChunkerConfig] = None,
) -> Chunker:
    """Select a chunker for a file type.

    Code files get the AST strategy (code defaults, overridable through
    ``options``), markdown and plain text get paragraphs, everything else
    (JSON, YAML, unrecognized) gets lines.

    Args:
        file_path: Source file path recorded in chunk metadata
        file_type: Detected file type
        chunker_config: Size and option settings; its strategy is replaced

    Returns:
        Chunker for the file
    """
    chunker_config = chunker_config or ChunkerConfig()
    file_type = FileType(file_type)

    if file_type in CODE_FILE_TYPES:
        chunker_config = replace(
            chunker_config,
            strategy=ChunkingStrategy.AST,
            options={**CODE_CHUNKER_DEFAULTS, **chunker_config.options},
        )
    elif file_type in (FileType.MARKDOWN, FileType.TEXT):
        chunker_config = replace(chunker_config, strategy=ChunkingStrategy.PARAGRAPH)
    else:
        chunker_config = replace(chunker_config, strategy=ChunkingStrategy.LINE)

    return Chunker(file_path=file_path, file_type=file_type, config=chunker_config)
