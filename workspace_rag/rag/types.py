"""Data model shared by the chunking, embedding and storage stages."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class FileType(str, Enum):
    """Supported file types."""

    MARKDOWN = "markdown"
    TEXT = "text"
    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    JSON = "json"
    HTML = "html"
    CSS = "css"
    YAML = "yaml"
    UNKNOWN = "unknown"


CODE_FILE_TYPES = frozenset({FileType.TYPESCRIPT, FileType.JAVASCRIPT, FileType.PYTHON})


class ChunkingStrategy(str, Enum):
    """Chunking strategies."""

    LINE = "line"
    PARAGRAPH = "paragraph"
    TOKEN = "token"
    AST = "ast"


@dataclass
class ChunkMetadata:
    """Where a chunk came from and how big it is.

    Positions are line numbers for the line and AST strategies and
    character offsets for the paragraph strategy.
    """

    file_path: str
    file_type: FileType
    start_position: int
    end_position: int
    token_count: int
    created_at: str
    additional_metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "file_type": FileType(self.file_type).value,
            "start_position": self.start_position,
            "end_position": self.end_position,
            "token_count": self.token_count,
            "created_at": self.created_at,
            "additional_metadata": self.additional_metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkMetadata":
        file_type = data.get("file_type", FileType.UNKNOWN.value)
        try:
            file_type = FileType(file_type)
        except ValueError:
            file_type = FileType.UNKNOWN

        return cls(
            file_path=data["file_path"],
            file_type=file_type,
            start_position=int(data["start_position"]),
            end_position=int(data["end_position"]),
            token_count=int(data["token_count"]),
            created_at=data.get("created_at", ""),
            additional_metadata=data.get("additional_metadata"),
        )


@dataclass
class ChunkResult:
    """A chunk as produced by a chunker, before embedding."""

    content: str
    metadata: ChunkMetadata


@dataclass
class Chunk:
    """A stored chunk with its content-derived id and optional embedding."""

    id: str
    content: str
    metadata: ChunkMetadata
    embedding: Optional[List[float]] = None


@dataclass
class ScoredChunk:
    """A chunk paired with its similarity to a query (0-1)."""

    chunk: Chunk
    similarity: float


@dataclass
class SearchResult:
    """Ranked chunks for a query plus the time the search took."""

    query: str
    chunks: List[ScoredChunk] = field(default_factory=list)
    search_time: float = 0.0  # milliseconds
