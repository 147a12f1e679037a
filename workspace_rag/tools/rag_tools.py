"""Indexing and search tools exposed to agents.

- ``file_processor``: chunk, embed and store workspace files
- ``vector_query``: semantic search over the stored chunks

The store and embedder are created once at the application boundary and
injected; nothing here holds process-wide state.
"""
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
import structlog

from workspace_rag import config
from workspace_rag.log_config import configure_logging
from workspace_rag.rag.embeddings import EmbeddingGenerator
from workspace_rag.rag.processor import FileProcessor, ProcessorConfig
from workspace_rag.rag.retriever import Retriever
from workspace_rag.rag.store import VectorStore
from workspace_rag.tools.registry import Tool, ToolRegistry

logger = structlog.get_logger()


class EmbeddingOptions(BaseModel):
    """Embedding overrides for one processing run; unset fields keep the shared settings."""
    batch_size: Optional[int] = Field(None, ge=1)
    concurrency: Optional[int] = Field(None, ge=1)
    max_retries: Optional[int] = Field(None, ge=1)
    retry_delay: Optional[float] = Field(None, ge=0, description="Seconds between attempts")
    api_key: Optional[str] = None


class ProcessingOptions(BaseModel):
    """Configuration options for processing."""
    max_tokens: Optional[int] = Field(None, gt=0)
    overlap: Optional[int] = Field(None, ge=0)
    max_file_size: Optional[int] = Field(None, gt=0, description="Bytes")
    embedding: Optional[EmbeddingOptions] = None


class FileProcessorInput(BaseModel):
    """Input for the file processor tool."""
    files: List[str] = Field(
        ..., description="File paths relative to the workspace directory, or absolute"
    )
    config: Optional[ProcessingOptions] = None


class FailedFile(BaseModel):
    path: str
    error: str


class FileProcessorOutput(BaseModel):
    """Output from the file processor tool."""
    processed_files: int
    total_chunks: int
    succeeded: List[str]
    failed: List[FailedFile]
    processing_time: float
    summary: str


class VectorQueryInput(BaseModel):
    """Input for the vector query tool."""
    query: str = Field(..., description="Search query text")
    limit: Optional[int] = Field(None, gt=0, description="Maximum number of results to return")
    threshold: Optional[float] = Field(
        None, ge=0, le=1, description="Minimum similarity threshold (0-1)"
    )
    keyword_fallback: bool = Field(
        False, description="Fall back to keyword search when no vector result qualifies"
    )


class QueryHit(BaseModel):
    content: str
    metadata: Dict[str, Any]
    similarity: float


class VectorQueryOutput(BaseModel):
    """Output from the vector query tool."""
    results: List[QueryHit]
    search_time: float
    summary: str


class RagTools:
    """Handlers for the indexing and search tools."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingGenerator,
        workspace_dir: Path = None,
    ):
        self.vector_store = vector_store
        self.embedder = embedder
        self.workspace_dir = Path(workspace_dir or config.WORKSPACE_DIR)
        self.retriever = Retriever(vector_store, embedder)

    def resolve_path(self, file_path: str) -> str:
        """Resolve a path against the workspace directory."""
        path = Path(file_path)
        if not path.is_absolute():
            path = self.workspace_dir / path
        return str(path)

    def _embedder_for(self, options: ProcessingOptions) -> EmbeddingGenerator:
        if options.embedding is None:
            return self.embedder

        # Same model and endpoint as the shared embedder so vectors stay comparable
        overrides = options.embedding.model_dump(exclude_none=True)
        return EmbeddingGenerator(
            replace(self.embedder.config, **overrides),
            client=None if "api_key" in overrides else self.embedder.client,
        )

    async def process_files(self, input_data: FileProcessorInput) -> FileProcessorOutput:
        """Handle a file_processor call."""
        options = input_data.config or ProcessingOptions()

        processor = FileProcessor(
            self.vector_store,
            self._embedder_for(options),
            ProcessorConfig(
                max_tokens=options.max_tokens,
                overlap=options.overlap,
                max_file_size=options.max_file_size,
            ),
        )

        file_paths = [self.resolve_path(f) for f in input_data.files]
        result = await processor.process_files(file_paths)

        summary = (
            f"Processed {result.processed_files} files, generated {result.total_chunks} "
            f"chunks ({result.processing_time:.0f}ms)"
        )
        if result.failed:
            summary += f"\nFailed: {len(result.failed)} files"

        return FileProcessorOutput(**result.to_dict(), summary=summary)

    async def query(self, input_data: VectorQueryInput) -> VectorQueryOutput:
        """Handle a vector_query call."""
        result = await self.retriever.search(
            input_data.query,
            limit=input_data.limit,
            similarity_threshold=input_data.threshold,
            keyword_fallback=input_data.keyword_fallback,
        )

        hits = [
            QueryHit(
                content=hit.chunk.content,
                metadata=hit.chunk.metadata.to_dict(),
                similarity=hit.similarity,
            )
            for hit in result.chunks
        ]

        return VectorQueryOutput(
            results=hits,
            search_time=result.search_time,
            summary=f"Search complete: {len(hits)} results ({result.search_time:.0f}ms)",
        )


def build_registry(
    vector_store: VectorStore,
    embedder: EmbeddingGenerator,
    workspace_dir: Path = None,
) -> ToolRegistry:
    """Create a registry with the indexing and search tools bound to the given store."""
    handlers = RagTools(vector_store, embedder, workspace_dir=workspace_dir)
    registry = ToolRegistry()

    registry.register(
        Tool(
            name="file_processor",
            description="Process files and generate vector embeddings",
            input_model=FileProcessorInput,
            output_model=FileProcessorOutput,
            handler=handlers.process_files,
            timeout=config.PROCESSING_TOOL_TIMEOUT,
        )
    )
    registry.register(
        Tool(
            name="vector_query",
            description="Search through vector embeddings",
            input_model=VectorQueryInput,
            output_model=VectorQueryOutput,
            handler=handlers.query,
        )
    )

    return registry


def create_default_registry() -> ToolRegistry:
    """Build the application's tool registry from environment configuration.

    Raises:
        EmbeddingError: If no API key is configured
    """
    configure_logging()

    vector_store = VectorStore()
    embedder = EmbeddingGenerator()

    logger.info("tool_registry_ready", db_path=str(vector_store.db_path))
    return build_registry(vector_store, embedder)
