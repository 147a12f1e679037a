"""Embedding generation for chunks.

Handles:
- Single text and query embeddings
- Content-derived chunk ids
- Sequential batches with bounded concurrent fan-out inside each batch
- Fixed-delay retries per chunk
"""
import asyncio
import hashlib
import json
from dataclasses import dataclass
from typing import Any, List, Optional

import structlog

from workspace_rag import config
from workspace_rag.llm_client import OpenAIClient
from workspace_rag.rag.errors import EmbeddingError
from workspace_rag.rag.types import Chunk, ChunkMetadata, ChunkResult

logger = structlog.get_logger()


@dataclass
class EmbeddingConfig:
    """Embedding settings; unset fields fall back to config."""

    batch_size: Optional[int] = None
    concurrency: Optional[int] = None
    max_retries: Optional[int] = None
    retry_delay: Optional[float] = None  # seconds
    api_key: Optional[str] = None
    model: Optional[str] = None
    base_url: Optional[str] = None

    def __post_init__(self):
        if self.batch_size is None:
            self.batch_size = config.EMBEDDING_BATCH_SIZE
        if self.concurrency is None:
            self.concurrency = config.EMBEDDING_CONCURRENCY
        if self.max_retries is None:
            self.max_retries = config.EMBEDDING_MAX_RETRIES
        if self.retry_delay is None:
            self.retry_delay = config.EMBEDDING_RETRY_DELAY
        self.api_key = self.api_key or config.OPENAI_API_KEY
        self.model = self.model or config.EMBEDDING_MODEL

        if self.batch_size < 1 or self.concurrency < 1 or self.max_retries < 1:
            raise ValueError("batch_size, concurrency and max_retries must be at least 1")


def chunk_id(content: str, metadata: ChunkMetadata) -> str:
    """Derive a stable chunk id from content and metadata.

    ``created_at`` is left out of the hash so re-processing unchanged
    content yields the same id.
    """
    stable = metadata.to_dict()
    stable.pop("created_at", None)
    data = f"{content}:{json.dumps(stable, sort_keys=True, ensure_ascii=False)}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class EmbeddingGenerator:
    """Turns chunk text into vectors through the embeddings API."""

    def __init__(self, embedding_config: EmbeddingConfig = None, client: Any = None):
        """Initialize the generator.

        Args:
            embedding_config: Batch/retry/credential settings (default from config)
            client: Object with an async ``embeddings(prompt, model)`` method
                returning an OpenAI-style response (default: OpenAIClient)

        Raises:
            EmbeddingError: If no API key is configured
        """
        self.config = embedding_config or EmbeddingConfig()

        if not self.config.api_key:
            raise EmbeddingError("OpenAI API key is required")

        self.client = client or OpenAIClient(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
        )

        logger.info(
            "embedding_generator_initialized",
            model=self.config.model,
            batch_size=self.config.batch_size,
            concurrency=self.config.concurrency,
            max_retries=self.config.max_retries,
        )

    @property
    def max_retry_time(self) -> float:
        """Worst-case seconds spent waiting between attempts for one chunk."""
        return (self.config.max_retries - 1) * self.config.retry_delay

    async def embed_text(self, text: str) -> List[float]:
        """Embed a single text with one provider call.

        Raises:
            EmbeddingError: On any provider error or an empty embedding
        """
        try:
            response = await self.client.embeddings(prompt=text, model=self.config.model)
            embedding = response["data"][0]["embedding"]
        except Exception as e:
            raise EmbeddingError(f"Failed to generate embedding: {e}", e) from e

        if not embedding:
            raise EmbeddingError("Empty embedding returned for text")

        return embedding

    async def embed_query(self, text: str) -> List[float]:
        """Embed a search query (no retries)."""
        try:
            return await self.embed_text(text)
        except EmbeddingError as e:
            raise EmbeddingError(f"Failed to embed query: {e.message}", e.cause or e) from e

    async def _embed_with_retry(self, chunk: ChunkResult, semaphore: asyncio.Semaphore) -> Chunk:
        last_error: Optional[EmbeddingError] = None

        for attempt in range(1, self.config.max_retries + 1):
            try:
                async with semaphore:
                    embedding = await self.embed_text(chunk.content)
                return Chunk(
                    id=chunk_id(chunk.content, chunk.metadata),
                    content=chunk.content,
                    metadata=chunk.metadata,
                    embedding=embedding,
                )
            except EmbeddingError as e:
                last_error = e
                if attempt < self.config.max_retries:
                    logger.warning(
                        "embedding_retry",
                        path=chunk.metadata.file_path,
                        start_position=chunk.metadata.start_position,
                        attempt=attempt,
                        error=e.message,
                    )
                    await asyncio.sleep(self.config.retry_delay)

        raise EmbeddingError(
            f"Failed to embed chunk {chunk.metadata.file_path}"
            f"@{chunk.metadata.start_position} after {self.config.max_retries} attempts",
            last_error,
        ) from last_error

    async def _embed_batches(self, chunks: List[ChunkResult]) -> List[Chunk]:
        results: List[Chunk] = []
        semaphore = asyncio.Semaphore(self.config.concurrency)
        batch_size = self.config.batch_size

        for i in range(0, len(chunks), batch_size):
            batch = chunks[i:i + batch_size]

            batch_results = await asyncio.gather(
                *(self._embed_with_retry(chunk, semaphore) for chunk in batch)
            )
            results.extend(batch_results)

            logger.debug(
                "embeddings_batch_generated",
                batch_size=len(batch),
                total_so_far=len(results),
            )

        return results

    async def embed_chunks(
        self, chunks: List[ChunkResult], timeout: Optional[float] = None
    ) -> List[Chunk]:
        """Embed chunks batch by batch, in input order.

        Batches run one after another; chunks within a batch are embedded
        concurrently (at most ``concurrency`` requests in flight). A chunk
        that still fails after ``max_retries`` attempts fails the whole call.

        Args:
            chunks: Chunker output
            timeout: Optional bound in seconds for the whole call

        Returns:
            Chunks with ids and embeddings, same order as the input

        Raises:
            EmbeddingError: If a chunk exhausts its retries or the timeout expires
        """
        if not chunks:
            return []

        try:
            async with asyncio.timeout(timeout):
                return await self._embed_batches(chunks)
        except TimeoutError as e:
            raise EmbeddingError(f"Embedding timed out after {timeout}s", e) from e
