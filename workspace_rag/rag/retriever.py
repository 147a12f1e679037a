"""Retriever for semantic search over indexed chunks.

Handles:
- Query embedding generation
- Vector search with a similarity threshold
- Optional keyword fallback when no vector hit clears the threshold
- Token-budgeted context formatting for prompts
"""
import time
from typing import Optional

import structlog

from workspace_rag import config
from workspace_rag.rag.chunk_utils import estimate_tokens
from workspace_rag.rag.embeddings import EmbeddingGenerator
from workspace_rag.rag.store import VectorStore
from workspace_rag.rag.types import ScoredChunk, SearchResult

logger = structlog.get_logger()


def format_source(hit: ScoredChunk) -> str:
    """Format a hit's origin as ``path:start-end``."""
    metadata = hit.chunk.metadata
    return f"{metadata.file_path}:{metadata.start_position}-{metadata.end_position}"


class Retriever:
    """Semantic retriever over a VectorStore."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingGenerator,
        limit: int = None,
        similarity_threshold: float = None,
    ):
        """Initialize the retriever.

        Args:
            vector_store: Store to search
            embedder: Generator used to embed queries
            limit: Default number of results (default from config)
            similarity_threshold: Default minimum similarity (default from config)
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.limit = limit or config.SEARCH_LIMIT
        self.similarity_threshold = (
            config.SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )

        logger.info(
            "retriever_initialized",
            limit=self.limit,
            similarity_threshold=self.similarity_threshold,
        )

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        keyword_fallback: bool = False,
    ) -> SearchResult:
        """Retrieve chunks similar to a query.

        Args:
            query: User query text
            limit: Number of results to return (overrides default)
            similarity_threshold: Minimum similarity to keep a result
            keyword_fallback: If no vector hit clears the threshold, use
                keyword search instead (same threshold)

        Returns:
            SearchResult sorted by similarity (best first)

        Raises:
            EmbeddingError: If the query cannot be embedded
            DatabaseError: If the store query fails
        """
        start_time = time.perf_counter()
        result = SearchResult(query=query)

        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return result

        limit = limit or self.limit
        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold

        logger.info("retrieval_started", query_length=len(query), limit=limit)

        query_vector = await self.embedder.embed_query(query)
        hits = await self.vector_store.search(query_vector, limit)
        result.chunks = [hit for hit in hits if hit.similarity >= threshold]

        if not result.chunks and keyword_fallback:
            logger.info("keyword_fallback_used", vector_hits=len(hits))
            hits = await self.vector_store.search_by_keywords(query, limit)
            result.chunks = [hit for hit in hits if hit.similarity >= threshold]

        result.search_time = (time.perf_counter() - start_time) * 1000

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(result.chunks),
            top_similarity=result.chunks[0].similarity if result.chunks else None,
        )

        return result

    async def retrieve_context(
        self,
        query: str,
        max_tokens: int = None,
        limit: Optional[int] = None,
    ) -> str:
        """Retrieve and format context for an LLM prompt.

        Hits are added best first until the next one would push the
        estimated token count past ``max_tokens``.

        Args:
            query: User query text
            max_tokens: Token budget for the whole block (default from config)
            limit: Number of results to consider

        Returns:
            Formatted context string, empty if nothing fits or matches
        """
        max_tokens = max_tokens or config.MAX_CONTEXT_TOKENS
        result = await self.search(query, limit=limit, keyword_fallback=True)

        context_parts = []
        used_tokens = 0
        separator_tokens = estimate_tokens("\n")

        for i, hit in enumerate(result.chunks, 1):
            part = f"[Source {i}: {format_source(hit)}]\n{hit.chunk.content.strip()}\n"
            part_tokens = estimate_tokens(part) + (separator_tokens if context_parts else 0)

            if used_tokens + part_tokens > max_tokens:
                break

            context_parts.append(part)
            used_tokens += part_tokens

        context = "\n".join(context_parts)

        logger.debug(
            "context_formatted",
            num_chunks=len(context_parts),
            estimated_tokens=used_tokens,
        )

        return context
