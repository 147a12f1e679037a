"""Shared fixtures: fake embedding provider, temporary store, chunk factory."""
import asyncio
from typing import Dict, List, Optional

import pytest

from workspace_rag.rag.chunk_utils import build_metadata, estimate_tokens
from workspace_rag.rag.embeddings import EmbeddingConfig, EmbeddingGenerator, chunk_id
from workspace_rag.rag.store import VectorStore
from workspace_rag.rag.types import Chunk, FileType


class FakeEmbeddingClient:
    """Stands in for OpenAIClient; fails the first ``failures`` calls."""

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        failures: int = 0,
        delay: float = 0.0,
    ):
        self.vectors = vectors or {}
        self.failures = failures
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def vector_for(self, text: str) -> List[float]:
        if text in self.vectors:
            return self.vectors[text]
        return [1.0, float(len(text) % 7), float(text.count("e")), float(text.count("o"))]

    async def embeddings(self, prompt: str, model: str = None) -> Dict:
        self.calls.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.failures > 0:
                self.failures -= 1
                raise RuntimeError("provider unavailable")
            return {"data": [{"embedding": self.vector_for(prompt)}]}
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(
        batch_size=100,
        concurrency=5,
        max_retries=3,
        retry_delay=0,
        api_key="test-key",
        model="test-embedding",
    )


@pytest.fixture
def embedder(embedding_config, fake_client) -> EmbeddingGenerator:
    return EmbeddingGenerator(embedding_config, client=fake_client)


@pytest.fixture
async def store(tmp_path):
    """Vector store backed by a temporary SQLite file."""
    vector_store = VectorStore(db_path=tmp_path / "vectors.db")
    yield vector_store
    await vector_store.close()


@pytest.fixture
def make_chunk():
    """Factory for stored-chunk records."""

    def _make(
        content: str,
        embedding: Optional[List[float]] = None,
        file_path: str = "docs/a.md",
        start: int = 0,
    ) -> Chunk:
        metadata = build_metadata(
            file_path, FileType.MARKDOWN, start, start, estimate_tokens(content)
        )
        return Chunk(
            id=chunk_id(content, metadata),
            content=content,
            metadata=metadata,
            embedding=embedding,
        )

    return _make
