"""Tests for the file processing pipeline."""
from unittest.mock import AsyncMock

import pytest

from tests.conftest import FakeEmbeddingClient
from workspace_rag.rag.embeddings import EmbeddingGenerator
from workspace_rag.rag.errors import DatabaseError
from workspace_rag.rag.processor import (
    FileProcessor,
    ProcessorConfig,
    ProcessResult,
    detect_file_type,
)
from workspace_rag.rag.store import VectorStore
from workspace_rag.rag.types import FileType

TS_SOURCE = """\
import { join } from "path";

// Builds the output path.
export function outputPath(dir: string): string {
  const name = "out";
  return join(dir, name);
}
"""


@pytest.mark.parametrize(
    "path, expected",
    [
        ("src/app.ts", FileType.TYPESCRIPT),
        ("src/View.TSX", FileType.TYPESCRIPT),
        ("lib/index.js", FileType.JAVASCRIPT),
        ("tool.py", FileType.PYTHON),
        ("README.md", FileType.MARKDOWN),
        ("settings.yml", FileType.YAML),
        ("package.json", FileType.JSON),
        ("Makefile", FileType.TEXT),
        ("data.bin", FileType.TEXT),
    ],
)
def test_detect_file_type(path, expected):
    assert detect_file_type(path) == expected


def test_process_result_merge():
    total = ProcessResult(processed_files=1, total_chunks=2, succeeded=["a"])
    total.merge(ProcessResult(failed=[{"path": "b", "error": "boom"}]))

    assert total.to_dict() == {
        "processed_files": 1,
        "total_chunks": 2,
        "succeeded": ["a"],
        "failed": [{"path": "b", "error": "boom"}],
        "processing_time": 0.0,
    }


class TestProcessFile:

    async def test_markdown_file_is_indexed(self, tmp_path, store, embedder):
        path = tmp_path / "notes.md"
        path.write_text("Alpha beta\n\nGamma delta\n", encoding="utf-8")

        result = await FileProcessor(store, embedder).process_file(path)

        assert result.processed_files == 1
        assert result.total_chunks == 1
        assert result.succeeded == [str(path)]
        assert result.failed == []
        assert result.processing_time >= 0

        stats = await store.get_stats()
        assert stats["total_chunks"] == 1
        assert stats["total_files"] == 1

    async def test_code_file_uses_syntax_chunks(self, tmp_path, store, embedder):
        path = tmp_path / "paths.ts"
        path.write_text(TS_SOURCE, encoding="utf-8")

        result = await FileProcessor(store, embedder).process_file(path)

        assert result.total_chunks == 3
        hits = await store.search_by_keywords("outputPath", limit=10)
        node_types = {hit.chunk.metadata.additional_metadata["node_type"] for hit in hits}
        assert node_types == {"function_declaration", "export"}

    async def test_reprocessing_replaces_previous_chunks(self, tmp_path, store, embedder):
        path = tmp_path / "notes.md"
        path.write_text("First version\n", encoding="utf-8")
        processor = FileProcessor(store, embedder)
        await processor.process_file(path)

        path.write_text("Second version\n", encoding="utf-8")
        await processor.process_file(path)

        assert (await store.get_stats())["total_chunks"] == 1
        assert await store.search_by_keywords("First") == []

    async def test_missing_file(self, tmp_path, store, embedder):
        path = tmp_path / "missing.md"

        result = await FileProcessor(store, embedder).process_file(path)

        assert result.processed_files == 0
        assert result.failed == [{"path": str(path), "error": f"File not found: {path}"}]

    async def test_empty_file(self, tmp_path, store, embedder):
        path = tmp_path / "empty.md"
        path.write_text("  \n\n", encoding="utf-8")

        result = await FileProcessor(store, embedder).process_file(path)

        assert result.failed == [{"path": str(path), "error": "File is empty"}]

    async def test_non_utf8_file(self, tmp_path, store, embedder):
        path = tmp_path / "latin1.txt"
        path.write_bytes("caf\xe9".encode("latin-1"))

        result = await FileProcessor(store, embedder).process_file(path)

        assert result.failed[0]["error"].startswith("Failed to read file")

    async def test_syntax_error_is_reported(self, tmp_path, store, embedder):
        path = tmp_path / "broken.js"
        path.write_text("function broken( {\n", encoding="utf-8")

        result = await FileProcessor(store, embedder).process_file(path)

        assert result.processed_files == 0
        assert "Syntax error" in result.failed[0]["error"]

    async def test_embedding_failure_stores_nothing(self, tmp_path, embedding_config):
        path = tmp_path / "notes.md"
        path.write_text("Alpha beta\n", encoding="utf-8")
        vector_store = AsyncMock(spec=VectorStore)
        embedder = EmbeddingGenerator(embedding_config, client=FakeEmbeddingClient(failures=10))

        result = await FileProcessor(vector_store, embedder).process_file(path)

        assert result.processed_files == 0
        assert "after 3 attempts" in result.failed[0]["error"]
        vector_store.save_chunks.assert_not_called()

    async def test_unexpected_errors_are_reported_generically(self, tmp_path, embedder):
        path = tmp_path / "notes.md"
        path.write_text("Alpha beta\n", encoding="utf-8")
        vector_store = AsyncMock(spec=VectorStore)
        vector_store.save_chunks.side_effect = DatabaseError("disk I/O error")

        result = await FileProcessor(vector_store, embedder).process_file(path)

        assert result.failed == [{"path": str(path), "error": "Unknown error occurred"}]


class TestProcessFiles:

    async def test_failures_do_not_stop_other_files(self, tmp_path, store, embedder):
        good = tmp_path / "good.md"
        good.write_text("Small file\n", encoding="utf-8")
        large = tmp_path / "large.md"
        large.write_text("x" * 200, encoding="utf-8")

        processor = FileProcessor(store, embedder, ProcessorConfig(max_file_size=100))
        result = await processor.process_files([good, large])

        assert result.processed_files == 1
        assert result.succeeded == [str(good)]
        assert len(result.failed) == 1
        assert result.failed[0]["path"] == str(large)
        assert result.failed[0]["error"] == "File size exceeds limit: 200 > 100"
        assert (await store.get_stats())["total_chunks"] == 1

    async def test_no_files(self, store, embedder):
        result = await FileProcessor(store, embedder).process_files([])

        assert result.processed_files == 0
        assert result.total_chunks == 0
