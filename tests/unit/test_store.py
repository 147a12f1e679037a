"""Tests for the SQLite vector store."""
import asyncio
import math

import pytest

from workspace_rag.rag.errors import DatabaseError
from workspace_rag.rag.store import VectorStore, build_match_query, decode_embedding, encode_embedding
from workspace_rag.rag.types import Chunk


def test_embedding_blob_roundtrip():
    blob = encode_embedding([0.5, -1.0, 2.25])
    assert len(blob) == 12
    assert decode_embedding(blob) == [0.5, -1.0, 2.25]


@pytest.mark.parametrize(
    "query, expected",
    [
        ("vector store", '"vector" OR "store"'),
        ("store, store!", '"store"'),
        ("  ?! ", None),
    ],
)
def test_build_match_query(query, expected):
    assert build_match_query(query) == expected


class TestSaveChunks:

    async def test_upsert_is_idempotent(self, store, make_chunk):
        chunk = make_chunk("alpha", [1.0, 0.0])

        await store.save_chunks([chunk])
        await store.save_chunks([chunk])

        stats = await store.get_stats()
        assert stats["total_chunks"] == 1

        stored = await store.get_chunk(chunk.id)
        assert stored.content == "alpha"
        assert stored.embedding == [1.0, 0.0]
        assert stored.metadata.file_path == "docs/a.md"

    async def test_upsert_replaces_embedding(self, store, make_chunk):
        chunk = make_chunk("alpha", [1.0, 0.0])
        await store.save_chunks([chunk])

        chunk.embedding = [0.0, 1.0]
        await store.save_chunks([chunk])

        assert (await store.get_chunk(chunk.id)).embedding == [0.0, 1.0]
        assert len(await store.search_by_keywords("alpha")) == 1

    async def test_failed_save_commits_nothing(self, store, make_chunk):
        good = make_chunk("alpha", [1.0, 0.0])
        bad = Chunk(id="broken", content=None, metadata=good.metadata, embedding=[0.0, 1.0])

        with pytest.raises(DatabaseError):
            await store.save_chunks([good, bad])

        assert await store.get_chunk(good.id) is None
        assert await store.search_by_keywords("alpha") == []
        assert (await store.get_stats())["total_chunks"] == 0

    async def test_store_usable_after_failed_save(self, store, make_chunk):
        good = make_chunk("alpha", [1.0, 0.0])
        bad = Chunk(id="broken", content=None, metadata=good.metadata)

        with pytest.raises(DatabaseError):
            await store.save_chunks([bad])
        await store.save_chunks([good])

        assert await store.get_chunk(good.id) is not None

    async def test_replace_file_drops_stale_chunks(self, store, make_chunk):
        old = make_chunk("old text", [1.0, 0.0], file_path="docs/a.md")
        other = make_chunk("other file", [0.0, 1.0], file_path="docs/b.md")
        await store.save_chunks([old, other])

        new = make_chunk("new text", [1.0, 1.0], file_path="docs/a.md")
        await store.save_chunks([new], replace_file="docs/a.md")

        assert await store.get_chunk(old.id) is None
        assert await store.get_chunk(other.id) is not None
        assert await store.get_chunk(new.id) is not None
        assert await store.search_by_keywords("old") == []


class TestSearch:

    async def test_cosine_ranking_excludes_orthogonal(self, store, make_chunk):
        x = make_chunk("x axis", [1.0, 0.0], start=0)
        y = make_chunk("y axis", [0.0, 1.0], start=1)
        diagonal = make_chunk("diagonal", [1.0, 1.0], start=2)
        await store.save_chunks([x, y, diagonal])

        results = await store.search([1.0, 0.0], limit=5)

        assert [r.chunk.id for r in results] == [x.id, diagonal.id]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].similarity == pytest.approx(1 / math.sqrt(2), rel=1e-5)
        assert results[0].chunk.embedding is None

    async def test_limit(self, store, make_chunk):
        chunks = [make_chunk(f"chunk {i}", [1.0, float(i)], start=i) for i in range(5)]
        await store.save_chunks(chunks)

        results = await store.search([1.0, 0.0], limit=2)

        assert [r.chunk.id for r in results] == [chunks[0].id, chunks[1].id]

    async def test_ties_keep_storage_order(self, store, make_chunk):
        first = make_chunk("first", [2.0, 0.0], start=0)
        second = make_chunk("second", [1.0, 0.0], start=1)
        await store.save_chunks([first, second])

        results = await store.search([1.0, 0.0])

        assert [r.chunk.id for r in results] == [first.id, second.id]

    async def test_mismatched_dimensions_are_skipped(self, store, make_chunk):
        short = make_chunk("short", [1.0, 0.0], start=0)
        long = make_chunk("long", [1.0, 0.0, 0.0], start=1)
        await store.save_chunks([short, long])

        results = await store.search([1.0, 0.0, 0.0])

        assert [r.chunk.id for r in results] == [long.id]

    async def test_empty_store(self, store):
        assert await store.search([1.0, 0.0]) == []


class TestKeywordSearch:

    async def test_matches_are_scored_between_half_and_one(self, store, make_chunk):
        await store.save_chunks([
            make_chunk("the retriever formats context", [1.0, 0.0], start=0),
            make_chunk("the chunker splits paragraphs", [0.0, 1.0], start=1),
            make_chunk("the store persists embeddings", [1.0, 1.0], start=2),
        ])

        results = await store.search_by_keywords("chunker")

        assert len(results) == 1
        assert results[0].chunk.content == "the chunker splits paragraphs"
        assert 0.5 < results[0].similarity < 1.0

    async def test_best_match_first(self, store, make_chunk):
        await store.save_chunks([
            make_chunk("apple banana", None, start=0),
            make_chunk("apple apple apple banana cherry", None, start=1),
            make_chunk("grape", None, start=2),
            make_chunk("melon", None, start=3),
            make_chunk("kiwi", None, start=4),
            make_chunk("plum", None, start=5),
        ])

        results = await store.search_by_keywords("apple")

        assert [r.chunk.content for r in results][0] == "apple apple apple banana cherry"
        assert results[0].similarity >= results[1].similarity

    async def test_punctuation_only_query(self, store):
        assert await store.search_by_keywords("?!") == []


class TestMaintenance:

    async def test_get_missing_chunk(self, store):
        assert await store.get_chunk("nope") is None

    async def test_stats(self, store, make_chunk):
        await store.save_chunks([
            make_chunk("aaaa", [1.0], file_path="a.md"),
            make_chunk("bb", [1.0], file_path="a.md", start=1),
            make_chunk("cccccc", [1.0], file_path="b.md"),
        ])

        stats = await store.get_stats()

        assert stats == {"total_chunks": 3, "total_files": 2, "average_chunk_size": 4.0}

    async def test_clear(self, store, make_chunk):
        await store.save_chunks([make_chunk("alpha", [1.0]), make_chunk("beta", [1.0], start=1)])

        assert await store.clear() == 2
        assert (await store.get_stats())["total_chunks"] == 0
        assert await store.search_by_keywords("alpha") == []

    async def test_initialize_is_idempotent(self, tmp_path, make_chunk):
        vector_store = VectorStore(db_path=tmp_path / "nested" / "db.sqlite")
        try:
            await vector_store.initialize()
            await vector_store.initialize()
            await vector_store.save_chunks([make_chunk("alpha", [1.0])])
        finally:
            await vector_store.close()

        reopened = VectorStore(db_path=tmp_path / "nested" / "db.sqlite")
        try:
            assert (await reopened.get_stats())["total_chunks"] == 1
        finally:
            await reopened.close()

    async def test_in_memory_database(self, make_chunk):
        vector_store = VectorStore(db_path=":memory:")
        try:
            await vector_store.save_chunks([make_chunk("alpha", [1.0])])
            assert (await vector_store.get_stats())["total_chunks"] == 1
        finally:
            await vector_store.close()


async def watch_counts(store, task):
    """Poll total_chunks until the task finishes."""
    counts = []
    while not task.done():
        counts.append((await store.get_stats())["total_chunks"])
        await asyncio.sleep(0)
    return counts


class TestConcurrency:

    async def test_readers_never_see_a_partial_batch(self, store, make_chunk):
        await store.initialize()
        chunks = [make_chunk(f"chunk {i}", [1.0, float(i)], start=i) for i in range(200)]

        save = asyncio.create_task(store.save_chunks(chunks))
        counts = await watch_counts(store, save)
        await save

        assert set(counts) <= {0, 200}
        assert (await store.get_stats())["total_chunks"] == 200

    async def test_readers_never_see_a_rolled_back_batch(self, store, make_chunk):
        await store.initialize()
        good = [make_chunk(f"chunk {i}", [1.0, float(i)], start=i) for i in range(200)]
        bad = Chunk(id="broken", content=None, metadata=good[0].metadata)

        save = asyncio.create_task(store.save_chunks(good + [bad]))
        counts = await watch_counts(store, save)
        with pytest.raises(DatabaseError):
            await save

        assert set(counts) == {0}
        assert await store.search([1.0, 0.0]) == []

    async def test_overlapping_saves_commit_whole_batches(self, store, make_chunk):
        await store.initialize()
        first = [make_chunk(f"first {i}", [1.0, 0.0], file_path="a.md", start=i) for i in range(100)]
        second = [make_chunk(f"second {i}", [0.0, 1.0], file_path="b.md", start=i) for i in range(50)]

        saves = asyncio.gather(store.save_chunks(first), store.save_chunks(second))
        counts = await watch_counts(store, saves)
        await saves

        assert set(counts) <= {0, 100, 50, 150}
        stats = await store.get_stats()
        assert stats["total_chunks"] == 150
        assert stats["total_files"] == 2
        assert len(await store.search([1.0, 0.0], limit=200)) == 100
        assert len(await store.search_by_keywords("second", limit=200)) == 50
