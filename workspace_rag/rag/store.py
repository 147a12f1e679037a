"""SQLite vector store for chunk persistence and search.

Handles:
- Lazy, idempotent schema creation (chunk table + FTS5 keyword index)
- Transactional upserts that keep both tables in step
- Cosine-similarity search over stored embeddings
- BM25 keyword search with scores squashed into 0-1
- Point lookups and aggregate statistics
"""
import asyncio
import json
import math
import re
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
import numpy as np
import structlog

from workspace_rag import config
from workspace_rag.rag.errors import DatabaseError
from workspace_rag.rag.types import Chunk, ChunkMetadata, ScoredChunk

logger = structlog.get_logger()

_SEARCH_TERM = re.compile(r"\w+", re.UNICODE)


def encode_embedding(embedding: Optional[List[float]]) -> Optional[bytes]:
    """Pack an embedding as little-endian float32 bytes."""
    if embedding is None:
        return None
    return np.asarray(embedding, dtype="<f4").tobytes()


def decode_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="<f4").tolist()


def build_match_query(query: str) -> Optional[str]:
    """Turn free text into an FTS5 query that ORs quoted terms."""
    terms = _SEARCH_TERM.findall(query)
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in dict.fromkeys(terms))


def _row_to_chunk(row: Any, with_embedding: bool = False) -> Chunk:
    return Chunk(
        id=row["id"],
        content=row["content"],
        metadata=ChunkMetadata.from_dict(json.loads(row["metadata"])),
        embedding=decode_embedding(row["embedding"]) if with_embedding else None,
    )


class VectorStore:
    """SQLite-backed store holding chunks, their metadata and embeddings."""

    def __init__(self, db_path: Path = None):
        """Initialize the vector store.

        Args:
            db_path: SQLite database file (default from config); ":memory:" works too
        """
        self.db_path = db_path or config.VECTOR_STORE_PATH
        self._conn: Optional[aiosqlite.Connection] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        # One shared connection: reads must not see an open write transaction
        self._lock = asyncio.Lock()

        logger.info("vector_store_created", db_path=str(self.db_path))

    async def initialize(self) -> None:
        """Open the database and create the schema if absent.

        Safe to call repeatedly; only the first call does any work.

        Raises:
            DatabaseError: If the database cannot be opened or created
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            try:
                if str(self.db_path) != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

                # isolation_level=None: transactions are issued explicitly
                self._conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
                self._conn.row_factory = aiosqlite.Row

                await self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS chunks (
                        id TEXT PRIMARY KEY,
                        content TEXT NOT NULL,
                        metadata TEXT NOT NULL,
                        embedding BLOB,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                await self._conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_chunks_file_path
                    ON chunks(json_extract(metadata, '$.file_path'))
                """)

                await self._conn.execute("""
                    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                        chunk_id UNINDEXED,
                        content,
                        metadata
                    )
                """)

            except (sqlite3.Error, OSError) as e:
                logger.error("vector_store_init_failed", db_path=str(self.db_path), error=str(e))
                await self._close_connection()
                raise DatabaseError(f"Failed to initialize database: {e}", e) from e

            self._initialized = True
            logger.info("vector_store_initialized", db_path=str(self.db_path))

    async def _close_connection(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def close(self) -> None:
        """Close the database connection; the next call reopens it."""
        async with self._init_lock:
            await self._close_connection()
            self._initialized = False

    async def save_chunks(self, chunks: List[Chunk], replace_file: Optional[str] = None) -> None:
        """Upsert chunks in a single transaction.

        The keyword index is written in the same transaction, so the two
        tables never disagree. Nothing is committed if any statement fails.

        Args:
            chunks: Chunks to insert or replace (matched by id)
            replace_file: If given, first delete every chunk of this file path

        Raises:
            DatabaseError: If the transaction fails (after rolling it back)
        """
        await self.initialize()

        if not chunks and replace_file is None:
            return

        async with self._lock:
            try:
                await self._conn.execute("BEGIN IMMEDIATE")

                if replace_file is not None:
                    await self._conn.execute(
                        """
                        DELETE FROM chunks_fts WHERE chunk_id IN (
                            SELECT id FROM chunks
                            WHERE json_extract(metadata, '$.file_path') = ?
                        )
                        """,
                        (replace_file,),
                    )
                    await self._conn.execute(
                        "DELETE FROM chunks WHERE json_extract(metadata, '$.file_path') = ?",
                        (replace_file,),
                    )

                for chunk in chunks:
                    metadata_json = json.dumps(chunk.metadata.to_dict(), ensure_ascii=False)

                    await self._conn.execute(
                        """
                        INSERT INTO chunks (id, content, metadata, embedding)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            content = excluded.content,
                            metadata = excluded.metadata,
                            embedding = excluded.embedding
                        """,
                        (chunk.id, chunk.content, metadata_json, encode_embedding(chunk.embedding)),
                    )

                    await self._conn.execute(
                        "DELETE FROM chunks_fts WHERE chunk_id = ?", (chunk.id,)
                    )
                    await self._conn.execute(
                        "INSERT INTO chunks_fts (chunk_id, content, metadata) VALUES (?, ?, ?)",
                        (chunk.id, chunk.content, metadata_json),
                    )

                await self._conn.execute("COMMIT")

            except (sqlite3.Error, ValueError, TypeError) as e:
                await self._rollback()
                logger.error("chunks_save_failed", count=len(chunks), error=str(e))
                raise DatabaseError(f"Failed to save chunks: {e}", e) from e

        logger.info("chunks_saved", count=len(chunks), replace_file=replace_file)

    async def _rollback(self) -> None:
        try:
            await self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            # No transaction was open (BEGIN itself failed)
            logger.warning("rollback_failed", error=str(e))

    async def _read(self, sql: str, params: tuple = (), one: bool = False) -> Any:
        # Serialized with writers so an open transaction is never visible
        async with self._lock:
            async with self._conn.execute(sql, params) as cursor:
                if one:
                    return await cursor.fetchone()
                return await cursor.fetchall()

    async def search(self, query_vector: List[float], limit: int = None) -> List[ScoredChunk]:
        """Rank stored chunks by cosine similarity to a query vector.

        Only chunks with an embedding of the query's dimension are
        considered. Results are sorted by similarity descending (ties keep
        storage order) and only similarities above 0 are returned.

        Args:
            query_vector: Query embedding
            limit: Maximum number of results (default config.SEARCH_LIMIT)

        Returns:
            Up to ``limit`` scored chunks

        Raises:
            DatabaseError: If the query fails
        """
        await self.initialize()

        if limit is None:
            limit = config.SEARCH_LIMIT

        query = np.asarray(query_vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if limit <= 0 or query_norm == 0.0:
            return []

        try:
            rows = await self._read(
                """
                SELECT id, content, metadata, embedding
                FROM chunks
                WHERE embedding IS NOT NULL
                ORDER BY rowid
                """
            )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to perform vector search: {e}", e) from e

        candidates = []
        vectors = []
        skipped = 0
        for row in rows:
            vector = np.frombuffer(row["embedding"], dtype="<f4")
            if vector.shape[0] != query.shape[0]:
                skipped += 1
                continue
            candidates.append(row)
            vectors.append(vector)

        if skipped:
            logger.warning("embedding_dimension_mismatch", skipped=skipped, expected=query.shape[0])

        if not candidates:
            return []

        matrix = np.vstack(vectors)
        norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = (matrix @ query) / (norms * query_norm)
        similarities = np.nan_to_num(similarities, nan=0.0, posinf=0.0, neginf=0.0)

        order = np.argsort(-similarities, kind="stable")

        results: List[ScoredChunk] = []
        for idx in order[:limit]:
            similarity = float(similarities[idx])
            if similarity <= 0:
                break
            results.append(ScoredChunk(chunk=_row_to_chunk(candidates[idx]), similarity=similarity))

        logger.info(
            "vector_search_completed",
            candidates=len(candidates),
            results_found=len(results),
        )

        return results

    async def search_by_keywords(self, query: str, limit: int = None) -> List[ScoredChunk]:
        """Full-text search ranked by BM25.

        The score is the negated ``bm25()`` rank (higher is better), mapped
        into 0-1 with the logistic function so it is comparable with vector
        similarities.

        Args:
            query: Free text; split into terms that are ORed together
            limit: Maximum number of results (default config.SEARCH_LIMIT)

        Raises:
            DatabaseError: If the query fails
        """
        await self.initialize()

        if limit is None:
            limit = config.SEARCH_LIMIT

        match_query = build_match_query(query)
        if match_query is None or limit <= 0:
            return []

        try:
            rows = await self._read(
                """
                SELECT c.id, c.content, c.metadata, bm25(chunks_fts) AS rank
                FROM chunks_fts
                JOIN chunks c ON c.id = chunks_fts.chunk_id
                WHERE chunks_fts MATCH ?
                ORDER BY rank
                LIMIT ?
                """,
                (match_query, limit),
            )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to perform keyword search: {e}", e) from e

        results = [
            ScoredChunk(
                chunk=_row_to_chunk(row),
                similarity=1.0 / (1.0 + math.exp(row["rank"])),
            )
            for row in rows
        ]

        logger.info("keyword_search_completed", terms=match_query, results_found=len(results))

        return results

    async def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        """Fetch a chunk (with its embedding) by id, or None if absent."""
        await self.initialize()

        try:
            row = await self._read(
                "SELECT id, content, metadata, embedding FROM chunks WHERE id = ?",
                (chunk_id,),
                one=True,
            )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to get chunk: {e}", e) from e

        if row is None:
            return None
        return _row_to_chunk(row, with_embedding=True)

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics about stored chunks.

        Returns:
            Dictionary with total_chunks, total_files and average_chunk_size
        """
        await self.initialize()

        try:
            row = await self._read(
                """
                SELECT
                    COUNT(*) AS total_chunks,
                    COUNT(DISTINCT json_extract(metadata, '$.file_path')) AS total_files,
                    AVG(length(content)) AS avg_chunk_size
                FROM chunks
                """,
                one=True,
            )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to get database statistics: {e}", e) from e

        return {
            "total_chunks": int(row["total_chunks"] or 0),
            "total_files": int(row["total_files"] or 0),
            "average_chunk_size": float(row["avg_chunk_size"] or 0.0),
        }

    async def clear(self) -> int:
        """Delete every chunk (used when rebuilding the index).

        Returns:
            Number of chunks deleted
        """
        await self.initialize()

        async with self._lock:
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
                async with self._conn.execute("SELECT COUNT(*) FROM chunks") as cursor:
                    count = (await cursor.fetchone())[0]
                await self._conn.execute("DELETE FROM chunks_fts")
                await self._conn.execute("DELETE FROM chunks")
                await self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback()
                logger.error("chunks_clear_failed", error=str(e))
                raise DatabaseError(f"Failed to clear chunks: {e}", e) from e

        logger.info("chunks_cleared", count=count)
        return count
