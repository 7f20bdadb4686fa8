"""Document store for the knowledge base.

SQLite database (accessed through aiosqlite) holding:
- documents: one row per indexed document
- chunks: text chunks with page ranges and normalized float32 embeddings

The store is an explicit handle: construct it once, ``await open()`` before
use, ``await close()`` when done (or use it as an async context manager),
and pass it to the indexing pipeline and retrieval engine.

All statements go through a single connection guarded by an asyncio lock,
and every write runs in its own ``BEGIN IMMEDIATE`` transaction, so a reader
never observes a half-written or half-deleted document.
"""
import asyncio
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite
import numpy as np
import structlog

from knowbase import config
from knowbase.errors import InputError, StorageError
from knowbase.rag.vectors import from_blob, to_blob

logger = structlog.get_logger()

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        page_count INTEGER NOT NULL,
        byte_size INTEGER NOT NULL,
        sha256 TEXT,
        embedding_model TEXT NOT NULL,
        chunk_count INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        id TEXT PRIMARY KEY,
        doc_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        page_start INTEGER NOT NULL,
        page_end INTEGER NOT NULL,
        text TEXT NOT NULL,
        embedding BLOB NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_chunks_doc_id
    ON chunks(doc_id)
    """,
)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """Metadata for an indexed document."""

    id: str
    name: str
    page_count: int
    byte_size: int
    embedding_model: str
    chunk_count: int = 0
    sha256: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "page_count": self.page_count,
            "byte_size": self.byte_size,
            "sha256": self.sha256,
            "embedding_model": self.embedding_model,
            "chunk_count": self.chunk_count,
        }


@dataclass
class Chunk:
    """A text chunk of a document with its normalized embedding."""

    id: str
    doc_id: str
    page_start: int
    page_end: int
    text: str
    embedding: np.ndarray
    created_at: datetime = field(default_factory=utcnow)

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])


def chunk_id(doc_id: str, index: int) -> str:
    """Build the id of the index-th chunk of a document."""
    return f"{doc_id}:{index}"


def _document_from_row(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        name=row["name"],
        created_at=datetime.fromisoformat(row["created_at"]),
        page_count=row["page_count"],
        byte_size=row["byte_size"],
        sha256=row["sha256"],
        embedding_model=row["embedding_model"],
        chunk_count=row["chunk_count"],
    )


def _chunk_from_row(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        doc_id=row["doc_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        page_start=row["page_start"],
        page_end=row["page_end"],
        text=row["text"],
        embedding=from_blob(row["embedding"]),
    )


def _chunk_params(chunk: Chunk) -> tuple:
    return (
        chunk.id,
        chunk.doc_id,
        chunk.created_at.isoformat(),
        chunk.page_start,
        chunk.page_end,
        chunk.text,
        to_blob(chunk.embedding),
    )


def _document_params(doc: Document) -> tuple:
    return (
        doc.id,
        doc.name,
        doc.created_at.isoformat(),
        doc.page_count,
        doc.byte_size,
        doc.sha256,
        doc.embedding_model,
        doc.chunk_count,
    )


UPSERT_DOCUMENT = """
    INSERT OR REPLACE INTO documents (
        id, name, created_at, page_count, byte_size,
        sha256, embedding_model, chunk_count
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

UPSERT_CHUNK = """
    INSERT OR REPLACE INTO chunks (
        id, doc_id, created_at, page_start, page_end, text, embedding
    ) VALUES (?, ?, ?, ?, ?, ?, ?)
"""


class DocumentStore:
    """Durable keyed store for documents and their chunks."""

    def __init__(self, db_path: Path = None):
        """Initialize the store handle (does not touch the disk).

        Args:
            db_path: SQLite file path, or ":memory:" (default from config)
        """
        self.db_path = db_path or config.DB_PATH
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> "DocumentStore":
        """Open the database connection and create the schema if needed.

        Raises:
            StorageError: If the database cannot be opened
        """
        if self._conn is not None:
            return self

        conn = None
        try:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            # Autocommit mode: transactions are managed explicitly
            conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
            conn.row_factory = sqlite3.Row
            for statement in SCHEMA:
                await conn.execute(statement)
        except (sqlite3.Error, OSError) as e:
            if conn is not None:
                await conn.close()
            logger.error("database_open_failed", db_path=str(self.db_path), error=str(e))
            raise StorageError(f"Failed to open database: {e}", "open") from e

        self._conn = conn
        logger.info("database_opened", db_path=str(self.db_path))
        return self

    async def close(self) -> None:
        """Close the database connection. Safe to call twice."""
        if self._conn is None:
            return

        conn, self._conn = self._conn, None
        try:
            await conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to close database: {e}", "close") from e

        logger.info("database_closed", db_path=str(self.db_path))

    async def __aenter__(self) -> "DocumentStore":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _connection(self, operation: str) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Document store is not open", operation)
        return self._conn

    @asynccontextmanager
    async def _read(self, operation: str):
        """Serialize a read on the shared connection and translate errors."""
        async with self._lock:
            conn = self._connection(operation)
            try:
                yield conn
            except sqlite3.Error as e:
                logger.error("database_read_failed", operation=operation, error=str(e))
                raise StorageError(f"{operation} failed: {e}", operation) from e

    @asynccontextmanager
    async def _transaction(self, operation: str):
        """Run the enclosed writes as one transaction, rolled back on any error."""
        async with self._lock:
            conn = self._connection(operation)
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                logger.error("database_begin_failed", operation=operation, error=str(e))
                raise StorageError(f"{operation} failed: {e}", operation) from e

            try:
                yield conn
                await conn.execute("COMMIT")
            except BaseException as e:
                try:
                    await conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.error(
                        "database_rollback_failed",
                        operation=operation,
                        error=str(rollback_error),
                    )
                if isinstance(e, sqlite3.Error):
                    logger.error("database_write_failed", operation=operation, error=str(e))
                    raise StorageError(f"{operation} failed: {e}", operation) from e
                raise

    async def put_document(self, doc: Document) -> None:
        """Insert or replace a document record."""
        async with self._transaction("put_document") as conn:
            await conn.execute(UPSERT_DOCUMENT, _document_params(doc))

        logger.debug("document_upserted", doc_id=doc.id, chunk_count=doc.chunk_count)

    async def get_document(self, doc_id: str) -> Optional[Document]:
        """Get a document record by id, or None if it doesn't exist."""
        async with self._read("get_document") as conn:
            async with conn.execute(
                "SELECT * FROM documents WHERE id = ?", (doc_id,)
            ) as cursor:
                row = await cursor.fetchone()

        return _document_from_row(row) if row else None

    async def list_documents(self) -> List[Document]:
        """List all documents (unordered; callers sort by recency)."""
        async with self._read("list_documents") as conn:
            async with conn.execute("SELECT * FROM documents") as cursor:
                rows = await cursor.fetchall()

        return [_document_from_row(row) for row in rows]

    async def put_chunks(self, chunks: Sequence[Chunk]) -> None:
        """Insert or replace many chunks as a single write.

        Raises:
            InputError: If chunks is empty
        """
        if not chunks:
            raise InputError("Chunk batch cannot be empty", "put_chunks")

        async with self._transaction("put_chunks") as conn:
            await conn.executemany(UPSERT_CHUNK, [_chunk_params(c) for c in chunks])

        logger.debug("chunks_upserted", count=len(chunks))

    async def get_chunks_for_docs(self, doc_ids: Iterable[str]) -> List[Chunk]:
        """Get every chunk belonging to any of the given documents.

        An empty id set yields an empty list; it never means "all documents".
        """
        doc_ids = list(dict.fromkeys(doc_ids))
        if not doc_ids:
            return []

        placeholders = ",".join("?" * len(doc_ids))
        async with self._read("get_chunks_for_docs") as conn:
            async with conn.execute(
                f"""
                SELECT id, doc_id, created_at, page_start, page_end, text, embedding
                FROM chunks
                WHERE doc_id IN ({placeholders})
                ORDER BY rowid
                """,
                doc_ids,
            ) as cursor:
                rows = await cursor.fetchall()

        return [_chunk_from_row(row) for row in rows]

    async def delete_document(self, doc_id: str) -> bool:
        """Delete a document and all its chunks atomically.

        Returns:
            True if a document record existed
        """
        async with self._transaction("delete_document") as conn:
            cursor = await conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
            deleted = cursor.rowcount > 0
            cursor = await conn.execute("DELETE FROM chunks WHERE doc_id = ?", (doc_id,))
            chunks_deleted = cursor.rowcount

        logger.info(
            "document_deleted",
            doc_id=doc_id,
            existed=deleted,
            chunks_deleted=chunks_deleted,
        )
        return deleted

    async def replace_document(self, doc: Document, chunks: Sequence[Chunk]) -> Document:
        """Commit a whole indexing run: drop old chunks, write new ones and the document.

        The document's chunk_count is set to len(chunks). All of it happens in
        one transaction, so re-indexing never accumulates duplicates and a
        failure leaves the previous state untouched.

        Returns:
            The document as persisted
        """
        for chunk in chunks:
            if chunk.doc_id != doc.id:
                raise InputError(
                    f"Chunk {chunk.id} belongs to {chunk.doc_id}, not {doc.id}",
                    "replace_document",
                    doc_id=doc.id,
                )

        doc.chunk_count = len(chunks)

        async with self._transaction("replace_document") as conn:
            cursor = await conn.execute("DELETE FROM chunks WHERE doc_id = ?", (doc.id,))
            replaced = cursor.rowcount
            if chunks:
                await conn.executemany(UPSERT_CHUNK, [_chunk_params(c) for c in chunks])
            await conn.execute(UPSERT_DOCUMENT, _document_params(doc))

        logger.info(
            "document_replaced",
            doc_id=doc.id,
            chunk_count=doc.chunk_count,
            chunks_replaced=replaced,
        )
        return doc

    async def embedding_dimension(self, embedding_model: str) -> Optional[int]:
        """Dimension of the stored vectors for a model, or None if nothing is stored."""
        async with self._read("embedding_dimension") as conn:
            async with conn.execute(
                """
                SELECT length(c.embedding) AS size
                FROM chunks c
                JOIN documents d ON d.id = c.doc_id
                WHERE d.embedding_model = ?
                LIMIT 1
                """,
                (embedding_model,),
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        return row["size"] // np.dtype(np.float32).itemsize

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the store."""
        async with self._read("get_stats") as conn:
            async with conn.execute("SELECT COUNT(*) FROM documents") as cursor:
                document_count = (await cursor.fetchone())[0]
            async with conn.execute("SELECT COUNT(*) FROM chunks") as cursor:
                chunk_count = (await cursor.fetchone())[0]

        return {
            "db_path": str(self.db_path),
            "document_count": document_count,
            "chunk_count": chunk_count,
        }
