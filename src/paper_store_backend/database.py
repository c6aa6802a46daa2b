"""
SQLite persistence for blob chunks and submission records.

This module provides two SQLite-based stores:

- ``SQLiteChunkStore``: the default chunk store, holding blob metadata in a
  ``blobs`` table and chunk payloads in a ``chunks`` table keyed by
  ``(blob_id, idx)``.
- ``SubmissionDatabase``: the submission record writer, linking a finalized
  blob to the submitted paper metadata.

Both open one short-lived connection per operation in WAL mode and run the
blocking sqlite3 calls on a worker thread.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .chunk_store import DEFAULT_CHUNK_SIZE, ChunkStore, check_chunk_write, check_finalize
from .errors import NotFound, StorageUnavailable
from .models import Author, BlobId, BlobMetadata, SubmissionRecord
from .utils import deserialize_datetime, ensure_directory, serialize_datetime, utc_now

logger = logging.getLogger(__name__)


# Default database paths
DEFAULT_BLOB_DB_PATH = Path("data/blobs.db")
DEFAULT_SUBMISSIONS_DB_PATH = Path("data/submissions.db")


class _SQLiteDatabase:
    """Shared connection handling; subclasses provide ``_init_db``."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = None
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            if conn is not None:
                conn.rollback()
            raise StorageUnavailable(f"SQLite operation failed on {self.db_path}: {exc}") from exc
        except Exception:
            if conn is not None:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                conn.close()

    def _init_db(self) -> None:
        raise NotImplementedError

    async def open(self) -> None:
        ensure_directory(self.db_path.parent)
        await asyncio.to_thread(self._init_db)
        logger.info(f"Opened SQLite database at {self.db_path}")

    async def close(self) -> None:
        # Connections are per operation; nothing is held between calls.
        logger.info(f"Closed SQLite database at {self.db_path}")


class SQLiteChunkStore(_SQLiteDatabase, ChunkStore):
    """
    Chunk store backed by a single SQLite file.

    Thread-safe: every operation uses its own connection, and chunk writes run
    inside ``BEGIN IMMEDIATE`` so the sequence check and the insert are atomic.
    """

    def __init__(self, db_path: Path = DEFAULT_BLOB_DB_PATH) -> None:
        super().__init__(db_path)

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS blobs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    content_type TEXT NOT NULL,
                    chunk_size INTEGER NOT NULL,
                    length INTEGER,
                    complete INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS chunks (
                    blob_id TEXT NOT NULL REFERENCES blobs(id) ON DELETE CASCADE,
                    idx INTEGER NOT NULL,
                    data BLOB NOT NULL,
                    PRIMARY KEY (blob_id, idx)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_blobs_created_at
                ON blobs(created_at DESC)
            """)

    def _fetch_blob(self, conn: sqlite3.Connection, blob_id: BlobId) -> BlobMetadata:
        row = conn.execute("SELECT * FROM blobs WHERE id = ?", (str(blob_id),)).fetchone()
        if not row:
            raise NotFound(f"Blob {blob_id} not found")
        return self._row_to_blob(row)

    def _create_blob(self, name: str, content_type: str, chunk_size: int) -> BlobId:
        blob_id = BlobId.new()
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO blobs (id, name, content_type, chunk_size, complete, created_at) VALUES (?, ?, ?, ?, 0, ?)",
                (str(blob_id), name, content_type, chunk_size, serialize_datetime(utc_now())),
            )
        return blob_id

    def _write_chunk(self, blob_id: BlobId, index: int, data: bytes) -> None:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            blob = self._fetch_blob(conn, blob_id)
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM chunks WHERE blob_id = ?", (str(blob_id),)
            ).fetchone()
            next_index = row["n"]
            previous_size = 0
            if next_index > 0:
                previous = conn.execute(
                    "SELECT length(data) AS size FROM chunks WHERE blob_id = ? AND idx = ?",
                    (str(blob_id), next_index - 1),
                ).fetchone()
                previous_size = previous["size"] if previous else 0
            check_chunk_write(blob, index, data, next_index, previous_size)
            conn.execute(
                "INSERT INTO chunks (blob_id, idx, data) VALUES (?, ?, ?)",
                (str(blob_id), index, sqlite3.Binary(data)),
            )

    def _finalize_blob(self, blob_id: BlobId, total_length: int) -> BlobMetadata:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            blob = self._fetch_blob(conn, blob_id)
            row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(length(data)), 0) AS size FROM chunks WHERE blob_id = ?",
                (str(blob_id),),
            ).fetchone()
            check_finalize(blob, total_length, row["n"], row["size"])
            conn.execute(
                "UPDATE blobs SET length = ?, complete = 1 WHERE id = ?",
                (total_length, str(blob_id)),
            )
        blob.length = total_length
        blob.complete = True
        return blob

    def _read_chunk(self, blob_id: BlobId, index: int) -> bytes:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM chunks WHERE blob_id = ? AND idx = ?", (str(blob_id), index)
            ).fetchone()
            if not row:
                # Distinguish a missing blob from a missing chunk
                self._fetch_blob(conn, blob_id)
                raise NotFound(f"Chunk {index} of blob {blob_id} not found")
            return bytes(row["data"])

    def _get_blob_metadata(self, blob_id: BlobId) -> BlobMetadata:
        with self._get_connection() as conn:
            return self._fetch_blob(conn, blob_id)

    def _delete_blob(self, blob_id: BlobId) -> bool:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM chunks WHERE blob_id = ?", (str(blob_id),))
            cursor = conn.execute("DELETE FROM blobs WHERE id = ?", (str(blob_id),))
            return cursor.rowcount > 0

    def _list_blobs(self, include_incomplete: bool) -> List[BlobMetadata]:
        query = "SELECT * FROM blobs"
        if not include_incomplete:
            query += " WHERE complete = 1"
        query += " ORDER BY created_at DESC"
        with self._get_connection() as conn:
            return [self._row_to_blob(row) for row in conn.execute(query).fetchall()]

    async def create_blob(self, name: str, content_type: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> BlobId:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        return await asyncio.to_thread(self._create_blob, name, content_type, chunk_size)

    async def write_chunk(self, blob_id: BlobId, index: int, data: bytes) -> None:
        await asyncio.to_thread(self._write_chunk, blob_id, index, data)

    async def finalize_blob(self, blob_id: BlobId, total_length: int) -> BlobMetadata:
        return await asyncio.to_thread(self._finalize_blob, blob_id, total_length)

    async def read_chunk(self, blob_id: BlobId, index: int) -> bytes:
        return await asyncio.to_thread(self._read_chunk, blob_id, index)

    async def get_blob_metadata(self, blob_id: BlobId) -> BlobMetadata:
        return await asyncio.to_thread(self._get_blob_metadata, blob_id)

    async def delete_blob(self, blob_id: BlobId) -> bool:
        return await asyncio.to_thread(self._delete_blob, blob_id)

    async def list_blobs(self, include_incomplete: bool = True) -> List[BlobMetadata]:
        return await asyncio.to_thread(self._list_blobs, include_incomplete)

    def _row_to_blob(self, row: sqlite3.Row) -> BlobMetadata:
        """Convert a database row to blob metadata."""
        return BlobMetadata(
            id=BlobId.parse(row["id"]),
            name=row["name"],
            content_type=row["content_type"],
            chunk_size=row["chunk_size"],
            created_at=deserialize_datetime(row["created_at"]),
            length=row["length"],
            complete=bool(row["complete"]),
        )


class SubmissionDatabase(_SQLiteDatabase):
    """
    Submission record writer.

    Records are only persisted for blobs the chunk store reports as
    finalized. The write is not transactional with the blob upload: a blob
    whose record write fails stays behind as an orphan.
    """

    def __init__(self, chunk_store: ChunkStore, db_path: Path = DEFAULT_SUBMISSIONS_DB_PATH) -> None:
        super().__init__(db_path)
        self._chunk_store = chunk_store

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    no_authors INTEGER NOT NULL,
                    authors TEXT NOT NULL,
                    document_type TEXT NOT NULL,
                    abstract TEXT NOT NULL,
                    pdf_file_id TEXT NOT NULL,
                    submitted_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_submissions_pdf_file_id
                ON submissions(pdf_file_id)
            """)

    async def record(
        self,
        blob_id: BlobId,
        title: str,
        no_authors: int,
        authors: List[Author],
        document_type: str,
        abstract: str,
    ) -> str:
        """
        Persist a submission record referencing a finalized blob.

        Returns:
            The new record identifier

        Raises:
            NotFound: If the blob does not exist or is not finalized
            StorageUnavailable: If the record could not be written
        """
        blob = await self._chunk_store.get_blob_metadata(blob_id)
        if not blob.complete:
            raise NotFound(f"Blob {blob_id} is not finalized")

        record = SubmissionRecord(
            id=uuid4().hex,
            title=title,
            no_authors=no_authors,
            authors=authors,
            document_type=document_type,
            abstract=abstract,
            pdf_file_id=str(blob_id),
            submitted_at=utc_now(),
        )
        await asyncio.to_thread(self._save, record)
        return record.id

    def _save(self, record: SubmissionRecord) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO submissions (
                    id, title, no_authors, authors, document_type,
                    abstract, pdf_file_id, submitted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.title,
                record.no_authors,
                json.dumps([author.model_dump() for author in record.authors]),
                record.document_type,
                record.abstract,
                record.pdf_file_id,
                serialize_datetime(record.submitted_at),
            ))

    def _get(self, record_id: str) -> Optional[SubmissionRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM submissions WHERE id = ?", (record_id,)).fetchone()
            return self._row_to_record(row) if row else None

    def _list(self) -> List[SubmissionRecord]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM submissions ORDER BY submitted_at DESC").fetchall()
            return [self._row_to_record(row) for row in rows]

    def _referenced_blob_ids(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT DISTINCT pdf_file_id FROM submissions").fetchall()
            return [row["pdf_file_id"] for row in rows]

    async def get(self, record_id: str) -> Optional[SubmissionRecord]:
        return await asyncio.to_thread(self._get, record_id)

    async def list_submissions(self) -> List[SubmissionRecord]:
        return await asyncio.to_thread(self._list)

    async def referenced_blob_ids(self) -> set[str]:
        return set(await asyncio.to_thread(self._referenced_blob_ids))

    def _row_to_record(self, row: sqlite3.Row) -> SubmissionRecord:
        """Convert a database row to a submission record."""
        authors: List[Dict[str, Any]] = json.loads(row["authors"] or "[]")
        return SubmissionRecord(
            id=row["id"],
            title=row["title"],
            no_authors=row["no_authors"],
            authors=[Author.model_validate(author) for author in authors],
            document_type=row["document_type"],
            abstract=row["abstract"],
            pdf_file_id=row["pdf_file_id"],
            submitted_at=deserialize_datetime(row["submitted_at"]),
        )
