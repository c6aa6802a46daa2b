"""
Upload coordinator: drives an inbound byte stream into a chunk store.

The stream is consumed incrementally. Bytes are accumulated in a buffer that
never holds more than one chunk plus one read, and each full chunk is written
before the next read is issued, so chunk writes for a blob are strictly
sequential. The blob is finalized only after the stream is exhausted and every
chunk is written; on any failure finalize is never called, the store is told
to drop its upload state with ``abort_blob``, and the partially written blob
is left for the caller to clean up.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, Optional

from .chunk_store import DEFAULT_CHUNK_SIZE, ChunkStore
from .errors import PayloadTooLarge, PaperStoreError, UnsupportedMediaType, UploadFailed
from .models import PDF_CONTENT_TYPE, BlobId

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 20 * 1024 * 1024


def normalize_content_type(content_type: Optional[str]) -> str:
    """Lowercase media type without parameters (``text/plain; charset=x`` -> ``text/plain``)."""
    return (content_type or "").split(";", 1)[0].strip().lower()


class UploadCoordinator:
    """
    Convert an async byte stream into bounded, sequential chunk writes.

    Attributes:
        store: Chunk store receiving the writes
        chunk_size: Default chunk size for new blobs
        max_bytes: Maximum accepted stream length
        max_duration: Optional deadline in seconds for a whole ingestion
    """

    def __init__(
        self,
        store: ChunkStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        max_duration: Optional[float] = None,
        allowed_content_types: tuple[str, ...] = (PDF_CONTENT_TYPE,),
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if max_bytes < 0:
            raise ValueError("max_bytes must not be negative")
        self.store = store
        self.chunk_size = chunk_size
        self.max_bytes = max_bytes
        self.max_duration = max_duration
        self.allowed_content_types = allowed_content_types

    def check_content_type(self, content_type: Optional[str]) -> str:
        """
        Return the normalized media type, or raise if it is not accepted.

        Raises:
            UnsupportedMediaType: If the type is not in ``allowed_content_types``
        """
        media_type = normalize_content_type(content_type)
        if media_type not in self.allowed_content_types:
            raise UnsupportedMediaType(f"Only PDF files are allowed, got {content_type or 'no content type'}")
        return media_type

    async def ingest(
        self,
        stream: AsyncIterable[bytes],
        name: str,
        content_type: Optional[str],
        chunk_size: Optional[int] = None,
    ) -> BlobId:
        """
        Store ``stream`` as a new blob and return its identifier.

        The content type is checked before anything is allocated. The
        identifier is returned only after the blob has been finalized.

        Raises:
            UnsupportedMediaType: If the content type is not accepted
            PayloadTooLarge: If the stream is longer than ``max_bytes``
            UploadFailed: If the stream or a chunk write failed, or the
                deadline passed
        """
        media_type = self.check_content_type(content_type)

        size = chunk_size or self.chunk_size
        try:
            blob_id = await self.store.create_blob(name, media_type, size)
        except PaperStoreError as exc:
            raise UploadFailed(f"Could not allocate blob: {exc.message}") from exc

        try:
            return await self._ingest_with_deadline(blob_id, stream, size)
        except BaseException:
            # Not finalized: the partial blob stays, the store's upload state goes
            await self.store.abort_blob(blob_id)
            raise

    async def _ingest_with_deadline(self, blob_id: BlobId, stream: AsyncIterable[bytes], chunk_size: int) -> BlobId:
        if self.max_duration is None:
            return await self._ingest(blob_id, stream, chunk_size)
        try:
            return await asyncio.wait_for(self._ingest(blob_id, stream, chunk_size), timeout=self.max_duration)
        except asyncio.TimeoutError as exc:
            logger.warning(f"Upload of blob {blob_id} aborted after {self.max_duration}s")
            raise UploadFailed(f"Upload timed out after {self.max_duration} seconds", blob_id) from exc

    async def _ingest(self, blob_id: BlobId, stream: AsyncIterable[bytes], chunk_size: int) -> BlobId:
        buffer = bytearray()
        index = 0
        total = 0
        iterator = stream.__aiter__()
        while True:
            try:
                piece = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except PaperStoreError:
                raise
            except Exception as exc:
                logger.warning(f"Upload stream for blob {blob_id} failed: {exc}")
                raise UploadFailed(f"Reading the upload stream failed: {exc}", blob_id) from exc
            if not piece:
                continue

            total += len(piece)
            if total > self.max_bytes:
                logger.warning(f"Upload of blob {blob_id} exceeded {self.max_bytes} bytes")
                raise PayloadTooLarge(self.max_bytes)

            buffer += piece
            while len(buffer) >= chunk_size:
                await self._write(blob_id, index, bytes(buffer[:chunk_size]))
                del buffer[:chunk_size]
                index += 1

        if buffer:
            await self._write(blob_id, index, bytes(buffer))
            index += 1

        try:
            await self.store.finalize_blob(blob_id, total)
        except PaperStoreError as exc:
            raise UploadFailed(f"Finalizing blob {blob_id} failed: {exc.message}", blob_id) from exc
        logger.info(f"Stored blob {blob_id}: {total} bytes in {index} chunks")
        return blob_id

    async def _write(self, blob_id: BlobId, index: int, data: bytes) -> None:
        try:
            await self.store.write_chunk(blob_id, index, data)
        except PaperStoreError as exc:
            logger.warning(f"Writing chunk {index} of blob {blob_id} failed: {exc.message}")
            raise UploadFailed(f"Writing chunk {index} failed: {exc.message}", blob_id) from exc
