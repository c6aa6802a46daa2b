"""
Download coordinator: reassembles a finalized blob as an async byte stream.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from .chunk_store import ChunkStore
from .errors import NotFound, StorageUnavailable
from .models import BlobId, BlobMetadata

logger = logging.getLogger(__name__)


class BlobStream:
    """
    Lazy, forward-only view over a finalized blob's chunks.

    Chunks are read one at a time, only when the consumer asks for the next
    one; a consumer that stops iterating causes no further reads. The stream
    can be iterated once.
    """

    def __init__(self, store: ChunkStore, blob: BlobMetadata) -> None:
        self.blob = blob
        self._store = store
        self._started = False

    @property
    def length(self) -> int:
        return self.blob.length or 0

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError(f"Stream for blob {self.blob.id} has already been consumed")
        self._started = True
        return self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        blob = self.blob
        for index in range(blob.chunk_count):
            data = await self._store.read_chunk(blob.id, index)
            expected = blob.expected_chunk_size(index)
            if len(data) != expected:
                raise StorageUnavailable(
                    f"Chunk {index} of blob {blob.id} has {len(data)} bytes, expected {expected}"
                )
            yield data


class DownloadCoordinator:
    def __init__(self, store: ChunkStore) -> None:
        self.store = store

    async def stream(self, blob_id: BlobId) -> BlobStream:
        """
        Look up a blob and return a stream over its bytes.

        The metadata lookup happens here, before any chunk is read, so a
        missing blob is reported before a response has started.

        Raises:
            NotFound: If the blob does not exist or is not finalized
        """
        blob = await self.store.get_blob_metadata(blob_id)
        if not blob.complete:
            logger.info(f"Refusing to stream unfinished blob {blob_id}")
            raise NotFound(f"Blob {blob_id} not found")
        return BlobStream(self.store, blob)

    async def read_all(self, blob_id: BlobId) -> bytes:
        """Convenience for small blobs: the whole payload in memory."""
        stream = await self.stream(blob_id)
        return b"".join([chunk async for chunk in stream])
