"""
Chunk store contract and the in-memory backend.

A chunk store persists a blob as a gap-free sequence of immutable chunks keyed
by ``(blob id, index)`` plus one metadata record per blob. Writes to a blob are
strictly sequential; once a blob is finalized it never changes again. All
operations are coroutines so that blocking backends can push their I/O onto a
worker thread without stalling other requests.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import replace
from threading import Lock
from typing import Dict, List

from .errors import InvalidBlobState, NotFound
from .models import BlobId, BlobMetadata
from .utils import utc_now

logger = logging.getLogger(__name__)

# GridFS default chunk size
DEFAULT_CHUNK_SIZE = 255 * 1024


def check_chunk_write(blob: BlobMetadata, index: int, data: bytes, next_index: int, previous_size: int) -> None:
    """
    Validate a chunk write against the blob's current state.

    Args:
        blob: Current metadata of the target blob
        index: Sequence index being written
        data: Chunk payload
        next_index: The only index the store will accept next
        previous_size: Payload size of chunk ``index - 1`` (ignored for index 0)

    Raises:
        InvalidBlobState: If the blob is finalized or the write would break
            the contiguous, bounded chunk sequence
    """
    if blob.complete:
        raise InvalidBlobState(f"Blob {blob.id} is already finalized")
    if index != next_index:
        raise InvalidBlobState(f"Blob {blob.id} expects chunk {next_index}, got {index}")
    if not data:
        raise InvalidBlobState("Chunk payload must not be empty")
    if len(data) > blob.chunk_size:
        raise InvalidBlobState(f"Chunk of {len(data)} bytes exceeds chunk size {blob.chunk_size}")
    if index > 0 and previous_size != blob.chunk_size:
        raise InvalidBlobState("Only the final chunk of a blob may be smaller than the chunk size")


def check_finalize(blob: BlobMetadata, total_length: int, chunk_count: int, written_bytes: int) -> None:
    """Validate that ``total_length`` matches what was actually written."""
    if blob.complete:
        raise InvalidBlobState(f"Blob {blob.id} is already finalized")
    if total_length < 0 or total_length != written_bytes:
        raise InvalidBlobState(f"Blob {blob.id} holds {written_bytes} bytes, not {total_length}")
    if chunk_count != math.ceil(total_length / blob.chunk_size):
        raise InvalidBlobState(f"Blob {blob.id} has {chunk_count} chunks, inconsistent with its length")


class ChunkStore(ABC):
    """Abstract chunk store; see module docstring for the invariants."""

    async def open(self) -> None:
        """Acquire backend resources. Called once before first use."""

    async def close(self) -> None:
        """Release backend resources."""

    async def abort_blob(self, blob_id: BlobId) -> None:
        """
        Release per-upload state for a blob that will never be finalized.

        The blob and any chunks already written stay in the store.
        """

    @abstractmethod
    async def create_blob(self, name: str, content_type: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> BlobId:
        """Allocate a new, incomplete blob and return its identifier."""

    @abstractmethod
    async def write_chunk(self, blob_id: BlobId, index: int, data: bytes) -> None:
        """Durably persist one chunk before returning."""

    @abstractmethod
    async def finalize_blob(self, blob_id: BlobId, total_length: int) -> BlobMetadata:
        """Mark the blob complete with its final length."""

    @abstractmethod
    async def read_chunk(self, blob_id: BlobId, index: int) -> bytes:
        """Return the payload of one chunk."""

    @abstractmethod
    async def get_blob_metadata(self, blob_id: BlobId) -> BlobMetadata:
        """Return blob metadata, complete or not."""

    @abstractmethod
    async def delete_blob(self, blob_id: BlobId) -> bool:
        """Remove metadata and chunks; returns False when nothing existed."""

    @abstractmethod
    async def list_blobs(self, include_incomplete: bool = True) -> List[BlobMetadata]:
        """List blob metadata, newest first."""


class MemoryChunkStore(ChunkStore):
    """Process-local chunk store backed by dictionaries."""

    def __init__(self) -> None:
        self._blobs: Dict[BlobId, BlobMetadata] = {}
        self._chunks: Dict[BlobId, List[bytes]] = {}
        self._lock = Lock()

    def _get(self, blob_id: BlobId) -> BlobMetadata:
        blob = self._blobs.get(blob_id)
        if blob is None:
            raise NotFound(f"Blob {blob_id} not found")
        return blob

    async def create_blob(self, name: str, content_type: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> BlobId:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        blob_id = BlobId.new()
        with self._lock:
            self._blobs[blob_id] = BlobMetadata(
                id=blob_id,
                name=name,
                content_type=content_type,
                chunk_size=chunk_size,
                created_at=utc_now(),
            )
            self._chunks[blob_id] = []
        logger.debug(f"Created blob {blob_id} ({name})")
        return blob_id

    async def write_chunk(self, blob_id: BlobId, index: int, data: bytes) -> None:
        with self._lock:
            blob = self._get(blob_id)
            chunks = self._chunks[blob_id]
            previous_size = len(chunks[-1]) if chunks else 0
            check_chunk_write(blob, index, data, len(chunks), previous_size)
            chunks.append(bytes(data))

    async def finalize_blob(self, blob_id: BlobId, total_length: int) -> BlobMetadata:
        with self._lock:
            blob = self._get(blob_id)
            chunks = self._chunks[blob_id]
            check_finalize(blob, total_length, len(chunks), sum(len(c) for c in chunks))
            blob.length = total_length
            blob.complete = True
            return replace(blob)

    async def read_chunk(self, blob_id: BlobId, index: int) -> bytes:
        with self._lock:
            self._get(blob_id)
            chunks = self._chunks[blob_id]
            if index < 0 or index >= len(chunks):
                raise NotFound(f"Chunk {index} of blob {blob_id} not found")
            return chunks[index]

    async def get_blob_metadata(self, blob_id: BlobId) -> BlobMetadata:
        with self._lock:
            return replace(self._get(blob_id))

    async def delete_blob(self, blob_id: BlobId) -> bool:
        with self._lock:
            self._chunks.pop(blob_id, None)
            return self._blobs.pop(blob_id, None) is not None

    async def list_blobs(self, include_incomplete: bool = True) -> List[BlobMetadata]:
        with self._lock:
            blobs = [replace(b) for b in self._blobs.values() if include_incomplete or b.complete]
        return sorted(blobs, key=lambda b: b.created_at, reverse=True)
