"""
S3 chunk store for deployments that keep paper blobs in object storage.

Layout inside the bucket (``prefix`` may be empty):

    <prefix>/<blob id>/meta.json         blob metadata
    <prefix>/<blob id>/chunks/00000000   chunk 0
    <prefix>/<blob id>/chunks/00000001   chunk 1
    ...

Each chunk is its own object and is written with a single ``put_object`` call,
so a chunk is durable as soon as ``write_chunk`` returns. The sequence state of
an upload in progress is kept in this process; a blob can only be written by
the store instance that created it.

The boto3 client is created in ``open()`` and closed in ``close()``. Tests can
pass their own client object instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .chunk_store import DEFAULT_CHUNK_SIZE, ChunkStore, check_chunk_write, check_finalize
from .errors import InvalidBlobState, NotFound, StorageUnavailable
from .models import BlobId, BlobMetadata
from .utils import deserialize_datetime, serialize_datetime, utc_now

logger = logging.getLogger(__name__)

_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}
_DELETE_BATCH = 1000


@dataclass
class _OpenUpload:
    blob: BlobMetadata
    next_index: int = 0
    last_size: int = 0
    written: int = 0


class S3ChunkStore(ChunkStore):
    """Chunk store writing one S3 object per chunk."""

    def __init__(self, bucket: str, prefix: str = "", client: Any = None) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client
        self._owns_client = client is None
        self._uploads: Dict[BlobId, _OpenUpload] = {}
        self._lock = Lock()

    async def open(self) -> None:
        if self._client is None:
            try:
                self._client = boto3.client("s3")
            except BotoCoreError as exc:
                raise StorageUnavailable(f"Failed to create S3 client: {exc}") from exc
        logger.info(f"Using S3 chunk store at s3://{self.bucket}/{self.prefix}")

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def _key(self, *parts: str) -> str:
        return "/".join(part for part in (self.prefix, *parts) if part)

    def _meta_key(self, blob_id: BlobId) -> str:
        return self._key(str(blob_id), "meta.json")

    def _chunk_key(self, blob_id: BlobId, index: int) -> str:
        return self._key(str(blob_id), "chunks", f"{index:08d}")

    async def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        """
        Run a blocking client call on a worker thread.

        Raises:
            NotFound: If S3 reports the key as missing
            StorageUnavailable: On any other client or transport failure
        """
        if self._client is None:
            raise StorageUnavailable("S3 chunk store is not open")
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_KEY_CODES:
                raise NotFound(f"s3://{self.bucket}/{kwargs.get('Key', '')} not found") from exc
            logger.error(f"S3 request failed: {exc}")
            raise StorageUnavailable(f"S3 request failed: {exc}") from exc
        except BotoCoreError as exc:
            logger.error(f"S3 request failed: {exc}")
            raise StorageUnavailable(f"S3 request failed: {exc}") from exc

    async def _put_metadata(self, blob: BlobMetadata) -> None:
        body = json.dumps({
            "id": str(blob.id),
            "name": blob.name,
            "contentType": blob.content_type,
            "chunkSize": blob.chunk_size,
            "length": blob.length,
            "complete": blob.complete,
            "createdAt": serialize_datetime(blob.created_at),
        }).encode("utf-8")
        await self._call(
            self._client.put_object,
            Bucket=self.bucket,
            Key=self._meta_key(blob.id),
            Body=body,
            ContentType="application/json",
        )

    async def _open_upload(self, blob_id: BlobId) -> _OpenUpload:
        with self._lock:
            upload = self._uploads.get(blob_id)
        if upload is not None:
            return upload
        blob = await self.get_blob_metadata(blob_id)
        if blob.complete:
            raise InvalidBlobState(f"Blob {blob_id} is already finalized")
        raise InvalidBlobState(f"Blob {blob_id} is not open for writing in this store")

    async def create_blob(self, name: str, content_type: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> BlobId:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        blob = BlobMetadata(
            id=BlobId.new(),
            name=name,
            content_type=content_type,
            chunk_size=chunk_size,
            created_at=utc_now(),
        )
        await self._put_metadata(blob)
        with self._lock:
            self._uploads[blob.id] = _OpenUpload(blob=blob)
        return blob.id

    async def write_chunk(self, blob_id: BlobId, index: int, data: bytes) -> None:
        upload = await self._open_upload(blob_id)
        check_chunk_write(upload.blob, index, data, upload.next_index, upload.last_size)
        await self._call(
            self._client.put_object,
            Bucket=self.bucket,
            Key=self._chunk_key(blob_id, index),
            Body=bytes(data),
            ContentType="application/octet-stream",
        )
        with self._lock:
            upload.next_index += 1
            upload.last_size = len(data)
            upload.written += len(data)

    async def finalize_blob(self, blob_id: BlobId, total_length: int) -> BlobMetadata:
        upload = await self._open_upload(blob_id)
        check_finalize(upload.blob, total_length, upload.next_index, upload.written)
        blob = replace(upload.blob, length=total_length, complete=True)
        await self._put_metadata(blob)
        with self._lock:
            self._uploads.pop(blob_id, None)
        return blob

    async def abort_blob(self, blob_id: BlobId) -> None:
        with self._lock:
            upload = self._uploads.pop(blob_id, None)
        if upload is not None:
            logger.debug(f"Released upload state for blob {blob_id} after {upload.next_index} chunks")

    async def read_chunk(self, blob_id: BlobId, index: int) -> bytes:
        if index < 0:
            raise NotFound(f"Chunk {index} of blob {blob_id} not found")
        try:
            response = await self._call(
                self._client.get_object, Bucket=self.bucket, Key=self._chunk_key(blob_id, index)
            )
        except NotFound:
            await self.get_blob_metadata(blob_id)
            raise NotFound(f"Chunk {index} of blob {blob_id} not found") from None
        return await asyncio.to_thread(response["Body"].read)

    async def get_blob_metadata(self, blob_id: BlobId) -> BlobMetadata:
        try:
            response = await self._call(self._client.get_object, Bucket=self.bucket, Key=self._meta_key(blob_id))
        except NotFound:
            raise NotFound(f"Blob {blob_id} not found") from None
        raw = json.loads(await asyncio.to_thread(response["Body"].read))
        return self._to_metadata(raw)

    async def _list_keys(self, prefix: str, delimiter: Optional[str] = None) -> List[str]:
        """
        List keys under ``prefix``, following continuation tokens.

        With a ``delimiter`` the common prefixes one level down are returned
        instead of the keys beneath them.
        """
        results: List[str] = []
        token: Optional[str] = None
        while True:
            kwargs: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
            if delimiter:
                kwargs["Delimiter"] = delimiter
            if token:
                kwargs["ContinuationToken"] = token
            page = await self._call(self._client.list_objects_v2, **kwargs)
            if delimiter:
                results.extend(item["Prefix"] for item in page.get("CommonPrefixes", []))
            else:
                results.extend(item["Key"] for item in page.get("Contents", []))
            if not page.get("IsTruncated"):
                return results
            token = page.get("NextContinuationToken")

    async def delete_blob(self, blob_id: BlobId) -> bool:
        with self._lock:
            self._uploads.pop(blob_id, None)
        keys = await self._list_keys(self._key(str(blob_id)) + "/")
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start:start + _DELETE_BATCH]
            await self._call(
                self._client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
        if keys:
            logger.info(f"Deleted {len(keys)} objects for blob {blob_id}")
        return bool(keys)

    async def list_blobs(self, include_incomplete: bool = True) -> List[BlobMetadata]:
        root = self._key() + "/" if self.prefix else ""
        blobs = []
        for blob_prefix in await self._list_keys(root, delimiter="/"):
            try:
                blob = await self.get_blob_metadata(BlobId.parse(blob_prefix[len(root):].rstrip("/")))
            except NotFound:
                # Not a blob directory, or deleted between listing and reading
                continue
            if include_incomplete or blob.complete:
                blobs.append(blob)
        return sorted(blobs, key=lambda b: b.created_at, reverse=True)

    @staticmethod
    def _to_metadata(raw: Dict[str, Any]) -> BlobMetadata:
        return BlobMetadata(
            id=BlobId.parse(raw["id"]),
            name=raw["name"],
            content_type=raw["contentType"],
            chunk_size=int(raw["chunkSize"]),
            created_at=deserialize_datetime(raw["createdAt"]),
            length=raw.get("length"),
            complete=bool(raw.get("complete")),
        )
