"""
Pytest configuration and fixtures for Paper Store Backend tests.
"""

import asyncio
import io
import os
import tempfile
from typing import List, Optional, Tuple

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["STORAGE_URL"] = "memory://"
os.environ["SUBMISSIONS_DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="paper_store_test_"), "submissions.db")

from paper_store_backend.chunk_store import ChunkStore, MemoryChunkStore
from paper_store_backend.configuration import load_settings
from paper_store_backend.database import SQLiteChunkStore
from paper_store_backend.errors import StorageUnavailable
from paper_store_backend.main import create_app
from paper_store_backend.s3_service import S3ChunkStore

TEST_CHUNK_SIZE = 1024


class FakeS3Client:
    """In-process stand-in for the subset of the boto3 S3 client the store uses."""

    def __init__(self, page_size: int = 3):
        self.objects = {}
        self.page_size = page_size
        self.closed = False
        self.list_calls = []

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.objects[(Bucket, Key)] = bytes(Body)
        return {}

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def list_objects_v2(self, Bucket, Prefix="", ContinuationToken=None, Delimiter=None):
        self.list_calls.append({"Prefix": Prefix, "Delimiter": Delimiter})
        entries = set()
        for bucket, key in self.objects:
            if bucket != Bucket or not key.startswith(Prefix):
                continue
            rest = key[len(Prefix):]
            if Delimiter and Delimiter in rest:
                entries.add(("prefix", Prefix + rest.split(Delimiter, 1)[0] + Delimiter))
            else:
                entries.add(("key", key))
        entries = sorted(entries, key=lambda entry: entry[1])
        start = int(ContinuationToken or 0)
        end = start + self.page_size
        page = {
            "Contents": [{"Key": name} for kind, name in entries[start:end] if kind == "key"],
            "CommonPrefixes": [{"Prefix": name} for kind, name in entries[start:end] if kind == "prefix"],
            "IsTruncated": end < len(entries),
        }
        if end < len(entries):
            page["NextContinuationToken"] = str(end)
        return page

    def delete_objects(self, Bucket, Delete):
        for item in Delete["Objects"]:
            self.objects.pop((Bucket, item["Key"]), None)
        return {}

    def close(self):
        self.closed = True


class RecordingStore(ChunkStore):
    """
    Delegating chunk store that records calls and can inject write failures.
    """

    def __init__(self, inner: ChunkStore, fail_on_write: Optional[int] = None):
        self.inner = inner
        self.fail_on_write = fail_on_write
        self.writes: List[Tuple[str, int]] = []
        self.reads: List[Tuple[str, int]] = []
        self.finalized: List[str] = []
        self.created: List[str] = []
        self.aborted: List[str] = []

    async def create_blob(self, name, content_type, chunk_size=TEST_CHUNK_SIZE):
        blob_id = await self.inner.create_blob(name, content_type, chunk_size)
        self.created.append(str(blob_id))
        return blob_id

    async def write_chunk(self, blob_id, index, data):
        if self.fail_on_write is not None and index == self.fail_on_write:
            raise StorageUnavailable("disk on fire")
        await self.inner.write_chunk(blob_id, index, data)
        self.writes.append((str(blob_id), index))

    async def finalize_blob(self, blob_id, total_length):
        blob = await self.inner.finalize_blob(blob_id, total_length)
        self.finalized.append(str(blob_id))
        return blob

    async def abort_blob(self, blob_id):
        self.aborted.append(str(blob_id))
        await self.inner.abort_blob(blob_id)

    async def read_chunk(self, blob_id, index):
        self.reads.append((str(blob_id), index))
        return await self.inner.read_chunk(blob_id, index)

    async def get_blob_metadata(self, blob_id):
        return await self.inner.get_blob_metadata(blob_id)

    async def delete_blob(self, blob_id):
        return await self.inner.delete_blob(blob_id)

    async def list_blobs(self, include_incomplete=True):
        return await self.inner.list_blobs(include_incomplete)


async def iter_bytes(data: bytes, piece_size: int = 100, pause: bool = False):
    """Async byte stream over ``data`` in ``piece_size`` pieces."""
    for start in range(0, len(data), piece_size):
        if pause:
            await asyncio.sleep(0)
        yield data[start:start + piece_size]


def make_store(kind: str, tmp_path) -> ChunkStore:
    if kind == "memory":
        return MemoryChunkStore()
    if kind == "sqlite":
        return SQLiteChunkStore(tmp_path / "blobs.db")
    if kind == "s3":
        return S3ChunkStore(bucket="papers", prefix="test/uploads", client=FakeS3Client())
    raise ValueError(kind)


@pytest.fixture(params=["memory", "sqlite", "s3"])
def store(request, tmp_path):
    """Opened chunk store, once per backend."""
    chunk_store = make_store(request.param, tmp_path)
    asyncio.run(chunk_store.open())
    yield chunk_store
    asyncio.run(chunk_store.close())


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        overrides={
            "storage": {"url": "memory://", "submissions_db_path": str(tmp_path / "submissions.db")},
            "upload": {"chunk_size": TEST_CHUNK_SIZE, "max_bytes": 2 * 1024 * 1024, "read_size": 4096},
        },
        use_env=False,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app (runs the lifespan)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def submission_form():
    return {
        "title": "Test",
        "noAuthors": "1",
        "authors": '[{"name": "A"}]',
        "documentType": "Research",
        "abstract": "x",
    }


@pytest.fixture
def sample_pdf():
    """A minimal valid PDF document."""
    return b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
xref
0 4
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
trailer
<< /Size 4 /Root 1 0 R >>
startxref
196
%%EOF"""
