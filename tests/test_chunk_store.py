"""
Tests for the chunk store backends (memory, SQLite, S3 with a fake client).

The contract tests run once per backend via the ``store`` fixture.
"""

import asyncio

import pytest

from conftest import FakeS3Client
from paper_store_backend.database import SQLiteChunkStore
from paper_store_backend.errors import InvalidBlobState, NotFound
from paper_store_backend.models import BlobId
from paper_store_backend.s3_service import S3ChunkStore

CHUNK = 8


def run(coro):
    return asyncio.run(coro)


async def write_blob(store, payload: bytes, chunk_size: int = CHUNK, finalize: bool = True) -> BlobId:
    blob_id = await store.create_blob("paper.pdf", "application/pdf", chunk_size)
    for index, start in enumerate(range(0, len(payload), chunk_size)):
        await store.write_chunk(blob_id, index, payload[start:start + chunk_size])
    if finalize:
        await store.finalize_blob(blob_id, len(payload))
    return blob_id


class TestBlobLifecycle:
    def test_create_blob_is_incomplete(self, store):
        blob_id = run(store.create_blob("paper.pdf", "application/pdf", CHUNK))
        blob = run(store.get_blob_metadata(blob_id))

        assert blob.id == blob_id
        assert blob.name == "paper.pdf"
        assert blob.content_type == "application/pdf"
        assert blob.chunk_size == CHUNK
        assert blob.complete is False
        assert blob.length is None

    def test_identifiers_are_unique(self, store):
        ids = {run(store.create_blob("a.pdf", "application/pdf", CHUNK)) for _ in range(5)}
        assert len(ids) == 5

    def test_write_finalize_and_read_back(self, store):
        payload = bytes(range(20))
        blob_id = run(write_blob(store, payload))

        blob = run(store.get_blob_metadata(blob_id))
        assert blob.complete is True
        assert blob.length == 20
        assert blob.chunk_count == 3

        chunks = [run(store.read_chunk(blob_id, index)) for index in range(3)]
        assert [len(chunk) for chunk in chunks] == [8, 8, 4]
        assert b"".join(chunks) == payload

    def test_empty_blob_has_no_chunks(self, store):
        blob_id = run(write_blob(store, b""))
        blob = run(store.get_blob_metadata(blob_id))

        assert blob.complete is True
        assert blob.length == 0
        assert blob.chunk_count == 0
        with pytest.raises(NotFound):
            run(store.read_chunk(blob_id, 0))


class TestWriteRules:
    def test_write_after_finalize_is_rejected(self, store):
        blob_id = run(write_blob(store, b"x" * CHUNK))
        with pytest.raises(InvalidBlobState):
            run(store.write_chunk(blob_id, 1, b"more"))

    def test_out_of_order_index_is_rejected(self, store):
        blob_id = run(store.create_blob("paper.pdf", "application/pdf", CHUNK))
        with pytest.raises(InvalidBlobState):
            run(store.write_chunk(blob_id, 1, b"x" * CHUNK))

    def test_rewriting_an_index_is_rejected(self, store):
        blob_id = run(store.create_blob("paper.pdf", "application/pdf", CHUNK))
        run(store.write_chunk(blob_id, 0, b"x" * CHUNK))
        with pytest.raises(InvalidBlobState):
            run(store.write_chunk(blob_id, 0, b"y" * CHUNK))

    def test_oversized_chunk_is_rejected(self, store):
        blob_id = run(store.create_blob("paper.pdf", "application/pdf", CHUNK))
        with pytest.raises(InvalidBlobState):
            run(store.write_chunk(blob_id, 0, b"x" * (CHUNK + 1)))

    def test_short_chunk_must_be_last(self, store):
        blob_id = run(store.create_blob("paper.pdf", "application/pdf", CHUNK))
        run(store.write_chunk(blob_id, 0, b"short"))
        with pytest.raises(InvalidBlobState):
            run(store.write_chunk(blob_id, 1, b"x"))

    def test_write_to_unknown_blob(self, store):
        with pytest.raises((NotFound, InvalidBlobState)):
            run(store.write_chunk(BlobId.new(), 0, b"x"))


class TestFinalizeRules:
    def test_finalize_unknown_blob(self, store):
        with pytest.raises((NotFound, InvalidBlobState)):
            run(store.finalize_blob(BlobId.new(), 0))

    def test_finalize_with_wrong_length(self, store):
        blob_id = run(write_blob(store, b"x" * 12, finalize=False))
        with pytest.raises(InvalidBlobState):
            run(store.finalize_blob(blob_id, 13))
        assert run(store.get_blob_metadata(blob_id)).complete is False

    def test_finalize_twice(self, store):
        blob_id = run(write_blob(store, b"x" * 3))
        with pytest.raises(InvalidBlobState):
            run(store.finalize_blob(blob_id, 3))


class TestReadsAndDeletes:
    def test_metadata_of_unknown_blob(self, store):
        with pytest.raises(NotFound):
            run(store.get_blob_metadata(BlobId.new()))

    def test_read_chunk_out_of_range(self, store):
        blob_id = run(write_blob(store, b"x" * 10))
        with pytest.raises(NotFound):
            run(store.read_chunk(blob_id, 2))

    def test_read_chunk_of_unknown_blob(self, store):
        with pytest.raises(NotFound):
            run(store.read_chunk(BlobId.new(), 0))

    def test_delete_removes_metadata_and_chunks(self, store):
        blob_id = run(write_blob(store, b"x" * 20))

        assert run(store.delete_blob(blob_id)) is True
        with pytest.raises(NotFound):
            run(store.get_blob_metadata(blob_id))
        with pytest.raises(NotFound):
            run(store.read_chunk(blob_id, 0))

    def test_delete_is_idempotent(self, store):
        blob_id = run(write_blob(store, b"x"))
        run(store.delete_blob(blob_id))

        assert run(store.delete_blob(blob_id)) is False
        assert run(store.delete_blob(BlobId.new())) is False

    def test_delete_incomplete_blob(self, store):
        blob_id = run(write_blob(store, b"x" * 9, finalize=False))
        assert run(store.delete_blob(blob_id)) is True

    def test_list_blobs(self, store):
        complete = run(write_blob(store, b"done"))
        pending = run(write_blob(store, b"pending", finalize=False))

        everything = {blob.id for blob in run(store.list_blobs())}
        finished = {blob.id for blob in run(store.list_blobs(include_incomplete=False))}

        assert everything == {complete, pending}
        assert finished == {complete}


def test_sqlite_store_survives_reopen(tmp_path):
    """Chunks written through one store instance are readable by the next."""
    path = tmp_path / "blobs.db"
    first = SQLiteChunkStore(path)
    run(first.open())
    blob_id = run(write_blob(first, b"persist me please"))
    run(first.close())

    second = SQLiteChunkStore(path)
    run(second.open())
    blob = run(second.get_blob_metadata(blob_id))
    data = b"".join(run(second.read_chunk(blob_id, index)) for index in range(blob.chunk_count))

    assert blob.complete is True
    assert data == b"persist me please"


def test_s3_list_blobs_walks_blob_prefixes_only():
    """Listing reads one prefix per blob rather than every chunk key."""
    client = FakeS3Client(page_size=2)
    store = S3ChunkStore(bucket="papers", prefix="uploads", client=client)
    run(store.open())
    first = run(write_blob(store, b"x" * (10 * CHUNK)))
    second = run(write_blob(store, b"y" * (7 * CHUNK), finalize=False))
    client.put_object(Bucket="papers", Key="uploads/README.txt", Body=b"not a blob")
    client.put_object(Bucket="papers", Key="uploads/scratch/notes.txt", Body=b"not a blob")

    client.list_calls.clear()
    blobs = run(store.list_blobs())

    assert {blob.id for blob in blobs} == {first, second}
    assert client.list_calls
    assert all(call == {"Prefix": "uploads/", "Delimiter": "/"} for call in client.list_calls)
