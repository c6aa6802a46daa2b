"""
Tests for identifiers, blob metadata helpers and filename handling.
"""

from uuid import UUID

import pytest

from paper_store_backend.errors import InvalidBlobId, NotFound
from paper_store_backend.models import BlobId, BlobMetadata
from paper_store_backend.utils import sanitize_filename, stored_filename, utc_now


class TestBlobId:
    def test_wire_form_is_hex(self):
        blob_id = BlobId.new()
        assert len(str(blob_id)) == 32
        assert BlobId.parse(str(blob_id)) == blob_id

    def test_hyphenated_uuid_is_accepted(self):
        value = UUID("12345678-1234-5678-1234-567812345678")
        assert BlobId.parse(str(value)) == BlobId(value)

    @pytest.mark.parametrize("text", ["", "not-an-id", "0123", "g" * 32])
    def test_malformed_identifier(self, text):
        with pytest.raises(InvalidBlobId):
            BlobId.parse(text)

    def test_malformed_identifier_is_not_found(self):
        with pytest.raises(NotFound):
            BlobId.parse("nope")


class TestBlobMetadata:
    def make(self, length):
        return BlobMetadata(BlobId.new(), "p.pdf", "application/pdf", 10, utc_now(), length=length, complete=True)

    @pytest.mark.parametrize("length, count", [(0, 0), (1, 1), (10, 1), (11, 2), (35, 4)])
    def test_chunk_count(self, length, count):
        assert self.make(length).chunk_count == count

    def test_expected_chunk_sizes(self):
        blob = self.make(35)
        assert [blob.expected_chunk_size(index) for index in range(4)] == [10, 10, 10, 5]

    def test_chunk_count_unknown_before_finalize(self):
        blob = BlobMetadata(BlobId.new(), "p.pdf", "application/pdf", 10, utc_now())
        with pytest.raises(ValueError):
            blob.chunk_count


class TestFilenames:
    @pytest.mark.parametrize(
        "original, expected",
        [
            ("paper.pdf", "paper.pdf"),
            ("My Paper (final).pdf", "My-Paper-final.pdf"),
            ("../../etc/passwd", "passwd.pdf"),
            ("C:\\Users\\me\\thesis.PDF", "thesis.pdf"),
            ("", "paper.pdf"),
            ("???.pdf", "paper.pdf"),
        ],
    )
    def test_sanitize_filename(self, original, expected):
        assert sanitize_filename(original) == expected

    def test_stored_filename_has_millisecond_prefix(self):
        prefix, rest = stored_filename("paper.pdf").split("-", 1)
        assert prefix.isdigit() and len(prefix) >= 13
        assert rest == "paper.pdf"

    def test_stored_filename_without_original(self):
        assert stored_filename(None).endswith("-paper.pdf")
