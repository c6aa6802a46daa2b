"""
Error taxonomy for blob storage, streaming transfer and submissions.

Every storage backend translates its engine-specific failures into these
types so the coordinators and the HTTP layer only deal with one hierarchy.
"""

from __future__ import annotations


class PaperStoreError(Exception):
    """Base class for all service errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SubmissionValidationError(PaperStoreError):
    """A submitted form field is missing or malformed."""


class UnsupportedMediaType(SubmissionValidationError):
    """The uploaded file is not declared as a PDF."""


class PayloadTooLarge(PaperStoreError):
    """The upload exceeded the configured size limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Upload exceeds the maximum size of {limit} bytes")
        self.limit = limit


class NotFound(PaperStoreError):
    """The blob, chunk or record does not exist (or is not complete)."""


class InvalidBlobId(NotFound):
    """The identifier text could not be parsed."""


class InvalidBlobState(PaperStoreError):
    """The operation is not allowed in the blob's current state."""


class StorageUnavailable(PaperStoreError):
    """The storage backend failed or could not be reached."""


class UploadFailed(PaperStoreError):
    """Ingestion was aborted; the blob was not finalized."""

    def __init__(self, message: str, blob_id: object | None = None) -> None:
        super().__init__(message)
        self.blob_id = blob_id
