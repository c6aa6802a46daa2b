"""
Paper submission orchestration.

This module ties the storage pieces together for the HTTP layer:
- Parsing and validating the submission form fields
- Ingesting the PDF through the upload coordinator
- Recording the submission only after the blob is finalized
- Streaming stored PDFs back by identifier
- Listing and deleting blobs for out-of-band cleanup of orphans

The PaperManager holds explicitly injected collaborators; it owns no global
state and can be created per test.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .chunk_store import ChunkStore
from .database import SubmissionDatabase
from .download import BlobStream, DownloadCoordinator
from .errors import InvalidBlobState, NotFound, PaperStoreError, StorageUnavailable, SubmissionValidationError
from .models import BlobId, BlobSummary, SubmissionFields, SubmissionRecord
from .upload import UploadCoordinator
from .utils import stored_filename

logger = logging.getLogger(__name__)


def parse_submission_fields(
    title: Optional[str],
    no_authors: Optional[str],
    authors: Optional[str],
    document_type: Optional[str],
    abstract: Optional[str],
) -> SubmissionFields:
    """
    Validate the raw multipart form fields of a submission.

    ``no_authors`` arrives as a string and ``authors`` as a JSON-encoded
    array of author objects.

    Raises:
        SubmissionValidationError: If a field is missing or malformed
    """
    missing = [
        name
        for name, value in (("title", title), ("noAuthors", no_authors), ("authors", authors), ("documentType", document_type), ("abstract", abstract))
        if value is None
    ]
    if missing:
        raise SubmissionValidationError(f"Missing form field(s): {', '.join(missing)}")

    try:
        author_count = int(no_authors.strip())  # type: ignore[union-attr]
    except ValueError as exc:
        raise SubmissionValidationError(f"noAuthors must be an integer, got {no_authors!r}") from exc

    try:
        parsed_authors: Any = json.loads(authors)  # type: ignore[arg-type]
    except json.JSONDecodeError as exc:
        raise SubmissionValidationError(f"authors is not valid JSON: {exc}") from exc
    if not isinstance(parsed_authors, list):
        raise SubmissionValidationError("authors must be a JSON array")

    try:
        fields = SubmissionFields(
            title=title,
            no_authors=author_count,
            authors=parsed_authors,
            document_type=document_type,
            abstract=abstract,
        )
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise SubmissionValidationError(f"Invalid submission: {problems}") from exc

    if fields.no_authors != len(fields.authors):
        logger.warning(f"noAuthors={fields.no_authors} but {len(fields.authors)} authors were listed")
    return fields


@dataclass(frozen=True)
class SubmissionResult:
    record_id: str
    blob_id: BlobId


class PaperManager:
    """
    Central coordinator for paper submissions and PDF retrieval.

    Attributes:
        store: Chunk store holding PDF blobs
        records: Submission record writer
        uploader: Upload coordinator over ``store``
        downloader: Download coordinator over ``store``
    """

    def __init__(self, store: ChunkStore, records: SubmissionDatabase, uploader: UploadCoordinator) -> None:
        self.store = store
        self.records = records
        self.uploader = uploader
        self.downloader = DownloadCoordinator(store)

    async def submit(
        self,
        stream: AsyncIterable[bytes],
        filename: Optional[str],
        content_type: Optional[str],
        fields: SubmissionFields,
    ) -> SubmissionResult:
        """
        Store the PDF, then record the submission that references it.

        If the record write fails after the blob was finalized, the blob is
        left in place as an orphan (visible through ``list_blobs``) and the
        error is re-raised as ``StorageUnavailable``.
        """
        blob_id = await self.uploader.ingest(stream, stored_filename(filename), content_type)

        try:
            record_id = await self.records.record(
                blob_id,
                title=fields.title,
                no_authors=fields.no_authors,
                authors=fields.authors,
                document_type=fields.document_type,
                abstract=fields.abstract,
            )
        except PaperStoreError as exc:
            logger.error(f"Submission record failed; blob {blob_id} is orphaned: {exc.message}")
            raise StorageUnavailable(f"Recording the submission failed: {exc.message}") from exc

        logger.info(f"Recorded submission {record_id} for blob {blob_id}")
        return SubmissionResult(record_id=record_id, blob_id=blob_id)

    async def open_paper(self, blob_id: str) -> BlobStream:
        """
        Resolve a wire identifier to a stream over the stored PDF.

        Raises:
            NotFound: If the identifier is malformed or the blob is absent or unfinished
        """
        return await self.downloader.stream(BlobId.parse(blob_id))

    async def get_submission(self, record_id: str) -> SubmissionRecord:
        record = await self.records.get(record_id)
        if record is None:
            raise NotFound(f"Submission {record_id} not found")
        return record

    async def list_blobs(self, orphaned_only: bool = False, include_incomplete: bool = True) -> List[BlobSummary]:
        """
        Summarize stored blobs, flagging which ones a submission references.

        With ``orphaned_only`` only unreferenced blobs are returned.
        """
        referenced = await self.records.referenced_blob_ids()
        summaries = [
            BlobSummary.from_metadata(blob, referenced=str(blob.id) in referenced)
            for blob in await self.store.list_blobs(include_incomplete=include_incomplete)
        ]
        if orphaned_only:
            summaries = [summary for summary in summaries if not summary.referenced]
        return summaries

    async def delete_blob(self, blob_id: str) -> None:
        """
        Delete an unreferenced blob and its chunks.

        Raises:
            NotFound: If no such blob exists
            InvalidBlobState: If a submission still references the blob
        """
        parsed = BlobId.parse(blob_id)
        if str(parsed) in await self.records.referenced_blob_ids():
            raise InvalidBlobState(f"Blob {parsed} is referenced by a submission")
        if not await self.store.delete_blob(parsed):
            raise NotFound(f"Blob {parsed} not found")
        logger.info(f"Deleted blob {parsed}")
