from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import InvalidBlobId

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class BlobId:
    """
    Opaque, engine-agnostic blob identifier.

    Wraps a UUID so that no storage backend leaks its native key type into
    the coordinators. The wire form is the 32 character lowercase hex string.
    """

    value: UUID

    @classmethod
    def new(cls) -> "BlobId":
        return cls(uuid4())

    @classmethod
    def parse(cls, text: str) -> "BlobId":
        """
        Parse the wire form of an identifier.

        Raises:
            InvalidBlobId: If the text is not a valid identifier
        """
        try:
            return cls(UUID(hex=text))
        except (TypeError, ValueError, AttributeError) as exc:
            raise InvalidBlobId(f"Malformed blob identifier: {text!r}") from exc

    def __str__(self) -> str:
        return self.value.hex


@dataclass
class BlobMetadata:
    """
    Blob-level metadata owned by a chunk store.

    Attributes:
        id: Blob identifier
        name: Display name (stored filename)
        content_type: Declared media type
        chunk_size: Fixed maximum chunk payload size for this blob
        created_at: Creation timestamp (UTC)
        length: Total byte length, known only once the blob is finalized
        complete: True once every chunk is written and the blob is finalized
    """

    id: BlobId
    name: str
    content_type: str
    chunk_size: int
    created_at: datetime
    length: Optional[int] = None
    complete: bool = False

    @property
    def chunk_count(self) -> int:
        if self.length is None:
            raise ValueError("Blob length is unknown until the blob is finalized")
        return math.ceil(self.length / self.chunk_size)

    def expected_chunk_size(self, index: int) -> int:
        """Payload size of chunk ``index``; only the final chunk may be short."""
        if index < self.chunk_count - 1:
            return self.chunk_size
        return self.length - index * self.chunk_size  # type: ignore[operator]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Author(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)


class SubmissionFields(CamelModel):
    title: str
    no_authors: int = Field(ge=0)
    authors: List[Author]
    document_type: str
    abstract: str


class SubmissionRecord(SubmissionFields):
    id: str
    pdf_file_id: str
    submitted_at: datetime


class UploadResponse(CamelModel):
    message: str
    file_id: str
    submission_id: str


class BlobSummary(CamelModel):
    id: str
    name: str
    content_type: str
    length: Optional[int] = None
    chunk_size: int
    complete: bool
    created_at: datetime
    referenced: bool = False

    @classmethod
    def from_metadata(cls, blob: BlobMetadata, referenced: bool = False) -> "BlobSummary":
        return cls(
            id=str(blob.id),
            name=blob.name,
            content_type=blob.content_type,
            length=blob.length,
            chunk_size=blob.chunk_size,
            complete=blob.complete,
            created_at=blob.created_at,
            referenced=referenced,
        )
