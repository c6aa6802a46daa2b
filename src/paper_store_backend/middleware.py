import logging
import time
from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import (
    InvalidBlobState,
    NotFound,
    PaperStoreError,
    PayloadTooLarge,
    StorageUnavailable,
    SubmissionValidationError,
    UnsupportedMediaType,
    UploadFailed,
)

logger = logging.getLogger(__name__)

# Allowance for multipart framing and the text fields around the PDF part
FORM_OVERHEAD_BYTES = 1024 * 1024

STATUS_CODES: Dict[Type[PaperStoreError], int] = {
    UnsupportedMediaType: 415,
    SubmissionValidationError: 400,
    PayloadTooLarge: 413,
    NotFound: 404,
    InvalidBlobState: 409,
    StorageUnavailable: 500,
    UploadFailed: 500,
}


def status_for(exc: PaperStoreError) -> int:
    """HTTP status for an error, using the most specific registered class."""
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


async def paper_store_error_handler(request: Request, exc: PaperStoreError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"message": exc.message})


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request parameters as 400 with the service error body."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse(status_code=400, content={"message": f"Invalid request: {problems}"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaperStoreError, paper_store_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log one line per request with its status and duration.

    For streamed downloads the duration covers the time until the response
    headers were produced, not the whole body transfer.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
        return response


class UploadSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Reject request bodies whose declared ``Content-Length`` is over the limit.

    The check runs before the multipart body is read, so an oversized upload
    is refused without being spooled. Bodies sent without a length are still
    bounded while they are ingested.
    """

    def __init__(self, app, max_upload_bytes: int, form_overhead_bytes: int = FORM_OVERHEAD_BYTES):
        super().__init__(app)
        self.max_upload_bytes = max_upload_bytes
        self.max_body_bytes = max_upload_bytes + form_overhead_bytes

    async def dispatch(self, request: Request, call_next):
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_body_bytes:
            logger.warning(f"{request.method} {request.url.path} rejected: {declared} byte body")
            exc = PayloadTooLarge(self.max_upload_bytes)
            return JSONResponse(status_code=STATUS_CODES[PayloadTooLarge], content={"message": exc.message})
        return await call_next(request)
