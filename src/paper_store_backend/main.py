from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .chunk_store import ChunkStore
from .configuration import Settings, build_chunk_store, build_submission_database, configure_logging, load_settings
from .database import SubmissionDatabase
from .errors import SubmissionValidationError
from .middleware import RequestLoggingMiddleware, UploadSizeLimitMiddleware, register_exception_handlers
from .models import PDF_CONTENT_TYPE, BlobSummary, SubmissionRecord, UploadResponse
from .paper_manager import PaperManager, parse_submission_fields
from .upload import UploadCoordinator
from .utils import iter_upload_file

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    chunk_store: Optional[ChunkStore] = None,
    submissions: Optional[SubmissionDatabase] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Storage handles are created here (or injected) and opened/closed by the
    application lifespan; nothing is connected at import time.
    """
    settings = settings or load_settings()
    store = chunk_store or build_chunk_store(settings.storage.url)
    records = submissions or build_submission_database(settings, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging.level)
        await store.open()
        await records.open()
        uploader = UploadCoordinator(
            store,
            chunk_size=settings.upload.chunk_size,
            max_bytes=settings.upload.max_bytes,
            max_duration=settings.upload.max_duration_seconds,
        )
        app.state.manager = PaperManager(store, records, uploader)
        logger.info("Paper store ready")
        try:
            yield
        finally:
            await records.close()
            await store.close()

    app = FastAPI(title="Paper Store API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(UploadSizeLimitMiddleware, max_upload_bytes=settings.upload.max_bytes)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.allowed_origins,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    _add_routes(app)
    return app


def get_paper_manager(request: Request) -> PaperManager:
    return request.app.state.manager


def _add_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/upload-paper", response_model=UploadResponse, status_code=201)
    async def upload_paper(
        pdf: Optional[UploadFile] = File(None),
        title: Optional[str] = Form(None),
        no_authors: Optional[str] = Form(None, alias="noAuthors"),
        authors: Optional[str] = Form(None),
        document_type: Optional[str] = Form(None, alias="documentType"),
        abstract: Optional[str] = Form(None),
        manager: PaperManager = Depends(get_paper_manager),
    ) -> UploadResponse:
        if pdf is None or not pdf.filename:
            raise SubmissionValidationError("No file uploaded")
        manager.uploader.check_content_type(pdf.content_type)
        fields = parse_submission_fields(title, no_authors, authors, document_type, abstract)

        read_size = app.state.settings.upload.read_size
        result = await manager.submit(iter_upload_file(pdf, read_size), pdf.filename, pdf.content_type, fields)
        return UploadResponse(
            message="Submission successful",
            file_id=str(result.blob_id),
            submission_id=result.record_id,
        )

    @app.get("/api/papers/{paper_id}")
    async def get_paper(paper_id: str, manager: PaperManager = Depends(get_paper_manager)) -> StreamingResponse:
        stream = await manager.open_paper(paper_id)
        return StreamingResponse(
            stream,
            media_type=PDF_CONTENT_TYPE,
            headers={
                "Content-Length": str(stream.length),
                "Content-Disposition": f'inline; filename="{stream.blob.name}"',
            },
        )

    @app.get("/api/submissions/{submission_id}", response_model=SubmissionRecord)
    async def get_submission(submission_id: str, manager: PaperManager = Depends(get_paper_manager)) -> SubmissionRecord:
        return await manager.get_submission(submission_id)

    @app.get("/api/blobs", response_model=List[BlobSummary])
    async def list_blobs(
        orphaned: bool = False,
        include_incomplete: bool = True,
        manager: PaperManager = Depends(get_paper_manager),
    ) -> List[BlobSummary]:
        return await manager.list_blobs(orphaned_only=orphaned, include_incomplete=include_incomplete)

    @app.delete("/api/blobs/{blob_id}")
    async def delete_blob(blob_id: str, manager: PaperManager = Depends(get_paper_manager)) -> Dict[str, str]:
        await manager.delete_blob(blob_id)
        return {"status": "deleted"}


app = create_app()


def run() -> None:
    """Console entry point: serve ``app`` with uvicorn on the configured port."""
    settings: Settings = app.state.settings
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)
