"""
Paper Store Backend - REST API for PDF paper submissions

This package provides a FastAPI-based web service that accepts PDF paper
submissions and serves the stored PDFs back. It enables:

- Multipart PDF uploads with submission metadata (title, authors, abstract)
- Chunked blob storage: every PDF is split into fixed-size chunks
- Streaming downloads that reassemble a blob chunk by chunk
- Observation and cleanup of orphaned blobs

The binary content and the submission record are written separately: the
record is only created once the blob is finalized, and a blob whose record
write fails remains as an orphan for out-of-band cleanup.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - paper_manager: Submission orchestration and form validation
    - upload / download: Streaming coordinators over a chunk store
    - chunk_store: Chunk store contract and in-memory backend
    - database: SQLite chunk store and submission records
    - s3_service: S3 chunk store
    - configuration: Config loading (OmegaConf defaults + environment)

Usage:
    Run the API server with:
        uvicorn paper_store_backend.main:app --host 0.0.0.0 --port 5000

    Or use the console script:
        paper-store-backend
"""
