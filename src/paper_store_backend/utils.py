"""
Utility functions for filenames, timestamps and upload streams.

This module provides helper functions for:
- Sanitizing user-provided filenames before they are stored on a blob
- Ensuring directory creation for file-backed stores
- Adapting a FastAPI ``UploadFile`` into an async byte stream
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import UploadFile

# Pattern to match characters that are not safe in a stored filename
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

DEFAULT_READ_SIZE = 64 * 1024


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def sanitize_filename(filename: str, fallback: str = "paper") -> str:
    """
    Generate a storage-safe PDF filename from user input.

    Args:
        filename: The original client filename (may include a path)
        fallback: Stem to use if sanitization leaves nothing

    Returns:
        A filename ending in ``.pdf`` made of safe characters only

    Example:
        >>> sanitize_filename("My Paper (final).pdf")
        "My-Paper-final.pdf"
        >>> sanitize_filename("../../etc/passwd")
        "passwd.pdf"
    """
    path = Path(filename.replace("\\", "/"))
    stem = SANITIZE_PATTERN.sub("-", path.stem.strip()).strip("-_.") or fallback
    return f"{stem}.pdf"


def stored_filename(original: Optional[str]) -> str:
    """Prefix the sanitized name with the upload time in epoch milliseconds."""
    return f"{int(time.time() * 1000)}-{sanitize_filename(original or '')}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


async def iter_upload_file(file: UploadFile, read_size: int = DEFAULT_READ_SIZE) -> AsyncIterator[bytes]:
    """
    Yield an uploaded file in pieces of at most ``read_size`` bytes.

    The file is closed once the stream is exhausted or abandoned.
    """
    try:
        while piece := await file.read(read_size):
            yield piece
    finally:
        await file.close()
