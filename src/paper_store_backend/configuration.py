from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field

from .chunk_store import ChunkStore, MemoryChunkStore
from .database import SQLiteChunkStore, SubmissionDatabase
from .s3_service import S3ChunkStore

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:3]]

if os.environ.get("PAPER_STORE_CONFIG"):
    _CANDIDATE_CONFIG_PATHS.insert(0, Path(os.environ["PAPER_STORE_CONFIG"]))

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in broken installs
    raise FileNotFoundError("Default config.yaml could not be located; the package data appears to be missing.")

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "STORAGE_URL": "storage.url",
    "SUBMISSIONS_DB_PATH": "storage.submissions_db_path",
    "CHUNK_SIZE": "upload.chunk_size",
    "MAX_UPLOAD_BYTES": "upload.max_bytes",
    "HOST": "server.host",
    "PORT": "server.port",
    "LOG_LEVEL": "logging.level",
}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class StorageSettings(BaseModel):
    url: str
    submissions_db_path: Path


class UploadSettings(BaseModel):
    chunk_size: int = Field(gt=0)
    max_bytes: int = Field(ge=0)
    read_size: int = Field(gt=0)
    max_duration_seconds: Optional[float] = Field(default=None, gt=0)


class ServerSettings(BaseModel):
    host: str
    port: int = Field(gt=0, lt=65536)


class CorsSettings(BaseModel):
    allowed_origins: List[str]
    allow_credentials: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    storage: StorageSettings
    upload: UploadSettings
    server: ServerSettings
    cors: CorsSettings
    logging: LoggingSettings


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _env_config() -> DictConfig:
    """Collect overrides from the process environment (after loading ``.env``)."""
    load_dotenv()
    dotlist = [f"{key}={os.environ[env]}" for env, key in ENV_OVERRIDES.items() if os.environ.get(env)]
    config = OmegaConf.from_dotlist(dotlist)
    origins = os.environ.get("CORS_ORIGINS")
    if origins:
        config.merge_with({"cors": {"allowed_origins": [o.strip() for o in origins.split(",") if o.strip()]}})
    return config


def load_settings(overrides: Optional[Dict[str, Any]] = None, use_env: bool = True) -> Settings:
    """
    Build validated settings: YAML defaults, then environment, then ``overrides``.

    Raises:
        omegaconf.errors.ConfigKeyError: If an override names an unknown key
        pydantic.ValidationError: If a merged value is invalid
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    layers = [base]
    if use_env:
        layers.append(_env_config())
    layers.append(OmegaConf.create(overrides or {}))
    merged = OmegaConf.merge(*layers)
    return Settings.model_validate(OmegaConf.to_container(merged, resolve=True))


def build_chunk_store(url: str) -> ChunkStore:
    """
    Create the chunk store named by a storage connection string.

    Supported forms: ``memory://``, ``sqlite:///relative.db``,
    ``sqlite:////absolute.db`` and ``s3://bucket/prefix``.
    """
    parsed = urlparse(url)
    if parsed.scheme == "memory":
        return MemoryChunkStore()
    if parsed.scheme == "sqlite":
        path = parsed.path[1:] if parsed.path.startswith("/") else parsed.path
        if not path:
            raise ValueError(f"SQLite storage URL needs a file path: {url!r}")
        return SQLiteChunkStore(Path(path))
    if parsed.scheme == "s3":
        if not parsed.netloc:
            raise ValueError(f"S3 storage URL needs a bucket name: {url!r}")
        return S3ChunkStore(bucket=parsed.netloc, prefix=parsed.path)
    raise ValueError(f"Unsupported storage URL scheme: {url!r}")


def build_submission_database(settings: Settings, chunk_store: ChunkStore) -> SubmissionDatabase:
    return SubmissionDatabase(chunk_store, settings.storage.submissions_db_path)


def configure_logging(level: str = "INFO") -> None:
    """Install the service log format on the root logger (idempotent)."""
    root = logging.getLogger()
    if not any(getattr(handler, "_paper_store", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._paper_store = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())
