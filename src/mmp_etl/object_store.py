"""Object stores for uploaded monitoring plan source files.

GcsObjectStore is the production backend; LocalObjectStore writes under a
directory (tests, offline runs) and NullObjectStore keeps nothing (dry runs).
Backends raise whatever their client raises; the persistence coordinator
wraps failures in StorageError with the stage they happened in.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

log = logging.getLogger(__name__)

DEFAULT_BUCKET_PREFIX = "mmp-files"

CONTENT_TYPES = {
    "csv": "text/csv",
    "tsv": "text/tab-separated-values",
    "txt": "text/plain",
}


def build_object_path(prefix: str | None, filename: str) -> str:
    """`{prefix}/{epoch_ms}_{random}.{ext}`; the extension comes from *filename*."""
    ext = Path(filename).suffix.lstrip(".").lower() or "csv"
    name = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}.{ext}"
    prefix = (prefix or "").strip("/")
    return f"{prefix}/{name}" if prefix else name


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lstrip(".").lower(), "application/octet-stream")


class ObjectStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store *data* at *path* and return a URL for it."""
        ...

    def remove(self, path: str) -> None:
        """Delete *path*.  Removing a missing object is not an error."""
        ...


@dataclass
class GcsObjectStore:
    """Google Cloud Storage backend.  Bucket is set at construction."""

    bucket_name: str
    timeout: float = 60.0

    def _bucket(self):
        from google.cloud import storage  # type: ignore[import-untyped]

        return storage.Client().bucket(self.bucket_name)

    def put(self, path: str, data: bytes, content_type: str) -> str:
        blob = self._bucket().blob(path)
        blob.upload_from_string(data, content_type=content_type, timeout=self.timeout)
        return f"gs://{self.bucket_name}/{path}"

    def remove(self, path: str) -> None:
        from google.api_core.exceptions import NotFound  # type: ignore[import-untyped]

        try:
            self._bucket().blob(path).delete(timeout=self.timeout)
        except NotFound:
            log.info("gs://%s/%s already gone", self.bucket_name, path)


@dataclass
class LocalObjectStore:
    """Write objects under a local directory (used in tests / runs without GCS)."""

    base_dir: Path

    def put(self, path: str, data: bytes, content_type: str) -> str:
        dest = self.base_dir / path
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return dest.resolve().as_uri()

    def remove(self, path: str) -> None:
        (self.base_dir / path).unlink(missing_ok=True)

    def exists(self, path: str) -> bool:
        return (self.base_dir / path).is_file()


@dataclass
class NullObjectStore:
    """No-op store for dry runs."""

    def put(self, path: str, data: bytes, content_type: str) -> str:
        return f"null://{path}"

    def remove(self, path: str) -> None:
        return None
