"""Object storage adapters (Cloud Storage and in-memory).

Both adapters expose the async `ObjectStorage` protocol. The Cloud Storage
variant runs the blocking client calls in a worker thread, matching how the
rest of the service keeps the event loop free while GCS I/O is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict

from google.api_core import exceptions as gexc
from google.cloud import storage

from inkflow.config import AppConfig, get_config
from inkflow.errors import ExternalServiceError, StateError

from .interfaces import ObjectStorage

LOG = logging.getLogger("object_storage")


class ObjectNotFoundError(LookupError):
    """Raised when a requested object key does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class ObjectExistsError(StateError):
    """Raised when a create-only write targets a key that already exists."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object already exists: {key}")
        self.key = key


class GCSObjectStorage(ObjectStorage):
    """Cloud Storage bucket adapter."""

    def __init__(
        self,
        bucket: str,
        *,
        client: Any | None = None,
        kms_key_name: str | None = None,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket_name = bucket
        self._bucket = self._client.bucket(bucket)
        self._kms_key = kms_key_name

    @property
    def bucket_name(self) -> str:
        return self._bucket_name

    def _blob(self, key: str):
        blob = self._bucket.blob(key)
        if self._kms_key:
            setattr(blob, "kms_key_name", self._kms_key)
        return blob

    async def list_objects(self, prefix: str) -> list[str]:
        def _list() -> list[str]:
            return [blob.name for blob in self._client.list_blobs(self._bucket, prefix=prefix)]

        try:
            return await asyncio.to_thread(_list)
        except gexc.GoogleAPICallError as exc:
            raise ExternalServiceError("Cloud Storage", str(exc)) from exc

    async def get_object(self, key: str) -> bytes:
        def _download() -> bytes:
            return self._blob(key).download_as_bytes()

        try:
            return await asyncio.to_thread(_download)
        except gexc.NotFound as exc:
            raise ObjectNotFoundError(key) from exc
        except gexc.GoogleAPICallError as exc:
            raise ExternalServiceError("Cloud Storage", str(exc)) from exc

    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        create_only: bool = False,
    ) -> str:
        def _upload() -> None:
            kwargs: Dict[str, Any] = {"content_type": content_type}
            if create_only:
                kwargs["if_generation_match"] = 0
            self._blob(key).upload_from_string(data, **kwargs)

        try:
            await asyncio.to_thread(_upload)
        except gexc.PreconditionFailed as exc:
            raise ObjectExistsError(key) from exc
        except gexc.GoogleAPICallError as exc:
            raise ExternalServiceError("Cloud Storage", str(exc)) from exc
        LOG.debug("object_written", extra={"key": key, "bytes": len(data)})
        return key


class InMemoryObjectStorage(ObjectStorage):
    """Thread-safe in-memory store used for tests and local development."""

    def __init__(self, bucket: str = "local") -> None:
        self.bucket_name = bucket
        self._objects: Dict[str, tuple[bytes, str]] = {}
        self._lock = threading.RLock()

    def seed(self, key: str, data: bytes | str, content_type: str = "application/json") -> None:
        raw = data.encode("utf-8") if isinstance(data, str) else data
        with self._lock:
            self._objects[key] = (raw, content_type)

    async def list_objects(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(key for key in self._objects if key.startswith(prefix))

    async def get_object(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[key][0]
            except KeyError:
                raise ObjectNotFoundError(key) from None

    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        create_only: bool = False,
    ) -> str:
        with self._lock:
            if create_only and key in self._objects:
                raise ObjectExistsError(key)
            self._objects[key] = (bytes(data), content_type)
            return key

    def content_type(self, key: str) -> str:
        with self._lock:
            return self._objects[key][1]

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)


def create_object_storage_from_env(cfg: AppConfig | None = None) -> ObjectStorage:
    """Instantiate the object store selected by STORAGE_BACKEND (gcs|memory)."""

    cfg = cfg or get_config()
    backend = (cfg.storage_backend or "gcs").strip().lower()
    if backend == "memory":
        LOG.info("object_storage_backend", extra={"backend": "memory"})
        return InMemoryObjectStorage(cfg.storage_bucket or "local")
    if backend != "gcs":
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")
    if not cfg.storage_bucket:
        raise RuntimeError("STORAGE_BUCKET required when STORAGE_BACKEND=gcs")
    LOG.info("object_storage_backend", extra={"backend": "gcs", "bucket": cfg.storage_bucket})
    return GCSObjectStorage(cfg.storage_bucket, kms_key_name=cfg.cmek_key_name)


__all__ = [
    "create_object_storage_from_env",
    "GCSObjectStorage",
    "InMemoryObjectStorage",
    "ObjectExistsError",
    "ObjectNotFoundError",
]
