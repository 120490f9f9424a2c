"""Durable job token store.

A `JobToken` maps an external OCR job id to the single-use orchestrator
callback token that is waiting on it, plus the context the callback needs.
Tokens are written once when the OCR job is launched, read on every shard
event, and deleted once the completion signal has been attempted. Records
carry an ``expires_at`` timestamp; an expired record reads as absent so a job
whose final shard never arrives is eventually forgotten without any callback
being issued (the orchestrator's own timeout reports that failure).

Two implementations are provided:

* `InMemoryJobTokenStore` for tests and single-process runs.
* `GCSJobTokenStore`, which stores one JSON object per job and relies on
  ``ifGenerationMatch`` preconditions for create-only semantics. A bucket
  lifecycle rule on the prefix reclaims expired objects.
"""
from __future__ import annotations

import base64
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, MutableMapping, Protocol

from google.api_core import exceptions as gexc
from google.cloud import storage

from inkflow.config import AppConfig, get_config
from inkflow.errors import DuplicateTokenError, StateError

LOG = logging.getLogger("token_store")

DEFAULT_TOKEN_TTL_SECONDS = 6 * 60 * 60

_FIELD_ALIASES = {
    "job_id": "jobId",
    "callback_token": "callbackToken",
    "file_type": "fileType",
    "workflow_id": "workflowId",
    "user_id": "userId",
    "source_location": "sourceLocation",
    "expires_at": "expiresAt",
}


@dataclass(slots=True)
class JobToken:
    job_id: str
    callback_token: str
    source_location: str
    expires_at: float
    file_type: str | None = None
    workflow_id: str | None = None
    user_id: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {_FIELD_ALIASES[key]: value for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, payload: MutableMapping[str, Any]) -> "JobToken":
        reverse = {alias: name for name, alias in _FIELD_ALIASES.items()}
        values = {reverse.get(key, key): value for key, value in payload.items()}
        try:
            return cls(
                job_id=str(values["job_id"]),
                callback_token=str(values["callback_token"]),
                source_location=str(values.get("source_location") or ""),
                expires_at=float(values["expires_at"]),
                file_type=values.get("file_type"),
                workflow_id=values.get("workflow_id"),
                user_id=values.get("user_id"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateError(f"Corrupt job token record: {exc}") from exc


def new_job_token(
    job_id: str,
    callback_token: str,
    *,
    source_location: str,
    ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    file_type: str | None = None,
    workflow_id: str | None = None,
    user_id: str | None = None,
    now: float | None = None,
) -> JobToken:
    issued = time.time() if now is None else now
    return JobToken(
        job_id=job_id,
        callback_token=callback_token,
        source_location=source_location,
        expires_at=issued + ttl_seconds,
        file_type=file_type,
        workflow_id=workflow_id,
        user_id=user_id,
    )


class JobTokenStore(Protocol):
    """Persistence interface for job tokens."""

    def put(self, token: JobToken) -> None:
        ...

    def get(self, job_id: str) -> JobToken | None:
        ...

    def delete(self, job_id: str) -> None:
        ...

    def claim_completion(self, job_id: str, claimant: str) -> bool:
        ...


class InMemoryJobTokenStore(JobTokenStore):
    """Thread-safe in-memory store used for tests and local development.

    Expired tokens and claims are swept on every write, so the store only
    holds jobs that are still inside their TTL.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._tokens: Dict[str, JobToken] = {}
        self._claims: Dict[str, tuple[str, float]] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def put(self, token: JobToken) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            existing = self._tokens.get(token.job_id)
            if existing is not None and not existing.is_expired(now):
                raise DuplicateTokenError(token.job_id)
            self._tokens[token.job_id] = replace(token)
            LOG.info(
                "job_token_stored",
                extra={"job_id": token.job_id, "workflow_id": token.workflow_id, "expires_at": token.expires_at},
            )

    def get(self, job_id: str) -> JobToken | None:
        with self._lock:
            token = self._tokens.get(job_id)
            if token is None or token.is_expired(self._clock()):
                return None
            return replace(token)

    def delete(self, job_id: str) -> None:
        with self._lock:
            if self._tokens.pop(job_id, None) is not None:
                LOG.info("job_token_deleted", extra={"job_id": job_id})

    def claim_completion(self, job_id: str, claimant: str) -> bool:
        # The claim outlives the token until its own expiry so a racing event
        # that already read the token still loses.
        with self._lock:
            now = self._clock()
            self._sweep(now)
            current = self._claims.get(job_id)
            if current is not None:
                return current[0] == claimant
            token = self._tokens.get(job_id)
            expires_at = token.expires_at if token else now + DEFAULT_TOKEN_TTL_SECONDS
            self._claims[job_id] = (claimant, expires_at)
            return True

    def size(self) -> int:
        """Number of live records (tokens plus completion claims)."""
        with self._lock:
            return len(self._tokens) + len(self._claims)

    def _sweep(self, now: float) -> None:
        for job_id in [job_id for job_id, token in self._tokens.items() if token.is_expired(now)]:
            del self._tokens[job_id]
        for job_id in [job_id for job_id, (_claimant, expires_at) in self._claims.items() if expires_at <= now]:
            del self._claims[job_id]


def _encode_key(job_id: str) -> str:
    return base64.urlsafe_b64encode(job_id.encode("utf-8")).decode("ascii").rstrip("=")


class GCSJobTokenStore(JobTokenStore):  # pragma: no cover - exercised via integration
    """Cloud Storage backed token store with create-only writes."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "job-tokens",
        *,
        client: Any | None = None,
        kms_key_name: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket)
        self._prefix = prefix.rstrip("/")
        self._kms_key = kms_key_name
        self._clock = clock

    def put(self, token: JobToken) -> None:
        blob = self._token_blob(token.job_id)
        body = json.dumps(token.to_dict(), separators=(",", ":"), sort_keys=True)
        try:
            blob.upload_from_string(body, content_type="application/json", if_generation_match=0)
        except gexc.PreconditionFailed as exc:
            existing, generation = self._read_token(token.job_id)
            if existing is not None and not existing.is_expired(self._clock()):
                raise DuplicateTokenError(token.job_id) from exc
            # Expired leftover not yet reclaimed by lifecycle; replace it atomically.
            try:
                blob.upload_from_string(
                    body,
                    content_type="application/json",
                    if_generation_match=generation or 0,
                )
            except gexc.PreconditionFailed as retry_exc:
                raise DuplicateTokenError(token.job_id) from retry_exc
        LOG.info(
            "job_token_stored",
            extra={"job_id": token.job_id, "workflow_id": token.workflow_id, "expires_at": token.expires_at},
        )

    def get(self, job_id: str) -> JobToken | None:
        token, _generation = self._read_token(job_id)
        if token is None or token.is_expired(self._clock()):
            return None
        return token

    def delete(self, job_id: str) -> None:
        try:
            self._token_blob(job_id).delete()
        except gexc.NotFound:
            return
        LOG.info("job_token_deleted", extra={"job_id": job_id})

    def claim_completion(self, job_id: str, claimant: str) -> bool:
        blob = self._claim_blob(job_id)
        body = json.dumps(
            {"claimant": claimant, "claimedAt": self._clock()},
            separators=(",", ":"),
        )
        try:
            blob.upload_from_string(body, content_type="application/json", if_generation_match=0)
            return True
        except gexc.PreconditionFailed:
            pass
        try:
            current = json.loads(blob.download_as_bytes().decode("utf-8"))
        except gexc.NotFound:
            # Claim vanished between the failed create and the read; retry the create once.
            try:
                blob.upload_from_string(body, content_type="application/json", if_generation_match=0)
                return True
            except gexc.PreconditionFailed:
                return False
        return current.get("claimant") == claimant

    def _read_token(self, job_id: str) -> tuple[JobToken | None, int | None]:
        blob = self._token_blob(job_id)
        try:
            data = blob.download_as_bytes()
        except gexc.NotFound:
            return None, None
        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateError(f"Corrupt job token record for {job_id}") from exc
        return JobToken.from_dict(payload), blob.generation

    def _token_blob(self, job_id: str):
        blob = self._bucket.blob(f"{self._prefix}/tokens/{_encode_key(job_id)}.json")
        if self._kms_key:
            setattr(blob, "kms_key_name", self._kms_key)
        return blob

    def _claim_blob(self, job_id: str):
        blob = self._bucket.blob(f"{self._prefix}/claims/{_encode_key(job_id)}.json")
        if self._kms_key:
            setattr(blob, "kms_key_name", self._kms_key)
        return blob


def create_token_store_from_env(cfg: AppConfig | None = None) -> JobTokenStore:
    """Instantiate the token store selected by TOKEN_STORE_BACKEND."""

    cfg = cfg or get_config()
    backend = (cfg.token_store_backend or "memory").strip().lower()
    if backend == "gcs":
        if not cfg.token_store_bucket:
            raise RuntimeError("TOKEN_STORE_BUCKET required when TOKEN_STORE_BACKEND=gcs")
        LOG.info(
            "token_store_backend",
            extra={"backend": "gcs", "bucket": cfg.token_store_bucket, "prefix": cfg.token_store_prefix},
        )
        return GCSJobTokenStore(
            bucket=cfg.token_store_bucket,
            prefix=cfg.token_store_prefix,
            kms_key_name=cfg.cmek_key_name,
        )
    if backend != "memory":
        raise RuntimeError(f"Unsupported TOKEN_STORE_BACKEND: {backend}")
    LOG.info("token_store_backend", extra={"backend": "memory"})
    return InMemoryJobTokenStore()


__all__ = [
    "DEFAULT_TOKEN_TTL_SECONDS",
    "JobToken",
    "JobTokenStore",
    "InMemoryJobTokenStore",
    "GCSJobTokenStore",
    "new_job_token",
    "create_token_store_from_env",
]
