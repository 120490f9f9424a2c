"""Utilities for resolving Secret Manager references at runtime.

Values of the form ``sm://<secret>[:<version>]`` or
``sm://projects/<p>/secrets/<s>[/versions/<v>]`` are fetched from Secret
Manager. Resolved values are cached for ``SECRET_CACHE_TTL_SECONDS`` so that
rotated credentials are picked up without a redeploy.
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
from typing import Awaitable, Callable, Optional

from google.cloud import secretmanager

SM_PREFIX = "sm://"
SECRET_CACHE_TTL_SECONDS = 300.0

_SECRET_CACHE: dict[str, tuple[str, float]] = {}
_CACHE_LOCK = threading.Lock()


class SecretResolutionError(RuntimeError):
    """Raised when a Secret Manager reference cannot be resolved."""


def _normalise_secret_path(raw: str, project_id: str | None) -> str:
    raw = raw.strip()
    if not raw:
        raise SecretResolutionError("Empty secret reference")

    if raw.startswith("projects/"):
        base, sep, version = raw.partition(":")
        if sep and "/versions/" not in base:
            version = version.strip() or "latest"
            raw = f"{base}/versions/{version}"
        if "/versions/" not in raw:
            raw = f"{raw.rstrip('/')}/versions/latest"
        return raw

    if not project_id:
        raise SecretResolutionError("project_id is required for shorthand sm:// references")
    secret_id, _, version = raw.partition(":")
    secret_id = secret_id.strip()
    if not secret_id:
        raise SecretResolutionError("Secret identifier missing in sm:// reference")
    return f"projects/{project_id}/secrets/{secret_id}/versions/{version.strip() or 'latest'}"


def _cached(reference: str) -> str | None:
    with _CACHE_LOCK:
        entry = _SECRET_CACHE.get(reference)
        if entry is None:
            return None
        value, fetched_at = entry
        if time.monotonic() - fetched_at > SECRET_CACHE_TTL_SECONDS:
            del _SECRET_CACHE[reference]
            return None
        return value


def resolve_secret(value: str | None, *, project_id: str | None = None) -> str | None:
    """Resolve Secret Manager references of the form sm://..."""
    if value is None:
        return None
    if not isinstance(value, str):
        return value

    trimmed = value.strip()
    if not trimmed.startswith(SM_PREFIX):
        return value

    cached = _cached(trimmed)
    if cached is not None:
        return cached

    secret_path = _normalise_secret_path(trimmed[len(SM_PREFIX) :], project_id)
    try:
        client = secretmanager.SecretManagerServiceClient()
        response = client.access_secret_version(name=secret_path)
    except Exception as exc:
        raise SecretResolutionError(f"Failed to access secret {secret_path}: {exc}") from exc

    payload = getattr(response, "payload", None)
    data: Optional[bytes] = None
    if payload is not None:
        data = getattr(payload, "data", None)
    if data is None:
        raise SecretResolutionError(f"Secret {secret_path} returned no payload data")

    resolved = data.decode("utf-8")
    with _CACHE_LOCK:
        _SECRET_CACHE[trimmed] = (resolved, time.monotonic())
    return resolved


def resolve_secret_env(
    var_name: str,
    *,
    project_id: str | None = None,
    default: str | None = None,
    required: bool = False,
) -> str | None:
    """Resolve a Secret Manager reference from an environment variable."""
    raw = os.getenv(var_name)
    if raw is None:
        if required:
            raise SecretResolutionError(f"Environment variable {var_name} is required")
        return default
    resolved = resolve_secret(raw, project_id=project_id)
    if required and not resolved:
        raise SecretResolutionError(f"Resolved secret for {var_name} is empty")
    return resolved if resolved is not None else default


def secret_fetcher(reference: str, *, project_id: str | None = None) -> Callable[[], Awaitable[str]]:
    """Return an async callable that resolves ``reference`` off the event loop."""
    if not reference.strip().startswith(SM_PREFIX):
        reference = f"{SM_PREFIX}{reference.strip()}"

    async def _fetch() -> str:
        value = await asyncio.to_thread(resolve_secret, reference, project_id=project_id)
        if not value:
            raise SecretResolutionError(f"Secret {reference} resolved to an empty value")
        return value

    return _fetch


def clear_secret_cache() -> None:
    """Clear cached secrets (intended for tests)."""
    with _CACHE_LOCK:
        _SECRET_CACHE.clear()


__all__ = [
    "SM_PREFIX",
    "SecretResolutionError",
    "resolve_secret",
    "resolve_secret_env",
    "secret_fetcher",
    "clear_secret_cache",
]
