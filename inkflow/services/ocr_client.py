"""Client for launching the external OCR job."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

import requests
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from inkflow.errors import ExternalServiceError, ValidationError

from .interfaces import OcrJobStarter

LOG = logging.getLogger("ocr_client")

_SERVICE = "OCR service"


class _TransientOcrError(ExternalServiceError):
    """Retryable OCR launch failure."""


class HttpOcrJobStarter(OcrJobStarter):
    """Starts an OCR job by POSTing to the OCR service's job endpoint.

    The service responds with ``{"jobId": ...}`` and later writes numbered
    shards under ``output_prefix/{jobId}/``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
    ) -> None:
        if not base_url:
            raise ValidationError("OCR_SERVICE_URL is required to start OCR jobs")
        self._url = base_url.rstrip("/") + "/jobs"
        self._token = token
        self._session = session or requests.Session()
        self._timeout = timeout
        self._max_attempts = max_attempts

    async def start_job(self, source_location: str, *, output_prefix: str) -> str:
        body = {"source": source_location, "outputPrefix": output_prefix}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_random_exponential(multiplier=1, max=10),
            retry=retry_if_exception_type(_TransientOcrError),
            reraise=True,
        ):
            with attempt:
                payload = await asyncio.to_thread(self._post, body)
        job_id = str(payload.get("jobId") or payload.get("job_id") or "").strip()
        if not job_id:
            raise ExternalServiceError(_SERVICE, "response did not include a job id")
        LOG.info("ocr_job_started", extra={"job_id": job_id, "source": source_location})
        return job_id

    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            response = self._session.post(self._url, json=body, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise _TransientOcrError(_SERVICE, str(exc)) from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientOcrError(_SERVICE, f"HTTP {response.status_code}")
        if response.status_code >= 300:
            raise ExternalServiceError(_SERVICE, f"HTTP {response.status_code}: {(response.text or '')[:200]}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalServiceError(_SERVICE, "response was not JSON") from exc
        if not isinstance(data, dict):
            raise ExternalServiceError(_SERVICE, "response was not a JSON object")
        return data


__all__ = ["HttpOcrJobStarter"]
