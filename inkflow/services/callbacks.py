"""Orchestrator callback clients.

Cloud Workflows exposes a waiting step as a callback endpoint URL
(``events.create_callback_endpoint``); that URL is the opaque, single-use
callback token stored with the job. `WorkflowsCallbackClient` resumes the
step by POSTing the outcome to it with an authorised session. The workflow
inspects ``status`` in the request body to route to success or failure.

`LocalCallbackBroker` provides the same contract in-process for the local
`PipelineRunner`: each issued token is backed by an asyncio future that the
completion signaler resolves exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from inkflow.errors import CallbackRejectedError, ExternalServiceError, ValidationError

from .interfaces import CallbackClient

LOG = logging.getLogger("callbacks")

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
_REJECTED_STATUSES = {404, 409, 410}
_SERVICE = "Cloud Workflows callback"
LOCAL_TOKEN_SCHEME = "local://"


class _TransientCallbackError(ExternalServiceError):
    """Retryable callback delivery failure (5xx, 429 or connection error)."""


@dataclass(slots=True)
class CallbackOutcome:
    status: str
    payload: Dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    cause: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"


class WorkflowsCallbackClient(CallbackClient):
    """Resumes Cloud Workflows callback endpoints over authorised HTTP."""

    def __init__(
        self,
        *,
        session: Any | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._max_attempts = max_attempts

    async def signal_success(self, callback_token: str, payload: Mapping[str, Any]) -> None:
        body = {"status": "SUCCEEDED", **dict(payload)}
        await self._deliver(callback_token, body)

    async def signal_failure(self, callback_token: str, error: str, cause: str) -> None:
        await self._deliver(callback_token, {"status": "FAILED", "error": error, "cause": cause})

    async def _deliver(self, callback_token: str, body: Dict[str, Any]) -> None:
        url = (callback_token or "").strip()
        if not url.startswith("https://"):
            raise ValidationError("Callback token must be a Cloud Workflows callback URL")
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_random_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception_type(_TransientCallbackError),
            reraise=True,
        ):
            with attempt:
                await asyncio.to_thread(self._post, url, body)
        LOG.info("callback_delivered", extra={"status": body["status"]})

    def _authorised_session(self) -> Any:
        if self._session is None:
            credentials, _project = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
            self._session = AuthorizedSession(credentials)
        return self._session

    def _post(self, url: str, body: Dict[str, Any]) -> None:
        session = self._authorised_session()
        try:
            response = session.post(url, json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            raise _TransientCallbackError(_SERVICE, str(exc)) from exc
        status = response.status_code
        if status < 300:
            return
        detail = f"HTTP {status}: {(response.text or '')[:200]}"
        if status in _REJECTED_STATUSES:
            raise CallbackRejectedError(_SERVICE, detail)
        if status == 429 or status >= 500:
            raise _TransientCallbackError(_SERVICE, detail)
        raise ExternalServiceError(_SERVICE, detail)


class LocalCallbackBroker(CallbackClient):
    """In-process single-use callback tokens backed by asyncio futures."""

    def __init__(self) -> None:
        self._pending: Dict[str, asyncio.Future[CallbackOutcome]] = {}

    def issue(self, label: str = "job") -> str:
        token = f"{LOCAL_TOKEN_SCHEME}{label}/{uuid.uuid4().hex}"
        self._pending[token] = asyncio.get_running_loop().create_future()
        return token

    async def wait(self, token: str, timeout: float | None = None) -> CallbackOutcome:
        future = self._pending.get(token)
        if future is None:
            raise CallbackRejectedError("local callback", f"Unknown callback token {token}")
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        finally:
            if future.done():
                self._pending.pop(token, None)
            else:
                self.cancel(token)

    def cancel(self, token: str) -> None:
        future = self._pending.pop(token, None)
        if future is not None and not future.done():
            future.cancel()

    async def signal_success(self, callback_token: str, payload: Mapping[str, Any]) -> None:
        self._resolve(callback_token, CallbackOutcome(status="SUCCEEDED", payload=dict(payload)))

    async def signal_failure(self, callback_token: str, error: str, cause: str) -> None:
        self._resolve(callback_token, CallbackOutcome(status="FAILED", error=error, cause=cause))

    def _resolve(self, token: str, outcome: CallbackOutcome) -> None:
        future = self._pending.get(token)
        # A token stays pending until its waiter collects the outcome or gives up.
        if future is None or future.done():
            raise CallbackRejectedError("local callback", f"Callback token {token} is unknown or already used")
        future.set_result(outcome)


class RoutingCallbackClient(CallbackClient):
    """Sends ``local://`` tokens to the in-process broker and everything else to Workflows."""

    def __init__(self, broker: LocalCallbackBroker, remote: CallbackClient) -> None:
        self.broker = broker
        self._remote = remote

    def _target(self, callback_token: str) -> CallbackClient:
        return self.broker if (callback_token or "").startswith(LOCAL_TOKEN_SCHEME) else self._remote

    async def signal_success(self, callback_token: str, payload: Mapping[str, Any]) -> None:
        await self._target(callback_token).signal_success(callback_token, payload)

    async def signal_failure(self, callback_token: str, error: str, cause: str) -> None:
        await self._target(callback_token).signal_failure(callback_token, error, cause)


__all__ = [
    "CallbackOutcome",
    "LocalCallbackBroker",
    "RoutingCallbackClient",
    "WorkflowsCallbackClient",
]
