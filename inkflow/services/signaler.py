"""Completion signaler: resumes the waiting orchestrator step exactly once."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from inkflow.errors import StateError

from .interfaces import CallbackClient, MetricsClient
from .metrics import CALLBACK_DELIVERED, CALLBACK_UNDELIVERABLE, NullMetrics
from .token_store import JobToken, JobTokenStore

LOG = logging.getLogger("signaler")

OCR_JOB_FAILED = "OcrJobFailed"


@dataclass(slots=True)
class SignalResult:
    job_id: str
    success_sent: bool = False
    failure_sent: bool = False
    token_deleted: bool = False

    @property
    def delivered(self) -> bool:
        return self.success_sent or self.failure_sent


class CompletionSignaler:
    """Delivers a terminal outcome through the job's callback token, then clears it.

    A failed success callback is followed by a single failure callback that
    carries the original error. Whatever happens to the callbacks, the token is
    deleted afterwards so later shard events for the job become no-ops.
    """

    def __init__(
        self,
        callbacks: CallbackClient,
        token_store: JobTokenStore,
        *,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._callbacks = callbacks
        self._tokens = token_store
        self._metrics = metrics or NullMetrics()

    async def signal_success(self, token: JobToken, payload: Mapping[str, Any]) -> SignalResult:
        result = SignalResult(job_id=token.job_id)
        try:
            await self._callbacks.signal_success(token.callback_token, payload)
            result.success_sent = True
            self._metrics.callback("success", CALLBACK_DELIVERED)
            LOG.info("completion_signaled", extra={"job_id": token.job_id, "outcome": "success"})
        except Exception as exc:  # noqa: BLE001 - any failure falls back to a failure callback
            self._metrics.callback("success", CALLBACK_UNDELIVERABLE)
            LOG.error(
                "completion_success_signal_failed",
                extra={"job_id": token.job_id, "error": str(exc), "error_type": type(exc).__name__},
            )
            await self._send_failure(token, OCR_JOB_FAILED, str(exc), result)
        await self._clear(token, result)
        return result

    async def signal_failure(self, token: JobToken, error: str, cause: str) -> SignalResult:
        result = SignalResult(job_id=token.job_id)
        await self._send_failure(token, error, cause, result)
        await self._clear(token, result)
        return result

    async def _send_failure(self, token: JobToken, error: str, cause: str, result: SignalResult) -> None:
        try:
            await self._callbacks.signal_failure(token.callback_token, error, cause)
            result.failure_sent = True
            self._metrics.callback("failure", CALLBACK_DELIVERED)
            LOG.info(
                "completion_signaled",
                extra={"job_id": token.job_id, "outcome": "failure", "error": error},
            )
        except Exception as exc:  # noqa: BLE001 - logged, token cleanup still runs
            self._metrics.callback("failure", CALLBACK_UNDELIVERABLE)
            LOG.error(
                "completion_failure_signal_failed",
                extra={"job_id": token.job_id, "error": str(exc), "error_type": type(exc).__name__},
            )

    async def _clear(self, token: JobToken, result: SignalResult) -> None:
        try:
            await asyncio.to_thread(self._tokens.delete, token.job_id)
            result.token_deleted = True
        except Exception as exc:  # noqa: BLE001 - signal already sent; never re-signal
            state_error = StateError(f"Failed to delete job token for {token.job_id}: {exc}")
            LOG.error(
                "job_token_delete_failed",
                extra={
                    "job_id": token.job_id,
                    "error": str(state_error),
                    "error_type": state_error.error_type,
                },
            )


__all__ = ["CompletionSignaler", "SignalResult", "OCR_JOB_FAILED"]
