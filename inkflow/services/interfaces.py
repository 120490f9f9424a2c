"""Shared interfaces used across inkflow services."""

from __future__ import annotations

from typing import Any, Mapping, Protocol


class ObjectStorage(Protocol):
    """Minimal object-store surface needed by ingestion and pipeline stages."""

    async def list_objects(self, prefix: str) -> list[str]: ...

    async def get_object(self, key: str) -> bytes: ...

    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        create_only: bool = False,
    ) -> str: ...


class CallbackClient(Protocol):
    """Delivers the terminal outcome of a waiting orchestrator step."""

    async def signal_success(self, callback_token: str, payload: Mapping[str, Any]) -> None: ...

    async def signal_failure(self, callback_token: str, error: str, cause: str) -> None: ...


class OcrJobStarter(Protocol):
    """Launches the external OCR job that writes numbered shards."""

    async def start_job(self, source_location: str, *, output_prefix: str) -> str: ...


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str) -> bytes: ...


class MetricsClient(Protocol):
    """Interface for emitting metrics to Cloud Monitoring or Prometheus."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...

    def shard_event(self, outcome: str) -> None: ...

    def callback(self, kind: str, result: str) -> None: ...

    def run_finished(self, status: str) -> None: ...


__all__ = [
    "ObjectStorage",
    "CallbackClient",
    "OcrJobStarter",
    "SpeechSynthesizer",
    "MetricsClient",
]
