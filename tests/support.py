from __future__ import annotations

import json
from typing import Any, Dict, List

from inkflow.services.interfaces import CallbackClient
from inkflow.services.metrics import NullMetrics
from inkflow.services.object_storage import InMemoryObjectStorage
from inkflow.services.token_store import InMemoryJobTokenStore, JobToken
from inkflow.transform.base import TransformProvider

OCR_PREFIX = "ocr-output"


def shard_body(sequence: int, *, total: int | None = None, lines: List[str] | None = None) -> str:
    blocks = [
        {"BlockType": "LINE", "Text": text, "Id": f"{sequence}-{index}"}
        for index, text in enumerate(lines or [f"line from shard {sequence}"])
    ]
    body: Dict[str, Any] = {"Blocks": blocks}
    if total is not None:
        body["DocumentMetadata"] = {"Pages": total}
    return json.dumps(body)


def seed_shards(storage: InMemoryObjectStorage, job_id: str, total: int, *, only: List[int] | None = None) -> None:
    for sequence in only or range(1, total + 1):
        storage.seed(
            f"{OCR_PREFIX}/{job_id}/{sequence}",
            shard_body(sequence, total=total if sequence == 1 else None),
        )


class RecordingObjectStorage(InMemoryObjectStorage):
    """In-memory storage that records every list/get/put for side-effect assertions."""

    def __init__(self, bucket: str = "local") -> None:
        super().__init__(bucket)
        self.calls: list[tuple[str, str]] = []

    async def list_objects(self, prefix: str) -> list[str]:
        self.calls.append(("list", prefix))
        return await super().list_objects(prefix)

    async def get_object(self, key: str) -> bytes:
        self.calls.append(("get", key))
        return await super().get_object(key)

    async def put_object(self, key: str, data: bytes, **kwargs: Any) -> str:
        self.calls.append(("put", key))
        return await super().put_object(key, data, **kwargs)

    def puts_under(self, prefix: str) -> list[str]:
        return [key for op, key in self.calls if op == "put" and key.startswith(prefix)]


class RecordingTokenStore(InMemoryJobTokenStore):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.operations: list[tuple[str, str]] = []

    def put(self, token: JobToken) -> None:
        self.operations.append(("put", token.job_id))
        super().put(token)

    def get(self, job_id: str) -> JobToken | None:
        self.operations.append(("get", job_id))
        return super().get(job_id)

    def delete(self, job_id: str) -> None:
        self.operations.append(("delete", job_id))
        super().delete(job_id)

    def claim_completion(self, job_id: str, claimant: str) -> bool:
        self.operations.append(("claim", job_id))
        return super().claim_completion(job_id, claimant)


class RecordingMetrics(NullMetrics):
    def __init__(self) -> None:
        self.shard_events: list[str] = []
        self.callbacks: list[tuple[str, str]] = []
        self.runs: list[str] = []

    def shard_event(self, outcome: str) -> None:
        self.shard_events.append(outcome)

    def callback(self, kind: str, result: str) -> None:
        self.callbacks.append((kind, result))

    def run_finished(self, status: str) -> None:
        self.runs.append(status)


class RecordingCallbacks(CallbackClient):
    def __init__(self, *, fail_success: bool = False, fail_failure: bool = False) -> None:
        self.successes: list[tuple[str, dict]] = []
        self.failures: list[tuple[str, str, str]] = []
        self._fail_success = fail_success
        self._fail_failure = fail_failure

    async def signal_success(self, callback_token: str, payload) -> None:
        if self._fail_success:
            raise RuntimeError("callback endpoint unreachable")
        self.successes.append((callback_token, dict(payload)))

    async def signal_failure(self, callback_token: str, error: str, cause: str) -> None:
        if self._fail_failure:
            raise RuntimeError("callback endpoint unreachable")
        self.failures.append((callback_token, error, cause))


class FakeProvider(TransformProvider):
    provider_name = "fake"
    service_label = "Fake provider"

    def __init__(self, *, reply: str | None = "transformed", **kwargs: Any) -> None:
        kwargs.setdefault("api_key", "test-key")
        super().__init__(model="fake-model", **kwargs)
        self.reply = reply
        self.prompts: list[dict] = []

    async def _complete(self, *, credential: str, system_prompt: str, prompt: str, max_tokens: int):
        self.prompts.append(
            {"credential": credential, "system": system_prompt, "prompt": prompt, "max_tokens": max_tokens}
        )
        return self.reply


class FakeOcrStarter:
    def __init__(self, job_id: str = "job-123") -> None:
        self.job_id = job_id
        self.calls: list[tuple[str, str]] = []

    async def start_job(self, source_location: str, *, output_prefix: str) -> str:
        self.calls.append((source_location, output_prefix))
        return self.job_id


class FakeSpeech:
    def __init__(self, audio: bytes = b"ID3-audio") -> None:
        self.audio = audio
        self.texts: list[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        return self.audio

