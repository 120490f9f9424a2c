from __future__ import annotations

import pytest

from inkflow.services.token_store import new_job_token
from tests.support import RecordingObjectStorage, RecordingTokenStore


@pytest.fixture
def storage() -> RecordingObjectStorage:
    return RecordingObjectStorage("ocr-bucket")


@pytest.fixture
def clock():
    class _Clock:
        def __init__(self) -> None:
            self.now = 1_700_000_000.0

        def __call__(self) -> float:
            return self.now

        def advance(self, seconds: float) -> None:
            self.now += seconds

    return _Clock()


@pytest.fixture
def token_store(clock) -> RecordingTokenStore:
    return RecordingTokenStore(clock=clock)


@pytest.fixture
def register_token(token_store, clock):
    def _register(job_id: str = "job-1", callback_token: str = "https://workflows.test/callback/1", **kwargs):
        token = new_job_token(
            job_id,
            callback_token,
            source_location=kwargs.pop("source_location", "gs://uploads/doc.pdf"),
            now=clock(),
            **kwargs,
        )
        token_store.put(token)
        return token

    return _register
