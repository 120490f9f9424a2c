from __future__ import annotations

import asyncio
import threading

import pytest

from inkflow.utils.async_once import AsyncOnce


def test_callers_on_separate_event_loops_share_one_fetch():
    calls: list[int] = []
    started = threading.Event()

    async def _fetch() -> str:
        calls.append(1)
        started.set()
        await asyncio.sleep(0.1)
        return "key"

    once: AsyncOnce[str] = AsyncOnce(_fetch)
    results: list[str] = []
    errors: list[BaseException] = []

    def _worker() -> None:
        try:
            results.append(asyncio.run(once.get()))
        except BaseException as exc:  # noqa: BLE001 - surfaced through the assertion below
            errors.append(exc)

    first = threading.Thread(target=_worker)
    first.start()
    assert started.wait(timeout=2)
    second = threading.Thread(target=_worker)
    second.start()
    first.join(timeout=5)
    second.join(timeout=5)

    assert errors == []
    assert results == ["key", "key"]
    assert len(calls) == 1
    assert once.resolved


@pytest.mark.asyncio
async def test_failed_attempt_is_shared_then_retried():
    calls: list[int] = []

    async def _fetch() -> str:
        calls.append(1)
        await asyncio.sleep(0.01)
        if len(calls) == 1:
            raise RuntimeError("secret manager unavailable")
        return "key"

    once: AsyncOnce[str] = AsyncOnce(_fetch)
    outcomes = await asyncio.gather(once.get(), once.get(), return_exceptions=True)

    assert all(isinstance(outcome, RuntimeError) for outcome in outcomes)
    assert not once.resolved
    assert await once.get() == "key"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_cancelled_owner_hands_over_to_waiter():
    calls: list[int] = []

    async def _fetch() -> str:
        calls.append(1)
        await asyncio.sleep(0.05)
        return f"key-{len(calls)}"

    once: AsyncOnce[str] = AsyncOnce(_fetch)
    owner = asyncio.create_task(once.get())
    await asyncio.sleep(0)
    waiter = asyncio.create_task(once.get())
    await asyncio.sleep(0)
    owner.cancel()

    assert await waiter == "key-2"
    with pytest.raises(asyncio.CancelledError):
        await owner
