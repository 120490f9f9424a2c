from __future__ import annotations

import itertools

import pytest

from inkflow.errors import StateError, ValidationError
from inkflow.pipeline.run_status import RunStatusStore
from inkflow.pipeline.state import PipelineState, PipelineStatus


def _store(storage) -> RunStatusStore:
    ticks = itertools.count(1)
    return RunStatusStore(storage, prefix="/status/", clock=lambda: f"2024-01-01T00:00:{next(ticks):02d}+00:00")


def _state(**updates) -> PipelineState:
    return PipelineState(
        source_location="gs://uploads/a.pdf",
        workflow_id="wf-1",
        user_id="u-1",
        do_translate=True,
        target_language="fr",
        **updates,
    )


@pytest.mark.asyncio
async def test_record_tracks_stages_until_terminal(storage):
    store = _store(storage)

    started = await store.start(_state())
    assert started.status is PipelineStatus.RUNNING
    assert storage.keys() == ["status/wf-1.json"]

    await store.stage_started(_state(), "extract")
    progress = await store.stage_started(_state(stages_run=["extract"]), "format")
    assert progress.current_stage == "format"
    assert progress.stages_run == ["extract"]

    done = await store.finish("wf-1", PipelineStatus.FAILED, error="EmptyResponseError", cause="no text")

    assert done.status is PipelineStatus.FAILED
    assert done.failed_stage == "format"
    assert done.current_stage is None
    assert done.created_at == started.created_at
    assert done.updated_at > started.updated_at
    assert (await store.get("wf-1")).to_wire() == done.to_wire()


@pytest.mark.asyncio
async def test_terminal_record_is_not_overwritten(storage):
    store = _store(storage)
    await store.start(_state())
    await store.finish("wf-1", PipelineStatus.TIMED_OUT, failed_stage="extract", error="States.Timeout")

    again = await store.finish("wf-1", PipelineStatus.SUCCEEDED)
    await store.stage_started(_state(), "format")

    record = await store.get("wf-1")
    assert record.status is PipelineStatus.TIMED_OUT
    assert record.failed_stage == "extract"
    assert again == record
    with pytest.raises(StateError):
        await store.start(_state())


@pytest.mark.asyncio
async def test_stage_report_creates_missing_record(storage):
    store = _store(storage)

    record = await store.stage_started(_state(), "extract")

    assert record.status is PipelineStatus.RUNNING
    assert record.current_stage == "extract"
    assert record.target_language == "fr"


@pytest.mark.asyncio
async def test_finish_without_prior_record(storage):
    store = _store(storage)

    record = await store.finish("wf-2", PipelineStatus.FAILED, state=_state(), error="Aborted", cause="stopped")

    assert record.workflow_id == "wf-2"
    assert record.user_id == "u-1"
    assert record.failed_stage is None


@pytest.mark.asyncio
async def test_wire_form_uses_camel_case(storage):
    store = _store(storage)
    record = await store.finish("wf-1", PipelineStatus.FAILED, failed_stage="translate", error="X")

    wire = record.to_wire()
    assert wire["workflowId"] == "wf-1"
    assert wire["status"] == "FAILED"
    assert wire["failedStage"] == "translate"
    assert "currentStage" not in wire


@pytest.mark.asyncio
async def test_unknown_and_invalid_ids(storage):
    store = _store(storage)

    assert await store.get("missing") is None
    with pytest.raises(ValidationError):
        await store.get("a/b")
    with pytest.raises(ValidationError):
        await store.finish("wf-1", PipelineStatus.RUNNING)


@pytest.mark.asyncio
async def test_corrupt_record_raises_state_error(storage):
    storage.seed("status/wf-1.json", "{not json")
    with pytest.raises(StateError):
        await _store(storage).get("wf-1")
