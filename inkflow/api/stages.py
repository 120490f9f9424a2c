"""Stage endpoints called by the Cloud Workflows definition, plus an in-process run."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from inkflow.errors import ValidationError
from inkflow.pipeline.run_status import TERMINAL_STATUSES, RunStatusStore
from inkflow.pipeline.runner import PipelineRunner
from inkflow.pipeline.stages import EXTRACT, FORMAT, SPEECH, TRANSLATE, StageExecutor
from inkflow.pipeline.state import PipelineState, PipelineStatus

router = APIRouter()
_STAGE_LOG = logging.getLogger("stages")


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        raw = await request.json()
    except json.JSONDecodeError as exc:
        raise ValidationError("Expected JSON body") from exc
    if not isinstance(raw, dict):
        raise ValidationError("Expected a JSON object body")
    return raw


def _state_from(raw: Dict[str, Any]) -> PipelineState:
    state = raw.get("state")
    if not isinstance(state, dict):
        raise ValidationError("Missing required parameter: state")
    try:
        return PipelineState.model_validate(state)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid pipeline state: {exc}") from exc


async def _record_stage(request: Request, state: PipelineState, stage: str) -> None:
    if state.workflow_id:
        run_status: RunStatusStore = request.app.state.run_status
        await run_status.stage_started(state, stage)


@router.post("/extract")
async def extract(request: Request):
    raw = await _json_body(request)
    state = _state_from(raw)
    callback_token = raw.get("callbackToken")
    if not isinstance(callback_token, str):
        raise ValidationError("Missing required parameter: callbackToken")
    await _record_stage(request, state, EXTRACT)
    executor: StageExecutor = request.app.state.stage_executor
    job_id = await executor.start_extract(state, callback_token)
    return {"jobId": job_id}


async def _run_stage(request: Request, name: str) -> Dict[str, Any]:
    state = _state_from(await _json_body(request))
    await _record_stage(request, state, name)
    executor: StageExecutor = request.app.state.stage_executor
    updated = await executor.run_stage(name, state)
    return {"state": updated.to_wire()}


@router.post("/format")
async def format_stage(request: Request):
    return await _run_stage(request, FORMAT)


@router.post("/translate")
async def translate_stage(request: Request):
    return await _run_stage(request, TRANSLATE)


@router.post("/speech")
async def speech_stage(request: Request):
    return await _run_stage(request, SPEECH)


pipeline_router = APIRouter()


@pipeline_router.post("/runs")
async def run_pipeline(request: Request):
    """Run the whole pipeline in-process and answer with its terminal outcome."""
    state = _state_from(await _json_body(request))
    runner: PipelineRunner = request.app.state.pipeline_runner
    outcome = await runner.run(state)
    body: Dict[str, Any] = {
        "status": outcome.status.value,
        "stagesRun": outcome.stages_run,
        "state": outcome.state.to_wire(),
    }
    if outcome.status is PipelineStatus.SUCCEEDED:
        body["terminal"] = outcome.terminal
        return body
    body.update({"error": outcome.error, "cause": outcome.cause, "failedStage": outcome.failed_stage})
    _STAGE_LOG.warning("pipeline_run_failed", extra={"error_type": outcome.error, "stage": outcome.failed_stage})
    return JSONResponse(body, status_code=500)


@pipeline_router.get("/runs/{run_id}")
async def run_status(run_id: str, request: Request):
    store: RunStatusStore = request.app.state.run_status
    record = await store.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown workflow run: {run_id}")
    return record.to_wire()


@pipeline_router.post("/runs/{run_id}/status")
async def report_run_status(run_id: str, request: Request):
    """Terminal state reported by the orchestrator (failure handler, timeout or abort)."""
    raw = await _json_body(request)
    try:
        status = PipelineStatus(str(raw.get("status", "")).upper())
    except ValueError as exc:
        raise ValidationError(f"Unknown workflow status: {raw.get('status')!r}") from exc
    if status not in TERMINAL_STATUSES:
        raise ValidationError(f"Not a terminal status: {status.value}")
    state = _state_from(raw) if "state" in raw else None
    store: RunStatusStore = request.app.state.run_status
    record = await store.finish(
        run_id,
        status,
        state=state,
        failed_stage=raw.get("failedStage"),
        error=raw.get("error"),
        cause=raw.get("cause"),
    )
    return record.to_wire()


__all__ = ["pipeline_router", "router"]
