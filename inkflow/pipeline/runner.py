"""In-process pipeline orchestrator.

`PipelineRunner` walks `PIPELINE_STAGES` the same way the generated Cloud
Workflows definition does. The extract stage registers a `LocalCallbackBroker`
token, starts the OCR job and suspends until the completion signaler
resolves that token or the extract timeout expires. When a `RunStatusStore`
is attached, every run keeps a status record from RUNNING to its terminal
status.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from inkflow.errors import WorkflowError
from inkflow.services.callbacks import LocalCallbackBroker
from inkflow.services.interfaces import MetricsClient
from inkflow.services.metrics import NullMetrics
from inkflow.utils.logging_utils import log_stage_skipped, structured_log

from .run_status import RunStatusStore
from .stages import EXTRACT, PIPELINE_STAGES, StageExecutor, StageSpec, terminal_label
from .state import PipelineState, PipelineStatus

LOG = logging.getLogger("pipeline")

TIMEOUT_ERROR = "States.Timeout"
DEFAULT_EXTRACT_TIMEOUT_SECONDS = 20 * 60


@dataclass(slots=True)
class PipelineOutcome:
    status: PipelineStatus
    state: PipelineState
    terminal: str | None = None
    error: str | None = None
    cause: str | None = None
    failed_stage: str | None = None
    stages_run: list[str] = field(default_factory=list)


class PipelineRunner:
    def __init__(
        self,
        executor: StageExecutor,
        broker: LocalCallbackBroker,
        *,
        stages: tuple[StageSpec, ...] = PIPELINE_STAGES,
        extract_timeout: float = DEFAULT_EXTRACT_TIMEOUT_SECONDS,
        run_status: RunStatusStore | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._executor = executor
        self._broker = broker
        self._stages = stages
        self._extract_timeout = extract_timeout
        self._run_status = run_status
        self._metrics = metrics or NullMetrics()

    async def run(self, state: PipelineState) -> PipelineOutcome:
        if not state.workflow_id:
            state = state.model_copy(update={"workflow_id": uuid.uuid4().hex})
        if self._run_status is not None:
            await self._run_status.start(state)

        for spec in self._stages:
            if not spec.applies_to(state):
                log_stage_skipped(LOG, stage=spec.name, reason=f"{spec.condition_alias}=false")
                continue
            try:
                if self._run_status is not None:
                    await self._run_status.stage_started(state, spec.name)
                if spec.waits_for_callback:
                    state = await self._extract(state)
                else:
                    state = await self._executor.run_stage(spec.name, state)
            except asyncio.TimeoutError:
                return await self._failed(
                    state,
                    spec.name,
                    TIMEOUT_ERROR,
                    f"{spec.name} did not complete in time",
                    status=PipelineStatus.TIMED_OUT,
                )
            except WorkflowError as exc:
                return await self._failed(state, spec.name, exc.error_type, str(exc))
            except Exception as exc:  # noqa: BLE001 - any stage failure ends the run in FAILED
                return await self._failed(state, spec.name, type(exc).__name__, str(exc))

        terminal = terminal_label(state.stages_run)
        structured_log(
            LOG,
            logging.INFO,
            "pipeline_complete",
            status=PipelineStatus.SUCCEEDED.value,
            stages_run=list(state.stages_run),
            workflow_id=state.workflow_id,
        )
        self._metrics.run_finished(PipelineStatus.SUCCEEDED.value)
        if self._run_status is not None:
            await self._run_status.finish(state.workflow_id, PipelineStatus.SUCCEEDED, state=state)
        return PipelineOutcome(
            status=PipelineStatus.SUCCEEDED,
            state=state,
            terminal=terminal,
            stages_run=list(state.stages_run),
        )

    async def _extract(self, state: PipelineState) -> PipelineState:
        token = self._broker.issue(state.workflow_id or "pipeline")
        try:
            job_id = await self._executor.start_extract(state, token)
        except BaseException:
            self._broker.cancel(token)
            raise
        state = state.model_copy(update={"ocr_job_id": job_id})
        outcome = await self._broker.wait(token, timeout=self._extract_timeout)
        if not outcome.succeeded:
            raise WorkflowError(outcome.cause or "OCR job failed", error_type=outcome.error or "OcrJobFailed")
        merged_key = outcome.payload.get("mergedResultKey")
        if not merged_key:
            raise WorkflowError("Completion signal carried no merged result", error_type="ProcessingError")
        return state.with_stage(EXTRACT, merged_result_location=merged_key)

    async def _failed(
        self,
        state: PipelineState,
        stage: str,
        error: str,
        cause: str,
        *,
        status: PipelineStatus = PipelineStatus.FAILED,
    ) -> PipelineOutcome:
        structured_log(
            LOG,
            logging.ERROR,
            "pipeline_complete",
            status=status.value,
            stage=stage,
            error_type=error,
            error=cause,
            stages_run=list(state.stages_run),
            workflow_id=state.workflow_id,
        )
        self._metrics.run_finished(status.value)
        if self._run_status is not None:
            await self._run_status.finish(
                state.workflow_id,
                status,
                state=state,
                failed_stage=stage,
                error=error,
                cause=cause,
            )
        return PipelineOutcome(
            status=status,
            state=state,
            error=error,
            cause=cause,
            failed_stage=stage,
            stages_run=list(state.stages_run),
        )


__all__ = ["PipelineOutcome", "PipelineRunner", "TIMEOUT_ERROR"]
