"""Per-run status records.

One JSON object per workflow run lives under ``{prefix}/{workflowId}.json`` in
the pipeline's object store. The record is created RUNNING when the run
starts, tracks the stage currently executing, and ends in exactly one of
SUCCEEDED, FAILED or TIMED_OUT. A terminal record is never moved back to
RUNNING or to a different terminal status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from inkflow.errors import StateError, ValidationError
from inkflow.services.interfaces import ObjectStorage
from inkflow.services.object_storage import ObjectNotFoundError
from inkflow.utils.logging_utils import structured_log

from .state import PipelineState, PipelineStatus

LOG = logging.getLogger("run_status")

DEFAULT_RUN_STATUS_PREFIX = "workflow-status"

TERMINAL_STATUSES = frozenset({PipelineStatus.SUCCEEDED, PipelineStatus.FAILED, PipelineStatus.TIMED_OUT})


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    workflow_id: str
    status: PipelineStatus = PipelineStatus.RUNNING
    user_id: str | None = None
    source_location: str | None = None
    do_translate: bool = False
    do_speech: bool = False
    target_language: str | None = None
    current_stage: str | None = None
    failed_stage: str | None = None
    error: str | None = None
    cause: str | None = None
    stages_run: list[str] = Field(default_factory=list)
    formatted_text_location: str | None = None
    translated_text_location: str | None = None
    audio_location: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class RunStatusStore:
    """Reads and writes `RunRecord` objects through an `ObjectStorage`."""

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        prefix: str = DEFAULT_RUN_STATUS_PREFIX,
        clock: Callable[[], str] = _utc_now,
    ) -> None:
        self._storage = storage
        self._prefix = prefix.strip("/")
        self._clock = clock

    def record_key(self, workflow_id: str) -> str:
        if not workflow_id or "/" in workflow_id:
            raise ValidationError(f"Invalid workflow id: {workflow_id!r}")
        return f"{self._prefix}/{workflow_id}.json"

    async def get(self, workflow_id: str) -> RunRecord | None:
        try:
            raw = await self._storage.get_object(self.record_key(workflow_id))
        except ObjectNotFoundError:
            return None
        try:
            return RunRecord.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise StateError(f"Corrupt run status record for {workflow_id}: {exc}") from exc

    async def _put(self, record: RunRecord) -> RunRecord:
        body = record.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
        await self._storage.put_object(
            self.record_key(record.workflow_id), body, content_type="application/json"
        )
        structured_log(
            LOG,
            logging.INFO,
            "run_status_recorded",
            workflow_id=record.workflow_id,
            status=record.status.value,
            stage=record.failed_stage or record.current_stage,
        )
        return record

    async def start(self, state: PipelineState) -> RunRecord:
        """Create (or refresh) the RUNNING record for ``state.workflow_id``."""
        existing = await self.get(state.workflow_id or "")
        if existing is not None and existing.terminal:
            raise StateError(f"Run {existing.workflow_id} already finished as {existing.status.value}")
        now = self._clock()
        record = RunRecord(
            workflow_id=state.workflow_id,
            user_id=state.user_id,
            source_location=state.source_location,
            do_translate=state.do_translate,
            do_speech=state.do_speech,
            target_language=state.target_language,
            stages_run=list(state.stages_run),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        return await self._put(record)

    async def stage_started(self, state: PipelineState, stage: str) -> RunRecord:
        record = await self.get(state.workflow_id or "")
        if record is None:
            record = await self.start(state)
        if record.terminal:
            LOG.warning(
                "run_status_stage_after_terminal",
                extra={"workflow_id": record.workflow_id, "stage": stage, "status": record.status.value},
            )
            return record
        updated = record.model_copy(
            update={
                "current_stage": stage,
                "stages_run": list(state.stages_run),
                "formatted_text_location": state.formatted_text_location,
                "translated_text_location": state.translated_text_location,
                "audio_location": state.audio_location,
                "updated_at": self._clock(),
            }
        )
        return await self._put(updated)

    async def finish(
        self,
        workflow_id: str,
        status: PipelineStatus,
        *,
        state: PipelineState | None = None,
        failed_stage: str | None = None,
        error: str | None = None,
        cause: str | None = None,
    ) -> RunRecord:
        """Move a run to its terminal status; a second terminal report is ignored."""
        if status not in TERMINAL_STATUSES:
            raise ValidationError(f"Not a terminal status: {status.value}")
        record = await self.get(workflow_id)
        if record is None:
            now = self._clock()
            record = RunRecord(workflow_id=workflow_id, created_at=now, updated_at=now)
            if state is not None:
                record = record.model_copy(
                    update={"user_id": state.user_id, "source_location": state.source_location}
                )
        elif record.terminal:
            LOG.warning(
                "run_status_already_terminal",
                extra={"workflow_id": workflow_id, "status": record.status.value, "outcome": status.value},
            )
            return record
        if status is not PipelineStatus.SUCCEEDED and not failed_stage:
            failed_stage = record.current_stage
        updates: dict[str, Any] = {
            "status": status,
            "current_stage": None,
            "failed_stage": failed_stage,
            "error": error,
            "cause": cause,
            "updated_at": self._clock(),
        }
        if state is not None:
            updates.update(
                stages_run=list(state.stages_run),
                formatted_text_location=state.formatted_text_location,
                translated_text_location=state.translated_text_location,
                audio_location=state.audio_location,
            )
        return await self._put(record.model_copy(update=updates))


__all__ = ["DEFAULT_RUN_STATUS_PREFIX", "RunRecord", "RunStatusStore", "TERMINAL_STATUSES"]
