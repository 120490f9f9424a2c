"""Pipeline state shared by every stage and by the workflow definition."""

from __future__ import annotations

import posixpath
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PipelineStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class PipelineState(BaseModel):
    """Document context plus the branch flags chosen when the run started.

    Serialised with camelCase keys (``doTranslate``, ``sourceLocation``...) so
    the same document travels through Cloud Workflows variables unchanged.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    source_location: str
    do_translate: bool = False
    do_speech: bool = False
    target_language: str | None = None
    user_id: str | None = None
    workflow_id: str | None = None
    file_type: str | None = None
    storage_bucket: str | None = None
    ocr_job_id: str | None = None
    merged_result_location: str | None = None
    formatted_text: str | None = None
    formatted_text_location: str | None = None
    translated_text: str | None = None
    translated_text_location: str | None = None
    audio_location: str | None = None
    stages_run: list[str] = Field(default_factory=list)

    @property
    def base_name(self) -> str:
        """File name of the source document without directories or extension."""
        name = posixpath.basename(self.source_location.rstrip("/")) or "document"
        stem, _ext = posixpath.splitext(name)
        return stem or name

    def owner_prefix(self) -> str:
        return f"users/{self.user_id or 'anonymous'}"

    def with_stage(self, stage: str, **updates: Any) -> "PipelineState":
        """Return a copy recording ``stage`` as run and applying ``updates``."""
        return self.model_copy(update={**updates, "stages_run": [*self.stages_run, stage]})

    def to_wire(self, *, include_text: bool = False) -> dict[str, Any]:
        exclude = None if include_text else {"formatted_text", "translated_text"}
        return self.model_dump(by_alias=True, exclude=exclude, exclude_none=True)


__all__ = ["PipelineState", "PipelineStatus"]
