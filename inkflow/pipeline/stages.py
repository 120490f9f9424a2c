"""Stage topology and stage implementations.

The pipeline is an ordered list of `StageSpec` entries. A stage with a
``condition`` runs only when that boolean field of `PipelineState` is true;
both the in-process runner and the Cloud Workflows definition are generated
from this one list, so the branch structure lives in data rather than in
duplicated state-machine paths::

    extract (async) -> format -> [translate if doTranslate] -> [speech if doSpeech]
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from pydantic.alias_generators import to_camel

from inkflow.errors import ProcessingError, ValidationError
from inkflow.logging_setup import job_context
from inkflow.services.interfaces import MetricsClient, ObjectStorage, OcrJobStarter, SpeechSynthesizer
from inkflow.services.merger import MERGED_BLOCKS_FIELD
from inkflow.services.metrics import NullMetrics
from inkflow.services.token_store import DEFAULT_TOKEN_TTL_SECONDS, JobTokenStore, new_job_token
from inkflow.transform.base import TransformProvider
from inkflow.transform.languages import DEFAULT_TARGET_LANGUAGE, normalize_language
from inkflow.utils.logging_utils import stage_marker

from .state import PipelineState

LOG = logging.getLogger("pipeline")

EXTRACT = "extract"
FORMAT = "format"
TRANSLATE = "translate"
SPEECH = "speech"


@dataclass(slots=True, frozen=True)
class StageSpec:
    name: str
    condition: str | None = None
    waits_for_callback: bool = False

    def applies_to(self, state: PipelineState) -> bool:
        return self.condition is None or bool(getattr(state, self.condition))

    @property
    def condition_alias(self) -> str | None:
        if self.condition is None:
            return None
        return to_camel(self.condition)


PIPELINE_STAGES: tuple[StageSpec, ...] = (
    StageSpec(EXTRACT, waits_for_callback=True),
    StageSpec(FORMAT),
    StageSpec(TRANSLATE, condition="do_translate"),
    StageSpec(SPEECH, condition="do_speech"),
)


def terminal_label(stages_run: Iterable[str]) -> str:
    """Collapse the stages that ran into the audit label of the terminal state."""
    return "+".join(stage for stage in stages_run if stage != EXTRACT) or EXTRACT


def extract_text(document: Any) -> str:
    """Join the text of every LINE block of a merged OCR result."""
    blocks = document.get(MERGED_BLOCKS_FIELD) if isinstance(document, dict) else None
    if not isinstance(blocks, list):
        raise ProcessingError("Merged OCR result has no block array")
    lines = [
        block["Text"]
        for block in blocks
        if isinstance(block, dict) and block.get("BlockType") == "LINE" and isinstance(block.get("Text"), str)
    ]
    return "\n".join(lines)


class StageExecutor:
    """Runs individual pipeline stages against storage and external collaborators."""

    def __init__(
        self,
        *,
        storage: ObjectStorage,
        token_store: JobTokenStore,
        provider: TransformProvider | None,
        ocr_starter: OcrJobStarter | None = None,
        speech: SpeechSynthesizer | None = None,
        ocr_prefix: str = "ocr-output",
        token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        default_target_language: str = DEFAULT_TARGET_LANGUAGE,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._storage = storage
        self._tokens = token_store
        self._provider = provider
        self._ocr = ocr_starter
        self._speech = speech
        self._ocr_prefix = ocr_prefix.strip("/")
        self._token_ttl = token_ttl_seconds
        self._default_language = default_target_language
        self._metrics = metrics or NullMetrics()

    async def start_extract(self, state: PipelineState, callback_token: str) -> str:
        """Launch the OCR job and register the callback token under its job id."""
        if not callback_token or not callback_token.strip():
            raise ValidationError("Missing required parameter: callback token")
        if not state.source_location or not state.source_location.strip():
            raise ValidationError("Missing required parameter: source location")
        if self._ocr is None:
            raise ValidationError("OCR job starter is not configured")
        with stage_marker(LOG, stage=EXTRACT, workflow_id=state.workflow_id) as marker:
            job_id = await self._ocr.start_job(state.source_location, output_prefix=self._ocr_prefix)
            token = new_job_token(
                job_id,
                callback_token,
                source_location=state.source_location,
                ttl_seconds=self._token_ttl,
                file_type=state.file_type,
                workflow_id=state.workflow_id,
                user_id=state.user_id,
            )
            await asyncio.to_thread(self._tokens.put, token)
            marker.add_completion_fields(job_id=job_id)
        self._metrics.increment("ocr_job_started", stage=EXTRACT)
        return job_id

    async def format(self, state: PipelineState) -> PipelineState:
        provider = self._require_provider()
        if not state.merged_result_location:
            raise ValidationError("Missing required parameter: merged result location")
        with job_context(state.ocr_job_id), stage_marker(LOG, stage=FORMAT, workflow_id=state.workflow_id) as marker:
            raw = await self._storage.get_object(state.merged_result_location)
            try:
                document = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise ProcessingError(f"Merged OCR result is not valid JSON: {exc}") from exc
            text = extract_text(document)
            if not text.strip():
                raise ProcessingError("No text content found in OCR result")
            formatted = await provider.format_text(text)
            key = f"{state.owner_prefix()}/formatted/{state.base_name}.txt"
            await self._storage.put_object(key, formatted.encode("utf-8"), content_type="text/plain; charset=utf-8")
            marker.add_completion_fields(text_length=len(formatted), provider=provider.provider_name)
        self._metrics.observe_latency("stage_seconds", marker.elapsed_seconds, stage=FORMAT)
        return state.with_stage(FORMAT, formatted_text=formatted, formatted_text_location=key)

    async def translate(self, state: PipelineState) -> PipelineState:
        provider = self._require_provider()
        language = normalize_language(state.target_language or self._default_language)
        with job_context(state.ocr_job_id), stage_marker(
            LOG, stage=TRANSLATE, workflow_id=state.workflow_id, target_language=language
        ) as marker:
            source = await self._text_from(state.formatted_text, state.formatted_text_location, "formatted text")
            translated = await provider.translate_text(source, language)
            key = f"{state.owner_prefix()}/translated/{state.base_name}-{language.lower()}.txt"
            await self._storage.put_object(key, translated.encode("utf-8"), content_type="text/plain; charset=utf-8")
            marker.add_completion_fields(text_length=len(translated), provider=provider.provider_name)
        self._metrics.observe_latency("stage_seconds", marker.elapsed_seconds, stage=TRANSLATE)
        return state.with_stage(
            TRANSLATE,
            target_language=language,
            translated_text=translated,
            translated_text_location=key,
        )

    async def speech(self, state: PipelineState) -> PipelineState:
        if self._speech is None:
            raise ValidationError("Speech synthesizer is not configured")
        with job_context(state.ocr_job_id), stage_marker(LOG, stage=SPEECH, workflow_id=state.workflow_id) as marker:
            if state.translated_text or state.translated_text_location:
                text = await self._text_from(state.translated_text, state.translated_text_location, "translated text")
            else:
                text = await self._text_from(state.formatted_text, state.formatted_text_location, "formatted text")
            audio = await self._speech.synthesize(text)
            key = f"{state.owner_prefix()}/audio/{state.base_name}.mp3"
            await self._storage.put_object(key, audio, content_type="audio/mpeg")
            marker.add_completion_fields(text_length=len(text))
        self._metrics.observe_latency("stage_seconds", marker.elapsed_seconds, stage=SPEECH)
        return state.with_stage(SPEECH, audio_location=key)

    async def run_stage(self, name: str, state: PipelineState) -> PipelineState:
        if name == FORMAT:
            return await self.format(state)
        if name == TRANSLATE:
            return await self.translate(state)
        if name == SPEECH:
            return await self.speech(state)
        raise ValidationError(f"Unknown pipeline stage: {name}")

    async def _text_from(self, inline: str | None, location: str | None, label: str) -> str:
        if inline:
            return inline
        if not location:
            raise ValidationError(f"Missing required parameter: {label}")
        return (await self._storage.get_object(location)).decode("utf-8")

    def _require_provider(self) -> TransformProvider:
        if self._provider is None:
            raise ValidationError("Transform provider is not configured")
        return self._provider


__all__ = [
    "EXTRACT",
    "FORMAT",
    "PIPELINE_STAGES",
    "SPEECH",
    "TRANSLATE",
    "StageExecutor",
    "StageSpec",
    "extract_text",
    "terminal_label",
]
