"""Runtime configuration for the inkflow services.

Values come from environment variables (or a local ``.env``). Any value may be
an ``sm://`` Secret Manager reference; references listed in ``_SECRET_FIELDS``
are resolved once when the settings object is built.

Main groups (env names in parentheses):
 - storage: STORAGE_BUCKET, OCR_OUTPUT_PREFIX, MERGED_OUTPUT_PREFIX
 - job tokens: TOKEN_STORE_BACKEND, TOKEN_STORE_BUCKET, JOB_TOKEN_TTL_SECONDS
 - shard format: SHARD_TOTAL_FIELD, SHARD_BLOCKS_FIELD
 - transform providers: AI_PROVIDER, OPENAI_*, VERTEX_*
 - pipeline: OCR_SERVICE_URL, PIPELINE_SERVICE_BASE_URL, EXTRACT_TIMEOUT_SECONDS
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from inkflow.utils.secrets import resolve_secret

_SECRET_FIELDS = (
    "openai_api_key",
    "openai_organization",
    "ocr_service_token",
)


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class AppConfig(BaseSettings):
    project_id: str = Field('', validation_alias=AliasChoices('PROJECT_ID', 'GOOGLE_CLOUD_PROJECT'))
    region: str = Field('us-central1', validation_alias='REGION')

    storage_backend: str = Field('gcs', validation_alias='STORAGE_BACKEND')
    storage_bucket: str = Field('', validation_alias='STORAGE_BUCKET')
    ocr_output_prefix: str = Field('ocr-output', validation_alias='OCR_OUTPUT_PREFIX')
    merged_output_prefix: str = Field('merged-ocr-output', validation_alias='MERGED_OUTPUT_PREFIX')
    cmek_key_name: str | None = Field(None, validation_alias='CMEK_KEY_NAME')

    token_store_backend: str = Field('memory', validation_alias='TOKEN_STORE_BACKEND')
    token_store_bucket: str | None = Field(None, validation_alias='TOKEN_STORE_BUCKET')
    token_store_prefix: str = Field('job-tokens', validation_alias='TOKEN_STORE_PREFIX')
    run_status_prefix: str = Field('workflow-status', validation_alias='RUN_STATUS_PREFIX')
    job_token_ttl_seconds: int = Field(6 * 60 * 60, validation_alias='JOB_TOKEN_TTL_SECONDS')

    # Dotted paths into the first shard / every shard of the OCR service output.
    shard_total_field: str = Field('DocumentMetadata.Pages', validation_alias='SHARD_TOTAL_FIELD')
    shard_blocks_field: str = Field('Blocks', validation_alias='SHARD_BLOCKS_FIELD')
    fail_on_malformed_first_shard_raw: str | bool | None = Field(
        True, validation_alias='FAIL_ON_MALFORMED_FIRST_SHARD'
    )
    enable_completion_claim_raw: str | bool | None = Field(True, validation_alias='ENABLE_COMPLETION_CLAIM')

    ai_provider: str = Field('openai', validation_alias='AI_PROVIDER')
    openai_api_key: str | None = Field(None, validation_alias='OPENAI_API_KEY')
    openai_api_key_secret: str | None = Field(None, validation_alias='OPENAI_API_KEY_SECRET')
    openai_organization: str | None = Field(None, validation_alias='OPENAI_ORGANIZATION')
    openai_model: str = Field('gpt-4o-mini', validation_alias='OPENAI_MODEL')
    openai_max_tokens: int = Field(4000, validation_alias='OPENAI_MAX_TOKENS')
    openai_max_input_chars: int = Field(120_000, validation_alias='OPENAI_MAX_INPUT_CHARS')
    vertex_region: str | None = Field(None, validation_alias='VERTEX_REGION')
    vertex_model: str = Field('claude-3-5-sonnet-v2@20241022', validation_alias='VERTEX_MODEL')
    vertex_max_tokens: int = Field(6000, validation_alias='VERTEX_MAX_TOKENS')
    vertex_max_input_chars: int = Field(150_000, validation_alias='VERTEX_MAX_INPUT_CHARS')
    transform_temperature: float = Field(0.1, validation_alias='TRANSFORM_TEMPERATURE')

    speech_model: str = Field('tts-1', validation_alias='SPEECH_MODEL')
    speech_voice: str = Field('alloy', validation_alias='SPEECH_VOICE')

    ocr_service_url: str | None = Field(None, validation_alias='OCR_SERVICE_URL')
    ocr_service_token: str | None = Field(None, validation_alias='OCR_SERVICE_TOKEN')
    pipeline_service_base_url: str | None = Field(None, validation_alias='PIPELINE_SERVICE_BASE_URL')
    extract_timeout_seconds: float = Field(20 * 60, validation_alias='EXTRACT_TIMEOUT_SECONDS')
    default_target_language: str = Field('French', validation_alias='DEFAULT_TARGET_LANGUAGE')

    enable_metrics_raw: str | bool | None = Field(True, validation_alias='ENABLE_METRICS')

    model_config = SettingsConfigDict(env_file='.env', extra='ignore', case_sensitive=False)

    def model_post_init(self, __context: Any) -> None:  # pylint: disable=W0221
        project_hint = self.project_id or os.getenv("PROJECT_ID")
        for field_name in _SECRET_FIELDS:
            value = getattr(self, field_name, None)
            resolved = resolve_secret(value, project_id=project_hint)
            if resolved is not None:
                setattr(self, field_name, resolved)

    @staticmethod
    def _flag(raw: str | bool | None) -> bool:
        if isinstance(raw, bool):
            return raw
        return parse_bool(None if raw is None else str(raw))

    @property
    def fail_on_malformed_first_shard(self) -> bool:
        return self._flag(self.fail_on_malformed_first_shard_raw)

    @property
    def enable_completion_claim(self) -> bool:
        return self._flag(self.enable_completion_claim_raw)

    @property
    def enable_metrics(self) -> bool:
        return self._flag(self.enable_metrics_raw)

    def validate_required(self) -> None:
        uses_gcs = "gcs" in (self.storage_backend.strip().lower(), self.token_store_backend.strip().lower())
        required_pairs = []
        if uses_gcs:
            required_pairs.append(("project_id", self.project_id, "PROJECT_ID"))
        if self.storage_backend.strip().lower() == "gcs":
            required_pairs.append(("storage_bucket", self.storage_bucket, "STORAGE_BUCKET"))
        if self.token_store_backend.strip().lower() == "gcs":
            required_pairs.append(("token_store_bucket", self.token_store_bucket, "TOKEN_STORE_BUCKET"))
        if self.ai_provider.strip().lower() == "openai" and not self.openai_api_key_secret:
            required_pairs.append(("openai_api_key", self.openai_api_key, "OPENAI_API_KEY"))
        missing = [env for _name, value, env in required_pairs if not value]
        if missing:
            raise RuntimeError("Missing required configuration values: " + ", ".join(sorted(missing)))
        if self.job_token_ttl_seconds <= 0:
            raise RuntimeError("JOB_TOKEN_TTL_SECONDS must be positive")


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = ["AppConfig", "get_config", "parse_bool"]
