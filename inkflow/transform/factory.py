"""Construct transform providers from a provider type or runtime configuration."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from inkflow.config import AppConfig
from inkflow.errors import ValidationError
from inkflow.utils.secrets import secret_fetcher

from .base import CredentialFetcher, TransformProvider
from .openai_provider import OpenAITransformProvider
from .vertex_provider import VertexClaudeTransformProvider, adc_project_fetcher

LOG = logging.getLogger("transform")


class ProviderType(str, Enum):
    VERTEX = "vertex"
    OPENAI = "openai"

    @classmethod
    def parse(cls, value: "str | ProviderType") -> "ProviderType":
        if isinstance(value, ProviderType):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported AI provider: {value!r}") from exc


def create_provider(
    provider_type: "str | ProviderType",
    *,
    api_key: str | None = None,
    credential_fetcher: CredentialFetcher | None = None,
    **options: Any,
) -> TransformProvider:
    """Build the provider selected by ``provider_type``."""
    kind = ProviderType.parse(provider_type)
    if kind is ProviderType.OPENAI:
        return OpenAITransformProvider(api_key=api_key, credential_fetcher=credential_fetcher, **options)
    if "region" not in options or not options["region"]:
        raise ValidationError("Vertex AI provider requires a region")
    return VertexClaudeTransformProvider(
        project_id=api_key,
        credential_fetcher=credential_fetcher,
        **options,
    )


def create_provider_from_config(cfg: AppConfig) -> TransformProvider:
    kind = ProviderType.parse(cfg.ai_provider)
    common = {"temperature": cfg.transform_temperature}
    if kind is ProviderType.OPENAI:
        fetcher = None
        if not cfg.openai_api_key and cfg.openai_api_key_secret:
            fetcher = secret_fetcher(cfg.openai_api_key_secret, project_id=cfg.project_id or None)
        provider = create_provider(
            kind,
            api_key=cfg.openai_api_key,
            credential_fetcher=fetcher,
            model=cfg.openai_model,
            organization=cfg.openai_organization,
            max_tokens=cfg.openai_max_tokens,
            max_input_chars=cfg.openai_max_input_chars,
            **common,
        )
    else:
        provider = create_provider(
            kind,
            api_key=cfg.project_id or None,
            credential_fetcher=None if cfg.project_id else adc_project_fetcher,
            region=cfg.vertex_region or cfg.region,
            model=cfg.vertex_model,
            max_tokens=cfg.vertex_max_tokens,
            max_input_chars=cfg.vertex_max_input_chars,
            **common,
        )
    LOG.info("transform_provider_configured", extra={"provider": kind.value, "model": provider.model})
    return provider


__all__ = ["ProviderType", "create_provider", "create_provider_from_config"]
