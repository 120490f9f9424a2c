"""Claude on Vertex AI transform provider.

Requests authenticate with Application Default Credentials, which the
Anthropic SDK refreshes on its own. The provider "credential" is the Google
Cloud project billed for the calls; when it is not configured it is looked
up once from ADC on first use.
"""

from __future__ import annotations

import asyncio
from typing import Any

import anthropic
import google.auth
from anthropic import AsyncAnthropicVertex

from inkflow.errors import ExternalServiceError

from .base import TransformProvider

DEFAULT_VERTEX_MODEL = "claude-3-5-sonnet-v2@20241022"


async def adc_project_fetcher() -> str:
    """Resolve the project id attached to Application Default Credentials."""
    _credentials, project_id = await asyncio.to_thread(google.auth.default)
    if not project_id:
        raise ExternalServiceError("Vertex AI", "no project id available from Application Default Credentials")
    return project_id


class VertexClaudeTransformProvider(TransformProvider):
    provider_name = "vertex"
    service_label = "Vertex AI model invocation"
    default_max_tokens = 6000
    default_max_input_chars = 150_000

    def __init__(
        self,
        *,
        region: str,
        model: str = DEFAULT_VERTEX_MODEL,
        project_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        if project_id:
            kwargs["api_key"] = project_id
        super().__init__(model=model, **kwargs)
        self.region = region
        self._client: AsyncAnthropicVertex | None = None
        self._client_project: str | None = None

    def _client_for(self, project_id: str) -> AsyncAnthropicVertex:
        if self._client is None or self._client_project != project_id:
            self._client = AsyncAnthropicVertex(region=self.region, project_id=project_id)
            self._client_project = project_id
        return self._client

    async def _complete(self, *, credential: str, system_prompt: str, prompt: str, max_tokens: int) -> str | None:
        client = self._client_for(credential)
        message = await client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=self.temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": prompt}],
        )
        parts = [
            getattr(block, "text", "")
            for block in (getattr(message, "content", None) or [])
            if getattr(block, "type", None) == "text"
        ]
        return "".join(parts) or None

    def _is_transient(self, exc: BaseException) -> bool:
        return isinstance(
            exc,
            (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError),
        )


__all__ = ["DEFAULT_VERTEX_MODEL", "VertexClaudeTransformProvider", "adc_project_fetcher"]
