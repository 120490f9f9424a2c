"""OpenAI Chat Completions transform provider."""

from __future__ import annotations

from typing import Any

import openai
from openai import AsyncOpenAI

from .base import TransformProvider


class OpenAITransformProvider(TransformProvider):
    provider_name = "openai"
    service_label = "OpenAI API"
    default_max_tokens = 4000
    default_max_input_chars = 120_000

    def __init__(self, *, model: str = "gpt-4o-mini", organization: str | None = None, **kwargs: Any) -> None:
        super().__init__(model=model, **kwargs)
        self.organization = organization
        self._client: AsyncOpenAI | None = None
        self._client_key: str | None = None

    def _client_for(self, credential: str) -> AsyncOpenAI:
        if self._client is None or self._client_key != credential:
            self._client = AsyncOpenAI(api_key=credential, organization=self.organization)
            self._client_key = credential
        return self._client

    async def _complete(self, *, credential: str, system_prompt: str, prompt: str, max_tokens: int) -> str | None:
        client = self._client_for(credential)
        completion = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=self.temperature,
        )
        choices = getattr(completion, "choices", None) or []
        if not choices:
            return None
        return choices[0].message.content

    def _is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError))


__all__ = ["OpenAITransformProvider"]
