"""Transform provider abstraction used by the format and translate stages.

Concrete providers only implement `_complete`: one prompt in, raw text out.
Everything else is shared here so every backend behaves the same way:

* blank input is rejected before any credential fetch or network call;
* input longer than ``max_input_chars`` is truncated and the prompt says so;
* the output budget is ``clamp(ceil(len / 4) * 1.2, 1000, max_tokens)``;
* credentials are either given up front or fetched once on first use;
* transport failures surface as `ExternalServiceError`, empty answers as
  `EmptyResponseError`.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, ClassVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from inkflow.errors import EmptyResponseError, ExternalServiceError, ValidationError
from inkflow.utils.async_once import AsyncOnce
from inkflow.utils.logging_utils import structured_log

from .languages import normalize_language
from .prompts import (
    FORMAT_SYSTEM_PROMPT,
    TRANSLATE_SYSTEM_PROMPT,
    build_format_prompt,
    build_translate_prompt,
)

LOG = logging.getLogger("transform")

CredentialFetcher = Callable[[], Awaitable[str]]

MIN_OUTPUT_TOKENS = 1000


def output_token_budget(text_length: int, max_tokens: int) -> int:
    estimated = math.ceil(text_length / 4) * 1.2
    return int(math.floor(min(max(estimated, MIN_OUTPUT_TOKENS), max_tokens)))


class TransformProvider(ABC):
    """Formats and translates document text with a hosted language model."""

    provider_name: ClassVar[str] = "transform"
    service_label: ClassVar[str] = "Transform provider"
    default_max_tokens: ClassVar[int] = 4000
    default_max_input_chars: ClassVar[int] = 120_000

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        credential_fetcher: CredentialFetcher | None = None,
        max_tokens: int | None = None,
        max_input_chars: int | None = None,
        temperature: float = 0.1,
        retry_attempts: int = 3,
    ) -> None:
        if not api_key and credential_fetcher is None:
            raise ValidationError(f"{self.service_label} requires a credential or a credential fetcher")
        self.model = model
        self.max_tokens = max_tokens or self.default_max_tokens
        self.max_input_chars = max_input_chars or self.default_max_input_chars
        self.temperature = temperature
        self._retry_attempts = max(1, retry_attempts)
        if api_key:
            self._credential: AsyncOnce[str] | None = None
            self._static_credential: str | None = api_key
        else:
            self._credential = AsyncOnce(credential_fetcher)  # type: ignore[arg-type]
            self._static_credential = None

    async def format_text(self, text: str) -> str:
        if not text or not text.strip():
            raise ValidationError("No text content to format.")
        prepared, truncated = self._truncate(text)
        prompt = build_format_prompt(prepared, truncated=truncated)
        return await self._run("format", FORMAT_SYSTEM_PROMPT, prompt, len(prepared), truncated)

    async def translate_text(self, text: str, target_language: str) -> str:
        if not text or not text.strip():
            raise ValidationError("No text content to translate.")
        language = normalize_language(target_language)
        prepared, truncated = self._truncate(text)
        prompt = build_translate_prompt(prepared, target_language=language, truncated=truncated)
        return await self._run(
            "translate", TRANSLATE_SYSTEM_PROMPT, prompt, len(prepared), truncated, target_language=language
        )

    def budget_for(self, text_length: int) -> int:
        return output_token_budget(text_length, self.max_tokens)

    async def credential(self) -> str:
        if self._static_credential is not None:
            return self._static_credential
        assert self._credential is not None
        try:
            return await self._credential.get()
        except ExternalServiceError:
            raise
        except Exception as exc:  # noqa: BLE001 - surfaced as a provider failure
            raise ExternalServiceError(self.service_label, f"credential fetch failed: {exc}") from exc

    def _truncate(self, text: str) -> tuple[str, bool]:
        if len(text) <= self.max_input_chars:
            return text, False
        return text[: self.max_input_chars], True

    async def _run(
        self,
        operation: str,
        system_prompt: str,
        prompt: str,
        text_length: int,
        truncated: bool,
        *,
        target_language: str | None = None,
    ) -> str:
        budget = self.budget_for(text_length)
        credential = await self.credential()
        structured_log(
            LOG,
            logging.INFO,
            "transform_request",
            provider=self.provider_name,
            stage=operation,
            text_length=text_length,
            truncated=truncated,
            target_language=target_language,
        )
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_random_exponential(multiplier=1, max=30),
                retry=retry_if_exception(self._is_transient),
                reraise=True,
            ):
                with attempt:
                    content = await self._complete(
                        credential=credential,
                        system_prompt=system_prompt,
                        prompt=prompt,
                        max_tokens=budget,
                    )
        except (ExternalServiceError, ValidationError):
            raise
        except Exception as exc:  # noqa: BLE001 - wrapped with provider identity
            raise ExternalServiceError(self.service_label, str(exc)) from exc
        if content is None or not content.strip():
            raise EmptyResponseError(self.service_label, f"No content received from {self.service_label}")
        return content.strip()

    def _is_transient(self, exc: BaseException) -> bool:
        return False

    @abstractmethod
    async def _complete(
        self,
        *,
        credential: str,
        system_prompt: str,
        prompt: str,
        max_tokens: int,
    ) -> str | None:
        """Send one prompt to the backend and return its text (or None)."""


__all__ = [
    "CredentialFetcher",
    "MIN_OUTPUT_TOKENS",
    "TransformProvider",
    "output_token_budget",
]
