"""Text-to-speech collaborator used by the speech stage."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from openai import AsyncOpenAI

from inkflow.config import AppConfig
from inkflow.errors import EmptyResponseError, ExternalServiceError, ValidationError
from inkflow.utils.async_once import AsyncOnce
from inkflow.utils.secrets import secret_fetcher

from .interfaces import SpeechSynthesizer

LOG = logging.getLogger("speech")

MAX_SPEECH_INPUT_CHARS = 4096


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    service_label = "OpenAI speech"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "tts-1",
        voice: str = "alloy",
        client: AsyncOpenAI | None = None,
        credential_fetcher: Callable[[], Awaitable[str]] | None = None,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._credential = AsyncOnce(credential_fetcher) if credential_fetcher and not api_key else None
        self.model = model
        self.voice = voice

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise ValidationError("No text content to convert to speech.")
        if len(text) > MAX_SPEECH_INPUT_CHARS:
            LOG.warning(
                "speech_input_truncated",
                extra={"text_length": len(text), "limit": MAX_SPEECH_INPUT_CHARS},
            )
            text = text[:MAX_SPEECH_INPUT_CHARS]
        try:
            if self._client is None:
                api_key = self._api_key
                if api_key is None and self._credential is not None:
                    api_key = await self._credential.get()
                self._client = AsyncOpenAI(api_key=api_key)
            response = await self._client.audio.speech.create(
                model=self.model,
                voice=self.voice,
                input=text,
                response_format="mp3",
            )
        except Exception as exc:  # noqa: BLE001 - wrapped with service identity
            raise ExternalServiceError(self.service_label, str(exc)) from exc
        audio = getattr(response, "content", None)
        if not audio:
            raise EmptyResponseError(self.service_label, "No audio received from OpenAI speech")
        return audio


def create_speech_synthesizer_from_config(cfg: AppConfig) -> OpenAISpeechSynthesizer:
    """Speech uses the OpenAI key whichever transform provider is active."""
    fetcher = None
    if not cfg.openai_api_key and cfg.openai_api_key_secret:
        fetcher = secret_fetcher(cfg.openai_api_key_secret, project_id=cfg.project_id or None)
    return OpenAISpeechSynthesizer(
        api_key=cfg.openai_api_key,
        model=cfg.speech_model,
        voice=cfg.speech_voice,
        credential_fetcher=fetcher,
    )


__all__ = ["MAX_SPEECH_INPUT_CHARS", "OpenAISpeechSynthesizer", "create_speech_synthesizer_from_config"]
