"""Target-language normalisation for translation prompts."""

from __future__ import annotations

from inkflow.errors import ValidationError

DEFAULT_TARGET_LANGUAGE = "French"

LANGUAGE_CODES: dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "ru": "Russian",
    "ja": "Japanese",
    "zh": "Chinese",
    "ko": "Korean",
    "ar": "Arabic",
    "hi": "Hindi",
    "sv": "Swedish",
    "no": "Norwegian",
    "da": "Danish",
    "pl": "Polish",
    "cs": "Czech",
    "fi": "Finnish",
    "el": "Greek",
    "tr": "Turkish",
}

SUPPORTED_LANGUAGES: tuple[str, ...] = tuple(dict.fromkeys(LANGUAGE_CODES.values()))

_BY_NAME = {name.lower(): name for name in SUPPORTED_LANGUAGES}


def normalize_language(value: str | None) -> str:
    """Map a language code or name to its display name.

    ``fr``, ``french`` and ``FRENCH`` all become ``French``. Anything not in
    the table is returned unchanged so callers can still ask for languages we
    have no entry for.
    """
    if value is None or not value.strip():
        raise ValidationError("Target language is required")
    candidate = value.strip()
    lowered = candidate.lower()
    if lowered in LANGUAGE_CODES:
        return LANGUAGE_CODES[lowered]
    if lowered in _BY_NAME:
        return _BY_NAME[lowered]
    return candidate


__all__ = ["DEFAULT_TARGET_LANGUAGE", "LANGUAGE_CODES", "SUPPORTED_LANGUAGES", "normalize_language"]
