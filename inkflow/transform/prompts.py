"""Prompt templates shared by every transform provider."""

from __future__ import annotations

import textwrap

FORMAT_SYSTEM_PROMPT = (
    "You are a meticulous document editor. You clean up text produced by OCR "
    "without adding or removing information."
)

TRANSLATE_SYSTEM_PROMPT = (
    "You are a professional translator. You translate faithfully and keep the "
    "structure of the source document."
)

TRUNCATION_NOTE = (
    "Note: the input exceeded the processing limit and was truncated. "
    "Format only the text provided."
)


def build_format_prompt(text: str, *, truncated: bool) -> str:
    note = f"\n{TRUNCATION_NOTE}\n" if truncated else ""
    return textwrap.dedent(
        """\
        Please format the following text extracted from a scanned document.
        Improve its readability by:
        - Fixing any formatting issues
        - Organizing the content into logical paragraphs
        - Correcting obvious OCR errors
        - Adding section headers where appropriate
        - Preserving all key information
        {note}
        Return only the formatted text.

        Text:
        """
    ).format(note=note) + text


def build_translate_prompt(text: str, *, target_language: str, truncated: bool) -> str:
    note = f"\n{TRUNCATION_NOTE.replace('Format', 'Translate')}\n" if truncated else ""
    return textwrap.dedent(
        """\
        Translate the following text into {language}.
        Maintain the original formatting, paragraph structure and section headers.
        {note}
        Return only the translated text.

        Text:
        """
    ).format(language=target_language, note=note) + text


__all__ = [
    "FORMAT_SYSTEM_PROMPT",
    "TRANSLATE_SYSTEM_PROMPT",
    "TRUNCATION_NOTE",
    "build_format_prompt",
    "build_translate_prompt",
]
