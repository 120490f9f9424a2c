from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from inkflow.config import AppConfig
from inkflow.errors import EmptyResponseError, ExternalServiceError, ValidationError
from inkflow.transform.base import MIN_OUTPUT_TOKENS, output_token_budget
from inkflow.transform.factory import ProviderType, create_provider, create_provider_from_config
from inkflow.transform.languages import normalize_language
from inkflow.transform.openai_provider import OpenAITransformProvider
from inkflow.transform.prompts import TRUNCATION_NOTE
from inkflow.transform.vertex_provider import VertexClaudeTransformProvider
from tests.support import FakeProvider


class _CountingFetcher:
    def __init__(self, value: str = "fetched-key", fail_first: bool = False) -> None:
        self.calls = 0
        self._value = value
        self._fail_first = fail_first

    async def __call__(self) -> str:
        self.calls += 1
        await asyncio.sleep(0)
        if self._fail_first and self.calls == 1:
            raise RuntimeError("secret store down")
        return self._value


@pytest.mark.parametrize(
    "length,max_tokens,expected",
    [
        (0, 4000, MIN_OUTPUT_TOKENS),
        (400, 4000, MIN_OUTPUT_TOKENS),
        (4000, 4000, 1200),
        (3334, 4000, 1000),
        (10_000, 4000, 3000),
        (1_000_000, 4000, 4000),
        (1_000_000, 6000, 6000),
    ],
)
def test_output_token_budget(length, max_tokens, expected):
    assert output_token_budget(length, max_tokens) == expected


def test_provider_requires_some_credential():
    with pytest.raises(ValidationError):
        FakeProvider(api_key=None)


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   \n"])
async def test_blank_input_never_fetches_or_calls(text):
    fetcher = _CountingFetcher()
    provider = FakeProvider(api_key=None, credential_fetcher=fetcher)

    with pytest.raises(ValidationError, match="No text content to format"):
        await provider.format_text(text)
    with pytest.raises(ValidationError, match="No text content to translate"):
        await provider.translate_text(text, "fr")

    assert fetcher.calls == 0
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_format_uses_budget_and_prompt():
    provider = FakeProvider(reply="  Clean text  ")

    result = await provider.format_text("a" * 4000)

    assert result == "Clean text"
    sent = provider.prompts[0]
    assert sent["max_tokens"] == 1200
    assert sent["prompt"].endswith("a" * 4000)
    assert "Correcting obvious OCR errors" in sent["prompt"]
    assert TRUNCATION_NOTE not in sent["prompt"]


@pytest.mark.asyncio
async def test_long_input_is_truncated_and_flagged():
    provider = FakeProvider(max_input_chars=10)

    await provider.format_text("0123456789ABCDEF")

    prompt = provider.prompts[0]["prompt"]
    assert prompt.endswith("0123456789")
    assert "ABCDEF" not in prompt
    assert TRUNCATION_NOTE in prompt


@pytest.mark.asyncio
async def test_translate_normalises_known_language_and_keeps_unknown_verbatim():
    provider = FakeProvider()

    await provider.translate_text("Bonjour", "es")
    await provider.translate_text("Bonjour", "Klingon")

    assert "into Spanish." in provider.prompts[0]["prompt"]
    assert "into Klingon." in provider.prompts[1]["prompt"]


@pytest.mark.asyncio
async def test_credential_fetched_once_under_concurrency():
    fetcher = _CountingFetcher()
    provider = FakeProvider(api_key=None, credential_fetcher=fetcher)

    await asyncio.gather(*(provider.format_text(f"text {n}") for n in range(5)))

    assert fetcher.calls == 1
    assert {prompt["credential"] for prompt in provider.prompts} == {"fetched-key"}


@pytest.mark.asyncio
async def test_failed_credential_fetch_is_retried_on_next_use():
    fetcher = _CountingFetcher(fail_first=True)
    provider = FakeProvider(api_key=None, credential_fetcher=fetcher)

    with pytest.raises(ExternalServiceError, match="credential fetch failed"):
        await provider.format_text("text")
    assert await provider.format_text("text") == "transformed"
    assert fetcher.calls == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [None, "", "   "])
async def test_empty_reply_is_empty_response_error(reply):
    provider = FakeProvider(reply=reply)
    with pytest.raises(EmptyResponseError):
        await provider.format_text("text")


@pytest.mark.asyncio
async def test_backend_exception_is_external_service_error():
    class _Broken(FakeProvider):
        async def _complete(self, **kwargs):
            raise RuntimeError("socket closed")

    with pytest.raises(ExternalServiceError) as excinfo:
        await _Broken().translate_text("text", "fr")

    assert not isinstance(excinfo.value, EmptyResponseError)
    assert excinfo.value.service == "Fake provider"


@pytest.mark.parametrize(
    "value,expected",
    [("fr", "French"), ("FRENCH", "French"), (" de ", "German"), ("Esperanto", "Esperanto")],
)
def test_normalize_language(value, expected):
    assert normalize_language(value) == expected


def test_normalize_language_rejects_blank():
    with pytest.raises(ValidationError):
        normalize_language(" ")


class _FakeOpenAIClient:
    def __init__(self, responses) -> None:
        self._responses = list(responses)
        self.requests: list[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _with_client(provider, client, key="sk-test"):
    provider._client = client
    provider._client_key = key
    return provider


@pytest.mark.asyncio
async def test_openai_provider_sends_chat_completion():
    client = _FakeOpenAIClient([_completion("Formatted")])
    provider = _with_client(OpenAITransformProvider(api_key="sk-test", model="gpt-4o-mini"), client)

    assert await provider.format_text("raw text") == "Formatted"

    request = client.requests[0]
    assert request["model"] == "gpt-4o-mini"
    assert request["max_tokens"] == MIN_OUTPUT_TOKENS
    assert request["temperature"] == 0.1
    assert [message["role"] for message in request["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_openai_provider_retries_connection_errors():
    error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    client = _FakeOpenAIClient([error, _completion("Done")])
    provider = _with_client(OpenAITransformProvider(api_key="sk-test", retry_attempts=2), client)

    assert await provider.translate_text("text", "fr") == "Done"
    assert len(client.requests) == 2


@pytest.mark.asyncio
async def test_openai_provider_empty_choices():
    client = _FakeOpenAIClient([SimpleNamespace(choices=[])])
    provider = _with_client(OpenAITransformProvider(api_key="sk-test"), client)

    with pytest.raises(EmptyResponseError):
        await provider.format_text("text")


@pytest.mark.asyncio
async def test_vertex_provider_joins_text_blocks():
    calls: list[dict] = []

    async def _create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Hola "),
                SimpleNamespace(type="tool_use", text="ignored"),
                SimpleNamespace(type="text", text="mundo"),
            ]
        )

    provider = VertexClaudeTransformProvider(region="us-east5", project_id="proj")
    provider._client = SimpleNamespace(messages=SimpleNamespace(create=_create))
    provider._client_project = "proj"

    assert await provider.translate_text("Hello world", "es") == "Hola mundo"
    assert calls[0]["max_tokens"] == MIN_OUTPUT_TOKENS
    assert "professional translator" in calls[0]["system"]
    assert provider.max_tokens == 6000


def test_provider_type_parse():
    assert ProviderType.parse("OpenAI") is ProviderType.OPENAI
    assert ProviderType.parse(ProviderType.VERTEX) is ProviderType.VERTEX
    with pytest.raises(ValidationError):
        ProviderType.parse("bedrock")


def test_create_provider_vertex_requires_region():
    with pytest.raises(ValidationError):
        create_provider("vertex", api_key="proj")
    provider = create_provider("vertex", api_key="proj", region="europe-west1")
    assert isinstance(provider, VertexClaudeTransformProvider)


def test_create_provider_from_config_uses_secret_fetcher():
    cfg = AppConfig(AI_PROVIDER="openai", OPENAI_API_KEY_SECRET="openai-key", PROJECT_ID="proj")
    provider = create_provider_from_config(cfg)

    assert isinstance(provider, OpenAITransformProvider)
    assert provider._static_credential is None
    assert provider._credential is not None


def test_create_provider_from_config_vertex():
    cfg = AppConfig(AI_PROVIDER="vertex", PROJECT_ID="proj", VERTEX_REGION="us-east5", VERTEX_MAX_TOKENS="5000")
    provider = create_provider_from_config(cfg)

    assert isinstance(provider, VertexClaudeTransformProvider)
    assert provider.region == "us-east5"
    assert provider.max_tokens == 5000
