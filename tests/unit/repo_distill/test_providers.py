from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime

import httpx
import pytest

from repo_distill.config import ProviderTag
from repo_distill.exceptions import ConfigError, ProviderHTTPError, ResponseFormatError
from repo_distill.providers import (
    AnthropicProvider,
    CompletionOptions,
    HTTPProvider,
    LLMProvider,
    Message,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    create_provider,
    parse_retry_after,
)
from repo_distill.settings import PipelineConfig, ProviderCredentials


def _client(
    respond: Callable[[httpx.Request], httpx.Response],
    captured: list[httpx.Request],
) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return respond(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


ANTHROPIC_OK = {
    "id": "msg_1",
    "type": "message",
    "content": [{"type": "text", "text": "Conventions: "}, {"type": "text", "text": "snake_case."}],
    "usage": {"input_tokens": 1200, "output_tokens": 80},
}

OPENAI_OK = {
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Use pydantic models."}}],
    "usage": {"prompt_tokens": 900, "completion_tokens": 60},
}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_anthropic_request_and_response() -> None:
    captured: list[httpx.Request] = []
    client = _client(lambda _: httpx.Response(200, json=ANTHROPIC_OK), captured)
    provider = AnthropicProvider("claude-sonnet-4-5-20250929", api_key="sk-ant-test", client=client)

    response = await provider.complete(
        [Message(content="analyze this")],
        CompletionOptions(max_tokens=1000, temperature=0.2, system="be terse"),
    )

    assert response.content == "Conventions: snake_case."
    assert (response.input_tokens, response.output_tokens) == (1200, 80)
    request = captured[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "sk-ant-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["model"] == "claude-sonnet-4-5-20250929"
    assert body["max_tokens"] == 1000
    assert body["system"] == "be terse"
    assert body["messages"] == [{"role": "user", "content": "analyze this"}]
    assert isinstance(provider, LLMProvider)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openai_request_and_response() -> None:
    captured: list[httpx.Request] = []
    client = _client(lambda _: httpx.Response(200, json=OPENAI_OK), captured)
    provider = OpenAIProvider("gpt-4o", api_key="sk-openai-test", client=client)

    response = await provider.complete([Message(content="hi")], CompletionOptions(system="sys"))

    assert response.content == "Use pydantic models."
    assert response.input_tokens == 900
    request = captured[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-openai-test"
    body = json.loads(request.content)
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    assert body["messages"][1] == {"role": "user", "content": "hi"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openrouter_uses_openai_format_on_its_own_host() -> None:
    captured: list[httpx.Request] = []
    client = _client(lambda _: httpx.Response(200, json=OPENAI_OK), captured)
    provider = OpenRouterProvider("anthropic/claude-3.5-sonnet", api_key="or-key", client=client)

    await provider.complete([Message(content="hi")], CompletionOptions())

    assert str(captured[0].url) == "https://openrouter.ai/api/v1/chat/completions"
    assert provider.name is ProviderTag.OPENROUTER
    assert provider.pricing.input_per_million == 3.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_ollama_request_and_response() -> None:
    captured: list[httpx.Request] = []
    payload = {"message": {"role": "assistant", "content": "local answer"}, "prompt_eval_count": 50, "eval_count": 7}
    client = _client(lambda _: httpx.Response(200, json=payload), captured)
    provider = OllamaProvider("llama3.1:70b", base_url="http://gpu-box:11434/", client=client)

    response = await provider.complete([Message(content="hi")], CompletionOptions(max_tokens=256))

    assert response.content == "local answer"
    assert (response.input_tokens, response.output_tokens) == (50, 7)
    assert str(captured[0].url) == "http://gpu-box:11434/api/chat"
    body = json.loads(captured[0].content)
    assert body["stream"] is False
    assert body["options"]["num_predict"] == 256
    assert provider.pricing.is_free


@pytest.mark.unit
@pytest.mark.asyncio
async def test_error_status_raises_provider_http_error() -> None:
    client = _client(
        lambda _: httpx.Response(429, headers={"retry-after": "7"}, text='{"error": "rate_limit"}'),
        [],
    )
    provider = AnthropicProvider("claude-sonnet-4-5-20250929", api_key="k", client=client)

    with pytest.raises(ProviderHTTPError) as info:
        await provider.complete([Message(content="hi")], CompletionOptions())

    assert info.value.status_code == 429
    assert info.value.retry_after == 7.0
    assert "rate_limit" in info.value.body


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_json_body_raises_response_format_error() -> None:
    client = _client(lambda _: httpx.Response(200, text="<html>gateway</html>"), [])
    provider = OpenAIProvider("gpt-4o", api_key="k", client=client)

    with pytest.raises(ResponseFormatError) as info:
        await provider.complete([Message(content="hi")], CompletionOptions())

    assert info.value.provider == "openai"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_fields_raise_response_format_error() -> None:
    client = _client(lambda _: httpx.Response(200, json={"choices": []}), [])
    provider = OpenAIProvider("gpt-4o", api_key="k", client=client)

    with pytest.raises(ResponseFormatError):
        await provider.complete([Message(content="hi")], CompletionOptions())


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transport_errors_propagate_unwrapped() -> None:
    def fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider = OllamaProvider("llama3.1:70b", client=_client(fail, []))

    with pytest.raises(httpx.ConnectError):
        await provider.complete([Message(content="hi")], CompletionOptions())


@pytest.mark.unit
@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open() -> None:
    client = _client(lambda _: httpx.Response(200, json=OPENAI_OK), [])
    provider = OpenAIProvider("gpt-4o", api_key="k", client=client)

    await provider.aclose()

    assert client.is_closed is False
    await client.aclose()


@pytest.mark.unit
@pytest.mark.parametrize(("value", "expected"), [(None, None), ("", None), ("3", 3.0), ("1.5", 1.5), ("soon", None)])
def test_parse_retry_after(value: str | None, expected: float | None) -> None:
    assert parse_retry_after(value) == expected


@pytest.mark.unit
def test_parse_retry_after_http_date() -> None:
    past = format_datetime(datetime.now(UTC) - timedelta(minutes=5), usegmt=True)
    future = format_datetime(datetime.now(UTC) + timedelta(seconds=120), usegmt=True)

    assert parse_retry_after(past) == 0.0
    delay = parse_retry_after(future)
    assert delay is not None
    assert 100.0 < delay <= 120.0


@pytest.mark.unit
def test_create_provider_builds_configured_adapter() -> None:
    config = PipelineConfig(provider=ProviderTag.OPENAI, model="gpt-4o-mini")
    credentials = ProviderCredentials(openai_api_key="sk-openai")

    provider = create_provider(config, credentials)

    assert isinstance(provider, OpenAIProvider)
    assert provider.model == "gpt-4o-mini"
    assert provider.api_key == "sk-openai"
    assert provider.pricing.input_per_million == 0.15


@pytest.mark.unit
def test_create_provider_uses_ollama_host_override() -> None:
    config = PipelineConfig(provider=ProviderTag.OLLAMA)

    provider = create_provider(config, ProviderCredentials(ollama_host="http://10.0.0.5:11434"))

    assert isinstance(provider, OllamaProvider)
    assert provider.url == "http://10.0.0.5:11434/api/chat"
    assert provider.model == "llama3.1:70b"


@pytest.mark.unit
def test_create_provider_without_key_raises_config_error() -> None:
    config = PipelineConfig(provider=ProviderTag.ANTHROPIC)

    with pytest.raises(ConfigError) as info:
        create_provider(config, ProviderCredentials())

    assert "ANTHROPIC_API_KEY" in info.value.suggestion


@pytest.mark.unit
def test_http_provider_requires_a_wire_format() -> None:
    class PayloadOnly(HTTPProvider):
        name = ProviderTag.OPENAI
        path = "/chat/completions"

        def payload(self, messages: object, options: object) -> dict:
            return {}

    with pytest.raises(TypeError):
        HTTPProvider("any-model")  # type: ignore[abstract]
    with pytest.raises(TypeError, match="parse"):
        PayloadOnly("gpt-4o")  # type: ignore[abstract]
