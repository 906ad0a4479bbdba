"""HTTP adapters for the supported model providers.

Each adapter sends exactly one request per `complete` call and never retries;
non-2xx answers surface as `ProviderHTTPError` and transport failures as the
underlying `httpx` exception, so the resilient client can classify them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, ClassVar, Literal, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from repo_distill.config import ANTHROPIC_API_VERSION, DEFAULT_BASE_URLS, ProviderTag
from repo_distill.cost import Pricing, pricing_for
from repo_distill.exceptions import ProviderHTTPError, ResponseFormatError
from repo_distill.logging import logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from repo_distill.settings import PipelineConfig, ProviderCredentials

MAX_ERROR_BODY = 2000
DEFAULT_MAX_TOKENS = 4096


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"] = "user"
    content: str


class CompletionOptions(BaseModel):
    """Per-request generation settings."""

    model_config = ConfigDict(frozen=True)

    max_tokens: int | None = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    temperature: float | None = Field(default=0.3, ge=0.0, le=2.0)
    system: str | None = None


class CompletionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)


@runtime_checkable
class LLMProvider(Protocol):
    """What the resilient client needs from a provider."""

    name: ProviderTag
    model: str
    pricing: Pricing

    async def complete(self, messages: Sequence[Message], options: CompletionOptions) -> CompletionResponse: ...

    async def aclose(self) -> None: ...


def parse_retry_after(value: str | None) -> float | None:
    """Read a `Retry-After` header given either as seconds or as an HTTP date.

    Args:
        value (str | None): the raw header value

    Returns:
        float | None: the delay in seconds, never negative; None when absent or unparsable
    """
    if not value:
        return None
    value = value.strip()
    if value.replace(".", "", 1).isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


class HTTPProvider(ABC):
    """Shared request/response handling; subclasses describe the wire format."""

    name: ClassVar[ProviderTag]
    path: ClassVar[str]

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_BASE_URLS[self.name]).rstrip("/")
        self.pricing = pricing_for(self.name, model)
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"

    def headers(self) -> dict[str, str]:
        return {"content-type": "application/json"}

    @abstractmethod
    def payload(self, messages: Sequence[Message], options: CompletionOptions) -> dict[str, Any]:
        """Request body in the provider's wire format."""

    @abstractmethod
    def parse(self, data: dict[str, Any]) -> CompletionResponse:
        """Read text and usage from a decoded 2xx body."""

    def _format_error(self, message: str, status_code: int) -> ResponseFormatError:
        return ResponseFormatError(message=message, provider=str(self.name), status_code=status_code)

    async def complete(self, messages: Sequence[Message], options: CompletionOptions) -> CompletionResponse:
        """Send one completion request.

        Args:
            messages (Sequence[Message]): the conversation
            options (CompletionOptions): generation settings

        Raises:
            ProviderHTTPError: on a non-2xx answer
            ResponseFormatError: when a 2xx payload lacks the expected fields
            httpx.HTTPError: on network or timeout failures

        Returns:
            CompletionResponse: generated text and token usage
        """
        logger.debug("provider_request", provider=str(self.name), model=self.model, url=self.url)
        response = await self._client.post(self.url, json=self.payload(messages, options), headers=self.headers())
        if not response.is_success:
            raise ProviderHTTPError(
                message=f"{self.name} returned HTTP {response.status_code}: {response.text[:MAX_ERROR_BODY]}",
                status_code=response.status_code,
                body=response.text[:MAX_ERROR_BODY],
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        try:
            data = response.json()
        except ValueError as e:
            raise self._format_error(f"{self.name} returned a non-JSON body", response.status_code) from e
        if not isinstance(data, dict):
            raise self._format_error(f"{self.name} returned a non-object JSON body", response.status_code)
        try:
            return self.parse(data)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise self._format_error(f"unexpected {self.name} payload: {e!r}", response.status_code) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _split_system(messages: Sequence[Message], options: CompletionOptions) -> tuple[str | None, list[Message]]:
    system = [m.content for m in messages if m.role == "system"]
    if options.system:
        system.insert(0, options.system)
    return ("\n\n".join(system) or None), [m for m in messages if m.role != "system"]


class AnthropicProvider(HTTPProvider):
    name = ProviderTag.ANTHROPIC
    path = "/v1/messages"

    def headers(self) -> dict[str, str]:
        return {**super().headers(), "x-api-key": self.api_key or "", "anthropic-version": ANTHROPIC_API_VERSION}

    def payload(self, messages: Sequence[Message], options: CompletionOptions) -> dict[str, Any]:
        system, turns = _split_system(messages, options)
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [{"role": m.role, "content": m.content} for m in turns],
        }
        if system:
            body["system"] = system
        if options.temperature is not None:
            body["temperature"] = options.temperature
        return body

    def parse(self, data: dict[str, Any]) -> CompletionResponse:
        blocks = data["content"]
        text = "".join(block["text"] for block in blocks if block.get("type") == "text")
        if not text:
            msg = "no text block in response"
            raise ValueError(msg)
        usage = data.get("usage") or {}
        return CompletionResponse(
            content=text,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        )


class OpenAIProvider(HTTPProvider):
    name = ProviderTag.OPENAI
    path = "/chat/completions"

    def headers(self) -> dict[str, str]:
        return {**super().headers(), "authorization": f"Bearer {self.api_key or ''}"}

    def payload(self, messages: Sequence[Message], options: CompletionOptions) -> dict[str, Any]:
        system, turns = _split_system(messages, options)
        chat = [{"role": "system", "content": system}] if system else []
        chat.extend({"role": m.role, "content": m.content} for m in turns)
        body: dict[str, Any] = {"model": self.model, "messages": chat}
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            body["temperature"] = options.temperature
        return body

    def parse(self, data: dict[str, Any]) -> CompletionResponse:
        content = data["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            msg = "message content is not text"
            raise TypeError(msg)
        usage = data.get("usage") or {}
        return CompletionResponse(
            content=content,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )


class OpenRouterProvider(OpenAIProvider):
    """OpenAI-compatible gateway; model names carry the upstream vendor prefix."""

    name = ProviderTag.OPENROUTER

    def headers(self) -> dict[str, str]:
        return {**super().headers(), "x-title": "repo-distill"}


class OllamaProvider(HTTPProvider):
    """Local Ollama server; no credentials, no cost."""

    name = ProviderTag.OLLAMA
    path = "/api/chat"

    def payload(self, messages: Sequence[Message], options: CompletionOptions) -> dict[str, Any]:
        system, turns = _split_system(messages, options)
        chat = [{"role": "system", "content": system}] if system else []
        chat.extend({"role": m.role, "content": m.content} for m in turns)
        generation: dict[str, Any] = {}
        if options.temperature is not None:
            generation["temperature"] = options.temperature
        if options.max_tokens is not None:
            generation["num_predict"] = options.max_tokens
        return {"model": self.model, "messages": chat, "stream": False, "options": generation}

    def parse(self, data: dict[str, Any]) -> CompletionResponse:
        content = data["message"]["content"]
        if not isinstance(content, str):
            msg = "message content is not text"
            raise TypeError(msg)
        return CompletionResponse(
            content=content,
            input_tokens=data.get("prompt_eval_count", 0),
            output_tokens=data.get("eval_count", 0),
        )


PROVIDERS: dict[ProviderTag, type[HTTPProvider]] = {
    ProviderTag.ANTHROPIC: AnthropicProvider,
    ProviderTag.OPENAI: OpenAIProvider,
    ProviderTag.OPENROUTER: OpenRouterProvider,
    ProviderTag.OLLAMA: OllamaProvider,
}


def create_provider(
    config: PipelineConfig,
    credentials: ProviderCredentials,
    *,
    client: httpx.AsyncClient | None = None,
) -> HTTPProvider:
    """Build the adapter for the configured provider.

    Args:
        config (PipelineConfig): the run configuration
        credentials (ProviderCredentials): API keys and host overrides
        client (httpx.AsyncClient | None, optional): shared HTTP client. Defaults to None.

    Raises:
        ConfigError: when the provider needs an API key that is not set

    Returns:
        HTTPProvider: the adapter; the caller closes it with `aclose`
    """
    provider = config.provider
    api_key = credentials.api_key_for(provider)
    cls = PROVIDERS[provider]
    logger.info("provider_created", provider=str(provider), model=config.model)
    return cls(
        config.model,
        api_key=api_key,
        base_url=credentials.base_url_for(provider),
        timeout=config.request_timeout.total_seconds(),
        client=client,
    )
