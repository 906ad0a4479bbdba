from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import tomlkit
import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from tomlkit.exceptions import TOMLKitError

from repo_distill.config import API_KEY_ENV, OLLAMA_HOST_ENV, CountingScheme, ProviderTag, default_model
from repo_distill.exceptions import ConfigError
from repo_distill.logging import logger

ENV_FILE = find_dotenv(usecwd=True)

DEFAULT_TOKEN_BUDGET = 100_000
DEFAULT_OVERLAP_FRACTION = 0.1


class PipelineConfig(BaseModel):
    """Options of one distillation run."""

    model_config = ConfigDict(frozen=True)

    token_budget: int = Field(default=DEFAULT_TOKEN_BUDGET, gt=0, description="Maximum tokens per segment.")
    overlap_fraction: float = Field(
        default=DEFAULT_OVERLAP_FRACTION,
        ge=0.0,
        lt=0.5,
        description="Share of the budget repeated between consecutive segments.",
    )
    provider: ProviderTag = Field(default=ProviderTag.ANTHROPIC, description="Model provider family.")
    model: str = Field(default="", description="Model name; empty selects the provider default.")
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt.")
    initial_backoff: timedelta = Field(default=timedelta(seconds=1), description="First retry delay.")
    max_backoff: timedelta = Field(default=timedelta(seconds=60), description="Cap on any retry delay.")
    jitter: bool = Field(default=True, description="Add random jitter to retry delays.")
    max_output_tokens: int = Field(default=4096, gt=0, description="Completion budget per segment request.")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Sampling temperature.")
    offload_threshold_bytes: int = Field(
        default=256_000,
        ge=0,
        description="Files larger than this are compressed in a worker thread.",
    )
    counting_scheme: CountingScheme | None = Field(
        default=None,
        description="Override of the provider's token counting scheme.",
    )
    request_timeout: timedelta = Field(default=timedelta(seconds=120), description="Per-request HTTP timeout.")

    @model_validator(mode="before")
    @classmethod
    def _fill_model(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("model"):
            try:
                provider = ProviderTag(data.get("provider", ProviderTag.ANTHROPIC))
            except ValueError:
                return data  # the provider field reports the error
            data = {**data, "model": default_model(provider)}
        return data

    @model_validator(mode="after")
    def _check(self) -> PipelineConfig:
        if self.initial_backoff <= timedelta(0):
            msg = "initial_backoff must be positive"
            raise ValueError(msg)
        if self.max_backoff < self.initial_backoff:
            msg = "max_backoff must not be shorter than initial_backoff"
            raise ValueError(msg)
        return self

    @classmethod
    def create(cls, **values: Any) -> PipelineConfig:
        """Validate `values`, reporting problems as ConfigError."""
        try:
            return cls(**values)
        except ValidationError as e:
            details = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors())
            raise ConfigError(
                message=f"Invalid pipeline configuration: {details}",
                hint="Fix the listed options; token_budget must be > 0 and overlap_fraction in [0, 0.5).",
            ) from e


class ProviderCredentials(BaseModel):
    """API keys and endpoint overrides read from the environment."""

    model_config = ConfigDict(frozen=True)

    anthropic_api_key: str | None = None
    openai_api_key: str | None = None
    openrouter_api_key: str | None = None
    ollama_host: str | None = None

    @classmethod
    def from_env(cls, env_file: str | None = ENV_FILE) -> ProviderCredentials:
        """Load credentials, reading `env_file` first without overriding set variables."""
        if env_file:
            load_dotenv(env_file, override=False)
        return cls(
            anthropic_api_key=os.environ.get(API_KEY_ENV[ProviderTag.ANTHROPIC]) or None,
            openai_api_key=os.environ.get(API_KEY_ENV[ProviderTag.OPENAI]) or None,
            openrouter_api_key=os.environ.get(API_KEY_ENV[ProviderTag.OPENROUTER]) or None,
            ollama_host=os.environ.get(OLLAMA_HOST_ENV) or None,
        )

    def api_key_for(self, provider: ProviderTag) -> str | None:
        """Return the key for `provider`; Ollama needs none.

        Raises:
            ConfigError: when a keyed provider has no key
        """
        if provider is ProviderTag.OLLAMA:
            return None
        key = getattr(self, f"{provider.value}_api_key")
        if not key:
            env = API_KEY_ENV[provider]
            raise ConfigError(
                message=f"No API key configured for {provider}",
                hint=f"Set the {env} environment variable",
            )
        return key

    def base_url_for(self, provider: ProviderTag) -> str | None:
        if provider is ProviderTag.OLLAMA:
            return self.ollama_host
        return None


def _read_document(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".toml":
        return tomlkit.parse(text).unwrap()
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            msg = "top level must be a mapping"
            raise TypeError(msg)
        return data
    msg = f"unsupported config format {path.suffix!r}"
    raise ValueError(msg)


def _ms(value: Any) -> timedelta:
    return timedelta(milliseconds=float(value))


def _table(document: dict[str, Any], name: str) -> dict[str, Any]:
    table = document.get(name) or {}
    if not isinstance(table, dict):
        raise ConfigError(
            message=f"[{name}] must be a table, got {type(table).__name__}",
            hint=f"Put the {name} options under a [{name}] section.",
        )
    return table


def config_values(document: dict[str, Any]) -> dict[str, Any]:
    """Map a config document onto PipelineConfig fields.

    `[general]` supplies provider, model and chunk_size; `[chunking]` may set
    chunk_size and an overlap in tokens; `[retry]` holds the backoff policy in
    milliseconds.

    Args:
        document (dict[str, Any]): the parsed file

    Raises:
        ConfigError: when a section is not a table or a number does not parse

    Returns:
        dict[str, Any]: keyword arguments for `PipelineConfig.create`
    """
    general = _table(document, "general")
    chunking = _table(document, "chunking")
    retry = _table(document, "retry")

    values: dict[str, Any] = {}
    if "provider" in general:
        values["provider"] = general["provider"]
    if general.get("model"):
        values["model"] = general["model"]

    try:
        chunk_size = chunking.get("chunk_size", general.get("chunk_size"))
        if chunk_size is not None:
            values["token_budget"] = int(chunk_size)
        overlap = chunking.get("overlap")
        if overlap is not None:
            budget = values.get("token_budget", DEFAULT_TOKEN_BUDGET)
            values["overlap_fraction"] = int(overlap) / budget if budget > 0 else 0.0
        if "initial_backoff_ms" in retry:
            values["initial_backoff"] = _ms(retry["initial_backoff_ms"])
        if "max_backoff_ms" in retry:
            values["max_backoff"] = _ms(retry["max_backoff_ms"])
    except (TypeError, ValueError, OverflowError) as e:
        raise ConfigError(
            message=f"Invalid number in config file: {e}",
            hint="chunk_size and overlap are token counts; backoff values are milliseconds.",
        ) from e

    if "max_retries" in retry:
        values["max_retries"] = retry["max_retries"]
    if "jitter" in retry:
        values["jitter"] = retry["jitter"]
    return values


def load_pipeline_config(path: str | Path, **overrides: Any) -> PipelineConfig:
    """Read a TOML or YAML config file into a PipelineConfig.

    Args:
        path (str | Path): the config file
        **overrides: values taking precedence over the file

    Raises:
        ConfigError: when the file cannot be read or holds invalid values

    Returns:
        PipelineConfig: the validated configuration
    """
    path = Path(path)
    try:
        document = _read_document(path)
    except (OSError, ValueError, TypeError, yaml.YAMLError, TOMLKitError) as e:
        raise ConfigError(
            message=f"Cannot read config file {path}: {e}",
            hint="Check the file exists and is valid TOML or YAML.",
        ) from e
    values = {**config_values(document), **overrides}
    logger.debug("config_loaded", path=str(path), keys=sorted(values))
    return PipelineConfig.create(**values)
