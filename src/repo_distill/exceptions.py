from __future__ import annotations

import io
import re
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from repo_distill.cost import CostSummary

_REDACTION_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(api[_-]?key[=:\s]+)[^\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(token[=:\s]+)[^\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(?i)(bearer\s+)[^\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(sk-[a-zA-Z0-9_-]{8,})"), "[REDACTED]"),
]

_RETRY_SUGGESTION = (
    "Retry the run later, reduce the scope (fewer files or a smaller token budget per request), "
    "or switch to another provider."
)


def redact_sensitive_data(message: str) -> str:
    """Mask credentials that upstream error payloads sometimes echo back.

    Args:
        message (str): the raw message

    Returns:
        str: the message with API keys, tokens and bearer credentials replaced
    """
    for pattern, replacement in _REDACTION_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class FatalReason(StrEnum):
    """Why a failed request must not be retried."""

    MALFORMED_REQUEST = auto()
    AUTHENTICATION = auto()
    CONTEXT_LENGTH = auto()
    MALFORMED_RESPONSE = auto()


@dataclass(eq=False)
class DistillError(Exception):
    """Base exception for errors in the repo_distill package."""

    message: str = ""

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return redact_sensitive_data(self.message)

    @property
    def title(self) -> str:
        return "Pipeline error"

    @property
    def suggestion(self) -> str:
        return ""


@dataclass(eq=False)
class ConfigError(DistillError):
    """Raised when the budget, overlap or provider configuration is invalid."""

    hint: str = ""
    stage: str = "validating configuration"

    @property
    def title(self) -> str:
        return "Configuration error"

    @property
    def suggestion(self) -> str:
        return self.hint


@dataclass(eq=False)
class CompressionError(DistillError):
    """Raised by a structural parse that cannot be trusted; always recovered locally."""

    language: str = ""

    @property
    def title(self) -> str:
        return "Compression error"


@dataclass(eq=False)
class ProviderHTTPError(DistillError):
    """Raised by a provider adapter when the endpoint answers with a non-2xx status."""

    status_code: int = 0
    body: str = ""
    retry_after: float | None = None


@dataclass(eq=False)
class ClientError(DistillError):
    """Base class for terminal failures of a model invocation."""

    provider: str = ""
    status_code: int | None = None
    stage: str = ""
    spent: CostSummary | None = None

    @property
    def title(self) -> str:
        return "LLM provider error"


@dataclass(eq=False)
class RetryableError(ClientError):
    """A transient failure: rate limiting, a 5xx answer, or a network/timeout problem."""

    retry_after: float | None = None

    @property
    def title(self) -> str:
        return "Transient provider failure"

    @property
    def suggestion(self) -> str:
        return _RETRY_SUGGESTION


@dataclass(eq=False)
class FatalError(ClientError):
    """A failure that another attempt cannot fix."""

    reason: FatalReason = FatalReason.MALFORMED_REQUEST

    @property
    def title(self) -> str:
        return "Request rejected by provider"

    @property
    def suggestion(self) -> str:
        if self.reason is FatalReason.AUTHENTICATION:
            return "Check the API key for this provider and that it is allowed to use the model."
        if self.reason is FatalReason.CONTEXT_LENGTH:
            return "Lower token_budget so every segment fits in the model's context window."
        if self.reason is FatalReason.MALFORMED_RESPONSE:
            return "The provider answered with an unexpected payload; try again or switch providers."
        return "Check the model name and request options."


@dataclass(eq=False)
class ResponseFormatError(FatalError):
    """Raised when a 2xx payload does not have the expected shape."""

    reason: FatalReason = FatalReason.MALFORMED_RESPONSE


@dataclass(eq=False)
class ExhaustedError(RetryableError):
    """Raised when every allowed attempt failed with a retryable error.

    It stays a `RetryableError` so callers matching on the transient kind still
    see it; `last_error` is the failure of the final attempt.
    """

    attempts: int = 0
    last_error: RetryableError | None = None

    @property
    def title(self) -> str:
        return "Retries exhausted"


def format_error(error: DistillError, *, verbose: bool = False) -> str:
    """Render an error for display by the surrounding command-line tool.

    Args:
        error (DistillError): the error to render
        verbose (bool, optional): include the exception chain. Defaults to False.

    Returns:
        str: a multi-line, human readable description
    """
    out = io.StringIO()
    out.write(f"Error: {error.title}\n\nWhat happened:\n")
    lines: list[str] = []
    stage = getattr(error, "stage", "")
    if stage:
        lines.append(f"Stage: {stage}")
    lines.append(f"Error: {error}")
    if isinstance(error, ExhaustedError):
        lines.append(f"Attempts: {error.attempts}")
    spent = getattr(error, "spent", None)
    if spent is not None:
        lines.append(
            f"Spent so far: {spent.total_input_tokens} input / {spent.total_output_tokens} output tokens "
            f"(${spent.total_cost:.4f})",
        )
    for i, line in enumerate(lines):
        prefix = "└─" if i == len(lines) - 1 else "├─"
        out.write(f"{prefix} {line}\n")
    if error.suggestion:
        out.write(f"\nSuggestion:\n• {error.suggestion}\n")
    if verbose and error.__cause__ is not None:
        out.write(f"\nCaused by:\n  {redact_sensitive_data(repr(error.__cause__))}\n")
    return out.getvalue()
