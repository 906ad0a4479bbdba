"""Resilient model invocation.

One `invoke` call drives a small state machine:

    PENDING -> SUCCEEDED
    PENDING -> RETRYING -> PENDING   (after the backoff delay)
    PENDING -> EXHAUSTED | FATAL

Only retryable failures leave PENDING for RETRYING; fatal ones end the call on
the first occurrence.
"""

from __future__ import annotations

import asyncio
import random
import re
import sys
import time
from dataclasses import dataclass, field
from enum import StrEnum, auto
from typing import TYPE_CHECKING, cast

import httpx

from repo_distill.events import AttemptEvent, emit
from repo_distill.exceptions import (
    ClientError,
    ExhaustedError,
    FatalError,
    FatalReason,
    ProviderHTTPError,
    RetryableError,
)
from repo_distill.logging import logger
from repo_distill.models import SegmentResult
from repo_distill.providers import CompletionOptions, Message

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from repo_distill.cost import CostTracker
    from repo_distill.events import EventSink
    from repo_distill.providers import LLMProvider
    from repo_distill.settings import PipelineConfig

    Sleep = Callable[[float], Awaitable[None]]

JITTER_RATIO = 0.25
# 2.0 ** 1024 overflows; past this the product is inf and the cap applies.
_MAX_DOUBLINGS = sys.float_info.max_exp - 1
RETRYABLE_STATUS = frozenset({408, 429})
AUTH_STATUS = frozenset({401, 403})
_CONTEXT_LENGTH = re.compile(
    r"context_length_exceeded|prompt is too long|maximum context length|context window",
    re.IGNORECASE,
)


class InvocationState(StrEnum):
    PENDING = auto()
    RETRYING = auto()
    SUCCEEDED = auto()
    EXHAUSTED = auto()
    FATAL = auto()


_TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    InvocationState.PENDING: frozenset(
        {InvocationState.SUCCEEDED, InvocationState.RETRYING, InvocationState.EXHAUSTED, InvocationState.FATAL},
    ),
    InvocationState.RETRYING: frozenset({InvocationState.PENDING}),
    InvocationState.SUCCEEDED: frozenset(),
    InvocationState.EXHAUSTED: frozenset(),
    InvocationState.FATAL: frozenset(),
}


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt; total attempts are `max_retries + 1`.
        initial_backoff: Delay before the first retry, in seconds.
        max_backoff: Upper bound of any delay, in seconds.
        jitter: Add up to 25% random extra delay.
    """

    max_retries: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    jitter: bool = True

    @classmethod
    def from_config(cls, config: PipelineConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            initial_backoff=config.initial_backoff.total_seconds(),
            max_backoff=config.max_backoff.total_seconds(),
            jitter=config.jitter,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def base_delay(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based), without jitter."""
        doublings = min(attempt - 1, _MAX_DOUBLINGS)
        return min(self.initial_backoff * 2.0**doublings, self.max_backoff)

    def delay(self, attempt: int, *, retry_after: float | None = None, rng: random.Random | None = None) -> float:
        """Delay to wait after failed attempt `attempt`.

        Args:
            attempt (int): 1-based number of the attempt that failed
            retry_after (float | None, optional): server-requested minimum delay. Defaults to None.
            rng (random.Random | None, optional): jitter source. Defaults to None.

        Returns:
            float: seconds to sleep, never above `max_backoff`
        """
        base = self.base_delay(attempt)
        delay = base
        if self.jitter:
            delay += (rng or random).uniform(0.0, JITTER_RATIO * base)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_backoff)


@dataclass
class RetryState:
    """State of one in-flight invocation; owned by that call only."""

    state: InvocationState = InvocationState.PENDING
    attempt: int = 0
    delays: list[float] = field(default_factory=list)
    last_error: ClientError | None = None

    def _move(self, target: InvocationState) -> None:
        if target not in _TRANSITIONS[self.state]:
            msg = f"invalid transition {self.state} -> {target}"
            raise RuntimeError(msg)
        self.state = target

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def begin_attempt(self) -> int:
        if self.state is not InvocationState.PENDING:
            msg = f"cannot start an attempt while {self.state}"
            raise RuntimeError(msg)
        self.attempt += 1
        return self.attempt

    def succeed(self) -> None:
        self._move(InvocationState.SUCCEEDED)

    def fail(self, error: ClientError, policy: RetryPolicy, rng: random.Random | None = None) -> float | None:
        """Record a failed attempt and decide what happens next.

        Returns:
            float | None: the delay before the next attempt, or None when the call is over
        """
        self.last_error = error
        if not isinstance(error, RetryableError):
            self._move(InvocationState.FATAL)
            return None
        if self.attempt >= policy.max_attempts:
            self._move(InvocationState.EXHAUSTED)
            return None
        self._move(InvocationState.RETRYING)
        delay = policy.delay(self.attempt, retry_after=error.retry_after, rng=rng)
        self.delays.append(delay)
        return delay

    def resume(self) -> None:
        self._move(InvocationState.PENDING)


def classify(error: ProviderHTTPError | httpx.HTTPError, provider: str = "") -> ClientError:
    """Map a raw provider failure onto the client error taxonomy.

    Args:
        error (ProviderHTTPError | httpx.HTTPError): what the adapter raised
        provider (str, optional): provider name for diagnostics. Defaults to "".

    Returns:
        ClientError: a RetryableError or a FatalError
    """
    if isinstance(error, ProviderHTTPError):
        status = error.status_code
        if status in RETRYABLE_STATUS or status >= 500:
            return RetryableError(
                message=error.message,
                provider=provider,
                status_code=status,
                retry_after=error.retry_after,
            )
        if _CONTEXT_LENGTH.search(error.body or error.message):
            reason = FatalReason.CONTEXT_LENGTH
        elif status in AUTH_STATUS:
            reason = FatalReason.AUTHENTICATION
        else:
            reason = FatalReason.MALFORMED_REQUEST
        return FatalError(message=error.message, provider=provider, status_code=status, reason=reason)
    if isinstance(error, httpx.TimeoutException | httpx.TransportError):
        return RetryableError(message=f"{type(error).__name__}: {error}", provider=provider)
    return FatalError(message=f"{type(error).__name__}: {error}", provider=provider)


class ResilientClient:
    """Sends segment prompts to a provider with retries and cost accounting.

    `sleep` and `rng` are injectable so tests can run the backoff schedule
    without waiting.
    """

    def __init__(
        self,
        provider: LLMProvider,
        policy: RetryPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
        sink: EventSink | None = None,
    ) -> None:
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._sink = sink

    async def invoke(
        self,
        segment_text: str,
        options: CompletionOptions | None = None,
        *,
        sequence_index: int = 0,
        operation: str = "",
        cost: CostTracker | None = None,
    ) -> SegmentResult:
        """Send `segment_text` as one user message until it succeeds or fails terminally.

        Args:
            segment_text (str): the full prompt
            options (CompletionOptions | None, optional): generation settings. Defaults to None.
            sequence_index (int, optional): index reported on events and the result. Defaults to 0.
            operation (str, optional): label recorded in the cost tracker. Defaults to "".
            cost (CostTracker | None, optional): accumulator updated after success. Defaults to None.

        Raises:
            FatalError: on the first non-retryable failure, without retrying
            ExhaustedError: when every allowed attempt failed with a retryable error

        Returns:
            SegmentResult: the generated text and usage
        """
        options = options or CompletionOptions()
        messages = [Message(role="user", content=segment_text)]
        provider_name = str(self.provider.name)
        state = RetryState()
        started = time.perf_counter()

        while True:
            attempt = state.begin_attempt()
            cause: BaseException | None = None
            try:
                response = await self.provider.complete(messages, options)
            except FatalError as e:
                error: ClientError = e
                error.provider = error.provider or provider_name
                cause = e.__cause__
            except (ProviderHTTPError, httpx.HTTPError) as e:
                error = classify(e, provider_name)
                cause = e
            else:
                state.succeed()
                emit(AttemptEvent(sequence_index=sequence_index, attempt=attempt, outcome=str(state.state)), self._sink)
                if cost is not None:
                    cost.record(
                        operation or f"segment {sequence_index}",
                        response.input_tokens,
                        response.output_tokens,
                        sink=self._sink,
                    )
                return SegmentResult(
                    sequence_index=sequence_index,
                    text=response.content,
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                    latency_seconds=time.perf_counter() - started,
                    attempts=attempt,
                )

            delay = state.fail(error, self.policy, self._rng)
            emit(
                AttemptEvent(
                    sequence_index=sequence_index,
                    attempt=attempt,
                    outcome=str(state.state),
                    classification="retryable" if isinstance(error, RetryableError) else "fatal",
                    delay_seconds=delay,
                    status_code=error.status_code,
                ),
                self._sink,
            )

            if state.state is InvocationState.FATAL:
                raise error from cause
            if state.state is InvocationState.EXHAUSTED:
                last = cast("RetryableError", error)
                raise ExhaustedError(
                    message=f"gave up after {attempt} attempts: {last.message}",
                    provider=provider_name,
                    status_code=last.status_code,
                    retry_after=last.retry_after,
                    attempts=attempt,
                    last_error=last,
                ) from last

            logger.warning(
                "invoke_retry_scheduled",
                provider=provider_name,
                sequence_index=sequence_index,
                attempt=attempt,
                delay_seconds=delay,
                status_code=error.status_code,
            )
            await self._sleep(delay or 0.0)
            state.resume()
