"""Structured JSON logging shared by every pipeline component.

Lines carry whatever run context is bound with `run_context`, so the
compression, chunking and request logs of one run can be told apart from
another run in the same host process.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

_LOGGING_CONFIGURED = False


def setup_logging(filename: str | Path | None = None, level: int = logging.INFO) -> structlog.BoundLogger:
    """Configure structlog once for the repo_distill package.

    Args:
        filename: Optional path to a log file. If None, logs are written to stderr.
        level: Minimum level emitted by the filtering logger.

    Returns:
        The package logger.
    """
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if not _LOGGING_CONFIGURED:
        handler: logging.Handler = (
            logging.FileHandler(str(filename), encoding="utf-8") if filename else logging.StreamHandler(sys.stderr)
        )
        logging.basicConfig(level=level, handlers=[handler], format="%(message)s")
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_CONFIGURED = True

    return structlog.get_logger("repo_distill")


@contextmanager
def run_context(stage: str, **fields: Any) -> Iterator[None]:
    """Attach `stage` and `fields` to every log line emitted inside the block.

    The binding lives in a context variable, so it follows the current task and
    threads started with `asyncio.to_thread`, and is undone on exit.
    """
    with structlog.contextvars.bound_contextvars(stage=stage, **fields):
        yield


def bind_stage(stage: str) -> None:
    """Record the stage currently running; cleared with the enclosing `run_context`."""
    structlog.contextvars.bind_contextvars(stage=stage)


logger = setup_logging()
