from __future__ import annotations

import asyncio

import pytest
import structlog

from repo_distill.logging import bind_stage, logger, run_context, setup_logging


@pytest.mark.unit
def test_setup_logging_is_idempotent() -> None:
    assert setup_logging() is not None
    assert structlog.contextvars.merge_contextvars in structlog.get_config()["processors"]
    assert logger is not None


@pytest.mark.unit
def test_run_context_binds_and_restores() -> None:
    with run_context("preparing corpus", provider="anthropic", model="claude-sonnet-4-5-20250929"):
        assert structlog.contextvars.get_contextvars() == {
            "stage": "preparing corpus",
            "provider": "anthropic",
            "model": "claude-sonnet-4-5-20250929",
        }
        bind_stage("merge")
        assert structlog.contextvars.get_contextvars()["stage"] == "merge"

    assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.unit
def test_run_context_follows_worker_threads() -> None:
    async def main() -> dict:
        with run_context("analyze segment 1/1", provider="ollama"):
            return await asyncio.to_thread(structlog.contextvars.get_contextvars)

    assert asyncio.run(main()) == {"stage": "analyze segment 1/1", "provider": "ollama"}
