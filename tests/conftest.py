"""Global pytest configuration for hermetic test runs."""

from __future__ import annotations

import logging
import os
from typing import Any

import pytest

from parley.store import Store
from parley.types import ModelResponse, ToolCall


def pytest_sessionstart(session):  # noqa: ARG001
    # Prevent accidental outbound network during tests (integration/unit).
    os.environ.setdefault("PARLEY_DISABLE_NETWORK", "1")

    # Most environments won't have Docker available; allow explicit opt-in.
    os.environ.setdefault("SKIP_DOCKER_TESTS", "1")


class FakeClock:
    """Manually advanced clock for window and expiry tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedModel:
    """ChatModel that replays queued responses and records every call."""

    def __init__(self, responses: list[ModelResponse | Exception] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, response: ModelResponse | Exception) -> None:
        self.responses.append(response)

    async def chat(
        self,
        messages,
        *,
        model=None,
        system_prompt=None,
        tools=None,
        max_tokens=4096,
        temperature=None,
    ) -> ModelResponse:
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "model": model,
                "system_prompt": system_prompt,
                "tools": tools,
                "max_tokens": max_tokens,
            }
        )
        if not self.responses:
            return ModelResponse(content="done")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def tool_response(*calls: tuple[str, dict[str, Any]], content: str = "") -> ModelResponse:
    return ModelResponse(
        content=content,
        tool_calls=[ToolCall(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls)],
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "parley.db")
    s.init()
    return s


@pytest.fixture(autouse=True)
def _reset_parley_logging():
    """Drop handlers installed by configure_logging (e.g. via CLI commands)."""
    yield
    root = logging.getLogger("parley")
    for handler in list(root.handlers):
        if getattr(handler, "_parley_handler", False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(logging.NOTSET)
