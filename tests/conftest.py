"""
Pytest configuration for the PM team tests.

This module provides:
1. Async test support without pytest-asyncio
2. Settings rooted in a temporary project directory
3. A scripted completion client and a recording notifier
"""

import asyncio
import functools
from pathlib import Path
from typing import List, Optional

import pytest

from pm_controller.config import Settings
from pm_controller.llm_client import CompletionError


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------
class FakeLLM:
    """Completion client that replays scripted responses."""

    def __init__(self, responses: Optional[List[str]] = None, fail: bool = False):
        self.responses = list(responses or [])
        self.fail = fail
        self.calls: List[dict] = []

    @property
    def is_configured(self) -> bool:
        return True

    def _next(self) -> str:
        if self.fail:
            raise CompletionError("API unavailable")
        return self.responses.pop(0) if self.responses else "OK"

    async def pm_chat(self, system_prompt: str, user_message: str) -> str:
        self.calls.append({"kind": "pm", "system": system_prompt, "prompt": user_message})
        return self._next()

    async def specialist_chat(self, system_prompt: str, context: str, task: str) -> str:
        self.calls.append({"kind": "specialist", "system": system_prompt, "context": context, "prompt": task})
        return self._next()


class RecordingNotifier:
    """Collects notification texts."""

    def __init__(self):
        self.messages: List[str] = []

    async def __call__(self, text: str) -> None:
        self.messages.append(text)

    def joined(self) -> str:
        return "\n".join(self.messages)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temp project with all directories created."""
    s = Settings.for_root(tmp_path)
    s.ensure_directories()
    return s


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
