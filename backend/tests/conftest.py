"""Shared pytest fixtures for all tests."""

import json

import pytest

from sitebuilder.api_keys import PROVIDERS
from sitebuilder.config import get_settings
from sitebuilder.generation import ChatLog, GenerationProgress, StreamedGenerationConsumer
from sitebuilder.sse_utils import sse_event


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """No provider keys from the environment; local store under tmp_path."""
    for provider in PROVIDERS:
        monkeypatch.delenv(f"{provider.upper()}_API_KEY", raising=False)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def progress():
    return GenerationProgress()


@pytest.fixture
def chat():
    return ChatLog()


@pytest.fixture
def consumer(progress, chat):
    """Consumer that finishes on `complete` (no apply step)."""
    return StreamedGenerationConsumer(progress, chat)


def sse_lines(*events):
    """Render (type, data) pairs to the raw lines a client reads."""
    lines = []
    for event_type, data in events:
        lines.extend(sse_event(event_type, data).splitlines())
    return lines


def parse_sse_body(text):
    """Decode every `data: ` record of a streamed response body."""
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


class FakeExecResult:
    def __init__(self, result="", exit_code=0):
        self.result = result
        self.exit_code = exit_code
