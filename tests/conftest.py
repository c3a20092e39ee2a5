"""Pytest configuration for openaibridge tests."""

import asyncio
import os

import httpx
import pytest

from openaibridge.session_bridge import ImageResult, SendPromptResult, TokenUsage

SERVER_URL = os.environ.get("BRIDGE_URL", "http://localhost:8082")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as unit test (no server required)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires running server)"
    )


def pytest_collection_modifyitems(config, items):
    """Check server availability unless running unit tests only."""
    markexpr = config.option.markexpr
    if markexpr and "unit" in markexpr:
        return  # Skip server check when running unit tests

    if all(item.get_closest_marker("unit") for item in items):
        return  # Skip server check for pure unit test runs

    try:
        response = httpx.get(f"{SERVER_URL}/health", timeout=5.0)
        if response.status_code != 200 or response.json().get("status") != "ok":
            pytest.exit(
                f"\n\nServer not responding correctly at {SERVER_URL}\n"
                f"Start the server with: openaibridge --bridge module:factory\n",
                returncode=1
            )
    except (httpx.ConnectError, httpx.TimeoutException):
        pytest.exit(
            f"\n\nServer not available at {SERVER_URL}\n"
            f"Start the server with: openaibridge --bridge module:factory\n",
            returncode=1
        )


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    """Keep session logs out of the working tree."""
    path = tmp_path / "sessions"
    monkeypatch.setenv("LOG_DIR", str(path))
    return path


class FakeSessionManager:
    """Records generate_image calls and returns canned images."""

    def __init__(self, image: str = "abc", error: Exception | None = None):
        self.image = image
        self.error = error
        self.calls: list[tuple[str, str, dict]] = []

    async def generate_image(self, session_id, prompt, options):
        self.calls.append((session_id, prompt, options))
        if self.error is not None:
            raise self.error
        return ImageResult(image=self.image)


class FakeSessionBridge:
    """In-memory session bridge replaying a fixed token sequence.

    ``tokens`` are delivered one by one to ``on_token`` and joined for the
    final response. ``error`` is raised after the tokens were delivered.
    """

    def __init__(self, tokens=None, llm_tokens: int = 5, error: Exception | None = None,
                 session_id=42, manager: FakeSessionManager | None = None):
        self.tokens = list(tokens or [])
        self.llm_tokens = llm_tokens
        self.error = error
        self.session_id = session_id
        self.manager = manager or FakeSessionManager()
        self.prompts: list[str] = []
        self.options: list[dict | None] = []
        self.cancelled = False

    async def send_prompt(self, prompt, on_token=None, options=None):
        self.prompts.append(prompt)
        self.options.append(options)
        for token in self.tokens:
            if on_token is not None:
                on_token(token)
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return SendPromptResult(
            response="".join(self.tokens),
            token_usage=TokenUsage(llm_tokens=self.llm_tokens, vlm_tokens=0, total_tokens=self.llm_tokens),
        )

    async def ensure_session(self):
        return self.session_id

    def get_session_id(self):
        return self.session_id

    def get_session_manager(self):
        return self.manager


@pytest.fixture
def fake_bridge():
    return FakeSessionBridge(tokens=["Hello", " world"])
