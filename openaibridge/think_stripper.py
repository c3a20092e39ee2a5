"""Removal of the model's leading <think>...</think> reasoning block."""

import os

THINK_PREFIX = "<think"
THINK_END = "</think>"
# Give up waiting for </think> once this much text is buffered
THINK_MAX_CHARS = 8000


class ThinkStripper:
    """Streaming filter that drops a reasoning block at the start of the output.

    Text is held back only while it could still be the start of a ``<think>``
    block. As soon as the output is clearly something else it passes through
    untouched.
    """

    def __init__(self, max_chars: int = THINK_MAX_CHARS):
        self.max_chars = max_chars
        self._done = False
        self._buffer = ""

    def feed(self, token: str) -> str:
        """Return the part of ``token`` that may be forwarded now."""
        if self._done:
            return token
        self._buffer += token
        trimmed = self._buffer.lstrip()
        if trimmed and not (THINK_PREFIX.startswith(trimmed) or trimmed.startswith(THINK_PREFIX)):
            return self._release(self._buffer)
        idx = self._buffer.find(THINK_END)
        if idx >= 0:
            return self._release(self._buffer[idx + len(THINK_END):])
        if len(self._buffer) > self.max_chars:
            return self._release(self._buffer)
        return ""

    def flush(self) -> str:
        """Return anything still held when the stream ends."""
        if self._done:
            return ""
        return self._release(self._buffer)

    def _release(self, text: str) -> str:
        self._done = True
        self._buffer = ""
        return text


def think_stripping_enabled() -> bool:
    """STRIP_THINK=0 forwards reasoning blocks to clients unchanged."""
    return os.environ.get("STRIP_THINK", "1") != "0"


def strip_think_from_text(text: str) -> str:
    """Whole-text form of :class:`ThinkStripper`, for non-streaming responses."""
    stripper = ThinkStripper()
    return stripper.feed(text) + stripper.flush()
