"""Incremental parser for the model's native tool-call tag syntax.

The model emits tool calls inline with ordinary text:

    <tool_call>get_weather<arg_key>city</arg_key><arg_value>London</arg_value></tool_call>

Output arrives in arbitrarily sized chunks (single characters, half a tag, several
calls at once), so the parser keeps only the suffix that could still turn into a tag
and releases everything else as text right away.
"""

import enum
import json
import math
import re
from dataclasses import dataclass, field
from typing import Literal, Union

TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"
ARG_KEY_OPEN = "<arg_key>"
ARG_KEY_CLOSE = "</arg_key>"
ARG_VALUE_OPEN = "<arg_value>"
ARG_VALUE_CLOSE = "</arg_value>"

# Longest span accepted between <tool_call> and </tool_call>
DEFAULT_MAX_CALL_CHARS = 65536

ArgumentValue = Union[str, int, float, bool, dict, list]

# A call name is one identifier with optional surrounding whitespace. The
# pattern that may extend it depends on what has been read so far.
_NAME_PATTERNS = {
    "lead": re.compile(r"\s*[\w.\-]*\s*"),
    "word": re.compile(r"[\w.\-]*\s*"),
    "trail": re.compile(r"\s*"),
}
_SPACE_RE = re.compile(r"\s*")
_LONGEST_TAG = max(len(t) for t in (TOOL_CALL_OPEN, TOOL_CALL_CLOSE, ARG_KEY_OPEN, ARG_KEY_CLOSE,
                                    ARG_VALUE_OPEN, ARG_VALUE_CLOSE))
_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")


@dataclass
class TextEvent:
    """Plain text released by the parser."""

    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass
class ToolCallEvent:
    """A complete tool call with coerced arguments (insertion ordered)."""

    name: str
    arguments: dict[str, ArgumentValue]
    type: Literal["tool_call"] = field(default="tool_call", init=False)


ParserEvent = Union[TextEvent, ToolCallEvent]


class Mode(enum.Enum):
    TEXT = "text"
    TOOL_NAME = "tool_name"
    ARG_KEY = "arg_key"
    AWAIT_VALUE = "await_value"   # between </arg_key> and <arg_value>
    ARG_VALUE = "arg_value"
    AFTER_ARG = "after_arg"       # between </arg_value> and <arg_key> or </tool_call>


def coerce_value(raw: str) -> ArgumentValue:
    """Convert a raw argument string into the most specific value it represents.

    Rules are applied to the whole trimmed value, in order: JSON object/array,
    boolean literal, numeric literal. Anything else is returned unchanged.

    Values that could not be written back as strict JSON (``1e999``, ``NaN``
    inside a structure, integers too long to convert) stay strings.
    """
    value = raw.strip()
    if value[:1] in ("{", "["):
        try:
            parsed = json.loads(value, parse_float=_finite_float, parse_constant=_reject_constant)
        except (ValueError, RecursionError):
            parsed = None
        if isinstance(parsed, (dict, list)):
            return parsed
    if value == "true":
        return True
    if value == "false":
        return False
    if _NUMBER_RE.fullmatch(value):
        try:
            if any(c in value for c in ".eE"):
                return _finite_float(value)
            return int(value)
        except ValueError:
            return raw
    return raw


def _finite_float(text: str) -> float:
    number = float(text)
    if not math.isfinite(number):
        raise ValueError(f"Number out of range: {text}")
    return number


def _reject_constant(name: str):
    raise ValueError(f"Not a JSON value: {name}")


def normalize_tool_arguments(arguments: dict[str, ArgumentValue]) -> dict[str, ArgumentValue]:
    """Unwrap the single-key ``{"arguments": {...}}`` form some models produce."""
    if len(arguments) == 1 and isinstance(arguments.get("arguments"), dict):
        return arguments["arguments"]
    return arguments


def _held_suffix_length(text: str, tags: tuple[str, ...]) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of a tag."""
    longest = max(len(tag) for tag in tags) - 1
    for size in range(min(longest, len(text)), 0, -1):
        suffix = text[-size:]
        if any(tag.startswith(suffix) for tag in tags):
            return size
    return 0


class ToolCallParser:
    """State machine turning a chunked character stream into parser events.

    Usage::

        parser = ToolCallParser()
        for token in stream:
            events.extend(parser.feed(token))
        events.extend(parser.flush())

    One instance per generation; never reuse it after ``flush()``.

    The buffer is scanned with a cursor and only compacted once per ``feed``,
    so a large chunk costs time linear in its length however many openers,
    calls or rejected spans it contains.
    """

    def __init__(self, max_call_chars: int = DEFAULT_MAX_CALL_CHARS):
        self.max_call_chars = max_call_chars
        self.mode = Mode.TEXT
        # Unconsumed input, preceded by the raw span of the open call (if any)
        self._buffer = ""
        self._pos = 0
        self._start = 0
        # No </arg_value> starts inside this half-open range of the buffer
        self._no_value_close = (0, 0)
        self._reset_call()

    def _reset_call(self) -> None:
        self._name_phase = "lead"
        self._name_start = 0
        self._name = ""
        self._key_start = 0
        self._key = ""
        self._value_start = 0
        self._pairs: list[tuple[str, str]] = []

    def feed(self, chunk: str) -> list[ParserEvent]:
        """Consume a chunk and return every event it completes."""
        events: list[ParserEvent] = []
        if not chunk:
            return events
        self._buffer += chunk
        while self._step(events):
            pass
        self._compact()
        return events

    def flush(self) -> list[ParserEvent]:
        """Release whatever is still buffered as literal text."""
        leftover = self._buffer[self._kept_from():]
        self._buffer = ""
        self._pos = self._start = 0
        self._no_value_close = (0, 0)
        self._reset_call()
        self.mode = Mode.TEXT
        if not leftover:
            return []
        return [TextEvent(leftover)]

    def _kept_from(self) -> int:
        return self._pos if self.mode is Mode.TEXT else self._start

    def _compact(self) -> None:
        cut = self._kept_from()
        if not cut:
            return
        self._buffer = self._buffer[cut:]
        self._pos -= cut
        self._start -= cut
        self._name_start -= cut
        self._key_start -= cut
        self._value_start -= cut
        low, high = self._no_value_close
        self._no_value_close = (low - cut, high - cut)

    # -- scanning helpers --------------------------------------------------

    def _tag_at_cursor(self, tags: tuple[str, ...]) -> str | None:
        for tag in tags:
            if self._buffer.startswith(tag, self._pos):
                return tag
        return None

    def _may_become(self, tags: tuple[str, ...]) -> bool:
        """True while the rest of the buffer is still a proper prefix of one of ``tags``."""
        rest = self._buffer[self._pos:self._pos + _LONGEST_TAG]
        return any(tag.startswith(rest) for tag in tags)

    def _held(self, tags: tuple[str, ...]) -> int:
        tail = self._buffer[max(self._pos, len(self._buffer) - _LONGEST_TAG):]
        return _held_suffix_length(tail, tags)

    # -- state machine -----------------------------------------------------

    def _step(self, events: list[ParserEvent]) -> bool:
        """Advance once. Returns False when more input is needed."""
        if self.mode is Mode.TEXT:
            return self._step_text(events)
        if self.mode is Mode.TOOL_NAME:
            return self._step_name(events)
        if self.mode is Mode.ARG_KEY:
            return self._step_key(events)
        if self.mode is Mode.AWAIT_VALUE:
            return self._step_expect(events, (ARG_VALUE_OPEN,))
        if self.mode is Mode.ARG_VALUE:
            return self._step_value(events)
        return self._step_expect(events, (ARG_KEY_OPEN, TOOL_CALL_CLOSE))

    def _step_text(self, events: list[ParserEvent]) -> bool:
        idx = self._buffer.find(TOOL_CALL_OPEN, self._pos)
        if idx >= 0:
            if idx > self._pos:
                events.append(TextEvent(self._buffer[self._pos:idx]))
            self._start = idx
            self._pos = self._name_start = idx + len(TOOL_CALL_OPEN)
            self.mode = Mode.TOOL_NAME
            return True
        end = len(self._buffer) - self._held((TOOL_CALL_OPEN,))
        if end > self._pos:
            events.append(TextEvent(self._buffer[self._pos:end]))
            self._pos = end
        return False

    def _step_name(self, events: list[ParserEvent]) -> bool:
        end = _NAME_PATTERNS[self._name_phase].match(self._buffer, self._pos).end()
        piece = self._buffer[self._pos:end]
        if piece:
            if not piece[-1].isspace():
                self._name_phase = "word"
            elif self._name_phase != "lead" or piece.strip():
                self._name_phase = "trail"
        self._pos = end

        closers = (ARG_KEY_OPEN, TOOL_CALL_CLOSE)
        closer = self._tag_at_cursor(closers)
        if closer is None:
            if self._may_become(closers):
                return self._check_size(events)
            return self._reject(events)
        self._name = self._buffer[self._name_start:self._pos].strip()
        if not self._name:
            return self._reject(events)
        self._pos += len(closer)
        if closer == TOOL_CALL_CLOSE:
            return self._finish(events)
        self._key_start = self._pos
        self.mode = Mode.ARG_KEY
        return True

    def _step_key(self, events: list[ParserEvent]) -> bool:
        idx = self._buffer.find("<", self._pos)
        if idx < 0:
            self._pos = len(self._buffer)
            return self._check_size(events)
        self._pos = idx
        if self._buffer.startswith(ARG_KEY_CLOSE, idx):
            self._key = self._buffer[self._key_start:idx].strip()
            self._pos = idx + len(ARG_KEY_CLOSE)
            self.mode = Mode.AWAIT_VALUE
            return True
        if self._may_become((ARG_KEY_CLOSE,)):
            return self._check_size(events)
        return self._reject(events)

    def _step_value(self, events: list[ParserEvent]) -> bool:
        # A closer ending past the size limit can never complete the call
        limit = self._start + self.max_call_chars
        search_from = self._pos
        low, high = self._no_value_close
        if low <= search_from < high:
            search_from = high
        idx = self._buffer.find(ARG_VALUE_CLOSE, search_from, limit)
        if idx >= 0:
            self._pairs.append((self._key, self._buffer[self._value_start:idx]))
            self._key = ""
            self._pos = idx + len(ARG_VALUE_CLOSE)
            self.mode = Mode.AFTER_ARG
            return True
        if len(self._buffer) >= limit:
            self._no_value_close = (self._pos, limit - len(ARG_VALUE_CLOSE) + 1)
            return self._reject(events)
        self._pos = max(self._pos, len(self._buffer) - self._held((ARG_VALUE_CLOSE,)))
        return self._check_size(events)

    def _step_expect(self, events: list[ParserEvent], tags: tuple[str, ...]) -> bool:
        """Skip whitespace, then require one of ``tags``."""
        self._pos = _SPACE_RE.match(self._buffer, self._pos).end()
        tag = self._tag_at_cursor(tags)
        if tag is None:
            if self._may_become(tags):
                return self._check_size(events)
            return self._reject(events)
        self._pos += len(tag)
        if tag == ARG_VALUE_OPEN:
            self._value_start = self._pos
            self.mode = Mode.ARG_VALUE
        elif tag == ARG_KEY_OPEN:
            self._key_start = self._pos
            self.mode = Mode.ARG_KEY
        else:
            return self._finish(events)
        return True

    def _check_size(self, events: list[ParserEvent]) -> bool:
        if self._pos - self._start > self.max_call_chars:
            return self._reject(events)
        return False

    def _finish(self, events: list[ParserEvent]) -> bool:
        if self._pos - self._start > self.max_call_chars:
            return self._reject(events)
        arguments = {key: coerce_value(raw) for key, raw in self._pairs}
        events.append(ToolCallEvent(name=self._name, arguments=arguments))
        self._reset_call()
        self.mode = Mode.TEXT
        return True

    def _reject(self, events: list[ParserEvent]) -> bool:
        """Give up on the current span: the opener becomes text, the rest is rescanned."""
        events.append(TextEvent(TOOL_CALL_OPEN))
        self._pos = self._start + len(TOOL_CALL_OPEN)
        self._reset_call()
        self.mode = Mode.TEXT
        return True
