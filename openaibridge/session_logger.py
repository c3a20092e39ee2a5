"""Session logging for bridge requests."""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from .image_utils import extract_text_from_content

logger = logging.getLogger(__name__)


def mask_api_key(api_key: str | None) -> str | None:
    """Mask an API key for logs, keeping only the first 8 chars."""
    if not api_key:
        return None
    if len(api_key) <= 8:
        return "..."
    return api_key[:8] + "..."


class SessionLogger:
    """Logs a single request/response session to a JSON file."""

    def __init__(self, request_id: str, model: str, api_key: str | None = None):
        self.request_id = request_id
        self.model = model
        self.api_key = mask_api_key(api_key)
        self.start_time = datetime.now(timezone.utc)
        self.chunks: list[tuple[datetime, str]] = []
        self.tool_calls: list[dict] = []
        self.finish_reason: str | None = None
        self.error: str | None = None
        self.exception_type: str | None = None
        self.traceback_str: str | None = None
        self.query_ms: int | None = None
        self.prompt_chars: int | None = None
        self.image_count = 0
        self.prompt_tokens: int | None = None
        self.completion_tokens: int | None = None

        # Ensure log directory exists
        self.log_dir = Path(os.environ.get("LOG_DIR", "logs/sessions"))
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = self.log_dir / f"{request_id}.json"

    def log_prompt(self, prompt: str, image_count: int = 0) -> None:
        """Record the size of the encoded prompt sent to the session bridge."""
        self.prompt_chars = len(prompt)
        self.image_count = image_count

    def log_chunk(self, content: str) -> None:
        """Record a streaming chunk with timestamp."""
        self.chunks.append((datetime.now(timezone.utc), content))

    def log_tool_call(self, name: str, arguments: dict) -> None:
        self.tool_calls.append({"name": name, "arguments": arguments})

    def log_finish(self, reason: str) -> None:
        """Record the finish reason."""
        self.finish_reason = reason

    def log_timing(self, query_ms: int) -> None:
        self.query_ms = query_ms

    def log_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        """Record token usage."""
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens

    def log_error(self, error: str, *, exception_type: str | None = None,
                  traceback_str: str | None = None) -> None:
        """Record an error with optional diagnostic details."""
        self.error = error
        if exception_type is not None:
            self.exception_type = exception_type
        if traceback_str is not None:
            self.traceback_str = traceback_str

    def write(self, messages: list, stream: bool, tools: list | None = None) -> None:
        """Write the complete session log as JSON."""
        end_time = datetime.now(timezone.utc)
        duration_ms = int((end_time - self.start_time).total_seconds() * 1000)

        msg_list = []
        for msg in messages:
            entry = {
                "role": msg.role,
                "content": extract_text_from_content(msg.content),
            }
            if msg.tool_calls:
                entry["tool_calls"] = [tc.function.name for tc in msg.tool_calls]
            if msg.tool_call_id:
                entry["tool_call_id"] = msg.tool_call_id
            msg_list.append(entry)

        timing: dict[str, int] = {"duration_ms": duration_ms}
        if self.query_ms is not None:
            timing["query_ms"] = self.query_ms

        usage: dict[str, int] = {}
        if self.prompt_tokens is not None:
            usage["prompt_tokens"] = self.prompt_tokens
        if self.completion_tokens is not None:
            usage["completion_tokens"] = self.completion_tokens

        data = {
            "request_id": self.request_id,
            "model": self.model,
            "api_key": self.api_key,
            "timestamp": self.start_time.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "messages": msg_list,
            "parameters": {
                "stream": stream,
                "tools": [t.function.name for t in tools] if tools else [],
            },
            "prompt": {"chars": self.prompt_chars, "images": self.image_count},
            "response": "".join(content for _, content in self.chunks),
            "tool_calls": self.tool_calls,
            "finish_reason": self.finish_reason,
            "timing": timing,
            "usage": usage,
            "error": self.error,
        }
        if self.exception_type:
            data["exception_type"] = self.exception_type
        if self.traceback_str:
            data["traceback"] = self.traceback_str

        try:
            with open(self.log_path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning(f"[session_logger] Failed to write {self.log_path}: {e}")
