"""Encoding of OpenAI message history into the model's ChatML prompt.

The model has no tool role of its own: earlier tool calls are replayed in its
native tag syntax and tool results are fed back as ``observation`` blocks.
"""

import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any

import httpx

from .image_utils import ImageAttachment, extract_first_image
from .models import ContentPart, Message, TextContent, Tool
from .tool_parser import (
    ARG_KEY_CLOSE,
    ARG_KEY_OPEN,
    ARG_VALUE_CLOSE,
    ARG_VALUE_OPEN,
    TOOL_CALL_CLOSE,
    TOOL_CALL_OPEN,
)

logger = logging.getLogger(__name__)

IM_START = "<|im_start|>"
IM_END = "<|im_end|>"


def env_int(name: str, default: int) -> int:
    """Read a non-negative integer setting, falling back to ``default`` when malformed."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value < 0:
        logger.warning(f"[config] {name}={raw!r} is not a non-negative integer, using {default}")
        return default
    return value


# Small models lose track of long system prompts; keep the head only
SYSTEM_PROMPT_MAX_CHARS = env_int("SYSTEM_PROMPT_MAX_CHARS", 1000)


@dataclass
class PromptBundle:
    """Prompt text plus the images to send with it."""

    prompt: str
    images: list[ImageAttachment] = field(default_factory=list)

    def bridge_options(self) -> dict[str, Any] | None:
        """Options argument for ``send_prompt``; None when there is nothing to pass."""
        if not self.images:
            return None
        return {"images": [img.to_dict() for img in self.images]}


def chatml_block(role: str, text: str) -> str:
    return f"{IM_START}{role}\n{text}\n{IM_END}\n"


def estimate_input_tokens(text: str) -> int:
    """Rough token count (4 characters per token)."""
    return math.ceil(len(text) / 4)


def _tool_fields(tool: dict[str, Any]) -> tuple[str, str, list[str]]:
    # Chat Completions nests under "function", the Responses API does not
    fn = tool.get("function") or {}
    name = tool.get("name") or fn.get("name") or ""
    description = tool.get("description") or fn.get("description") or ""
    parameters = tool.get("parameters") or fn.get("parameters") or {}
    required = parameters.get("required") or [] if isinstance(parameters, dict) else []
    return name, description.split("\n")[0][:80], list(required)


def format_tools_for_prompt(tools: list[dict[str, Any]]) -> str:
    """Describe the available tools and the tag syntax the model must use."""
    lines = ["# Tools"]
    for tool in tools:
        name, description, required = _tool_fields(tool)
        params = f" [{', '.join(required)}]" if required else ""
        lines.append(f"- {name}: {description}{params}")
    lines.append("")
    lines.append(f"IMPORTANT: To perform actions, you MUST output {TOOL_CALL_OPEN} tags.")
    lines.append(
        f"Format: {TOOL_CALL_OPEN}ToolName{ARG_KEY_OPEN}param{ARG_KEY_CLOSE}"
        f"{ARG_VALUE_OPEN}value{ARG_VALUE_CLOSE}{TOOL_CALL_CLOSE}"
    )
    lines.append(
        f"Example: {TOOL_CALL_OPEN}Bash{ARG_KEY_OPEN}command{ARG_KEY_CLOSE}"
        f"{ARG_VALUE_OPEN}npm install{ARG_VALUE_CLOSE}{TOOL_CALL_CLOSE}"
    )
    return "\n".join(lines)


def parse_arguments(arguments: str | dict | None) -> dict[str, Any]:
    """Decode OpenAI ``function.arguments``; anything that is not a JSON object yields {}."""
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        decoded = json.loads(arguments)
    except ValueError:
        logger.warning(f"[prompt] Dropping unparsable tool arguments: {arguments[:80]}")
        return {}
    return decoded if isinstance(decoded, dict) else {}


def serialize_tool_call(name: str, arguments: dict[str, Any]) -> str:
    """Render a tool call the way the model itself would have written it."""
    parts = [TOOL_CALL_OPEN, name]
    for key, value in arguments.items():
        # Strings go in verbatim, so "true" or "120000" read back as bool/number; accepted
        text = value if isinstance(value, str) else json.dumps(value)
        parts.append(f"{ARG_KEY_OPEN}{key}{ARG_KEY_CLOSE}{ARG_VALUE_OPEN}{text}{ARG_VALUE_CLOSE}")
    parts.append(TOOL_CALL_CLOSE)
    return "".join(parts)


def content_to_text(content: str | list[ContentPart] | None) -> str:
    """Prompt text of a message; image parts contribute nothing."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "\n".join(part.text for part in content if isinstance(part, TextContent))


def _system_block(system_parts: list[str], tools: list[dict[str, Any]] | None) -> str | None:
    sections = []
    system_text = "\n\n".join(p for p in system_parts if p)
    if system_text:
        sections.append(system_text[:SYSTEM_PROMPT_MAX_CHARS])
    if tools:
        sections.append(format_tools_for_prompt(tools))
    if not sections:
        return None
    return chatml_block("system", "\n\n".join(sections))


async def convert_messages(
    messages: list[Message],
    tools: list[Tool] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> PromptBundle:
    """Build the ChatML prompt and image list for a chat completion request.

    Args:
        messages: OpenAI message history
        tools: Tool definitions to advertise in the system block
        http_client: Client used to download HTTP(S) image URLs

    Returns:
        PromptBundle with the prompt ending in an open assistant turn
    """
    tool_dicts = [t.model_dump() for t in tools] if tools else None
    system_parts = [content_to_text(m.content) for m in messages if m.role == "system"]
    blocks = []
    system = _system_block(system_parts, tool_dicts)
    if system:
        blocks.append(system)

    known_call_ids: set[str] = set()
    for msg in messages:
        if msg.role == "system":
            continue
        text = content_to_text(msg.content)
        if msg.role == "user":
            blocks.append(chatml_block("user", text))
        elif msg.role == "assistant":
            calls = msg.tool_calls or []
            for call in calls:
                known_call_ids.add(call.id)
                text += serialize_tool_call(call.function.name, parse_arguments(call.function.arguments))
            if text:
                blocks.append(chatml_block("assistant", text))
        elif msg.role == "tool":
            if msg.tool_call_id not in known_call_ids:
                logger.warning(f"[prompt] Tool result for unknown tool_call_id {msg.tool_call_id!r}")
            blocks.append(chatml_block("observation", text))

    blocks.append(f"{IM_START}assistant\n")
    image = await extract_first_image(messages, http_client)
    return PromptBundle(prompt="".join(blocks), images=[image] if image else [])


def _response_item_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            p.get("text", "") for p in content
            if isinstance(p, dict) and p.get("type") in ("input_text", "output_text", "text")
        )
    return ""


def input_to_prompt(
    input: str | list[dict[str, Any]],
    instructions: str | None = None,
    tools: list[dict[str, Any]] | None = None,
) -> str:
    """Build the ChatML prompt for a Responses API request."""
    blocks = []
    system = _system_block([instructions] if instructions else [], tools)
    if system:
        blocks.append(system)

    if isinstance(input, str):
        blocks.append(chatml_block("user", input))
    else:
        for item in input:
            item_type = item.get("type")
            if item_type == "function_call":
                call = serialize_tool_call(item.get("name", ""), parse_arguments(item.get("arguments")))
                blocks.append(chatml_block("assistant", call))
            elif item_type == "function_call_output":
                output = item.get("output")
                if not isinstance(output, str):
                    output = json.dumps(output) if output is not None else ""
                blocks.append(chatml_block("observation", output))
            else:
                text = _response_item_text(item.get("content"))
                if text:
                    blocks.append(chatml_block(item.get("role", "user"), text))

    blocks.append(f"{IM_START}assistant\n")
    return "".join(blocks)
