"""OpenAI Responses API (``POST /v1/responses``) on top of the session bridge."""

import asyncio
import json
import logging
import os
import time
from typing import Any, Callable
from uuid import uuid4

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from .models import ResponsesRequest
from .prompt import estimate_input_tokens, input_to_prompt
from .session_bridge import SendPromptResult, SessionBridge, SessionBridgeError
from .think_stripper import ThinkStripper, strip_think_from_text, think_stripping_enabled
from .tool_parser import ParserEvent, ToolCallEvent, ToolCallParser, normalize_tool_arguments

logger = logging.getLogger(__name__)


def _gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:24]}"


def _usage(input_tokens: int, result: SendPromptResult | None) -> dict[str, int]:
    output_tokens = result.token_usage.llm_tokens if result is not None and result.token_usage else 0
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


def _message_item(item_id: str, text: str, status: str = "completed") -> dict[str, Any]:
    content = [{"type": "output_text", "text": text}] if status == "completed" else []
    return {"type": "message", "id": item_id, "role": "assistant", "status": status, "content": content}


def _function_call_item(event: ToolCallEvent) -> dict[str, Any]:
    return {
        "type": "function_call",
        "id": _gen_id("fc"),
        "call_id": _gen_id("call"),
        "name": event.name,
        "arguments": json.dumps(normalize_tool_arguments(event.arguments)),
        "status": "completed",
    }


class _EventWriter:
    """Formats named SSE events with a per-response sequence number."""

    def __init__(self):
        self.sequence_number = 0

    def __call__(self, event_name: str, data: dict[str, Any]) -> str:
        payload = {"type": event_name, "sequence_number": self.sequence_number, **data}
        self.sequence_number += 1
        return f"event: {event_name}\ndata: {json.dumps(payload)}\n\n"


def create_responses_router(get_bridge: Callable[[], SessionBridge]) -> APIRouter:
    """Create the Responses API router.

    Args:
        get_bridge: Returns the active session bridge, raising HTTPException
            when no bridge is available.
    """
    router = APIRouter()

    @router.post("/v1/responses")
    async def create_response(request: ResponsesRequest):
        """OpenAI Responses API endpoint, streaming or not."""
        active = get_bridge()
        model = request.model or os.environ.get("BRIDGE_MODEL", "local-model")
        tools = request.tools or None
        prompt = input_to_prompt(request.input, request.instructions, tools)
        input_tokens = estimate_input_tokens(prompt)
        response_id = _gen_id("resp")
        logger.info(f"[{response_id}] {'Streaming' if request.stream else 'Request'} | tools={len(tools or [])}")

        if request.stream:
            return StreamingResponse(
                _stream_response(active, prompt, input_tokens, model, response_id),
                media_type="text/event-stream",
            )
        return await _complete_response(active, prompt, input_tokens, model, response_id)

    return router


async def _complete_response(
    active: SessionBridge, prompt: str, input_tokens: int, model: str, response_id: str,
) -> dict[str, Any]:
    try:
        result = await active.send_prompt(prompt, None, None)
    except SessionBridgeError:
        raise
    except Exception as e:
        logger.error(f"[{response_id}] {type(e).__name__}: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e

    text = result.response
    if think_stripping_enabled():
        text = strip_think_from_text(text)
    parser = ToolCallParser()
    text_parts = []
    output = []
    for event in parser.feed(text) + parser.flush():
        if isinstance(event, ToolCallEvent):
            output.append(_function_call_item(event))
        else:
            text_parts.append(event.text)
    message_text = "".join(text_parts)
    if message_text.strip() or not output:
        output.insert(0, _message_item(_gen_id("msg"), message_text))

    usage = _usage(input_tokens, result)
    logger.info(f"[{response_id}] Completed | tokens={usage['input_tokens']}in/{usage['output_tokens']}out")
    return {
        "id": response_id,
        "object": "response",
        "created_at": int(time.time()),
        "model": model,
        "status": "completed",
        "output": output,
        "usage": usage,
    }


async def _stream_response(
    active: SessionBridge, prompt: str, input_tokens: int, model: str, response_id: str,
):
    """Stream a response as named SSE events.

    The message item always sits at output index 0; function calls are added
    after it as soon as the parser completes them.
    """
    sse = _EventWriter()
    msg_id = _gen_id("msg")
    response = {
        "id": response_id,
        "object": "response",
        "created_at": int(time.time()),
        "model": model,
        "status": "in_progress",
        "output": [],
        "usage": None,
    }
    queue: asyncio.Queue[ParserEvent | None] = asyncio.Queue()
    stripper = ThinkStripper() if think_stripping_enabled() else None
    parser = ToolCallParser()

    def on_token(token: str) -> None:
        if stripper is not None:
            token = stripper.feed(token)
        if token:
            for event in parser.feed(token):
                queue.put_nowait(event)

    yield sse("response.created", {"response": dict(response)})
    yield sse("response.in_progress", {"response": dict(response)})
    yield sse("response.output_item.added", {"output_index": 0, "item": _message_item(msg_id, "", "in_progress")})
    yield sse("response.content_part.added", {
        "item_id": msg_id, "output_index": 0, "content_index": 0, "part": {"type": "output_text", "text": ""},
    })

    full_text = ""
    call_items: list[dict[str, Any]] = []

    def render(event: ParserEvent) -> list[str]:
        nonlocal full_text
        if not isinstance(event, ToolCallEvent):
            if not event.text:
                return []
            full_text += event.text
            return [sse("response.output_text.delta", {
                "item_id": msg_id, "output_index": 0, "content_index": 0, "delta": event.text,
            })]
        item = _function_call_item(event)
        output_index = len(call_items) + 1
        call_items.append(item)
        return [
            sse("response.output_item.added", {
                "output_index": output_index, "item": {**item, "arguments": "", "status": "in_progress"},
            }),
            sse("response.function_call_arguments.delta", {
                "item_id": item["id"], "output_index": output_index, "delta": item["arguments"],
            }),
            sse("response.function_call_arguments.done", {
                "item_id": item["id"], "output_index": output_index, "arguments": item["arguments"],
            }),
            sse("response.output_item.done", {"output_index": output_index, "item": item}),
        ]

    task: asyncio.Task | None = None
    try:
        task = asyncio.create_task(active.send_prompt(prompt, on_token, None))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        while True:
            event = await queue.get()
            if event is None:
                break
            for line in render(event):
                yield line

        result = task.result()
        tail = stripper.flush() if stripper is not None else ""
        for event in parser.feed(tail) + parser.flush():
            for line in render(event):
                yield line
    except Exception as e:
        logger.error(f"[{response_id}] Responses streaming error: {type(e).__name__}: {e}")
        yield sse("response.completed", {"response": {**response, "status": "failed", "output": []}})
        return
    finally:
        if task is not None and not task.done():
            task.cancel()

    yield sse("response.output_text.done", {
        "item_id": msg_id, "output_index": 0, "content_index": 0, "text": full_text,
    })
    yield sse("response.content_part.done", {
        "item_id": msg_id, "output_index": 0, "content_index": 0,
        "part": {"type": "output_text", "text": full_text},
    })
    message = _message_item(msg_id, full_text)
    yield sse("response.output_item.done", {"output_index": 0, "item": message})

    usage = _usage(input_tokens, result)
    logger.info(f"[{response_id}] Completed | tokens={usage['input_tokens']}in/{usage['output_tokens']}out")
    yield sse("response.completed", {
        "response": {**response, "status": "completed", "output": [message, *call_items], "usage": usage},
    })
