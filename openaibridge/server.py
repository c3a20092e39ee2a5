"""FastAPI server exposing a local inference session as an OpenAI-compatible API."""

import asyncio
import json
import logging
import os
import time
import traceback
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from .models import (
    AssistantMessage,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    DeltaMessage,
    ErrorDetail,
    ErrorResponse,
    FunctionCall,
    ImageData,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ModelInfo,
    ModelList,
    StreamChoice,
    ToolCall,
    Usage,
    new_call_id,
)
from .prompt import PromptBundle, convert_messages, estimate_input_tokens
from .responses_api import create_responses_router
from .session_bridge import SendPromptResult, SessionBridge, SessionBridgeError, load_session_bridge
from .session_logger import SessionLogger
from .think_stripper import ThinkStripper, strip_think_from_text, think_stripping_enabled
from .tool_parser import ParserEvent, ToolCallEvent, ToolCallParser, normalize_tool_arguments

# Bridge palette (24-bit true color)
_ACCENT = "\033[38;2;16;163;127m"   # OpenAI green
_ACCENT_DIM = "\033[38;2;12;122;95m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_RESET = "\033[0m"


class _BridgeFormatter(logging.Formatter):
    """Colored log output: dim timestamps, yellow warnings, red errors."""

    def format(self, record: logging.LogRecord) -> str:
        ts = f"{_DIM}{self.formatTime(record, '%H:%M:%S')}{_RESET}"
        msg = record.getMessage()
        if record.levelno >= logging.ERROR:
            return f"{ts} {_RED}{record.levelname}{_RESET} {msg}"
        if record.levelno >= logging.WARNING:
            return f"{ts} {_YELLOW}{record.levelname}{_RESET} {msg}"
        return f"{ts} {msg}"


def _configure_logging() -> None:
    """Set up bridge-style logging with clean timestamps."""
    handler = logging.StreamHandler()
    handler.setFormatter(_BridgeFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    # One line per image download is too chatty
    logging.getLogger("httpx").setLevel(logging.WARNING)


# Session bridge, loaded on startup from SESSION_BRIDGE (tests patch it directly)
bridge: SessionBridge | None = None

# Track which unsupported parameter warnings have been shown (log once per param)
_warned_params: set[str] = set()

# Parameters accepted for compatibility but not forwarded to the session bridge
_UNSUPPORTED_PARAMS = {
    "temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty",
    "stop", "n", "seed", "response_format", "parallel_tool_calls", "stream_options", "user",
}

# Image generation
MAX_IMAGE_PROMPT_CHARS = 2000
QUALITY_STEPS = {"standard": 4, "hd": 20}
SIZE_MAP = {"1024x1792": "768x1024", "1792x1024": "1024x768"}


def _warn_unsupported_params(request: ChatCompletionRequest) -> None:
    """Log a warning for each unsupported parameter that has a non-None value, once per param."""
    for param in sorted(_UNSUPPORTED_PARAMS):
        if param not in _warned_params:
            value = getattr(request, param, None)
            if value is not None:
                _warned_params.add(param)
                logging.warning(
                    f"Parameter '{param}' is accepted but not supported by the session bridge, value ignored"
                )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the session bridge and run its optional startup/shutdown hooks."""
    global bridge
    target = os.environ.get("SESSION_BRIDGE")
    if bridge is None and target:
        bridge = load_session_bridge(target)
        logging.info(f"[bridge] Loaded session bridge {target}")
    if bridge is None:
        logging.warning("[bridge] No session bridge configured, completions will return 503")

    initialize = getattr(bridge, "initialize", None)
    if initialize is not None:
        try:
            await initialize()
        except Exception as e:
            logging.error(f"Failed to initialize session bridge: {e}")
            raise

    yield

    shutdown = getattr(bridge, "shutdown", None)
    if shutdown is not None:
        await shutdown()


app = FastAPI(title="OpenAI Bridge", version=__version__, lifespan=lifespan)


class BridgeHTTPException(HTTPException):
    """HTTPException with request_id for error tracing."""

    def __init__(self, status_code: int, detail: str, request_id: str | None = None):
        super().__init__(status_code=status_code, detail=detail)
        self.request_id = request_id


def _error_response(status_code: int, message: str, error_type: str,
                    param: str | None = None, code: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(message=message, type=error_type, param=param, code=code)
        ).model_dump(),
    )


# Exception handlers for OpenAI-format error responses
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Convert HTTPException to OpenAI error format."""
    # Map status codes to error types
    error_types = {
        400: "invalid_request_error",
        401: "authentication_error",
        403: "permission_error",
        404: "not_found_error",
        429: "rate_limit_error",
        500: "server_error",
        503: "server_error",
    }
    error_type = error_types.get(exc.status_code, "server_error")

    # Extract request_id from BridgeHTTPException
    code = getattr(exc, "request_id", None)

    return _error_response(exc.status_code, str(exc.detail), error_type, code=code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report body validation failures as 400 invalid_request_error."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    param = ".".join(loc) or None
    message = first.get("msg", "Invalid request body")
    if param:
        message = f"{param}: {message}"
    return _error_response(400, message, "invalid_request_error", param=param)


# SessionBridgeError.code -> (status, error type, OpenAI error code)
_BRIDGE_ERROR_CODES = {
    "PROMPT_BLOCKED": (400, "invalid_request_error", "content_policy_violation"),
    "RATE_LIMIT_EXCEEDED": (429, "rate_limit_error", "rate_limit_exceeded"),
    "DIFFUSION_SERVICE_UNAVAILABLE": (503, "server_error", "service_unavailable"),
}


@app.exception_handler(SessionBridgeError)
async def session_bridge_error_handler(request: Request, exc: SessionBridgeError):
    """Map session bridge error codes onto OpenAI error responses."""
    status_code, error_type, code = _BRIDGE_ERROR_CODES.get(exc.code, (500, "server_error", None))
    if status_code >= 500:
        logging.error(f"[bridge] {exc.code or 'error'}: {exc}")
    return _error_response(status_code, str(exc), error_type, code=code)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with OpenAI error format."""
    logging.error(f"Unexpected error: {exc}", exc_info=True)
    return _error_response(500, f"Internal error: {type(exc).__name__}: {str(exc)}", "server_error")


def _active_bridge() -> SessionBridge:
    """Return the configured bridge, refusing work while it is missing or unhealthy."""
    if bridge is None:
        raise BridgeHTTPException(status_code=503, detail="No session bridge configured (set SESSION_BRIDGE)")
    is_circuit_open = getattr(bridge, "is_circuit_open", None)
    if is_circuit_open is not None and is_circuit_open():
        get_circuit_error = getattr(bridge, "get_circuit_error", None)
        reason = get_circuit_error() if get_circuit_error is not None else None
        raise BridgeHTTPException(
            status_code=503,
            detail=f"Session temporarily unavailable: {reason or 'circuit breaker open'}",
        )
    return bridge


def _usage(prompt: str, result: SendPromptResult) -> Usage:
    """OpenAI usage block; the bridge only counts generated tokens."""
    prompt_tokens = estimate_input_tokens(prompt)
    completion_tokens = result.token_usage.llm_tokens if result.token_usage else 0
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def _to_tool_call(event: ToolCallEvent, index: int | None = None) -> ToolCall:
    return ToolCall(
        index=index,
        id=new_call_id(),
        function=FunctionCall(
            name=event.name,
            arguments=json.dumps(normalize_tool_arguments(event.arguments)),
        ),
    )


def _parse_response_text(text: str) -> list[ParserEvent]:
    """Run a complete response through the think stripper and tool call parser."""
    if think_stripping_enabled():
        text = strip_think_from_text(text)
    parser = ToolCallParser()
    return parser.feed(text) + parser.flush()


async def complete_chat(
    active: SessionBridge,
    bundle: PromptBundle,
    model: str,
    session_logger: SessionLogger,
) -> ChatCompletionResponse:
    """Run a non-streaming completion and shape it as an OpenAI response."""
    request_id = session_logger.request_id
    query_start = time.monotonic()
    try:
        result = await active.send_prompt(bundle.prompt, None, bundle.bridge_options())
    except Exception as e:
        logging.error(f"[{request_id}] {type(e).__name__}: {e}")
        session_logger.log_error(str(e), exception_type=type(e).__name__, traceback_str=traceback.format_exc())
        if isinstance(e, SessionBridgeError):
            raise
        raise BridgeHTTPException(status_code=500, detail=str(e), request_id=request_id) from e
    session_logger.log_timing(int((time.monotonic() - query_start) * 1000))

    text_parts = []
    tool_calls = []
    for event in _parse_response_text(result.response):
        if isinstance(event, ToolCallEvent):
            tool_calls.append(_to_tool_call(event))
            session_logger.log_tool_call(event.name, event.arguments)
        else:
            text_parts.append(event.text)
    text = "".join(text_parts)
    session_logger.log_chunk(text)

    if tool_calls:
        message = AssistantMessage(content=text if text.strip() else None, tool_calls=tool_calls)
        finish_reason = "tool_calls"
    else:
        message = AssistantMessage(content=text)
        finish_reason = "stop"

    usage = _usage(bundle.prompt, result)
    session_logger.log_usage(usage.prompt_tokens, usage.completion_tokens)
    session_logger.log_finish(finish_reason)
    logging.info(
        f"[{request_id}] Completed | query={session_logger.query_ms}ms "
        f"tokens={usage.prompt_tokens}in/{usage.completion_tokens}out finish={finish_reason}"
    )

    return ChatCompletionResponse(
        id=request_id,
        created=int(time.time()),
        model=model,
        choices=[Choice(message=message, finish_reason=finish_reason)],
        usage=usage,
    )


async def stream_chat(
    active: SessionBridge,
    bundle: PromptBundle,
    model: str,
    session_logger: SessionLogger,
):
    """Stream a completion as SSE chunks.

    Tokens arrive through the bridge's synchronous ``on_token`` callback and are
    handed to this generator through a queue, so text deltas go out while the
    bridge is still generating. Tool calls are held back until generation
    finishes and then sent together in one delta.

    Closing the generator (client disconnect) cancels the in-flight
    ``send_prompt`` task.
    """
    request_id = session_logger.request_id
    created = int(time.time())
    queue: asyncio.Queue[str | None] = asyncio.Queue()
    stripper = ThinkStripper() if think_stripping_enabled() else None
    parser = ToolCallParser()
    tool_events: list[ToolCallEvent] = []

    def route(events: list[ParserEvent]) -> list[str]:
        texts = []
        for event in events:
            if isinstance(event, ToolCallEvent):
                tool_events.append(event)
                session_logger.log_tool_call(event.name, event.arguments)
            elif event.text:
                session_logger.log_chunk(event.text)
                texts.append(event.text)
        return texts

    def on_token(token: str) -> None:
        if stripper is not None:
            token = stripper.feed(token)
        if token:
            for text in route(parser.feed(token)):
                queue.put_nowait(text)

    def chunk(delta: DeltaMessage, finish_reason: str | None = None, usage: Usage | None = None) -> str:
        payload = ChatCompletionChunk(
            id=request_id,
            created=created,
            model=model,
            choices=[StreamChoice(delta=delta, finish_reason=finish_reason)],
            usage=usage,
        )
        return f"data: {payload.model_dump_json()}\n\n"

    # Send initial chunk with role
    yield chunk(DeltaMessage(role="assistant", content=""))

    task: asyncio.Task | None = None
    try:
        query_start = time.monotonic()
        task = asyncio.create_task(active.send_prompt(bundle.prompt, on_token, bundle.bridge_options()))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        while True:
            text = await queue.get()
            if text is None:
                break
            yield chunk(DeltaMessage(content=text))

        result = task.result()
        session_logger.log_timing(int((time.monotonic() - query_start) * 1000))

        tail = stripper.flush() if stripper is not None else ""
        for text in route(parser.feed(tail) + parser.flush()):
            yield chunk(DeltaMessage(content=text))

        finish_reason = "stop"
        if tool_events:
            finish_reason = "tool_calls"
            tool_calls = [_to_tool_call(event, index=i) for i, event in enumerate(tool_events)]
            yield chunk(DeltaMessage(tool_calls=tool_calls))

        usage = _usage(bundle.prompt, result)
        session_logger.log_usage(usage.prompt_tokens, usage.completion_tokens)
        session_logger.log_finish(finish_reason)
        logging.info(
            f"[{request_id}] Completed | query={session_logger.query_ms}ms "
            f"tokens={usage.prompt_tokens}in/{usage.completion_tokens}out finish={finish_reason}"
        )
    except Exception as e:
        logging.error(f"[{request_id}] {type(e).__name__}: {e}")
        session_logger.log_error(str(e), exception_type=type(e).__name__, traceback_str=traceback.format_exc())
        session_logger.log_finish("error")
        yield chunk(DeltaMessage(content=f"\n\n[Error: {type(e).__name__}: {str(e)}]"), finish_reason="error")
        yield "data: [DONE]\n\n"
        return
    finally:
        if task is not None and not task.done():
            logging.info(f"[{request_id}] Client disconnected, cancelling generation")
            task.cancel()

    # Send final chunk with usage data
    yield chunk(DeltaMessage(), finish_reason=finish_reason, usage=usage)
    yield "data: [DONE]\n\n"


@app.post("/v1/chat/completions")
async def chat_completions(request: ChatCompletionRequest, http_request: Request):
    """OpenAI-compatible chat completions endpoint.

    The model's tagged tool call syntax is translated into OpenAI ``tool_calls``
    with ``finish_reason="tool_calls"``. Earlier tool calls and tool results in
    the history are encoded back into the model's native prompt format.
    """
    active = _active_bridge()

    # Warn about unsupported params (once per param)
    _warn_unsupported_params(request)

    request_id = f"chatcmpl-{uuid4().hex[:12]}"
    auth = http_request.headers.get("authorization", "")
    api_key = auth.removeprefix("Bearer ").strip() or None if auth else None
    session_logger = SessionLogger(request_id, request.model, api_key=api_key)

    bundle = await convert_messages(request.messages, request.tools)
    session_logger.log_prompt(bundle.prompt, len(bundle.images))
    logging.info(
        f"[{request_id}] {'Streaming' if request.stream else 'Request'} | "
        f"messages={len(request.messages)} tools={len(request.tools or [])} images={len(bundle.images)}"
    )

    if request.stream:
        async def stream_with_logging():
            try:
                async for chunk in stream_chat(active, bundle, request.model, session_logger):
                    yield chunk
            finally:
                session_logger.write(request.messages, request.stream, request.tools)

        return StreamingResponse(
            stream_with_logging(),
            media_type="text/event-stream",
        )

    try:
        return await complete_chat(active, bundle, request.model, session_logger)
    finally:
        session_logger.write(request.messages, request.stream, request.tools)


def _map_size(size: str) -> str:
    """Portrait and landscape OpenAI sizes map onto what the diffusion model renders."""
    return SIZE_MAP.get(size, size)


@app.post("/v1/images/generations")
async def image_generations(request: ImageGenerationRequest):
    """OpenAI-compatible image generation endpoint (one diffusion call per image)."""
    active = _active_bridge()
    if not request.prompt.strip():
        raise BridgeHTTPException(status_code=400, detail="prompt is required")
    if len(request.prompt) > MAX_IMAGE_PROMPT_CHARS:
        raise BridgeHTTPException(
            status_code=400,
            detail=f"prompt exceeds maximum length of {MAX_IMAGE_PROMPT_CHARS} characters",
        )

    options = {"size": _map_size(request.size), "steps": QUALITY_STEPS[request.quality]}
    start = time.monotonic()
    session_id = await active.ensure_session()
    manager = active.get_session_manager()

    data = []
    for _ in range(request.n):
        result = await manager.generate_image(str(session_id), request.prompt, options)
        data.append(ImageData(b64_json=result.image, revised_prompt=request.prompt))

    elapsed_ms = int((time.monotonic() - start) * 1000)
    logging.info(
        f"[images] Generated {len(data)} image(s) | size={options['size']} steps={options['steps']} {elapsed_ms}ms"
    )
    return ImageGenerationResponse(created=int(time.time()), data=data)


app.include_router(create_responses_router(_active_bridge))


@app.get("/v1/models")
async def list_models():
    """List the single model served by the session bridge."""
    return ModelList(data=[ModelInfo(id=os.environ.get("BRIDGE_MODEL", "local-model"))])


@app.get("/health")
async def health():
    """Health check endpoint with the current session id."""
    session_id = bridge.get_session_id() if bridge is not None else None
    return {
        "status": "ok",
        "version": __version__,
        "session_id": str(session_id) if session_id is not None else None,
    }


def get_version() -> str:
    """Get version string with git hash."""
    try:
        from ._build_info import GIT_HASH
    except ImportError:
        GIT_HASH = "dev"
    return f"{__version__} ({GIT_HASH})"


def _print_banner(host: str, port: int, model: str, target: str | None) -> None:
    """Print startup banner with ASCII art bridge and colors."""
    version = get_version()
    print(f"\n  {_ACCENT}   ╭───╮       ╭───╮{_RESET}")
    print(f"  {_ACCENT}═══╯   ╰═══════╯   ╰═══{_RESET}")
    print(f"  {_ACCENT_DIM}   │   │       │   │{_RESET}")
    print(f"  {_BOLD}{_ACCENT}openaibridge{_RESET} {_DIM}v{version}{_RESET}\n")
    print(f"  {_DIM}API{_RESET}        {_ACCENT}http://{host}:{port}/v1{_RESET}")
    print(f"  {_DIM}Model{_RESET}      {_BOLD}{model}{_RESET}")
    print(f"  {_DIM}Bridge{_RESET}     {target or f'{_YELLOW}not configured{_RESET}'}")
    print()


def main():
    """Entry point for CLI."""
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="OpenAI Bridge - OpenAI-compatible API for a local inference session")
    parser.add_argument("-v", "--version", action="version", version=f"openaibridge {get_version()}")
    parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"), help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 8082)), help="Server port (default: 8082)")
    parser.add_argument("--bridge", default=os.environ.get("SESSION_BRIDGE"),
                        help="Session bridge import string, e.g. mypkg.bridge:create_bridge")
    parser.add_argument("--model", default=os.environ.get("BRIDGE_MODEL", "local-model"),
                        help="Model id reported by /v1/models (default: local-model)")
    args = parser.parse_args()

    # Read back by the lifespan and /v1/models
    if args.bridge:
        os.environ["SESSION_BRIDGE"] = args.bridge
    os.environ["BRIDGE_MODEL"] = args.model

    _configure_logging()
    _print_banner(args.host, args.port, args.model, args.bridge)

    # Suppress uvicorn's default INFO noise
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_config={
            "version": 1,
            "disable_existing_loggers": False,
            "loggers": {
                "uvicorn": {"level": "WARNING"},
                "uvicorn.error": {"level": "WARNING"},
                "uvicorn.access": {"level": "WARNING"},
            },
        },
    )


if __name__ == "__main__":
    main()
