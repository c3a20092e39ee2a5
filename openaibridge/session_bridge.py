"""Interface of the inference session the bridge delegates to.

The session bridge owns everything this package does not: running the prompt,
sampling tokens, diffusion. The server only ever talks to it through the methods
declared here.
"""

import importlib
from dataclasses import dataclass
from typing import Any, Callable, Protocol

TokenCallback = Callable[[str], None]


@dataclass
class TokenUsage:
    llm_tokens: int = 0
    vlm_tokens: int = 0
    total_tokens: int = 0


@dataclass
class SendPromptResult:
    response: str
    token_usage: TokenUsage


@dataclass
class ImageResult:
    image: str  # base64 PNG


class SessionBridgeError(Exception):
    """Failure reported by the session bridge, optionally with a machine-readable code.

    Known codes: PROMPT_BLOCKED, RATE_LIMIT_EXCEEDED, DIFFUSION_SERVICE_UNAVAILABLE,
    SESSION_NOT_FOUND.
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class SessionManager(Protocol):
    async def generate_image(self, session_id: str, prompt: str, options: dict[str, Any]) -> ImageResult:
        ...


class SessionBridge(Protocol):
    """What the server needs from an inference session.

    ``send_prompt`` resolves once generation has finished. When ``on_token`` is
    given it is called synchronously for every generated token before that.
    Cancelling the awaiting task aborts the generation.

    Bridges may additionally provide ``initialize()``/``shutdown()`` coroutines,
    called on server startup and shutdown, and ``is_circuit_open()`` /
    ``get_circuit_error()`` to make the server refuse work while the session is
    unhealthy.
    """

    async def send_prompt(
        self,
        prompt: str,
        on_token: TokenCallback | None = None,
        options: dict[str, Any] | None = None,
    ) -> SendPromptResult:
        ...

    async def ensure_session(self) -> Any:
        ...

    def get_session_id(self) -> Any:
        ...

    def get_session_manager(self) -> SessionManager:
        ...


def load_session_bridge(target: str) -> SessionBridge:
    """Build a bridge from an import string such as ``mypkg.bridge:create_bridge``.

    The attribute may be a bridge instance, a bridge class, or a zero-argument
    factory returning one.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid session bridge '{target}', expected 'module:attribute'")
    module = importlib.import_module(module_name)
    obj: Any = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    if isinstance(obj, type) or (callable(obj) and not hasattr(obj, "send_prompt")):
        obj = obj()
    return obj
