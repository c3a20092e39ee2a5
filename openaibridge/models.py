"""OpenAI-compatible request/response models."""

from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_serializer


def new_call_id() -> str:
    """Fresh tool call id. Opaque to clients; never reused across requests."""
    return f"call_{uuid4().hex[:12]}"


class _OmitNone(BaseModel):
    """Serializes without ``None`` fields (stream deltas must not carry nulls)."""

    @model_serializer(mode="wrap")
    def _drop_none(self, handler):
        return {key: value for key, value in handler(self).items() if value is not None}


# Tool-related types (OpenAI format)
class FunctionDefinition(BaseModel):
    name: str
    description: str | None = None
    parameters: dict | None = None


class Tool(BaseModel):
    type: Literal["function"] = "function"
    function: FunctionDefinition


class ToolChoiceFunction(BaseModel):
    name: str


class ToolChoiceObject(BaseModel):
    type: Literal["function"]
    function: ToolChoiceFunction


# Tool call types for responses
class FunctionCall(BaseModel):
    name: str
    arguments: str  # JSON string


class ToolCall(_OmitNone):
    index: int | None = None  # set in streaming deltas only
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


# Multimodal content types (OpenAI format)
class ImageUrl(BaseModel):
    url: str  # data:image/xxx;base64,... or https://...
    detail: Literal["auto", "low", "high"] | None = None


class ImageUrlContent(BaseModel):
    type: Literal["image_url"]
    image_url: ImageUrl


class TextContent(BaseModel):
    type: Literal["text"]
    text: str


ContentPart = Annotated[Union[TextContent, ImageUrlContent], Field(discriminator="type")]


class Message(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[ContentPart] | None = None  # None when tool_calls present
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None  # role == "tool"
    name: str | None = None


class ChatCompletionRequest(BaseModel):
    model: str
    messages: list[Message]
    stream: bool = False
    tools: list[Tool] | None = None
    tool_choice: ToolChoiceObject | str | None = None  # "auto", "none", or specific
    # Accepted for OpenAI compatibility, not forwarded to the session bridge
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: str | list[str] | None = None
    n: int | None = None
    seed: int | None = None
    user: str | None = None
    response_format: dict | None = None
    parallel_tool_calls: bool | None = None
    stream_options: dict | None = None


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None


class Choice(BaseModel):
    index: int = 0
    message: AssistantMessage
    finish_reason: str = "stop"  # "stop" or "tool_calls"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: list[Choice]
    usage: Usage = Field(default_factory=Usage)


class DeltaMessage(_OmitNone):
    role: str | None = None
    content: str | None = None
    tool_calls: list[ToolCall] | None = None


class StreamChoice(BaseModel):
    index: int = 0
    delta: DeltaMessage
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: list[StreamChoice]
    usage: Usage | None = None


class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = "openaibridge"


class ModelList(BaseModel):
    object: str = "list"
    data: list[ModelInfo]


# Image generation (OpenAI format)
class ImageGenerationRequest(BaseModel):
    prompt: str
    model: str | None = None
    n: int = Field(default=1, ge=1, le=10)
    quality: Literal["standard", "hd"] = "standard"
    size: str = "1024x1024"
    response_format: str | None = None
    user: str | None = None


class ImageData(BaseModel):
    b64_json: str
    revised_prompt: str


class ImageGenerationResponse(BaseModel):
    created: int
    data: list[ImageData]


# Responses API
class ResponsesRequest(BaseModel):
    model: str | None = None
    input: str | list[dict[str, Any]]
    instructions: str | None = None
    tools: list[dict[str, Any]] | None = None
    stream: bool = False


# Error response models (OpenAI format)
class ErrorDetail(BaseModel):
    message: str
    type: str  # "invalid_request_error", "server_error", etc.
    param: str | None = None
    code: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
