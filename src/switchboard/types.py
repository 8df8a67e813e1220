"""Canonical request/response vocabulary shared by every backend.

Field names mirror the widely used chat-completion JSON schema so tooling built
against that schema can consume ``to_dict()`` output unmodified.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Union

from switchboard._validation import _as_tuple, _freeze_json, _freeze_mapping, _thaw_json
from switchboard.errors import InvalidRequestError

if TYPE_CHECKING:
    from pydantic import BaseModel

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "content_filter"]
ReasoningEffort = Literal["none", "low", "medium", "high", "auto"]

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"
ROLES: frozenset[str] = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL})

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_CONTENT_FILTER = "content_filter"
FINISH_REASONS: frozenset[str] = frozenset(
    {FINISH_STOP, FINISH_LENGTH, FINISH_TOOL_CALLS, FINISH_CONTENT_FILTER}
)

REASONING_EFFORTS: frozenset[str] = frozenset({"none", "low", "medium", "high", "auto"})
TOOL_CHOICE_MODES: frozenset[str] = frozenset({"auto", "none", "required"})

# Object-type tags echoed verbatim in every response.
OBJECT_CHAT_COMPLETION = "chat.completion"
OBJECT_CHAT_COMPLETION_CHUNK = "chat.completion.chunk"
OBJECT_EMBEDDING = "embedding"
OBJECT_LIST = "list"
OBJECT_MODEL = "model"


# =============================================================================
# Messages
# =============================================================================


@dataclass(frozen=True)
class TextPart:
    """A text segment of a multi-part message."""

    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImagePart:
    """An image reference: a remote URL or a ``data:`` URL with base64 payload."""

    url: str
    detail: str | None = None

    @property
    def is_data_url(self) -> bool:
        return self.url.startswith("data:")

    def to_dict(self) -> dict[str, Any]:
        image_url: dict[str, Any] = {"url": self.url}
        if self.detail:
            image_url["detail"] = self.detail
        return {"type": "image_url", "image_url": image_url}


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class FunctionCall:
    """The function invoked by a tool call; ``arguments`` is a JSON string."""

    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model.

    ``index`` is only set on streaming deltas, where it identifies the tool-call
    slot a fragment belongs to.
    """

    id: str = ""
    function: FunctionCall = field(default_factory=FunctionCall)
    type: str = "function"
    index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "function": {
                "name": self.function.name,
                "arguments": self.function.arguments,
            },
        }
        if self.index is not None:
            out["index"] = self.index
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ToolCall:
        fn = data.get("function") or {}
        return cls(
            id=str(data.get("id") or ""),
            function=FunctionCall(
                name=str(fn.get("name") or ""),
                arguments=str(fn.get("arguments") or ""),
            ),
            type=str(data.get("type") or "function"),
            index=data.get("index"),
        )


@dataclass(frozen=True)
class Message:
    """One conversational turn.

    ``content`` is either a plain string or an ordered tuple of content parts.
    A ``tool`` message must carry ``tool_call_id``; an ``assistant`` message with
    tool calls may have empty content.
    """

    role: str
    content: str | tuple[ContentPart, ...] = ""
    name: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    reasoning: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.content, str):
            object.__setattr__(self, "content", _as_tuple(self.content))
        object.__setattr__(self, "tool_calls", _as_tuple(self.tool_calls))

    @property
    def is_multimodal(self) -> bool:
        return not isinstance(self.content, str)

    @property
    def parts(self) -> tuple[ContentPart, ...]:
        if isinstance(self.content, str):
            return ()
        return self.content

    @property
    def text(self) -> str:
        """String content, or the concatenated text parts of multi-part content."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role}
        if isinstance(self.content, str):
            out["content"] = self.content
        else:
            out["content"] = [p.to_dict() for p in self.content]
        if self.name:
            out["name"] = self.name
        if self.tool_calls:
            out["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        if self.reasoning:
            out["reasoning"] = {"content": self.reasoning}
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        raw_content = data.get("content")
        content: str | tuple[ContentPart, ...]
        if raw_content is None:
            content = ""
        elif isinstance(raw_content, str):
            content = raw_content
        else:
            content = tuple(_part_from_dict(p) for p in raw_content)
        reasoning = data.get("reasoning")
        if isinstance(reasoning, Mapping):
            reasoning = reasoning.get("content")
        return cls(
            role=str(data.get("role", "")),
            content=content,
            name=data.get("name"),
            tool_calls=tuple(
                ToolCall.from_dict(tc) for tc in data.get("tool_calls") or ()
            ),
            tool_call_id=data.get("tool_call_id"),
            reasoning=reasoning if isinstance(reasoning, str) else None,
        )


def _part_from_dict(data: Mapping[str, Any]) -> ContentPart:
    part_type = data.get("type")
    if part_type == "image_url":
        image = data.get("image_url") or {}
        if isinstance(image, str):
            return ImagePart(url=image)
        return ImagePart(url=str(image.get("url", "")), detail=image.get("detail"))
    if part_type in (None, "text"):
        return TextPart(text=str(data.get("text", "")))
    raise InvalidRequestError(
        f"unsupported content part type {part_type!r}",
        hint="Content parts are text and image_url.",
    )


# =============================================================================
# Tools
# =============================================================================


@dataclass(frozen=True)
class Function:
    """A function definition; ``parameters`` is a JSON schema."""

    name: str
    description: str | None = None
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", _freeze_json(self.parameters or {}))

    def parameters_dict(self) -> dict[str, Any]:
        """Return a mutable deep copy of the parameters schema."""
        return _thaw_json(self.parameters)


@dataclass(frozen=True)
class Tool:
    """A tool the model may call."""

    function: Function
    type: str = "function"

    @classmethod
    def from_function(
        cls,
        name: str,
        description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
    ) -> Tool:
        return cls(Function(name, description, parameters or {}))

    def to_dict(self) -> dict[str, Any]:
        fn: dict[str, Any] = {"name": self.function.name}
        if self.function.description:
            fn["description"] = self.function.description
        if self.function.parameters:
            fn["parameters"] = self.function.parameters_dict()
        return {"type": self.type, "function": fn}


@dataclass(frozen=True)
class NamedToolChoice:
    """Force the model to call one specific function."""

    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "function", "function": {"name": self.name}}


ToolChoice = Union[Literal["auto", "none", "required"], NamedToolChoice]


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class JSONSchema:
    """Structured-output schema; ``schema`` may be a dict or a Pydantic model class."""

    name: str
    schema: Mapping[str, Any] | type[BaseModel]
    description: str | None = None
    strict: bool | None = None


@dataclass(frozen=True)
class ResponseFormat:
    """Requested output format: ``text``, ``json_object`` or ``json_schema``."""

    type: Literal["text", "json_object", "json_schema"] = "text"
    json_schema: JSONSchema | None = None


@dataclass(frozen=True)
class CompletionRequest:
    """A backend-agnostic chat completion request.

    Built once per call and immutable afterwards; a retry builds a fresh one.
    ``extra`` carries backend-specific parameters forwarded verbatim.
    """

    model: str
    messages: tuple[Message, ...]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = ()
    tools: tuple[Tool, ...] = ()
    tool_choice: ToolChoice | None = None
    parallel_tool_calls: bool | None = None
    response_format: ResponseFormat | None = None
    reasoning_effort: str | None = None
    seed: int | None = None
    user: str | None = None
    stream: bool = False
    include_usage: bool = True
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", _as_tuple(self.messages))
        object.__setattr__(self, "stop", _as_tuple(self.stop))
        object.__setattr__(self, "tools", _as_tuple(self.tools))
        object.__setattr__(self, "extra", _freeze_mapping(self.extra))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CompletionRequest:
        """Parse a chat-completion request body; unknown keys land in ``extra``."""
        known = {
            "model",
            "messages",
            "temperature",
            "top_p",
            "max_tokens",
            "stop",
            "tools",
            "tool_choice",
            "parallel_tool_calls",
            "response_format",
            "reasoning_effort",
            "seed",
            "user",
            "stream",
            "stream_options",
        }
        stop = data.get("stop") or ()
        if isinstance(stop, str):
            stop = (stop,)
        tools = tuple(
            Tool(
                Function(
                    name=t["function"]["name"],
                    description=t["function"].get("description"),
                    parameters=t["function"].get("parameters") or {},
                )
            )
            for t in data.get("tools") or ()
        )
        tool_choice: Any = data.get("tool_choice")
        if isinstance(tool_choice, Mapping):
            tool_choice = NamedToolChoice(tool_choice["function"]["name"])
        response_format = None
        raw_format = data.get("response_format")
        if isinstance(raw_format, Mapping):
            schema = raw_format.get("json_schema")
            response_format = ResponseFormat(
                type=raw_format.get("type", "text"),
                json_schema=(
                    JSONSchema(
                        name=schema.get("name", "response"),
                        schema=schema.get("schema") or {},
                        description=schema.get("description"),
                        strict=schema.get("strict"),
                    )
                    if isinstance(schema, Mapping)
                    else None
                ),
            )
        stream_options = data.get("stream_options") or {}
        return cls(
            model=str(data.get("model") or ""),
            messages=tuple(Message.from_dict(m) for m in data.get("messages") or ()),
            temperature=data.get("temperature"),
            top_p=data.get("top_p"),
            max_tokens=data.get("max_tokens"),
            stop=tuple(stop),
            tools=tools,
            tool_choice=tool_choice,
            parallel_tool_calls=data.get("parallel_tool_calls"),
            response_format=response_format,
            reasoning_effort=data.get("reasoning_effort"),
            seed=data.get("seed"),
            user=data.get("user"),
            stream=bool(data.get("stream", False)),
            include_usage=bool(stream_options.get("include_usage", True)),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass(frozen=True)
class EmbeddingRequest:
    """Parameters for an embedding call."""

    model: str
    input: str | tuple[str, ...]
    encoding_format: str | None = None
    dimensions: int | None = None
    user: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.input, str):
            object.__setattr__(self, "input", _as_tuple(self.input))

    @property
    def inputs(self) -> list[str]:
        if isinstance(self.input, str):
            return [self.input]
        return list(self.input)


# =============================================================================
# Responses
# =============================================================================


@dataclass(frozen=True)
class Usage:
    """Token usage as reported by the backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int | None = None

    def to_dict(self) -> dict[str, int]:
        out = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
        if self.reasoning_tokens:
            out["reasoning_tokens"] = self.reasoning_tokens
        return out


@dataclass(frozen=True)
class Choice:
    """One completed choice."""

    index: int
    message: Message
    finish_reason: str = FINISH_STOP

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "message": self.message.to_dict(),
            "finish_reason": self.finish_reason,
        }


@dataclass(frozen=True)
class ChatCompletion:
    """A complete, non-streaming response."""

    id: str
    model: str
    choices: tuple[Choice, ...]
    usage: Usage | None = None
    created: int = 0
    system_fingerprint: str | None = None
    object: str = field(default=OBJECT_CHAT_COMPLETION, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", _as_tuple(self.choices))

    @property
    def message(self) -> Message:
        """Shortcut for the first choice's message."""
        return self.choices[0].message

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "object": self.object,
            "created": self.created,
            "model": self.model,
            "choices": [c.to_dict() for c in self.choices],
        }
        if self.usage is not None:
            out["usage"] = self.usage.to_dict()
        if self.system_fingerprint:
            out["system_fingerprint"] = self.system_fingerprint
        return out


@dataclass(frozen=True)
class ChunkDelta:
    """Incremental content for one choice within a chunk."""

    role: str | None = None
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    reasoning: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_calls", _as_tuple(self.tool_calls))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.role:
            out["role"] = self.role
        if self.content:
            out["content"] = self.content
        if self.tool_calls:
            out["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.reasoning:
            out["reasoning"] = {"content": self.reasoning}
        return out


@dataclass(frozen=True)
class ChunkChoice:
    """A per-choice delta plus optional terminal finish reason."""

    index: int = 0
    delta: ChunkDelta = field(default_factory=ChunkDelta)
    finish_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "delta": self.delta.to_dict(),
            "finish_reason": self.finish_reason,
        }


@dataclass(frozen=True)
class ChatCompletionChunk:
    """One incremental unit of a streaming response.

    All chunks of one response share ``id`` and must be consumed in order.
    """

    id: str
    model: str
    choices: tuple[ChunkChoice, ...]
    usage: Usage | None = None
    created: int = 0
    system_fingerprint: str | None = None
    object: str = field(default=OBJECT_CHAT_COMPLETION_CHUNK, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", _as_tuple(self.choices))

    @property
    def delta(self) -> ChunkDelta:
        """Shortcut for the first choice's delta (empty when there are no choices)."""
        return self.choices[0].delta if self.choices else ChunkDelta()

    @property
    def finish_reason(self) -> str | None:
        return self.choices[0].finish_reason if self.choices else None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "object": self.object,
            "created": self.created,
            "model": self.model,
            "choices": [c.to_dict() for c in self.choices],
        }
        if self.usage is not None:
            out["usage"] = self.usage.to_dict()
        if self.system_fingerprint:
            out["system_fingerprint"] = self.system_fingerprint
        return out


@dataclass(frozen=True)
class EmbeddingData:
    """A single embedding vector."""

    embedding: tuple[float, ...]
    index: int
    object: str = field(default=OBJECT_EMBEDDING, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "embedding", tuple(float(x) for x in self.embedding))

    def to_dict(self) -> dict[str, Any]:
        return {
            "object": self.object,
            "embedding": list(self.embedding),
            "index": self.index,
        }


@dataclass(frozen=True)
class EmbeddingUsage:
    prompt_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class EmbeddingResponse:
    """Embedding vectors for every input, in input order."""

    data: tuple[EmbeddingData, ...]
    model: str
    usage: EmbeddingUsage | None = None
    object: str = field(default=OBJECT_LIST, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", _as_tuple(self.data))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "object": self.object,
            "data": [d.to_dict() for d in self.data],
            "model": self.model,
        }
        if self.usage is not None:
            out["usage"] = {
                "prompt_tokens": self.usage.prompt_tokens,
                "total_tokens": self.usage.total_tokens,
            }
        return out


@dataclass(frozen=True)
class Model:
    """A model exposed by a backend."""

    id: str
    created: int = 0
    owned_by: str = ""
    object: str = field(default=OBJECT_MODEL, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "object": self.object,
            "created": self.created,
            "owned_by": self.owned_by,
        }


@dataclass(frozen=True)
class ModelsResponse:
    data: tuple[Model, ...]
    object: str = field(default=OBJECT_LIST, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", _as_tuple(self.data))

    def to_dict(self) -> dict[str, Any]:
        return {"object": self.object, "data": [m.to_dict() for m in self.data]}
