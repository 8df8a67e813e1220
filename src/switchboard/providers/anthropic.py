"""Anthropic Messages API backend."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from switchboard.errors import (
    ConfigurationError,
    ErrorCode,
    MissingCredentialError,
    UnsupportedParameterError,
)
from switchboard.providers._errors import COMMON_STATUS, ErrorTable, classify_error
from switchboard.providers._utils import parse_tool_arguments, split_data_url
from switchboard.providers.base import BaseProvider, ProviderCapabilities
from switchboard.streaming import StreamState
from switchboard.types import (
    FINISH_CONTENT_FILTER,
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkDelta,
    FunctionCall,
    ImagePart,
    Message,
    NamedToolChoice,
    TextPart,
    ToolCall,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from switchboard.config import ProviderConfig
    from switchboard.errors import LLMError
    from switchboard.types import CompletionRequest, Tool

logger = logging.getLogger(__name__)

PROVIDER_NAME = "anthropic"
API_KEY_ENV = "ANTHROPIC_API_KEY"

DEFAULT_MAX_TOKENS = 4096
THINKING_BUDGETS: dict[str, int] = {
    "low": 1024,
    "medium": 4096,
    "high": 16384,
}

STOP_REASONS: dict[str, str] = {
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "pause_turn": FINISH_STOP,
    "max_tokens": FINISH_LENGTH,
    "tool_use": FINISH_TOOL_CALLS,
    "refusal": FINISH_CONTENT_FILTER,
}

ERROR_TABLE = ErrorTable(
    status={
        **COMMON_STATUS,
        403: ErrorCode.AUTHENTICATION,
        413: ErrorCode.CONTEXT_LENGTH_EXCEEDED,
    },
    codes={
        "authentication_error": ErrorCode.AUTHENTICATION,
        "permission_error": ErrorCode.AUTHENTICATION,
        "not_found_error": ErrorCode.MODEL_NOT_FOUND,
        "rate_limit_error": ErrorCode.RATE_LIMIT,
        "invalid_request_error": ErrorCode.INVALID_REQUEST,
        "request_too_large": ErrorCode.CONTEXT_LENGTH_EXCEEDED,
        "overloaded_error": ErrorCode.PROVIDER_ERROR,
        "api_error": ErrorCode.PROVIDER_ERROR,
    },
    context_markers=(
        "prompt is too long",
        "context window",
        "context length",
        "too many tokens",
    ),
    content_filter_markers=("content filtering", "output blocked"),
)


def map_stop_reason(stop_reason: Any) -> str:
    """Map an Anthropic stop_reason onto the canonical finish reasons."""
    if stop_reason is None:
        return FINISH_STOP
    return STOP_REASONS.get(str(stop_reason).lower(), FINISH_STOP)


class AnthropicStreamError(Exception):
    """An ``error`` event received mid-stream."""

    def __init__(self, body: dict[str, Any]) -> None:
        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        super().__init__(str(error.get("message") or "stream error"))
        self.body = body


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API backend."""

    name = PROVIDER_NAME
    capabilities = ProviderCapabilities(
        completion=True,
        streaming=True,
        tools=True,
        reasoning=True,
        images=True,
        structured_outputs=False,
        embedding=False,
        list_models=False,
    )

    def __init__(self, config: ProviderConfig | None = None) -> None:
        """Resolve the API key; raises ``MissingCredentialError`` when absent."""
        super().__init__(config)
        api_key = self.config.resolve_api_key(API_KEY_ENV)
        if api_key is None:
            raise MissingCredentialError(PROVIDER_NAME, API_KEY_ENV)
        self.api_key = api_key
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the async Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as e:
                raise ConfigurationError(
                    "anthropic package not installed",
                    hint="pip install anthropic",
                ) from e
            kwargs: dict[str, Any] = {
                "api_key": self.api_key,
                "timeout": self.config.timeout,
            }
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            if self.config.http_client is not None:
                kwargs["http_client"] = self.config.http_client
            self._client = AsyncAnthropic(**kwargs)
        return self._client

    # --- request adapter ---------------------------------------------------

    def adapt(self, request: CompletionRequest) -> dict[str, Any]:
        fmt = request.response_format
        if fmt is not None and fmt.type != "text":
            raise UnsupportedParameterError(PROVIDER_NAME, "response_format")

        system, messages = build_messages(request.messages)
        max_tokens = request.max_tokens or DEFAULT_MAX_TOKENS
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop:
            payload["stop_sequences"] = list(request.stop)
        if request.user:
            payload["metadata"] = {"user_id": request.user}

        if request.tools:
            payload["tools"] = convert_tools(request.tools)
        tool_choice = convert_tool_choice(
            request.tool_choice, request.parallel_tool_calls
        )
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice

        budget = THINKING_BUDGETS.get(request.reasoning_effort or "")
        if budget is not None:
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
            if max_tokens < budget * 2:
                payload["max_tokens"] = budget * 2

        if request.stream:
            payload["stream"] = True
        if request.extra:
            payload["extra_body"] = dict(request.extra)
        return payload

    # --- backend calls -----------------------------------------------------

    async def _create(self, payload: dict[str, Any]) -> Any:
        return await self._get_client().messages.create(**payload)

    # --- normalizer / converter / classifier -------------------------------

    def normalize(self, raw: Any) -> ChatCompletion:
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls: list[ToolCall] = []

        for block in getattr(raw, "content", None) or []:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                text_parts.append(getattr(block, "text", "") or "")
            elif block_type == "thinking":
                thinking = getattr(block, "thinking", "")
                if isinstance(thinking, str) and thinking:
                    reasoning_parts.append(thinking)
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=getattr(block, "id", "") or "",
                        function=FunctionCall(
                            name=getattr(block, "name", "") or "",
                            arguments=json.dumps(getattr(block, "input", None) or {}),
                        ),
                    )
                )

        usage = None
        usage_raw = getattr(raw, "usage", None)
        if usage_raw is not None:
            input_tokens = int(getattr(usage_raw, "input_tokens", 0) or 0)
            output_tokens = int(getattr(usage_raw, "output_tokens", 0) or 0)
            usage = Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            )

        message = Message(
            role=ROLE_ASSISTANT,
            content="".join(text_parts),
            tool_calls=tuple(tool_calls),
            reasoning="".join(reasoning_parts) if reasoning_parts else None,
        )
        return ChatCompletion(
            id=getattr(raw, "id", "") or "",
            model=getattr(raw, "model", "") or "",
            created=int(time.time()),
            choices=(
                Choice(
                    index=0,
                    message=message,
                    finish_reason=map_stop_reason(getattr(raw, "stop_reason", None)),
                ),
            ),
            usage=usage,
        )

    def stream_converter(self, request: CompletionRequest) -> AnthropicStreamConverter:
        return AnthropicStreamConverter(model=request.model)

    def classify(self, exc: Exception) -> LLMError:
        return classify_error(
            exc, provider=PROVIDER_NAME, table=ERROR_TABLE, credential_env=API_KEY_ENV
        )

    async def aclose(self) -> None:
        """Close the SDK client unless it wraps a caller-owned HTTP client."""
        client = self._client
        self._client = None
        if client is not None and self.config.owns_http_client:
            await client.close()
        await super().aclose()


class AnthropicStreamConverter:
    """Turns Messages API stream events into canonical chunks.

    ``message_start`` announces the assistant role, ``content_block_start``
    opens tool-call slots, ``content_block_delta`` carries text, thinking and
    partial tool JSON, and ``message_delta`` ends the turn with usage.
    """

    def __init__(self, *, model: str = "", created: int | None = None) -> None:
        self.state = StreamState(model=model)
        if created is not None:
            self.state.created = created

    def handle(self, event: Any) -> list[ChatCompletionChunk]:
        state = self.state
        event_type = getattr(event, "type", None)

        if event_type == "message_start":
            message = getattr(event, "message", None)
            state.id = getattr(message, "id", "") or state.id
            state.model = getattr(message, "model", "") or state.model
            usage = getattr(message, "usage", None)
            state.prompt_tokens = int(getattr(usage, "input_tokens", 0) or 0)
            return [state.chunk(ChunkDelta(role=ROLE_ASSISTANT))]

        if event_type == "content_block_start":
            block = getattr(event, "content_block", None)
            if getattr(block, "type", None) == "tool_use":
                state.open_tool_slot(
                    getattr(block, "id", "") or "", getattr(block, "name", "") or ""
                )
            return []

        if event_type == "content_block_delta":
            delta = getattr(event, "delta", None)
            delta_type = getattr(delta, "type", None)
            if delta_type == "text_delta":
                text = getattr(delta, "text", "") or ""
                state.content.append(text)
                return [state.chunk(ChunkDelta(content=text))]
            if delta_type == "thinking_delta":
                thinking = getattr(delta, "thinking", "") or ""
                state.reasoning.append(thinking)
                return [state.chunk(ChunkDelta(reasoning=thinking))]
            if delta_type == "input_json_delta":
                tool_call = state.append_tool_arguments(
                    getattr(delta, "partial_json", "") or ""
                )
                if tool_call is None:
                    return []
                return [state.chunk(ChunkDelta(tool_calls=(tool_call,)))]
            return []

        if event_type == "message_delta":
            delta = getattr(event, "delta", None)
            usage = getattr(event, "usage", None)
            completion_tokens = int(getattr(usage, "output_tokens", 0) or 0)
            return [
                state.chunk(
                    finish_reason=map_stop_reason(getattr(delta, "stop_reason", None)),
                    usage=Usage(
                        prompt_tokens=state.prompt_tokens,
                        completion_tokens=completion_tokens,
                        total_tokens=state.prompt_tokens + completion_tokens,
                    ),
                )
            ]

        if event_type == "error":
            error = getattr(event, "error", None)
            raise AnthropicStreamError(
                {
                    "type": "error",
                    "error": {
                        "type": getattr(error, "type", None),
                        "message": getattr(error, "message", None),
                    },
                }
            )

        # ping, content_block_stop, message_stop
        return []


# =============================================================================
# Request conversion
# =============================================================================


def build_messages(
    messages: Sequence[Message],
) -> tuple[str, list[dict[str, Any]]]:
    """Split system text out and convert the rest to Messages API turns.

    System messages are newline-joined. Tool results travel as ``tool_result``
    blocks in user turns; consecutive same-role turns are merged.
    """
    system_parts: list[str] = []
    out: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == ROLE_SYSTEM:
            system_parts.append(msg.text)
        elif msg.role == ROLE_USER:
            _append_message(out, {"role": "user", "content": _user_blocks(msg)})
        elif msg.role == ROLE_ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if msg.text:
                blocks.append({"type": "text", "text": msg.text})
            for tc in msg.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.function.name,
                        "input": parse_tool_arguments(
                            tc.function.arguments, provider=PROVIDER_NAME
                        ),
                    }
                )
            if not blocks:
                blocks.append({"type": "text", "text": ""})
            _append_message(out, {"role": "assistant", "content": blocks})
        elif msg.role == ROLE_TOOL:
            _append_message(
                out,
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": msg.tool_call_id,
                            "content": msg.text,
                        }
                    ],
                },
            )

    if len(system_parts) > 1:
        logger.debug("Merged %d system messages", len(system_parts))
    return "\n".join(system_parts), out


def _user_blocks(msg: Message) -> list[dict[str, Any]]:
    if not msg.is_multimodal:
        return [{"type": "text", "text": msg.text}]
    blocks: list[dict[str, Any]] = []
    for part in msg.parts:
        if isinstance(part, TextPart):
            blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            blocks.append(_image_block(part))
    return blocks


def _image_block(part: ImagePart) -> dict[str, Any]:
    data = split_data_url(part.url)
    if data is not None:
        media_type, payload = data
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": payload},
        }
    return {"type": "image", "source": {"type": "url", "url": part.url}}


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous turn when roles match."""
    if messages and messages[-1]["role"] == msg["role"]:
        messages[-1]["content"] = [*messages[-1]["content"], *msg["content"]]
        return
    messages.append(msg)


def convert_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    """Convert tool definitions to Anthropic format (parameters → input_schema)."""
    out: list[dict[str, Any]] = []
    for tool in tools:
        schema = tool.function.parameters_dict() or {}
        schema.setdefault("type", "object")
        tool_def: dict[str, Any] = {"name": tool.function.name, "input_schema": schema}
        if tool.function.description:
            tool_def["description"] = tool.function.description
        out.append(tool_def)
    return out


def convert_tool_choice(
    choice: Any, parallel_tool_calls: bool | None
) -> dict[str, Any] | None:
    """Map the tool-selection policy onto Anthropic's tool_choice."""
    disable_parallel = parallel_tool_calls is False
    mapped: dict[str, Any]
    if choice is None:
        if not disable_parallel:
            return None
        mapped = {"type": "auto"}
    elif isinstance(choice, NamedToolChoice):
        mapped = {"type": "tool", "name": choice.name}
    elif choice == "required":
        mapped = {"type": "any"}
    elif choice == "none":
        return {"type": "none"}
    else:
        mapped = {"type": "auto"}
    if disable_parallel:
        mapped["disable_parallel_tool_use"] = True
    return mapped
