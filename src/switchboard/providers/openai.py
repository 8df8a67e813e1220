"""OpenAI Chat Completions backend and the generic OpenAI-compatible base.

Any server speaking the chat-completions protocol (hosted gateways, local
inference servers) is served by ``OpenAICompatibleProvider`` configured with a
``CompatibleSettings``. Canonical fields map natively, so the adapter is mostly
a straight translation.
"""

from __future__ import annotations

from array import array
import base64
from dataclasses import dataclass, field, replace
import logging
from typing import TYPE_CHECKING, Any

from switchboard.errors import ConfigurationError, ErrorCode, MissingCredentialError
from switchboard.providers._errors import COMMON_STATUS, ErrorTable, classify_error
from switchboard.providers._utils import response_format_payload
from switchboard.providers.base import BaseProvider, ProviderCapabilities
from switchboard.streaming import StreamState
from switchboard.types import (
    FINISH_CONTENT_FILTER,
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ROLE_USER,
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkChoice,
    ChunkDelta,
    EmbeddingData,
    EmbeddingResponse,
    EmbeddingUsage,
    FunctionCall,
    Message,
    Model,
    ModelsResponse,
    NamedToolChoice,
    ToolCall,
    Usage,
)

if TYPE_CHECKING:
    from switchboard.config import ProviderConfig
    from switchboard.errors import LLMError
    from switchboard.types import CompletionRequest, EmbeddingRequest

logger = logging.getLogger(__name__)

FINISH_REASONS: dict[str, str] = {
    "stop": FINISH_STOP,
    "length": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "content_filter": FINISH_CONTENT_FILTER,
}

ERROR_TABLE = ErrorTable(
    status={**COMMON_STATUS, 403: ErrorCode.AUTHENTICATION},
    codes={
        "context_length_exceeded": ErrorCode.CONTEXT_LENGTH_EXCEEDED,
        "content_filter": ErrorCode.CONTENT_FILTER,
        "content_policy_violation": ErrorCode.CONTENT_FILTER,
        "invalid_api_key": ErrorCode.AUTHENTICATION,
        "model_not_found": ErrorCode.MODEL_NOT_FOUND,
        "rate_limit_exceeded": ErrorCode.RATE_LIMIT,
        "insufficient_quota": ErrorCode.RATE_LIMIT,
    },
    context_markers=("maximum context length", "context length", "context window"),
    content_filter_markers=("content management policy", "content filter"),
)


def map_finish_reason(reason: Any) -> str:
    """Map a chat-completions finish_reason; unknown values become ``stop``."""
    if not reason:
        return FINISH_STOP
    return FINISH_REASONS.get(str(reason), FINISH_STOP)


@dataclass(frozen=True)
class CompatibleSettings:
    """Static description of one OpenAI-compatible backend.

    Example:
        CompatibleSettings(
            name="gateway",
            api_key_env="GATEWAY_API_KEY",
            default_base_url="https://gateway.example/v1",
        )
    """

    name: str
    api_key_env: str | None = None
    base_url_env: str | None = None
    default_base_url: str | None = None
    #: Used when no key is configured and ``require_api_key`` is False.
    default_api_key: str | None = None
    require_api_key: bool = True
    capabilities: ProviderCapabilities = field(
        default_factory=lambda: ProviderCapabilities(
            tools=True,
            images=True,
            structured_outputs=True,
            embedding=True,
            list_models=True,
        )
    )
    #: Prefix for transport failures, e.g. a local server that is not running.
    network_message: str | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ConfigurationError("provider name is required")
        object.__setattr__(self, "name", self.name.strip().lower())


OPENAI_SETTINGS = CompatibleSettings(
    name="openai",
    api_key_env="OPENAI_API_KEY",
    base_url_env="OPENAI_BASE_URL",
    require_api_key=True,
    capabilities=ProviderCapabilities(
        tools=True,
        reasoning=True,
        images=True,
        structured_outputs=True,
        embedding=True,
        list_models=True,
    ),
)


class OpenAICompatibleProvider(BaseProvider):
    """Backend for any server implementing the chat-completions protocol."""

    def __init__(
        self, settings: CompatibleSettings, config: ProviderConfig | None = None
    ) -> None:
        super().__init__(config)
        self.settings = settings
        self.name = settings.name
        self.capabilities = settings.capabilities
        self.base_url = self.config.resolve_base_url(
            settings.base_url_env, settings.default_base_url
        )
        api_key = self.config.resolve_api_key(settings.api_key_env)
        if api_key is None and settings.require_api_key:
            raise MissingCredentialError(
                settings.name, settings.api_key_env or "API key"
            )
        self.api_key = api_key or settings.default_api_key or settings.name
        self._error_table = replace(
            ERROR_TABLE, network_message=settings.network_message
        )
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the async OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ConfigurationError(
                    "openai package not installed",
                    hint="pip install openai",
                ) from e
            kwargs: dict[str, Any] = {
                "api_key": self.api_key,
                "timeout": self.config.timeout,
            }
            if self.base_url:
                kwargs["base_url"] = self.base_url
            if self.config.http_client is not None:
                kwargs["http_client"] = self.config.http_client
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    # --- request adapter ---------------------------------------------------

    def adapt(self, request: CompletionRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [convert_message(m) for m in request.messages],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.max_tokens is not None:
            payload["max_completion_tokens"] = request.max_tokens
        if request.stop:
            payload["stop"] = list(request.stop)
        if request.tools:
            payload["tools"] = [t.to_dict() for t in request.tools]
        if request.tool_choice is not None:
            payload["tool_choice"] = convert_tool_choice(request.tool_choice)
        if request.parallel_tool_calls is not None:
            payload["parallel_tool_calls"] = request.parallel_tool_calls
        if request.response_format is not None:
            payload["response_format"] = response_format_payload(
                request.response_format
            )

        effort = request.reasoning_effort
        if effort and effort not in {"none", "auto"}:
            if self.capabilities.reasoning:
                payload["reasoning_effort"] = effort
            else:
                logger.debug("%s ignores reasoning_effort=%s", self.name, effort)

        if request.seed is not None:
            payload["seed"] = request.seed
        if request.user:
            payload["user"] = request.user
        if request.stream:
            payload["stream"] = True
            if request.include_usage:
                payload["stream_options"] = {"include_usage": True}
        if request.extra:
            payload["extra_body"] = dict(request.extra)
        return payload

    # --- backend calls -----------------------------------------------------

    async def _create(self, payload: dict[str, Any]) -> Any:
        return await self._get_client().chat.completions.create(**payload)

    async def _embedding(self, request: EmbeddingRequest) -> EmbeddingResponse:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "input": (
                request.input if isinstance(request.input, str) else request.inputs
            ),
        }
        if request.encoding_format:
            kwargs["encoding_format"] = request.encoding_format
        if request.dimensions is not None:
            kwargs["dimensions"] = request.dimensions
        if request.user:
            kwargs["user"] = request.user
        raw = await self._get_client().embeddings.create(**kwargs)
        return normalize_embedding(raw)

    async def _list_models(self) -> ModelsResponse:
        models: list[Model] = []
        async for item in self._get_client().models.list():
            models.append(
                Model(
                    id=getattr(item, "id", "") or "",
                    created=int(getattr(item, "created", 0) or 0),
                    owned_by=getattr(item, "owned_by", "") or "",
                )
            )
        return ModelsResponse(data=tuple(models))

    # --- normalizer / converter / classifier -------------------------------

    def normalize(self, raw: Any) -> ChatCompletion:
        choices = tuple(
            Choice(
                index=int(getattr(c, "index", i) or 0),
                message=_convert_response_message(getattr(c, "message", None)),
                finish_reason=map_finish_reason(getattr(c, "finish_reason", None)),
            )
            for i, c in enumerate(getattr(raw, "choices", None) or [])
        )
        return ChatCompletion(
            id=getattr(raw, "id", "") or "",
            model=getattr(raw, "model", "") or "",
            created=int(getattr(raw, "created", 0) or 0),
            choices=choices,
            usage=convert_usage(getattr(raw, "usage", None)),
            system_fingerprint=getattr(raw, "system_fingerprint", None),
        )

    def stream_converter(self, request: CompletionRequest) -> OpenAIStreamConverter:
        return OpenAIStreamConverter(model=request.model)

    def classify(self, exc: Exception) -> LLMError:
        return classify_error(
            exc,
            provider=self.name,
            table=self._error_table,
            credential_env=self.settings.api_key_env,
        )

    async def aclose(self) -> None:
        """Close the SDK client unless it wraps a caller-owned HTTP client."""
        client = self._client
        self._client = None
        if client is not None and self.config.owns_http_client:
            await client.close()
        await super().aclose()


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI's hosted Chat Completions API."""

    def __init__(self, config: ProviderConfig | None = None) -> None:
        super().__init__(OPENAI_SETTINGS, config)


class OpenAIStreamConverter:
    """Chat-completions chunks are already canonical-shaped; convert 1:1."""

    def __init__(self, *, model: str = "") -> None:
        self.state = StreamState(model=model)

    def handle(self, event: Any) -> list[ChatCompletionChunk]:
        state = self.state
        state.id = getattr(event, "id", "") or state.id
        state.model = getattr(event, "model", "") or state.model
        created = getattr(event, "created", None)
        if isinstance(created, int) and created:
            state.created = created

        choices: list[ChunkChoice] = []
        for i, choice in enumerate(getattr(event, "choices", None) or []):
            delta = getattr(choice, "delta", None)
            content = getattr(delta, "content", None)
            reasoning = _delta_reasoning(delta)
            if content:
                state.content.append(content)
            if reasoning:
                state.reasoning.append(reasoning)
            finish = getattr(choice, "finish_reason", None)
            choices.append(
                ChunkChoice(
                    index=int(getattr(choice, "index", i) or 0),
                    delta=ChunkDelta(
                        role=getattr(delta, "role", None),
                        content=content,
                        tool_calls=tuple(
                            _convert_delta_tool_call(tc)
                            for tc in getattr(delta, "tool_calls", None) or []
                        ),
                        reasoning=reasoning,
                    ),
                    finish_reason=map_finish_reason(finish) if finish else None,
                )
            )

        return [
            ChatCompletionChunk(
                id=state.id,
                model=state.model,
                created=state.created,
                choices=tuple(choices),
                usage=convert_usage(getattr(event, "usage", None)),
                system_fingerprint=getattr(event, "system_fingerprint", None),
            )
        ]


# =============================================================================
# Conversion helpers
# =============================================================================


def convert_message(msg: Message) -> dict[str, Any]:
    """Canonical message → chat-completions message param."""
    out: dict[str, Any] = {"role": msg.role}
    if msg.role == ROLE_USER and msg.is_multimodal:
        out["content"] = [p.to_dict() for p in msg.parts]
    elif msg.role == ROLE_ASSISTANT and msg.tool_calls:
        out["content"] = msg.text or None
        out["tool_calls"] = [
            {
                "id": tc.id,
                "type": tc.type,
                "function": {
                    "name": tc.function.name,
                    "arguments": tc.function.arguments,
                },
            }
            for tc in msg.tool_calls
        ]
    else:
        out["content"] = msg.text
    if msg.role == ROLE_TOOL:
        out["tool_call_id"] = msg.tool_call_id
    if msg.name:
        out["name"] = msg.name
    return out


def convert_tool_choice(choice: Any) -> Any:
    if isinstance(choice, NamedToolChoice):
        return choice.to_dict()
    return choice


def convert_usage(usage: Any) -> Usage | None:
    """Usage is reported only when the backend counted something."""
    if usage is None:
        return None
    prompt = int(getattr(usage, "prompt_tokens", 0) or 0)
    completion = int(getattr(usage, "completion_tokens", 0) or 0)
    if prompt <= 0 and completion <= 0:
        return None
    details = getattr(usage, "completion_tokens_details", None)
    reasoning = int(getattr(details, "reasoning_tokens", 0) or 0)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(getattr(usage, "total_tokens", 0) or prompt + completion),
        reasoning_tokens=reasoning or None,
    )


def normalize_embedding(raw: Any) -> EmbeddingResponse:
    data = tuple(
        EmbeddingData(
            embedding=_decode_embedding(getattr(item, "embedding", ())),
            index=int(getattr(item, "index", i) or 0),
        )
        for i, item in enumerate(getattr(raw, "data", None) or [])
    )
    usage = None
    raw_usage = getattr(raw, "usage", None)
    if raw_usage is not None:
        prompt = int(getattr(raw_usage, "prompt_tokens", 0) or 0)
        total = int(getattr(raw_usage, "total_tokens", 0) or 0)
        if prompt > 0 or total > 0:
            usage = EmbeddingUsage(prompt_tokens=prompt, total_tokens=total)
    return EmbeddingResponse(data=data, model=getattr(raw, "model", "") or "", usage=usage)


def _decode_embedding(value: Any) -> tuple[float, ...]:
    # encoding_format="base64" yields packed little-endian float32.
    if isinstance(value, str):
        floats = array("f")
        floats.frombytes(base64.b64decode(value))
        return tuple(floats)
    return tuple(value)


def _convert_response_message(message: Any) -> Message:
    tool_calls = tuple(
        ToolCall(
            id=getattr(tc, "id", "") or "",
            type=getattr(tc, "type", None) or "function",
            function=FunctionCall(
                name=getattr(getattr(tc, "function", None), "name", "") or "",
                arguments=getattr(getattr(tc, "function", None), "arguments", "")
                or "",
            ),
        )
        for tc in getattr(message, "tool_calls", None) or []
    )
    return Message(
        role=getattr(message, "role", None) or ROLE_ASSISTANT,
        content=getattr(message, "content", None) or "",
        tool_calls=tool_calls,
        reasoning=_delta_reasoning(message),
    )


def _convert_delta_tool_call(tc: Any) -> ToolCall:
    fn = getattr(tc, "function", None)
    return ToolCall(
        id=getattr(tc, "id", None) or "",
        type=getattr(tc, "type", None) or "function",
        function=FunctionCall(
            name=getattr(fn, "name", None) or "",
            arguments=getattr(fn, "arguments", None) or "",
        ),
        index=getattr(tc, "index", None),
    )


def _delta_reasoning(obj: Any) -> str | None:
    # Compatible servers disagree on the field name.
    for attr in ("reasoning_content", "reasoning"):
        value = getattr(obj, attr, None)
        if isinstance(value, str) and value:
            return value
    return None
