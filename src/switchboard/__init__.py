"""Switchboard: one request/response schema for many LLM backends.

Public API:
    - completion(): Non-streaming chat completion
    - completion_stream(): Streaming chat completion (returns a ChunkStream)
    - embedding(): Embeddings for one or more inputs
    - list_models(): Models exposed by a backend
    - create_provider() / register(): Backend registry
"""

from __future__ import annotations

import asyncio
from dataclasses import fields
import logging
from typing import TYPE_CHECKING, Any

from switchboard.config import ProviderConfig
from switchboard.errors import (
    AuthenticationError,
    ConfigurationError,
    ContentFilterError,
    ContextLengthError,
    ErrorCode,
    InvalidRequestError,
    LLMError,
    MissingCredentialError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    SwitchboardError,
    UnsupportedBackendError,
    UnsupportedParameterError,
)
# Importing the providers package registers the built-in backends.
from switchboard.providers.base import BaseProvider, Provider, ProviderCapabilities
from switchboard.registry import (
    create_provider,
    is_registered,
    parse_model_string,
    register,
    registered_providers,
)
from switchboard.streaming import ChunkStream, aggregate_chunks
from switchboard.types import (
    ChatCompletion,
    ChatCompletionChunk,
    CompletionRequest,
    EmbeddingRequest,
    EmbeddingResponse,
    Function,
    ImagePart,
    JSONSchema,
    Message,
    ModelsResponse,
    NamedToolChoice,
    ResponseFormat,
    TextPart,
    Tool,
    ToolCall,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("switchboard-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("switchboard").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)

_REQUEST_FIELDS = frozenset(
    f.name for f in fields(CompletionRequest) if f.name not in {"model", "messages"}
)
_EMBEDDING_FIELDS = frozenset(
    f.name for f in fields(EmbeddingRequest) if f.name not in {"model", "input"}
)


async def completion(
    model: str,
    messages: Iterable[Message | Mapping[str, Any]],
    *,
    provider: str | Provider | None = None,
    config: ProviderConfig | None = None,
    **params: Any,
) -> ChatCompletion:
    """Run one chat completion against the backend named in *model*.

    Args:
        model: ``"backend:model"``, or a bare model id when *provider* is given.
        messages: Canonical ``Message`` objects or chat-completion dicts.
        provider: Backend name or instance, used when *model* has no prefix.
        config: Transport/credential configuration for a newly created backend.
        **params: Request fields (temperature, tools, reasoning_effort, ...);
            unknown keys are forwarded to the backend as extras.

    Example:
        response = await completion(
            "openai:gpt-4o-mini",
            [{"role": "user", "content": "Hello"}],
            temperature=0.2,
        )
        print(response.message.content)
    """
    backend, model_id, owned = _resolve(model, provider, config)
    try:
        return await backend.completion(_build_request(model_id, messages, params))
    finally:
        if owned:
            await _close(backend)


async def completion_stream(
    model: str,
    messages: Iterable[Message | Mapping[str, Any]],
    *,
    provider: str | Provider | None = None,
    config: ProviderConfig | None = None,
    cancel_event: asyncio.Event | None = None,
    **params: Any,
) -> ChunkStream:
    """Start a streaming completion and return its ``ChunkStream``.

    Invalid requests raise immediately; backend failures surface from the
    stream after any chunks that preceded them.

    Example:
        async with await completion_stream("anthropic:claude-sonnet-4-5", msgs) as s:
            async for chunk in s:
                print(chunk.delta.content or "", end="")
    """
    backend, model_id, owned = _resolve(model, provider, config)
    try:
        request = _build_request(model_id, messages, params, stream=True)
        return await backend.completion_stream(
            request,
            cancel_event=cancel_event,
            on_close=backend.aclose if owned else None,
        )
    except BaseException:
        if owned:
            await _close(backend)
        raise


async def embedding(
    model: str,
    input: str | Iterable[str],
    *,
    provider: str | Provider | None = None,
    config: ProviderConfig | None = None,
    **params: Any,
) -> EmbeddingResponse:
    """Embed *input* with the backend named in *model*."""
    unknown = sorted(set(params) - _EMBEDDING_FIELDS)
    if unknown:
        raise InvalidRequestError(
            f"unknown embedding parameter(s): {', '.join(unknown)}",
            hint="Embedding parameters are encoding_format, dimensions and user.",
        )
    backend, model_id, owned = _resolve(model, provider, config)
    try:
        request = EmbeddingRequest(
            model=model_id,
            input=input if isinstance(input, str) else tuple(input),
            **params,
        )
        return await backend.embedding(request)
    finally:
        if owned:
            await _close(backend)


async def list_models(
    provider: str | Provider, *, config: ProviderConfig | None = None
) -> ModelsResponse:
    """List the models a backend exposes."""
    if isinstance(provider, str):
        backend = create_provider(provider, config)
        try:
            return await backend.list_models()
        finally:
            await _close(backend)
    return await provider.list_models()


def _resolve(
    model: str, provider: str | Provider | None, config: ProviderConfig | None
) -> tuple[Provider, str, bool]:
    """Pick the backend for *model*; the bool says whether we created it."""
    name, model_id = parse_model_string(model)
    if not name:
        if provider is None:
            raise InvalidRequestError(
                f"model {model!r} names no backend",
                hint="Use 'backend:model' (e.g. 'openai:gpt-4o') or pass provider=.",
            )
        if not isinstance(provider, str):
            return provider, model_id, False
        name = provider
    return create_provider(name, config), model_id, True


def _build_request(
    model_id: str,
    messages: Iterable[Message | Mapping[str, Any]],
    params: Mapping[str, Any],
    *,
    stream: bool = False,
) -> CompletionRequest:
    known: dict[str, Any] = {}
    extra: dict[str, Any] = dict(params.get("extra") or {})
    for key, value in params.items():
        if key == "extra":
            continue
        if key in _REQUEST_FIELDS:
            known[key] = value
        else:
            extra[key] = value

    if "tools" in known:
        known["tools"] = tuple(_coerce_tool(t) for t in known["tools"] or ())
    choice = known.get("tool_choice")
    if isinstance(choice, dict):
        known["tool_choice"] = NamedToolChoice(choice["function"]["name"])
    stop = known.get("stop")
    if isinstance(stop, str):
        known["stop"] = (stop,)
    known["stream"] = stream

    return CompletionRequest(
        model=model_id,
        messages=tuple(
            m if isinstance(m, Message) else Message.from_dict(m) for m in messages
        ),
        extra=extra,
        **known,
    )


def _coerce_tool(tool: Tool | Mapping[str, Any]) -> Tool:
    if isinstance(tool, Tool):
        return tool
    fn = tool.get("function", tool)
    return Tool.from_function(
        fn["name"], fn.get("description"), fn.get("parameters") or {}
    )


async def _close(backend: Provider) -> None:
    try:
        await backend.aclose()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        # Cleanup should never mask the primary failure.
        logger.warning("Provider cleanup failed: %s", exc)


__all__ = [
    "AuthenticationError",
    "BaseProvider",
    "ChatCompletion",
    "ChatCompletionChunk",
    "ChunkStream",
    "CompletionRequest",
    "ConfigurationError",
    "ContentFilterError",
    "ContextLengthError",
    "EmbeddingRequest",
    "EmbeddingResponse",
    "ErrorCode",
    "Function",
    "ImagePart",
    "InvalidRequestError",
    "JSONSchema",
    "LLMError",
    "Message",
    "MissingCredentialError",
    "ModelNotFoundError",
    "ModelsResponse",
    "NamedToolChoice",
    "Provider",
    "ProviderCapabilities",
    "ProviderConfig",
    "ProviderError",
    "RateLimitError",
    "ResponseFormat",
    "SwitchboardError",
    "TextPart",
    "Tool",
    "ToolCall",
    "UnsupportedBackendError",
    "UnsupportedParameterError",
    "Usage",
    "__version__",
    "aggregate_chunks",
    "completion",
    "completion_stream",
    "create_provider",
    "embedding",
    "is_registered",
    "list_models",
    "parse_model_string",
    "register",
    "registered_providers",
]
