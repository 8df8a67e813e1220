"""Provider protocol, capability descriptor, and the shared backend template."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from switchboard.config import ProviderConfig
from switchboard.errors import (
    InvalidRequestError,
    LLMError,
    UnsupportedParameterError,
)
from switchboard.streaming import DEFAULT_QUEUE_SIZE, ChunkStream
from switchboard.types import (
    REASONING_EFFORTS,
    ROLE_TOOL,
    ROLES,
    TOOL_CHOICE_MODES,
    NamedToolChoice,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    import httpx

    from switchboard.streaming import StreamConverter
    from switchboard.types import (
        ChatCompletion,
        CompletionRequest,
        EmbeddingRequest,
        EmbeddingResponse,
        ModelsResponse,
    )

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static feature flags; query before calling an optional operation."""

    completion: bool = True
    streaming: bool = True
    tools: bool = False
    reasoning: bool = False
    images: bool = False
    structured_outputs: bool = False
    embedding: bool = False
    list_models: bool = False


@runtime_checkable
class Provider(Protocol):
    """Minimal backend protocol: complete, stream, embed, list models."""

    name: str

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature flags for this backend."""
        ...

    async def completion(self, request: CompletionRequest) -> ChatCompletion:
        """Run a non-streaming completion."""
        ...

    async def completion_stream(
        self,
        request: CompletionRequest,
        *,
        cancel_event: asyncio.Event | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> ChunkStream:
        """Start a streaming completion and return its chunk stream."""
        ...

    async def embedding(self, request: EmbeddingRequest) -> EmbeddingResponse:
        """Embed one or more inputs."""
        ...

    async def list_models(self) -> ModelsResponse:
        """List models exposed by the backend."""
        ...

    async def aclose(self) -> None:
        """Release transport resources."""
        ...


def validate_request(request: CompletionRequest, provider: str) -> None:
    """Reject structurally invalid requests before any network call."""
    if not request.model:
        raise InvalidRequestError("model is required", provider=provider)
    if not request.messages:
        raise InvalidRequestError(
            "at least one message is required", provider=provider
        )
    for i, msg in enumerate(request.messages):
        if msg.role not in ROLES:
            raise InvalidRequestError(
                f"unknown message role {msg.role!r} at index {i}",
                provider=provider,
                hint="Roles are system, user, assistant and tool.",
            )
        if msg.role == ROLE_TOOL and not msg.tool_call_id:
            raise InvalidRequestError(
                f"tool message at index {i} is missing tool_call_id",
                provider=provider,
            )
    effort = request.reasoning_effort
    if effort is not None and effort not in REASONING_EFFORTS:
        raise InvalidRequestError(
            f"unknown reasoning_effort {effort!r}",
            provider=provider,
            hint="Use one of: none, low, medium, high, auto.",
        )
    choice = request.tool_choice
    if choice is not None and not isinstance(choice, NamedToolChoice):
        if choice not in TOOL_CHOICE_MODES:
            raise InvalidRequestError(
                f"unknown tool_choice {choice!r}", provider=provider
            )


class BaseProvider:
    """Template for a backend: adapt → call → normalize, plus streaming.

    Subclasses set ``name``/``capabilities`` and implement the hooks:

    - ``adapt(request)``: canonical request → backend payload (pure).
    - ``_create(payload)``: one non-streaming backend call.
    - ``normalize(raw)``: backend response → ``ChatCompletion``.
    - ``_open_stream(payload)``: start a backend event stream.
    - ``stream_converter(request)``: fresh per-stream converter.
    - ``classify(exc)``: backend error → canonical ``LLMError``.

    Every backend failure is classified before it reaches the caller.
    """

    name: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self.config = config if config is not None else ProviderConfig()
        self._http_client: httpx.AsyncClient | None = None

    # --- hooks -------------------------------------------------------------

    def adapt(self, request: CompletionRequest) -> dict[str, Any]:
        raise NotImplementedError

    async def _create(self, payload: dict[str, Any]) -> Any:
        raise NotImplementedError

    def normalize(self, raw: Any) -> ChatCompletion:
        raise NotImplementedError

    async def _open_stream(self, payload: dict[str, Any]) -> AsyncIterator[Any]:
        # SDK backends return an event stream from the same call when the
        # payload asks for one.
        return await self._create(payload)

    def stream_converter(self, request: CompletionRequest) -> StreamConverter:
        raise NotImplementedError

    def classify(self, exc: Exception) -> LLMError:
        raise NotImplementedError

    async def _embedding(self, request: EmbeddingRequest) -> EmbeddingResponse:
        raise UnsupportedParameterError(self.name, "embedding")

    async def _list_models(self) -> ModelsResponse:
        raise UnsupportedParameterError(self.name, "list_models")

    # --- public operations -------------------------------------------------

    async def completion(self, request: CompletionRequest) -> ChatCompletion:
        validate_request(request, self.name)
        if request.stream:
            request = replace(request, stream=False)
        payload = self.adapt(self._with_config_extra(request))
        raw = await self._guard(self._create(payload))
        try:
            return self.normalize(raw)
        except LLMError:
            raise
        except Exception as e:
            raise self.classify(e) from e

    async def completion_stream(
        self,
        request: CompletionRequest,
        *,
        cancel_event: asyncio.Event | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> ChunkStream:
        """Validate and adapt now; the backend call runs in the stream's task.

        Invalid requests raise here, before any network activity.
        """
        validate_request(request, self.name)
        if not self.capabilities.streaming:
            raise UnsupportedParameterError(self.name, "stream")
        if not request.stream:
            request = replace(request, stream=True)
        payload = self.adapt(self._with_config_extra(request))
        return ChunkStream(
            lambda: self._open_stream(payload),
            self.stream_converter(request),
            classify=self.classify,
            name=f"{self.name}-stream",
            maxsize=maxsize,
            cancel_event=cancel_event,
            on_close=on_close,
        )

    async def embedding(self, request: EmbeddingRequest) -> EmbeddingResponse:
        if not self.capabilities.embedding:
            raise UnsupportedParameterError(self.name, "embedding")
        if not request.model:
            raise InvalidRequestError("model is required", provider=self.name)
        if not request.inputs:
            raise InvalidRequestError(
                "at least one input is required", provider=self.name
            )
        return await self._guard(self._embedding(request))

    async def list_models(self) -> ModelsResponse:
        if not self.capabilities.list_models:
            raise UnsupportedParameterError(self.name, "list_models")
        return await self._guard(self._list_models())

    async def aclose(self) -> None:
        """Close the HTTP client this backend created (never an injected one)."""
        client = self._http_client
        self._http_client = None
        if client is not None and self.config.owns_http_client:
            await client.aclose()

    async def __aenter__(self) -> BaseProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- helpers -----------------------------------------------------------

    def _with_config_extra(self, request: CompletionRequest) -> CompletionRequest:
        """Layer ``config.extra`` under the request's own extras."""
        if not self.config.extra:
            return request
        return replace(request, extra={**self.config.extra, **request.extra})

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = self.config.get_http_client()
        return self._http_client

    async def _guard(self, aw: Awaitable[T]) -> T:
        try:
            return await aw
        except asyncio.CancelledError:
            raise
        except LLMError:
            raise
        except Exception as e:
            raise self.classify(e) from e

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, config={self.config})"
