"""Ollama backend over its native HTTP API.

Talks to ``/api/chat``, ``/api/embed`` and ``/api/tags`` directly with httpx.
Streaming responses are newline-delimited JSON: each line carries a message
delta, and the last line has ``done: true`` plus token counts. Tool calls
arrive whole rather than as argument fragments.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import json
import logging
import secrets
import time
from typing import TYPE_CHECKING, Any

from switchboard.errors import ErrorCode, UnsupportedParameterError
from switchboard.providers._errors import COMMON_STATUS, ErrorTable, classify_error
from switchboard.providers._utils import (
    parse_tool_arguments,
    resolve_json_schema,
    split_data_url,
)
from switchboard.providers.base import BaseProvider, ProviderCapabilities
from switchboard.streaming import StreamState
from switchboard.types import (
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ROLE_USER,
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkDelta,
    EmbeddingData,
    EmbeddingResponse,
    EmbeddingUsage,
    FunctionCall,
    ImagePart,
    Message,
    Model,
    ModelsResponse,
    NamedToolChoice,
    ToolCall,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    import httpx

    from switchboard.config import ProviderConfig
    from switchboard.errors import LLMError
    from switchboard.types import CompletionRequest, EmbeddingRequest, Tool

logger = logging.getLogger(__name__)

PROVIDER_NAME = "ollama"
BASE_URL_ENV = "OLLAMA_HOST"
DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_NUM_CTX = 32000

_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"

ERROR_TABLE = ErrorTable(
    status=dict(COMMON_STATUS),
    context_markers=("context",),
    network_message="ollama server not running",
)


class OllamaError(Exception):
    """An error reported by the Ollama server (HTTP status or stream line)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


def generate_id() -> str:
    """Ollama responses carry no id; mint a chat-completion style one."""
    return f"chatcmpl-{time.time_ns()}-{secrets.token_hex(8)}"


def map_done_reason(reason: Any) -> str:
    if reason == "length":
        return FINISH_LENGTH
    return FINISH_STOP


def extract_thinking(content: str, thinking: str | None) -> tuple[str, str | None]:
    """Prefer the dedicated thinking field, else strip ``<think>`` tags."""
    if thinking:
        return content, thinking
    if _THINK_OPEN not in content or _THINK_CLOSE not in content:
        return content, None
    before, _, rest = content.partition(_THINK_OPEN)
    reasoning, sep, after = rest.partition(_THINK_CLOSE)
    if not sep:
        return content, None
    return (before + after).strip(), reasoning


class OllamaProvider(BaseProvider):
    """Local Ollama server via its native chat API."""

    name = PROVIDER_NAME
    capabilities = ProviderCapabilities(
        completion=True,
        streaming=True,
        tools=True,
        reasoning=True,
        images=True,
        structured_outputs=True,
        embedding=True,
        list_models=True,
    )

    def __init__(self, config: ProviderConfig | None = None) -> None:
        super().__init__(config)
        base_url = self.config.resolve_base_url(BASE_URL_ENV, DEFAULT_BASE_URL)
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # --- request adapter ---------------------------------------------------

    def adapt(self, request: CompletionRequest) -> dict[str, Any]:
        options: dict[str, Any] = {"num_ctx": DEFAULT_NUM_CTX}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.stop:
            options["stop"] = list(request.stop)
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if request.seed is not None:
            options["seed"] = request.seed
        # Per-call option overrides, e.g. {"options": {"num_ctx": 8192}}.
        extra = dict(request.extra)
        options.update(extra.pop("options", None) or {})

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [convert_message(m) for m in request.messages],
            "stream": request.stream,
            "options": options,
        }

        tools = select_tools(request.tools, request.tool_choice)
        if tools:
            payload["tools"] = convert_tools(tools)

        fmt = request.response_format
        if fmt is not None and fmt.type == "json_object":
            payload["format"] = "json"
        elif fmt is not None and fmt.type == "json_schema":
            if fmt.json_schema is None:
                raise UnsupportedParameterError(PROVIDER_NAME, "response_format")
            payload["format"] = resolve_json_schema(fmt.json_schema)

        effort = request.reasoning_effort
        if effort and effort not in {"none", "auto"}:
            payload["think"] = True

        payload.update(extra)
        return payload

    # --- backend calls -----------------------------------------------------

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        client = self._get_http_client()
        response = await client.post(self._url(path), json=payload)
        if response.is_error:
            raise _status_error(response)
        return response.json()

    async def _create(self, payload: dict[str, Any]) -> Any:
        return await self._post("/api/chat", payload)

    async def _open_stream(self, payload: dict[str, Any]) -> AsyncIterator[Any]:
        client = self._get_http_client()
        request = client.build_request("POST", self._url("/api/chat"), json=payload)
        response = await client.send(request, stream=True)
        if response.is_error:
            await response.aread()
            await response.aclose()
            raise _status_error(response)
        return _iter_ndjson(response)

    async def _embedding(self, request: EmbeddingRequest) -> EmbeddingResponse:
        payload: dict[str, Any] = {"model": request.model, "input": request.inputs}
        if request.dimensions is not None:
            payload["dimensions"] = request.dimensions
        data = await self._post("/api/embed", payload)
        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        return EmbeddingResponse(
            data=tuple(
                EmbeddingData(embedding=vector, index=i)
                for i, vector in enumerate(data.get("embeddings") or [])
            ),
            model=data.get("model") or request.model,
            usage=EmbeddingUsage(
                prompt_tokens=prompt_tokens, total_tokens=prompt_tokens
            ),
        )

    async def _list_models(self) -> ModelsResponse:
        response = await self._get_http_client().get(self._url("/api/tags"))
        if response.is_error:
            raise _status_error(response)
        return ModelsResponse(
            data=tuple(
                Model(
                    id=item.get("model") or item.get("name") or "",
                    created=parse_created(item.get("modified_at")),
                    owned_by=PROVIDER_NAME,
                )
                for item in response.json().get("models") or []
            )
        )

    # --- normalizer / converter / classifier -------------------------------

    def normalize(self, raw: Any) -> ChatCompletion:
        message = raw.get("message") or {}
        content, reasoning = extract_thinking(
            message.get("content") or "", message.get("thinking")
        )
        tool_calls = convert_tool_calls(message.get("tool_calls") or [])
        finish = FINISH_TOOL_CALLS if tool_calls else map_done_reason(
            raw.get("done_reason")
        )
        prompt = int(raw.get("prompt_eval_count") or 0)
        completion = int(raw.get("eval_count") or 0)
        return ChatCompletion(
            id=generate_id(),
            model=raw.get("model") or "",
            created=parse_created(raw.get("created_at")),
            choices=(
                Choice(
                    index=0,
                    message=Message(
                        role=ROLE_ASSISTANT,
                        content=content,
                        tool_calls=tool_calls,
                        reasoning=reasoning,
                    ),
                    finish_reason=finish,
                ),
            ),
            usage=Usage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            ),
        )

    def stream_converter(self, request: CompletionRequest) -> OllamaStreamConverter:
        return OllamaStreamConverter(model=request.model)

    def classify(self, exc: Exception) -> LLMError:
        return classify_error(exc, provider=PROVIDER_NAME, table=ERROR_TABLE)


class OllamaStreamConverter:
    """Turns NDJSON chat lines into canonical chunks, one chunk per line."""

    def __init__(
        self,
        *,
        model: str = "",
        response_id: str | None = None,
        created: int | None = None,
    ) -> None:
        self.state = StreamState(id=response_id or generate_id(), model=model)
        if created is not None:
            self.state.created = created
        self._started = False

    def handle(self, event: Any) -> list[ChatCompletionChunk]:
        state = self.state
        if not state.model:
            state.model = event.get("model") or ""
        created = parse_created(event.get("created_at"))
        if created > 0:
            state.created = created

        message = event.get("message") or {}
        content = message.get("content") or None
        thinking = message.get("thinking") or None
        if content:
            state.content.append(content)
        if thinking:
            state.reasoning.append(thinking)

        tool_calls: list[ToolCall] = []
        for tc in convert_tool_calls(
            message.get("tool_calls") or [], start=len(state.tool_slots)
        ):
            slot = state.open_tool_slot(tc.id, tc.function.name)
            state.tool_slots[slot].fragments.append(tc.function.arguments)
            tool_calls.append(
                ToolCall(id=tc.id, function=tc.function, index=slot)
            )

        role = None
        if not self._started:
            self._started = True
            role = ROLE_ASSISTANT

        delta = ChunkDelta(
            role=role,
            content=content,
            tool_calls=tuple(tool_calls),
            reasoning=thinking,
        )
        if not event.get("done"):
            return [state.chunk(delta)]

        prompt = int(event.get("prompt_eval_count") or 0)
        completion = int(event.get("eval_count") or 0)
        finish = FINISH_TOOL_CALLS if state.tool_slots else map_done_reason(
            event.get("done_reason")
        )
        return [
            state.chunk(
                delta,
                finish_reason=finish,
                usage=Usage(
                    prompt_tokens=prompt,
                    completion_tokens=completion,
                    total_tokens=prompt + completion,
                ),
            )
        ]


# =============================================================================
# Wire helpers
# =============================================================================


async def _iter_ndjson(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    try:
        async for line in response.aiter_lines():
            line = line.strip()
            if not line:
                continue
            data = json.loads(line)
            if isinstance(data, Mapping) and data.get("error"):
                raise OllamaError(str(data["error"]), body=data)
            yield data
    finally:
        await response.aclose()


def _status_error(response: httpx.Response) -> OllamaError:
    body: Mapping[str, Any] | None = None
    try:
        parsed = response.json()
    except ValueError:
        parsed = None
    if isinstance(parsed, Mapping):
        body = parsed
    message = str(body.get("error")) if body and body.get("error") else response.text
    return OllamaError(
        message or f"HTTP {response.status_code}",
        status_code=response.status_code,
        body=body,
    )


def parse_created(value: Any) -> int:
    """Unix seconds from an RFC 3339 timestamp (fractional part ignored)."""
    if not isinstance(value, str) or len(value) < 19:
        return 0
    try:
        parsed = datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return 0
    return int(parsed.replace(tzinfo=timezone.utc).timestamp())


def convert_message(msg: Message) -> dict[str, Any]:
    """Canonical message → Ollama chat message (tool results go as user turns)."""
    if msg.role == ROLE_TOOL:
        return {"role": ROLE_USER, "content": msg.text}
    out: dict[str, Any] = {"role": msg.role, "content": msg.text}
    if msg.role == ROLE_USER and msg.is_multimodal:
        images = [
            data[1]
            for part in msg.parts
            if isinstance(part, ImagePart)
            and (data := split_data_url(part.url)) is not None
        ]
        if images:
            out["images"] = images
    if msg.role == ROLE_ASSISTANT and msg.tool_calls:
        out["tool_calls"] = [
            {
                "function": {
                    "name": tc.function.name,
                    "arguments": parse_tool_arguments(
                        tc.function.arguments, provider=PROVIDER_NAME
                    ),
                }
            }
            for tc in msg.tool_calls
        ]
    return out


def select_tools(tools: Sequence[Tool], choice: Any) -> list[Tool]:
    """Apply the tool-selection policy by filtering the tool list.

    Ollama has no tool_choice; ``none`` sends no tools and a named choice
    sends only that tool. ``required`` falls back to ``auto``.
    """
    if not tools or choice == "none":
        return []
    if isinstance(choice, NamedToolChoice):
        selected = [t for t in tools if t.function.name == choice.name]
        if selected:
            return selected
        logger.debug("tool_choice %r names no known tool; sending all", choice.name)
        return list(tools)
    if choice == "required":
        logger.debug("ollama has no required tool_choice; using auto")
    return list(tools)


def convert_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for tool in tools:
        params = tool.function.parameters_dict() or {}
        params.setdefault("type", "object")
        fn: dict[str, Any] = {"name": tool.function.name, "parameters": params}
        if tool.function.description:
            fn["description"] = tool.function.description
        out.append({"type": "function", "function": fn})
    return out


def convert_tool_calls(
    tool_calls: Sequence[Mapping[str, Any]], *, start: int = 0
) -> tuple[ToolCall, ...]:
    """Ollama tool calls carry no id; number them ``call_<n>``."""
    result: list[ToolCall] = []
    for i, tc in enumerate(tool_calls, start=start):
        fn = tc.get("function") or {}
        args = fn.get("arguments")
        if isinstance(args, str):
            arguments = args or "{}"
        else:
            arguments = json.dumps(args) if args else "{}"
        result.append(
            ToolCall(
                id=f"call_{i}",
                function=FunctionCall(name=fn.get("name") or "", arguments=arguments),
            )
        )
    return tuple(result)
