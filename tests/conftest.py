"""Pytest configuration and fixtures.

Provides backend test doubles, environment isolation, logging configuration,
and automatic API test skipping. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os
from typing import Any

import pytest

from switchboard.errors import LLMError
from switchboard.providers._errors import COMMON_STATUS, ErrorTable, classify_error
from switchboard.providers.base import BaseProvider, ProviderCapabilities
from switchboard.streaming import StreamState
from switchboard.types import (
    ROLE_ASSISTANT,
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkDelta,
    CompletionRequest,
    EmbeddingData,
    EmbeddingRequest,
    EmbeddingResponse,
    Message,
    Model,
    ModelsResponse,
    Usage,
)

OPENAI_MODEL = "gpt-4o-mini"
ANTHROPIC_MODEL = "claude-sonnet-4-5"
OLLAMA_MODEL = "llama3.2"

# =============================================================================
# Test Doubles
# =============================================================================


class FakeStreamConverter:
    """Treats each event as a text fragment; ``None`` ends the turn."""

    def __init__(self, model: str = "") -> None:
        self.state = StreamState(id="fake-1", model=model, created=1)

    def handle(self, event: Any) -> list[ChatCompletionChunk]:
        if event is None:
            return [
                self.state.chunk(
                    finish_reason="stop",
                    usage=Usage(prompt_tokens=1, completion_tokens=1, total_tokens=2),
                )
            ]
        self.state.content.append(str(event))
        return [self.state.chunk(ChunkDelta(content=str(event)))]


class FakeProvider(BaseProvider):
    """Backend test double for API-level behavior verification.

    Echoes the last user message, streams the configured ``events``, and
    records every payload and close call.
    """

    name = "fake"
    capabilities = ProviderCapabilities(embedding=True, list_models=True)

    def __init__(self, config: Any = None, *, events: list[Any] | None = None) -> None:
        super().__init__(config)
        self.events = list(events) if events is not None else ["a", "b", None]
        self.payloads: list[dict[str, Any]] = []
        self.close_calls = 0

    def adapt(self, request: CompletionRequest) -> dict[str, Any]:
        return {
            "model": request.model,
            "prompt": request.messages[-1].text,
            "stream": request.stream,
            "extra": dict(request.extra),
        }

    async def _create(self, payload: dict[str, Any]) -> Any:
        self.payloads.append(payload)
        return payload

    async def _open_stream(self, payload: dict[str, Any]) -> Any:
        self.payloads.append(payload)
        return _aiter(self.events)

    def normalize(self, raw: Any) -> ChatCompletion:
        return ChatCompletion(
            id="fake-1",
            model=raw["model"],
            choices=(
                Choice(
                    index=0,
                    message=Message(role=ROLE_ASSISTANT, content=f"ok:{raw['prompt']}"),
                ),
            ),
        )

    def stream_converter(self, request: CompletionRequest) -> FakeStreamConverter:
        return FakeStreamConverter(request.model)

    def classify(self, exc: Exception) -> LLMError:
        return classify_error(
            exc, provider=self.name, table=ErrorTable(status=COMMON_STATUS)
        )

    async def _embedding(self, request: EmbeddingRequest) -> EmbeddingResponse:
        return EmbeddingResponse(
            data=tuple(
                EmbeddingData(embedding=(float(len(text)),), index=i)
                for i, text in enumerate(request.inputs)
            ),
            model=request.model,
        )

    async def _list_models(self) -> ModelsResponse:
        return ModelsResponse(data=(Model(id="fake-model", owned_by="fake"),))

    async def aclose(self) -> None:
        self.close_calls += 1
        await super().aclose()


async def _aiter(items: list[Any]) -> Any:
    for item in items:
        if isinstance(item, BaseException):
            raise item
        yield item


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================

_PROVIDER_ENV_PREFIXES = ("OPENAI_", "ANTHROPIC_", "OLLAMA_", "LLAMAFILE_")


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean backend environment for each test.

    Clears OPENAI_*, ANTHROPIC_*, OLLAMA_* and LLAMAFILE_* env vars.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(_PROVIDER_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def anthropic_api_key():
    """Return ANTHROPIC_API_KEY or skip the test if unavailable."""
    key = os.getenv("ANTHROPIC_API_KEY")
    if not key:
        pytest.skip("ANTHROPIC_API_KEY not set")
    return key
