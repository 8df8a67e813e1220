"""Top-level API: backend resolution, request building, backend lifetime."""

from __future__ import annotations

import logging
from typing import Any

import pytest

import switchboard
from switchboard import (
    ChunkStream,
    InvalidRequestError,
    MissingCredentialError,
    NamedToolChoice,
    ProviderConfig,
    UnsupportedBackendError,
    register,
)
from tests.conftest import FakeProvider

pytestmark = pytest.mark.unit

HELLO = [{"role": "user", "content": "hello"}]


@pytest.fixture
def created() -> list[FakeProvider]:
    """Register ``fake-api`` and collect every instance the registry builds."""
    instances: list[FakeProvider] = []

    def factory(cfg: Any) -> FakeProvider:
        provider = FakeProvider(cfg)
        instances.append(provider)
        return provider

    register("fake-api", factory)
    return instances


@pytest.mark.asyncio
async def test_completion_resolves_backend_from_prefix(
    created: list[FakeProvider],
) -> None:
    response = await switchboard.completion("fake-api:tiny", HELLO)

    assert response.message.content == "ok:hello"
    assert response.model == "tiny"
    assert len(created) == 1
    assert created[0].close_calls == 1


@pytest.mark.asyncio
async def test_model_without_prefix_requires_provider(
    created: list[FakeProvider],
) -> None:
    with pytest.raises(InvalidRequestError, match="names no backend"):
        await switchboard.completion("tiny", HELLO)

    assert created == []


@pytest.mark.asyncio
async def test_provider_side_channel_by_name(created: list[FakeProvider]) -> None:
    response = await switchboard.completion("tiny", HELLO, provider="fake-api")

    assert response.model == "tiny"
    assert created[0].close_calls == 1


@pytest.mark.asyncio
async def test_provider_instance_is_used_and_left_open(
    fake_provider: FakeProvider,
) -> None:
    await switchboard.completion("tiny", HELLO, provider=fake_provider)

    assert fake_provider.payloads[0]["model"] == "tiny"
    assert fake_provider.close_calls == 0


@pytest.mark.asyncio
async def test_unknown_params_are_forwarded_as_extras(
    fake_provider: FakeProvider,
) -> None:
    await switchboard.completion(
        "tiny",
        HELLO,
        provider=fake_provider,
        temperature=0.1,
        top_k=40,
        extra={"keep_alive": "5m"},
    )

    assert fake_provider.payloads[0]["extra"] == {"keep_alive": "5m", "top_k": 40}


@pytest.mark.asyncio
async def test_config_extras_are_defaults_under_request_extras(
    created: list[FakeProvider],
) -> None:
    config = ProviderConfig(extra={"keep_alive": "5m", "top_k": 1})

    await switchboard.completion("fake-api:tiny", HELLO, config=config, top_k=40)
    stream = await switchboard.completion_stream("fake-api:tiny", HELLO, config=config)
    await stream.collect()

    assert created[0].payloads[0]["extra"] == {"keep_alive": "5m", "top_k": 40}
    assert created[1].payloads[0]["extra"] == {"keep_alive": "5m", "top_k": 1}


def test_build_request_coerces_dict_tools_and_choices() -> None:
    request = switchboard._build_request(
        "m",
        HELLO,
        {
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": "get_weather",
                        "parameters": {"type": "object"},
                    },
                }
            ],
            "tool_choice": {"type": "function", "function": {"name": "get_weather"}},
            "stop": "END",
        },
    )

    assert request.tools[0].function.name == "get_weather"
    assert request.tool_choice == NamedToolChoice("get_weather")
    assert request.stop == ("END",)
    assert request.messages[0].role == "user"
    assert request.stream is False


@pytest.mark.asyncio
async def test_completion_stream_closes_owned_backend_when_done(
    created: list[FakeProvider],
) -> None:
    stream = await switchboard.completion_stream("fake-api:tiny", HELLO)
    assert isinstance(stream, ChunkStream)

    chunks = await stream.collect()

    assert [c.delta.content for c in chunks] == ["a", "b", None]
    assert chunks[-1].finish_reason == "stop"
    assert created[0].payloads[0]["stream"] is True
    assert created[0].close_calls == 1


@pytest.mark.asyncio
async def test_completion_stream_rejects_invalid_request_and_closes(
    created: list[FakeProvider],
) -> None:
    with pytest.raises(InvalidRequestError):
        await switchboard.completion_stream("fake-api:tiny", [])

    assert created[0].close_calls == 1
    assert created[0].payloads == []


@pytest.mark.asyncio
async def test_completion_stream_error_surfaces_after_chunks(
    fake_provider: FakeProvider,
) -> None:
    fake_provider.events = ["a", RuntimeError("socket closed")]

    stream = await switchboard.completion_stream(
        "tiny", HELLO, provider=fake_provider
    )
    received = []
    with pytest.raises(switchboard.ProviderError, match="socket closed"):
        async for chunk in stream:
            received.append(chunk)

    assert [c.delta.content for c in received] == ["a"]


@pytest.mark.asyncio
async def test_embedding_and_list_models(created: list[FakeProvider]) -> None:
    embeddings = await switchboard.embedding("fake-api:embed", ["ab", "abc"])
    models = await switchboard.list_models("fake-api")

    assert [d.embedding for d in embeddings.data] == [(2.0,), (3.0,)]
    assert models.data[0].id == "fake-model"
    assert [p.close_calls for p in created] == [1, 1]


@pytest.mark.asyncio
async def test_embedding_rejects_unknown_parameters(
    created: list[FakeProvider],
) -> None:
    with pytest.raises(InvalidRequestError, match="temperature"):
        await switchboard.embedding("fake-api:embed", "hi", temperature=0.2)

    assert created == []


@pytest.mark.asyncio
async def test_embedding_forwards_known_parameters(
    fake_provider: FakeProvider,
) -> None:
    response = await switchboard.embedding(
        "embed", "abcd", provider=fake_provider, dimensions=8, user="u1"
    )

    assert response.data[0].embedding == (4.0,)


@pytest.mark.asyncio
async def test_unsupported_backend() -> None:
    with pytest.raises(UnsupportedBackendError):
        await switchboard.completion("nope:model", HELLO)


@pytest.mark.asyncio
async def test_missing_credentials_surface_before_any_call() -> None:
    with pytest.raises(MissingCredentialError) as exc:
        await switchboard.completion("openai:gpt-4o", HELLO)

    assert exc.value.env_var == "OPENAI_API_KEY"


class _BrokenCloseProvider(FakeProvider):
    async def aclose(self) -> None:
        raise RuntimeError("close exploded")


@pytest.mark.asyncio
async def test_cleanup_failure_is_logged_not_raised(
    caplog: pytest.LogCaptureFixture,
) -> None:
    register("broken-close", lambda cfg: _BrokenCloseProvider(cfg))

    with caplog.at_level(logging.WARNING, logger="switchboard"):
        response = await switchboard.completion("broken-close:tiny", HELLO)

    assert response.message.content == "ok:hello"
    assert "Provider cleanup failed" in caplog.text


def test_library_logger_has_null_handler() -> None:
    handlers = logging.getLogger("switchboard").handlers

    assert any(isinstance(h, logging.NullHandler) for h in handlers)


def test_version_is_a_string() -> None:
    assert isinstance(switchboard.__version__, str)
