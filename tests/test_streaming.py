"""Streaming primitives: the per-stream accumulator, ChunkStream, aggregation.

ChunkStream guarantees ordered delivery, a single error after the chunks that
preceded it, and prompt, silent shutdown on cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from switchboard.errors import LLMError, ProviderError
from switchboard.providers._errors import ErrorTable, classify_error
from switchboard.streaming import ChunkStream, StreamState, aggregate_chunks
from switchboard.types import (
    ChatCompletionChunk,
    ChunkChoice,
    ChunkDelta,
    FunctionCall,
    ToolCall,
    Usage,
)
from tests.conftest import FakeStreamConverter
from tests.helpers import FakeEventStream

pytestmark = pytest.mark.unit

TIMEOUT_S = 2.0


def _classify(exc: Exception) -> LLMError:
    return classify_error(exc, provider="fake", table=ErrorTable())


def _stream(events: FakeEventStream, **kwargs: Any) -> ChunkStream:
    async def open_events() -> FakeEventStream:
        return events

    return ChunkStream(
        open_events, FakeStreamConverter("m"), classify=_classify, **kwargs
    )


# =============================================================================
# StreamState
# =============================================================================


def test_tool_fragments_accumulate_per_slot() -> None:
    state = StreamState(id="s", model="m")
    state.open_tool_slot("toolu_1", "get_weather")

    first = state.append_tool_arguments('{"location":')
    second = state.append_tool_arguments('"Paris"}')

    assert first is not None and second is not None
    assert first.function.arguments == '{"location":'
    assert second.function.arguments == '"Paris"}'
    assert (second.id, second.function.name, second.index) == (
        "toolu_1",
        "get_weather",
        0,
    )
    assert state.tool_slots[0].arguments == '{"location":"Paris"}'
    assert state.tool_calls()[0].function.arguments == '{"location":"Paris"}'


def test_fragment_without_open_slot_is_dropped() -> None:
    state = StreamState()

    assert state.append_tool_arguments('{"x": 1}') is None
    assert state.tool_slots == []


def test_slots_get_increasing_indexes() -> None:
    state = StreamState()

    assert state.open_tool_slot("a", "f") == 0
    assert state.open_tool_slot("b", "g") == 1
    assert state.append_tool_arguments("{}").index == 1  # type: ignore[union-attr]


def test_chunk_is_stamped_with_stream_identity() -> None:
    state = StreamState(id="chatcmpl-9", model="m", created=42)

    chunk = state.chunk(ChunkDelta(content="x"), finish_reason="stop")

    assert (chunk.id, chunk.model, chunk.created) == ("chatcmpl-9", "m", 42)
    assert chunk.delta.content == "x"
    assert chunk.finish_reason == "stop"


# =============================================================================
# ChunkStream
# =============================================================================


@pytest.mark.asyncio
async def test_chunks_arrive_in_event_order() -> None:
    events = FakeEventStream(["a", "b", "c", None])

    async with _stream(events) as stream:
        chunks = await asyncio.wait_for(stream.collect(), TIMEOUT_S)

    assert [c.delta.content for c in chunks] == ["a", "b", "c", None]
    assert chunks[-1].finish_reason == "stop"
    assert {c.id for c in chunks} == {"fake-1"}
    assert events.closed is True
    assert stream.error is None


@pytest.mark.asyncio
async def test_replaying_events_is_deterministic() -> None:
    runs = []
    for _ in range(3):
        stream = _stream(FakeEventStream(["x", "y", None]))
        runs.append([c.to_dict() for c in await stream.collect()])

    assert runs[0] == runs[1] == runs[2]


@pytest.mark.asyncio
async def test_error_is_raised_once_after_preceding_chunks() -> None:
    stream = _stream(FakeEventStream(["a", RuntimeError("connection reset")]))
    received: list[ChatCompletionChunk] = []

    with pytest.raises(ProviderError, match="connection reset") as exc:
        async for chunk in stream:
            received.append(chunk)

    assert [c.delta.content for c in received] == ["a"]
    assert stream.error is exc.value
    assert isinstance(exc.value.original, RuntimeError)
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_failure_to_open_surfaces_as_classified_error() -> None:
    async def open_events() -> Any:
        raise ConnectionRefusedError("refused")

    stream = ChunkStream(open_events, FakeStreamConverter(), classify=_classify)

    with pytest.raises(ProviderError):
        await stream.collect()


@pytest.mark.asyncio
async def test_aclose_mid_stream_stops_producer_without_terminal_chunk() -> None:
    gate = asyncio.Event()
    events = FakeEventStream(["a", "b", None], gate=gate, pause_after=1)
    stream = _stream(events)

    first = await asyncio.wait_for(stream.__anext__(), TIMEOUT_S)
    await asyncio.wait_for(stream.aclose(), TIMEOUT_S)

    assert first.delta.content == "a"
    assert stream.done
    assert stream.cancelled
    assert stream.error is None
    assert events.closed is True
    assert stream.state.text == "a"
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_caller_cancel_event_ends_iteration_silently() -> None:
    gate = asyncio.Event()
    cancel = asyncio.Event()
    stream = _stream(
        FakeEventStream(["a", "b", None], gate=gate, pause_after=1),
        cancel_event=cancel,
    )

    received = [await asyncio.wait_for(stream.__anext__(), TIMEOUT_S)]
    cancel.set()
    async for chunk in stream:
        received.append(chunk)
    await asyncio.wait_for(stream.aclose(), TIMEOUT_S)

    assert [c.delta.content for c in received] == ["a"]
    assert all(c.finish_reason is None for c in received)
    assert stream.error is None


@pytest.mark.asyncio
async def test_full_queue_does_not_block_abandonment() -> None:
    stream = _stream(FakeEventStream(["a"] * 20 + [None]), maxsize=1)
    for _ in range(5):
        await asyncio.sleep(0)

    await asyncio.wait_for(stream.aclose(), TIMEOUT_S)

    assert stream.done
    assert len(stream.state.content) < 20


@pytest.mark.asyncio
async def test_on_close_runs_once_after_completion() -> None:
    calls = []

    async def on_close() -> None:
        calls.append("closed")

    stream = _stream(FakeEventStream(["a", None]), on_close=on_close)
    await stream.collect()
    await stream.aclose()

    assert calls == ["closed"]


@pytest.mark.asyncio
async def test_on_close_failure_is_logged_not_raised(
    caplog: pytest.LogCaptureFixture,
) -> None:
    async def on_close() -> None:
        raise RuntimeError("close failed")

    stream = _stream(FakeEventStream(["a", None]), on_close=on_close)
    with caplog.at_level(logging.WARNING, logger="switchboard.streaming"):
        chunks = await stream.collect()

    assert len(chunks) == 2
    assert "Provider cleanup failed" in caplog.text


def test_maxsize_must_be_positive() -> None:
    async def open_events() -> Any:
        return FakeEventStream([])

    with pytest.raises(ValueError, match="maxsize"):
        ChunkStream(open_events, FakeStreamConverter(), classify=_classify, maxsize=0)


# =============================================================================
# aggregate_chunks
# =============================================================================


def _chunk(
    delta: ChunkDelta, finish: str | None = None, usage: Usage | None = None
) -> ChatCompletionChunk:
    return ChatCompletionChunk(
        id="c1",
        model="m",
        created=7,
        choices=(ChunkChoice(index=0, delta=delta, finish_reason=finish),),
        usage=usage,
    )


def test_aggregate_concatenates_content_reasoning_and_tool_arguments() -> None:
    usage = Usage(prompt_tokens=5, completion_tokens=3, total_tokens=8)
    chunks = [
        _chunk(ChunkDelta(role="assistant")),
        _chunk(ChunkDelta(reasoning="think")),
        _chunk(ChunkDelta(content="Hel")),
        _chunk(ChunkDelta(content="lo")),
        _chunk(
            ChunkDelta(
                tool_calls=(
                    ToolCall(
                        id="t1", function=FunctionCall("f", '{"location":'), index=0
                    ),
                )
            )
        ),
        _chunk(
            ChunkDelta(
                tool_calls=(ToolCall(function=FunctionCall("", '"Paris"}'), index=0),)
            )
        ),
        _chunk(ChunkDelta(), finish="tool_calls", usage=usage),
    ]

    completion = aggregate_chunks(chunks)

    assert completion.id == "c1"
    assert completion.created == 7
    assert completion.message.content == "Hello"
    assert completion.message.reasoning == "think"
    assert completion.message.tool_calls == (
        ToolCall(id="t1", function=FunctionCall("f", '{"location":"Paris"}')),
    )
    assert completion.choices[0].finish_reason == "tool_calls"
    assert completion.usage == usage


def test_aggregate_defaults_finish_to_stop() -> None:
    completion = aggregate_chunks([_chunk(ChunkDelta(content="x"))])

    assert completion.choices[0].finish_reason == "stop"
    assert completion.usage is None
    assert completion.message.reasoning is None
