"""Streaming primitives: per-stream accumulator and the chunk queue.

A streaming call runs one producer task that owns a ``StreamState`` end to end.
The task converts backend events into canonical chunks and hands them to the
caller through a bounded queue; a failure lands in a single error slot and is
raised once, after every chunk emitted before it.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from switchboard.types import (
    FINISH_STOP,
    ROLE_ASSISTANT,
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkChoice,
    ChunkDelta,
    FunctionCall,
    Message,
    ToolCall,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
    from types import TracebackType

    from switchboard.errors import LLMError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUEUE_SIZE = 64


class StreamConverter(Protocol):
    """Converts one backend event into zero or more canonical chunks."""

    state: StreamState

    def handle(self, event: Any) -> list[ChatCompletionChunk]:
        """Advance the stream state by one backend event."""
        ...


@dataclass
class ToolSlot:
    """One tool call being assembled from streamed fragments."""

    id: str
    name: str
    fragments: list[str] = field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)


@dataclass
class StreamState:
    """Mutable accumulator owned by exactly one in-flight stream conversion."""

    id: str = ""
    model: str = ""
    created: int = field(default_factory=lambda: int(time.time()))
    prompt_tokens: int = 0
    content: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    tool_slots: list[ToolSlot] = field(default_factory=list)
    current_tool: int = -1

    @property
    def text(self) -> str:
        return "".join(self.content)

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning)

    def chunk(
        self,
        delta: ChunkDelta | None = None,
        *,
        finish_reason: str | None = None,
        usage: Usage | None = None,
    ) -> ChatCompletionChunk:
        """Build a single-choice chunk stamped with this stream's id and model."""
        return ChatCompletionChunk(
            id=self.id,
            model=self.model,
            created=self.created,
            choices=(
                ChunkChoice(
                    index=0,
                    delta=delta or ChunkDelta(),
                    finish_reason=finish_reason,
                ),
            ),
            usage=usage,
        )

    def open_tool_slot(self, call_id: str, name: str) -> int:
        """Allocate the next tool-call slot and make it current."""
        self.tool_slots.append(ToolSlot(id=call_id, name=name))
        self.current_tool = len(self.tool_slots) - 1
        return self.current_tool

    def append_tool_arguments(self, fragment: str) -> ToolCall | None:
        """Route a partial-JSON fragment to the current slot.

        Returns the delta tool call (slot id/name plus this fragment only), or
        None when no slot is open.
        """
        idx = self.current_tool
        if idx < 0 or idx >= len(self.tool_slots):
            logger.debug("Dropping tool argument fragment with no open slot")
            return None
        slot = self.tool_slots[idx]
        slot.fragments.append(fragment)
        return ToolCall(
            id=slot.id,
            function=FunctionCall(name=slot.name, arguments=fragment),
            index=idx,
        )

    def tool_calls(self) -> tuple[ToolCall, ...]:
        return tuple(
            ToolCall(id=s.id, function=FunctionCall(name=s.name, arguments=s.arguments))
            for s in self.tool_slots
        )


_END = object()


class ChunkStream:
    """Async iterator over the canonical chunks of one streaming call.

    Iterate with ``async for``; a backend failure is raised as an ``LLMError``
    after the chunks that preceded it. Use ``async with`` (or ``aclose()``) to
    abandon a stream early: the producer stops promptly and emits nothing else.

    Example:
        async with await provider.completion_stream(request) as stream:
            async for chunk in stream:
                print(chunk.delta.content or "", end="")
    """

    def __init__(
        self,
        open_events: Callable[[], Awaitable[AsyncIterator[Any]]],
        converter: StreamConverter,
        *,
        classify: Callable[[Exception], LLMError],
        name: str = "stream",
        maxsize: int = DEFAULT_QUEUE_SIZE,
        cancel_event: asyncio.Event | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        if maxsize < 1:
            raise ValueError("ChunkStream maxsize must be >= 1")
        self._open_events = open_events
        self._converter = converter
        self._classify = classify
        self._on_close = on_close
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._cancel = cancel_event if cancel_event is not None else asyncio.Event()
        self._error: LLMError | None = None
        self._finished = False
        self._task = asyncio.create_task(self._produce(), name=f"switchboard-{name}")

    @property
    def error(self) -> LLMError | None:
        """The classified failure, once the producer has stopped."""
        return self._error

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def done(self) -> bool:
        """Whether the producer task has exited."""
        return self._task.done()

    @property
    def state(self) -> StreamState:
        return self._converter.state

    # --- producer side -----------------------------------------------------

    async def _race(self, aw: Awaitable[T]) -> tuple[bool, T | None]:
        """Await *aw* unless cancellation fires first."""
        if self._cancel.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            return False, None
        op = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {op, stop}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for fut in (op, stop):
                if not fut.done():
                    fut.cancel()
        if op in done:
            return True, op.result()
        with suppress(asyncio.CancelledError, Exception):
            await op
        return False, None

    async def _send(self, item: Any) -> bool:
        if self._cancel.is_set():
            return False
        try:
            self._queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            sent, _ = await self._race(self._queue.put(item))
            return sent

    async def _produce(self) -> None:
        events: AsyncIterator[Any] | None = None
        try:
            opened, events = await self._race(self._open_events())
            if not opened or events is None:
                return
            iterator = events.__aiter__()
            while True:
                received, event = await self._race(_next_event(iterator))
                if not received:
                    logger.debug("Stream cancelled by caller; stopping producer")
                    return
                if event is _END:
                    break
                for chunk in self._converter.handle(event):
                    if not await self._send(chunk):
                        logger.debug("Stream cancelled by caller; stopping producer")
                        return
        except Exception as exc:
            self._error = self._classify(exc)
        finally:
            await _close_quietly(events)
            if self._on_close is not None:
                try:
                    await self._on_close()
                except Exception as exc:
                    logger.warning("Provider cleanup failed: %s", exc)
        await self._send(_END)

    # --- consumer side -----------------------------------------------------

    def __aiter__(self) -> ChunkStream:
        return self

    async def __anext__(self) -> ChatCompletionChunk:
        if self._finished:
            raise StopAsyncIteration
        if not self._queue.empty():
            item = self._queue.get_nowait()
        else:
            received, item = await self._race(self._queue.get())
            if not received:
                item = _END
        if item is _END:
            self._finished = True
            if self._error is not None and not self._cancel.is_set():
                raise self._error
            raise StopAsyncIteration
        return item

    async def collect(self) -> list[ChatCompletionChunk]:
        """Drain the stream into a list (raises the stream error, if any)."""
        return [chunk async for chunk in self]

    async def aclose(self) -> None:
        """Cancel the stream and wait for the producer to exit."""
        self._cancel.set()
        self._finished = True
        await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self) -> ChunkStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


async def _next_event(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def _close_quietly(events: Any) -> None:
    if events is None:
        return
    for attr in ("aclose", "close"):
        closer = getattr(events, attr, None)
        if callable(closer):
            try:
                result = closer()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.debug("Closing backend event stream failed: %s", exc)
            return


def aggregate_chunks(chunks: Iterable[ChatCompletionChunk]) -> ChatCompletion:
    """Fold an ordered chunk sequence into the equivalent complete response."""
    response_id = ""
    model = ""
    created = 0
    fingerprint: str | None = None
    usage: Usage | None = None
    content: dict[int, list[str]] = {}
    reasoning: dict[int, list[str]] = {}
    finish: dict[int, str] = {}
    slots: dict[int, dict[int, dict[str, Any]]] = {}

    for chunk in chunks:
        response_id = response_id or chunk.id
        model = model or chunk.model
        created = created or chunk.created
        fingerprint = fingerprint or chunk.system_fingerprint
        if chunk.usage is not None:
            usage = chunk.usage
        for choice in chunk.choices:
            idx = choice.index
            content.setdefault(idx, [])
            delta = choice.delta
            if delta.content:
                content[idx].append(delta.content)
            if delta.reasoning:
                reasoning.setdefault(idx, []).append(delta.reasoning)
            for pos, tc in enumerate(delta.tool_calls):
                slot_idx = tc.index if tc.index is not None else pos
                slot = slots.setdefault(idx, {}).setdefault(
                    slot_idx, {"id": "", "name": "", "arguments": []}
                )
                slot["id"] = slot["id"] or tc.id
                slot["name"] = slot["name"] or tc.function.name
                slot["arguments"].append(tc.function.arguments)
            if choice.finish_reason:
                finish[idx] = choice.finish_reason

    choices = []
    for idx in sorted(content):
        tool_calls = tuple(
            ToolCall(
                id=s["id"],
                function=FunctionCall(name=s["name"], arguments="".join(s["arguments"])),
            )
            for _, s in sorted(slots.get(idx, {}).items())
        )
        choices.append(
            Choice(
                index=idx,
                message=Message(
                    role=ROLE_ASSISTANT,
                    content="".join(content[idx]),
                    tool_calls=tool_calls,
                    reasoning="".join(reasoning[idx]) if idx in reasoning else None,
                ),
                finish_reason=finish.get(idx, FINISH_STOP),
            )
        )

    return ChatCompletion(
        id=response_id,
        model=model,
        created=created,
        choices=tuple(choices),
        usage=usage,
        system_fingerprint=fingerprint,
    )
