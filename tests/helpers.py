"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off SDK fakes as coverage expands. SDK objects are only
read through attribute access, so ``SimpleNamespace`` stands in for them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any


def ns(**kwargs: Any) -> SimpleNamespace:
    return SimpleNamespace(**kwargs)


class FakeEventStream:
    """Async event stream that records whether it was closed.

    Exceptions in ``events`` are raised at their position; ``gate`` (when set)
    blocks after ``pause_after`` events until released.
    """

    def __init__(
        self,
        events: list[Any],
        *,
        gate: asyncio.Event | None = None,
        pause_after: int = 0,
    ) -> None:
        self.events = list(events)
        self.gate = gate
        self.pause_after = pause_after
        self.closed = False
        self._pos = 0

    def __aiter__(self) -> FakeEventStream:
        return self

    async def __anext__(self) -> Any:
        if self.gate is not None and self._pos == self.pause_after:
            await self.gate.wait()
        if self._pos >= len(self.events):
            raise StopAsyncIteration
        item = self.events[self._pos]
        self._pos += 1
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


@dataclass
class CaptureCreate:
    """Async ``create(**kwargs)`` double: records kwargs, returns scripted results."""

    results: list[Any] = field(default_factory=list)
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        item = self.results.pop(0) if self.results else None
        if isinstance(item, BaseException):
            raise item
        return item

    @property
    def last(self) -> dict[str, Any]:
        return self.calls[-1]


def fake_anthropic_client(create: CaptureCreate) -> SimpleNamespace:
    return ns(messages=ns(create=create), close=_noop_close)


def fake_openai_client(
    create: CaptureCreate,
    *,
    embeddings: CaptureCreate | None = None,
    models: list[Any] | None = None,
) -> SimpleNamespace:
    return ns(
        chat=ns(completions=ns(create=create)),
        embeddings=ns(create=embeddings or CaptureCreate()),
        models=ns(list=lambda: FakeEventStream(models or [])),
        close=_noop_close,
    )


async def _noop_close() -> None:
    return None


class StatusError(Exception):
    """SDK-style error carrying a status code and an optional JSON body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body
        if headers is not None:
            self.response = ns(status_code=status_code, headers=headers)


# =============================================================================
# Anthropic stream events
# =============================================================================


def a_message_start(
    msg_id: str = "msg_01", model: str = "claude-sonnet-4-5", input_tokens: int = 12
) -> SimpleNamespace:
    return ns(
        type="message_start",
        message=ns(id=msg_id, model=model, usage=ns(input_tokens=input_tokens)),
    )


def a_text_block(index: int = 0) -> SimpleNamespace:
    return ns(
        type="content_block_start", index=index, content_block=ns(type="text", text="")
    )


def a_tool_block(tool_id: str, name: str, index: int = 1) -> SimpleNamespace:
    return ns(
        type="content_block_start",
        index=index,
        content_block=ns(type="tool_use", id=tool_id, name=name, input={}),
    )


def a_text(text: str, index: int = 0) -> SimpleNamespace:
    return ns(
        type="content_block_delta", index=index, delta=ns(type="text_delta", text=text)
    )


def a_thinking(text: str, index: int = 0) -> SimpleNamespace:
    return ns(
        type="content_block_delta",
        index=index,
        delta=ns(type="thinking_delta", thinking=text),
    )


def a_json(partial: str, index: int = 1) -> SimpleNamespace:
    return ns(
        type="content_block_delta",
        index=index,
        delta=ns(type="input_json_delta", partial_json=partial),
    )


def a_block_stop(index: int = 0) -> SimpleNamespace:
    return ns(type="content_block_stop", index=index)


def a_message_delta(stop_reason: str | None, output_tokens: int = 7) -> SimpleNamespace:
    return ns(
        type="message_delta",
        delta=ns(stop_reason=stop_reason),
        usage=ns(output_tokens=output_tokens),
    )


def a_message_stop() -> SimpleNamespace:
    return ns(type="message_stop")


# =============================================================================
# OpenAI chunks
# =============================================================================


def o_chunk(
    *,
    content: str | None = None,
    role: str | None = None,
    tool_calls: list[Any] | None = None,
    finish_reason: str | None = None,
    usage: Any = None,
    chunk_id: str = "chatcmpl-1",
    model: str = "gpt-4o-mini",
) -> SimpleNamespace:
    choices = []
    if content is not None or role or tool_calls or finish_reason:
        choices.append(
            ns(
                index=0,
                delta=ns(role=role, content=content, tool_calls=tool_calls),
                finish_reason=finish_reason,
            )
        )
    return ns(
        id=chunk_id,
        model=model,
        created=1700000000,
        choices=choices,
        usage=usage,
        system_fingerprint=None,
    )


def o_tool_delta(
    index: int, *, call_id: str | None = None, name: str | None = None, args: str = ""
) -> SimpleNamespace:
    return ns(
        index=index,
        id=call_id,
        type="function" if call_id else None,
        function=ns(name=name, arguments=args),
    )
