"""Internal helpers for building immutable value objects.

Canonical requests are constructed once per call and must not change after
construction, so list and dict inputs are frozen on the way in.
"""

from __future__ import annotations

from types import MappingProxyType
import typing

T = typing.TypeVar("T")


def _freeze_mapping(
    m: dict[str, T] | typing.Mapping[str, T] | None,
) -> typing.Mapping[str, T]:
    """Return an immutable mapping view (empty when *m* is None).

    Accepts dict or Mapping; wraps a copy in MappingProxyType.
    """
    if m is None:
        return MappingProxyType({})
    if isinstance(m, MappingProxyType):
        return m
    return MappingProxyType(dict(m))


def _freeze_json(value: typing.Any) -> typing.Any:
    """Recursively freeze a JSON-like value (dicts → mapping proxies, lists → tuples)."""
    if isinstance(value, dict | MappingProxyType):
        return MappingProxyType({k: _freeze_json(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_freeze_json(v) for v in value)
    return value


def _thaw_json(value: typing.Any) -> typing.Any:
    """Inverse of ``_freeze_json``: produce plain dicts and lists for wire payloads."""
    if isinstance(value, typing.Mapping):
        return {k: _thaw_json(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_thaw_json(v) for v in value]
    return value


def _as_tuple(value: typing.Any) -> tuple[typing.Any, ...]:
    if value is None:
        return ()
    if isinstance(value, tuple):
        return value
    return tuple(value)
