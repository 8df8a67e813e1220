"""Shared error classification for backends.

Each backend supplies an ``ErrorTable``; ``classify_error`` applies it with a
fixed precedence: HTTP status first, then the vendor error code, then the
generic ``provider_error`` fallback. Classification never raises.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
from typing import Any

import httpx

from switchboard.errors import (
    ERROR_CLASSES,
    ErrorCode,
    LLMError,
    RateLimitError,
    _walk_exception_chain,
)


@dataclass(frozen=True)
class ErrorTable:
    """Backend-specific classification vocabulary."""

    status: Mapping[int, ErrorCode] = field(default_factory=dict)
    codes: Mapping[str, ErrorCode] = field(default_factory=dict)
    #: Lowercase substrings that mark a 400 as a context-length failure.
    context_markers: tuple[str, ...] = ()
    #: Lowercase substrings that mark a 400 as a safety-filter block.
    content_filter_markers: tuple[str, ...] = ()
    #: Replacement message for transport failures (server unreachable).
    network_message: str | None = None


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a Retry-After delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if not isinstance(headers, Mapping) and not isinstance(headers, httpx.Headers):
            continue
        raw = headers.get("retry-after") or headers.get("Retry-After")
        if isinstance(raw, str) and raw.strip():
            try:
                seconds = float(raw)
            except ValueError:
                continue
            if seconds >= 0:
                return seconds
    return None


def _error_body(exc: BaseException) -> Mapping[str, Any] | None:
    """Return the structured error payload attached to *exc*, if any."""
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        return body
    if isinstance(body, (str, bytes)) and body:
        try:
            parsed = json.loads(body)
        except ValueError:
            return None
        return parsed if isinstance(parsed, Mapping) else None
    return None


def extract_vendor_code(exc: BaseException) -> str | None:
    """Find a vendor error code (``code``, else ``type``) along the chain."""
    for e in _walk_exception_chain(exc):
        code = getattr(e, "code", None)
        if isinstance(code, str) and code:
            return code
        body = _error_body(e)
        if body is None:
            continue
        error = body.get("error", body)
        if not isinstance(error, Mapping):
            continue
        for key in ("code", "type"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def error_message(exc: BaseException) -> str:
    """Best human-readable message for *exc*."""
    body = _error_body(exc)
    if body is not None:
        error = body.get("error", body)
        if isinstance(error, Mapping) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str) and error:
            return error
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or type(exc).__name__


def is_network_error(exc: BaseException) -> bool:
    """True when the chain contains a transport-level failure."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TransportError, ConnectionError, TimeoutError)):
            return True
        # SDK connection errors subclass their own hierarchy, not httpx's.
        if type(e).__name__ in {"APIConnectionError", "APITimeoutError"}:
            return True
    return False


def _auth_hint(env_var: str | None) -> str:
    if env_var:
        return f"Check credentials (set {env_var} or ProviderConfig.api_key)."
    return "Check credentials (set ProviderConfig.api_key)."


def _classify_400(
    message: str, vendor_code: str | None, table: ErrorTable
) -> ErrorCode:
    if vendor_code is not None:
        mapped = table.codes.get(vendor_code)
        if mapped in {ErrorCode.CONTEXT_LENGTH_EXCEEDED, ErrorCode.CONTENT_FILTER}:
            return mapped
    lowered = message.lower()
    if any(marker in lowered for marker in table.context_markers):
        return ErrorCode.CONTEXT_LENGTH_EXCEEDED
    if any(marker in lowered for marker in table.content_filter_markers):
        return ErrorCode.CONTENT_FILTER
    return ErrorCode.INVALID_REQUEST


def classify_error(
    exc: BaseException,
    *,
    provider: str,
    table: ErrorTable,
    credential_env: str | None = None,
) -> LLMError:
    """Map a backend exception onto the canonical taxonomy.

    An exception that is already an ``LLMError`` passes through; when it names
    no provider, a copy naming *provider* is returned and the input is left
    untouched. Anything unrecognized becomes ``ProviderError``.
    """
    if isinstance(exc, LLMError):
        if exc.provider:
            return exc
        return _with_provider(exc, provider)

    status = extract_status_code(exc)
    vendor_code = extract_vendor_code(exc)
    message = error_message(exc)

    code: ErrorCode | None = None
    if status is not None:
        if status == 400:
            code = _classify_400(message, vendor_code, table)
        else:
            code = table.status.get(status)
    if code is None and vendor_code is not None:
        code = table.codes.get(vendor_code)
    if code is None:
        code = ErrorCode.PROVIDER_ERROR
        if status is None and table.network_message and is_network_error(exc):
            message = f"{table.network_message}: {message}"

    hint = _auth_hint(credential_env) if code is ErrorCode.AUTHENTICATION else None
    return build_error(
        code,
        message,
        provider=provider,
        original=exc,
        status_code=status,
        hint=hint,
    )


def _with_provider(exc: LLMError, provider: str) -> LLMError:
    # Subclass constructors differ, so copy attributes instead of re-initializing.
    clone = type(exc).__new__(type(exc), *exc.args)
    clone.__dict__.update(exc.__dict__)
    clone.provider = provider
    clone.__cause__ = exc.__cause__
    return clone


def build_error(
    code: ErrorCode,
    message: str,
    *,
    provider: str,
    original: BaseException | None = None,
    status_code: int | None = None,
    hint: str | None = None,
) -> LLMError:
    """Instantiate the exception class registered for *code*."""
    cls = ERROR_CLASSES.get(code, ERROR_CLASSES[ErrorCode.PROVIDER_ERROR])
    if cls is RateLimitError:
        err: LLMError = RateLimitError(
            message,
            provider=provider,
            original=original,
            status_code=status_code,
            hint=hint,
            retry_after=(
                extract_retry_after_s(original) if original is not None else None
            ),
        )
    else:
        err = cls(
            message,
            provider=provider,
            original=original,
            status_code=status_code,
            hint=hint,
        )
    if original is not None:
        err.__cause__ = original
    return err


# Shared by every backend; per-backend tables extend it.
COMMON_STATUS: Mapping[int, ErrorCode] = {
    401: ErrorCode.AUTHENTICATION,
    404: ErrorCode.MODEL_NOT_FOUND,
    429: ErrorCode.RATE_LIMIT,
}
