"""Exception hierarchy for Switchboard.

Every failure that crosses the engine boundary is an ``LLMError`` tagged with
exactly one ``ErrorCode``. Callers match on the subclass or on ``err.code``;
neither requires knowing which backend answered.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from switchboard._http import RETRYABLE_STATUS_CODES

if TYPE_CHECKING:
    from collections.abc import Iterator


class SwitchboardError(Exception):
    """Base exception for all Switchboard errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(SwitchboardError):
    """Backend configuration validation or resolution failed."""


class ErrorCode(str, Enum):
    """Closed canonical error taxonomy."""

    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    CONTENT_FILTER = "content_filter"
    MODEL_NOT_FOUND = "model_not_found"
    PROVIDER_ERROR = "provider_error"
    MISSING_CREDENTIAL = "missing_credential"
    UNSUPPORTED_BACKEND = "unsupported_backend"
    UNSUPPORTED_PARAMETER = "unsupported_parameter"


class LLMError(SwitchboardError):
    """Canonical error raised for any backend or request failure.

    ``original`` holds the backend error for inspection. It is never mutated.
    """

    code: ErrorCode = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        original: BaseException | None = None,
        status_code: int | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.message = message
        self.provider = provider
        self.original = original
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Whether a caller-side retry could plausibly succeed.

        Informational only; Switchboard itself never retries.
        """
        if self.code is ErrorCode.RATE_LIMIT:
            return True
        return self.status_code in RETRYABLE_STATUS_CODES

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.code.value}: {self.message}"
        return f"{self.code.value}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code.value!r}, "
            f"provider={self.provider!r}, message={self.message!r})"
        )


class RateLimitError(LLMError):
    """Backend rate limit or quota exceeded."""

    code = ErrorCode.RATE_LIMIT

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        original: BaseException | None = None,
        status_code: int | None = None,
        hint: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(
            message,
            provider=provider,
            original=original,
            status_code=status_code,
            hint=hint,
        )
        #: Seconds until a retry is allowed, when the backend says so.
        self.retry_after = retry_after


class AuthenticationError(LLMError):
    """Credentials were rejected."""

    code = ErrorCode.AUTHENTICATION


class InvalidRequestError(LLMError):
    """The request is malformed or was rejected as invalid."""

    code = ErrorCode.INVALID_REQUEST


class ContextLengthError(LLMError):
    """The prompt exceeds the model's context window."""

    code = ErrorCode.CONTEXT_LENGTH_EXCEEDED


class ContentFilterError(LLMError):
    """Input or output was blocked by a safety filter."""

    code = ErrorCode.CONTENT_FILTER


class ModelNotFoundError(LLMError):
    """The requested model does not exist on the backend."""

    code = ErrorCode.MODEL_NOT_FOUND


class ProviderError(LLMError):
    """Catch-all for backend failures that fit no narrower member."""

    code = ErrorCode.PROVIDER_ERROR


class MissingCredentialError(LLMError):
    """No credential was supplied for a backend that requires one."""

    code = ErrorCode.MISSING_CREDENTIAL

    def __init__(self, provider: str, env_var: str) -> None:
        super().__init__(
            f"API key not provided. Set {env_var} or pass api_key in ProviderConfig",
            provider=provider,
            hint=f"export {env_var}=...",
        )
        self.env_var = env_var


class UnsupportedBackendError(LLMError):
    """No backend is registered under the requested name."""

    code = ErrorCode.UNSUPPORTED_BACKEND

    def __init__(self, provider: str, *, hint: str | None = None) -> None:
        super().__init__(
            f"backend {provider!r} is not supported", provider=provider, hint=hint
        )


class UnsupportedParameterError(LLMError):
    """A parameter or optional operation is not supported by the backend."""

    code = ErrorCode.UNSUPPORTED_PARAMETER

    def __init__(self, provider: str, param: str) -> None:
        super().__init__(
            f"parameter {param!r} is not supported by backend {provider}",
            provider=provider,
        )
        self.param = param


ERROR_CLASSES: dict[ErrorCode, type[LLMError]] = {
    ErrorCode.RATE_LIMIT: RateLimitError,
    ErrorCode.AUTHENTICATION: AuthenticationError,
    ErrorCode.INVALID_REQUEST: InvalidRequestError,
    ErrorCode.CONTEXT_LENGTH_EXCEEDED: ContextLengthError,
    ErrorCode.CONTENT_FILTER: ContentFilterError,
    ErrorCode.MODEL_NOT_FOUND: ModelNotFoundError,
    ErrorCode.PROVIDER_ERROR: ProviderError,
}


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
