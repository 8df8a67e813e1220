"""Configuration: the transport and credential bundle handed to a backend."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from typing import Any
from urllib.parse import urlparse

from dotenv import load_dotenv
import httpx

from switchboard._http import DEFAULT_TIMEOUT_S
from switchboard._validation import _freeze_mapping
from switchboard.errors import ConfigurationError

load_dotenv()


def _validate_base_url(base_url: str) -> str:
    parsed = urlparse(base_url)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(
            f"base URL {base_url!r} must have scheme and host",
            hint="Pass a full URL such as 'http://localhost:11434'.",
        )
    return base_url


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable configuration for one backend instance.

    Every field is optional. Backends fall back to their standard environment
    variables for credentials and base URLs.

    Example:
        config = ProviderConfig(api_key="sk-...", timeout=30)
        provider = create_provider("openai", config)
    """

    api_key: str | None = None
    base_url: str | None = None
    timeout: float = DEFAULT_TIMEOUT_S
    #: Takes precedence over ``timeout``; the client manages its own timeouts.
    http_client: httpx.AsyncClient | None = None
    #: Default backend extras; a request's own ``extra`` wins per key.
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Normalize and validate configuration values."""
        if self.api_key is not None:
            key = self.api_key.strip()
            if not key:
                raise ConfigurationError(
                    "API key cannot be empty",
                    hint="Omit api_key to resolve it from the environment.",
                )
            object.__setattr__(self, "api_key", key)

        if self.base_url is not None:
            url = self.base_url.strip()
            if not url:
                raise ConfigurationError("base URL cannot be empty")
            object.__setattr__(self, "base_url", _validate_base_url(url))

        if self.timeout <= 0:
            raise ConfigurationError(
                f"timeout must be positive, got {self.timeout}",
                hint="This is the per-request timeout in seconds.",
            )

        cleaned: dict[str, Any] = {}
        for key, value in (self.extra or {}).items():
            stripped = str(key).strip()
            if not stripped:
                raise ConfigurationError("extra key cannot be empty")
            cleaned[stripped] = value
        object.__setattr__(self, "extra", _freeze_mapping(cleaned))

    def resolve_api_key(self, env_var: str | None) -> str | None:
        """Return the explicit key, else the value of *env_var*, else None."""
        if self.api_key:
            return self.api_key
        if not env_var:
            return None
        value = os.environ.get(env_var, "").strip()
        return value or None

    def resolve_base_url(self, env_var: str | None, default: str | None) -> str | None:
        """Resolve base URL from explicit config, environment, then default."""
        base_url = self.base_url
        if not base_url and env_var:
            base_url = os.environ.get(env_var, "").strip() or None
        if not base_url:
            base_url = default
        if not base_url:
            return None
        return _validate_base_url(base_url.strip())

    @property
    def owns_http_client(self) -> bool:
        """True when backends must create (and close) their own client."""
        return self.http_client is None

    def get_http_client(self) -> httpx.AsyncClient:
        """Return the injected client, or a new one honoring ``timeout``.

        A newly created client belongs to the caller, who must close it.
        """
        if self.http_client is not None:
            return self.http_client
        return httpx.AsyncClient(timeout=self.timeout)

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"ProviderConfig(api_key={'[REDACTED]' if self.api_key else None}, "
            f"base_url={self.base_url!r}, timeout={self.timeout!r})"
        )

    __repr__ = __str__
