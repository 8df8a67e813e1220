"""Backend registry: name → factory, and ``backend:model`` parsing.

Names are matched case-insensitively. Registration normally happens once at
import time (see ``switchboard.providers``); lookups are safe from any thread
and from any number of concurrent tasks.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from switchboard.config import ProviderConfig
from switchboard.errors import UnsupportedBackendError

if TYPE_CHECKING:
    from collections.abc import Callable

    from switchboard.providers.base import Provider

    ProviderFactory = Callable[[ProviderConfig], Provider]

logger = logging.getLogger(__name__)


class _ProviderRegistry:
    """Internal name → factory mapping guarded by a lock."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        self._lock = threading.Lock()

    def register(self, name: str, factory: ProviderFactory) -> None:
        key = name.strip().lower()
        if not key:
            raise ValueError("backend name cannot be empty")
        with self._lock:
            if key in self._factories:
                logger.debug("Replacing registered backend %r", key)
            self._factories[key] = factory

    def get(self, name: str) -> ProviderFactory | None:
        with self._lock:
            return self._factories.get(name.strip().lower())

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._factories)


_registry = _ProviderRegistry()


def register(name: str, factory: ProviderFactory) -> None:
    """Register a backend factory under *name* (lowercased).

    Registering an existing name replaces the earlier factory.

    Example:
        register("my-gateway", lambda cfg: OpenAICompatibleProvider(settings, cfg))
    """
    _registry.register(name, factory)


def create_provider(name: str, config: ProviderConfig | None = None) -> Provider:
    """Instantiate the backend registered under *name*.

    Raises:
        UnsupportedBackendError: No backend is registered under that name.
        MissingCredentialError: The backend requires a key and none was found.
    """
    factory = _registry.get(name)
    if factory is None:
        known = ", ".join(_registry.names()) or "none"
        raise UnsupportedBackendError(
            name.strip().lower(), hint=f"Registered backends: {known}."
        )
    return factory(config if config is not None else ProviderConfig())


def registered_providers() -> list[str]:
    """Return registered backend names, sorted."""
    return _registry.names()


def is_registered(name: str) -> bool:
    return _registry.get(name) is not None


def parse_model_string(model: str) -> tuple[str, str]:
    """Split ``"backend:model"`` on the first colon.

    A string without a colon yields an empty backend name and the whole input
    as the model id. Model ids may themselves contain colons
    (``"ollama:llama3:8b"`` → ``("ollama", "llama3:8b")``).
    """
    backend, sep, model_id = model.partition(":")
    if not sep:
        return "", model
    return backend, model_id
