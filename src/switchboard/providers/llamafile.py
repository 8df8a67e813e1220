"""Llamafile backend: a local llama.cpp server with an OpenAI-compatible API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from switchboard.providers.base import ProviderCapabilities
from switchboard.providers.openai import CompatibleSettings, OpenAICompatibleProvider

if TYPE_CHECKING:
    from switchboard.config import ProviderConfig

LLAMAFILE_SETTINGS = CompatibleSettings(
    name="llamafile",
    api_key_env=None,
    base_url_env="LLAMAFILE_BASE_URL",
    default_base_url="http://localhost:8080/v1",
    # The server ignores auth, but the client insists on a key.
    default_api_key="llamafile",
    require_api_key=False,
    capabilities=ProviderCapabilities(
        tools=True,
        reasoning=False,
        images=True,
        structured_outputs=True,
        embedding=True,
        list_models=True,
    ),
    network_message="llamafile server not running",
)


class LlamafileProvider(OpenAICompatibleProvider):
    """Local llamafile server; no credentials required."""

    def __init__(self, config: ProviderConfig | None = None) -> None:
        super().__init__(LLAMAFILE_SETTINGS, config)
