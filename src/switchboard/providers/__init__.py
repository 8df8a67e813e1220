"""Backend implementations; importing this package registers the built-ins."""

from switchboard.registry import register

from .anthropic import AnthropicProvider
from .base import BaseProvider, Provider, ProviderCapabilities
from .llamafile import LlamafileProvider
from .ollama import OllamaProvider
from .openai import CompatibleSettings, OpenAICompatibleProvider, OpenAIProvider

register("anthropic", AnthropicProvider)
register("llamafile", LlamafileProvider)
register("ollama", OllamaProvider)
register("openai", OpenAIProvider)

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "CompatibleSettings",
    "LlamafileProvider",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderCapabilities",
]
