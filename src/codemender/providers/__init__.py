"""Generation providers.

`get_provider` builds the GenerationClient named in the configuration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .anthropic import AnthropicProvider
from .ollama import OllamaProvider

if TYPE_CHECKING:
    from codemender.config import ProviderConfig
    from codemender.protocols import GenerationClient

__all__ = ["AnthropicProvider", "OllamaProvider", "get_provider"]


def get_provider(config: ProviderConfig) -> GenerationClient:
    """Create the configured provider.

    Raises:
        ValueError: for an unknown provider name.
    """
    name = config.name.lower()
    if name == "ollama":
        return OllamaProvider(url=config.url, model=config.model, timeout=config.timeout)
    if name == "anthropic":
        return AnthropicProvider(model=config.model, timeout=config.timeout)
    raise ValueError(f"Unknown provider: {config.name!r} (expected 'ollama' or 'anthropic')")
