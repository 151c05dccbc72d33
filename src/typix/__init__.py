"""Typix - chat-style AI image generation across third-party providers."""

__version__ = "0.1.0"

from typix.core.config import TypixConfig, config
from typix.core.provider_adapters import ProviderAdapterBase, provider_registry

# Import adapters to ensure they're registered
from typix.core.adapters import (  # noqa: F401
    CloudflareProvider,
    FalProvider,
    FluxProvider,
    GoogleProvider,
    OpenAIProvider,
)

__all__ = [
    "ProviderAdapterBase",
    "provider_registry",
    "TypixConfig",
    "config",
    "CloudflareProvider",
    "FalProvider",
    "FluxProvider",
    "GoogleProvider",
    "OpenAIProvider",
]
