"""Compiled-in provider adapters.

Importing this package registers every adapter with
:data:`typix.core.provider_adapters.provider_registry`. Registration order is
display order; the first provider is the default.
"""

from typix.core.adapters.cloudflare import CloudflareProvider
from typix.core.adapters.google import GoogleProvider
from typix.core.adapters.openai_images import OpenAIProvider
from typix.core.adapters.flux import FluxProvider
from typix.core.adapters.fal import FalProvider

__all__ = [
    "CloudflareProvider",
    "GoogleProvider",
    "OpenAIProvider",
    "FluxProvider",
    "FalProvider",
]
