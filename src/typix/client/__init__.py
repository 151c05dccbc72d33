"""Client-side pieces: REST client, status poller and chat session."""

from typix.client.api_client import TypixClient
from typix.client.poller import GenerationPoller, PollerRegistry
from typix.client.session import ChatSession

__all__ = ["ChatSession", "GenerationPoller", "PollerRegistry", "TypixClient"]
