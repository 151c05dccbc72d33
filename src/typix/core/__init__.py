"""Core functionality for image generation.

- **Provider Adapters**: one adapter per third-party image API behind
  :class:`ProviderAdapterBase`
- **provider_registry**: registry for looking up and instantiating adapters
- **GenerationExecutor**: drives a generation record to a terminal state
- **ChatService**: chats, messages and the two-phase generation flow
- **TypixConfig** / **config**: configuration from ``TYPIX_*`` variables

Architecture Overview
---------------------
1. **Configuration Layer** (config.py)
2. **Persistence Layer** (database.py, file_storage.py): sqlite3 store and
   base64/disk file backends
3. **Provider Layer** (provider_adapters.py, adapters/): settings schemas,
   ability resolution, error classification, CORS proxying
4. **Service Layer** (ai_service.py, generation.py, chat_service.py)

Usage Example
-------------
    from typix.core import ChatService, AiService, Database, FileStorage, config

    db = Database(config.database_path)
    files = FileStorage(db, config)
    chats = ChatService(db, config, files, AiService(db, config))

    created = chats.create_chat("GUEST", "Cats", "openai", "gpt-image-1", content="a cat")
    generation_id = created["messages"][1]["generation"]["id"]
    chats.create_message_generate(generation_id, "GUEST")
"""

# Import adapters to ensure they're registered
from typix.core.adapters import (  # noqa: F401
    CloudflareProvider,
    FalProvider,
    FluxProvider,
    GoogleProvider,
    OpenAIProvider,
)
from typix.core.ai_service import AiService
from typix.core.chat_service import ChatService
from typix.core.config import TypixConfig, config
from typix.core.database import Database
from typix.core.file_storage import FileStorage
from typix.core.generation import GenerationExecutor, GenerationParams, GenerationStore
from typix.core.provider_adapters import ProviderAdapterBase, provider_registry

__all__ = [
    "AiService",
    "ChatService",
    "Database",
    "FileStorage",
    "GenerationExecutor",
    "GenerationParams",
    "GenerationStore",
    "ProviderAdapterBase",
    "provider_registry",
    "TypixConfig",
    "config",
]
