"""Client-side chat orchestration.

:class:`ChatSession` keeps a local copy of the open chat's messages and
drives the two-phase generation flow from the client:

1. create the message pair (the server returns a ``pending`` generation)
2. mark the local generation ``generating``
3. trigger ``createMessageGenerate`` on a background thread without
   waiting for it
4. poll the status until it is terminal

Poll results only ever replace the ``generation`` key of a local message.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import requests

from typix.client.api_client import TypixClient
from typix.client.poller import PollerRegistry
from typix.core.config import TypixConfig, config
from typix.core.errors import ServiceException
from typix.core.generation import ACTIVE_STATUSES

logger = logging.getLogger(__name__)


class ChatSession:
    """One open chat and its in-flight generations.

    Args:
        client: API client for the Typix server
        app_config: Supplies poll timings, defaults to the global config

    Example:
        >>> with ChatSession(TypixClient()) as session:
        ...     session.new_chat("a cat", "openai", "gpt-image-1", image_count=2)
        ...     session.messages[-1]["generation"]["status"]
        'generating'
    """

    def __init__(self, client: TypixClient, app_config: TypixConfig | None = None) -> None:
        self.client = client
        self.config = app_config or config
        self.chat_id: str | None = None
        self.provider: str | None = None
        self.model: str | None = None
        self.messages: list[dict[str, Any]] = []
        self.pollers = PollerRegistry(client, self.apply_update, self.config)
        self._lock = threading.RLock()
        self._triggers: list[threading.Thread] = []

    def __enter__(self) -> "ChatSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- local store -------------------------------------------------------

    def find_message(self, message_id: str) -> dict[str, Any] | None:
        with self._lock:
            return next((m for m in self.messages if m["id"] == message_id), None)

    def apply_update(self, message_id: str, update: dict[str, Any]) -> None:
        """Merge a poll result into the local message (``generation`` only)."""
        with self._lock:
            message = self.find_message(message_id)
            if message is None:
                return
            if "generation" in update:
                message["generation"] = update["generation"]

    def _set_local_status(self, message_id: str, status: str, **fields: Any) -> None:
        with self._lock:
            message = self.find_message(message_id)
            if message is None or message.get("generation") is None:
                return
            message["generation"] = {**message["generation"], "status": status, **fields}

    # -- generation flow ---------------------------------------------------

    def _trigger(self, generation_id: str) -> None:
        try:
            self.client.create_message_generate(generation_id)
        except (requests.RequestException, ServiceException) as e:
            # The poller picks up whatever state the record ends in
            logger.error(f"Error triggering generation {generation_id}: {e}")

    def _start_generation(self, message_id: str, generation_id: str) -> None:
        self._set_local_status(message_id, "generating")
        thread = threading.Thread(
            target=self._trigger, args=(generation_id,), name=f"typix-gen-{generation_id}", daemon=True
        )
        with self._lock:
            self._triggers = [t for t in self._triggers if t.is_alive()]
            self._triggers.append(thread)
        thread.start()
        self.pollers.start(generation_id, message_id)

    def _start_assistant_generations(self, messages: list[dict[str, Any]]) -> None:
        for message in messages:
            generation = message.get("generation")
            if message["role"] == "assistant" and generation and generation.get("id"):
                self._start_generation(message["id"], generation["id"])

    # -- operations --------------------------------------------------------

    def new_chat(
        self,
        content: str,
        provider: str,
        model: str,
        image_count: int = 1,
        aspect_ratio: str | None = None,
        attachments: list[str] | None = None,
        title: str = "New Chat",
    ) -> str:
        """Create a chat with a first prompt and start its generation.

        Returns:
            The new chat id
        """
        result = self.client.create_chat(
            provider,
            model,
            content=content,
            title=title,
            image_count=image_count,
            aspect_ratio=aspect_ratio,
            attachments=attachments,
        )
        self.pollers.stop_all()
        with self._lock:
            self.chat_id = result["id"]
            self.provider = provider
            self.model = model
            self.messages = list(result.get("messages") or [])
        self._start_assistant_generations(self.messages)
        return result["id"]

    def open_chat(self, chat_id: str) -> dict[str, Any]:
        """Load an existing chat and resume polling its unfinished generations."""
        chat = self.client.get_chat_by_id(chat_id)
        self.pollers.stop_all()
        with self._lock:
            self.chat_id = chat["id"]
            self.provider = chat["provider"]
            self.model = chat["model"]
            self.messages = list(chat.get("messages") or [])

        for message in self.messages:
            generation = message.get("generation")
            if generation and generation["status"] in ACTIVE_STATUSES:
                self.pollers.start(generation["id"], message["id"])
        return chat

    def send_message(
        self,
        content: str,
        provider: str | None = None,
        model: str | None = None,
        image_count: int = 1,
        aspect_ratio: str | None = None,
        attachments: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Send a prompt to the open chat and start its generation.

        Provider and model default to the chat's current ones.

        Returns:
            The user and assistant messages added to the local store

        Raises:
            ServiceException: ``invalid_parameter`` when no chat is open or no
                provider/model is known
        """
        if self.chat_id is None:
            raise ServiceException("invalid_parameter", "No chat is open")
        provider = provider or self.provider
        model = model or self.model
        if not provider or not model:
            raise ServiceException("invalid_parameter", "No provider or model selected")

        result = self.client.create_message(
            self.chat_id,
            content,
            provider,
            model,
            image_count=image_count,
            aspect_ratio=aspect_ratio,
            attachments=attachments,
        )
        new_messages = list(result.get("messages") or [])
        with self._lock:
            self.messages.extend(new_messages)
        self._start_assistant_generations(new_messages)
        return new_messages

    def regenerate(self, message_id: str) -> dict[str, Any]:
        """Regenerate an assistant message under its existing generation id.

        The local generation is shown as ``generating`` right away; if the
        server rejects the request it is shown as ``failed``.
        """
        self._set_local_status(message_id, "generating", fileIds=None, errorReason=None)
        try:
            result = self.client.regenerate_message(message_id)
        except (requests.RequestException, ServiceException):
            self._set_local_status(message_id, "failed")
            raise

        self.pollers.stop(result["generationId"])
        self._start_generation(message_id, result["generationId"])
        return result

    def delete_message(self, message_id: str) -> None:
        self.client.delete_message(message_id)
        with self._lock:
            message = self.find_message(message_id)
            self.messages = [m for m in self.messages if m["id"] != message_id]
        if message and message.get("generation"):
            self.pollers.stop(message["generation"]["id"])

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop all pollers and wait briefly for pending triggers."""
        self.pollers.stop_all(timeout)
        with self._lock:
            triggers, self._triggers = self._triggers, []
        for thread in triggers:
            thread.join(timeout)
