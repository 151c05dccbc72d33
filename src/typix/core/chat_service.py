"""Chats, messages and the two-phase generation flow.

Creating a message is cheap and synchronous: it stores the user message,
an empty assistant ``image`` message and a ``pending`` generation record,
then returns. Running the generation is a second, explicit call
(:meth:`ChatService.create_message_generate`) that the client issues right
after, so message creation never waits on a provider.

All returned payloads use the API's camelCase keys.
"""

import logging
from typing import Any

from typix.core.ai_service import AiService
from typix.core.config import TypixConfig
from typix.core.database import Database, row_to_dict
from typix.core.errors import ServiceException
from typix.core.file_storage import FileStorage
from typix.core.generation import GenerationExecutor, GenerationParams, GenerationStore
from typix.core.provider_adapters import ProviderRegistry, provider_registry
from typix.core.util import camelize, generate_id, now_iso

logger = logging.getLogger(__name__)


class ChatService:
    """Chat and message operations for one database."""

    def __init__(
        self,
        db: Database,
        config: TypixConfig,
        file_storage: FileStorage,
        ai_service: AiService,
        registry: ProviderRegistry = provider_registry,
    ) -> None:
        self.db = db
        self.config = config
        self.file_storage = file_storage
        self.registry = registry
        self.generations = GenerationStore(db, config)
        self.executor = GenerationExecutor(
            db, config, self.generations, file_storage, ai_service, registry
        )

    # -- serialization -----------------------------------------------------

    def _serialize_chat(self, chat: dict[str, Any]) -> dict[str, Any]:
        data = camelize(chat)
        data["deleted"] = bool(data["deleted"])
        return data

    def _serialize_generation(self, record: dict[str, Any] | None, user_id: str) -> dict[str, Any] | None:
        if record is None:
            return None
        data = camelize(record)
        if record.get("file_ids"):
            data["resultUrls"] = [
                self.file_storage.get_file_url(file_id, user_id) for file_id in record["file_ids"]
            ]
        return data

    def _attachments(self, message_id: str, user_id: str) -> list[dict[str, Any]]:
        rows = self.db.fetch_all(
            "SELECT id, type, file_id FROM message_attachments WHERE message_id = ? ORDER BY rowid",
            (message_id,),
        )
        return [
            {"id": row["id"], "type": row["type"], "url": self.file_storage.get_file_url(row["file_id"], user_id)}
            for row in rows
        ]

    def _serialize_message(self, message: dict[str, Any], user_id: str) -> dict[str, Any]:
        data = camelize(message)
        generation = None
        if message.get("generation_id"):
            generation = self.generations.get(message["generation_id"], user_id)
        data["generation"] = self._serialize_generation(generation, user_id)
        data["attachments"] = self._attachments(message["id"], user_id)
        return data

    def _get_owned_chat(self, chat_id: str, user_id: str) -> dict[str, Any] | None:
        return self.db.fetch_one(
            "SELECT * FROM chats WHERE id = ? AND user_id = ? AND deleted = 0",
            (chat_id, user_id),
        )

    def _touch_chat(self, conn, chat_id: str) -> None:
        conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (now_iso(), chat_id))

    # -- chats -------------------------------------------------------------

    def create_chat(
        self,
        user_id: str,
        title: str,
        provider: str,
        model: str,
        content: str | None = None,
        image_count: int = 1,
        aspect_ratio: str | None = None,
        attachments: list[str] | None = None,
    ) -> dict[str, Any]:
        """Create a chat, optionally with its first prompt.

        The chat row and its first message pair are written in one
        transaction.

        Returns:
            ``{"id": ...}``, plus ``"messages"`` (user message and assistant
            placeholder) when ``content`` is given

        Raises:
            ServiceException: ``invalid_parameter`` for undecodable attachments
        """
        file_ids = self._save_attachments(attachments, user_id) if content else []

        chat_id = generate_id()
        with self.db.connect() as conn:
            now = now_iso()
            conn.execute(
                "INSERT INTO chats (id, title, user_id, provider, model, deleted, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
                (chat_id, title, user_id, provider, model, now, now),
            )
            pair = None
            if content:
                pair = self._insert_message_pair(
                    conn, user_id, chat_id, content, provider, model, image_count, aspect_ratio, file_ids
                )
        logger.info(f"Created chat {chat_id} for user {user_id} ({provider}/{model})")

        if pair is None:
            return {"id": chat_id}
        return {"id": chat_id, "messages": self._serialize_pair(*pair, user_id)}

    def get_chats(self, user_id: str) -> list[dict[str, Any]]:
        """List the user's non-deleted chats, newest first."""
        rows = self.db.fetch_all(
            "SELECT * FROM chats WHERE user_id = ? AND deleted = 0 ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )
        return [self._serialize_chat(row) for row in rows]

    def get_chat_by_id(self, chat_id: str, user_id: str) -> dict[str, Any] | None:
        """Return a chat with its messages, or None if missing, foreign or deleted."""
        chat = self._get_owned_chat(chat_id, user_id)
        if chat is None:
            return None

        messages = self.db.fetch_all(
            "SELECT * FROM messages WHERE chat_id = ? AND user_id = ? ORDER BY created_at, rowid",
            (chat_id, user_id),
        )
        data = self._serialize_chat(chat)
        data["messages"] = [self._serialize_message(message, user_id) for message in messages]
        return data

    def update_chat(
        self,
        chat_id: str,
        user_id: str,
        title: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> bool:
        """Update a chat's title and/or current provider/model.

        Raises:
            ServiceException: ``not_found`` for an unknown chat or provider,
                ``invalid_parameter`` if the model does not belong to the provider
        """
        chat = self._get_owned_chat(chat_id, user_id)
        if chat is None:
            raise ServiceException("not_found", "Chat not found")

        if provider and model:
            adapter_class = self.registry.get_provider_by_id(provider)
            if not any(m.id == model for m in adapter_class.models):
                raise ServiceException("invalid_parameter", "Model not found for the specified provider")

        fields = {"title": title, "provider": provider, "model": model}
        updates = {key: value for key, value in fields.items() if value}
        if updates:
            updates["updated_at"] = now_iso()
            assignments = ", ".join(f"{key} = ?" for key in updates)
            self.db.execute(
                f"UPDATE chats SET {assignments} WHERE id = ?", (*updates.values(), chat_id)
            )
        return True

    def delete_chat(self, chat_id: str, user_id: str) -> bool:
        """Soft-delete a chat. Returns False if the chat does not exist for the user."""
        deleted = self.db.execute(
            "UPDATE chats SET deleted = 1, updated_at = ? WHERE id = ? AND user_id = ? AND deleted = 0",
            (now_iso(), chat_id, user_id),
        )
        if deleted:
            logger.info(f"Soft-deleted chat {chat_id}")
        return bool(deleted)

    # -- messages ----------------------------------------------------------

    def _save_attachments(self, attachments: list[str] | None, user_id: str) -> list[str]:
        if not attachments:
            return []
        try:
            return self.file_storage.save_files(attachments, user_id)
        except ValueError as e:
            raise ServiceException("invalid_parameter", f"Invalid attachment data: {e}") from e

    def _insert_message_pair(
        self,
        conn,
        user_id: str,
        chat_id: str,
        content: str,
        provider: str,
        model: str,
        image_count: int,
        aspect_ratio: str | None,
        file_ids: list[str],
        message_type: str = "text",
    ) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
        """Insert the user message, its attachments, the record and the placeholder.

        Returns:
            ``(user_message, assistant_message, generation)`` rows
        """
        user_message_id = generate_id()
        assistant_message_id = generate_id()
        now = now_iso()
        conn.execute(
            "INSERT INTO messages (id, user_id, chat_id, content, role, type, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'user', ?, ?, ?)",
            (user_message_id, user_id, chat_id, content, message_type, now, now),
        )
        for file_id in file_ids:
            conn.execute(
                "INSERT INTO message_attachments (id, message_id, file_id, type, created_at, updated_at) "
                "VALUES (?, ?, ?, 'image', ?, ?)",
                (generate_id(), user_message_id, file_id, now, now),
            )
        self._touch_chat(conn, chat_id)

        parameters: dict[str, Any] = {"imageCount": image_count}
        if aspect_ratio:
            parameters["aspectRatio"] = aspect_ratio
        generation = self.generations.create(user_id, content, provider, model, parameters, conn=conn)

        now = now_iso()
        conn.execute(
            "INSERT INTO messages (id, user_id, chat_id, content, role, type, generation_id, "
            "created_at, updated_at) VALUES (?, ?, ?, '', 'assistant', 'image', ?, ?, ?)",
            (assistant_message_id, user_id, chat_id, generation["id"], now, now),
        )
        user_message = row_to_dict(
            conn.execute("SELECT * FROM messages WHERE id = ?", (user_message_id,)).fetchone()
        )
        assistant_message = row_to_dict(
            conn.execute("SELECT * FROM messages WHERE id = ?", (assistant_message_id,)).fetchone()
        )
        logger.info(f"Created message pair in chat {chat_id}, generation {generation['id']} pending")
        return user_message, assistant_message, generation

    def _serialize_pair(
        self,
        user_message: dict[str, Any],
        assistant_message: dict[str, Any],
        generation: dict[str, Any],
        user_id: str,
    ) -> list[dict[str, Any]]:
        user_data = camelize(user_message)
        user_data["generation"] = None
        user_data["attachments"] = self._attachments(user_message["id"], user_id)
        assistant_data = camelize(assistant_message)
        assistant_data["generation"] = self._serialize_generation(generation, user_id)
        assistant_data["attachments"] = []
        return [user_data, assistant_data]

    def create_message(
        self,
        user_id: str,
        chat_id: str,
        content: str,
        provider: str,
        model: str,
        image_count: int = 1,
        aspect_ratio: str | None = None,
        attachments: list[str] | None = None,
        message_type: str = "text",
    ) -> dict[str, Any]:
        """Create a user message and its assistant placeholder.

        The assistant message gets a new ``pending`` generation record; nothing
        is sent to the provider here.

        Args:
            attachments: Reference images (data URIs) attached to the user message

        Returns:
            ``{"messages": [user_message, assistant_message]}``

        Raises:
            ServiceException: ``not_found`` if the chat does not exist for the
                user, ``invalid_parameter`` for undecodable attachments
        """
        if self._get_owned_chat(chat_id, user_id) is None:
            raise ServiceException("not_found", "Chat not found")

        file_ids = self._save_attachments(attachments, user_id)
        with self.db.connect() as conn:
            pair = self._insert_message_pair(
                conn, user_id, chat_id, content, provider, model, image_count, aspect_ratio, file_ids,
                message_type,
            )
        return {"messages": self._serialize_pair(*pair, user_id)}

    def delete_message(self, message_id: str, user_id: str) -> bool:
        """Delete a message; its attachments go with it.

        Raises:
            ServiceException: ``not_found`` if the message does not exist for the user
        """
        message = self.db.fetch_one(
            "SELECT * FROM messages WHERE id = ? AND user_id = ?", (message_id, user_id)
        )
        if message is None:
            raise ServiceException("not_found", "Message not found")

        with self.db.connect() as conn:
            conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            self._touch_chat(conn, message["chat_id"])
        return True

    # -- generation --------------------------------------------------------

    def get_generation_status(self, generation_id: str, user_id: str) -> dict[str, Any] | None:
        """Read a generation record, timing it out first if it is stale.

        Returns:
            The record with ``resultUrls`` once completed, or None for
            unknown or foreign ids
        """
        record = self.generations.get(generation_id, user_id)
        if record is None:
            return None
        record = self.generations.expire_if_stale(record)
        return self._serialize_generation(record, user_id)

    def create_message_generate(self, generation_id: str, user_id: str) -> dict[str, Any]:
        """Run the generation for a record created by :meth:`create_message`.

        Reference images come from the attachments of the user text message
        that precedes the assistant message.

        Raises:
            ServiceException: ``not_found`` for an unknown generation or message
        """
        record = self.generations.get(generation_id, user_id)
        if record is None:
            raise ServiceException("not_found", "Generation not found")

        message = self.db.fetch_one(
            "SELECT * FROM messages WHERE generation_id = ? AND user_id = ?",
            (generation_id, user_id),
        )
        if message is None:
            raise ServiceException("not_found", "Message not found")

        user_message = self.db.fetch_one(
            "SELECT id FROM messages WHERE chat_id = ? AND user_id = ? AND role = 'user' AND type = 'text' "
            "AND rowid < (SELECT rowid FROM messages WHERE id = ?) "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (message["chat_id"], user_id, message["id"]),
        )
        user_images: list[str] = []
        if user_message:
            for row in self.db.fetch_all(
                "SELECT file_id FROM message_attachments WHERE message_id = ? ORDER BY rowid",
                (user_message["id"],),
            ):
                data = self.file_storage.get_file_data(row["file_id"], user_id)
                if data:
                    user_images.append(data)

        parameters = record.get("parameters") or {}
        self.executor.execute(
            GenerationParams(
                generation_id=record["id"],
                prompt=record["prompt"],
                provider=record["provider"],
                model=record["model"],
                chat_id=message["chat_id"],
                user_id=user_id,
                user_images=user_images or None,
                image_count=parameters.get("imageCount") or 1,
                aspect_ratio=parameters.get("aspectRatio"),
                message_id=message["id"],
            )
        )
        return {"success": True}

    def regenerate_message(self, message_id: str, user_id: str) -> dict[str, Any]:
        """Reset an assistant message's generation to ``pending``.

        The caller starts the new run with :meth:`create_message_generate`.

        Returns:
            ``{"messageId": ..., "generationId": ...}`` (same generation id)

        Raises:
            ServiceException: ``not_found`` for unknown or non-assistant messages,
                ``invalid_parameter`` when the message has no generation
        """
        message = self.db.fetch_one(
            "SELECT * FROM messages WHERE id = ? AND user_id = ?", (message_id, user_id)
        )
        if message is None or message["role"] != "assistant":
            raise ServiceException("not_found", "Message not found or not regeneratable")
        if not message["generation_id"]:
            raise ServiceException("invalid_parameter", "Message has no generation to regenerate")

        generation_id = message["generation_id"]
        self.generations.reset(generation_id)
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE messages SET content = '', updated_at = ? WHERE id = ?", (now_iso(), message_id)
            )
            self._touch_chat(conn, message["chat_id"])

        logger.info(f"Reset generation {generation_id} for regeneration of message {message_id}")
        return {"messageId": message_id, "generationId": generation_id}
