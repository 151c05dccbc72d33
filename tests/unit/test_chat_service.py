"""Unit tests for ChatService: chats, messages and the two-phase generation flow."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from typix.core.adapters.cloudflare import CloudflareProvider
from typix.core.ai_service import AiService
from typix.core.chat_service import ChatService
from typix.core.database import Database
from typix.core.errors import ErrorReason, ServiceException
from typix.core.file_storage import FileStorage
from typix.core.provider_adapters import ProviderRegistry
from typix.core.util import utc_now

USER = "user-1"


def _new_chat(chat_service, model="fake-t2i", content="a cat", **kwargs):
    return chat_service.create_chat(USER, "Cats", "fake", model, content=content, **kwargs)


def _assistant(result):
    return next(m for m in result["messages"] if m["role"] == "assistant")


# ---------------------------------------------------------------------------
# Chats.
# ---------------------------------------------------------------------------


class TestChats:
    """Tests for chat CRUD."""

    def test_create_chat_with_first_prompt(self, chat_service):
        """The first prompt yields a user message and a pending assistant placeholder."""
        result = _new_chat(chat_service, image_count=2)

        assert result["id"]
        user_message, assistant_message = result["messages"]
        assert user_message["role"] == "user"
        assert user_message["content"] == "a cat"
        assert user_message["generation"] is None

        assert assistant_message["role"] == "assistant"
        assert assistant_message["type"] == "image"
        assert assistant_message["content"] == ""
        assert assistant_message["generation"]["status"] == "pending"
        assert assistant_message["generation"]["parameters"] == {"imageCount": 2}

    def test_aspect_ratio_stored_in_parameters(self, chat_service):
        result = _new_chat(chat_service, aspect_ratio="16:9")
        assert _assistant(result)["generation"]["parameters"] == {"imageCount": 1, "aspectRatio": "16:9"}

    def test_create_chat_without_content(self, chat_service):
        result = chat_service.create_chat(USER, "Empty", "fake", "fake-t2i")
        assert set(result) == {"id"}
        assert chat_service.get_chat_by_id(result["id"], USER)["messages"] == []

    def test_get_chats_newest_first(self, chat_service):
        first = chat_service.create_chat(USER, "First", "fake", "fake-t2i")
        second = chat_service.create_chat(USER, "Second", "fake", "fake-t2i")
        chat_service.create_chat("other-user", "Theirs", "fake", "fake-t2i")

        chats = chat_service.get_chats(USER)
        assert [c["id"] for c in chats] == [second["id"], first["id"]]
        assert chats[0]["deleted"] is False
        assert "userId" in chats[0]

    def test_get_chat_by_id_orders_messages(self, chat_service):
        result = _new_chat(chat_service)
        chat_service.create_message(USER, result["id"], "a dog", "fake", "fake-t2i")

        chat = chat_service.get_chat_by_id(result["id"], USER)
        assert [m["content"] for m in chat["messages"]] == ["a cat", "", "a dog", ""]
        assert [m["role"] for m in chat["messages"]] == ["user", "assistant", "user", "assistant"]

    def test_foreign_chat_not_visible(self, chat_service):
        result = _new_chat(chat_service)
        assert chat_service.get_chat_by_id(result["id"], "other-user") is None

    def test_deleted_chat_not_found(self, chat_service):
        result = _new_chat(chat_service)
        assert chat_service.delete_chat(result["id"], USER) is True

        assert chat_service.get_chat_by_id(result["id"], USER) is None
        assert chat_service.get_chats(USER) == []
        assert chat_service.delete_chat(result["id"], USER) is False

    def test_update_chat(self, chat_service):
        result = chat_service.create_chat(USER, "Old", "fake", "fake-t2i")
        chat_service.update_chat(result["id"], USER, title="New", provider="fake", model="fake-i2i")

        chat = chat_service.get_chat_by_id(result["id"], USER)
        assert chat["title"] == "New"
        assert chat["model"] == "fake-i2i"

    def test_update_chat_rejects_foreign_model(self, chat_service):
        result = chat_service.create_chat(USER, "Old", "fake", "fake-t2i")
        with pytest.raises(ServiceException) as exc_info:
            chat_service.update_chat(result["id"], USER, provider="fake", model="gpt-image-1")
        assert exc_info.value.code == "invalid_parameter"

    def test_update_missing_chat(self, chat_service):
        with pytest.raises(ServiceException) as exc_info:
            chat_service.update_chat("missing", USER, title="x")
        assert exc_info.value.code == "not_found"


# ---------------------------------------------------------------------------
# Messages.
# ---------------------------------------------------------------------------


class TestMessages:
    """Tests for message creation and deletion."""

    def test_create_message_in_missing_chat(self, chat_service):
        with pytest.raises(ServiceException) as exc_info:
            chat_service.create_message(USER, "missing", "a cat", "fake", "fake-t2i")
        assert exc_info.value.code == "not_found"

    def test_attachments_saved_and_resolved(self, chat_service, png_data_uri):
        result = _new_chat(chat_service, model="fake-i2i", attachments=[png_data_uri])
        user_message = result["messages"][0]

        assert len(user_message["attachments"]) == 1
        attachment = user_message["attachments"][0]
        assert attachment["type"] == "image"
        assert attachment["url"].startswith("/api/files/preview/")

    def test_create_message_bumps_chat(self, chat_service, db):
        result = chat_service.create_chat(USER, "Chat", "fake", "fake-t2i")
        db.execute("UPDATE chats SET updated_at = ? WHERE id = ?", ("2000-01-01T00:00:00+00:00", result["id"]))
        chat_service.create_message(USER, result["id"], "a cat", "fake", "fake-t2i")
        assert chat_service.get_chat_by_id(result["id"], USER)["updatedAt"] > "2000-01-01"

    def test_delete_message_cascades_attachments(self, chat_service, db, png_data_uri):
        result = _new_chat(chat_service, model="fake-i2i", attachments=[png_data_uri])
        user_message = result["messages"][0]

        assert chat_service.delete_message(user_message["id"], USER) is True
        rows = db.fetch_all("SELECT * FROM message_attachments WHERE message_id = ?", (user_message["id"],))
        assert rows == []
        assert len(chat_service.get_chat_by_id(result["id"], USER)["messages"]) == 1

    def test_delete_missing_message(self, chat_service):
        with pytest.raises(ServiceException) as exc_info:
            chat_service.delete_message("missing", USER)
        assert exc_info.value.code == "not_found"


# ---------------------------------------------------------------------------
# Generation flow.
# ---------------------------------------------------------------------------


class TestGenerationFlow:
    """Tests for create_message_generate, status reads and regeneration."""

    def test_generate_completes(self, chat_service):
        result = _new_chat(chat_service, image_count=2)
        generation_id = _assistant(result)["generation"]["id"]

        assert chat_service.create_message_generate(generation_id, USER) == {"success": True}

        status = chat_service.get_generation_status(generation_id, USER)
        assert status["status"] == "completed"
        assert len(status["fileIds"]) == 2
        assert status["generationTime"] > 0
        assert status["resultUrls"] == [f"/api/files/preview/{f}" for f in status["fileIds"]]

    def test_generate_failure_is_recorded(self, chat_service, fake_provider):
        fake_provider.reason = ErrorReason.CONFIG_ERROR
        result = _new_chat(chat_service)
        generation_id = _assistant(result)["generation"]["id"]
        chat_service.create_message_generate(generation_id, USER)

        status = chat_service.get_generation_status(generation_id, USER)
        assert status["status"] == "failed"
        assert status["errorReason"] == "CONFIG_ERROR"
        assert status["fileIds"] is None
        assert "resultUrls" not in status

    def test_generate_unknown_id(self, chat_service):
        with pytest.raises(ServiceException) as exc_info:
            chat_service.create_message_generate("missing", USER)
        assert exc_info.value.code == "not_found"

    def test_status_unknown_or_foreign(self, chat_service):
        result = _new_chat(chat_service)
        generation_id = _assistant(result)["generation"]["id"]
        assert chat_service.get_generation_status("missing", USER) is None
        assert chat_service.get_generation_status(generation_id, "other-user") is None

    def test_status_read_expires_stale_record(self, chat_service, db):
        result = _new_chat(chat_service)
        generation_id = _assistant(result)["generation"]["id"]
        stale = (utc_now() - timedelta(minutes=6)).isoformat()
        db.execute("UPDATE message_generations SET updated_at = ? WHERE id = ?", (stale, generation_id))

        status = chat_service.get_generation_status(generation_id, USER)
        assert status["status"] == "failed"
        assert status["errorReason"] == "TIMEOUT"

    def test_user_attachments_used_as_reference(self, chat_service, fake_provider, png_data_uri):
        result = _new_chat(chat_service, model="fake-i2i", attachments=[png_data_uri])
        chat_service.create_message_generate(_assistant(result)["generation"]["id"], USER)
        assert fake_provider.calls[0][0].images == [png_data_uri]

    def test_previous_result_used_for_follow_up(self, chat_service, fake_provider, png_data_uri):
        """An i2i follow-up without attachments edits the previous assistant image."""
        first = _new_chat(chat_service, model="fake-i2i")
        chat_service.create_message_generate(_assistant(first)["generation"]["id"], USER)
        assert fake_provider.calls[0][0].images is None

        follow_up = chat_service.create_message(USER, first["id"], "make it blue", "fake", "fake-i2i")
        chat_service.create_message_generate(_assistant(follow_up)["generation"]["id"], USER)
        assert fake_provider.calls[1][0].images == [png_data_uri]

    def test_attachments_of_earlier_turns_not_reused(self, chat_service, fake_provider, png_data_uri):
        first = _new_chat(chat_service, model="fake-i2i", attachments=[png_data_uri])
        first_generation = _assistant(first)["generation"]["id"]

        fake_provider.reason = ErrorReason.API_ERROR
        chat_service.create_message_generate(first_generation, USER)
        fake_provider.reason = None

        follow_up = chat_service.create_message(USER, first["id"], "again", "fake", "fake-i2i")
        chat_service.create_message_generate(_assistant(follow_up)["generation"]["id"], USER)
        # Earlier attachment is not resent and the failed turn has no result to edit
        assert fake_provider.calls[1][0].images is None

    def test_regenerate_failed_keeps_id_and_clears_fields(self, chat_service, fake_provider):
        fake_provider.reason = ErrorReason.TOO_MANY_REQUESTS
        result = _new_chat(chat_service)
        assistant = _assistant(result)
        generation_id = assistant["generation"]["id"]
        chat_service.create_message_generate(generation_id, USER)
        assert chat_service.get_generation_status(generation_id, USER)["status"] == "failed"

        regenerated = chat_service.regenerate_message(assistant["id"], USER)
        assert regenerated == {"messageId": assistant["id"], "generationId": generation_id}

        status = chat_service.get_generation_status(generation_id, USER)
        assert status["status"] == "pending"
        assert status["errorReason"] is None
        assert status["fileIds"] is None
        assert status["generationTime"] is None

        fake_provider.reason = None
        chat_service.create_message_generate(generation_id, USER)
        assert chat_service.get_generation_status(generation_id, USER)["status"] == "completed"

    def test_regenerate_does_not_reference_own_result(self, chat_service, fake_provider):
        result = _new_chat(chat_service, model="fake-i2i")
        assistant = _assistant(result)
        chat_service.create_message_generate(assistant["generation"]["id"], USER)

        chat_service.regenerate_message(assistant["id"], USER)
        chat_service.create_message_generate(assistant["generation"]["id"], USER)
        assert fake_provider.calls[1][0].images is None

    def test_regenerate_user_message_rejected(self, chat_service):
        result = _new_chat(chat_service)
        with pytest.raises(ServiceException) as exc_info:
            chat_service.regenerate_message(result["messages"][0]["id"], USER)
        assert exc_info.value.code == "not_found"

    def test_chat_view_includes_result_urls(self, chat_service):
        result = _new_chat(chat_service)
        chat_service.create_message_generate(_assistant(result)["generation"]["id"], USER)

        chat = chat_service.get_chat_by_id(result["id"], USER)
        generation = chat["messages"][1]["generation"]
        assert generation["status"] == "completed"
        assert len(generation["resultUrls"]) == 1


# ---------------------------------------------------------------------------
# Transactions and deployment credentials.
# ---------------------------------------------------------------------------


class TestChatCreationIsAtomic:
    """A chat and its first message pair are stored together or not at all."""

    @pytest.fixture
    def disk_chat_service(self, test_config, registry):
        disk_config = test_config.model_copy(update={"file_storage": "disk"})
        db = Database(disk_config.database_path)
        file_storage = FileStorage(db, disk_config)
        ai_service = AiService(db, disk_config, registry)
        return ChatService(db, disk_config, file_storage, ai_service, registry)

    def test_undecodable_attachment_leaves_no_chat(self, disk_chat_service):
        with pytest.raises(ServiceException) as exc_info:
            disk_chat_service.create_chat(
                USER, "Cats", "fake", "fake-i2i", content="a cat", attachments=["data:image/png;base64,abc"]
            )

        assert exc_info.value.code == "invalid_parameter"
        assert disk_chat_service.get_chats(USER) == []


class TestBuiltinCloudflare:
    """Deployment-provided Cloudflare credentials without a saved override."""

    @pytest.fixture
    def builtin_chat_service(self, test_config):
        builtin_config = test_config.model_copy(
            update={
                "provider_cloudflare_builtin": True,
                "cloudflare_account_id": "deploy-acct",
                "cloudflare_api_token": "deploy-token",
            }
        )
        registry = ProviderRegistry()
        registry.register(CloudflareProvider)
        db = Database(builtin_config.database_path)
        file_storage = FileStorage(db, builtin_config)
        ai_service = AiService(db, builtin_config, registry)
        return ChatService(db, builtin_config, file_storage, ai_service, registry)

    def test_generation_completes_with_default_settings(self, builtin_chat_service, mock_response, png_data_uri):
        result = builtin_chat_service.create_chat(
            USER, "Cats", "cloudflare", "@cf/lykon/dreamshaper-8-lcm", content="a cat"
        )
        generation_id = _assistant(result)["generation"]["id"]
        body = {"result": {"image": png_data_uri.split(",", 1)[1]}}

        with patch(
            "typix.core.adapters.cloudflare.requests.post", return_value=mock_response(json_data=body)
        ) as post:
            builtin_chat_service.create_message_generate(generation_id, USER)

        status = builtin_chat_service.get_generation_status(generation_id, USER)
        assert status["status"] == "completed"
        assert len(status["fileIds"]) == 1
        assert "/deploy-acct/" in post.call_args.args[0]
