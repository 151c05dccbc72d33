"""Tests for typix.client.session: client-side chat orchestration.

The API client is replaced by a MagicMock, so these tests cover only the
local message store and the trigger/poll sequencing.
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from typix.client.session import ChatSession
from typix.core.errors import ServiceException


def _pair(user_id="u1", assistant_id="a1", generation_id="g1"):
    return [
        {"id": user_id, "role": "user", "content": "a cat", "generation": None},
        {
            "id": assistant_id,
            "role": "assistant",
            "content": "",
            "generation": {"id": generation_id, "status": "pending", "fileIds": None},
        },
    ]


@pytest.fixture
def client():
    client = MagicMock()
    client.create_chat.return_value = {"id": "chat-1", "messages": _pair()}
    client.create_message.return_value = {"messages": _pair("u2", "a2", "g2")}
    client.get_generation_status.side_effect = lambda generation_id: {
        "id": generation_id,
        "status": "completed",
        "fileIds": ["f1"],
        "resultUrls": ["/api/files/preview/f1"],
    }
    client.create_message_generate.return_value = {"success": True}
    return client


@pytest.fixture
def session(client, test_config):
    with ChatSession(client, test_config) as session:
        yield session


def _wait_for_status(session, message_id, status, timeout=5.0):
    done = threading.Event()
    for _ in range(int(timeout / 0.01)):
        message = session.find_message(message_id)
        if message and message["generation"]["status"] == status:
            done.set()
            break
        done.wait(0.01)
    return done.is_set()


class TestChatSession:
    """Tests for ChatSession."""

    def test_new_chat_triggers_and_polls(self, session, client):
        chat_id = session.new_chat("a cat", "fake", "fake-t2i", image_count=2)

        assert chat_id == "chat-1"
        assert session.provider == "fake"
        assert _wait_for_status(session, "a1", "completed")
        session.close()

        client.create_chat.assert_called_once()
        assert client.create_chat.call_args.kwargs["image_count"] == 2
        client.create_message_generate.assert_called_once_with("g1")
        assert session.find_message("a1")["generation"]["resultUrls"] == ["/api/files/preview/f1"]

    def test_poll_updates_only_generation(self, session):
        session.messages = _pair()
        session.messages[1]["content"] = "kept"
        session.apply_update("a1", {"generation": {"id": "g1", "status": "failed"}, "content": "ignored"})

        assert session.messages[1]["content"] == "kept"
        assert session.messages[1]["generation"]["status"] == "failed"

    def test_update_for_unknown_message_ignored(self, session):
        session.messages = _pair()
        session.apply_update("missing", {"generation": {"status": "completed"}})
        assert session.messages[1]["generation"]["status"] == "pending"

    def test_send_message_uses_chat_defaults(self, session, client):
        session.new_chat("a cat", "fake", "fake-t2i")
        added = session.send_message("a dog")

        assert [m["id"] for m in added] == ["u2", "a2"]
        assert [m["id"] for m in session.messages] == ["u1", "a1", "u2", "a2"]
        args = client.create_message.call_args
        assert args.args[:4] == ("chat-1", "a dog", "fake", "fake-t2i")
        assert _wait_for_status(session, "a2", "completed")

    def test_send_without_chat(self, session):
        with pytest.raises(ServiceException) as exc_info:
            session.send_message("a dog")
        assert exc_info.value.code == "invalid_parameter"

    def test_trigger_failure_does_not_raise(self, session, client):
        client.create_message_generate.side_effect = ServiceException("error", "boom")
        session.new_chat("a cat", "fake", "fake-t2i")
        assert _wait_for_status(session, "a1", "completed")

    def test_regenerate(self, session, client):
        session.new_chat("a cat", "fake", "fake-t2i")
        assert _wait_for_status(session, "a1", "completed")
        client.regenerate_message.return_value = {"messageId": "a1", "generationId": "g1"}

        session.regenerate("a1")
        assert _wait_for_status(session, "a1", "completed")
        session.close()

        client.regenerate_message.assert_called_once_with("a1")
        assert client.create_message_generate.call_count == 2

    def test_regenerate_rejected_marks_failed(self, session, client):
        session.messages = _pair()
        client.regenerate_message.side_effect = ServiceException("not_found", "nope")

        with pytest.raises(ServiceException):
            session.regenerate("a1")
        assert session.messages[1]["generation"]["status"] == "failed"

    def test_delete_message(self, session, client):
        session.messages = _pair()
        session.delete_message("a1")

        client.delete_message.assert_called_once_with("a1")
        assert [m["id"] for m in session.messages] == ["u1"]

    def test_open_chat_resumes_active_generations(self, session, client):
        client.get_chat_by_id.return_value = {
            "id": "chat-9",
            "provider": "fake",
            "model": "fake-t2i",
            "messages": _pair("u9", "a9", "g9"),
        }
        session.open_chat("chat-9")

        assert session.chat_id == "chat-9"
        assert _wait_for_status(session, "a9", "completed")
        client.create_message_generate.assert_not_called()

    def test_finished_triggers_are_pruned(self, session, client):
        session.new_chat("a cat", "fake", "fake-t2i")
        assert _wait_for_status(session, "a1", "completed")
        for thread in list(session._triggers):
            thread.join(5)

        session.send_message("a dog")
        assert len(session._triggers) == 1
        assert session._triggers[0].name == "typix-gen-g2"
