"""Unit tests for generation records and the generation executor."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from typix.core.database import to_json
from typix.core.errors import ErrorReason
from typix.core.generation import GenerationExecutor, GenerationParams, GenerationStore
from typix.core.util import generate_id, now_iso, utc_now

USER = "user-1"


@pytest.fixture
def store(db, test_config) -> GenerationStore:
    return GenerationStore(db, test_config)


@pytest.fixture
def executor(db, test_config, store, file_storage, ai_service, registry) -> GenerationExecutor:
    return GenerationExecutor(db, test_config, store, file_storage, ai_service, registry)


def _pending(store: GenerationStore, model: str = "fake-t2i", **parameters) -> dict:
    return store.create(USER, "a cat", "fake", model, {"imageCount": 1, **parameters})


def _params(record: dict, **overrides) -> GenerationParams:
    values = dict(
        generation_id=record["id"],
        prompt=record["prompt"],
        provider=record["provider"],
        model=record["model"],
        chat_id="chat-1",
        user_id=USER,
    )
    values.update(overrides)
    return GenerationParams(**values)


def _age(db, generation_id: str, minutes: float) -> None:
    stamp = (utc_now() - timedelta(minutes=minutes)).isoformat()
    db.execute("UPDATE message_generations SET updated_at = ? WHERE id = ?", (stamp, generation_id))


# ---------------------------------------------------------------------------
# Record state machine.
# ---------------------------------------------------------------------------


class TestGenerationStore:
    """Tests for GenerationStore transitions."""

    def test_create_is_pending(self, store):
        record = _pending(store, aspectRatio="16:9")
        stored = store.get(record["id"], USER)

        assert stored["status"] == "pending"
        assert stored["parameters"] == {"imageCount": 1, "aspectRatio": "16:9"}
        assert stored["file_ids"] is None
        assert stored["type"] == "image"

    def test_get_is_scoped_by_user(self, store):
        record = _pending(store)
        assert store.get(record["id"], "someone-else") is None

    def test_completed_then_reset_keeps_id(self, store):
        record = _pending(store)
        store.mark_completed(record["id"], ["f1", "f2"], 12.5)
        completed = store.get(record["id"], USER)
        assert completed["status"] == "completed"
        assert completed["file_ids"] == ["f1", "f2"]
        assert completed["generation_time"] == 12.5

        store.reset(record["id"])
        reset = store.get(record["id"], USER)
        assert reset["id"] == record["id"]
        assert reset["status"] == "pending"
        assert reset["file_ids"] is None
        assert reset["error_reason"] is None
        assert reset["generation_time"] is None

    def test_failed_carries_reason(self, store):
        record = _pending(store)
        store.mark_failed(record["id"], ErrorReason.PROMPT_FLAGGED)
        failed = store.get(record["id"], USER)
        assert failed["status"] == "failed"
        assert failed["error_reason"] == "PROMPT_FLAGGED"
        assert failed["file_ids"] is None

    def test_stale_pending_times_out(self, store, db):
        """A pending record older than the staleness window fails with TIMEOUT on read."""
        record = _pending(store)
        _age(db, record["id"], 6)

        expired = store.expire_if_stale(store.get(record["id"], USER))
        assert expired["status"] == "failed"
        assert expired["error_reason"] == "TIMEOUT"
        assert store.get(record["id"], USER)["status"] == "failed"

    def test_stale_generating_times_out(self, store, db):
        record = _pending(store)
        store.mark_generating(record["id"])
        _age(db, record["id"], 10)
        assert store.expire_if_stale(store.get(record["id"], USER))["error_reason"] == "TIMEOUT"

    def test_fresh_record_untouched(self, store, db):
        record = _pending(store)
        _age(db, record["id"], 4)
        assert store.expire_if_stale(store.get(record["id"], USER))["status"] == "pending"

    def test_terminal_records_never_stale(self, store, db):
        record = _pending(store)
        store.mark_completed(record["id"], ["f1"], 1.0)
        _age(db, record["id"], 60)
        assert store.is_stale(store.get(record["id"], USER)) is False


# ---------------------------------------------------------------------------
# Executor.
# ---------------------------------------------------------------------------


class TestGenerationExecutor:
    """Tests for GenerationExecutor.execute."""

    def test_success_saves_files(self, executor, store, fake_provider, file_storage, png_data_uri):
        """Two returned images complete the record with two file ids and a positive time."""
        record = _pending(store)
        executor.execute(_params(record, image_count=2))

        done = store.get(record["id"], USER)
        assert done["status"] == "completed"
        assert len(done["file_ids"]) == 2
        assert done["generation_time"] > 0
        assert done["error_reason"] is None
        assert file_storage.get_file_data(done["file_ids"][0], USER) == png_data_uri
        assert fake_provider.calls[0][0].n == 2

    def test_classified_failure(self, executor, store, fake_provider):
        fake_provider.reason = ErrorReason.CONFIG_ERROR
        record = _pending(store)
        executor.execute(_params(record))

        failed = store.get(record["id"], USER)
        assert failed["status"] == "failed"
        assert failed["error_reason"] == "CONFIG_ERROR"
        assert failed["file_ids"] is None

    def test_invalid_settings_fail_as_config_invalid(self, executor, store, db, fake_provider):
        now = now_iso()
        db.execute(
            "INSERT INTO ai_providers (id, provider_id, user_id, enabled, settings, created_at, updated_at) "
            "VALUES (?, 'fake', ?, 1, ?, ?, ?)",
            (generate_id(), USER, to_json({"steps": 999}), now, now),
        )
        record = _pending(store)
        executor.execute(_params(record))

        assert store.get(record["id"], USER)["error_reason"] == "CONFIG_INVALID"
        assert fake_provider.calls == []

    def test_unexpected_error_becomes_unknown(self, executor, store, fake_provider):
        fake_provider.error = ValueError("provider exploded")
        record = _pending(store)
        executor.execute(_params(record))

        failed = store.get(record["id"], USER)
        assert failed["status"] == "failed"
        assert failed["error_reason"] == "UNKNOWN"

    def test_empty_result_is_api_error(self, executor, store, fake_provider):
        record = _pending(store)
        with patch.object(fake_provider, "_generate", return_value=[]):
            executor.execute(_params(record))

        failed = store.get(record["id"], USER)
        assert failed["status"] == "failed"
        assert failed["error_reason"] == "API_ERROR"
        assert failed["file_ids"] is None

    def test_stored_settings_reach_adapter(self, executor, store, ai_service, fake_provider):
        ai_service.update_ai_provider("fake", USER, settings={"apiKey": "secret", "steps": 10})
        executor.execute(_params(_pending(store)))
        assert fake_provider.calls[0][1] == {"apiKey": "secret", "steps": 10}

    def test_marks_generating_during_call(self, executor, store, fake_provider):
        record = _pending(store)
        seen = []

        original = fake_provider._generate

        def spy(self, request, model, settings):
            seen.append(store.get(record["id"], USER)["status"])
            return original(self, request, model, settings)

        fake_provider._generate = spy
        try:
            executor.execute(_params(record))
        finally:
            fake_provider._generate = original

        assert seen == ["generating"]

    def test_user_images_take_precedence(self, executor, store, fake_provider):
        record = _pending(store, model="fake-i2i")
        executor.execute(_params(record, user_images=["data:image/png;base64,USER"]))
        assert fake_provider.calls[0][0].images == ["data:image/png;base64,USER"]

    def test_t2i_model_gets_no_reference_images(self, executor, store, fake_provider):
        record = _pending(store)
        executor.execute(_params(record))
        assert fake_provider.calls[0][0].images is None
