"""Generation records and the executor that drives them.

A generation record is the persisted unit of one image-generation job:

    pending ──▶ generating ──▶ completed
                     │
                     └──────▶ failed

- ``completed`` carries ``file_ids`` and ``generation_time`` (ms)
- ``failed`` carries an :class:`~typix.core.errors.ErrorReason`
- Regeneration resets a record to ``pending`` under the same id, clearing
  the terminal fields

Every write sets the status together with all fields that belong to the new
state, keyed by id. There is no compare-and-swap: two executor runs racing on
the same id both write, last one wins.

Staleness
---------
A record still ``pending``/``generating`` after
``TypixConfig.generation_stale_minutes`` is marked ``failed``/``TIMEOUT`` by
the status read that notices it. Records that are never read again stay as
they are.
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal

from typix.core.ai_service import AiService
from typix.core.config import TypixConfig
from typix.core.database import Database, to_json
from typix.core.errors import ConfigInvalidError, ErrorReason
from typix.core.file_storage import FileStorage
from typix.core.provider_adapters import GenerateRequest, ProviderRegistry, provider_registry
from typix.core.util import generate_id, now_iso, parse_iso, utc_now

logger = logging.getLogger(__name__)

GenerationStatus = Literal["pending", "generating", "completed", "failed"]

ACTIVE_STATUSES = frozenset({"pending", "generating"})
TERMINAL_STATUSES = frozenset({"completed", "failed"})


class GenerationStore:
    """Reads and state transitions for ``message_generations`` rows."""

    def __init__(self, db: Database, config: TypixConfig) -> None:
        self.db = db
        self.config = config

    def create(
        self,
        user_id: str,
        prompt: str,
        provider: str,
        model: str,
        parameters: dict[str, Any],
        conn=None,
    ) -> dict[str, Any]:
        """Insert a new ``pending`` image generation record.

        Args:
            conn: Optional open connection, to join the caller's transaction

        Returns:
            The new record as stored
        """
        now = now_iso()
        record = {
            "id": generate_id(),
            "type": "image",
            "user_id": user_id,
            "prompt": prompt,
            "parameters": parameters,
            "provider": provider,
            "model": model,
            "status": "pending",
            "file_ids": None,
            "error_reason": None,
            "generation_time": None,
            "cost": None,
            "created_at": now,
            "updated_at": now,
        }
        sql = (
            "INSERT INTO message_generations (id, type, user_id, prompt, parameters, provider, model, "
            "status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
        )
        params = (
            record["id"],
            "image",
            user_id,
            prompt,
            to_json(parameters),
            provider,
            model,
            "pending",
            now,
            now,
        )
        if conn is not None:
            conn.execute(sql, params)
        else:
            self.db.execute(sql, params)
        return record

    def get(self, generation_id: str, user_id: str) -> dict[str, Any] | None:
        """Fetch a record owned by ``user_id`` (None for unknown or foreign ids)."""
        return self.db.fetch_one(
            "SELECT * FROM message_generations WHERE id = ? AND user_id = ?",
            (generation_id, user_id),
        )

    def _write(self, generation_id: str, **fields: Any) -> None:
        fields["updated_at"] = now_iso()
        if "file_ids" in fields:
            fields["file_ids"] = to_json(fields["file_ids"])
        if isinstance(fields.get("error_reason"), ErrorReason):
            fields["error_reason"] = fields["error_reason"].value
        assignments = ", ".join(f"{key} = ?" for key in fields)
        self.db.execute(
            f"UPDATE message_generations SET {assignments} WHERE id = ?",
            (*fields.values(), generation_id),
        )

    def mark_generating(self, generation_id: str) -> None:
        self._write(
            generation_id, status="generating", file_ids=None, error_reason=None, generation_time=None
        )

    def mark_completed(self, generation_id: str, file_ids: list[str], generation_time: float) -> None:
        self._write(
            generation_id,
            status="completed",
            file_ids=file_ids,
            error_reason=None,
            generation_time=generation_time,
        )

    def mark_failed(self, generation_id: str, reason: ErrorReason) -> None:
        self._write(
            generation_id, status="failed", file_ids=None, error_reason=reason, generation_time=None
        )

    def reset(self, generation_id: str) -> None:
        """Return a record to ``pending`` for regeneration, keeping its id."""
        self._write(
            generation_id, status="pending", file_ids=None, error_reason=None, generation_time=None
        )

    def is_stale(self, record: dict[str, Any]) -> bool:
        if record["status"] not in ACTIVE_STATUSES:
            return False
        age = utc_now() - parse_iso(record["updated_at"])
        return age > timedelta(minutes=self.config.generation_stale_minutes)

    def expire_if_stale(self, record: dict[str, Any]) -> dict[str, Any]:
        """Mark a stuck record ``failed``/``TIMEOUT`` and return the updated record."""
        if not self.is_stale(record):
            return record

        logger.warning(
            f"Generation {record['id']} stuck in '{record['status']}' since "
            f"{record['updated_at']}, marking as timed out"
        )
        self.mark_failed(record["id"], ErrorReason.TIMEOUT)
        return self.get(record["id"], record["user_id"]) or record


@dataclass
class GenerationParams:
    """Everything the executor needs to run one generation."""

    generation_id: str
    prompt: str
    provider: str
    model: str
    chat_id: str
    user_id: str
    user_images: list[str] | None = None
    image_count: int = 1
    aspect_ratio: str | None = None
    # Excluded from the previous-image lookup (the message being (re)generated)
    message_id: str | None = None


class GenerationExecutor:
    """Run a generation to a terminal state.

    The executor never raises: every outcome ends as a ``completed`` or
    ``failed`` record.
    """

    def __init__(
        self,
        db: Database,
        config: TypixConfig,
        store: GenerationStore,
        file_storage: FileStorage,
        ai_service: AiService,
        registry: ProviderRegistry = provider_registry,
    ) -> None:
        self.db = db
        self.config = config
        self.store = store
        self.file_storage = file_storage
        self.ai_service = ai_service
        self.registry = registry

    def _previous_images(self, params: GenerationParams, max_input_images: int) -> list[str] | None:
        """Completed images of the latest other assistant image message in the chat."""
        sql = (
            "SELECT g.file_ids FROM messages m "
            "JOIN message_generations g ON g.id = m.generation_id "
            "WHERE m.chat_id = ? AND m.user_id = ? AND m.role = 'assistant' AND m.type = 'image'"
        )
        args: list[Any] = [params.chat_id, params.user_id]
        if params.message_id:
            sql += " AND m.id != ?"
            args.append(params.message_id)
        sql += " ORDER BY m.created_at DESC, m.rowid DESC LIMIT 1"

        row = self.db.fetch_one(sql, tuple(args))
        file_ids = (row or {}).get("file_ids") or []
        if not file_ids:
            return None

        selected = file_ids[-1:] if max_input_images == 1 else file_ids[-max_input_images:]
        images = [self.file_storage.get_file_data(file_id, params.user_id) for file_id in selected]
        return [image for image in images if image] or None

    def resolve_reference_images(self, params: GenerationParams) -> list[str] | None:
        """Pick reference images: the user's own, else the previous result for i2i models."""
        if params.user_images:
            return params.user_images

        model = self.registry.get_model_by_id(params.provider, params.model)
        if model.ability == "t2i":
            return None
        return self._previous_images(params, model.max_input_images)

    def execute(self, params: GenerationParams) -> None:
        """Drive ``params.generation_id`` to ``completed`` or ``failed``."""
        logger.info(
            f"Starting generation {params.generation_id} with {params.provider}/{params.model} "
            f"(n={params.image_count}, aspect_ratio={params.aspect_ratio})"
        )
        try:
            self.store.mark_generating(params.generation_id)

            settings = self.ai_service.get_provider_settings(params.provider, params.user_id)
            images = self.resolve_reference_images(params)
            adapter = self.registry.instantiate(params.provider, self.config)

            started = time.perf_counter()
            result = adapter.generate(
                GenerateRequest(
                    provider_id=params.provider,
                    model_id=params.model,
                    prompt=params.prompt,
                    images=images,
                    n=params.image_count or 1,
                    aspect_ratio=params.aspect_ratio,
                ),
                settings,
            )

            if result.error_reason:
                logger.warning(
                    f"Generation {params.generation_id} failed: {result.error_reason.value}"
                )
                self.store.mark_failed(params.generation_id, result.error_reason)
                return
            if not result.images:
                logger.warning(f"Generation {params.generation_id} returned no images")
                self.store.mark_failed(params.generation_id, ErrorReason.API_ERROR)
                return

            file_ids = self.file_storage.save_files(result.images, params.user_id)
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.store.mark_completed(params.generation_id, file_ids, elapsed_ms)
            logger.info(
                f"Generation {params.generation_id} completed with {len(file_ids)} image(s) "
                f"in {elapsed_ms:.0f} ms"
            )

        except ConfigInvalidError as e:
            logger.warning(f"Generation {params.generation_id} has invalid provider settings: {e}")
            self.store.mark_failed(params.generation_id, ErrorReason.CONFIG_INVALID)
        except Exception as e:
            logger.error(f"Generation {params.generation_id} failed unexpectedly: {e}", exc_info=True)
            self.store.mark_failed(params.generation_id, ErrorReason.UNKNOWN)
