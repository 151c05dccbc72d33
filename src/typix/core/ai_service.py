"""Per-user provider and model overrides.

Compiled-in providers carry defaults (``enabled_by_default`` on providers and
models). Users override them with rows in ``ai_providers`` / ``ai_models``;
a missing row means "use the default".
"""

import logging
from typing import Any

from typix.core.config import TypixConfig
from typix.core.database import Database, to_json
from typix.core.errors import ServiceException
from typix.core.provider_adapters import ProviderAdapterBase, ProviderRegistry, provider_registry
from typix.core.util import generate_id, now_iso

logger = logging.getLogger(__name__)


class AiService:
    """Merge compiled-in provider definitions with user overrides."""

    def __init__(
        self,
        db: Database,
        config: TypixConfig,
        registry: ProviderRegistry = provider_registry,
    ) -> None:
        self.db = db
        self.config = config
        self.registry = registry

    def _adapter(self, provider_id: str) -> ProviderAdapterBase:
        # Unwrapped: listing and validation never go through the CORS proxy
        return self.registry.get_provider_by_id(provider_id)(self.config)

    def _provider_overrides(self, user_id: str) -> dict[str, dict[str, Any]]:
        rows = self.db.fetch_all("SELECT * FROM ai_providers WHERE user_id = ?", (user_id,))
        return {row["provider_id"]: row for row in rows}

    def _model_overrides(self, user_id: str, provider_id: str) -> dict[str, bool]:
        rows = self.db.fetch_all(
            "SELECT model_id, enabled FROM ai_models WHERE user_id = ? AND provider_id = ?",
            (user_id, provider_id),
        )
        return {row["model_id"]: bool(row["enabled"]) for row in rows}

    def get_ai_providers(self, user_id: str) -> list[dict[str, Any]]:
        """List every compiled-in provider with the user's effective ``enabled`` flag."""
        overrides = self._provider_overrides(user_id)
        providers = []
        for adapter_class in self.registry.providers():
            info = adapter_class(self.config).get_provider_info()
            override = overrides.get(adapter_class.id)
            info["enabled"] = bool(override["enabled"]) if override else adapter_class.enabled_by_default
            providers.append(info)
        return providers

    def get_enabled_ai_providers_with_models(self, user_id: str) -> list[dict[str, Any]]:
        """List enabled providers with their enabled models.

        Providers without any enabled model are left out.
        """
        result = []
        for provider in self.get_ai_providers(user_id):
            if not provider["enabled"]:
                continue
            models = [m for m in self._merge_models(provider["id"], provider["models"], user_id) if m["enabled"]]
            if models:
                result.append({**provider, "models": models})
        return result

    def _merge_models(
        self, provider_id: str, models: list[dict[str, Any]], user_id: str
    ) -> list[dict[str, Any]]:
        overrides = self._model_overrides(user_id, provider_id)
        return [
            {**model, "enabled": overrides.get(model["id"], model["enabledByDefault"])}
            for model in models
        ]

    def get_ai_provider_by_id(self, provider_id: str, user_id: str) -> dict[str, Any]:
        """Return a provider with its settings schema filled with current values.

        Raises:
            ServiceException: ``not_found`` for an unknown provider
        """
        adapter = self._adapter(provider_id)
        override = self._provider_overrides(user_id).get(provider_id)
        user_settings = (override or {}).get("settings") or {}

        info = adapter.get_provider_info()
        for item in info["settings"]:
            item["value"] = user_settings.get(item["key"], item.get("defaultValue"))
        info["enabled"] = bool(override["enabled"]) if override else adapter.enabled_by_default
        return info

    def get_provider_settings(self, provider_id: str, user_id: str) -> dict[str, Any]:
        """Return the user's raw stored settings for a provider (empty if none)."""
        row = self.db.fetch_one(
            "SELECT settings FROM ai_providers WHERE user_id = ? AND provider_id = ?",
            (user_id, provider_id),
        )
        return (row or {}).get("settings") or {}

    def update_ai_provider(
        self,
        provider_id: str,
        user_id: str,
        enabled: bool | None = None,
        settings: dict[str, Any] | None = None,
    ) -> None:
        """Create or update the user's override for a provider.

        Settings are validated against the provider schema before being stored.

        Raises:
            ServiceException: ``not_found`` for an unknown provider
            ConfigInvalidError: If ``settings`` fail validation
        """
        adapter = self._adapter(provider_id)
        if settings:
            adapter.parse_settings(settings)

        now = now_iso()
        existing = self.db.fetch_one(
            "SELECT * FROM ai_providers WHERE user_id = ? AND provider_id = ?",
            (user_id, provider_id),
        )
        if existing is None:
            self.db.execute(
                "INSERT INTO ai_providers (id, provider_id, user_id, enabled, settings, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    generate_id(),
                    provider_id,
                    user_id,
                    int(adapter.enabled_by_default if enabled is None else enabled),
                    to_json(settings),
                    now,
                    now,
                ),
            )
        else:
            self.db.execute(
                "UPDATE ai_providers SET enabled = ?, settings = ?, updated_at = ? WHERE id = ?",
                (
                    int(bool(existing["enabled"]) if enabled is None else enabled),
                    to_json(existing["settings"] if settings is None else settings),
                    now,
                    existing["id"],
                ),
            )
        logger.info(f"Updated provider override {provider_id} for user {user_id}")

    def get_ai_models_by_provider_id(self, provider_id: str, user_id: str) -> list[dict[str, Any]]:
        """List a provider's models with the user's effective ``enabled`` flag."""
        adapter_class = self.registry.get_provider_by_id(provider_id)
        return self._merge_models(
            provider_id, [model.to_dict() for model in adapter_class.models], user_id
        )

    def update_ai_model(self, provider_id: str, model_id: str, enabled: bool, user_id: str) -> None:
        """Create or update the user's override for a model.

        Raises:
            ServiceException: ``not_found`` for an unknown provider or model
        """
        adapter_class = self.registry.get_provider_by_id(provider_id)
        if not any(model.id == model_id for model in adapter_class.models):
            raise ServiceException("not_found", "AI model not found in provider")

        now = now_iso()
        self.db.execute(
            "INSERT INTO ai_models (id, provider_id, model_id, user_id, enabled, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (user_id, provider_id, model_id) "
            "DO UPDATE SET enabled = excluded.enabled, updated_at = excluded.updated_at",
            (generate_id(), provider_id, model_id, user_id, int(enabled), now, now),
        )
        logger.info(f"Set model {provider_id}/{model_id} enabled={enabled} for user {user_id}")
