"""REST client for the Typix API.

Every chat and AI operation is a ``POST`` with a JSON body; failures come
back as :class:`~typix.core.errors.ServiceException` with the code the
server reported, so callers handle remote and in-process services alike.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from typix.core.config import TypixConfig, config
from typix.core.errors import ServiceException

logger = logging.getLogger(__name__)

_CODES_BY_STATUS = {
    400: "invalid_parameter",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
}


class TypixClient:
    """Thin ``requests`` wrapper around the Typix HTTP API.

    Args:
        base_url: Server base URL, defaults to ``TypixConfig.server_url``
        user_id: Sent as ``X-User-Id``; omitted when None
        app_config: Configuration used for defaults and timeouts
        session: Optional pre-configured ``requests.Session``
    """

    def __init__(
        self,
        base_url: str | None = None,
        user_id: str | None = None,
        app_config: TypixConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = app_config or config
        self.base_url = (base_url or self.config.server_url).rstrip("/")
        self.timeout = self.config.request_timeout
        self.session = session or requests.Session()
        if user_id:
            self.session.headers["X-User-Id"] = user_id

    def _post(self, path: str, payload: dict[str, Any] | None = None) -> Any:
        response = self.session.post(f"{self.base_url}{path}", json=payload or {}, timeout=self.timeout)
        if not response.ok:
            raise self._error(response)
        return response.json()

    @staticmethod
    def _error(response: requests.Response) -> ServiceException:
        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("detail") if isinstance(body, dict) else None
        code = (body.get("code") if isinstance(body, dict) else None) or _CODES_BY_STATUS.get(
            response.status_code, "error"
        )
        message = detail if isinstance(detail, str) else f"{response.status_code} {response.reason}"
        return ServiceException(code, message)

    def close(self) -> None:
        self.session.close()

    # -- health ------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        response = self.session.get(f"{self.base_url}/api/health", timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    # -- chats -------------------------------------------------------------

    def get_chats(self) -> list[dict[str, Any]]:
        return self._post("/api/chats/getChats")

    def create_chat(
        self,
        provider: str,
        model: str,
        content: str | None = None,
        title: str = "New Chat",
        image_count: int = 1,
        aspect_ratio: str | None = None,
        attachments: list[str] | None = None,
    ) -> dict[str, Any]:
        """Create a chat, with its first message pair when ``content`` is given."""
        payload: dict[str, Any] = {
            "title": title,
            "provider": provider,
            "model": model,
            "content": content,
            "imageCount": image_count,
            "aspectRatio": aspect_ratio,
        }
        if attachments:
            payload["attachments"] = [{"data": data, "type": "image"} for data in attachments]
        return self._post("/api/chats/createChat", payload)

    def get_chat_by_id(self, chat_id: str) -> dict[str, Any]:
        return self._post("/api/chats/getChatById", {"id": chat_id})

    def update_chat(self, chat_id: str, **fields: str) -> bool:
        return self._post("/api/chats/updateChat", {"id": chat_id, **fields})

    def delete_chat(self, chat_id: str) -> bool:
        return self._post("/api/chats/deleteChat", {"id": chat_id})

    # -- messages ----------------------------------------------------------

    def create_message(
        self,
        chat_id: str,
        content: str,
        provider: str,
        model: str,
        image_count: int = 1,
        aspect_ratio: str | None = None,
        attachments: list[str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chatId": chat_id,
            "content": content,
            "type": "text",
            "provider": provider,
            "model": model,
            "imageCount": image_count,
            "aspectRatio": aspect_ratio,
        }
        if attachments:
            payload["attachments"] = [{"data": data, "type": "image"} for data in attachments]
        return self._post("/api/chats/createMessage", payload)

    def delete_message(self, message_id: str) -> bool:
        return self._post("/api/chats/deleteMessage", {"messageId": message_id})

    def get_generation_status(self, generation_id: str) -> dict[str, Any] | None:
        """Return the generation record, or None if the server does not know it."""
        try:
            return self._post("/api/chats/getGenerationStatus", {"generationId": generation_id})
        except ServiceException as e:
            if e.code == "not_found":
                return None
            raise

    def create_message_generate(self, generation_id: str) -> dict[str, Any]:
        """Start a pending generation; blocks until the server finishes it."""
        return self._post("/api/chats/createMessageGenerate", {"generationId": generation_id})

    def regenerate_message(self, message_id: str) -> dict[str, Any]:
        return self._post("/api/chats/regenerateMessage", {"messageId": message_id})

    # -- AI providers ------------------------------------------------------

    def get_ai_providers(self) -> list[dict[str, Any]]:
        return self._post("/api/ai/getAiProviders")

    def get_ai_provider_by_id(self, provider_id: str) -> dict[str, Any]:
        return self._post("/api/ai/getAiProviderById", {"providerId": provider_id})

    def get_enabled_ai_providers_with_models(self) -> list[dict[str, Any]]:
        return self._post("/api/ai/getEnabledAiProvidersWithModels")

    def update_ai_provider(
        self,
        provider_id: str,
        enabled: bool | None = None,
        settings: dict[str, Any] | None = None,
    ) -> bool:
        return self._post(
            "/api/ai/updateAiProvider",
            {"providerId": provider_id, "enabled": enabled, "settings": settings},
        )

    def get_ai_models_by_provider_id(self, provider_id: str) -> list[dict[str, Any]]:
        return self._post("/api/ai/getAiModelsByProviderId", {"providerId": provider_id})

    def update_ai_model(self, provider_id: str, model_id: str, enabled: bool) -> bool:
        return self._post(
            "/api/ai/updateAiModel",
            {"providerId": provider_id, "modelId": model_id, "enabled": enabled},
        )
