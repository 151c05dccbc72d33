"""OpenAI image generation adapter.

Uses the official ``openai`` SDK. Text-to-image requests go through
``images.generate``; requests with reference images go through
``images.edit``.

OpenAI Specifics
----------------
- **Settings**: ``apiKey`` (required), ``baseURL`` and ``model`` (optional)
- **Sizes**: OpenAI accepts a fixed set of sizes, mapped from aspect ratios
- **Image count**: native ``n`` parameter, no fan-out needed
- **Results**: ``b64_json`` payloads are wrapped as data URIs; ``url``
  results are downloaded and inlined
"""

import logging
from typing import Any

import openai
import requests

from typix.core.errors import ErrorReason, GenerationError
from typix.core.provider_adapters import (
    ASPECT_RATIOS,
    AiModel,
    GenerateRequest,
    ProviderAdapterBase,
    SettingsField,
    provider_registry,
)
from typix.core.util import base64_to_data_uri, data_uri_to_bytes, fetch_url_to_data_uri, split_data_uri

logger = logging.getLogger(__name__)

ASPECT_RATIO_SIZES = {
    "1:1": "1024x1024",
    "16:9": "1792x1024",
    "9:16": "1024x1792",
    "4:3": "1536x1024",
    "3:4": "1024x1536",
}


def _image_file(data_uri: str, index: int) -> tuple[str, bytes, str]:
    """Build an upload tuple ``(filename, content, mime)`` for the SDK."""
    mime_type, _ = split_data_uri(data_uri)
    extension = mime_type.split("/")[-1] if mime_type.startswith("image/") else "png"
    return f"image_{index}.{extension}", data_uri_to_bytes(data_uri), mime_type


class OpenAIProvider(ProviderAdapterBase):
    """Adapter for the OpenAI Images API (GPT Image)."""

    id = "openai"
    name = "OpenAI"
    supports_cors = True
    enabled_by_default = True
    models = (
        AiModel(
            id="gpt-image-1",
            name="GPT Image 1",
            ability="i2i",
            max_input_images=3,
            supported_aspect_ratios=ASPECT_RATIOS,
        ),
    )
    settings_schema = (
        SettingsField(key="apiKey", type="password", required=True),
        SettingsField(key="baseURL", type="url", required=False, default="https://api.openai.com/v1"),
        SettingsField(key="model", type="string", required=False, default="gpt-image-1"),
    )

    def _client(self, settings: dict[str, Any]) -> openai.OpenAI:
        return openai.OpenAI(
            api_key=settings["apiKey"],
            base_url=settings.get("baseURL"),
            timeout=self.config.request_timeout,
        )

    def _generate(
        self, request: GenerateRequest, model: AiModel, settings: dict[str, Any]
    ) -> list[str]:
        client = self._client(settings)

        params: dict[str, Any] = {
            "model": settings.get("model") or model.id,
            "prompt": request.prompt,
            "n": request.n,
        }
        if request.aspect_ratio:
            params["size"] = ASPECT_RATIO_SIZES[request.aspect_ratio]

        try:
            if request.images:
                files = [_image_file(image, i) for i, image in enumerate(request.images)]
                response = client.images.edit(image=files if len(files) > 1 else files[0], **params)
            else:
                response = client.images.generate(**params)
        except (openai.AuthenticationError, openai.NotFoundError) as e:
            raise GenerationError(ErrorReason.CONFIG_ERROR, str(e)) from e
        except openai.RateLimitError as e:
            raise GenerationError(ErrorReason.TOO_MANY_REQUESTS, str(e)) from e

        images: list[str] = []
        for item in response.data or []:
            if item.b64_json:
                images.append(base64_to_data_uri(item.b64_json))
            elif item.url:
                try:
                    images.append(fetch_url_to_data_uri(item.url, timeout=self.config.request_timeout))
                except requests.RequestException as e:
                    logger.error(f"Failed to download OpenAI image result: {e}")
        return images


provider_registry.register(OpenAIProvider)
