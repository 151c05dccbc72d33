"""Google Gemini / Imagen adapter.

Talks to the Generative Language REST API with ``requests``:

- Gemini image models use ``models/{model}:generateContent``; reference
  images are sent as ``inline_data`` parts next to the prompt text.
- Imagen models are text-to-image only and use ``models/{model}:predict``.

The API has no image-count parameter for Gemini, so ``n`` images are
produced with ``n`` parallel calls.
"""

import logging
from typing import Any

import requests

from typix.core.errors import ErrorReason, GenerationError
from typix.core.provider_adapters import (
    AiModel,
    GenerateRequest,
    ProviderAdapterBase,
    SettingsField,
    provider_registry,
)
from typix.core.util import split_data_uri

logger = logging.getLogger(__name__)

API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def _raise_for_google_error(response: requests.Response) -> None:
    """Classify a failed Google API response.

    Raises:
        GenerationError: For credential, rate limit and quota failures
        requests.HTTPError: For anything else
    """
    if response.ok:
        return

    message = response.text
    if response.status_code in (401, 403) or "API key" in message:
        raise GenerationError(ErrorReason.CONFIG_ERROR, message)
    if response.status_code == 429:
        raise GenerationError(ErrorReason.TOO_MANY_REQUESTS, message)
    if response.status_code == 400 and "quota" in message:
        raise GenerationError(ErrorReason.API_ERROR, message)
    response.raise_for_status()


class GoogleProvider(ProviderAdapterBase):
    """Adapter for Google's Gemini image and Imagen models."""

    id = "google"
    name = "Google"
    supports_cors = True
    enabled_by_default = True
    models = (
        AiModel(id="gemini-3-pro-image-preview", name="Nano Banana Pro", ability="i2i", max_input_images=4),
        AiModel(id="gemini-2.5-flash-image-preview", name="Nano Banana", ability="i2i", max_input_images=4),
        AiModel(
            id="gemini-2.0-flash-preview-image-generation",
            name="Gemini 2.0 Flash Image Generation",
            ability="i2i",
            max_input_images=4,
        ),
        AiModel(id="imagen-4.0-generate-001", name="Imagen 4.0", ability="t2i"),
        AiModel(id="imagen-4.0-ultra-generate-001", name="Imagen 4.0 Ultra", ability="t2i"),
        AiModel(id="imagen-4.0-fast-generate-001", name="Imagen 4.0 Fast", ability="t2i"),
        AiModel(id="imagen-3.0-generate-002", name="Imagen 3.0", ability="t2i"),
    )
    settings_schema = (SettingsField(key="apiKey", type="password", required=True),)

    def _post(self, model_id: str, method: str, api_key: str, body: dict[str, Any]) -> dict[str, Any]:
        response = requests.post(
            f"{API_BASE_URL}/models/{model_id}:{method}",
            headers={"x-goog-api-key": api_key},
            json=body,
            timeout=self.config.request_timeout,
        )
        _raise_for_google_error(response)
        return response.json()

    def _generate_content(self, request: GenerateRequest, api_key: str) -> list[str]:
        parts: list[dict[str, Any]] = [{"text": request.prompt}]
        for image in request.images or []:
            mime_type, data = split_data_uri(image)
            parts.append({"inline_data": {"mime_type": mime_type, "data": data}})

        result = self._post(
            request.model_id,
            "generateContent",
            api_key,
            {
                "contents": [{"parts": parts}],
                "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
            },
        )

        images: list[str] = []
        candidates = result.get("candidates") or []
        if candidates:
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                    images.append(f"data:{mime_type};base64,{inline['data']}")
        if not images:
            logger.warning(f"Google {request.model_id} returned no image parts")
        return images

    def _predict(self, request: GenerateRequest, api_key: str) -> list[str]:
        result = self._post(
            request.model_id,
            "predict",
            api_key,
            {"instances": [{"prompt": request.prompt}], "parameters": {"sampleCount": 1}},
        )
        return [
            f"data:{prediction.get('mimeType') or 'image/png'};base64,{prediction['bytesBase64Encoded']}"
            for prediction in result.get("predictions") or []
            if prediction.get("bytesBase64Encoded")
        ]

    def _generate(
        self, request: GenerateRequest, model: AiModel, settings: dict[str, Any]
    ) -> list[str]:
        api_key = settings["apiKey"]
        if model.id.startswith("imagen-"):
            return self.fan_out(request.n, lambda: self._predict(request, api_key))
        return self.fan_out(request.n, lambda: self._generate_content(request, api_key))


provider_registry.register(GoogleProvider)
