"""Fal adapter.

Calls the synchronous ``https://fal.run/{model}{endpoint}`` REST endpoint.
Fal exposes separate endpoints per task, so the suffix depends on the
model and on whether the request carries reference images:

- nano-banana, gemini, flux-2 klein: no suffix for t2i, ``/edit`` for i2i
- qwen-image: no suffix for t2i, ``-edit`` for i2i
- flux-pro kontext: ``/text-to-image`` for t2i, no suffix or ``/multi`` for i2i

``/multi`` is only used when more than one reference image is sent to a
model accepting several.
"""

import logging
from typing import Any

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
from typix.core.util import fetch_url_to_data_uri

logger = logging.getLogger(__name__)

API_BASE_URL = "https://fal.run"

_EDIT_MODELS = {
    "fal-ai/nano-banana-pro",
    "fal-ai/gemini-25-flash-image",
    "fal-ai/flux-2/klein/9b",
    "fal-ai/flux-2/klein/4b",
}
_QWEN_MODEL = "fal-ai/qwen-image"

QWEN_IMAGE_SIZES = {
    "1:1": "square_hd",
    "16:9": "portrait_16_9",
    "9:16": "landscape_16_9",
    "4:3": "portrait_4_3",
    "3:4": "landscape_4_3",
}


def endpoint_suffix(request: GenerateRequest, model: AiModel) -> str:
    """Return the endpoint suffix appended to the model id."""
    i2i = bool(request.images)
    if model.id in _EDIT_MODELS:
        return "/edit" if i2i else ""
    if model.id == _QWEN_MODEL:
        return "-edit" if i2i else ""
    if not i2i:
        return "/text-to-image"
    if len(request.images) > 1 and model.max_input_images > 1:
        return "/multi"
    return ""


class FalProvider(ProviderAdapterBase):
    """Adapter for models hosted on fal.ai."""

    id = "fal"
    name = "Fal"
    supports_cors = True
    enabled_by_default = True
    models = (
        AiModel(id="fal-ai/nano-banana-pro", name="Nano Banana Pro", ability="i2i", max_input_images=4),
        AiModel(id="fal-ai/gemini-25-flash-image", name="Nano Banana", ability="i2i", max_input_images=4),
        AiModel(id="fal-ai/flux-2/klein/9b", name="FLUX.2 [Klein] - 9B", ability="i2i", max_input_images=4),
        AiModel(id="fal-ai/flux-2/klein/4b", name="FLUX.2 [Klein] - 4B", ability="i2i", max_input_images=4),
        AiModel(
            id="fal-ai/flux-pro/kontext/max",
            name="FLUX.1 Kontext [max]",
            ability="i2i",
            supported_aspect_ratios=ASPECT_RATIOS,
        ),
        AiModel(
            id="fal-ai/flux-pro/kontext",
            name="FLUX.1 Kontext [pro]",
            ability="i2i",
            supported_aspect_ratios=ASPECT_RATIOS,
        ),
        AiModel(id=_QWEN_MODEL, name="Qwen Image", ability="i2i", supported_aspect_ratios=ASPECT_RATIOS),
    )
    settings_schema = (SettingsField(key="apiKey", type="password", required=True),)

    @staticmethod
    def build_input(request: GenerateRequest, model: AiModel) -> dict[str, Any]:
        """Build the ``input`` payload for a Fal call."""
        payload: dict[str, Any] = {"prompt": request.prompt}
        if request.n > 1:
            payload["num_images"] = request.n

        if request.aspect_ratio:
            if model.id == _QWEN_MODEL:
                payload["image_size"] = QWEN_IMAGE_SIZES[request.aspect_ratio]
            else:
                payload["aspect_ratio"] = request.aspect_ratio

        if request.images:
            if model.max_input_images == 1:
                payload["image_url"] = request.images[0]
            else:
                payload["image_urls"] = list(request.images)
        return payload

    def _inline(self, url: str) -> str | None:
        if url.startswith("data:"):
            return url
        try:
            return fetch_url_to_data_uri(url, timeout=self.config.request_timeout)
        except requests.RequestException as e:
            logger.error(f"Failed to download Fal image result: {e}")
            return None

    def _generate(
        self, request: GenerateRequest, model: AiModel, settings: dict[str, Any]
    ) -> list[str]:
        url = f"{API_BASE_URL}/{model.id}{endpoint_suffix(request, model)}"
        response = requests.post(
            url,
            headers={"Authorization": f"Key {settings['apiKey']}"},
            json=self.build_input(request, model),
            timeout=self.config.request_timeout,
        )
        if response.status_code in (401, 403, 404):
            raise GenerationError(ErrorReason.CONFIG_ERROR, response.text)
        if response.status_code == 429:
            raise GenerationError(ErrorReason.TOO_MANY_REQUESTS, response.text)
        response.raise_for_status()

        images = []
        for image in response.json().get("images") or []:
            if image.get("url"):
                inlined = self._inline(image["url"])
                if inlined:
                    images.append(inlined)
        return images


provider_registry.register(FalProvider)
