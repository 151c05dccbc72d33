"""Black Forest Labs (Flux) adapter.

The BFL API is asynchronous: a generation is submitted, then its
``polling_url`` is polled until the task is ``Ready`` (or fails). The
finished sample is a short-lived URL, downloaded and inlined here.

The API does not accept browser calls, so in the client runtime this
provider is proxied through the server.
"""

import logging
import time
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
from typix.core.util import data_uri_to_base64, fetch_url_to_data_uri

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.bfl.ai/v1"

# Models that take an aspect_ratio parameter instead of width/height
_ASPECT_RATIO_MODELS = {"flux-kontext-max", "flux-kontext-pro", "flux-pro-1.1-ultra"}


class FluxProvider(ProviderAdapterBase):
    """Adapter for the BFL Flux API (submit, then poll)."""

    id = "flux"
    name = "Flux"
    supports_cors = False
    enabled_by_default = True
    models = tuple(
        AiModel(id=model_id, name=name, ability=ability, supported_aspect_ratios=ASPECT_RATIOS)
        for model_id, name, ability in (
            ("flux-kontext-max", "FLUX.1 Kontext [max]", "i2i"),
            ("flux-kontext-pro", "FLUX.1 Kontext [pro]", "i2i"),
            ("flux-pro-1.1-ultra", "FLUX1.1 [pro] Ultra", "t2i"),
            ("flux-pro-1.1", "FLUX1.1 [pro]", "t2i"),
            ("flux-pro", "FLUX.1 [pro]", "t2i"),
            ("flux-dev", "FLUX.1 [dev]", "t2i"),
        )
    )
    settings_schema = (SettingsField(key="apiKey", type="password", required=True),)

    poll_interval = 0.5
    max_poll_attempts = 120

    def _submit(self, request: GenerateRequest, api_key: str) -> tuple[str, str]:
        body: dict[str, Any] = {"prompt": request.prompt}
        if request.images:
            body["input_image"] = data_uri_to_base64(request.images[0])
        if request.aspect_ratio and request.model_id in _ASPECT_RATIO_MODELS:
            body["aspect_ratio"] = request.aspect_ratio

        response = requests.post(
            f"{API_BASE_URL}/{request.model_id}",
            headers={"accept": "application/json", "x-key": api_key},
            json=body,
            timeout=self.config.request_timeout,
        )
        if response.status_code in (401, 403):
            raise GenerationError(ErrorReason.CONFIG_ERROR, response.text)
        if response.status_code == 429:
            raise GenerationError(ErrorReason.TOO_MANY_REQUESTS, response.text)
        response.raise_for_status()

        data = response.json()
        return data["id"], data["polling_url"]

    def _poll(self, request_id: str, polling_url: str, api_key: str) -> list[str]:
        for _ in range(self.max_poll_attempts):
            time.sleep(self.poll_interval)

            response = requests.get(
                polling_url,
                params={"id": request_id},
                headers={"accept": "application/json", "x-key": api_key},
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            data = response.json()
            status = data.get("status")

            if status == "Ready" and (data.get("result") or {}).get("sample"):
                try:
                    return [fetch_url_to_data_uri(data["result"]["sample"], timeout=self.config.request_timeout)]
                except requests.RequestException as e:
                    logger.error(f"Failed to download Flux sample for {request_id}: {e}")
                    return []
            if status in ("Request Moderated", "Content Moderated"):
                raise GenerationError(ErrorReason.PROMPT_FLAGGED, f"Flux task {request_id}: {status}")
            if status in ("Error", "Failed"):
                raise RuntimeError(f"Flux generation failed: {data.get('error') or 'Unknown error'}")

        raise GenerationError(
            ErrorReason.TIMEOUT,
            f"Flux task {request_id} not ready after {self.max_poll_attempts} polls",
        )

    def _generate_single(self, request: GenerateRequest, api_key: str) -> list[str]:
        request_id, polling_url = self._submit(request, api_key)
        logger.debug(f"Submitted Flux task {request_id}")
        return self._poll(request_id, polling_url, api_key)

    def _generate(
        self, request: GenerateRequest, model: AiModel, settings: dict[str, Any]
    ) -> list[str]:
        return self.fan_out(request.n, lambda: self._generate_single(request, settings["apiKey"]))


provider_registry.register(FluxProvider)
