"""Cloudflare Workers AI adapter.

Calls ``/client/v4/accounts/{account_id}/ai/run/{model}`` with a bearer
token. Most models take a JSON body; the FLUX.2 models take multipart form
data with one ``input_image_{i}`` part per reference image.

Credentials
-----------
By default the user supplies ``accountId`` and ``apiKey``. When the
deployment enables ``provider_cloudflare_builtin``, the schema switches to
a ``builtin`` toggle (on by default) backed by the deployment's own
``cloudflare_account_id`` / ``cloudflare_api_token``; user credentials
become optional overrides.

Error Classification
--------------------
- 401 / 404: CONFIG_ERROR
- 429: TOO_MANY_REQUESTS
- 400 with error code 3030: PROMPT_FLAGGED or INPUT_IMAGE_FLAGGED,
  depending on the message
"""

import logging
from typing import Any

import requests

from typix.core.errors import ErrorReason, GenerationError
from typix.core.provider_adapters import (
    ASPECT_RATIOS,
    COMMON_ASPECT_RATIO_SIZES,
    AiModel,
    GenerateRequest,
    ProviderAdapterBase,
    SettingsField,
    provider_registry,
)
from typix.core.util import (
    base64_to_data_uri,
    bytes_to_data_uri,
    data_uri_to_base64,
    data_uri_to_bytes,
    split_data_uri,
)

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.cloudflare.com/client/v4/accounts"

# Workers AI error code for content rejected by the safety filter
FLAGGED_ERROR_CODE = 3030

SETTINGS_SCHEMA = (
    SettingsField(key="accountId", type="password", required=True),
    SettingsField(key="apiKey", type="password", required=True),
)

BUILTIN_SETTINGS_SCHEMA = (
    SettingsField(key="builtin", type="boolean", required=True, default=True),
    SettingsField(key="accountId", type="password", required=False),
    SettingsField(key="apiKey", type="password", required=False),
)


def _raise_for_cloudflare_error(response: requests.Response) -> None:
    """Classify a failed Workers AI response.

    Raises:
        GenerationError: For classified failures
        requests.HTTPError: For anything else
    """
    if response.ok:
        return

    if response.status_code in (401, 404):
        raise GenerationError(ErrorReason.CONFIG_ERROR, response.text)
    if response.status_code == 429:
        raise GenerationError(ErrorReason.TOO_MANY_REQUESTS, response.text)
    if response.status_code == 400:
        try:
            errors = response.json().get("errors")
        except ValueError:
            errors = None
        if isinstance(errors, list):
            flagged = next((e for e in errors if e.get("code") == FLAGGED_ERROR_CODE), None)
            if flagged:
                message = flagged.get("message", "")
                if "prompt" in message:
                    raise GenerationError(ErrorReason.PROMPT_FLAGGED, message)
                if "Input image" in message:
                    raise GenerationError(ErrorReason.INPUT_IMAGE_FLAGGED, message)

    logger.error(f"Cloudflare API error: {response.status_code} {response.reason} - {response.text}")
    response.raise_for_status()


class CloudflareProvider(ProviderAdapterBase):
    """Adapter for Cloudflare Workers AI image models."""

    id = "cloudflare"
    name = "Cloudflare AI"
    supports_cors = False
    enabled_by_default = True
    models = (
        AiModel(
            id="@cf/black-forest-labs/flux-2-klein-9b",
            name="FLUX.2 [Klein] - 9B",
            ability="i2i",
            max_input_images=4,
            supported_aspect_ratios=ASPECT_RATIOS,
            input_type="FormData",
        ),
        AiModel(
            id="@cf/black-forest-labs/flux-2-klein-4b",
            name="FLUX.2 [Klein] - 4B",
            ability="i2i",
            max_input_images=4,
            supported_aspect_ratios=ASPECT_RATIOS,
            input_type="FormData",
        ),
        AiModel(
            id="@cf/black-forest-labs/flux-2-dev",
            name="FLUX.2-dev",
            ability="i2i",
            max_input_images=4,
            supported_aspect_ratios=ASPECT_RATIOS,
            input_type="FormData",
        ),
        AiModel(
            id="@cf/leonardo/lucid-origin",
            name="Lucid Origin",
            ability="t2i",
            supported_aspect_ratios=ASPECT_RATIOS,
        ),
        AiModel(id="@cf/black-forest-labs/flux-1-schnell", name="FLUX.1-schnell", ability="t2i"),
        AiModel(
            id="@cf/lykon/dreamshaper-8-lcm",
            name="DreamShaper 8 LCM",
            ability="t2i",
            supported_aspect_ratios=ASPECT_RATIOS,
        ),
        AiModel(
            id="@cf/bytedance/stable-diffusion-xl-lightning",
            name="Stable Diffusion XL Lightning",
            ability="t2i",
            supported_aspect_ratios=ASPECT_RATIOS,
        ),
        AiModel(
            id="@cf/stabilityai/stable-diffusion-xl-base-1.0",
            name="Stable Diffusion XL Base 1.0",
            ability="t2i",
            supported_aspect_ratios=ASPECT_RATIOS,
        ),
    )
    settings_schema = SETTINGS_SCHEMA

    def settings(self) -> list[SettingsField]:
        if self.config.provider_cloudflare_builtin and self.config.runtime == "server":
            return list(BUILTIN_SETTINGS_SCHEMA)
        return list(SETTINGS_SCHEMA)

    def _credentials(self, settings: dict[str, Any]) -> tuple[str, str]:
        """Resolve ``(account_id, api_token)`` for a call."""
        account_id = settings.get("accountId")
        api_key = settings.get("apiKey")
        if settings.get("builtin") is True:
            account_id = account_id or self.config.cloudflare_account_id
            api_key = api_key or self.config.cloudflare_api_token

        if not account_id or not api_key:
            raise GenerationError(ErrorReason.CONFIG_ERROR, "Cloudflare credentials are not configured")
        return account_id, api_key

    @staticmethod
    def _params(request: GenerateRequest) -> dict[str, Any]:
        params: dict[str, Any] = {"prompt": request.prompt}
        if request.aspect_ratio:
            width, height = COMMON_ASPECT_RATIO_SIZES[request.aspect_ratio]
            params["width"] = width
            params["height"] = height
        return params

    def _generate_single(
        self, request: GenerateRequest, model: AiModel, account_id: str, api_key: str
    ) -> list[str]:
        url = f"{API_BASE_URL}/{account_id}/ai/run/{model.id}"
        headers = {"Authorization": f"Bearer {api_key}"}
        params = self._params(request)

        if model.input_type == "FormData":
            # (None, value) parts are plain form fields
            fields: dict[str, tuple] = {key: (None, str(value)) for key, value in params.items()}
            for i, image in enumerate(request.images or []):
                mime_type, _ = split_data_uri(image)
                fields[f"input_image_{i}"] = (f"input_image_{i}", data_uri_to_bytes(image), mime_type)
            response = requests.post(
                url, headers=headers, files=fields, timeout=self.config.request_timeout
            )
        else:
            if request.images:
                params["image_b64"] = data_uri_to_base64(request.images[0])
            response = requests.post(url, headers=headers, json=params, timeout=self.config.request_timeout)

        _raise_for_cloudflare_error(response)

        if "image/png" in response.headers.get("Content-Type", ""):
            return [bytes_to_data_uri(response.content, "image/png")]
        return [base64_to_data_uri(response.json()["result"]["image"])]

    def _generate(
        self, request: GenerateRequest, model: AiModel, settings: dict[str, Any]
    ) -> list[str]:
        account_id, api_key = self._credentials(settings)
        return self.fan_out(
            request.n, lambda: self._generate_single(request, model, account_id, api_key)
        )


provider_registry.register(CloudflareProvider)
