"""Base classes and registry for image-generation provider adapters.

This module provides the foundation for supporting multiple third-party
image-generation APIs in Typix. Each provider (OpenAI, Cloudflare, Google,
Flux, Fal) has its own adapter that implements a common interface while
handling provider-specific request shapes, authentication and error codes.

Provider Adapter Pattern
------------------------
Each adapter encapsulates:
- A compiled-in list of models with their ability (t2i or i2i)
- A declarative settings schema (API keys, base URLs, ...)
- Request normalization (ability downgrade, reference image truncation)
- Error classification into :class:`~typix.core.errors.ErrorReason`

Abilities
---------
- **t2i**: text-to-image, never receives reference images
- **i2i**: image-to-image; a request without reference images is silently
  downgraded to t2i behaviour

Usage Example
-------------
    >>> from typix.core.provider_adapters import provider_registry, GenerateRequest
    >>> from typix.core.config import config
    >>>
    >>> provider_registry.list_available()
    ['cloudflare', 'google', 'openai', 'flux', 'fal']
    >>>
    >>> adapter = provider_registry.instantiate("openai", config)
    >>> result = adapter.generate(
    ...     GenerateRequest(provider_id="openai", model_id="gpt-image-1", prompt="a cat", n=2),
    ...     {"apiKey": "sk-..."},
    ... )
    >>> result.error_reason, len(result.images)
    (None, 2)

Error Handling
--------------
Adapters raise :class:`~typix.core.errors.GenerationError` for failures the
user can act on; :meth:`ProviderAdapterBase.generate` turns those into
``GenerateResult.error_reason``. Settings validation raises
:class:`~typix.core.errors.ConfigInvalidError` before any network call.
Anything else propagates to the caller.

See Also
--------
- typix.core.adapters: Concrete provider implementations
- typix.core.generation: The executor that drives adapters
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import requests
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import TypixConfig
from .errors import ConfigInvalidError, ErrorReason, GenerationError, ServiceException

logger = logging.getLogger(__name__)

Ability = Literal["t2i", "i2i"]
AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4"]
SettingsType = Literal["string", "password", "url", "number", "boolean"]
SettingsValue = str | int | float | bool

ASPECT_RATIOS: tuple[str, ...] = ("1:1", "16:9", "9:16", "4:3", "3:4")

COMMON_ASPECT_RATIO_SIZES: dict[str, tuple[int, int]] = {
    "1:1": (1024, 1024),
    "16:9": (1920, 1080),
    "9:16": (1080, 1920),
    "4:3": (1600, 1200),
    "3:4": (1200, 1600),
}

_TRUE_STRINGS = {"true", "1", "yes"}
_FALSE_STRINGS = {"false", "0", "no"}


@dataclass(frozen=True)
class AiModel:
    """A model offered by a provider.

    Attributes:
        id: Provider-side model identifier
        name: Display name
        ability: ``"t2i"`` or ``"i2i"``
        max_input_images: Maximum reference images for i2i models
        enabled_by_default: Enabled when the user has no override
        supported_aspect_ratios: Aspect ratios the UI may offer, or None
        input_type: Request encoding (only Cloudflare distinguishes JSON/FormData)
    """

    id: str
    name: str
    ability: Ability
    max_input_images: int = 1
    enabled_by_default: bool = True
    supported_aspect_ratios: tuple[str, ...] | None = None
    input_type: Literal["JSON", "FormData"] = "JSON"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ability": self.ability,
            "maxInputImages": self.max_input_images,
            "enabledByDefault": self.enabled_by_default,
            "supportedAspectRatios": (
                list(self.supported_aspect_ratios) if self.supported_aspect_ratios else None
            ),
        }


@dataclass(frozen=True)
class SettingsField:
    """One field of a provider settings schema.

    The same list of fields drives validation here and form rendering in the
    UI; nothing in this class knows about the UI.
    """

    key: str
    type: SettingsType
    required: bool
    default: SettingsValue | None = None
    options: tuple[str, ...] | None = None
    min: float | None = None
    max: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if "default" in data:
            data["defaultValue"] = data.pop("default")
        if "options" in data:
            data["options"] = list(data["options"])
        return data


class GenerateRequest(BaseModel):
    """Normalized generation request handed to an adapter."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    provider_id: str
    model_id: str
    prompt: str
    images: list[str] | None = Field(default=None, description="Reference images as data URIs")
    n: int = Field(default=1, ge=1)
    aspect_ratio: AspectRatio | None = None


class GenerateResult(BaseModel):
    """Adapter output: inline data-URI images, or a classified failure."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    images: list[str] = Field(default_factory=list)
    error_reason: ErrorReason | None = None


def parse_settings(raw: dict[str, Any] | None, schema: list[SettingsField]) -> dict[str, Any]:
    """Validate and coerce raw settings against a schema.

    Args:
        raw: User-supplied key/value map (may be None)
        schema: Settings fields to validate against

    Returns:
        Dictionary of typed values; absent fields carry their declared default

    Raises:
        ConfigInvalidError: On a missing required field without a default, a
            type mismatch, a value outside ``options`` or outside ``min``/``max``
    """
    raw = raw or {}
    result: dict[str, Any] = {}

    for item in schema:
        value = raw.get(item.key)
        missing = value is None or value == ""

        if missing:
            if item.default is not None:
                result[item.key] = item.default
            elif item.required:
                raise ConfigInvalidError(f"Missing required setting: {item.key}")
            continue

        if item.type in ("string", "password", "url"):
            if not isinstance(value, str):
                raise ConfigInvalidError(
                    f"Setting '{item.key}' must be a string, got {type(value).__name__}"
                )
            trimmed = value.strip()
            if item.required and not trimmed:
                raise ConfigInvalidError(f"Setting '{item.key}' cannot be empty")
            if item.options and trimmed not in item.options:
                raise ConfigInvalidError(
                    f"Setting '{item.key}' must be one of {list(item.options)}, got '{trimmed}'"
                )
            result[item.key] = trimmed

        elif item.type == "number":
            if isinstance(value, bool):
                raise ConfigInvalidError(f"Setting '{item.key}' must be a valid number, got '{value}'")
            try:
                number = value if isinstance(value, int | float) else float(value)
            except (TypeError, ValueError):
                raise ConfigInvalidError(
                    f"Setting '{item.key}' must be a valid number, got '{value}'"
                ) from None
            if number != number:  # NaN
                raise ConfigInvalidError(f"Setting '{item.key}' must be a valid number, got '{value}'")
            if item.min is not None and number < item.min:
                raise ConfigInvalidError(f"Setting '{item.key}' must be at least {item.min}, got {number}")
            if item.max is not None and number > item.max:
                raise ConfigInvalidError(f"Setting '{item.key}' must be at most {item.max}, got {number}")
            result[item.key] = number

        elif item.type == "boolean":
            if isinstance(value, bool):
                result[item.key] = value
            elif isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS:
                result[item.key] = True
            elif isinstance(value, str) and value.strip().lower() in _FALSE_STRINGS:
                result[item.key] = False
            else:
                raise ConfigInvalidError(f"Setting '{item.key}' must be a boolean value, got '{value}'")

        else:
            raise ConfigInvalidError(f"Unknown setting type: {item.type}")

    return result


def choose_ability(request: GenerateRequest, ability: Ability) -> Ability:
    """Resolve the effective ability for a request.

    An i2i model without reference images behaves as t2i.
    """
    if ability == "t2i":
        return "t2i"
    if not request.images:
        return "t2i"
    return "i2i"


class ProviderAdapterBase(ABC):
    """Abstract base class for all provider adapters.

    Subclasses declare their identity and models as class attributes and
    implement :meth:`_generate`. The public :meth:`generate` validates
    settings, normalizes the request and converts classified failures into
    data.

    Attributes
    ----------
    id : str
        Stable provider identifier (persisted in user overrides)
    name : str
        Display name
    supports_cors : bool
        Whether the provider API accepts direct calls from a browser-like
        client context
    enabled_by_default : bool
        Enabled when the user has no override
    models : tuple[AiModel, ...]
        Compiled-in models
    settings_schema : tuple[SettingsField, ...]
        Default settings schema (see :meth:`settings`)
    config : TypixConfig
        Configuration object

    Examples
    --------
        >>> class EchoProvider(ProviderAdapterBase):
        ...     id = "echo"
        ...     name = "Echo"
        ...     models = (AiModel(id="echo-1", name="Echo 1", ability="t2i"),)
        ...
        ...     def _generate(self, request, model, settings):
        ...         return ["data:image/png;base64,AAAA"] * request.n
        >>>
        >>> provider_registry.register(EchoProvider)
    """

    id: str = "base"
    name: str = "Base Provider"
    supports_cors: bool = False
    enabled_by_default: bool = True
    models: tuple[AiModel, ...] = ()
    settings_schema: tuple[SettingsField, ...] = ()

    def __init__(self, config: TypixConfig) -> None:
        self.config = config

    def settings(self) -> list[SettingsField]:
        """Return the settings schema for the current deployment."""
        return list(self.settings_schema)

    def parse_settings(self, raw: dict[str, Any] | None) -> dict[str, Any]:
        """Validate raw settings against :meth:`settings`.

        Raises:
            ConfigInvalidError: If the settings do not satisfy the schema
        """
        return parse_settings(raw, self.settings())

    def find_model(self, model_id: str) -> AiModel:
        """Return the model with ``model_id``.

        Raises:
            ServiceException: ``not_found`` if the model is unknown
        """
        for model in self.models:
            if model.id == model_id:
                return model
        raise ServiceException("not_found", f"Model {model_id} not found for provider {self.id}")

    def normalize_request(self, request: GenerateRequest, model: AiModel) -> GenerateRequest:
        """Apply ability resolution and the reference image limit.

        t2i requests never carry images; i2i requests carry at most
        ``model.max_input_images`` images.
        """
        if choose_ability(request, model.ability) == "t2i":
            if request.images:
                logger.debug(f"{self.id}/{model.id}: dropping reference images for t2i")
            return request.model_copy(update={"images": None})

        images = request.images or []
        if len(images) > model.max_input_images:
            logger.debug(
                f"{self.id}/{model.id}: truncating {len(images)} reference images "
                f"to {model.max_input_images}"
            )
            images = images[: model.max_input_images]
        return request.model_copy(update={"images": images})

    def generate(self, request: GenerateRequest, settings: dict[str, Any] | None) -> GenerateResult:
        """Generate images for ``request``.

        Args:
            request: Generation request (data-URI reference images, count, aspect ratio)
            settings: Raw provider settings

        Returns:
            GenerateResult with inline data-URI images, or an ``error_reason``
            for a classified provider failure

        Raises:
            ConfigInvalidError: If ``settings`` fail validation
            ServiceException: If the model is unknown
            Exception: Any unclassified provider or transport failure
        """
        typed_settings = self.parse_settings(settings)
        model = self.find_model(request.model_id)
        request = self.normalize_request(request, model)

        try:
            images = self._generate(request, model, typed_settings)
        except GenerationError as e:
            logger.warning(f"{self.id}/{model.id} generation failed: {e.reason.value} ({e})")
            return GenerateResult(images=[], error_reason=e.reason)

        logger.info(f"{self.id}/{model.id} generated {len(images)} image(s)")
        return GenerateResult(images=images)

    @abstractmethod
    def _generate(
        self, request: GenerateRequest, model: AiModel, settings: dict[str, Any]
    ) -> list[str]:
        """Call the provider and return data-URI images.

        Args:
            request: Normalized request
            model: Resolved model
            settings: Validated settings from :meth:`parse_settings`

        Raises:
            GenerationError: For failures classified into an ErrorReason
        """

    def fan_out(self, count: int, call: Callable[[], list[str]]) -> list[str]:
        """Run ``call`` ``count`` times in parallel and flatten the results.

        Used by providers whose API has no native image-count parameter.
        Result order follows completion of the submitted calls, not any
        ranking. The first failure is re-raised.
        """
        if count <= 1:
            return call()

        with ThreadPoolExecutor(max_workers=count) as executor:
            futures = [executor.submit(call) for _ in range(count)]
            results = [future.result() for future in futures]
        return [image for batch in results for image in batch]

    def get_provider_info(self) -> dict[str, Any]:
        """Get information about this provider.

        Returns
        -------
        dict[str, Any]
            Dictionary containing provider metadata, models and settings schema
        """
        return {
            "id": self.id,
            "name": self.name,
            "supportCors": self.supports_cors,
            "enabledByDefault": self.enabled_by_default,
            "models": [model.to_dict() for model in self.models],
            "settings": [item.to_dict() for item in self.settings()],
        }


class CorsProxyAdapter:
    """Route ``generate`` through the server for providers without CORS support.

    Everything except :meth:`generate` is delegated to the wrapped adapter, so
    callers of the registry never branch on the execution context.
    """

    def __init__(self, adapter: ProviderAdapterBase, config: TypixConfig) -> None:
        self._adapter = adapter
        self._config = config

    def __getattr__(self, name: str) -> Any:
        return getattr(self._adapter, name)

    def generate(self, request: GenerateRequest, settings: dict[str, Any] | None) -> GenerateResult:
        url = f"{self._config.server_url.rstrip('/')}/api/ai/no-auth/{self._adapter.id}/generate"
        logger.info(f"Proxying {self._adapter.id} generation through {url}")

        response = requests.post(
            url,
            json={"request": request.model_dump(by_alias=True), "settings": settings or {}},
            timeout=self._config.request_timeout,
        )
        if not response.ok:
            raise ServiceException(
                "error",
                f"Failed to generate with provider {self._adapter.id}: "
                f"{response.status_code} {response.reason}",
            )
        return GenerateResult.model_validate(response.json())


class ProviderRegistry:
    """Registry for the compiled-in provider adapters.

    The registry maintains registered adapter classes in registration order;
    the first registered provider is the default.

    Usage
    -----
        >>> from typix.core.provider_adapters import provider_registry
        >>> adapter = provider_registry.instantiate("flux", config)
        >>> provider_registry.get_model_by_id("flux", "flux-dev").ability
        't2i'

    Notes
    -----
    - Unknown ids raise ``ServiceException("not_found")``. Ids only come from
      validated requests or compiled configuration, so this signals a
      programming error rather than bad user input.
    - In the client runtime, adapters without CORS support are wrapped in a
      :class:`CorsProxyAdapter`.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, type[ProviderAdapterBase]] = {}

    def register(self, adapter_class: type[ProviderAdapterBase]) -> type[ProviderAdapterBase]:
        """Register a provider adapter class.

        Args:
            adapter_class: Provider adapter class to register

        Returns:
            The class itself, so this can be used as a decorator
        """
        provider_id = adapter_class.id

        if provider_id in self._adapters:
            logger.warning(f"Provider adapter '{provider_id}' is already registered, overwriting")

        self._adapters[provider_id] = adapter_class
        logger.info(f"Registered provider adapter: {provider_id}")
        return adapter_class

    def get_provider_by_id(self, provider_id: str) -> type[ProviderAdapterBase]:
        """Get the adapter class for a provider id.

        Raises:
            ServiceException: ``not_found`` if ``provider_id`` is not registered
        """
        adapter_class = self._adapters.get(provider_id)
        if adapter_class is None:
            raise ServiceException("not_found", "AI provider not found in system")
        return adapter_class

    def get_model_by_id(self, provider_id: str, model_id: str) -> AiModel:
        """Resolve a model of a registered provider.

        Raises:
            ServiceException: ``not_found`` for an unknown provider or model
        """
        adapter_class = self.get_provider_by_id(provider_id)
        for model in adapter_class.models:
            if model.id == model_id:
                return model
        raise ServiceException("not_found", f"Model {model_id} not found in provider {provider_id}")

    def instantiate(
        self, provider_id: str, config: TypixConfig
    ) -> ProviderAdapterBase | CorsProxyAdapter:
        """Create an adapter for ``provider_id``.

        Args:
            provider_id: Registered provider id
            config: Configuration object

        Returns:
            The adapter, wrapped for proxying when running in the client
            runtime and the provider does not support CORS
        """
        adapter = self.get_provider_by_id(provider_id)(config)
        if config.runtime == "client" and not adapter.supports_cors:
            return CorsProxyAdapter(adapter, config)
        return adapter

    def get_default_provider(self) -> type[ProviderAdapterBase]:
        if not self._adapters:
            raise ServiceException("not_found", "No AI providers registered")
        return next(iter(self._adapters.values()))

    def providers(self) -> list[type[ProviderAdapterBase]]:
        """List registered adapter classes in registration order."""
        return list(self._adapters.values())

    def list_available(self) -> list[str]:
        """List all registered provider ids."""
        return list(self._adapters.keys())


# Global provider registry instance
provider_registry = ProviderRegistry()
