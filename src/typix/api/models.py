"""Pydantic request models for the Typix API.

These models define the JSON schema for every API endpoint. FastAPI uses
them for automatic request validation and OpenAPI documentation. Field
names are snake_case in Python and camelCase on the wire.

Models
------
CreateChatRequest
    Payload for ``POST /api/chats/createChat``, optionally carrying the
    first prompt.
CreateMessageRequest
    Payload for ``POST /api/chats/createMessage``.
UpdateChatRequest, UpdateAiProviderRequest, UpdateAiModelRequest
    Mutations of chats and per-user provider/model overrides.
ProxyGenerateRequest
    Payload for ``POST /api/ai/no-auth/{providerId}/generate``.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from typix.core.provider_adapters import AspectRatio, GenerateRequest


class ApiModel(BaseModel):
    """Base model accepting both camelCase and snake_case field names."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )


class Attachment(ApiModel):
    """A user-supplied reference image."""

    data: str = Field(..., description="Data URI or bare base64 payload.")
    type: Literal["image"] = "image"


class _GenerationOptions(ApiModel):
    image_count: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Number of images to generate (1-10).",
    )
    aspect_ratio: AspectRatio | None = Field(
        default=None,
        description="Aspect ratio for generation, if the model supports it.",
    )
    attachments: list[Attachment] | None = Field(
        default=None,
        description="Reference images attached to the user message.",
    )
    images: list[str] | None = Field(
        default=None,
        description="Deprecated: data URI reference images; use attachments.",
    )

    def reference_images(self) -> list[str] | None:
        """Attachment payloads, followed by any legacy ``images``."""
        data = [attachment.data for attachment in self.attachments or []]
        data.extend(self.images or [])
        return data or None


class CreateChatRequest(_GenerationOptions):
    """Request body for ``POST /api/chats/createChat``.

    Attributes:
        title: Chat title.
        provider: Provider id of the chat's current model.
        model: Model id within ``provider``.
        content: Optional first prompt. When given, the first message pair
            and its pending generation are created in the same call.
    """

    title: str = Field(default="New Chat", description="Chat title.")
    provider: str = Field(..., description="Provider id (e.g. 'openai').")
    model: str = Field(..., description="Model id (e.g. 'gpt-image-1').")
    content: str | None = Field(default=None, description="Optional first prompt.")


class CreateMessageRequest(_GenerationOptions):
    """Request body for ``POST /api/chats/createMessage``."""

    chat_id: str = Field(..., min_length=1)
    content: str
    type: Literal["text", "image"] = "text"
    provider: str
    model: str


class ChatIdRequest(ApiModel):
    id: str = Field(..., min_length=1)


class UpdateChatRequest(ApiModel):
    id: str = Field(..., min_length=1)
    title: str | None = None
    provider: str | None = None
    model: str | None = None


class MessageIdRequest(ApiModel):
    message_id: str = Field(..., min_length=1)


class GenerationIdRequest(ApiModel):
    generation_id: str = Field(..., min_length=1)


class ProviderIdRequest(ApiModel):
    provider_id: str = Field(..., min_length=1)


class UpdateAiProviderRequest(ApiModel):
    """Request body for ``POST /api/ai/updateAiProvider``.

    Attributes:
        provider_id: Provider to override.
        enabled: New enabled flag; unchanged when omitted.
        settings: Raw settings, validated against the provider schema.
    """

    provider_id: str = Field(..., min_length=1)
    enabled: bool | None = None
    settings: dict[str, Any] | None = None


class UpdateAiModelRequest(ApiModel):
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)
    enabled: bool


class ProxyGenerateRequest(ApiModel):
    """Request body for the server-side generation proxy."""

    request: GenerateRequest
    settings: dict[str, Any] = Field(default_factory=dict)
