"""Typix - FastAPI Application.

This module defines the FastAPI application factory, all REST API routes,
and the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Chats and messages** are handled by
  :class:`~typix.core.chat_service.ChatService`. Creating a message only
  writes a ``pending`` generation record; the client starts the generation
  with a second call to ``createMessageGenerate`` and polls
  ``getGenerationStatus`` until it is terminal.
- **Provider settings** are per-user overrides managed by
  :class:`~typix.core.ai_service.AiService`.
- **Generation proxy**: providers that do not accept browser calls are
  called through ``/api/ai/no-auth/{providerId}/generate`` when Typix runs
  in the client runtime.
- **Files** are streamed from ``/api/files/preview/{fileId}``.

Authentication
--------------
The current user comes from the ``X-User-Id`` header. Without it, requests
run as ``TypixConfig.local_user_id`` unless ``auth_required`` is set, in
which case they are rejected with 401.

Endpoints
---------
========  ==========================================  ==============================
Method    Path                                        Purpose
========  ==========================================  ==============================
GET       ``/api/health``                             Version and runtime
POST      ``/api/chats/{operation}``                  Chat and message operations
POST      ``/api/ai/{operation}``                     Provider and model overrides
POST      ``/api/ai/no-auth/{providerId}/generate``   Server-side generation proxy
GET       ``/api/files/preview/{fileId}``             Stream a stored file
========  ==========================================  ==============================

Usage
-----
CLI (installed entry point)::

    typix

Direct invocation::

    python -m typix.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response

from typix import __version__
from typix.api.models import (
    ChatIdRequest,
    CreateChatRequest,
    CreateMessageRequest,
    GenerationIdRequest,
    MessageIdRequest,
    ProviderIdRequest,
    ProxyGenerateRequest,
    UpdateAiModelRequest,
    UpdateAiProviderRequest,
    UpdateChatRequest,
)
from typix.core.ai_service import AiService
from typix.core.chat_service import ChatService
from typix.core.config import TypixConfig, config
from typix.core.database import Database
from typix.core.errors import ConfigInvalidError, ErrorReason, ServiceException
from typix.core.file_storage import FileStorage
from typix.core.provider_adapters import GenerateResult, ProviderRegistry, provider_registry

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "not_found": 404,
    "invalid_parameter": 400,
    "unauthorized": 401,
    "forbidden": 403,
    "error": 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database and build the services stored on ``app.state``.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    app_config: TypixConfig = app.state.config
    registry: ProviderRegistry = app.state.registry

    db = Database(app_config.database_path)
    file_storage = FileStorage(db, app_config)
    ai_service = AiService(db, app_config, registry)
    app.state.db = db
    app.state.file_storage = file_storage
    app.state.ai_service = ai_service
    app.state.chat_service = ChatService(db, app_config, file_storage, ai_service, registry)
    logger.info(
        f"Typix {__version__} started ({app_config.runtime} runtime, "
        f"providers: {', '.join(registry.list_available())})"
    )

    yield

    logger.info("Typix stopped.")


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_user_id(request: Request, x_user_id: str | None = Header(default=None)) -> str:
    """Resolve the current user id from the ``X-User-Id`` header.

    Raises:
        HTTPException: 401 when the header is missing and auth is required.
    """
    if x_user_id:
        return x_user_id
    app_config: TypixConfig = request.app.state.config
    if app_config.auth_required:
        raise HTTPException(status_code=401, detail="Authentication required")
    return app_config.local_user_id


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_ai_service(request: Request) -> AiService:
    return request.app.state.ai_service


def get_file_storage(request: Request) -> FileStorage:
    return request.app.state.file_storage


async def service_exception_handler(request: Request, exc: ServiceException) -> JSONResponse:
    """Map a :class:`ServiceException` code onto an HTTP status."""
    status_code = STATUS_CODES.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": exc.message})


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    app_config: TypixConfig | None = None,
    registry: ProviderRegistry = provider_registry,
) -> FastAPI:
    """Build the Typix FastAPI application.

    Args:
        app_config: Configuration, defaults to the global ``config``.
        registry: Provider registry, defaults to the global registry.

    Returns:
        The configured application. Services are created on startup.
    """
    app = FastAPI(
        title="Typix",
        description="Chat-style AI image generation across third-party providers.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = app_config or config
    app.state.registry = registry

    # The client runtime calls the proxy endpoint cross-origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ServiceException, service_exception_handler)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # -- Health ---------------------------------------------------------------

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__, "runtime": app.state.config.runtime}

    # -- Chats ----------------------------------------------------------------

    @app.post("/api/chats/getChats")
    def get_chats(
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> list[dict[str, Any]]:
        return chats.get_chats(user_id)

    @app.post("/api/chats/createChat")
    def create_chat(
        req: CreateChatRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> dict[str, Any]:
        """Create a chat; with ``content``, also create its first message pair."""
        return chats.create_chat(
            user_id,
            title=req.title,
            provider=req.provider,
            model=req.model,
            content=req.content,
            image_count=req.image_count,
            aspect_ratio=req.aspect_ratio,
            attachments=req.reference_images(),
        )

    @app.post("/api/chats/getChatById")
    def get_chat_by_id(
        req: ChatIdRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> dict[str, Any]:
        chat = chats.get_chat_by_id(req.id, user_id)
        if chat is None:
            raise HTTPException(status_code=404, detail="Chat not found")
        return chat

    @app.post("/api/chats/updateChat")
    def update_chat(
        req: UpdateChatRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> bool:
        return chats.update_chat(
            req.id, user_id, title=req.title, provider=req.provider, model=req.model
        )

    @app.post("/api/chats/deleteChat")
    def delete_chat(
        req: ChatIdRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> bool:
        if not chats.delete_chat(req.id, user_id):
            raise HTTPException(status_code=404, detail="Chat not found")
        return True

    @app.post("/api/chats/createMessage")
    def create_message(
        req: CreateMessageRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> dict[str, Any]:
        """Create a user message and a pending assistant placeholder.

        The generation is not started here; call ``createMessageGenerate``
        with the returned generation id.
        """
        return chats.create_message(
            user_id,
            chat_id=req.chat_id,
            content=req.content,
            provider=req.provider,
            model=req.model,
            image_count=req.image_count,
            aspect_ratio=req.aspect_ratio,
            attachments=req.reference_images(),
            message_type=req.type,
        )

    @app.post("/api/chats/deleteMessage")
    def delete_message(
        req: MessageIdRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> bool:
        return chats.delete_message(req.message_id, user_id)

    @app.post("/api/chats/getGenerationStatus")
    def get_generation_status(
        req: GenerationIdRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> dict[str, Any]:
        status = chats.get_generation_status(req.generation_id, user_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Generation not found")
        return status

    @app.post("/api/chats/createMessageGenerate")
    def create_message_generate(
        req: GenerationIdRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> dict[str, Any]:
        """Run a pending generation to completion.

        The handler blocks for the duration of the provider call; clients
        treat it as fire-and-forget and observe the result by polling.
        """
        return chats.create_message_generate(req.generation_id, user_id)

    @app.post("/api/chats/regenerateMessage")
    def regenerate_message(
        req: MessageIdRequest,
        user_id: str = Depends(get_user_id),
        chats: ChatService = Depends(get_chat_service),
    ) -> dict[str, Any]:
        return chats.regenerate_message(req.message_id, user_id)

    # -- AI providers ---------------------------------------------------------

    @app.post("/api/ai/getAiProviders")
    def get_ai_providers(
        user_id: str = Depends(get_user_id),
        ai: AiService = Depends(get_ai_service),
    ) -> list[dict[str, Any]]:
        return ai.get_ai_providers(user_id)

    @app.post("/api/ai/getAiProviderById")
    def get_ai_provider_by_id(
        req: ProviderIdRequest,
        user_id: str = Depends(get_user_id),
        ai: AiService = Depends(get_ai_service),
    ) -> dict[str, Any]:
        return ai.get_ai_provider_by_id(req.provider_id, user_id)

    @app.post("/api/ai/getEnabledAiProvidersWithModels")
    def get_enabled_ai_providers_with_models(
        user_id: str = Depends(get_user_id),
        ai: AiService = Depends(get_ai_service),
    ) -> list[dict[str, Any]]:
        return ai.get_enabled_ai_providers_with_models(user_id)

    @app.post("/api/ai/updateAiProvider")
    def update_ai_provider(
        req: UpdateAiProviderRequest,
        user_id: str = Depends(get_user_id),
        ai: AiService = Depends(get_ai_service),
    ) -> bool:
        ai.update_ai_provider(req.provider_id, user_id, enabled=req.enabled, settings=req.settings)
        return True

    @app.post("/api/ai/getAiModelsByProviderId")
    def get_ai_models_by_provider_id(
        req: ProviderIdRequest,
        user_id: str = Depends(get_user_id),
        ai: AiService = Depends(get_ai_service),
    ) -> list[dict[str, Any]]:
        return ai.get_ai_models_by_provider_id(req.provider_id, user_id)

    @app.post("/api/ai/updateAiModel")
    def update_ai_model(
        req: UpdateAiModelRequest,
        user_id: str = Depends(get_user_id),
        ai: AiService = Depends(get_ai_service),
    ) -> bool:
        ai.update_ai_model(req.provider_id, req.model_id, req.enabled, user_id)
        return True

    @app.post("/api/ai/no-auth/{provider_id}/generate")
    def proxy_generate(provider_id: str, req: ProxyGenerateRequest) -> dict[str, Any]:
        """Call a provider on behalf of a client-runtime caller.

        The adapter is always called directly here, never through the
        proxy again. Invalid settings come back as ``CONFIG_INVALID`` data.
        """
        adapter = app.state.registry.get_provider_by_id(provider_id)(app.state.config)
        try:
            result = adapter.generate(req.request, req.settings)
        except ConfigInvalidError as e:
            logger.warning(f"Proxied {provider_id} request has invalid settings: {e.message}")
            result = GenerateResult(images=[], error_reason=ErrorReason.CONFIG_INVALID)
        return result.model_dump(mode="json", by_alias=True)

    # -- Files ----------------------------------------------------------------

    @app.get("/api/files/preview/{file_id}")
    def preview_file(
        file_id: str,
        request: Request,
        user_id: str = Depends(get_user_id),
        files: FileStorage = Depends(get_file_storage),
    ) -> Response:
        """Stream a stored file owned by the current user.

        Files are immutable, so the file id doubles as the ETag.
        """
        metadata = files.get_file_metadata(file_id, user_id)
        if metadata is None:
            raise HTTPException(status_code=404, detail="File not found")

        if metadata["protocol"] in ("http:", "https:"):
            return RedirectResponse(metadata["access_url"])

        etag = f'"{file_id}"'
        headers = {"ETag": etag, "Cache-Control": "private, max-age=31536000, immutable"}
        if request.headers.get("if-none-match") == etag:
            return Response(status_code=304, headers=headers)

        content = files.read_file(file_id, user_id)
        if content is None:
            raise HTTPException(status_code=404, detail="File not found")
        data, media_type = content
        return Response(content=data, media_type=media_type, headers=headers)


# ---------------------------------------------------------------------------
# Module-level application and CLI entry point.
# ---------------------------------------------------------------------------

app = create_app()


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~typix.core.config.config` (which loads
    from ``TYPIX_SERVER_HOST`` and ``TYPIX_SERVER_PORT`` environment
    variables). Defaults to ``0.0.0.0:8787``.

    This function is registered as the ``typix`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "typix.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
