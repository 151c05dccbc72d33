"""Shared pytest fixtures for Typix tests."""

import base64
import shutil
import tempfile
from collections.abc import Callable
from io import BytesIO
from pathlib import Path
from typing import Any, Generator
from unittest.mock import MagicMock

import pytest
import requests
from PIL import Image

from typix.core.ai_service import AiService
from typix.core.chat_service import ChatService
from typix.core.config import TypixConfig
from typix.core.database import Database
from typix.core.errors import ErrorReason, GenerationError
from typix.core.file_storage import FileStorage
from typix.core.provider_adapters import (
    AiModel,
    GenerateRequest,
    ProviderAdapterBase,
    ProviderRegistry,
    SettingsField,
)


def _png_bytes(color: str = "red") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (2, 2), color).save(buffer, format="PNG")
    return buffer.getvalue()


PNG_BYTES = _png_bytes()
PNG_DATA_URI = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")


class FakeProvider(ProviderAdapterBase):
    """In-memory provider recording every call it receives.

    Behaviour is switched through class attributes, since the registry
    creates a fresh instance for every generation.
    """

    id = "fake"
    name = "Fake"
    supports_cors = True
    models = (
        AiModel(id="fake-t2i", name="Fake T2I", ability="t2i"),
        AiModel(id="fake-i2i", name="Fake I2I", ability="i2i", max_input_images=2),
        AiModel(id="fake-hidden", name="Fake Hidden", ability="t2i", enabled_by_default=False),
    )
    settings_schema = (
        SettingsField(key="apiKey", type="password", required=False),
        SettingsField(key="steps", type="number", required=False, default=4, min=1, max=50),
    )

    calls: list[tuple[GenerateRequest, dict[str, Any]]] = []
    reason: ErrorReason | None = None
    error: Exception | None = None

    def _generate(self, request, model, settings):
        type(self).calls.append((request, settings))
        if self.error is not None:
            raise self.error
        if self.reason is not None:
            raise GenerationError(self.reason)
        return [PNG_DATA_URI] * request.n


class NoCorsProvider(FakeProvider):
    id = "fake-nocors"
    name = "Fake (no CORS)"
    supports_cors = False


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> TypixConfig:
    """Create a test configuration with a temporary database.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        TypixConfig instance for testing
    """
    return TypixConfig(
        runtime="server",
        server_url="http://typix.test",
        database_path=temp_dir / "typix.db",
        file_storage="base64",
        file_storage_dir=temp_dir / "files",
        generation_stale_minutes=5,
        poll_initial_delay=0,
        poll_interval=0,
    )


@pytest.fixture
def fake_provider() -> Generator[type[FakeProvider], None, None]:
    """The fake provider class with its recorded calls and switches reset."""
    FakeProvider.calls = []
    FakeProvider.reason = None
    FakeProvider.error = None
    yield FakeProvider
    FakeProvider.calls = []
    FakeProvider.reason = None
    FakeProvider.error = None


@pytest.fixture
def png_data_uri() -> str:
    """A valid 2x2 PNG as a data URI."""
    return PNG_DATA_URI


@pytest.fixture
def no_cors_provider(fake_provider: type[FakeProvider]) -> type[NoCorsProvider]:
    """Fake provider that needs the server proxy in the client runtime."""
    return NoCorsProvider


@pytest.fixture
def registry(fake_provider: type[FakeProvider]) -> ProviderRegistry:
    """Isolated registry holding the fake providers."""
    reg = ProviderRegistry()
    reg.register(fake_provider)
    reg.register(NoCorsProvider)
    return reg


@pytest.fixture
def db(test_config: TypixConfig) -> Database:
    return Database(test_config.database_path)


@pytest.fixture
def file_storage(db: Database, test_config: TypixConfig) -> FileStorage:
    return FileStorage(db, test_config)


@pytest.fixture
def ai_service(db: Database, test_config: TypixConfig, registry: ProviderRegistry) -> AiService:
    return AiService(db, test_config, registry)


@pytest.fixture
def chat_service(
    db: Database,
    test_config: TypixConfig,
    file_storage: FileStorage,
    ai_service: AiService,
    registry: ProviderRegistry,
) -> ChatService:
    return ChatService(db, test_config, file_storage, ai_service, registry)


@pytest.fixture
def test_client(test_config: TypixConfig, registry: ProviderRegistry):
    """FastAPI TestClient bound to a temporary database and the fake registry.

    The client is used as a context manager so the application lifespan
    (which builds the services) runs.
    """
    from fastapi.testclient import TestClient

    from typix.api.main import create_app

    app = create_app(test_config, registry)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def mock_response() -> Callable[..., MagicMock]:
    """Factory for ``requests.Response`` stand-ins.

    Returns:
        Callable accepting ``status_code``, ``json_data``, ``content``,
        ``headers`` and ``text``
    """

    def _make(
        status_code: int = 200,
        json_data: Any = None,
        content: bytes = b"",
        headers: dict[str, str] | None = None,
        text: str = "",
    ) -> MagicMock:
        response = MagicMock(spec=requests.Response)
        response.status_code = status_code
        response.ok = status_code < 400
        response.reason = "OK" if status_code < 400 else "Error"
        response.content = content
        response.headers = headers or {}
        response.text = text
        if json_data is None:
            response.json.side_effect = ValueError("No JSON")
        else:
            response.json.return_value = json_data
        if status_code >= 400:
            response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
        else:
            response.raise_for_status.return_value = None
        return response

    return _make
