"""Small helpers shared by adapters and services.

Images move through Typix as data URIs (``data:image/png;base64,...``).
Provider adapters always inline remote result URLs before returning, so
nothing downstream depends on how long a provider keeps its URLs alive.
"""

from __future__ import annotations

import base64
import re
import secrets
import string
from datetime import datetime, timezone
from typing import Any

import requests
from pydantic.alias_generators import to_camel

_ID_ALPHABET = string.digits + string.ascii_letters
_DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[^;,]+)?(?:;base64)?,(?P<data>.*)$", re.DOTALL)


def generate_id(length: int = 16) -> str:
    """Return a random alphanumeric identifier."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the persisted timestamp format)."""
    return utc_now().isoformat()


def parse_iso(value: str) -> datetime:
    """Parse a persisted timestamp; naive values are treated as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def base64_to_data_uri(data: str, fmt: str = "png") -> str:
    return f"data:image/{fmt};base64,{data}"


def bytes_to_data_uri(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def split_data_uri(data_uri: str) -> tuple[str, str]:
    """Split a data URI into ``(mime_type, base64_payload)``.

    Raises:
        ValueError: If the value is not a data URI.
    """
    match = _DATA_URI_PATTERN.match(data_uri)
    if not match:
        raise ValueError("Invalid data URI format")
    return match.group("mime") or "image/png", match.group("data")


def data_uri_to_base64(data_uri: str) -> str:
    return split_data_uri(data_uri)[1]


def data_uri_to_bytes(data_uri: str) -> bytes:
    return base64.b64decode(data_uri_to_base64(data_uri))


def ensure_data_uri(value: str) -> str:
    """Accept either a data URI or a bare base64 payload (assumed PNG)."""
    if value.startswith("data:"):
        return value
    return base64_to_data_uri(value)


def fetch_url_to_data_uri(url: str, timeout: float = 60.0) -> str:
    """Download ``url`` and return its content as a data URI.

    Raises:
        requests.HTTPError: If the download fails.
    """
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    mime_type = response.headers.get("Content-Type", "image/png").split(";")[0].strip()
    if not mime_type.startswith("image/"):
        mime_type = "image/png"
    return bytes_to_data_uri(response.content, mime_type)


def camelize(row: dict[str, Any] | None) -> dict[str, Any] | None:
    """Rename snake_case keys to camelCase for API payloads."""
    if row is None:
        return None
    return {to_camel(key): value for key, value in row.items()}
