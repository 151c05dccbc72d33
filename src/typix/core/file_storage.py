"""File store for generated images and user attachments.

Files are rows in the ``files`` table plus a storage backend:

- **base64**: the data URI itself is stored in ``url`` (no external storage)
- **disk**: the decoded bytes are written below ``file_storage_dir`` and
  ``url`` holds a ``file://`` URI. Each user gets one directory, named after
  the user id when it is a plain name and after its SHA-256 digest otherwise

Every lookup is filtered by user id, so a user can never resolve another
user's file id.
"""

from __future__ import annotations

import hashlib
import logging
import re
from io import BytesIO
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from urllib.request import url2pathname

from PIL import Image, UnidentifiedImageError

from typix.core.config import TypixConfig
from typix.core.database import Database
from typix.core.errors import ServiceException
from typix.core.util import (
    bytes_to_data_uri,
    data_uri_to_bytes,
    ensure_data_uri,
    fetch_url_to_data_uri,
    generate_id,
    now_iso,
    split_data_uri,
)

logger = logging.getLogger(__name__)

_PLAIN_SEGMENT = re.compile(r"[A-Za-z0-9_-]{1,64}")

# Pillow format name -> (file suffix, mime type)
_FORMATS = {
    "PNG": ("png", "image/png"),
    "JPEG": ("jpg", "image/jpeg"),
    "WEBP": ("webp", "image/webp"),
    "GIF": ("gif", "image/gif"),
}
_SUFFIX_MIME = {suffix: mime for suffix, mime in _FORMATS.values()} | {"jpeg": "image/jpeg"}


def sniff_image(data: bytes, fallback_mime: str = "image/png") -> tuple[str, str]:
    """Identify an image payload.

    Args:
        data: Raw image bytes
        fallback_mime: Mime type to use when Pillow cannot identify the data

    Returns:
        Tuple of (file suffix, mime type)
    """
    try:
        with Image.open(BytesIO(data)) as image:
            fmt = image.format
    except UnidentifiedImageError:
        fmt = None

    if fmt in _FORMATS:
        return _FORMATS[fmt]
    subtype = fallback_mime.split("/")[-1]
    return subtype, fallback_mime


class FileStorage:
    """Save and resolve files for a user."""

    def __init__(self, db: Database, config: TypixConfig) -> None:
        self.db = db
        self.config = config
        # The client runtime keeps everything inline
        self.storage = "base64" if config.runtime == "client" else config.file_storage

    def _user_dir(self, user_id: str) -> Path:
        """Directory holding ``user_id``'s files, always inside ``file_storage_dir``."""
        segment = user_id
        if not _PLAIN_SEGMENT.fullmatch(user_id):
            segment = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
        root = self.config.file_storage_dir.resolve()
        user_dir = (root / segment).resolve()
        if user_dir.parent != root:
            raise ServiceException("invalid_parameter", f"Invalid user id for file storage: {user_id!r}")
        return user_dir

    def _save_disk(self, file_id: str, data_uri: str, user_id: str) -> str:
        mime_type, _ = split_data_uri(data_uri)
        raw = data_uri_to_bytes(data_uri)
        suffix, _ = sniff_image(raw, mime_type)

        user_dir = self._user_dir(user_id)
        user_dir.mkdir(parents=True, exist_ok=True)
        path = user_dir / f"{file_id}.{suffix}"
        path.write_bytes(raw)
        return path.as_uri()

    def save_files(self, file_datas: list[str], user_id: str) -> list[str]:
        """Persist files and return their ids in input order.

        Args:
            file_datas: Data URIs (bare base64 payloads are accepted as PNG)
            user_id: Owner of the new files

        Returns:
            List of new file ids
        """
        file_ids: list[str] = []
        now = now_iso()
        with self.db.connect() as conn:
            for file_data in file_datas:
                file_id = generate_id()
                data_uri = ensure_data_uri(file_data)
                if self.storage == "disk":
                    url = self._save_disk(file_id, data_uri, user_id)
                else:
                    url = data_uri
                conn.execute(
                    "INSERT INTO files (id, user_id, storage, url, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (file_id, user_id, self.storage, url, now, now),
                )
                file_ids.append(file_id)

        logger.debug(f"Saved {len(file_ids)} file(s) for user {user_id} ({self.storage})")
        return file_ids

    def get_file_metadata(self, file_id: str, user_id: str) -> dict[str, Any] | None:
        """Look up a file owned by ``user_id``.

        Returns:
            Dictionary with ``file``, ``protocol`` and ``access_url``, or None
        """
        file = self.db.fetch_one(
            "SELECT * FROM files WHERE id = ? AND user_id = ?",
            (file_id, user_id),
        )
        if not file or not file["url"]:
            return None

        access_url = file["url"]
        protocol = urlparse(access_url).scheme + ":"
        return {"file": file, "protocol": protocol, "access_url": access_url}

    def get_file_data(self, file_id: str, user_id: str) -> str | None:
        """Return a file as an inline data URI, or None if not accessible."""
        metadata = self.get_file_metadata(file_id, user_id)
        if not metadata:
            return None

        if metadata["protocol"] == "data:":
            return metadata["access_url"]
        if metadata["protocol"] == "file:":
            raw, mime_type = self._read_disk(metadata["access_url"])
            return bytes_to_data_uri(raw, mime_type)
        return fetch_url_to_data_uri(metadata["access_url"], timeout=self.config.request_timeout)

    def get_file_url(self, file_id: str, user_id: str) -> str | None:
        """Return a URL the caller can display, or None if not accessible."""
        metadata = self.get_file_metadata(file_id, user_id)
        if not metadata:
            return None

        if self.config.runtime == "client":
            return metadata["access_url"]
        return f"/api/files/preview/{file_id}"

    def read_file(self, file_id: str, user_id: str) -> tuple[bytes, str] | None:
        """Return ``(content, content_type)`` for streaming a stored file.

        Remote URLs are not read here; callers redirect to them instead.
        """
        metadata = self.get_file_metadata(file_id, user_id)
        if not metadata:
            return None

        if metadata["protocol"] == "data:":
            mime_type, _ = split_data_uri(metadata["access_url"])
            return data_uri_to_bytes(metadata["access_url"]), mime_type
        if metadata["protocol"] == "file:":
            return self._read_disk(metadata["access_url"])
        return None

    @staticmethod
    def _read_disk(file_uri: str) -> tuple[bytes, str]:
        path = Path(url2pathname(urlparse(file_uri).path))
        suffix = path.suffix.lstrip(".").lower()
        return path.read_bytes(), _SUFFIX_MIME.get(suffix, f"image/{suffix}")
