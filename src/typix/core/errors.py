"""Exception types and the generation error taxonomy.

Three kinds of failure flow through Typix:

- :class:`ServiceException`: a service-level failure carrying a short
  machine-readable ``code`` (``not_found``, ``invalid_parameter``, ...). The
  API layer maps codes onto HTTP status codes.
- :class:`ConfigInvalidError`: provider settings failed schema validation.
  It is surfaced to the user as "fix your settings" rather than "retry", so
  it is kept distinct from generic errors.
- :class:`GenerationError`: raised inside a provider adapter to carry a
  classified :class:`ErrorReason` up to the adapter's ``generate`` method,
  which converts it into data on the result.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

Code = Literal["ok", "error", "not_found", "unauthorized", "forbidden", "invalid_parameter"]


class ErrorReason(str, Enum):
    """Reason stored on a failed generation record."""

    CONFIG_INVALID = "CONFIG_INVALID"
    CONFIG_ERROR = "CONFIG_ERROR"
    API_ERROR = "API_ERROR"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    TIMEOUT = "TIMEOUT"
    PROMPT_FLAGGED = "PROMPT_FLAGGED"
    INPUT_IMAGE_FLAGGED = "INPUT_IMAGE_FLAGGED"
    UNKNOWN = "UNKNOWN"


class ServiceException(Exception):
    """Service-level failure with a machine-readable code."""

    def __init__(self, code: Code, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ConfigInvalidError(ServiceException):
    """Provider settings failed validation against the provider's schema."""

    def __init__(self, message: str) -> None:
        super().__init__("invalid_parameter", message)


class GenerationError(Exception):
    """A provider failure already classified into an :class:`ErrorReason`."""

    def __init__(self, reason: ErrorReason, message: str | None = None) -> None:
        super().__init__(message or reason.value)
        self.reason = reason
