"""
Typed errors for dispatch, transport and storage.

Everything raised across module boundaries derives from SwitchboardError so the
dispatcher can turn it into an error ChatResult without string matching.
"""

from __future__ import annotations

import json


class SwitchboardError(Exception):
    """
    Base error.

    code: machine-readable short code (e.g. "MISSING_API_KEY")
    extra: free-form context (provider, account index, ...)
    """

    code = "ERROR"

    def __init__(self, message: str, code: str | None = None, **extra):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra


class ConfigurationError(SwitchboardError):
    """Missing key, base URL, model or OCR credentials. Never retried."""

    code = "CONFIGURATION"


class AuthError(SwitchboardError):
    """Session backend says we're not logged in (or 401/403)."""

    code = "AUTH"


class NetworkGlitch(SwitchboardError):
    """Transient failure: no usable frame, dropped connection, 429, timeout."""

    code = "NETWORK"


class TransportError(SwitchboardError):
    """Non-2xx HTTP from a provider."""

    code = "TRANSPORT"

    def __init__(self, message: str, status_code: int = 0, **extra):
        super().__init__(message, **extra)
        self.status_code = status_code


class CancellationError(SwitchboardError):
    """The caller cancelled. Terminal, not a failure."""

    code = "CANCELLED"


class ParseError(SwitchboardError):
    """A single stream chunk could not be parsed."""

    code = "PARSE"


class OCRError(SwitchboardError):
    """Document extraction returned nothing usable."""

    code = "OCR"


class StorageError(SwitchboardError):
    """History could not be written, even after trimming."""

    code = "STORAGE"


class StorageQuotaError(StorageError):
    """A write would push the key/value store past its quota."""

    code = "STORAGE_QUOTA"


def extract_error_text(body: str) -> str:
    """Pull `error.message` out of a JSON error body, else return the body as-is."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return body


class ConversationNotFound(SwitchboardError):
    """No conversation with that id in the history store."""

    code = "NOT_FOUND"
