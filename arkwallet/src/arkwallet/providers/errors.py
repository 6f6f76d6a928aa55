"""
Errors returned by Ark servers and indexers.

The server is a gRPC service exposed through a JSON gateway; rejected calls
carry a body such as::

    {"code": 3, "message": "...", "details": [
        {"@type": "type.googleapis.com/ark.v1.ErrorDetails",
         "code": 11, "name": "DUPLICATED_INPUT", "message": "...", "metadata": {...}}
    ]}
"""

from __future__ import annotations

import json
from typing import Any

ARK_ERROR_DETAILS_TYPE = "type.googleapis.com/ark.v1.ErrorDetails"

DUPLICATE_INTENT_ERROR_NAMES = frozenset({"DUPLICATED_INPUT", "INTENT_ALREADY_REGISTERED"})
DUPLICATE_INTENT_MARKERS = ("duplicated input", "already registered")


class ArkError(Exception):
    """Structured error reported by the Ark server."""

    def __init__(
        self,
        code: int,
        message: str,
        name: str,
        metadata: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.name = name
        self.metadata = metadata or {}

    def __repr__(self) -> str:
        return f"ArkError(code={self.code}, name={self.name!r}, message={self.message!r})"


class ProviderError(Exception):
    """A provider call failed at the HTTP level."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str = "",
        ark_error: ArkError | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.ark_error = ark_error


def maybe_ark_error(error: Any) -> ArkError | None:
    """
    Extract an ArkError from a response body, a ProviderError or an exception message.

    Returns None when the payload does not carry ark error details.
    """
    if isinstance(error, ArkError):
        return error
    if isinstance(error, ProviderError):
        if error.ark_error is not None:
            return error.ark_error
        error = error.body
    if isinstance(error, Exception):
        error = str(error)
    if isinstance(error, (str, bytes)):
        try:
            error = json.loads(error)
        except ValueError:
            return None
    if not isinstance(error, dict):
        return None

    details = error.get("details")
    if not isinstance(details, list):
        return None
    for detail in details:
        if not isinstance(detail, dict) or detail.get("@type") != ARK_ERROR_DETAILS_TYPE:
            return None
        try:
            code = int(detail["code"])
            message = str(detail["message"])
            name = str(detail["name"])
        except (KeyError, TypeError, ValueError):
            return None
        metadata = detail.get("metadata")
        if not isinstance(metadata, dict):
            metadata = None
        return ArkError(code, message, name, metadata)
    return None


def is_duplicate_intent_error(error: Any) -> bool:
    """Whether a rejected registration means the same coins are already registered."""
    ark_error = maybe_ark_error(error)
    if ark_error is not None and ark_error.name in DUPLICATE_INTENT_ERROR_NAMES:
        return True
    text = ark_error.message if ark_error is not None else str(error)
    if isinstance(error, ProviderError):
        text = f"{text} {error.body}"
    text = text.lower()
    return any(marker in text for marker in DUPLICATE_INTENT_MARKERS)
