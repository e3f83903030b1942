# context_chat/exceptions.py
"""
Error taxonomy for the query orchestration core.

Every error carries an HTTP-equivalent ``status`` so the transport layer can
map it without knowing the class hierarchy. Errors are raised where they are
detected and only turned into payloads at the ``context_chat.api`` boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ProviderErrorKind(str, Enum):
    """Normalized classification of upstream provider failures."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


def classify_status(status_code: int | None) -> ProviderErrorKind:
    """Map a provider HTTP status code onto the error taxonomy."""
    if status_code is None:
        return ProviderErrorKind.UNKNOWN
    if status_code in (401, 403):
        return ProviderErrorKind.AUTH
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status_code in (408, 504):
        return ProviderErrorKind.TIMEOUT
    if status_code >= 500:
        return ProviderErrorKind.SERVER_ERROR
    return ProviderErrorKind.UNKNOWN


class ContextChatError(Exception):
    """Base class for all errors raised by context_chat."""

    status: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type,
            "message": self.message,
            "status": self.status,
        }


class ValidationError(ContextChatError):
    """Missing or malformed input. User-correctable."""

    status = 400
    error_type = "validation_error"

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.errors = errors or {}

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.errors:
            data["errors"] = dict(self.errors)
        return data


class NotFoundError(ContextChatError):
    """Unknown context or model id."""

    status = 404
    error_type = "not_found"

    def __init__(self, resource: str, identifier: str | None):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class BudgetExhaustedError(ContextChatError):
    """No room for context in the prompt. Absorbed by the packer."""

    status = 200
    error_type = "budget_exhausted"

    def __init__(self, budget: int):
        super().__init__(f"No token budget left for context (budget={budget})")
        self.budget = budget


class ProviderError(ContextChatError):
    """Upstream model provider failure."""

    status = 502
    error_type = "provider_error"

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
        status_code: int | None = None,
        model_id: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.model_id = model_id

    def __str__(self) -> str:
        prefix = f"[{self.kind.value}]"
        if self.model_id:
            prefix = f"{prefix} {self.model_id}:"
        return f"{prefix} {self.message}"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind.value
        if self.status_code is not None:
            data["provider_status"] = self.status_code
        if self.model_id:
            data["model_id"] = self.model_id
        return data


class InternalError(ContextChatError):
    """Unexpected failure inside the core."""

    status = 500
    error_type = "internal_error"
