"""Error taxonomy shared by the REST surface and the WebSocket router.

Every failure the chat core reports to a client is a ``ChatError``. The
``code`` is what clients see in ``error`` events and JSON error bodies; the
``status_code`` is only used by the REST exception handler.

Hierarchy:
    ChatError
    ├── AuthError          missing/invalid credential
    ├── NotFoundError      room does not exist
    ├── AccessDeniedError  private room, not a member
    ├── ValidationError    empty body, missing room id, malformed payload
    └── StorageError       store unavailable or constraint violation
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers sent to clients."""
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    VALIDATION_ERROR = "validation_error"
    STORAGE_ERROR = "storage_error"


class ChatError(Exception):
    """Base class for failures reported back to the originating client."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    status_code: int = 400

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code.value}


class AuthError(ChatError):
    code = ErrorCode.AUTH_ERROR
    status_code = 401


class NotFoundError(ChatError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class AccessDeniedError(ChatError):
    code = ErrorCode.ACCESS_DENIED
    status_code = 403


class ValidationError(ChatError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class StorageError(ChatError):
    code = ErrorCode.STORAGE_ERROR
    status_code = 503
