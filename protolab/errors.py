from __future__ import annotations

from typing import Any, Dict


class ApiError(Exception):
    """Error that is rendered as ``{"ok": false, "error": ...}``."""

    status = 400

    def __init__(self, message: str, status: int = 0, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        if status:
            self.status = status
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "error": self.message}
        payload.update(self.extra)
        return payload


class BadRequest(ApiError):
    status = 400


class Unauthorized(ApiError):
    status = 401


class Forbidden(ApiError):
    status = 403


class NotFound(ApiError):
    status = 404


class Conflict(ApiError):
    status = 409

