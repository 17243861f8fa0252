"""
Error taxonomy shared by the services.

Each error carries the HTTP status a web layer should answer with, and renders
itself into the ``{success, message, data}`` envelope.
"""
import logging
from typing import Any, Dict, Optional

import config

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_envelope(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "data": self.data}


class ValidationFailed(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class AccountLocked(Forbidden):
    pass


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


def envelope(data: Any = None, message: str = "ok") -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def internal_error_envelope(exc: BaseException) -> Dict[str, Any]:
    logger.exception("Unhandled error: %s", exc)
    message = str(exc) if config.is_development() else "Internal server error"
    return {"success": False, "message": message, "data": None}
