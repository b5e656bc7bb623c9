"""Error taxonomy shared by services and the HTTP layer."""

from __future__ import annotations


class InspectraError(Exception):
    """Base class for errors surfaced synchronously to the caller."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class Unauthorized(InspectraError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(InspectraError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(InspectraError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(InspectraError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidTransition(InspectraError):
    code = "INVALID_TRANSITION"
    status_code = 400


class AlreadySigned(InspectraError):
    code = "ALREADY_SIGNED"
    status_code = 409


class InternalError(InspectraError):
    code = "INTERNAL_ERROR"
    status_code = 500
