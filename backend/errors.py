"""
Error types raised by the domain modules.

Every error carries the HTTP status it maps to; the server renders them as
``{"error": message, "details": [...]}``.
"""

from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body: dict = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequest(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class AccessDenied(AppError):
    status_code = 403


class QuotaExceeded(AppError):
    """Plan allowance used up (trial searches or credits)."""
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class ProviderUnavailable(AppError):
    status_code = 503


class RateLimited(AppError):
    status_code = 429


class ServiceUnavailable(AppError):
    """A required integration is not configured or not reachable."""
    status_code = 503
