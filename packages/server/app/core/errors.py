"""
Error taxonomy for the platform.

Workflows raise these; the RPC dispatcher turns them into error replies and
the HTTP gateway renders them as ``{statusCode, message, error}`` envelopes.
Only ``message`` ever reaches the caller.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Optional


class PlatformError(Exception):
    """Base class for every error that maps to a wire status."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def error(self) -> str:
        try:
            return HTTPStatus(self.status_code).phrase
        except ValueError:
            return "Error"

    def to_envelope(self) -> dict:
        return {"statusCode": self.status_code, "message": self.message, "error": self.error}


class ValidationError(PlatformError):
    status_code = 400
    default_message = "Invalid request"


class OrgLimitError(ValidationError):
    default_message = "Maximum organization membership limit reached"


class UnauthorizedError(PlatformError):
    status_code = 401
    default_message = "Unauthorized"


class ForbiddenError(PlatformError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(PlatformError):
    status_code = 404
    default_message = "Not found"


class RoleNotFoundError(NotFoundError):
    default_message = "Role not found"


class ConflictError(PlatformError):
    status_code = 409
    default_message = "Conflict"


class StorageError(PlatformError):
    status_code = 500
    default_message = "Storage failure"


class EmailDeliveryError(PlatformError):
    status_code = 500
    default_message = "Unable to send email"


class ReconciliationError(PlatformError):
    status_code = 500
    default_message = "Role assignment could not be completed"


class IdentityProviderError(PlatformError):
    """Upstream identity-provider failure; keeps the upstream status for callers."""

    status_code = 502
    default_message = "Identity provider request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        upstream_status: Optional[int] = None,
        endpoint: str = "",
        body: str = "",
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.endpoint = endpoint
        self.body = body

    @property
    def is_conflict(self) -> bool:
        return self.upstream_status == 409


class ServiceUnavailableError(PlatformError):
    status_code = 503
    default_message = "Service temporarily unavailable"


_BY_STATUS: dict[int, type[PlatformError]] = {
    400: ValidationError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    502: IdentityProviderError,
    503: ServiceUnavailableError,
}


def from_status(status_code: int, message: str) -> PlatformError:
    """Rebuild an error received over RPC, preserving its status code."""
    cls = _BY_STATUS.get(status_code)
    if cls is not None:
        return cls(message)
    err = PlatformError(message)
    err.status_code = status_code
    return err
