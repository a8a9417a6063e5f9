from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from redis.exceptions import RedisError

from iamcore.storage.errors import ConstraintViolation, StoreUnavailable


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - external_failure (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or missing input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed, or account deactivated (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate creation or deletion of a referenced resource (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ExternalServiceError(ServiceError):
    """A collaborator (store, cache, identity provider) is unavailable (503)."""
    status_code = 503
    error_code = "external_failure"


@contextlib.contextmanager
def translate_store_errors(resource: str = "resource") -> Iterator[None]:
    """Re-raise storage and cache failures as service errors."""
    try:
        yield
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail={"resource": resource, **exc.detail}) from exc
    except (StoreUnavailable, RedisError) as exc:
        raise ExternalServiceError(
            f"{resource} store unavailable", detail={"resource": resource}
        ) from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ExternalServiceError",
    "translate_store_errors",
]
