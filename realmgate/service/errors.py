from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code``, a stable
    ``error_code`` returned to API callers and a ``reason`` naming the exact
    failure kind for logs and tests:
    - unauthorized (401)
    - token_expired (401)
    - forbidden / locked (403)
    - not_found (404)
    - conflict (409)
    - max_concurrent_sessions (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: str = "validation_error"

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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidLockTimestampError(ValidationError):
    """A lock timestamp supplied by the caller lies in the future."""
    reason = "invalid_lock_timestamp"


class BadRealmClientComboError(ValidationError):
    """Client, user or group does not belong to the realm in the request."""
    reason = "bad_realm_client_combo"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthorized"


class WrongCredentialsError(AuthenticationError):
    reason = "wrong_credentials"


class InvalidTokenError(AuthenticationError):
    reason = "invalid_token"


class TokenExpiredError(AuthenticationError):
    """Token is well formed and correctly signed but past its expiry."""
    error_code = "token_expired"
    reason = "expired"


class LockedError(AuthenticationError):
    """A realm, client, user, group, resource or token is locked (403)."""
    status_code = 403
    error_code = "locked"
    reason = "locked"


class MaxConcurrentSessionsError(AuthenticationError):
    """The client's concurrent session ceiling is reached (429)."""
    status_code = 429
    error_code = "max_concurrent_sessions"
    reason = "max_concurrent_sessions"


class ActionForbiddenError(AuthenticationError):
    """Authenticated, but not allowed to perform the action (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "action_forbidden"


class NoResourceError(AuthenticationError):
    status_code = 403
    error_code = "forbidden"
    reason = "no_resource"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    reason = "not_found"


class UserNotFoundError(NotFoundError):
    reason = "user_not_found"


class GroupNotFoundError(NotFoundError):
    reason = "group_not_found"


class ResourceNotFoundError(NotFoundError):
    reason = "resource_not_found"


class SessionNotFoundError(NotFoundError):
    reason = "session_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    reason = "conflict"


class CannotRemoveOnlyDefaultError(ConflictError):
    """Clearing the default flag of the only default resource group."""
    reason = "cannot_remove_only_default"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidLockTimestampError",
    "BadRealmClientComboError",
    "AuthenticationError",
    "WrongCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "LockedError",
    "MaxConcurrentSessionsError",
    "ActionForbiddenError",
    "NoResourceError",
    "NotFoundError",
    "UserNotFoundError",
    "GroupNotFoundError",
    "ResourceNotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "CannotRemoveOnlyDefaultError",
]
