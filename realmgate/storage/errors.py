from __future__ import annotations

from typing import Any, Dict, Optional

# Constraint names shared by both stores so callers can branch on them.
USER_EMAIL_UNIQUE = "user_realm_email_key"
RESOURCE_NAME_UNIQUE = "resource_name_user_client_key"
FOREIGN_KEY = "foreign_key"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


__all__ = [
    "ConstraintViolation",
    "FOREIGN_KEY",
    "RESOURCE_NAME_UNIQUE",
    "USER_EMAIL_UNIQUE",
]
