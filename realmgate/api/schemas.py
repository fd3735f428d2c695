from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_IDENTIFIERS = 100
MAX_IDENTIFIER_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "locked",
    "not_found",
    "token_expired",
    "max_concurrent_sessions",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code``."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _normalize_email(value: str) -> str:
    """NFKC-normalise, lowercase and syntax-check an email address."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise ValueError("invalid email address length")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return normalized


def _validate_identifiers(value: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if value is None:
        return None
    if len(value) > MAX_IDENTIFIERS:
        raise ValueError(f"at most {MAX_IDENTIFIERS} identifiers are allowed")
    for name, item in value.items():
        if not name or len(name) > 255:
            raise ValueError("identifier names must be 1-255 characters")
        if len(item) > MAX_IDENTIFIER_LENGTH:
            raise ValueError(f"identifier '{name}' exceeds {MAX_IDENTIFIER_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    resource_group_key: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _normalize_email(value)


class UserResponse(BaseModel):
    id: str
    realm_id: str
    email: str
    first_name: str
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email_verified_at: Optional[datetime] = None


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    session_id: str
    realm_id: str
    client_id: str
    expires_at: datetime
    user: UserResponse


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_id: str


class LogoutResponse(BaseModel):
    ok: bool
    user_id: str
    session_id: Optional[str] = None
    sessions_removed: int = 0


class LogoutAllRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, min_length=1)


class IntrospectRequest(BaseModel):
    access_token: str = Field(..., min_length=1)


class IntrospectResponse(BaseModel):
    active: bool
    sub: str
    sid: str
    rli: Optional[str] = None
    iss: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    client_id: str
    client_name: str
    group_name: Optional[str] = None
    identifiers: Dict[str, str] = Field(default_factory=dict)


class ResourceResponse(BaseModel):
    id: str
    name: str
    value: str
    description: Optional[str] = None
    is_default: Optional[bool] = None
    locked_at: Optional[datetime] = None


class ResourceGroupResponse(BaseModel):
    group_key: str
    realm_id: str
    user_id: str
    client_id: str
    name: str
    description: Optional[str] = None
    is_default: Optional[bool] = None
    locked_at: Optional[datetime] = None
    created_at: datetime
    resources: List[ResourceResponse] = Field(default_factory=list)


class ResourceGroupListResponse(BaseModel):
    items: List[ResourceGroupResponse]


class ResourceGroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2048)
    is_default: Optional[bool] = None
    identifiers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("identifiers")
    @classmethod
    def _check_identifiers(cls, value: Dict[str, str]) -> Dict[str, str]:
        return _validate_identifiers(value) or {}


class ResourceGroupUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2048)
    is_default: Optional[bool] = None
    identifiers: Optional[Dict[str, str]] = None
    lock: Optional[bool] = None

    @field_validator("identifiers")
    @classmethod
    def _check_identifiers(cls, value: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        return _validate_identifiers(value)


class ResourceLockRequest(BaseModel):
    locked: bool


class AdminLogoutRequest(BaseModel):
    access_token: Optional[str] = Field(default=None, min_length=1)
    refresh_token: Optional[str] = Field(default=None, min_length=1)


class RegisterUserRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    group_name: str = Field(default="default", min_length=1, max_length=255)
    identifiers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("identifiers")
    @classmethod
    def _check_identifiers(cls, value: Dict[str, str]) -> Dict[str, str]:
        return _validate_identifiers(value) or {}


class RegisterUserResponse(BaseModel):
    user: UserResponse
    resource_group: ResourceGroupResponse
