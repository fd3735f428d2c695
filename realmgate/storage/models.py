from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Realm:
    id: str
    name: str
    slug: str
    session_lifetime: int = 60 * 60
    refresh_token_lifetime: int = 60 * 60 * 24 * 30
    refresh_token_reuse_limit: int = 3
    max_concurrent_sessions: Optional[int] = None
    locked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Client:
    id: str
    realm_id: str
    name: str
    max_concurrent_sessions: int = 1
    use_refresh_token: bool = True
    session_lifetime: int = 60 * 60
    # Overrides the realm value when set.
    refresh_token_reuse_limit: Optional[int] = None
    locked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    realm_id: str
    email: str
    first_name: str
    password_hash: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    locked_at: Optional[datetime] = None
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ResourceGroup:
    group_key: str
    realm_id: str
    user_id: str
    client_id: str
    name: str
    description: Optional[str] = None
    is_default: Optional[bool] = None
    locked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Resource:
    id: str
    user_id: str
    client_id: str
    group_key: str
    name: str
    value: str
    description: Optional[str] = None
    is_default: Optional[bool] = None
    locked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionInfo:
    """Request metadata captured at login and copied onto the session row."""

    ip_address: str = "0.0.0.0"
    user_agent: Optional[str] = None
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    operating_system: Optional[str] = None
    device_type: Optional[str] = None
    country_code: str = "XX"


@dataclass
class Session:
    id: str
    user_id: str
    client_id: str
    expires: datetime
    ip_address: str = "0.0.0.0"
    user_agent: Optional[str] = None
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    operating_system: Optional[str] = None
    device_type: Optional[str] = None
    country_code: str = "XX"
    refresh_token_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        client_id: str,
        lifetime_seconds: int,
        info: Optional[SessionInfo] = None,
        *,
        refresh_token_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        info = info or SessionInfo()
        return cls(
            id=new_id(),
            user_id=user_id,
            client_id=client_id,
            expires=created + timedelta(seconds=lifetime_seconds),
            ip_address=info.ip_address,
            user_agent=info.user_agent,
            browser=info.browser,
            browser_version=info.browser_version,
            operating_system=info.operating_system,
            device_type=info.device_type,
            country_code=info.country_code,
            refresh_token_id=refresh_token_id,
            created_at=created,
        )


@dataclass
class RefreshToken:
    id: str
    user_id: str
    client_id: str
    realm_id: str
    re_used_count: int = 0
    locked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, client_id: str, realm_id: str) -> "RefreshToken":
        return cls(id=new_id(), user_id=user_id, client_id=client_id, realm_id=realm_id)


@dataclass(frozen=True)
class EmailIdentifier:
    email: str


@dataclass(frozen=True)
class UserIdIdentifier:
    user_id: str


UserIdentifier = Union[EmailIdentifier, UserIdIdentifier]


__all__ = [
    "Client",
    "EmailIdentifier",
    "Realm",
    "RefreshToken",
    "Resource",
    "ResourceGroup",
    "Session",
    "SessionInfo",
    "User",
    "UserIdIdentifier",
    "UserIdentifier",
    "new_id",
    "utcnow",
]
