from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from realmgate.config import Settings
from realmgate.logging import get_logger
from realmgate.service.errors import InvalidTokenError, TokenExpiredError
from realmgate.service.locks import is_locked
from realmgate.storage.models import (
    Client,
    RefreshToken,
    Resource,
    ResourceGroup,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(value: Dict[str, Any]) -> str:
    return _encode_segment(json.dumps(value, separators=(",", ":")).encode())


def build_identifiers(resources: Iterable[Resource], now: Optional[datetime] = None) -> Dict[str, str]:
    """Flatten the unlocked resources of a group into a name -> value map."""
    return {r.name: r.value for r in resources if not is_locked(r, now)}


class TokenService:
    """Issues and verifies HS256 compact JWS tokens with a deployment key."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._key = settings.jwt_secret.encode()

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def encode(self, claims: Dict[str, Any]) -> str:
        signing_input = f"{_json_segment(_HEADER)}.{_json_segment(claims)}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access(
        self,
        user: User,
        client: Client,
        group: Optional[ResourceGroup],
        resources: Iterable[Resource],
        session: Session,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        now = now or utcnow()
        resource: Dict[str, Any] = {
            "client_id": client.id,
            "client_name": client.name,
            "identifiers": build_identifiers(resources, now),
        }
        if group is not None:
            resource["group_name"] = group.name
        claims = {
            "sub": user.id,
            "sid": session.id,
            "rli": user.realm_id,
            "iss": self.settings.jwt_issuer,
            "iat": int(now.timestamp()),
            "exp": int(session.expires.timestamp()),
            "typ": ACCESS,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "phone": user.phone,
            "resource": resource,
        }
        return self.encode(claims)

    def issue_refresh(
        self,
        token: RefreshToken,
        lifetime_seconds: int,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        now = now or utcnow()
        iat = int(now.timestamp())
        claims = {
            "sub": token.id,
            "rli": token.realm_id,
            "cli": token.client_id,
            "iss": self.settings.jwt_issuer,
            "iat": iat,
            "exp": iat + lifetime_seconds,
            "typ": REFRESH,
        }
        return self.encode(claims)

    def verify(self, token: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Return the claims of a token signed with the deployment key.

        Structure, algorithm, signature and issuer are checked before expiry,
        so a tampered token is ``InvalidTokenError`` whatever its ``exp``.
        """
        if not isinstance(token, str):
            raise InvalidTokenError("Malformed token")
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError("Malformed token")
        header_b64, claims_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise InvalidTokenError("Unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{claims_b64}")
        if not hmac.compare_digest(expected, sig_b64):
            raise InvalidTokenError("Invalid token signature")

        try:
            claims = json.loads(_decode_segment(claims_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Malformed token")
        if not isinstance(claims, dict):
            raise InvalidTokenError("Malformed token")
        if claims.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Unexpected token issuer")

        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError("Token has no expiry")
        current = (now or utcnow()).timestamp()
        if exp + self.settings.jwt_leeway_seconds <= current:
            raise TokenExpiredError("Token has expired", detail={"exp": exp})
        return claims

    def _verify_typed(self, token: str, typ: str, now: Optional[datetime]) -> Dict[str, Any]:
        claims = self.verify(token, now=now)
        if claims.get("typ") != typ:
            raise InvalidTokenError(f"Expected {typ} token")
        return claims

    def verify_access(self, token: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self._verify_typed(token, ACCESS, now)

    def verify_refresh(self, token: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self._verify_typed(token, REFRESH, now)
