from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from realmgate.config import Settings
from realmgate.logging import get_logger
from realmgate.service import refresh as rotation
from realmgate.service.errors import (
    BadRealmClientComboError,
    GroupNotFoundError,
    InvalidTokenError,
    LockedError,
    NoResourceError,
    SessionNotFoundError,
    UserNotFoundError,
    WrongCredentialsError,
)
from realmgate.service.locks import ensure_unlocked, is_locked
from realmgate.service.passwords import PasswordHasher
from realmgate.service.resource_groups import ResourceGroupService
from realmgate.service.sessions import admit, open_session
from realmgate.service.tokens import TokenService
from realmgate.storage.models import (
    Client,
    EmailIdentifier,
    Realm,
    RefreshToken,
    Resource,
    ResourceGroup,
    Session,
    SessionInfo,
    User,
    UserIdentifier,
    UserIdIdentifier,
    new_id,
)

logger = get_logger(__name__)

_GENERIC_CREDENTIALS_MESSAGE = "Invalid email or password"


class AuthStore(Protocol):
    def transaction(self) -> AbstractContextManager[Any]: ...

    def lock_pair(self, user_id: str, client_id: str) -> None: ...

    def get_realm(self, realm_id: str) -> Optional[Realm]: ...

    def get_client(self, client_id: str) -> Optional[Client]: ...

    def create_user(self, user: User) -> User: ...

    def get_user(self, realm_id: str, identifier: UserIdentifier) -> Optional[User]: ...

    def get_group(self, user_id: str, client_id: str, group_key: str) -> Optional[ResourceGroup]: ...

    def get_default_group(self, user_id: str, client_id: str) -> Optional[ResourceGroup]: ...

    def list_resources(self, user_id: str, client_id: str, group_key: str) -> List[Resource]: ...

    def count_active_sessions(self, user_id: str, client_id: str, now: datetime) -> int: ...

    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str, now: Optional[datetime] = None) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> Optional[Session]: ...

    def delete_sessions_for(self, user_id: str, client_id: str) -> int: ...

    def delete_sessions_for_refresh_token(self, refresh_token_id: str) -> int: ...

    def purge_expired_sessions(self, now: datetime) -> int: ...

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def delete_refresh_token(self, token_id: str) -> bool: ...

    def delete_refresh_tokens_for(self, user_id: str, client_id: str) -> int: ...


@dataclass
class LoginResult:
    access_token: str
    session_id: str
    user: User
    realm_id: str
    client_id: str
    expires_at: datetime
    refresh_token: Optional[str] = None


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str


class AuthService:
    """Login, refresh, logout and introspection for realm clients."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        tokens: TokenService,
        hasher: PasswordHasher,
        groups: Optional[ResourceGroupService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.hasher = hasher
        self.groups = groups or ResourceGroupService(store)
        self._placeholder_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _verify_placeholder(self, password: str) -> None:
        """Verify against a throwaway hash so unknown accounts cost the same."""
        if self._placeholder_hash is None:
            self._placeholder_hash = self.hasher.hash(new_id())
        self.hasher.verify(password, self._placeholder_hash)

    def _realm_client(self, tx: Any, realm_id: str, client_id: str) -> Tuple[Realm, Client]:
        client = tx.get_client(client_id)
        realm = tx.get_realm(realm_id)
        if client is None or realm is None or client.realm_id != realm.id:
            raise BadRealmClientComboError(
                "Client does not belong to realm",
                detail={"realm_id": realm_id, "client_id": client_id},
            )
        return realm, client

    def _active_resources(
        self, tx: Any, group: ResourceGroup, now: datetime
    ) -> List[Resource]:
        resources = [
            r
            for r in tx.list_resources(group.user_id, group.client_id, group.group_key)
            if not is_locked(r, now)
        ]
        if not resources:
            raise LockedError(
                "No active resources for resource group",
                detail={"group_key": group.group_key},
            )
        return resources

    async def login(
        self,
        realm_id: str,
        client_id: str,
        email: str,
        password: str,
        session_info: Optional[SessionInfo] = None,
        *,
        resource_group_key: Optional[str] = None,
    ) -> LoginResult:
        now = self._now()
        realm, client = self._realm_client(self.store, realm_id, client_id)
        try:
            user = self.store.get_user(realm_id, EmailIdentifier(email))
            if user is None:
                raise UserNotFoundError("user not found")
            if resource_group_key:
                group = self.store.get_group(user.id, client.id, resource_group_key)
            else:
                group = self.store.get_default_group(user.id, client.id)
            if group is None:
                raise GroupNotFoundError("resource group not found")
        except (UserNotFoundError, GroupNotFoundError) as exc:
            self._verify_placeholder(password)
            logger.info(
                "login_failed",
                reason=exc.reason,
                realm_id=realm_id,
                client_id=client_id,
            )
            raise WrongCredentialsError(_GENERIC_CREDENTIALS_MESSAGE) from exc

        if not user.password_hash:
            self._verify_placeholder(password)
        if not user.password_hash or not self.hasher.verify(password, user.password_hash):
            logger.info(
                "login_failed",
                reason="wrong_credentials",
                realm_id=realm_id,
                client_id=client_id,
                user_id=user.id,
            )
            raise WrongCredentialsError(_GENERIC_CREDENTIALS_MESSAGE)

        ensure_unlocked(realm, now=now, kind="realm")
        ensure_unlocked(client, now=now, kind="client")
        ensure_unlocked(user, now=now, kind="user")
        ensure_unlocked(group, now=now, kind="resource_group")

        with self.store.transaction() as tx:
            tx.lock_pair(user.id, client.id)
            admit(tx, client, user, now)
            resources = self._active_resources(tx, group, now)
            refresh_row = rotation.mint(tx, user, client) if client.use_refresh_token else None
            session = open_session(
                tx,
                client,
                user,
                session_info,
                refresh_row.id if refresh_row else None,
                now,
                admitted=True,
            )
            access_token = self.tokens.issue_access(user, client, group, resources, session, now=now)
            refresh_token = (
                self.tokens.issue_refresh(refresh_row, realm.refresh_token_lifetime, now=now)
                if refresh_row
                else None
            )

        logger.info(
            "login_succeeded",
            realm_id=realm_id,
            client_id=client_id,
            user_id=user.id,
            session_id=session.id,
            group_key=group.group_key,
        )
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session.id,
            user=user,
            realm_id=realm_id,
            client_id=client_id,
            expires_at=session.expires,
        )

    async def refresh(
        self,
        realm_id: str,
        client_id: str,
        refresh_token: str,
        session_info: Optional[SessionInfo] = None,
    ) -> RefreshResult:
        """Rotate a refresh token and open a new session bound to the result.

        The session opened from the presented token is retired first so a
        refresh never counts against the client's session ceiling twice.
        """
        now = self._now()
        claims = self.tokens.verify_refresh(refresh_token, now=now)
        if claims.get("rli") != realm_id or claims.get("cli") != client_id:
            raise InvalidTokenError("Refresh token was not issued for this realm and client")
        realm, client = self._realm_client(self.store, realm_id, client_id)
        ensure_unlocked(realm, now=now, kind="realm")
        ensure_unlocked(client, now=now, kind="client")

        with self.store.transaction() as tx:
            row = tx.get_refresh_token(claims["sub"])
            if row is None or row.client_id != client.id:
                raise InvalidTokenError("Refresh token has been rotated or revoked")
            tx.lock_pair(row.user_id, client.id)
            ensure_unlocked(row, now=now, kind="refresh_token")
            user = tx.get_user(realm_id, UserIdIdentifier(row.user_id))
            if user is None:
                raise InvalidTokenError("Refresh token subject no longer exists")
            ensure_unlocked(user, now=now, kind="user")
            group = tx.get_default_group(user.id, client.id)
            if group is None:
                raise GroupNotFoundError("No default resource group", detail={"user_id": user.id})
            ensure_unlocked(group, now=now, kind="resource_group")
            resources = self._active_resources(tx, group, now)

            tx.delete_sessions_for_refresh_token(row.id)
            limit = rotation.effective_reuse_limit(client, realm)
            rotated = rotation.rotate(tx, row, limit)
            session = open_session(tx, client, user, session_info, rotated.id, now)
            access_token = self.tokens.issue_access(user, client, group, resources, session, now=now)
            new_refresh = self.tokens.issue_refresh(rotated, realm.refresh_token_lifetime, now=now)

        logger.info(
            "refresh_succeeded",
            realm_id=realm_id,
            client_id=client_id,
            user_id=user.id,
            session_id=session.id,
        )
        return RefreshResult(
            access_token=access_token,
            refresh_token=new_refresh,
            expires_in=max(0, int((session.expires - now).total_seconds())),
            session_id=session.id,
        )

    async def logout(self, session_id: str) -> Session:
        with self.store.transaction() as tx:
            session = tx.delete_session(session_id)
            if session is None:
                raise SessionNotFoundError("Session not found", detail={"session_id": session_id})
            if session.refresh_token_id:
                tx.delete_refresh_token(session.refresh_token_id)
        logger.info("logout", session_id=session_id, user_id=session.user_id)
        return session

    async def logout_by_token(
        self,
        realm_id: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> Tuple[str, Optional[str], int]:
        """End another user's session identified by one of their tokens.

        An access token names its session directly; a refresh token ends every
        session bound to it and the token itself. Returns
        ``(user_id, session_id, sessions_removed)``.
        """
        now = self._now()
        if access_token:
            claims = self.tokens.verify_access(access_token, now=now)
            if claims.get("rli") != realm_id:
                raise NoResourceError("Token was not issued in this realm")
            session = await self.logout(claims.get("sid", ""))
            return session.user_id, session.id, 1
        if refresh_token:
            claims = self.tokens.verify_refresh(refresh_token, now=now)
            if claims.get("rli") != realm_id:
                raise NoResourceError("Token was not issued in this realm")
            with self.store.transaction() as tx:
                token = tx.get_refresh_token(claims.get("sub", ""))
                if token is None:
                    raise SessionNotFoundError("Refresh token no longer exists")
                tx.lock_pair(token.user_id, token.client_id)
                removed = tx.delete_sessions_for_refresh_token(token.id)
                tx.delete_refresh_token(token.id)
            logger.info(
                "logout_by_refresh_token",
                user_id=token.user_id,
                refresh_token_id=token.id,
                sessions_removed=removed,
            )
            return token.user_id, None, removed
        raise NoResourceError("An access token or a refresh token is required")

    async def logout_all(self, user_id: str, client_id: str) -> int:
        with self.store.transaction() as tx:
            tx.lock_pair(user_id, client_id)
            removed = tx.delete_sessions_for(user_id, client_id)
            tx.delete_refresh_tokens_for(user_id, client_id)
        logger.info("logout_all", user_id=user_id, client_id=client_id, sessions_removed=removed)
        return removed

    async def introspect(
        self,
        access_token: str,
        *,
        realm_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return a snapshot of a live access token's claims.

        The session must still exist, and the user and client must be unlocked.
        When ``client_id`` is given the token must carry resources of that client.
        """
        now = self._now()
        claims = self.tokens.verify_access(access_token, now=now)
        resource = claims.get("resource") or {}
        if client_id is not None and resource.get("client_id") != client_id:
            raise NoResourceError("Token carries no resources for this client")
        if realm_id is not None and claims.get("rli") != realm_id:
            raise NoResourceError("Token was not issued in this realm")

        session = self.store.get_session(claims.get("sid", ""), now)
        if session is None:
            raise SessionNotFoundError("Session not found or expired")
        user = self.store.get_user(claims.get("rli", ""), UserIdIdentifier(session.user_id))
        client = self.store.get_client(session.client_id)
        if user is None or client is None:
            raise SessionNotFoundError("Session owner no longer exists")
        ensure_unlocked(user, now=now, kind="user")
        ensure_unlocked(client, now=now, kind="client")

        return {
            "active": True,
            "sub": claims["sub"],
            "sid": claims["sid"],
            "rli": claims.get("rli"),
            "iss": claims.get("iss"),
            "iat": claims.get("iat"),
            "exp": claims.get("exp"),
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "client_id": client.id,
            "client_name": client.name,
            "group_name": resource.get("group_name"),
            "identifiers": resource.get("identifiers", {}),
        }

    async def register_user(
        self,
        realm_id: str,
        client_id: str,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        group_name: str = "default",
        identifiers: Optional[Mapping[str, str]] = None,
    ) -> Tuple[User, ResourceGroup]:
        """Create a user with its first resource group and resources atomically."""
        password_hash = self.hasher.hash(password)
        with self.store.transaction() as tx:
            self._realm_client(tx, realm_id, client_id)
            user = tx.create_user(
                User(
                    id=new_id(),
                    realm_id=realm_id,
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    phone=phone,
                    password_hash=password_hash,
                )
            )
            group, _ = self.groups.create_group(
                realm_id, user.id, client_id, group_name, identifiers
            )
        logger.info("user_registered", realm_id=realm_id, client_id=client_id, user_id=user.id)
        return user, group

    async def purge_expired(self) -> int:
        removed = self.store.purge_expired_sessions(self._now())
        if removed:
            logger.info("expired_sessions_purged", removed=removed)
        return removed
