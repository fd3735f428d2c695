from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from realmgate.logging import get_logger
from realmgate.service.locks import check_locked_at_constraint
from realmgate.storage.errors import (
    FOREIGN_KEY,
    RESOURCE_NAME_UNIQUE,
    USER_EMAIL_UNIQUE,
    ConstraintViolation,
)
from realmgate.storage.models import (
    Client,
    EmailIdentifier,
    Realm,
    RefreshToken,
    Resource,
    ResourceGroup,
    Session,
    User,
    UserIdentifier,
    UserIdIdentifier,
    utcnow,
)

GroupKey = Tuple[str, str, str]


class MemoryStore:
    """In-process store used for tests and single-node development.

    Every method takes ``_data_lock``. ``transaction()`` holds that same
    re-entrant lock for the whole unit of work, which serialises all writers
    and therefore every (user, client) pair, and restores a snapshot of the
    tables when the block raises.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.realms: Dict[str, Realm] = {}
        self.clients: Dict[str, Client] = {}
        self.users: Dict[str, User] = {}
        self.groups: Dict[GroupKey, ResourceGroup] = {}
        self.resources: Dict[str, Resource] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._data_lock = threading.RLock()

    _TABLES = ("realms", "clients", "users", "groups", "resources", "sessions", "refresh_tokens")

    def _snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}

    def _restore(self, snapshot: dict) -> None:
        for name, table in snapshot.items():
            setattr(self, name, table)

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                self.logger.debug("memory_transaction_rolled_back")
                raise

    def lock_pair(self, user_id: str, client_id: str) -> None:
        # The store-wide lock held by transaction() already covers every pair.
        with self._data_lock:
            return None

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    # realms and clients
    def create_realm(self, realm: Realm) -> Realm:
        with self._data_lock:
            check_locked_at_constraint(realm.locked_at)
            self.realms[realm.id] = replace(realm)
            return replace(realm)

    def get_realm(self, realm_id: str) -> Optional[Realm]:
        with self._data_lock:
            realm = self.realms.get(realm_id)
            return replace(realm) if realm else None

    def create_client(self, client: Client) -> Client:
        with self._data_lock:
            if client.realm_id not in self.realms:
                raise ConstraintViolation(
                    "realm does not exist", {"realm_id": client.realm_id}, constraint=FOREIGN_KEY
                )
            check_locked_at_constraint(client.locked_at)
            self.clients[client.id] = replace(client)
            return replace(client)

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._data_lock:
            client = self.clients.get(client_id)
            return replace(client) if client else None

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.realm_id not in self.realms:
                raise ConstraintViolation(
                    "realm does not exist", {"realm_id": user.realm_id}, constraint=FOREIGN_KEY
                )
            email = user.email.lower()
            if any(
                u.realm_id == user.realm_id and u.email.lower() == email
                for u in self.users.values()
            ):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint=USER_EMAIL_UNIQUE
                )
            check_locked_at_constraint(user.locked_at)
            self.users[user.id] = replace(user)
            return replace(user)

    def get_user(self, realm_id: str, identifier: UserIdentifier) -> Optional[User]:
        with self._data_lock:
            if isinstance(identifier, UserIdIdentifier):
                user = self.users.get(identifier.user_id)
                if user is None or user.realm_id != realm_id:
                    return None
                return replace(user)
            if isinstance(identifier, EmailIdentifier):
                email = identifier.email.lower()
                for user in self.users.values():
                    if user.realm_id == realm_id and user.email.lower() == email:
                        return replace(user)
                return None
            raise TypeError(f"unsupported identifier {identifier!r}")

    def set_user_lock(self, user_id: str, locked_at: Optional[datetime]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            check_locked_at_constraint(locked_at)
            user.locked_at = locked_at
            user.updated_at = utcnow()
            return replace(user)

    # resource groups
    def insert_group(self, group: ResourceGroup) -> ResourceGroup:
        with self._data_lock:
            if group.user_id not in self.users or group.client_id not in self.clients:
                raise ConstraintViolation(
                    "user or client does not exist",
                    {"user_id": group.user_id, "client_id": group.client_id},
                    constraint=FOREIGN_KEY,
                )
            check_locked_at_constraint(group.locked_at)
            key = (group.user_id, group.client_id, group.group_key)
            self.groups[key] = replace(group)
            return replace(group)

    def update_group(self, group: ResourceGroup) -> ResourceGroup:
        with self._data_lock:
            key = (group.user_id, group.client_id, group.group_key)
            if key not in self.groups:
                raise ConstraintViolation("resource group does not exist", {"group_key": group.group_key})
            check_locked_at_constraint(group.locked_at)
            stored = replace(group, updated_at=utcnow())
            self.groups[key] = stored
            return replace(stored)

    def get_group(self, user_id: str, client_id: str, group_key: str) -> Optional[ResourceGroup]:
        with self._data_lock:
            group = self.groups.get((user_id, client_id, group_key))
            return replace(group) if group else None

    def get_default_group(self, user_id: str, client_id: str) -> Optional[ResourceGroup]:
        with self._data_lock:
            for group in self.list_groups(user_id, client_id):
                if group.is_default:
                    return group
            return None

    def list_groups(self, user_id: str, client_id: str) -> List[ResourceGroup]:
        with self._data_lock:
            groups = [
                replace(g)
                for (uid, cid, _), g in self.groups.items()
                if uid == user_id and cid == client_id
            ]
            return sorted(groups, key=lambda g: g.created_at)

    def count_other_defaults(self, user_id: str, client_id: str, group_key: Optional[str]) -> int:
        with self._data_lock:
            return sum(
                1
                for (uid, cid, key), g in self.groups.items()
                if uid == user_id and cid == client_id and key != group_key and g.is_default
            )

    def demote_other_groups(self, user_id: str, client_id: str, group_key: str) -> int:
        with self._data_lock:
            demoted = 0
            now = utcnow()
            for (uid, cid, key), g in self.groups.items():
                if uid == user_id and cid == client_id and key != group_key and g.is_default:
                    g.is_default = False
                    g.updated_at = now
                    demoted += 1
            for res in self.resources.values():
                if res.user_id == user_id and res.client_id == client_id and res.group_key != group_key:
                    res.is_default = False
            return demoted

    def delete_group(self, user_id: str, client_id: str, group_key: str) -> bool:
        with self._data_lock:
            removed = self.groups.pop((user_id, client_id, group_key), None)
            if removed is None:
                return False
            stale = [
                rid
                for rid, res in self.resources.items()
                if res.user_id == user_id and res.client_id == client_id and res.group_key == group_key
            ]
            for rid in stale:
                self.resources.pop(rid, None)
            return True

    # resources
    def insert_resource(self, resource: Resource) -> Resource:
        with self._data_lock:
            if (resource.user_id, resource.client_id, resource.group_key) not in self.groups:
                raise ConstraintViolation(
                    "resource group does not exist",
                    {"group_key": resource.group_key},
                    constraint=FOREIGN_KEY,
                )
            for existing in self.resources.values():
                if (
                    existing.name == resource.name
                    and existing.user_id == resource.user_id
                    and existing.client_id == resource.client_id
                ):
                    raise ConstraintViolation(
                        "resource name already exists",
                        {"field": "name", "name": resource.name},
                        constraint=RESOURCE_NAME_UNIQUE,
                    )
            check_locked_at_constraint(resource.locked_at)
            self.resources[resource.id] = replace(resource)
            return replace(resource)

    def update_resource(self, resource: Resource) -> Resource:
        with self._data_lock:
            if resource.id not in self.resources:
                raise ConstraintViolation("resource does not exist", {"resource_id": resource.id})
            check_locked_at_constraint(resource.locked_at)
            stored = replace(resource, updated_at=utcnow())
            self.resources[resource.id] = stored
            return replace(stored)

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        with self._data_lock:
            res = self.resources.get(resource_id)
            return replace(res) if res else None

    def list_resources(self, user_id: str, client_id: str, group_key: str) -> List[Resource]:
        with self._data_lock:
            items = [
                replace(r)
                for r in self.resources.values()
                if r.user_id == user_id and r.client_id == client_id and r.group_key == group_key
            ]
            return sorted(items, key=lambda r: (r.created_at, r.name))

    def set_group_resources_default(
        self, user_id: str, client_id: str, group_key: str, is_default: bool
    ) -> None:
        with self._data_lock:
            for res in self.resources.values():
                if res.user_id == user_id and res.client_id == client_id and res.group_key == group_key:
                    res.is_default = is_default

    # sessions
    def count_active_sessions(self, user_id: str, client_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for s in self.sessions.values()
                if s.user_id == user_id and s.client_id == client_id and s.expires > now
            )

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users or session.client_id not in self.clients:
                raise ConstraintViolation(
                    "user or client does not exist",
                    {"user_id": session.user_id, "client_id": session.client_id},
                    constraint=FOREIGN_KEY,
                )
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str, now: Optional[datetime] = None) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.expires <= (now or utcnow()):
                return None
            return replace(sess)

    def delete_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.pop(session_id, None)

    def delete_sessions_for(self, user_id: str, client_id: str) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.user_id == user_id and s.client_id == client_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_sessions_for_refresh_token(self, refresh_token_id: str) -> int:
        with self._data_lock:
            stale = [
                sid for sid, s in self.sessions.items() if s.refresh_token_id == refresh_token_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users or token.client_id not in self.clients:
                raise ConstraintViolation(
                    "user or client does not exist",
                    {"user_id": token.user_id, "client_id": token.client_id},
                    constraint=FOREIGN_KEY,
                )
            check_locked_at_constraint(token.locked_at)
            self.refresh_tokens[token.id] = replace(token)
            return replace(token)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return replace(token) if token else None

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.id not in self.refresh_tokens:
                raise ConstraintViolation("refresh token does not exist", {"token_id": token.id})
            check_locked_at_constraint(token.locked_at)
            stored = replace(token, updated_at=utcnow())
            self.refresh_tokens[token.id] = stored
            return replace(stored)

    def delete_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_id, None) is not None

    def delete_refresh_tokens_for(self, user_id: str, client_id: str) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, t in self.refresh_tokens.items()
                if t.user_id == user_id and t.client_id == client_id
            ]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
            return len(stale)
