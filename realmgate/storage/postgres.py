from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

REQUIRED_TABLES = (
    "realm",
    "client",
    "user",
    "resource_group",
    "resource",
    "session",
    "refresh_token",
)

_SESSION_COLUMNS = (
    "id, user_id, client_id, ip_address, user_agent, browser, browser_version, "
    "operating_system, device_type, country_code, refresh_token_id, expires, created_at"
)


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "email" in constraint:
        return ConstraintViolation(
            "email already exists", {"field": "email"}, constraint=USER_EMAIL_UNIQUE
        )
    if "resource" in constraint or "name" in constraint:
        return ConstraintViolation(
            "resource name already exists", {"field": "name"}, constraint=RESOURCE_NAME_UNIQUE
        )
    return ConstraintViolation("duplicate row", {"constraint": constraint}, constraint=constraint or None)


def _foreign_key_violation(detail: Dict[str, Any]) -> ConstraintViolation:
    return ConstraintViolation("referenced row does not exist", detail, constraint=FOREIGN_KEY)


def _realm_from_row(row: dict) -> Realm:
    return Realm(
        id=str(row["id"]),
        name=row["name"],
        slug=row["slug"],
        session_lifetime=row["session_lifetime"],
        refresh_token_lifetime=row["refresh_token_lifetime"],
        refresh_token_reuse_limit=row["refresh_token_reuse_limit"],
        max_concurrent_sessions=row.get("max_concurrent_sessions"),
        locked_at=row.get("locked_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _client_from_row(row: dict) -> Client:
    return Client(
        id=str(row["id"]),
        realm_id=str(row["realm_id"]),
        name=row["name"],
        max_concurrent_sessions=row["max_concurrent_sessions"],
        use_refresh_token=row["use_refresh_token"],
        session_lifetime=row["session_lifetime"],
        refresh_token_reuse_limit=row.get("refresh_token_reuse_limit"),
        locked_at=row.get("locked_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        realm_id=str(row["realm_id"]),
        email=row["email"],
        first_name=row["first_name"],
        password_hash=row.get("password_hash"),
        last_name=row.get("last_name"),
        phone=row.get("phone"),
        locked_at=row.get("locked_at"),
        email_verified_at=row.get("email_verified_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _group_from_row(row: dict) -> ResourceGroup:
    return ResourceGroup(
        group_key=row["group_key"],
        realm_id=str(row["realm_id"]),
        user_id=str(row["user_id"]),
        client_id=str(row["client_id"]),
        name=row["name"],
        description=row.get("description"),
        is_default=row.get("is_default"),
        locked_at=row.get("locked_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _resource_from_row(row: dict) -> Resource:
    return Resource(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        client_id=str(row["client_id"]),
        group_key=row["group_key"],
        name=row["name"],
        value=row["value"],
        description=row.get("description"),
        is_default=row.get("is_default"),
        locked_at=row.get("locked_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _session_from_row(row: dict) -> Session:
    refresh_id = row.get("refresh_token_id")
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        client_id=str(row["client_id"]),
        expires=row["expires"],
        ip_address=str(row.get("ip_address") or "0.0.0.0"),
        user_agent=row.get("user_agent"),
        browser=row.get("browser"),
        browser_version=row.get("browser_version"),
        operating_system=row.get("operating_system"),
        device_type=row.get("device_type"),
        country_code=row.get("country_code") or "XX",
        refresh_token_id=str(refresh_id) if refresh_id else None,
        created_at=row.get("created_at") or utcnow(),
    )


def _refresh_token_from_row(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        client_id=str(row["client_id"]),
        realm_id=str(row["realm_id"]),
        re_used_count=row["re_used_count"],
        locked_at=row.get("locked_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed store over the realm/client/user/session schema.

    Methods called inside ``transaction()`` share its connection; outside a
    transaction each call checks out its own pooled connection and commits on
    return.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Optional[Any]] = ContextVar(
            f"realmgate_pg_tx_{id(self)}", default=None
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if self._tx_conn.get() is not None:
            yield self
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield self
                finally:
                    self._tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f'public."{table}"',)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            self.logger.error("postgres_schema_missing", tables=sorted(missing))
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    def lock_pair(self, user_id: str, client_id: str) -> None:
        """Serialise writers of one (user, client) pair until the transaction ends."""
        with self._connect() as conn:
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
                (f"{user_id}:{client_id}",),
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # realms and clients
    def create_realm(self, realm: Realm) -> Realm:
        check_locked_at_constraint(realm.locked_at)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO realm (id, name, slug, session_lifetime, refresh_token_lifetime,
                                   refresh_token_reuse_limit, max_concurrent_sessions, locked_at,
                                   created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    realm.id,
                    realm.name,
                    realm.slug,
                    realm.session_lifetime,
                    realm.refresh_token_lifetime,
                    realm.refresh_token_reuse_limit,
                    realm.max_concurrent_sessions,
                    realm.locked_at,
                    realm.created_at,
                    realm.updated_at,
                ),
            )
        return realm

    def get_realm(self, realm_id: str) -> Optional[Realm]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM realm WHERE id = %s", (realm_id,)).fetchone()
        return _realm_from_row(row) if row else None

    def create_client(self, client: Client) -> Client:
        check_locked_at_constraint(client.locked_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO client (id, realm_id, name, max_concurrent_sessions, use_refresh_token,
                                        session_lifetime, refresh_token_reuse_limit, locked_at,
                                        created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        client.id,
                        client.realm_id,
                        client.name,
                        client.max_concurrent_sessions,
                        client.use_refresh_token,
                        client.session_lifetime,
                        client.refresh_token_reuse_limit,
                        client.locked_at,
                        client.created_at,
                        client.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise _foreign_key_violation({"realm_id": client.realm_id})
        return client

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM client WHERE id = %s", (client_id,)).fetchone()
        return _client_from_row(row) if row else None

    # users
    def create_user(self, user: User) -> User:
        check_locked_at_constraint(user.locked_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO "user" (id, realm_id, email, password_hash, first_name, last_name,
                                        phone, locked_at, email_verified_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.realm_id,
                        user.email,
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        user.phone,
                        user.locked_at,
                        user.email_verified_at,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        except errors.ForeignKeyViolation:
            raise _foreign_key_violation({"realm_id": user.realm_id})
        return user

    def get_user(self, realm_id: str, identifier: UserIdentifier) -> Optional[User]:
        if isinstance(identifier, UserIdIdentifier):
            query = 'SELECT * FROM "user" WHERE realm_id = %s AND id = %s'
            value = identifier.user_id
        elif isinstance(identifier, EmailIdentifier):
            query = 'SELECT * FROM "user" WHERE realm_id = %s AND lower(email) = lower(%s)'
            value = identifier.email
        else:
            raise TypeError(f"unsupported identifier {identifier!r}")
        with self._connect() as conn:
            row = conn.execute(query, (realm_id, value)).fetchone()
        return _user_from_row(row) if row else None

    def set_user_lock(self, user_id: str, locked_at: Optional[datetime]) -> Optional[User]:
        check_locked_at_constraint(locked_at)
        with self._connect() as conn:
            row = conn.execute(
                'UPDATE "user" SET locked_at = %s, updated_at = now() WHERE id = %s RETURNING *',
                (locked_at, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    # resource groups
    def insert_group(self, group: ResourceGroup) -> ResourceGroup:
        check_locked_at_constraint(group.locked_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO resource_group (group_key, realm_id, user_id, client_id, name,
                                                description, is_default, locked_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        group.group_key,
                        group.realm_id,
                        group.user_id,
                        group.client_id,
                        group.name,
                        group.description,
                        group.is_default,
                        group.locked_at,
                        group.created_at,
                        group.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise _foreign_key_violation({"user_id": group.user_id, "client_id": group.client_id})
        return group

    def update_group(self, group: ResourceGroup) -> ResourceGroup:
        check_locked_at_constraint(group.locked_at)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE resource_group
                SET name = %s, description = %s, is_default = %s, locked_at = %s, updated_at = now()
                WHERE user_id = %s AND client_id = %s AND group_key = %s
                RETURNING *
                """,
                (
                    group.name,
                    group.description,
                    group.is_default,
                    group.locked_at,
                    group.user_id,
                    group.client_id,
                    group.group_key,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("resource group does not exist", {"group_key": group.group_key})
        return _group_from_row(row)

    def get_group(self, user_id: str, client_id: str, group_key: str) -> Optional[ResourceGroup]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM resource_group WHERE user_id = %s AND client_id = %s AND group_key = %s",
                (user_id, client_id, group_key),
            ).fetchone()
        return _group_from_row(row) if row else None

    def get_default_group(self, user_id: str, client_id: str) -> Optional[ResourceGroup]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM resource_group
                WHERE user_id = %s AND client_id = %s AND is_default IS TRUE
                ORDER BY created_at LIMIT 1
                """,
                (user_id, client_id),
            ).fetchone()
        return _group_from_row(row) if row else None

    def list_groups(self, user_id: str, client_id: str) -> List[ResourceGroup]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM resource_group WHERE user_id = %s AND client_id = %s ORDER BY created_at",
                (user_id, client_id),
            ).fetchall()
        return [_group_from_row(row) for row in rows]

    def count_other_defaults(self, user_id: str, client_id: str, group_key: Optional[str]) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM resource_group
                WHERE user_id = %s AND client_id = %s AND is_default IS TRUE
                  AND group_key IS DISTINCT FROM %s
                """,
                (user_id, client_id, group_key),
            ).fetchone()
        return int(row["n"]) if row else 0

    def demote_other_groups(self, user_id: str, client_id: str, group_key: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE resource_group SET is_default = FALSE, updated_at = now()
                WHERE user_id = %s AND client_id = %s AND group_key <> %s AND is_default IS TRUE
                """,
                (user_id, client_id, group_key),
            )
            conn.execute(
                """
                UPDATE resource SET is_default = FALSE
                WHERE user_id = %s AND client_id = %s AND group_key <> %s
                """,
                (user_id, client_id, group_key),
            )
        return cur.rowcount or 0

    def delete_group(self, user_id: str, client_id: str, group_key: str) -> bool:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM resource WHERE user_id = %s AND client_id = %s AND group_key = %s",
                (user_id, client_id, group_key),
            )
            cur = conn.execute(
                "DELETE FROM resource_group WHERE user_id = %s AND client_id = %s AND group_key = %s",
                (user_id, client_id, group_key),
            )
        return bool(cur.rowcount)

    # resources
    def insert_resource(self, resource: Resource) -> Resource:
        check_locked_at_constraint(resource.locked_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO resource (id, user_id, client_id, group_key, name, value, description,
                                          is_default, locked_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        resource.id,
                        resource.user_id,
                        resource.client_id,
                        resource.group_key,
                        resource.name,
                        resource.value,
                        resource.description,
                        resource.is_default,
                        resource.locked_at,
                        resource.created_at,
                        resource.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        except errors.ForeignKeyViolation:
            raise _foreign_key_violation({"group_key": resource.group_key})
        return resource

    def update_resource(self, resource: Resource) -> Resource:
        check_locked_at_constraint(resource.locked_at)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE resource
                SET value = %s, description = %s, is_default = %s, locked_at = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    resource.value,
                    resource.description,
                    resource.is_default,
                    resource.locked_at,
                    resource.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("resource does not exist", {"resource_id": resource.id})
        return _resource_from_row(row)

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM resource WHERE id = %s", (resource_id,)).fetchone()
        return _resource_from_row(row) if row else None

    def list_resources(self, user_id: str, client_id: str, group_key: str) -> List[Resource]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM resource
                WHERE user_id = %s AND client_id = %s AND group_key = %s
                ORDER BY created_at, name
                """,
                (user_id, client_id, group_key),
            ).fetchall()
        return [_resource_from_row(row) for row in rows]

    def set_group_resources_default(
        self, user_id: str, client_id: str, group_key: str, is_default: bool
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE resource SET is_default = %s WHERE user_id = %s AND client_id = %s AND group_key = %s",
                (is_default, user_id, client_id, group_key),
            )

    # sessions
    def count_active_sessions(self, user_id: str, client_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM session WHERE user_id = %s AND client_id = %s AND expires > %s",
                (user_id, client_id, now),
            ).fetchone()
        return int(row["n"]) if row else 0

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO session ({_SESSION_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        session.id,
                        session.user_id,
                        session.client_id,
                        session.ip_address,
                        session.user_agent,
                        session.browser,
                        session.browser_version,
                        session.operating_system,
                        session.device_type,
                        session.country_code,
                        session.refresh_token_id,
                        session.expires,
                        session.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise _foreign_key_violation(
                {"user_id": session.user_id, "client_id": session.client_id}
            )
        return session

    def get_session(self, session_id: str, now: Optional[datetime] = None) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM session WHERE id = %s AND expires > %s",
                (session_id, now or utcnow()),
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"DELETE FROM session WHERE id = %s RETURNING {_SESSION_COLUMNS}", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_sessions_for(self, user_id: str, client_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM session WHERE user_id = %s AND client_id = %s",
                (user_id, client_id),
            )
        return cur.rowcount or 0

    def delete_sessions_for_refresh_token(self, refresh_token_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM session WHERE refresh_token_id = %s", (refresh_token_id,)
            )
        return cur.rowcount or 0

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM session WHERE expires <= %s", (now,))
        return cur.rowcount or 0

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        check_locked_at_constraint(token.locked_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, client_id, realm_id, re_used_count,
                                               locked_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.client_id,
                        token.realm_id,
                        token.re_used_count,
                        token.locked_at,
                        token.created_at,
                        token.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise _foreign_key_violation({"user_id": token.user_id, "client_id": token.client_id})
        return token

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s FOR UPDATE", (token_id,)
            ).fetchone()
        return _refresh_token_from_row(row) if row else None

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken:
        check_locked_at_constraint(token.locked_at)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET re_used_count = %s, locked_at = %s, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (token.re_used_count, token.locked_at, token.id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("refresh token does not exist", {"token_id": token.id})
        return _refresh_token_from_row(row)

    def delete_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE id = %s", (token_id,))
        return bool(cur.rowcount)

    def delete_refresh_tokens_for(self, user_id: str, client_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND client_id = %s",
                (user_id, client_id),
            )
        return cur.rowcount or 0
