from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Request

from realmgate.api.schemas import (
    AdminLogoutRequest,
    Envelope,
    IntrospectRequest,
    IntrospectResponse,
    LoginRequest,
    LoginResponse,
    LogoutAllRequest,
    LogoutResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterUserRequest,
    RegisterUserResponse,
    ResourceGroupCreateRequest,
    ResourceGroupListResponse,
    ResourceGroupResponse,
    ResourceGroupUpdateRequest,
    ResourceLockRequest,
    ResourceResponse,
    UserResponse,
)
from realmgate.logging import get_logger
from realmgate.service.errors import ActionForbiddenError, SessionNotFoundError
from realmgate.service.runtime import get_runtime
from realmgate.service.sessions import parse_user_agent
from realmgate.storage.models import Resource, ResourceGroup, SessionInfo, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_CLIENT_PATH = "/realms/{realm_id}/clients/{client_id}"
_GROUPS_PATH = _CLIENT_PATH + "/users/{user_id}/resource-groups"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class Principal:
    user_id: str
    session_id: str
    realm_id: str
    client_id: Optional[str] = None
    identifiers: Dict[str, str] = field(default_factory=dict)

    def is_realm_admin(self, realm_id: str, master_realm_id: Optional[str]) -> bool:
        if self.identifiers.get("role") != "admin":
            return False
        return self.realm_id == realm_id or (
            master_realm_id is not None and self.realm_id == master_realm_id
        )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the bearer access token to a principal with a live session."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    claims = runtime.tokens.verify_access(authorization.split(" ", 1)[1].strip())
    if runtime.store.get_session(claims.get("sid", "")) is None:
        raise SessionNotFoundError("Session not found or expired")
    resource = claims.get("resource") or {}
    return Principal(
        user_id=claims["sub"],
        session_id=claims["sid"],
        realm_id=claims.get("rli", ""),
        client_id=resource.get("client_id"),
        identifiers=dict(resource.get("identifiers") or {}),
    )


def _require_realm_admin(principal: Principal, realm_id: str) -> None:
    settings = get_runtime().settings
    if not principal.is_realm_admin(realm_id, settings.master_realm_id):
        logger.warning(
            "realm_admin_required",
            user_id=principal.user_id,
            realm_id=realm_id,
            principal_realm_id=principal.realm_id,
        )
        raise ActionForbiddenError("Realm administrator access required")


def _session_info(request: Request) -> SessionInfo:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else "0.0.0.0"
    return parse_user_agent(
        request.headers.get("User-Agent"),
        ip_address=ip_address,
        country_code=request.headers.get("CF-IPCountry", "XX"),
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        realm_id=user.realm_id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
        email_verified_at=user.email_verified_at,
    )


def _group_response(group: ResourceGroup, resources: List[Resource]) -> ResourceGroupResponse:
    return ResourceGroupResponse(
        group_key=group.group_key,
        realm_id=group.realm_id,
        user_id=group.user_id,
        client_id=group.client_id,
        name=group.name,
        description=group.description,
        is_default=group.is_default,
        locked_at=group.locked_at,
        created_at=group.created_at,
        resources=[
            ResourceResponse(
                id=r.id,
                name=r.name,
                value=r.value,
                description=r.description,
                is_default=r.is_default,
                locked_at=r.locked_at,
            )
            for r in resources
        ],
    )


@router.post(_CLIENT_PATH + "/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    realm_id: str = Path(...),
    client_id: str = Path(...),
):
    """Authenticate a user of the realm for the client.

    Raises:
        401: invalid credentials
        403: realm, client, user or resource group locked
        429: concurrent session ceiling reached
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        realm_id,
        client_id,
        body.email,
        body.password,
        _session_info(request),
        resource_group_key=body.resource_group_key,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            session_id=result.session_id,
            realm_id=result.realm_id,
            client_id=result.client_id,
            expires_at=result.expires_at,
            user=_user_response(result.user),
        ),
    )


@router.post(_CLIENT_PATH + "/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RefreshRequest,
    request: Request,
    realm_id: str = Path(...),
    client_id: str = Path(...),
):
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        realm_id, client_id, body.refresh_token, _session_info(request)
    )
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            session_id=result.session_id,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    session = await runtime.auth.logout(principal.session_id)
    return Envelope(
        status="ok",
        data=LogoutResponse(
            ok=True,
            user_id=session.user_id,
            session_id=session.id,
            sessions_removed=1,
        ),
    )


@router.post(_CLIENT_PATH + "/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    realm_id: str = Path(...),
    client_id: str = Path(...),
    body: Optional[LogoutAllRequest] = Body(default=None),
    principal: Principal = Depends(get_principal),
):
    """End every session of a user for the client.

    Without a body the caller's own sessions are ended; ending another
    user's sessions requires realm administrator access.
    """
    target = (body.user_id if body else None) or principal.user_id
    if target != principal.user_id or principal.realm_id != realm_id:
        _require_realm_admin(principal, realm_id)
    runtime = get_runtime()
    removed = await runtime.auth.logout_all(target, client_id)
    return Envelope(
        status="ok",
        data=LogoutResponse(
            ok=removed > 0,
            user_id=target,
            session_id=principal.session_id if target == principal.user_id else None,
            sessions_removed=removed,
        ),
    )


@router.post(_CLIENT_PATH + "/auth/introspect", response_model=Envelope, tags=["auth"])
async def introspect(
    body: IntrospectRequest,
    realm_id: str = Path(...),
    client_id: str = Path(...),
    principal: Principal = Depends(get_principal),
):
    _require_realm_admin(principal, realm_id)
    runtime = get_runtime()
    snapshot = await runtime.auth.introspect(
        body.access_token, realm_id=realm_id, client_id=client_id
    )
    return Envelope(status="ok", data=IntrospectResponse(**snapshot))


@router.post(_CLIENT_PATH + "/auth/logout-session", response_model=Envelope, tags=["auth"])
async def logout_session(
    body: AdminLogoutRequest,
    realm_id: str = Path(...),
    principal: Principal = Depends(get_principal),
):
    """End another user's session given their access or refresh token."""
    _require_realm_admin(principal, realm_id)
    runtime = get_runtime()
    user_id, session_id, removed = await runtime.auth.logout_by_token(
        realm_id, access_token=body.access_token, refresh_token=body.refresh_token
    )
    return Envelope(
        status="ok",
        data=LogoutResponse(
            ok=removed > 0,
            user_id=user_id,
            session_id=session_id,
            sessions_removed=removed,
        ),
    )


@router.post(_CLIENT_PATH + "/users", response_model=Envelope, status_code=201, tags=["users"])
async def register_user(
    body: RegisterUserRequest,
    realm_id: str = Path(...),
    client_id: str = Path(...),
    principal: Principal = Depends(get_principal),
):
    """Create a user together with its first, default resource group.

    Raises:
        403: caller is not a realm administrator
        409: email already registered in the realm
    """
    _require_realm_admin(principal, realm_id)
    runtime = get_runtime()
    user, group = await runtime.auth.register_user(
        realm_id,
        client_id,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        group_name=body.group_name,
        identifiers=body.identifiers,
    )
    resources = runtime.store.list_resources(user.id, client_id, group.group_key)
    return Envelope(
        status="ok",
        data=RegisterUserResponse(
            user=_user_response(user),
            resource_group=_group_response(group, resources),
        ),
    )


def _group_admin(
    realm_id: str = Path(...),
    client_id: str = Path(...),
    user_id: str = Path(...),
    principal: Principal = Depends(get_principal),
) -> Tuple[str, str, str]:
    _require_realm_admin(principal, realm_id)
    return realm_id, user_id, client_id


@router.get(_GROUPS_PATH, response_model=Envelope, tags=["resource-groups"])
async def list_resource_groups(scope: Tuple[str, str, str] = Depends(_group_admin)):
    realm_id, user_id, client_id = scope
    items = get_runtime().groups.list_groups(realm_id, user_id, client_id)
    return Envelope(
        status="ok",
        data=ResourceGroupListResponse(items=[_group_response(g, r) for g, r in items]),
    )


@router.post(_GROUPS_PATH, response_model=Envelope, status_code=201, tags=["resource-groups"])
async def create_resource_group(
    body: ResourceGroupCreateRequest,
    scope: Tuple[str, str, str] = Depends(_group_admin),
):
    realm_id, user_id, client_id = scope
    group, resources = get_runtime().groups.create_group(
        realm_id,
        user_id,
        client_id,
        body.name,
        body.identifiers,
        description=body.description,
        is_default=body.is_default,
    )
    return Envelope(status="ok", data=_group_response(group, resources))


@router.get(_GROUPS_PATH + "/{group_key}", response_model=Envelope, tags=["resource-groups"])
async def get_resource_group(
    group_key: str = Path(...),
    scope: Tuple[str, str, str] = Depends(_group_admin),
):
    realm_id, user_id, client_id = scope
    group, resources = get_runtime().groups.get_group(realm_id, user_id, client_id, group_key)
    return Envelope(status="ok", data=_group_response(group, resources))


@router.patch(_GROUPS_PATH + "/{group_key}", response_model=Envelope, tags=["resource-groups"])
async def update_resource_group(
    body: ResourceGroupUpdateRequest,
    group_key: str = Path(...),
    scope: Tuple[str, str, str] = Depends(_group_admin),
):
    realm_id, user_id, client_id = scope
    group, resources = get_runtime().groups.update_group(
        realm_id,
        user_id,
        client_id,
        group_key,
        name=body.name,
        description=body.description,
        is_default=body.is_default,
        identifiers=body.identifiers,
        lock=body.lock,
    )
    return Envelope(status="ok", data=_group_response(group, resources))


@router.post(
    _GROUPS_PATH + "/{group_key}/default", response_model=Envelope, tags=["resource-groups"]
)
async def set_default_resource_group(
    group_key: str = Path(...),
    scope: Tuple[str, str, str] = Depends(_group_admin),
):
    realm_id, user_id, client_id = scope
    runtime = get_runtime()
    runtime.groups.set_default(realm_id, user_id, client_id, group_key)
    group, resources = runtime.groups.get_group(realm_id, user_id, client_id, group_key)
    return Envelope(status="ok", data=_group_response(group, resources))


@router.delete(_GROUPS_PATH + "/{group_key}", response_model=Envelope, tags=["resource-groups"])
async def delete_resource_group(
    group_key: str = Path(...),
    scope: Tuple[str, str, str] = Depends(_group_admin),
):
    realm_id, user_id, client_id = scope
    get_runtime().groups.delete_group(realm_id, user_id, client_id, group_key)
    return Envelope(status="ok", data={"deleted": True, "group_key": group_key})


@router.put(
    _GROUPS_PATH + "/{group_key}/resources/{resource_id}/lock",
    response_model=Envelope,
    tags=["resource-groups"],
)
async def set_resource_lock(
    body: ResourceLockRequest,
    group_key: str = Path(...),
    resource_id: str = Path(...),
    scope: Tuple[str, str, str] = Depends(_group_admin),
):
    realm_id, user_id, client_id = scope
    res = get_runtime().groups.set_resource_lock(
        realm_id, user_id, client_id, resource_id, body.locked, group_key=group_key
    )
    return Envelope(
        status="ok",
        data=ResourceResponse(
            id=res.id,
            name=res.name,
            value=res.value,
            description=res.description,
            is_default=res.is_default,
            locked_at=res.locked_at,
        ),
    )
