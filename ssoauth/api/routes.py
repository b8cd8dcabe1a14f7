from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from ssoauth.api.schemas import (
    AuditEntryResponse,
    AuthzCheckRequest,
    AuthzCheckResponse,
    ClaimsResponse,
    ConfigEntryResponse,
    ConfigSetRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordSetRequest,
    RoleAssignRequest,
    RoleResponse,
    RoleUpsertRequest,
    ServiceAccessResponse,
    ServiceRegistrationRequest,
    ServiceResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserCreateRequest,
    UserResponse,
)
from ssoauth.logging import get_logger
from ssoauth.service.errors import MalformedToken, Unauthorized
from ssoauth.service.runtime import get_runtime
from ssoauth.service.tokens import AccessClaims, TokenPair
from ssoauth.storage.models import AuditEntry, Microservice, Role, SystemConfigEntry, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise MalformedToken("bearer token required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise MalformedToken("bearer token required")
    return token.strip()


async def get_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    return get_runtime().tokens.verify_access(_bearer(authorization))


def require_permission(permission: str):
    async def _dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> AccessClaims:
        return get_runtime().auth.authorize_request(
            _bearer(authorization), permission, ip_addr=_client_ip(request)
        )

    return _dependency


def _token_response(user_id: str, pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        user_id=user_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        refresh_expires_at=pair.refresh_expires_at,
        roles=list(pair.claims.roles),
    )


def _service_response(service: Microservice) -> ServiceResponse:
    return ServiceResponse(
        name=service.name,
        url=service.url,
        health_check_url=service.health_check_url,
        description=service.description,
        allowed_roles=sorted(service.allowed_roles),
        liveness=service.liveness.value,
        last_probe_at=service.last_probe_at,
        consecutive_failures=service.consecutive_failures,
    )


def _audit_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        timestamp=entry.timestamp,
        actor=entry.actor,
        action=entry.action,
        target=entry.target,
        outcome=entry.outcome,
        severity=entry.severity,
        ip_addr=entry.ip_addr,
        meta=entry.meta,
    )


async def _enforce_auth_rate_limit(request: Request, response: Response) -> None:
    """Per-client budget shared by the login and refresh endpoints."""
    runtime = get_runtime()
    await runtime.rate_limiter.enforce(
        f"auth:{_client_ip(request) or 'unknown'}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )


def _user_response(user: User, roles) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        is_active=user.is_active,
        is_verified=user.is_verified,
        roles=list(roles),
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        name=role.name, permissions=sorted(role.permissions), description=role.description
    )


def _config_response(entry: SystemConfigEntry) -> ConfigEntryResponse:
    return ConfigEntryResponse(
        key=entry.key,
        value=entry.value,
        data_type=entry.data_type.value,
        description=entry.description,
        updated_at=entry.updated_at,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange an identity and password for an access/refresh token pair.

    Raises:
        401: invalid credentials, locked or deactivated account (rendered identically)
        429: too many auth requests from this client
    """
    await _enforce_auth_rate_limit(request, response)
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.identity,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_token_response(result.user.id, result.tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request, response: Response):
    """Rotate a refresh token. Replaying an already-rotated token revokes its lineage."""
    await _enforce_auth_rate_limit(request, response)
    runtime = get_runtime()
    pair = runtime.auth.refresh(
        body.refresh_token,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_token_response(pair.claims.sub, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime()
    revoked = runtime.auth.logout(body.refresh_token, ip_addr=_client_ip(request))
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(claims: AccessClaims = Depends(get_claims)):
    runtime = get_runtime()
    count = runtime.auth.logout_all(claims.sub)
    return Envelope(status="ok", data={"lineages_revoked": count})


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(claims: AccessClaims = Depends(get_claims)):
    """Validate a bearer access token and echo its claims."""
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            user_id=claims.sub,
            roles=list(claims.roles),
            permissions=sorted(claims.permissions),
            expires_at=claims.exp,
            jti=claims.jti,
        ),
    )


@router.post("/authz/check", response_model=Envelope, tags=["authz"])
async def check_permission(
    body: AuthzCheckRequest,
    request: Request,
    claims: AccessClaims = Depends(get_claims),
):
    """Report whether the bearer's permission snapshot contains ``permission``."""
    runtime = get_runtime()
    allowed = runtime.auth.check_permission(claims, body.permission, ip_addr=_client_ip(request))
    return Envelope(
        status="ok", data=AuthzCheckResponse(allowed=allowed, permission=body.permission)
    )


@router.get("/services", response_model=Envelope, tags=["services"])
async def list_services(claims: AccessClaims = Depends(get_claims)):
    runtime = get_runtime()
    services = [_service_response(s) for s in runtime.registry.list_services()]
    return Envelope(status="ok", data={"items": services})


@router.post("/services", response_model=Envelope, tags=["services"])
async def register_service(
    body: ServiceRegistrationRequest,
    claims: AccessClaims = Depends(require_permission("microservices.create")),
):
    runtime = get_runtime()
    service = runtime.registry.register(
        body.name,
        body.url,
        health_check_url=body.health_check_url,
        description=body.description,
        allowed_roles=body.allowed_roles,
        actor=claims.sub,
    )
    return Envelope(status="ok", data=_service_response(service))


@router.get("/services/{name}/access", response_model=Envelope, tags=["services"])
async def service_access(name: str, claims: AccessClaims = Depends(get_claims)):
    """May the bearer use service ``name``? Evaluated against current stored roles."""
    runtime = get_runtime()
    runtime.registry.get(name)
    allowed = runtime.registry.authorize_principal(name, claims.sub)
    return Envelope(status="ok", data=ServiceAccessResponse(service=name, allowed=allowed))


@router.get("/audit", response_model=Envelope, tags=["audit"])
async def list_audit(
    limit: int = Query(100, ge=1, le=1000),
    actor: Optional[str] = Query(None, max_length=256),
    action: Optional[str] = Query(None, max_length=128),
    claims: AccessClaims = Depends(require_permission("system.logs")),
):
    runtime = get_runtime()
    entries = runtime.audit.list_entries(limit, actor=actor, action=action)
    return Envelope(status="ok", data={"items": [_audit_response(e) for e in entries]})


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=1000),
    claims: AccessClaims = Depends(require_permission("users.read")),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit)
    items = [_user_response(u, runtime.auth.roles_of(u.id)) for u in users]
    return Envelope(status="ok", data={"items": items})


@router.post("/users", response_model=Envelope, tags=["users"])
async def create_user(
    body: UserCreateRequest,
    claims: AccessClaims = Depends(require_permission("users.create")),
):
    runtime = get_runtime()
    user = runtime.auth.register(
        body.email,
        body.password,
        username=body.username,
        roles=tuple(body.roles),
        is_verified=body.is_verified,
        actor=claims.sub,
    )
    return Envelope(status="ok", data=_user_response(user, runtime.auth.roles_of(user.id)))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, claims: AccessClaims = Depends(require_permission("users.read"))):
    runtime = get_runtime()
    user = runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=_user_response(user, runtime.auth.roles_of(user.id)))


@router.post("/users/{user_id}/password", response_model=Envelope, tags=["users"])
async def set_user_password(
    user_id: str,
    body: PasswordSetRequest,
    claims: AccessClaims = Depends(require_permission("users.update")),
):
    """Replace a principal's password; every refresh lineage of theirs is revoked."""
    runtime = get_runtime()
    revoked = runtime.auth.set_password(user_id, body.password, actor=claims.sub)
    return Envelope(status="ok", data={"lineages_revoked": revoked})


@router.post("/users/{user_id}/deactivate", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str, claims: AccessClaims = Depends(require_permission("users.delete"))
):
    runtime = get_runtime()
    user = runtime.auth.deactivate(user_id, actor=claims.sub)
    return Envelope(status="ok", data=_user_response(user, runtime.auth.roles_of(user.id)))


@router.post("/users/{user_id}/reactivate", response_model=Envelope, tags=["users"])
async def reactivate_user(
    user_id: str, claims: AccessClaims = Depends(require_permission("users.update"))
):
    runtime = get_runtime()
    user = runtime.auth.reactivate(user_id, actor=claims.sub)
    return Envelope(status="ok", data=_user_response(user, runtime.auth.roles_of(user.id)))


@router.post("/users/{user_id}/roles", response_model=Envelope, tags=["users"])
async def assign_user_role(
    user_id: str,
    body: RoleAssignRequest,
    claims: AccessClaims = Depends(require_permission("users.update")),
):
    runtime = get_runtime()
    roles = runtime.auth.assign_role(user_id, body.role, actor=claims.sub)
    return Envelope(status="ok", data={"roles": roles})


@router.delete("/users/{user_id}/roles/{role}", response_model=Envelope, tags=["users"])
async def remove_user_role(
    user_id: str,
    role: str,
    claims: AccessClaims = Depends(require_permission("users.update")),
):
    runtime = get_runtime()
    roles = runtime.auth.remove_role(user_id, role, actor=claims.sub)
    return Envelope(status="ok", data={"roles": roles})


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(claims: AccessClaims = Depends(require_permission("roles.read"))):
    runtime = get_runtime()
    return Envelope(status="ok", data={"items": [_role_response(r) for r in runtime.rbac.list_roles()]})


@router.put("/roles/{name}", response_model=Envelope, tags=["roles"])
async def upsert_role(
    name: str,
    body: RoleUpsertRequest,
    request: Request,
    claims: AccessClaims = Depends(get_claims),
):
    """Create a role (``roles.create``) or replace its permissions (``roles.update``)."""
    runtime = get_runtime()
    required = "roles.update" if runtime.rbac.get_role(name) else "roles.create"
    if not runtime.auth.check_permission(claims, required, ip_addr=_client_ip(request)):
        raise Unauthorized(required)
    role = runtime.rbac.upsert_role(name, body.permissions, body.description)
    runtime.audit.record(
        "role.upserted",
        actor=claims.sub,
        target=role.name,
        meta={"permissions": sorted(role.permissions)},
    )
    return Envelope(status="ok", data=_role_response(role))


@router.get("/config", response_model=Envelope, tags=["config"])
async def list_config(claims: AccessClaims = Depends(require_permission("system.config"))):
    runtime = get_runtime()
    entries = sorted(runtime.system_config.list_entries().values(), key=lambda e: e.key)
    return Envelope(status="ok", data={"items": [_config_response(e) for e in entries]})


@router.put("/config/{key}", response_model=Envelope, tags=["config"])
async def set_config(
    key: str,
    body: ConfigSetRequest,
    claims: AccessClaims = Depends(require_permission("system.config")),
):
    runtime = get_runtime()
    entry = runtime.system_config.set(key, body.value, body.data_type, description=body.description)
    runtime.audit.record(
        "config.updated",
        actor=claims.sub,
        target=entry.key,
        meta={"value": entry.value, "data_type": entry.data_type.value},
    )
    return Envelope(status="ok", data=_config_response(entry))
