from __future__ import annotations

from typing import Callable, Dict, Optional

from fastapi import APIRouter, Depends, Path, Request

from authplane.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    DeviceInfoResponse,
    Envelope,
    InvalidateResponse,
    LoginRequest,
    MeResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordUpdatedResponse,
    RefreshRequest,
    RegisterRequest,
    RevokeRequest,
    RevokeResponse,
    SessionInfo,
    SessionListResponse,
    UserInfo,
)
from authplane.logging import get_correlation_id, get_logger
from authplane.service.auth import AuthBundle
from authplane.service.authorization import (
    AUTHENTICATED,
    AuthorizationResult,
    RequestContext,
    RouteRule,
)
from authplane.service.errors import ForbiddenError, NotFoundError, TokenInvalid
from authplane.service.runtime import get_runtime
from authplane.service.tokens import peek_claims
from authplane.storage.models import Device, SystemRole, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

USERS_MANAGE = "users.manage"

# Authorization metadata for every route, looked up by name at request time
ROUTE_RULES: Dict[str, RouteRule] = {
    "auth.login": RouteRule(public=True),
    "auth.register": RouteRule(public=True),
    "auth.refresh": RouteRule(public=True),
    "auth.password_forgot": RouteRule(public=True),
    "auth.password_reset": RouteRule(public=True),
    "auth.password_change": RouteRule(requirements=(AUTHENTICATED,)),
    "auth.logout": RouteRule(requirements=(AUTHENTICATED,)),
    "auth.logout_all": RouteRule(requirements=(AUTHENTICATED,)),
    "auth.logout_others": RouteRule(requirements=(AUTHENTICATED,)),
    "auth.sessions": RouteRule(requirements=(AUTHENTICATED,)),
    "auth.device_revoke": RouteRule(requirements=(AUTHENTICATED,)),
    "auth.revoke": RouteRule(requirements=(AUTHENTICATED,)),
    "auth.me": RouteRule(requirements=(AUTHENTICATED,)),
    "admin.user_invalidate": RouteRule(requirements=(SystemRole.ADMIN.value, USERS_MANAGE)),
    "admin.user_sessions": RouteRule(resource="sessions", action="read"),
}


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def require(route_name: str) -> Callable:
    """Build a dependency that authorizes the caller for ``route_name``."""
    rule = ROUTE_RULES[route_name]

    async def _authorize(request: Request) -> AuthorizationResult:
        ctx = RequestContext(
            route=route_name,
            authorization=request.headers.get("authorization"),
            query=dict(request.query_params),
            correlation_id=get_correlation_id(),
        )
        return await get_runtime().auth.authorize(ctx, rule)

    return _authorize


def _user_info(user: User) -> UserInfo:
    return UserInfo(
        id=user.id,
        email=user.email,
        company_id=user.company_id,
        system_role=user.system_role,
        status=user.status,
        first_name=user.first_name,
        last_name=user.last_name,
    )


def _device_info(device: Optional[Device]) -> Optional[DeviceInfoResponse]:
    if device is None:
        return None
    return DeviceInfoResponse(
        device_id=device.device_id,
        device_name=device.device_name,
        device_type=device.device_type,
        browser=device.browser,
        os=device.os,
        ip=device.ip,
        is_active=device.is_active,
        last_access_at=device.last_access_at,
    )


def _auth_envelope(bundle: AuthBundle) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            expires_in=bundle.expires_in,
            user=_user_info(bundle.user),
            device=_device_info(bundle.device),
        ),
    )


def _ensure_can_manage(
    result: AuthorizationResult, target_user_id: int, *, permission: Optional[str] = None
) -> User:
    """Allow acting on another user only for superadmins or same-tenant managers.

    A same-tenant manager is an ADMIN, or a holder of ``permission`` when the
    route grants one.
    """
    runtime = get_runtime()
    target = runtime.store.get_user(target_user_id)
    if target is None:
        raise NotFoundError("user not found")
    principal = result.principal
    if principal.sub == target.id:
        return target
    if principal.system_role == SystemRole.SUPERADMIN.value:
        if result.global_access or target.company_id == result.tenant_id:
            return target
        raise ForbiddenError("user is outside the selected tenant")
    same_tenant = target.company_id is not None and target.company_id == result.tenant_id
    if same_tenant and principal.system_role == SystemRole.ADMIN.value:
        return target
    if same_tenant and permission is not None and permission in principal.permissions:
        return target
    raise ForbiddenError("cannot manage this user")


# -- public ---------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, request: Request, _: AuthorizationResult = Depends(require("auth.login"))
):
    """Authenticate with email and password and start a device session.

    Raises:
        401: invalid credentials
        403: account not active
    """
    bundle = await get_runtime().auth.authenticate(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    return _auth_envelope(bundle)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    _: AuthorizationResult = Depends(require("auth.register")),
):
    bundle = await get_runtime().auth.register(
        body.email,
        body.password,
        body.company_slug,
        invitation_code=body.invitation_code,
        first_name=body.first_name,
        last_name=body.last_name,
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    return _auth_envelope(bundle)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RefreshRequest, _: AuthorizationResult = Depends(require("auth.refresh"))
):
    """Rotate a refresh token; each token can be used successfully once."""
    bundle = await get_runtime().auth.refresh(body.refresh_token)
    return _auth_envelope(bundle)


@router.post("/auth/password/forgot", response_model=Envelope, status_code=202, tags=["auth"])
async def forgot_password(
    body: PasswordResetRequest,
    _: AuthorizationResult = Depends(require("auth.password_forgot")),
):
    """Issue a reset token for the account, if there is one.

    The response is the same whether or not the address is registered and
    never carries the token; delivering it is outside this service.
    """
    get_runtime().auth.request_password_reset(body.email)
    return Envelope(status="ok")


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetConfirm,
    _: AuthorizationResult = Depends(require("auth.password_reset")),
):
    """Set a new password with a reset token; every session of the user ends.

    Raises:
        400: unknown, used or expired token, or a weak password
        403: account not active
    """
    user_id = await get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=PasswordUpdatedResponse(user_id=user_id))


# -- session management ----------------------------------------------------------


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    result: AuthorizationResult = Depends(require("auth.password_change")),
):
    revoked = await get_runtime().auth.change_password(
        result.user_id, body.current_password, body.new_password
    )
    return Envelope(
        status="ok", data=PasswordUpdatedResponse(user_id=result.user_id, revoked=revoked)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, result: AuthorizationResult = Depends(require("auth.logout"))
):
    revoked = await get_runtime().auth.logout(
        result.principal,
        result.access_token,
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    return Envelope(status="ok", data=RevokeResponse(scope="token", revoked=revoked))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(result: AuthorizationResult = Depends(require("auth.logout_all"))):
    revoked = await get_runtime().auth.logout_all(result.user_id)
    return Envelope(status="ok", data=RevokeResponse(scope="user", revoked=revoked))


@router.post("/auth/logout-others", response_model=Envelope, tags=["auth"])
async def logout_others(
    result: AuthorizationResult = Depends(require("auth.logout_others")),
):
    revoked = await get_runtime().auth.logout_other_devices(
        result.user_id, result.principal.device_id
    )
    return Envelope(status="ok", data=RevokeResponse(scope="device", revoked=revoked))


def _session_list(user_id: int, current_device_id: Optional[str]) -> SessionListResponse:
    sessions = get_runtime().auth.list_sessions(user_id)
    return SessionListResponse(
        items=[
            SessionInfo(
                device_id=s.device_id,
                device_name=s.device_name,
                device_type=s.device_type,
                browser=s.browser,
                os=s.os,
                ip=s.ip,
                last_access_at=s.last_access_at,
                created_at=s.created_at,
                expires_at=s.expires_at,
                current=s.device_id == current_device_id,
            )
            for s in sessions
        ]
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(result: AuthorizationResult = Depends(require("auth.sessions"))):
    return Envelope(
        status="ok", data=_session_list(result.user_id, result.principal.device_id)
    )


@router.delete("/auth/devices/{device_id}", response_model=Envelope, tags=["auth"])
async def revoke_device(
    device_id: str = Path(..., max_length=64),
    result: AuthorizationResult = Depends(require("auth.device_revoke")),
):
    runtime = get_runtime()
    if runtime.auth.devices.get_device(result.user_id, device_id) is None:
        raise NotFoundError("device not found")
    revoked = await runtime.auth.revoke_device_access(result.user_id, device_id)
    return Envelope(status="ok", data=RevokeResponse(scope="device", revoked=revoked))


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke(
    body: RevokeRequest, result: AuthorizationResult = Depends(require("auth.revoke"))
):
    """Revoke a single access token, one device, or every session of a user."""
    runtime = get_runtime()
    if body.scope == "token":
        token = body.token or result.access_token
        claims = peek_claims(token)
        if not claims or claims.get("sub") is None:
            raise TokenInvalid()
        _ensure_can_manage(result, int(claims["sub"]))
        revoked = await runtime.auth.revoke("token", access_token=token)
    else:
        target = _ensure_can_manage(result, body.user_id or result.user_id)
        revoked = await runtime.auth.revoke(
            body.scope, user_id=target.id, device_id=body.device_id
        )
    logger.info(
        "revoke_requested",
        scope=body.scope,
        actor_id=result.user_id,
        revoked=revoked,
    )
    return Envelope(status="ok", data=RevokeResponse(scope=body.scope, revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(result: AuthorizationResult = Depends(require("auth.me"))):
    claims = result.principal
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=claims.sub,
            tenant_id=result.tenant_id,
            tenant_slug=claims.tenant_slug,
            device_id=claims.device_id,
            system_role=claims.system_role,
            roles=list(claims.roles),
            permissions=list(claims.permissions),
            global_access=result.global_access,
        ),
    )


# -- administration --------------------------------------------------------------


@router.post("/admin/users/{user_id}/invalidate", response_model=Envelope, tags=["admin"])
async def invalidate_user(
    user_id: int = Path(..., gt=0),
    result: AuthorizationResult = Depends(require("admin.user_invalidate")),
):
    """Reject every access token issued to ``user_id`` so far.

    Returns 503 when the invalidation could not be guaranteed.
    """
    target = _ensure_can_manage(result, user_id, permission=USERS_MANAGE)
    cutoff = await get_runtime().auth.invalidate_user_permissions(target.id)
    return Envelope(status="ok", data=InvalidateResponse(user_id=target.id, cutoff=cutoff))


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_sessions(
    user_id: int = Path(..., gt=0),
    result: AuthorizationResult = Depends(require("admin.user_sessions")),
):
    target = get_runtime().store.get_user(user_id)
    if target is None or (not result.global_access and target.company_id != result.tenant_id):
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_session_list(target.id, None))
