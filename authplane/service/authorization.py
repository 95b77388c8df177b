from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple, Union

from authplane.config import Settings
from authplane.logging import get_logger
from authplane.service.blacklist import TokenBlacklist
from authplane.service.errors import (
    AuthenticationRequired,
    ForbiddenError,
    PolicyDenied,
    ServiceError,
    TenantAccessDenied,
    TenantRequired,
    TokenBlacklisted,
)
from authplane.service.policy import PolicyEngine, user_subject
from authplane.service.tokens import AccessTokenIssuer, TokenClaims
from authplane.storage.models import SystemRole

logger = get_logger(__name__)

AUTHENTICATED = "AUTHENTICATED"
TENANT_QUERY_PARAM = "companyId"
_DECIMAL_RE = re.compile(r"^[0-9]{1,10}$")

# A requirement is one name, or a tuple of names that must all hold
Requirement = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class RouteRule:
    """Authorization metadata attached to one endpoint at registration time."""

    public: bool = False
    superadmin_only: bool = False
    resource: Optional[str] = None
    action: Optional[str] = None
    requirements: Tuple[Requirement, ...] = ()
    permissions: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()

    @property
    def declares_policy(self) -> bool:
        return bool(self.resource and self.action)

    @property
    def declares_legacy(self) -> bool:
        return bool(self.requirements or self.permissions or self.roles)


def _freeze(query: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return MappingProxyType(dict(query or {}))


@dataclass(frozen=True)
class RequestContext:
    """Everything the decision pipeline may look at for one request."""

    route: str
    authorization: Optional[str] = None
    query: Mapping[str, str] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "query", _freeze(self.query))


@dataclass(frozen=True)
class Allow:
    reason: str


@dataclass(frozen=True)
class Deny:
    error: ServiceError


@dataclass(frozen=True)
class NotApplicable:
    pass


Decision = Union[Allow, Deny, NotApplicable]
NOT_APPLICABLE = NotApplicable()


@dataclass(frozen=True)
class Principal:
    claims: TokenClaims
    tenant_id: Optional[int]
    elevated: bool


@dataclass(frozen=True)
class AuthorizationResult:
    principal: Optional[TokenClaims]
    tenant_id: Optional[int]
    global_access: bool = False
    access_token: Optional[str] = field(default=None, repr=False)
    decided_by: str = "default"

    @property
    def user_id(self) -> Optional[int]:
        return self.principal.sub if self.principal else None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credential = header.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    return credential.strip()


def parse_tenant_param(raw: Optional[str], max_tenant_id: int) -> Optional[int]:
    """Validate a tenant id taken from a request parameter.

    Returns None when ``raw`` is absent. Anything but a decimal positive
    integer no larger than ``max_tenant_id`` raises :class:`TenantAccessDenied`.
    """
    if raw is None:
        return None
    if not isinstance(raw, str) or not _DECIMAL_RE.match(raw):
        raise TenantAccessDenied()
    value = int(raw)
    if value <= 0 or value > max_tenant_id:
        raise TenantAccessDenied()
    return value


# -- strategies ---------------------------------------------------------------


class ElevatedRoleStrategy:
    name = "elevated_role"

    def evaluate(self, principal: Principal, rule: RouteRule) -> Decision:
        if principal.elevated:
            return Allow(self.name)
        return NOT_APPLICABLE


class PolicyStrategy:
    """Fine-grained check; a denial here never falls through to legacy rules."""

    name = "policy"

    def __init__(self, policy: PolicyEngine) -> None:
        self.policy = policy

    def evaluate(self, principal: Principal, rule: RouteRule) -> Decision:
        if not rule.declares_policy:
            return NOT_APPLICABLE
        slug = principal.claims.tenant_slug
        if not slug:
            return Deny(PolicyDenied())
        subject = user_subject(slug, principal.claims.sub)
        if self.policy.enforce(subject, rule.resource, rule.action):
            return Allow(self.name)
        return Deny(PolicyDenied())


class LegacyStrategy:
    name = "legacy"

    @staticmethod
    def _holds(name: str, claims: TokenClaims) -> bool:
        if name == AUTHENTICATED:
            return True
        if name in SystemRole.__members__:
            return claims.system_role in (name, SystemRole.SUPERADMIN.value)
        if "." in name:
            return name in claims.permissions
        return name in claims.roles

    def _requirement_met(self, requirement: Requirement, claims: TokenClaims) -> bool:
        names: Iterable[str] = (requirement,) if isinstance(requirement, str) else requirement
        return all(self._holds(n, claims) for n in names)

    def evaluate(self, principal: Principal, rule: RouteRule) -> Decision:
        if not rule.declares_legacy:
            return NOT_APPLICABLE
        claims = principal.claims
        if rule.requirements and not any(
            self._requirement_met(r, claims) for r in rule.requirements
        ):
            return Deny(ForbiddenError("insufficient permissions"))
        if rule.permissions and not all(p in claims.permissions for p in rule.permissions):
            return Deny(ForbiddenError("insufficient permissions"))
        if rule.roles and not any(self._holds(r, claims) for r in rule.roles):
            return Deny(ForbiddenError("insufficient role"))
        return Allow(self.name)


# -- engine -------------------------------------------------------------------


class AuthorizationEngine:
    """Per-request decision pipeline.

    Public routes are allowed outright. Otherwise the bearer token is verified
    and checked against the blacklist, the tenant is resolved, and the ordered
    strategies run until one returns something other than ``NotApplicable``.
    """

    def __init__(
        self,
        issuer: AccessTokenIssuer,
        blacklist: TokenBlacklist,
        policy: PolicyEngine,
        settings: Settings,
        *,
        store: Any = None,
        strategies: Optional[Sequence[Any]] = None,
    ) -> None:
        self.issuer = issuer
        self.blacklist = blacklist
        self.policy = policy
        self.settings = settings
        self.store = store
        self.strategies = list(
            strategies
            if strategies is not None
            else (ElevatedRoleStrategy(), PolicyStrategy(policy), LegacyStrategy())
        )

    async def authenticate(self, ctx: RequestContext) -> Tuple[str, TokenClaims]:
        token = extract_bearer(ctx.authorization)
        if not token:
            raise AuthenticationRequired()
        claims = self.issuer.decode(token)
        if await self.blacklist.is_blacklisted(token, claims):
            logger.info(
                "access_token_blacklisted",
                user_id=claims.sub,
                device_id=claims.device_id,
                route=ctx.route,
            )
            raise TokenBlacklisted()
        return token, claims

    def resolve_tenant(
        self, ctx: RequestContext, claims: TokenClaims, elevated: bool
    ) -> Tuple[Optional[int], bool]:
        requested = parse_tenant_param(
            ctx.query.get(TENANT_QUERY_PARAM), self.settings.max_tenant_id
        )
        if elevated:
            if requested is not None:
                return requested, False
            return claims.tenant_id, claims.tenant_id is None
        if claims.tenant_id is None:
            raise TenantRequired()
        if requested is not None and requested != claims.tenant_id:
            raise TenantAccessDenied()
        if self.store is not None:
            company = self.store.get_company(claims.tenant_id)
            if company is None or not company.is_active:
                raise TenantAccessDenied()
        return claims.tenant_id, False

    async def authorize(self, ctx: RequestContext, rule: RouteRule) -> AuthorizationResult:
        if rule.public:
            return AuthorizationResult(principal=None, tenant_id=None, decided_by="public")

        token, claims = await self.authenticate(ctx)
        elevated = claims.system_role == SystemRole.SUPERADMIN.value
        try:
            if rule.superadmin_only and not elevated:
                raise ForbiddenError("superadmin access required")
            tenant_id, global_access = self.resolve_tenant(ctx, claims, elevated)
        except ServiceError as exc:
            self._log_denied(ctx, claims, exc, stage="tenant")
            raise

        principal = Principal(claims=claims, tenant_id=tenant_id, elevated=elevated)
        decided_by = "default"
        for strategy in self.strategies:
            decision = strategy.evaluate(principal, rule)
            if isinstance(decision, Deny):
                self._log_denied(ctx, claims, decision.error, stage=strategy.name)
                raise decision.error
            if isinstance(decision, Allow):
                decided_by = decision.reason
                break
        return AuthorizationResult(
            principal=claims,
            tenant_id=tenant_id,
            global_access=global_access,
            access_token=token,
            decided_by=decided_by,
        )

    @staticmethod
    def _log_denied(
        ctx: RequestContext, claims: TokenClaims, exc: ServiceError, *, stage: str
    ) -> None:
        logger.warning(
            "authorization_denied",
            route=ctx.route,
            stage=stage,
            reason=exc.reason,
            user_id=claims.sub,
            tenant_id=claims.tenant_id,
        )
