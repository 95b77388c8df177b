from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authplane.config import Settings
from authplane.logging import get_logger
from authplane.service.authorization import (
    AuthorizationEngine,
    AuthorizationResult,
    RequestContext,
    RouteRule,
)
from authplane.service.blacklist import TokenBlacklist
from authplane.service.devices import DeviceService, extract_device_info, fingerprint
from authplane.service.errors import (
    AccountNotActive,
    InvalidCredentials,
    InvalidInvitation,
    InvalidResetToken,
    NotFoundError,
    RefreshTokenNotFound,
    TenantAccessDenied,
    TokenInvalid,
    ValidationError,
)
from authplane.service.policy import PolicyEngine
from authplane.service.refresh_tokens import RefreshTokenManager
from authplane.service.tokens import AccessTokenIssuer, TokenClaims
from authplane.storage.models import (
    Device,
    InvitationStatus,
    PasswordReset,
    SessionSummary,
    SystemRole,
    User,
    utcnow,
)

logger = get_logger(__name__)

REVOKE_SCOPES = ("token", "device", "user")
_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"[0-9]")


@dataclass
class AuthBundle:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    user: User
    device: Optional[Device]
    expires_in: int


class AuthService:
    """Login, registration, rotation and revocation over the session components."""

    def __init__(
        self,
        store: Any,
        cache: Any,
        settings: Settings,
        *,
        policy: Optional[PolicyEngine] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.blacklist = TokenBlacklist(cache, store, settings)
        self.issuer = AccessTokenIssuer(store, settings)
        self.devices = DeviceService(store, self.blacklist, settings)
        self.refresh_tokens = RefreshTokenManager(store, self.blacklist, settings)
        self.policy = policy or PolicyEngine()
        self.engine = AuthorizationEngine(
            self.issuer, self.blacklist, self.policy, settings, store=store
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # -- passwords -----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return False

    def check_password_policy(self, password: str) -> None:
        if len(password or "") < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )
        if not _LETTER_RE.search(password) or not _DIGIT_RE.search(password):
            raise ValidationError(
                "password must contain a letter and a digit", detail={"field": "password"}
            )

    # -- session start -------------------------------------------------------

    async def _start_session(
        self, user: User, user_agent: Optional[str], ip: Optional[str]
    ) -> AuthBundle:
        info = extract_device_info(user_agent, ip)
        device = await self.devices.register_or_touch(
            user.id, user.company_id, info.device_id, info
        )
        # One live refresh token per (user, device)
        await self.refresh_tokens.revoke_for_device(user.id, device.device_id)
        refresh_token = self.refresh_tokens.issue(user.id, device.device_id, user.company_id)
        access_token = self.issuer.mint(user, device.device_id)
        self.store.update_last_login(user.id)
        return AuthBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            device=device,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    def _check_account(self, user: User) -> None:
        if not user.is_active:
            raise AccountNotActive()
        if user.system_role == SystemRole.SUPERADMIN.value:
            return
        company = self.store.get_company(user.company_id) if user.company_id else None
        if company is None or not company.is_active:
            raise TenantAccessDenied()

    async def authenticate(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthBundle:
        user = self.store.get_user_by_email(email or "")
        if user is None or not self.verify_password(user, password):
            logger.info("login_failed", user_id=user.id if user else None)
            raise InvalidCredentials()
        try:
            self._check_account(user)
        except (AccountNotActive, TenantAccessDenied) as exc:
            logger.info("login_rejected", user_id=user.id, reason=exc.reason)
            raise
        bundle = await self._start_session(user, user_agent, ip)
        logger.info(
            "login_succeeded",
            user_id=user.id,
            tenant_id=user.company_id,
            device_id=bundle.device.device_id if bundle.device else None,
        )
        return bundle

    login = authenticate

    async def register(
        self,
        email: str,
        password: str,
        company_slug: str,
        *,
        invitation_code: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthBundle:
        if not email or "@" not in email:
            raise ValidationError("invalid email", detail={"field": "email"})
        self.check_password_policy(password)
        company = self.store.get_company_by_slug(company_slug)
        if company is None or not company.is_active:
            raise NotFoundError("company not found")

        invitation = None
        if invitation_code:
            invitation = self.store.get_invitation(invitation_code)
            if (
                invitation is None
                or invitation.company_id != company.id
                or invitation.status != InvitationStatus.PENDING.value
            ):
                raise InvalidInvitation()
            if invitation.expires_at <= utcnow():
                self.store.set_invitation_status(
                    invitation.code, InvitationStatus.EXPIRED.value
                )
                raise InvalidInvitation()

        user = self.store.create_user(
            email,
            self.hash_password(password),
            company_id=company.id,
            first_name=first_name,
            last_name=last_name,
        )
        if invitation is not None:
            self.store.set_invitation_status(
                invitation.code, InvitationStatus.ACCEPTED.value, accepted_at=utcnow()
            )
        logger.info(
            "user_registered",
            user_id=user.id,
            tenant_id=company.id,
            invited=invitation is not None,
        )
        return await self._start_session(user, user_agent, ip)

    # -- password lifecycle --------------------------------------------------

    async def change_password(
        self, user_id: int, current_password: str, new_password: str
    ) -> int:
        """Replace the password of a signed-in user and end all of their sessions.

        The user-wide cutoff is written before the store changes, so
        :class:`InvalidationFailed` leaves the old password in place. Returns the
        number of refresh tokens removed.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not self.verify_password(user, current_password):
            raise ValidationError(
                "current password is incorrect", detail={"field": "current_password"}
            )
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one", detail={"field": "new_password"}
            )
        self.check_password_policy(new_password)
        new_hash = self.hash_password(new_password)
        await self.blacklist.blacklist_user(user_id)
        revoked = self.store.update_user_password(user_id, new_hash)
        logger.info("password_changed", user_id=user_id, revoked=revoked)
        return revoked

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a single-use reset token for ``email``.

        Earlier unused tokens of the user stop working. Unknown and inactive
        accounts return None rather than raising, which keeps registered
        addresses from being enumerated. Delivery of the token is left to the caller.
        """
        user = self.store.get_user_by_email(email or "")
        if user is None or not user.is_active:
            logger.info("password_reset_skipped", user_id=user.id if user else None)
            return None
        record = PasswordReset(
            token=secrets.token_urlsafe(32),
            user_id=user.id,
            expires_at=utcnow() + timedelta(seconds=self.settings.password_reset_ttl_seconds),
        )
        self.store.create_password_reset(record)
        logger.info("password_reset_issued", user_id=user.id, expires_at=record.expires_at.isoformat())
        return record.token

    async def reset_password(self, token: str, new_password: str) -> int:
        """Set a new password with a reset token and end every session of its owner.

        Returns the id of the user whose password changed.
        """
        self.check_password_policy(new_password)
        record = self.store.get_password_reset(token or "")
        if record is None or not record.is_usable():
            raise InvalidResetToken()
        user = self.store.get_user(record.user_id)
        if user is None:
            raise InvalidResetToken()
        if not user.is_active:
            raise AccountNotActive()
        new_hash = self.hash_password(new_password)
        await self.blacklist.blacklist_user(user.id)
        consumed = self.store.consume_password_reset(token, new_hash)
        if consumed is None:
            # Spent by a concurrent request between the read and the write
            raise InvalidResetToken()
        logger.info("password_reset_completed", user_id=user.id)
        return user.id

    # -- rotation ------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> AuthBundle:
        record = await self.refresh_tokens.rotate(refresh_token)
        user = self.store.get_user(record.user_id)
        device = self.devices.get_device(record.user_id, record.device_id)
        if user is None or device is None or not device.is_active:
            await self.refresh_tokens.revoke_for_device(record.user_id, record.device_id)
            raise RefreshTokenNotFound()
        try:
            self._check_account(user)
        except (AccountNotActive, TenantAccessDenied):
            await self.refresh_tokens.revoke_for_device(record.user_id, record.device_id)
            raise
        self.devices.touch(user.id, device.device_id)
        return AuthBundle(
            access_token=self.issuer.mint(user, device.device_id),
            refresh_token=record.token,
            user=user,
            device=device,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    # -- revocation ----------------------------------------------------------

    async def logout(
        self,
        principal: TokenClaims,
        access_token: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> int:
        """End the caller's device session.

        Every access token the device holds is cut off, not only the presented
        one. :class:`InvalidationFailed` propagates before anything else changes.
        """
        device_id = principal.device_id
        if not device_id or device_id == "unknown":
            device_id = fingerprint(user_agent, ip)
        await self.blacklist.blacklist_device(principal.sub, device_id)
        await self.blacklist.blacklist_token(access_token)
        revoked = await self.refresh_tokens.revoke_for_device(principal.sub, device_id)
        self.devices.deactivate_device(principal.sub, device_id)
        logger.info("logout", user_id=principal.sub, device_id=device_id)
        return revoked

    async def logout_all(self, user_id: int) -> int:
        """End every session of ``user_id``.

        The user-wide blacklist entry is written first; if it cannot be
        guaranteed nothing else happens and :class:`InvalidationFailed` propagates.
        """
        await self.blacklist.blacklist_user(user_id)
        revoked = await self.refresh_tokens.revoke_for_user(user_id)
        deactivated = self.devices.deactivate_all(user_id)
        logger.info(
            "logout_all", user_id=user_id, revoked=revoked, devices_deactivated=deactivated
        )
        return revoked

    async def revoke_device_access(self, user_id: int, device_id: str) -> int:
        await self.blacklist.blacklist_device(user_id, device_id)
        revoked = await self.refresh_tokens.revoke_for_device(user_id, device_id)
        self.devices.deactivate_device(user_id, device_id)
        logger.info("device_access_revoked", user_id=user_id, device_id=device_id)
        return revoked

    async def logout_other_devices(self, user_id: int, current_device_id: str) -> int:
        others = [
            d.device_id
            for d in self.devices.list_devices(user_id)
            if d.device_id != current_device_id
        ]
        for device_id in others:
            await self.revoke_device_access(user_id, device_id)
        logger.info("logout_other_devices", user_id=user_id, devices=len(others))
        return len(others)

    async def revoke(
        self,
        scope: str,
        *,
        access_token: Optional[str] = None,
        user_id: Optional[int] = None,
        device_id: Optional[str] = None,
    ) -> int:
        """Revoke at ``token``, ``device`` or ``user`` granularity.

        Returns the number of refresh tokens removed (1/0 for ``token``).
        """
        if scope == "token":
            if not access_token:
                raise TokenInvalid()
            return 1 if await self.blacklist.blacklist_token(access_token) else 0
        if scope == "device":
            if user_id is None or not device_id:
                raise ValidationError("user_id and device_id are required")
            return await self.revoke_device_access(user_id, device_id)
        if scope == "user":
            if user_id is None:
                raise ValidationError("user_id is required")
            return await self.logout_all(user_id)
        raise ValidationError(
            f"unknown revoke scope {scope!r}", detail={"allowed": list(REVOKE_SCOPES)}
        )

    async def invalidate_user_permissions(self, user_id: int) -> float:
        """Force fresh claims: tokens issued so far are rejected, refresh still works."""
        cutoff = await self.blacklist.blacklist_user(user_id)
        logger.info("permissions_invalidated", user_id=user_id)
        return cutoff

    async def invalidate_users_permissions(self, user_ids: Sequence[int]) -> List[float]:
        if not user_ids:
            return []
        cutoffs = await self.blacklist.blacklist_users(list(user_ids))
        logger.info("permissions_invalidated", users=len(user_ids))
        return cutoffs

    async def invalidate_company_permissions(self, company_id: int) -> List[float]:
        cutoffs = await self.invalidate_users_permissions(
            self.store.list_company_user_ids(company_id)
        )
        self.policy.load_from_store(self.store)
        return cutoffs

    # -- queries -------------------------------------------------------------

    async def authorize(self, ctx: RequestContext, rule: RouteRule) -> AuthorizationResult:
        return await self.engine.authorize(ctx, rule)

    def list_sessions(self, user_id: int) -> List[SessionSummary]:
        return self.refresh_tokens.active_sessions(user_id)

    def cleanup(self) -> Dict[str, int]:
        """Periodic sweep of expired tokens, stale devices and fallback rows."""
        summary = {
            "refresh_tokens": self.refresh_tokens.cleanup_expired(),
            "devices": self.devices.cleanup_inactive(),
            "blacklist_fallback": self.blacklist.purge_fallback(),
            "password_resets": self.store.delete_expired_password_resets(),
        }
        logger.info("auth_cleanup_completed", **summary)
        return summary
