from __future__ import annotations

import secrets
from typing import Any, List, Optional

from authplane.config import Settings
from authplane.logging import get_logger
from authplane.service.blacklist import TokenBlacklist
from authplane.service.errors import RefreshTokenNotFound
from authplane.storage.models import RefreshToken, SessionSummary, utcnow

logger = get_logger(__name__)

# 32 random bytes, hex encoded
REFRESH_TOKEN_BYTES = 32


class RefreshTokenManager:
    """Issues, validates, rotates and revokes opaque refresh tokens.

    Rotation has two failure tiers. The store transaction that swaps the old
    row for the new one is authoritative and fails closed. The cache blacklist
    entry for the consumed token is written afterwards and only logged on
    failure, because the deleted row already prevents reuse.
    """

    def __init__(self, store: Any, blacklist: TokenBlacklist, settings: Settings) -> None:
        self.store = store
        self.blacklist = blacklist
        self.settings = settings

    def _new_record(
        self, user_id: int, device_id: str, company_id: Optional[int]
    ) -> RefreshToken:
        return RefreshToken.new(
            secrets.token_hex(REFRESH_TOKEN_BYTES),
            user_id,
            device_id,
            company_id,
            ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )

    def issue(self, user_id: int, device_id: str, company_id: Optional[int]) -> str:
        record = self.store.create_refresh_token(
            self._new_record(user_id, device_id, company_id)
        )
        logger.info(
            "refresh_token_issued",
            user_id=user_id,
            device_id=device_id,
            expires_at=record.expires_at.isoformat(),
        )
        return record.token

    async def validate(self, token: str) -> Optional[RefreshToken]:
        if not token or await self.blacklist.is_refresh_revoked(token):
            return None
        record = self.store.get_refresh_token(token)
        if record is None or record.is_expired():
            return None
        return record

    async def rotate(self, old_token: str) -> RefreshToken:
        """Consume ``old_token`` and return the record that replaces it.

        Unknown, already rotated and expired tokens all raise
        :class:`RefreshTokenNotFound` and leave the store untouched.
        """
        if not old_token or await self.blacklist.is_refresh_revoked(old_token):
            logger.warning("refresh_rotation_rejected", stage="blacklist")
            raise RefreshTokenNotFound()
        # user/device/company are copied from the consumed row by the store
        placeholder = self._new_record(0, "", None)
        consumed = self.store.rotate_refresh_token(old_token, placeholder)
        if consumed is None:
            logger.warning("refresh_rotation_rejected", stage="store")
            raise RefreshTokenNotFound()

        written = await self.blacklist.blacklist_refresh_tokens([consumed])
        if not written:
            logger.warning(
                "refresh_blacklist_failed",
                user_id=consumed.user_id,
                device_id=consumed.device_id,
            )
        logger.info(
            "refresh_token_rotated", user_id=consumed.user_id, device_id=consumed.device_id
        )
        return RefreshToken(
            token=placeholder.token,
            user_id=consumed.user_id,
            device_id=consumed.device_id,
            company_id=consumed.company_id,
            expires_at=placeholder.expires_at,
            created_at=placeholder.created_at,
        )

    async def _revoke(self, user_id: int, device_id: Optional[str]) -> int:
        removed = self.store.delete_refresh_tokens(user_id, device_id)
        live = [r for r in removed if not r.is_expired()]
        if live:
            await self.blacklist.blacklist_refresh_tokens(live)
        logger.info(
            "refresh_tokens_revoked",
            user_id=user_id,
            device_id=device_id,
            revoked=len(removed),
        )
        return len(removed)

    async def revoke_for_user(self, user_id: int) -> int:
        return await self._revoke(user_id, None)

    async def revoke_for_device(self, user_id: int, device_id: str) -> int:
        return await self._revoke(user_id, device_id)

    def active_sessions(self, user_id: int) -> List[SessionSummary]:
        return self.store.list_active_sessions(user_id)

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(utcnow())
        if removed:
            logger.info("expired_refresh_tokens_removed", removed=removed)
        return removed
