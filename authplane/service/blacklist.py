from __future__ import annotations

import asyncio
import hashlib
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Sequence

from authplane.config import Settings
from authplane.logging import get_logger, token_fingerprint
from authplane.service.errors import InvalidationFailed
from authplane.service.tokens import TokenClaims, peek_claims
from authplane.storage.models import BlacklistFallbackEntry, RefreshToken, utcnow
from authplane.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def token_key(token: str) -> str:
    # Credentials are never used verbatim as cache or table keys
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return f"blacklist:token:{digest}"


def user_key(user_id: int) -> str:
    return f"blacklist:user:{user_id}"


def device_key(user_id: int, device_id: str) -> str:
    return f"blacklist:device:{user_id}:{device_id}"


class TokenBlacklist:
    """Multi-granularity invalidation with a cache tier and a durable tier.

    Reads fail open: if neither tier answers, a token is treated as not
    blacklisted. User and device writes fail closed with
    :class:`InvalidationFailed`. Single-token writes only log on failure.
    """

    def __init__(self, cache: Any, store: Any, settings: Settings) -> None:
        self.cache = cache
        self.store = store
        self.settings = settings

    @property
    def scope_ttl_seconds(self) -> int:
        """Lifetime of user/device entries: the longest an access token can live."""
        return self.settings.access_token_ttl_seconds + self.settings.jwt_leeway_seconds

    # -- reads ---------------------------------------------------------------

    async def _lookup(self, key: str) -> Optional[str]:
        if self.cache is not None:
            try:
                value = await self.cache.get(key)
            except Exception as exc:
                logger.warning(
                    "blacklist_cache_read_failed", key_kind=key.split(":")[1], error=str(exc)
                )
                value = None
            if value is not None:
                return value
        entry = self.store.get_blacklist_entry(key)
        return entry.value if entry else None

    async def _lookup_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Read ``keys`` in one cache round-trip; misses go to the fallback table."""
        values: List[Optional[str]] = [None] * len(keys)
        if self.cache is not None:
            try:
                values = list(await self.cache.get_many(list(keys)))
            except Exception as exc:
                logger.warning("blacklist_cache_read_failed", key_kind="batch", error=str(exc))
        for index, key in enumerate(keys):
            if values[index] is None:
                entry = self.store.get_blacklist_entry(key)
                values[index] = entry.value if entry else None
        return values

    @staticmethod
    def _cutoff_covers(raw: Optional[str], issued_at: float) -> bool:
        if raw is None:
            return False
        try:
            cutoff = float(raw)
        except ValueError:
            return False
        return issued_at <= cutoff

    async def is_blacklisted(
        self, access_token: str, claims: Optional[TokenClaims] = None
    ) -> bool:
        try:
            keys = [token_key(access_token)]
            issued_at = 0.0
            if claims is not None:
                sub, device_id, issued_at = claims.sub, claims.device_id, claims.iat
            else:
                payload = peek_claims(access_token) or {}
                sub = int(payload["sub"]) if payload.get("sub") is not None else None
                device_id = payload.get("did")
                if payload.get("iat") is None:
                    sub = None
                else:
                    issued_at = float(payload["iat"])
            if sub is not None:
                keys.append(user_key(sub))
                if device_id:
                    keys.append(device_key(sub, device_id))
            token_entry, *cutoffs = await self._lookup_many(keys)
            if token_entry is not None:
                return True
            return any(self._cutoff_covers(raw, issued_at) for raw in cutoffs)
        except Exception as exc:
            logger.warning("blacklist_check_failed", error=str(exc))
            return False

    async def is_refresh_revoked(self, token: str) -> bool:
        """Rotation-path check; unlike :meth:`is_blacklisted` it fails closed."""
        try:
            return await self._lookup(token_key(token)) is not None
        except Exception as exc:
            logger.error("refresh_revocation_check_failed", error=str(exc))
            return True

    # -- writes --------------------------------------------------------------

    def _mirror(self, entries: Sequence[BlacklistFallbackEntry]) -> None:
        self.store.put_blacklist_entries(list(entries))

    async def blacklist_token(self, access_token: str) -> bool:
        """Blacklist one access token for as long as ``decode`` would accept it.

        That is the remaining lifetime plus the expiry leeway. Returns False
        when the token is undecodable, past the leeway, or the write failed;
        none of those are raised.
        """
        payload = peek_claims(access_token)
        if not payload or not payload.get("exp"):
            return False
        try:
            ttl = int(
                float(payload["exp"]) + self.settings.jwt_leeway_seconds - time.time()
            )
        except (TypeError, ValueError):
            return False
        if ttl <= 0:
            return False
        key = token_key(access_token)
        expires_at = utcnow() + timedelta(seconds=ttl)
        ok = True
        try:
            self._mirror([BlacklistFallbackEntry(key=key, value="1", expires_at=expires_at)])
        except Exception as exc:
            ok = False
            logger.warning("blacklist_fallback_write_failed", key_kind="token", error=str(exc))
        if self.cache is not None:
            try:
                await self.cache.set(key, "1", ttl)
            except Exception as exc:
                ok = False
                logger.warning("blacklist_token_failed", error=str(exc))
        logger.info(
            "access_token_revoked",
            user_id=payload.get("sub"),
            ref=token_fingerprint(access_token),
            stored=ok,
        )
        return ok

    async def blacklist_refresh_tokens(self, records: Iterable[RefreshToken]) -> int:
        """Blacklist refresh tokens in one pipelined cache write.

        Best effort: the store rows are the authority for refresh tokens, so
        failures are logged and the count of entries written is returned.
        """
        items = []
        entries = []
        for record in records:
            ttl = RedisCache._ttl_seconds(record.expires_at)
            key = token_key(record.token)
            items.append((key, "1", ttl))
            entries.append(
                BlacklistFallbackEntry(
                    key=key, value="1", expires_at=utcnow() + timedelta(seconds=ttl)
                )
            )
        if not items:
            return 0
        written = len(items)
        try:
            self._mirror(entries)
        except Exception as exc:
            logger.warning(
                "blacklist_fallback_write_failed", key_kind="refresh", count=len(entries), error=str(exc)
            )
        if self.cache is not None:
            try:
                await self.cache.set_many(items)
            except Exception as exc:
                written = 0
                logger.warning("refresh_blacklist_failed", count=len(items), error=str(exc))
        return written

    async def _current_cutoff(self, key: str) -> Optional[float]:
        try:
            raw = await self._lookup(key)
            return float(raw) if raw is not None else None
        except Exception as exc:
            logger.warning("blacklist_cutoff_read_failed", key_kind=key.split(":")[1], error=str(exc))
            return None

    async def _blacklist_scope(self, key: str, scope: str, at: Optional[float], **log_fields) -> float:
        cutoff = round(at if at is not None else time.time(), 3)
        # A cutoff only moves forward; an earlier ``at`` never un-revokes tokens
        existing = await self._current_cutoff(key)
        if existing is not None and existing > cutoff:
            cutoff = existing
        expires_at = datetime.fromtimestamp(cutoff, tz=timezone.utc) + timedelta(
            seconds=self.scope_ttl_seconds
        )
        ttl = max(1, int(expires_at.timestamp() - time.time()))
        entry = BlacklistFallbackEntry(key=key, value=repr(cutoff), expires_at=expires_at)
        try:
            self._mirror([entry])
        except Exception as exc:
            if self.cache is None:
                logger.error("blacklist_scope_failed", scope=scope, error=str(exc), **log_fields)
                raise InvalidationFailed() from exc
            logger.warning(
                "blacklist_fallback_write_failed", key_kind=scope, error=str(exc), **log_fields
            )
        if self.cache is not None:
            try:
                await self.cache.set(key, repr(cutoff), ttl)
            except Exception as exc:
                logger.error("blacklist_scope_failed", scope=scope, error=str(exc), **log_fields)
                raise InvalidationFailed() from exc
        logger.info("blacklist_scope_written", scope=scope, cutoff=cutoff, **log_fields)
        return cutoff

    async def blacklist_user(self, user_id: int, *, at: Optional[float] = None) -> float:
        """Reject every access token of ``user_id`` issued at or before ``at``."""
        return await self._blacklist_scope(user_key(user_id), "user", at, user_id=user_id)

    async def blacklist_device(
        self, user_id: int, device_id: str, *, at: Optional[float] = None
    ) -> float:
        return await self._blacklist_scope(
            device_key(user_id, device_id), "device", at, user_id=user_id, device_id=device_id
        )

    async def blacklist_users(self, user_ids: Sequence[int]) -> List[float]:
        return list(await asyncio.gather(*(self.blacklist_user(u) for u in user_ids)))

    async def _clear(self, key: str) -> None:
        self.store.delete_blacklist_entry(key)
        if self.cache is not None:
            await self.cache.delete(key)

    async def clear_user_blacklist(self, user_id: int) -> None:
        await self._clear(user_key(user_id))
        logger.info("blacklist_scope_cleared", scope="user", user_id=user_id)

    async def clear_device_blacklist(self, user_id: int, device_id: str) -> None:
        await self._clear(device_key(user_id, device_id))
        logger.info("blacklist_scope_cleared", scope="device", user_id=user_id, device_id=device_id)

    def purge_fallback(self) -> int:
        removed = self.store.purge_expired_blacklist_entries()
        if removed:
            logger.info("blacklist_fallback_purged", removed=removed)
        return removed
