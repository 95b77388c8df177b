from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional

from authplane.config import Settings
from authplane.logging import get_logger
from authplane.service.blacklist import TokenBlacklist
from authplane.storage.errors import ConstraintViolation
from authplane.storage.models import Device, utcnow

logger = get_logger(__name__)

UNKNOWN = "Unknown"
EVICTION_BLACKLIST_ATTEMPTS = 2


def fingerprint(user_agent: Optional[str], ip: Optional[str]) -> str:
    """Derive a stable device id from the user agent and client address.

    Pure and deterministic; nothing time-varying may enter the hash or the same
    browser would register as a new device on every login.
    """
    raw = f"{user_agent or UNKNOWN}:{ip or UNKNOWN}"
    return "dev_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str
    ip: str
    device_type: str
    device_name: str
    browser: str
    os: str

    @property
    def device_id(self) -> str:
        return fingerprint(self.user_agent, self.ip)


def _detect_browser(ua: str) -> str:
    # Edge and Chrome user agents both contain "Chrome"; Chrome's contains "Safari"
    if "Edg" in ua:
        return "Edge"
    if "Chrome" in ua:
        return "Chrome"
    if "Firefox" in ua:
        return "Firefox"
    if "Safari" in ua:
        return "Safari"
    return UNKNOWN


def _detect_os(ua: str) -> str:
    if "Windows" in ua:
        return "Windows"
    if "Android" in ua:
        return "Android"
    if "iPhone" in ua or "iPad" in ua or "iOS" in ua:
        return "iOS"
    if "Mac OS" in ua or "macOS" in ua:
        return "macOS"
    if "Linux" in ua:
        return "Linux"
    return UNKNOWN


def _detect_device_type(ua: str) -> str:
    if "Tablet" in ua or "iPad" in ua:
        return "tablet"
    if "Mobile" in ua:
        return "mobile"
    return "desktop"


def extract_device_info(user_agent: Optional[str], ip: Optional[str]) -> DeviceInfo:
    ua = user_agent or UNKNOWN
    browser = _detect_browser(ua)
    os_name = _detect_os(ua)
    return DeviceInfo(
        user_agent=ua,
        ip=ip or UNKNOWN,
        device_type=_detect_device_type(ua),
        device_name=f"{os_name} {browser}",
        browser=browser,
        os=os_name,
    )


class DeviceService:
    """Device registry with a per-user active-device quota."""

    def __init__(self, store: Any, blacklist: TokenBlacklist, settings: Settings) -> None:
        self.store = store
        self.blacklist = blacklist
        self.settings = settings

    @property
    def quota(self) -> int:
        return self.settings.max_devices_per_user

    async def register_or_touch(
        self,
        user_id: int,
        company_id: Optional[int],
        device_id: Optional[str],
        metadata: DeviceInfo,
    ) -> Device:
        device_id = device_id or metadata.device_id
        now = utcnow()
        existing = self.store.get_device(user_id, device_id)
        if existing:
            if not existing.is_active:
                # Reactivation counts against the quota like a new device
                await self._enforce_quota(user_id)
            existing.user_agent = metadata.user_agent
            existing.ip = metadata.ip
            existing.browser = metadata.browser
            existing.os = metadata.os
            existing.last_access_at = now
            existing.is_active = True
            return self.store.update_device(existing)

        await self._enforce_quota(user_id)
        device = Device(
            id=0,
            device_id=device_id,
            user_id=user_id,
            company_id=company_id,
            user_agent=metadata.user_agent,
            ip=metadata.ip,
            device_type=metadata.device_type,
            device_name=metadata.device_name,
            browser=metadata.browser,
            os=metadata.os,
            is_active=True,
            last_access_at=now,
            created_at=now,
        )
        try:
            created = self.store.create_device(device)
        except ConstraintViolation:
            # A concurrent login registered the same fingerprint first
            existing = self.store.get_device(user_id, device_id)
            if existing is None:
                raise
            existing.last_access_at = now
            existing.is_active = True
            return self.store.update_device(existing)
        logger.info(
            "device_registered",
            user_id=user_id,
            device_id=device_id,
            device_type=created.device_type,
        )
        return created

    async def _enforce_quota(self, user_id: int) -> List[Device]:
        """Evict the oldest active devices so that one more fits under the quota.

        When ``active >= quota`` exactly ``active - quota + 1`` devices go, which
        leaves ``quota - 1`` active devices before the caller adds the new one.
        """
        active = self.store.list_devices(user_id, active_only=True, newest_first=False)
        if len(active) < self.quota:
            return []
        evict_count = len(active) - self.quota + 1
        victims = active[:evict_count]
        evicted = 0
        for device in victims:
            if await self._evict(device):
                evicted += 1
        logger.info(
            "device_quota_enforced",
            user_id=user_id,
            active=len(active),
            quota=self.quota,
            evicted=evicted,
        )
        if evicted < len(victims):
            # The incoming device is still admitted
            logger.warning(
                "device_quota_exceeded",
                user_id=user_id,
                active_count=len(active) - evicted + 1,
                quota=self.quota,
            )
        return victims

    async def _evict(self, device: Device) -> bool:
        # Failures here are logged and swallowed so the new login still succeeds
        try:
            live = self.store.list_refresh_tokens(device.user_id, device.device_id)
            for attempt in range(1, EVICTION_BLACKLIST_ATTEMPTS + 1):
                if not live or await self.blacklist.blacklist_refresh_tokens(live):
                    break
                logger.warning(
                    "device_eviction_blacklist_retry",
                    attempt=attempt,
                    user_id=device.user_id,
                    device_id=device.device_id,
                )
        except Exception as exc:
            logger.error(
                "device_eviction_failed",
                stage="blacklist",
                user_id=device.user_id,
                device_id=device.device_id,
                error=str(exc),
            )
        try:
            self.store.set_device_active(device.user_id, device.device_id, False)
            self.store.delete_refresh_tokens(device.user_id, device.device_id)
        except Exception as exc:
            logger.error(
                "device_eviction_failed",
                stage="store",
                user_id=device.user_id,
                device_id=device.device_id,
                error=str(exc),
            )
            return False
        logger.info("device_evicted", user_id=device.user_id, device_id=device.device_id)
        return True

    def list_devices(self, user_id: int) -> List[Device]:
        return self.store.list_devices(user_id, active_only=True, newest_first=True)

    def get_device(self, user_id: int, device_id: str) -> Optional[Device]:
        return self.store.get_device(user_id, device_id)

    def touch(self, user_id: int, device_id: str) -> None:
        self.store.touch_device(user_id, device_id)

    def deactivate_device(self, user_id: int, device_id: str) -> int:
        return self.store.set_device_active(user_id, device_id, False)

    def deactivate_all(self, user_id: int) -> int:
        return self.store.deactivate_user_devices(user_id)

    def cleanup_inactive(self, days_old: Optional[int] = None) -> int:
        days = days_old if days_old is not None else self.settings.device_retention_days
        cutoff = utcnow() - timedelta(days=days)
        removed = self.store.delete_inactive_devices(cutoff)
        if removed:
            logger.info("inactive_devices_removed", removed=removed, days_old=days)
        return removed
