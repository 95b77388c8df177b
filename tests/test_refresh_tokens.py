"""Tests for refresh token issuance, rotation and revocation.

Tests for:
- Token entropy and expiry
- Rotation: replay protection and concurrent use
- Rotate-then-blacklist failure tiers
- Bulk revocation with a single pipelined cache write
- Session listing and the expiry sweep
"""

import asyncio
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import patch

import pytest

from authplane.service.blacklist import token_key
from authplane.service.errors import RefreshTokenNotFound
from authplane.storage.models import RefreshToken, utcnow


@pytest.fixture
def manager(auth):
    return auth.refresh_tokens


class TestIssue:
    def test_token_is_256_bit_hex(self, manager, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        assert re.fullmatch(r"[0-9a-f]{64}", token)

    def test_tokens_are_unique(self, manager, user):
        tokens = {manager.issue(user.id, "dev_a", user.company_id) for _ in range(20)}
        assert len(tokens) == 20

    def test_expiry_is_seven_days(self, manager, store, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        record = store.get_refresh_token(token)
        delta = record.expires_at - record.created_at
        assert delta == timedelta(days=7)

    def test_plaintext_is_never_logged(self, manager, user):
        with patch("authplane.service.refresh_tokens.logger") as log:
            token = manager.issue(user.id, "dev_a", user.company_id)
        for call in log.info.call_args_list:
            assert token not in repr(call)


class TestValidate:
    async def test_live_token(self, manager, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        record = await manager.validate(token)
        assert record.user_id == user.id

    async def test_expired_token(self, manager, store, user):
        store.create_refresh_token(
            RefreshToken("e" * 64, user.id, "dev_a", user.company_id, expires_at=utcnow() - timedelta(seconds=1))
        )
        assert await manager.validate("e" * 64) is None

    async def test_blacklisted_token(self, manager, cache, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        await cache.set(token_key(token), "1", 60)
        assert await manager.validate(token) is None


class TestRotate:
    async def test_rotate_replay_rotate(self, manager, user):
        """rotate(T) succeeds once; replaying T fails; the successor still rotates."""
        token = manager.issue(user.id, "dev_a", user.company_id)

        successor = await manager.rotate(token)
        assert successor.token != token
        assert (successor.user_id, successor.device_id, successor.company_id) == (
            user.id,
            "dev_a",
            user.company_id,
        )

        with pytest.raises(RefreshTokenNotFound):
            await manager.rotate(token)

        third = await manager.rotate(successor.token)
        assert third.token not in (token, successor.token)

    async def test_one_live_token_per_device_after_rotation(self, manager, store, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        successor = await manager.rotate(token)
        live = store.list_refresh_tokens(user.id, "dev_a")
        assert [r.token for r in live] == [successor.token]

    async def test_unknown_token(self, manager):
        with pytest.raises(RefreshTokenNotFound):
            await manager.rotate("0" * 64)

    async def test_expired_token_is_rejected_without_side_effects(self, manager, store, user):
        expired = RefreshToken(
            "f" * 64, user.id, "dev_a", user.company_id, expires_at=utcnow() - timedelta(seconds=1)
        )
        store.create_refresh_token(expired)
        with pytest.raises(RefreshTokenNotFound):
            await manager.rotate(expired.token)
        # Expired rows are left for the sweep
        assert store.get_refresh_token(expired.token) is not None
        assert store.list_refresh_tokens(user.id, live_only=False) == [expired]

    async def test_old_token_is_blacklisted_after_commit(self, manager, cache, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        await manager.rotate(token)
        assert await cache.get(token_key(token)) == "1"

    async def test_cache_outage_does_not_block_rotation(self, manager, cache, store, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        cache.fail_writes = True
        successor = await manager.rotate(token)
        assert store.get_refresh_token(successor.token) is not None
        assert store.get_refresh_token(token) is None

    async def test_revocation_check_fails_closed(self, manager, cache, store, user):
        """A rotation never proceeds when no tier can say the token is clean."""
        token = manager.issue(user.id, "dev_a", user.company_id)
        cache.fail_reads = True
        with patch.object(store, "get_blacklist_entry", side_effect=RuntimeError("db down")):
            with pytest.raises(RefreshTokenNotFound):
                await manager.rotate(token)
        assert store.get_refresh_token(token) is not None

    async def test_concurrent_rotation_has_one_winner(self, manager, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        results = await asyncio.gather(
            *(manager.rotate(token) for _ in range(8)), return_exceptions=True
        )
        winners = [r for r in results if isinstance(r, RefreshToken)]
        losers = [r for r in results if isinstance(r, RefreshTokenNotFound)]
        assert len(winners) == 1
        assert len(losers) == 7

    def test_threaded_store_rotation_has_one_winner(self, store, user):
        """Racing threads against the store: exactly one consumes the row."""
        store.create_refresh_token(
            RefreshToken.new("a" * 64, user.id, "dev_a", user.company_id, ttl_seconds=600)
        )

        def attempt(i):
            return store.rotate_refresh_token(
                "a" * 64,
                RefreshToken.new(f"{i:064x}", 0, "", None, ttl_seconds=600),
            )

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(1, 17)))

        assert sum(1 for r in results if r is not None) == 1
        live = store.list_refresh_tokens(user.id, "dev_a")
        assert len(live) == 1


class TestRevoke:
    async def test_revoke_for_device(self, manager, store, cache, user):
        kept = manager.issue(user.id, "dev_b", user.company_id)
        doomed = [manager.issue(user.id, "dev_a", user.company_id) for _ in range(3)]
        before = cache.set_many_calls

        assert await manager.revoke_for_device(user.id, "dev_a") == 3

        assert cache.set_many_calls == before + 1
        for token in doomed:
            assert store.get_refresh_token(token) is None
            assert await cache.get(token_key(token)) == "1"
        assert store.get_refresh_token(kept) is not None

    async def test_revoke_for_user(self, manager, store, cache, user):
        for device in ("dev_a", "dev_b", "dev_c"):
            manager.issue(user.id, device, user.company_id)
        before = cache.set_many_calls
        assert await manager.revoke_for_user(user.id) == 3
        assert cache.set_many_calls == before + 1
        assert store.list_refresh_tokens(user.id) == []

    async def test_revoke_with_nothing_to_do(self, manager, cache, user):
        assert await manager.revoke_for_user(user.id) == 0
        assert cache.set_many_calls == 0

    async def test_blacklist_ttl_matches_remaining_lifetime(self, manager, cache, user):
        token = manager.issue(user.id, "dev_a", user.company_id)
        await manager.revoke_for_device(user.id, "dev_a")
        ttl = cache.ttl(token_key(token))
        assert 7 * 86400 - 5 <= ttl <= 7 * 86400


class TestSessionsAndSweep:
    async def test_active_sessions_most_recent_first(self, auth, manager, store, user):
        from authplane.service.devices import extract_device_info

        for n in (1, 2):
            info = extract_device_info(f"agent-{n}", "10.0.0.1")
            await auth.devices.register_or_touch(user.id, user.company_id, None, info)
            store.create_refresh_token(
                RefreshToken(
                    f"{n}" * 64,
                    user.id,
                    info.device_id,
                    user.company_id,
                    expires_at=utcnow() + timedelta(days=1),
                    created_at=utcnow() + timedelta(minutes=n),
                )
            )
        sessions = manager.active_sessions(user.id)
        assert [s.device_id for s in sessions] == [
            extract_device_info("agent-2", "10.0.0.1").device_id,
            extract_device_info("agent-1", "10.0.0.1").device_id,
        ]
        assert sessions[0].browser == "Unknown"

    def test_cleanup_expired(self, manager, store, user):
        live = manager.issue(user.id, "dev_a", user.company_id)
        store.create_refresh_token(
            RefreshToken("d" * 64, user.id, "dev_b", user.company_id, expires_at=utcnow() - timedelta(hours=1))
        )
        assert manager.cleanup_expired() == 1
        assert store.get_refresh_token(live) is not None
        assert store.get_refresh_token("d" * 64) is None
