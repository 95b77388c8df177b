"""Tests for the token blacklist.

Tests for:
- Single-token entries and their TTL
- User and device cutoffs compared against issued-at
- Fail-open reads and fail-closed mass revocation
- The durable fallback table surviving a cache restart
"""

import time
from unittest.mock import patch

import pytest

from authplane.service.blacklist import TokenBlacklist, device_key, token_key, user_key
from authplane.service.errors import InvalidationFailed


@pytest.fixture
def blacklist(auth):
    return auth.blacklist


def mint_at(auth, user, device_id, issued_at):
    with patch("authplane.service.tokens.time.time", return_value=issued_at):
        return auth.issuer.mint(user, device_id)


class TestTokenEntries:
    async def test_blacklisted_token_is_reported(self, auth, blacklist, user):
        token = auth.issuer.mint(user, "dev_a")
        assert not await blacklist.is_blacklisted(token)
        assert await blacklist.blacklist_token(token)
        assert await blacklist.is_blacklisted(token)

    async def test_ttl_covers_remaining_lifetime_and_leeway(self, auth, blacklist, cache, settings, user):
        token = mint_at(auth, user, "dev_a", time.time() - 600)
        await blacklist.blacklist_token(token)
        ttl = cache.ttl(token_key(token))
        expected = settings.access_token_ttl_seconds - 600 + settings.jwt_leeway_seconds
        assert expected - 5 <= ttl <= expected

    async def test_token_past_exp_inside_leeway_is_recorded(self, auth, blacklist, settings, user):
        token = mint_at(
            auth, user, "dev_a", time.time() - settings.access_token_ttl_seconds - 10
        )
        assert await blacklist.blacklist_token(token)
        assert await blacklist.is_blacklisted(token)

    async def test_expired_token_is_skipped(self, auth, blacklist, cache, user):
        token = mint_at(auth, user, "dev_a", time.time() - 7200)
        assert not await blacklist.blacklist_token(token)
        assert cache.data == {}

    async def test_garbage_is_skipped(self, blacklist):
        assert not await blacklist.blacklist_token("not-a-token")

    async def test_cache_failure_is_logged_not_raised(self, auth, blacklist, cache, user):
        token = auth.issuer.mint(user, "dev_a")
        cache.fail_writes = True
        assert await blacklist.blacklist_token(token) is False
        # The fallback mirror still answers
        assert await blacklist.is_blacklisted(token)

    def test_keys_do_not_contain_the_credential(self):
        assert "secret-token" not in token_key("secret-token")
        assert token_key("secret-token").startswith("blacklist:token:")


class TestUserCutoff:
    async def test_user_42_scenario(self, auth, blacklist, company):
        """Tokens minted a second before blacklist_user are dead; a second after are live."""
        user = auth.store.create_user("u42@example.com", "x", company_id=company.id)
        now = time.time()
        before = mint_at(auth, user, "dev_a", now - 1)
        await blacklist.blacklist_user(user.id, at=now)
        after = mint_at(auth, user, "dev_a", now + 1)

        assert await blacklist.is_blacklisted(before)
        assert not await blacklist.is_blacklisted(after)

    async def test_token_issued_at_cutoff_is_blacklisted(self, auth, blacklist, user):
        now = round(time.time(), 3)
        token = mint_at(auth, user, "dev_a", now)
        await blacklist.blacklist_user(user.id, at=now)
        assert await blacklist.is_blacklisted(token)

    async def test_other_users_unaffected(self, auth, blacklist, user, company):
        other = auth.store.create_user("bob@example.com", "x", company_id=company.id)
        token = mint_at(auth, other, "dev_a", time.time() - 5)
        await blacklist.blacklist_user(user.id)
        assert not await blacklist.is_blacklisted(token)

    async def test_scope_ttl_covers_longest_access_token(self, blacklist, cache, settings, user):
        await blacklist.blacklist_user(user.id)
        expected = settings.access_token_ttl_seconds + settings.jwt_leeway_seconds
        assert expected - 5 <= cache.ttl(user_key(user.id)) <= expected

    async def test_earlier_cutoff_never_shrinks_the_entry(self, auth, blacklist, user):
        now = time.time()
        token = mint_at(auth, user, "dev_a", now - 5)
        first = await blacklist.blacklist_user(user.id, at=now)
        second = await blacklist.blacklist_user(user.id, at=now - 60)
        assert second == first
        assert await blacklist.is_blacklisted(token)

    async def test_later_cutoff_extends_the_entry(self, auth, blacklist, user):
        now = time.time()
        await blacklist.blacklist_user(user.id, at=now - 60)
        assert await blacklist.blacklist_user(user.id, at=now) == round(now, 3)
        assert await blacklist.is_blacklisted(mint_at(auth, user, "dev_a", now - 5))

    async def test_cache_ttl_is_measured_from_the_cutoff(self, blacklist, cache, settings, user):
        await blacklist.blacklist_user(user.id, at=time.time() - 600)
        expected = settings.access_token_ttl_seconds + settings.jwt_leeway_seconds - 600
        assert expected - 5 <= cache.ttl(user_key(user.id)) <= expected

    async def test_cache_failure_raises(self, blacklist, cache, user):
        cache.fail_writes = True
        with pytest.raises(InvalidationFailed):
            await blacklist.blacklist_user(user.id)

    async def test_without_cache_fallback_failure_raises(self, store, settings, user):
        blacklist = TokenBlacklist(None, store, settings)
        with patch.object(store, "put_blacklist_entries", side_effect=RuntimeError("db down")):
            with pytest.raises(InvalidationFailed):
                await blacklist.blacklist_user(user.id)

    async def test_bulk_users(self, auth, blacklist, company):
        users = [
            auth.store.create_user(f"bulk{i}@example.com", "x", company_id=company.id)
            for i in range(3)
        ]
        tokens = [mint_at(auth, u, "dev_a", time.time() - 2) for u in users]
        cutoffs = await blacklist.blacklist_users([u.id for u in users])
        assert len(cutoffs) == 3
        for token in tokens:
            assert await blacklist.is_blacklisted(token)

    async def test_clear_user_blacklist(self, auth, blacklist, user):
        token = mint_at(auth, user, "dev_a", time.time() - 2)
        await blacklist.blacklist_user(user.id)
        await blacklist.clear_user_blacklist(user.id)
        assert not await blacklist.is_blacklisted(token)


class TestDeviceCutoff:
    async def test_only_the_device_is_affected(self, auth, blacklist, user):
        issued = time.time() - 2
        phone = mint_at(auth, user, "dev_phone", issued)
        laptop = mint_at(auth, user, "dev_laptop", issued)
        await blacklist.blacklist_device(user.id, "dev_phone")
        assert await blacklist.is_blacklisted(phone)
        assert not await blacklist.is_blacklisted(laptop)

    async def test_later_tokens_survive(self, auth, blacklist, user):
        now = time.time()
        await blacklist.blacklist_device(user.id, "dev_phone", at=now)
        assert not await blacklist.is_blacklisted(mint_at(auth, user, "dev_phone", now + 1))

    async def test_cache_failure_raises(self, blacklist, cache, user):
        cache.fail_writes = True
        with pytest.raises(InvalidationFailed):
            await blacklist.blacklist_device(user.id, "dev_phone")

    async def test_clear_device_blacklist(self, auth, blacklist, cache, user):
        await blacklist.blacklist_device(user.id, "dev_phone")
        await blacklist.clear_device_blacklist(user.id, "dev_phone")
        assert await cache.get(device_key(user.id, "dev_phone")) is None


class TestDegradedReads:
    async def test_fail_open_when_everything_errors(self, auth, blacklist, cache, store, user):
        token = auth.issuer.mint(user, "dev_a")
        await blacklist.blacklist_token(token)
        cache.fail_reads = True
        with patch.object(store, "get_blacklist_entry", side_effect=RuntimeError("db down")):
            assert await blacklist.is_blacklisted(token) is False

    async def test_fallback_answers_after_cache_restart(self, auth, blacklist, cache, user):
        token = mint_at(auth, user, "dev_a", time.time() - 2)
        await blacklist.blacklist_user(user.id)
        cache.data.clear()
        assert await blacklist.is_blacklisted(token)

    async def test_fallback_answers_when_cache_reads_fail(self, auth, blacklist, cache, user):
        token = auth.issuer.mint(user, "dev_a")
        await blacklist.blacklist_token(token)
        cache.fail_reads = True
        assert await blacklist.is_blacklisted(token)

    async def test_one_cache_round_trip_per_check(self, auth, blacklist, cache, user):
        token = mint_at(auth, user, "dev_a", time.time() - 2)
        await blacklist.blacklist_device(user.id, "dev_a")
        assert await blacklist.is_blacklisted(token)
        assert cache.get_many_calls == 1

    async def test_undecodable_token_is_not_blacklisted(self, blacklist):
        assert await blacklist.is_blacklisted("a.b.c") is False

    def test_purge_fallback(self, blacklist, store):
        from datetime import timedelta

        from authplane.storage.models import BlacklistFallbackEntry, utcnow

        store.put_blacklist_entries(
            [
                BlacklistFallbackEntry("blacklist:user:1", "1.0", utcnow() - timedelta(seconds=1)),
                BlacklistFallbackEntry("blacklist:user:2", "1.0", utcnow() + timedelta(hours=1)),
            ]
        )
        assert blacklist.purge_fallback() == 1
