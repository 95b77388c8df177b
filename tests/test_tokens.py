"""Tests for the access token issuer.

Tests for:
- Claim assembly with freshly resolved roles and permissions
- Signature, algorithm, issuer and audience verification
- Expiry with leeway
"""

import base64
import json
import time
from unittest.mock import patch

import pytest

from authplane.service.errors import TokenExpired, TokenInvalid
from authplane.service.tokens import AccessTokenIssuer, TokenClaims, peek_claims


def _b64(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


@pytest.fixture
def issuer(auth):
    return auth.issuer


@pytest.fixture
def grants(store, company, user):
    read = store.create_permission(company.id, "users.read", "users", "read")
    write = store.create_permission(company.id, "users.write", "users", "write")
    audit = store.create_permission(company.id, "audit.read", "audit", "read")
    viewer = store.create_role(company.id, "viewer", [read.id, audit.id])
    editor = store.create_role(company.id, "editor", [read.id, write.id])
    store.assign_role(user.id, viewer.id)
    store.assign_role(user.id, editor.id)
    return viewer, editor


class TestMint:
    def test_claims(self, issuer, user, company, grants):
        claims = issuer.decode(issuer.mint(user, "dev_a"))
        assert claims.sub == user.id
        assert claims.tenant_id == company.id
        assert claims.tenant_slug == "acme"
        assert claims.device_id == "dev_a"
        assert claims.system_role == "USER"
        assert claims.roles == ("editor", "viewer")
        # Union across roles, de-duplicated and sorted
        assert claims.permissions == ("audit.read", "users.read", "users.write")
        assert claims.exp - claims.iat == pytest.approx(3600, abs=1)
        assert claims.jti

    def test_grants_are_resolved_at_mint_time(self, issuer, store, user, company, grants):
        stale = issuer.decode(issuer.mint(user, "dev_a"))
        viewer, _ = grants
        store.unassign_role(user.id, viewer.id)
        fresh = issuer.decode(issuer.mint(user, "dev_a"))
        assert "audit.read" in stale.permissions
        assert "audit.read" not in fresh.permissions

    def test_user_without_tenant(self, issuer, store):
        admin = store.create_user("root@example.com", "x", company_id=None, system_role="SUPERADMIN")
        claims = issuer.decode(issuer.mint(admin, None))
        assert claims.tenant_id is None
        assert claims.tenant_slug is None
        assert claims.device_id == "unknown"

    def test_iat_has_sub_second_precision(self, issuer, user):
        with patch("authplane.service.tokens.time.time", return_value=1_700_000_000.12345):
            payload = peek_claims(issuer.mint(user, "dev_a"))
        assert payload["iat"] == 1_700_000_000.123
        assert payload["exp"] == 1_700_003_600


class TestDecode:
    def test_tampered_payload(self, issuer, user):
        header, _, sig = issuer.mint(user, "dev_a").split(".")
        forged = _b64({"sub": 1, "srole": "SUPERADMIN", "iat": time.time(), "exp": time.time() + 60})
        with pytest.raises(TokenInvalid):
            issuer.decode(f"{header}.{forged}.{sig}")

    def test_alg_none_rejected(self, issuer, user):
        _, payload, _ = issuer.mint(user, "dev_a").split(".")
        with pytest.raises(TokenInvalid):
            issuer.decode(f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.x")

    def test_other_secret_rejected(self, issuer, store, settings, user):
        other = AccessTokenIssuer(
            store, settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-32"})
        )
        with pytest.raises(TokenInvalid):
            issuer.decode(other.mint(user, "dev_a"))

    def test_wrong_audience(self, issuer, store, settings, user):
        other = AccessTokenIssuer(store, settings.model_copy(update={"jwt_audience": "someone-else"}))
        with pytest.raises(TokenInvalid):
            issuer.decode(other.mint(user, "dev_a"))

    def test_wrong_issuer(self, issuer, store, settings, user):
        other = AccessTokenIssuer(store, settings.model_copy(update={"jwt_issuer": "elsewhere"}))
        with pytest.raises(TokenInvalid):
            issuer.decode(other.mint(user, "dev_a"))

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "a.b.c.d"])
    def test_malformed(self, issuer, token):
        with pytest.raises(TokenInvalid):
            issuer.decode(token)

    def test_expired(self, issuer, user):
        with patch("authplane.service.tokens.time.time", return_value=time.time() - 7200):
            token = issuer.mint(user, "dev_a")
        with pytest.raises(TokenExpired):
            issuer.decode(token)

    def test_expiry_leeway(self, issuer, user):
        # Expired 10 seconds ago, inside the 30 second leeway
        with patch("authplane.service.tokens.time.time", return_value=time.time() - 3610):
            token = issuer.mint(user, "dev_a")
        assert issuer.decode(token).sub == user.id
        assert issuer.decode(token, verify_exp=False).sub == user.id


class TestClaims:
    def test_from_payload_requires_subject(self):
        with pytest.raises(TokenInvalid):
            TokenClaims.from_payload({"iat": 1, "exp": 2})

    def test_peek_does_not_verify(self, issuer, user):
        header, payload, _ = issuer.mint(user, "dev_a").split(".")
        assert peek_claims(f"{header}.{payload}.bogus")["sub"] == user.id
        assert peek_claims("garbage") is None
