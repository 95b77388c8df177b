from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from authplane.config import Settings
from authplane.logging import get_logger
from authplane.service.errors import TokenExpired, TokenInvalid
from authplane.storage.models import Company, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    """Verified access-token claim set."""

    sub: int
    tenant_id: Optional[int]
    tenant_slug: Optional[str]
    device_id: str
    system_role: str
    roles: Tuple[str, ...] = ()
    permissions: Tuple[str, ...] = ()
    iat: float = 0.0
    exp: float = 0.0
    jti: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        try:
            return cls(
                sub=int(payload["sub"]),
                tenant_id=int(payload["cid"]) if payload.get("cid") is not None else None,
                tenant_slug=payload.get("cslug"),
                device_id=str(payload.get("did") or "unknown"),
                system_role=str(payload.get("srole") or "USER"),
                roles=tuple(payload.get("roles") or ()),
                permissions=tuple(payload.get("perms") or ()),
                iat=float(payload["iat"]),
                exp=float(payload["exp"]),
                jti=str(payload.get("jti") or ""),
                raw=dict(payload),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> Optional[Tuple[str, str, str]]:
    parts = token.split(".") if isinstance(token, str) else []
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


def peek_claims(token: str) -> Optional[Dict[str, Any]]:
    """Read the claim segment without verifying the signature.

    Only for bookkeeping such as blacklist TTLs; never for authorization.
    """
    parts = _split(token)
    if not parts:
        return None
    try:
        payload = json.loads(_decode_segment(parts[1]))
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


class AccessTokenIssuer:
    """Mints and verifies short-lived HS256 access tokens.

    Roles and permissions are resolved from the store on every mint; token
    claims are the only authorization source for the token's lifetime.
    """

    def __init__(self, store: Any, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    # -- claim resolution ----------------------------------------------------

    def resolve_grants(self, user: User) -> Tuple[List[str], List[str]]:
        """Return ``(role_names, permission_names)`` for ``user``.

        Permissions are the de-duplicated union across every role; there is no
        deny rule.
        """
        roles = self.store.list_user_roles(user.id)
        role_names = sorted({r.name for r in roles})
        permission_ids: List[int] = []
        for role in roles:
            permission_ids.extend(role.permission_ids)
        permissions = self.store.list_permissions(list(dict.fromkeys(permission_ids)))
        permission_names = sorted({p.name for p in permissions})
        return role_names, permission_names

    def mint(self, user: User, device_id: Optional[str]) -> str:
        fresh = self.store.get_user(user.id) or user
        company: Optional[Company] = (
            self.store.get_company(fresh.company_id) if fresh.company_id else None
        )
        role_names, permission_names = self.resolve_grants(fresh)
        now = round(time.time(), 3)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": fresh.id,
            "cid": fresh.company_id,
            "cslug": company.slug if company else None,
            "did": device_id or "unknown",
            "srole": fresh.system_role,
            "roles": role_names,
            "perms": permission_names,
            "iat": now,
            "exp": int(now + self.settings.access_token_ttl_seconds),
            "jti": str(uuid.uuid4()),
        }
        logger.debug(
            "access_token_minted",
            user_id=fresh.id,
            tenant_id=fresh.company_id,
            role_count=len(role_names),
            permission_count=len(permission_names),
        )
        return self._encode(payload)

    # -- wire format ---------------------------------------------------------

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, verify_exp: bool = True) -> TokenClaims:
        parts = _split(token)
        if not parts:
            raise TokenInvalid()
        header_b64, payload_b64, sig_b64 = parts

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalid()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid()

        claims = TokenClaims.from_payload(payload)
        if verify_exp and claims.exp <= time.time() - self.settings.jwt_leeway_seconds:
            raise TokenExpired()
        return claims
