from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from authplane.logging import get_logger
from authplane.storage.errors import ConstraintViolation
from authplane.storage.models import (
    BlacklistFallbackEntry,
    Company,
    Device,
    Invitation,
    PasswordReset,
    Permission,
    RefreshToken,
    Role,
    SessionSummary,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory credential store for development and tests.

    All tables live in dicts guarded by one re-entrant lock, so a block of
    calls made under :meth:`transaction` is atomic with respect to every other
    caller. State is optionally mirrored to ``{fs_root}/state/memory_store.json``.
    """

    def __init__(self, fs_root: str = "/tmp/authplane", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.companies: Dict[int, Company] = {}
        self.users: Dict[int, User] = {}
        self.permissions: Dict[int, Permission] = {}
        self.roles: Dict[int, Role] = {}
        self.user_roles: Dict[int, List[int]] = {}
        self.devices: Dict[int, Device] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.blacklist_fallback: Dict[str, BlacklistFallbackEntry] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self._seq: Dict[str, int] = {}
        # RLock so store methods can be composed inside transaction()
        self._data_lock = threading.RLock()
        self._persist_enabled = persist
        self.fs_root = Path(fs_root)
        if persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- plumbing ------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Hold the data lock for a multi-statement unit of work.

        Table snapshots are restored if the block raises, so partial writes are
        never visible.
        """
        with self._data_lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            self._persist_state()

    def _next_id(self, table: str) -> int:
        with self._data_lock:
            value = self._seq.get(table, 0) + 1
            self._seq[table] = value
            return value

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "refresh_tokens": dict(self.refresh_tokens),
            "devices": {k: replace(v) for k, v in self.devices.items()},
            "blacklist_fallback": dict(self.blacklist_fallback),
            "users": {k: replace(v) for k, v in self.users.items()},
            "password_resets": {k: replace(v) for k, v in self.password_resets.items()},
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.refresh_tokens = snapshot["refresh_tokens"]
        self.devices = snapshot["devices"]
        self.blacklist_fallback = snapshot["blacklist_fallback"]
        self.users = snapshot["users"]
        self.password_resets = snapshot["password_resets"]

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        self._persist_state()

    # -- companies -----------------------------------------------------------

    def create_company(self, name: str, slug: str, *, is_active: bool = True) -> Company:
        with self._data_lock:
            if any(c.slug == slug for c in self.companies.values()):
                raise ConstraintViolation("company slug already exists", {"field": "slug"})
            company = Company(
                id=self._next_id("companies"), name=name, slug=slug, is_active=is_active
            )
            self.companies[company.id] = company
            self._persist_state()
            return replace(company)

    def get_company(self, company_id: int) -> Optional[Company]:
        with self._data_lock:
            company = self.companies.get(company_id)
            return replace(company) if company else None

    def get_company_by_slug(self, slug: str) -> Optional[Company]:
        with self._data_lock:
            company = next((c for c in self.companies.values() if c.slug == slug), None)
            return replace(company) if company else None

    def list_companies(self) -> List[Company]:
        with self._data_lock:
            return [replace(c) for c in sorted(self.companies.values(), key=lambda c: c.id)]

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        company_id: Optional[int],
        system_role: str = "USER",
        status: str = "ACTIVE",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if company_id is not None and company_id not in self.companies:
                raise ConstraintViolation("company not found", {"field": "company_id"})
            user = User(
                id=self._next_id("users"),
                email=normalized,
                password_hash=password_hash,
                company_id=company_id,
                system_role=system_role,
                status=status,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def set_user_status(self, user_id: int, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            self._persist_state()
            return replace(user)

    def update_last_login(self, user_id: int, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when or utcnow()
                self._persist_state()

    def list_company_user_ids(self, company_id: int) -> List[int]:
        with self._data_lock:
            return sorted(u.id for u in self.users.values() if u.company_id == company_id)

    # -- passwords -----------------------------------------------------------

    def update_user_password(self, user_id: int, password_hash: str) -> int:
        """Set a new password hash and delete every refresh token of the user.

        Both writes happen in one transaction; returns the number of refresh
        tokens removed.
        """
        with self.transaction():
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.password_hash = password_hash
            user.password_changed_at = utcnow()
            doomed = [t for t, r in self.refresh_tokens.items() if r.user_id == user_id]
            for token in doomed:
                self.refresh_tokens.pop(token, None)
            return len(doomed)

    def create_password_reset(self, record: PasswordReset) -> PasswordReset:
        """Store ``record`` and retire every unused reset token of the same user."""
        with self._data_lock:
            if record.token in self.password_resets:
                raise ConstraintViolation("reset token collision", {"field": "token"})
            for existing in self.password_resets.values():
                if existing.user_id == record.user_id and not existing.used:
                    existing.used = True
            self.password_resets[record.token] = replace(record)
            self._persist_state()
            return replace(record)

    def get_password_reset(self, token: str) -> Optional[PasswordReset]:
        with self._data_lock:
            record = self.password_resets.get(token)
            return replace(record) if record else None

    def consume_password_reset(
        self, token: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[PasswordReset]:
        """Spend ``token``: mark it used, set the password, drop refresh tokens.

        All or nothing. Returns None without writing when the token is unknown,
        used or expired.
        """
        current = now or utcnow()
        with self.transaction():
            record = self.password_resets.get(token)
            if record is None or not record.is_usable(current):
                return None
            record.used = True
            self.update_user_password(record.user_id, password_hash)
            return replace(record)

    def delete_expired_password_resets(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            doomed = [t for t, r in self.password_resets.items() if r.expires_at <= current]
            for token in doomed:
                self.password_resets.pop(token, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- roles and permissions ----------------------------------------------

    def create_permission(
        self, company_id: int, name: str, resource: str, action: str
    ) -> Permission:
        with self._data_lock:
            if any(
                p.company_id == company_id and p.name == name
                for p in self.permissions.values()
            ):
                raise ConstraintViolation("permission name already exists", {"field": "name"})
            permission = Permission(
                id=self._next_id("permissions"),
                company_id=company_id,
                name=name,
                resource=resource,
                action=action,
            )
            self.permissions[permission.id] = permission
            self._persist_state()
            return replace(permission)

    def create_role(
        self, company_id: int, name: str, permission_ids: Sequence[int] = ()
    ) -> Role:
        with self._data_lock:
            if any(r.company_id == company_id and r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            for pid in permission_ids:
                perm = self.permissions.get(pid)
                if not perm or perm.company_id != company_id:
                    raise ConstraintViolation("permission not found", {"permission_id": pid})
            role = Role(
                id=self._next_id("roles"),
                company_id=company_id,
                name=name,
                permission_ids=list(dict.fromkeys(permission_ids)),
            )
            self.roles[role.id] = role
            self._persist_state()
            return replace(role, permission_ids=list(role.permission_ids))

    def assign_role(self, user_id: int, role_id: int) -> None:
        with self._data_lock:
            if user_id not in self.users or role_id not in self.roles:
                raise ConstraintViolation("user or role not found", {"role_id": role_id})
            assigned = self.user_roles.setdefault(user_id, [])
            if role_id not in assigned:
                assigned.append(role_id)
                self._persist_state()

    def unassign_role(self, user_id: int, role_id: int) -> None:
        with self._data_lock:
            assigned = self.user_roles.get(user_id, [])
            if role_id in assigned:
                assigned.remove(role_id)
                self._persist_state()

    def list_user_roles(self, user_id: int) -> List[Role]:
        with self._data_lock:
            return [
                replace(self.roles[rid], permission_ids=list(self.roles[rid].permission_ids))
                for rid in self.user_roles.get(user_id, [])
                if rid in self.roles
            ]

    def list_company_roles(self, company_id: int) -> List[Role]:
        with self._data_lock:
            return [
                replace(r, permission_ids=list(r.permission_ids))
                for r in sorted(self.roles.values(), key=lambda r: r.id)
                if r.company_id == company_id
            ]

    def list_permissions(self, permission_ids: Sequence[int]) -> List[Permission]:
        with self._data_lock:
            return [
                replace(self.permissions[pid])
                for pid in permission_ids
                if pid in self.permissions
            ]

    def list_company_role_assignments(self, company_id: int) -> List[Tuple[int, str]]:
        """Return ``(user_id, role_name)`` pairs for one company."""
        with self._data_lock:
            pairs: List[Tuple[int, str]] = []
            for user_id, role_ids in sorted(self.user_roles.items()):
                user = self.users.get(user_id)
                if not user or user.company_id != company_id:
                    continue
                for rid in role_ids:
                    role = self.roles.get(rid)
                    if role and role.company_id == company_id:
                        pairs.append((user_id, role.name))
            return pairs

    # -- invitations ---------------------------------------------------------

    def create_invitation(self, invitation: Invitation) -> Invitation:
        with self._data_lock:
            if invitation.code in self.invitations:
                raise ConstraintViolation("invitation code exists", {"field": "code"})
            self.invitations[invitation.code] = replace(invitation)
            self._persist_state()
            return replace(invitation)

    def get_invitation(self, code: str) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(code)
            return replace(invitation) if invitation else None

    def set_invitation_status(
        self, code: str, status: str, *, accepted_at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            invitation = self.invitations.get(code)
            if invitation:
                invitation.status = status
                if accepted_at is not None:
                    invitation.accepted_at = accepted_at
                self._persist_state()

    # -- devices -------------------------------------------------------------

    def get_device(self, user_id: int, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = next(
                (
                    d
                    for d in self.devices.values()
                    if d.user_id == user_id and d.device_id == device_id
                ),
                None,
            )
            return replace(device) if device else None

    def create_device(self, device: Device) -> Device:
        with self._data_lock:
            if self.get_device(device.user_id, device.device_id):
                raise ConstraintViolation("device already registered", {"field": "device_id"})
            stored = replace(device, id=self._next_id("devices"))
            self.devices[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def update_device(self, device: Device) -> Device:
        with self._data_lock:
            if device.id not in self.devices:
                raise ConstraintViolation("device not found", {"id": device.id})
            self.devices[device.id] = replace(device)
            self._persist_state()
            return replace(device)

    def list_devices(
        self, user_id: int, *, active_only: bool = True, newest_first: bool = True
    ) -> List[Device]:
        with self._data_lock:
            devices = [
                replace(d)
                for d in self.devices.values()
                if d.user_id == user_id and (d.is_active or not active_only)
            ]
        return sorted(devices, key=lambda d: d.last_access_at, reverse=newest_first)

    def set_device_active(self, user_id: int, device_id: str, active: bool) -> int:
        with self._data_lock:
            changed = 0
            for device in self.devices.values():
                if device.user_id == user_id and device.device_id == device_id:
                    device.is_active = active
                    changed += 1
            if changed:
                self._persist_state()
            return changed

    def deactivate_user_devices(self, user_id: int) -> int:
        with self._data_lock:
            changed = 0
            for device in self.devices.values():
                if device.user_id == user_id and device.is_active:
                    device.is_active = False
                    changed += 1
            if changed:
                self._persist_state()
            return changed

    def touch_device(self, user_id: int, device_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            for device in self.devices.values():
                if device.user_id == user_id and device.device_id == device_id:
                    device.last_access_at = when or utcnow()
            self._persist_state()

    def delete_inactive_devices(self, older_than: datetime) -> int:
        with self._data_lock:
            doomed = [
                key
                for key, d in self.devices.items()
                if not d.is_active and d.last_access_at < older_than
            ]
            for key in doomed:
                self.devices.pop(key, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[record.token] = replace(record)
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, old_token: str, new_record: RefreshToken, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Atomically swap ``old_token`` for ``new_record``.

        Returns the consumed row, or None when the old token is unknown, already
        consumed or expired. Nothing is written in the None case.
        """
        current = now or utcnow()
        with self.transaction():
            old = self.refresh_tokens.get(old_token)
            if old is None or old.expires_at <= current:
                return None
            del self.refresh_tokens[old_token]
            if new_record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[new_record.token] = replace(
                new_record,
                user_id=old.user_id,
                device_id=old.device_id,
                company_id=old.company_id,
            )
            return replace(old)

    def list_refresh_tokens(
        self,
        user_id: int,
        device_id: Optional[str] = None,
        *,
        live_only: bool = True,
        now: Optional[datetime] = None,
    ) -> List[RefreshToken]:
        current = now or utcnow()
        with self._data_lock:
            return [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id
                and (device_id is None or r.device_id == device_id)
                and (not live_only or r.expires_at > current)
            ]

    def delete_refresh_tokens(
        self, user_id: int, device_id: Optional[str] = None
    ) -> List[RefreshToken]:
        with self._data_lock:
            doomed = [
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and (device_id is None or r.device_id == device_id)
            ]
            for record in doomed:
                self.refresh_tokens.pop(record.token, None)
            if doomed:
                self._persist_state()
            return [replace(r) for r in doomed]

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            doomed = [t for t, r in self.refresh_tokens.items() if r.expires_at <= current]
            for token in doomed:
                self.refresh_tokens.pop(token, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def list_active_sessions(
        self, user_id: int, now: Optional[datetime] = None
    ) -> List[SessionSummary]:
        current = now or utcnow()
        with self._data_lock:
            summaries: List[SessionSummary] = []
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or record.expires_at <= current:
                    continue
                device = next(
                    (
                        d
                        for d in self.devices.values()
                        if d.user_id == user_id and d.device_id == record.device_id
                    ),
                    None,
                )
                summaries.append(
                    SessionSummary(
                        device_id=record.device_id,
                        device_name=device.device_name if device else None,
                        device_type=device.device_type if device else None,
                        browser=device.browser if device else None,
                        os=device.os if device else None,
                        ip=device.ip if device else None,
                        last_access_at=device.last_access_at if device else None,
                        created_at=record.created_at,
                        expires_at=record.expires_at,
                    )
                )
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)

    # -- blacklist fallback --------------------------------------------------

    def put_blacklist_entries(self, entries: Sequence[BlacklistFallbackEntry]) -> None:
        with self._data_lock:
            for entry in entries:
                self.blacklist_fallback[entry.key] = replace(entry)
            self._persist_state()

    def get_blacklist_entry(
        self, key: str, now: Optional[datetime] = None
    ) -> Optional[BlacklistFallbackEntry]:
        current = now or utcnow()
        with self._data_lock:
            entry = self.blacklist_fallback.get(key)
            if entry is None or entry.expires_at <= current:
                return None
            return replace(entry)

    def delete_blacklist_entry(self, key: str) -> None:
        with self._data_lock:
            if self.blacklist_fallback.pop(key, None) is not None:
                self._persist_state()

    def purge_expired_blacklist_entries(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            doomed = [k for k, e in self.blacklist_fallback.items() if e.expires_at <= current]
            for key in doomed:
                self.blacklist_fallback.pop(key, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- persistence ---------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: type, data: dict) -> Any:
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and f.name.endswith("_at"):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if not self._persist_enabled:
            return
        with self._data_lock:
            state = {
                "seq": self._seq,
                "companies": [self._serialize(c) for c in self.companies.values()],
                "users": [self._serialize(u) for u in self.users.values()],
                "permissions": [self._serialize(p) for p in self.permissions.values()],
                "roles": [self._serialize(r) for r in self.roles.values()],
                "user_roles": {str(k): v for k, v in self.user_roles.items()},
                "devices": [self._serialize(d) for d in self.devices.values()],
                "refresh_tokens": [
                    self._serialize(r) for r in self.refresh_tokens.values()
                ],
                "blacklist_fallback": [
                    self._serialize(e) for e in self.blacklist_fallback.values()
                ],
                "invitations": [self._serialize(i) for i in self.invitations.values()],
                "password_resets": [
                    self._serialize(r) for r in self.password_resets.values()
                ],
            }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._seq = {k: int(v) for k, v in data.get("seq", {}).items()}
        self.companies = {
            c["id"]: self._deserialize(Company, c) for c in data.get("companies", [])
        }
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.permissions = {
            p["id"]: self._deserialize(Permission, p) for p in data.get("permissions", [])
        }
        self.roles = {r["id"]: self._deserialize(Role, r) for r in data.get("roles", [])}
        self.user_roles = {
            int(k): list(v) for k, v in data.get("user_roles", {}).items()
        }
        self.devices = {
            d["id"]: self._deserialize(Device, d) for d in data.get("devices", [])
        }
        self.refresh_tokens = {
            r["token"]: self._deserialize(RefreshToken, r)
            for r in data.get("refresh_tokens", [])
        }
        self.blacklist_fallback = {
            e["key"]: self._deserialize(BlacklistFallbackEntry, e)
            for e in data.get("blacklist_fallback", [])
        }
        self.invitations = {
            i["code"]: self._deserialize(Invitation, i) for i in data.get("invitations", [])
        }
        self.password_resets = {
            r["token"]: self._deserialize(PasswordReset, r)
            for r in data.get("password_resets", [])
        }
        self.logger.info("memory_store_loaded", path=str(path), users=len(self.users))
        return True
