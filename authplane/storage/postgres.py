from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_DEVICE_COLUMNS = (
    "id, device_id, user_id, company_id, user_agent, ip, device_type, device_name, "
    "browser, os, is_active, last_access_at, created_at"
)


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        required_tables = [
            "company",
            "app_user",
            "permission",
            "role",
            "role_permission",
            "user_role",
            "device",
            "refresh_token",
            "blacklist_fallback",
            "company_invitation",
            "password_reset",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply {} to install the schema.".format(
                        ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            company_id=row.get("company_id"),
            status=row.get("status", "ACTIVE"),
            system_role=row.get("system_role", "USER"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
        )

    @staticmethod
    def _company_from_row(row: Dict[str, Any]) -> Company:
        return Company(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> Device:
        return Device(
            id=row["id"],
            device_id=row["device_id"],
            user_id=row["user_id"],
            company_id=row.get("company_id"),
            user_agent=row.get("user_agent") or "Unknown",
            ip=row.get("ip") or "Unknown",
            device_type=row.get("device_type") or "desktop",
            device_name=row.get("device_name"),
            browser=row.get("browser"),
            os=row.get("os"),
            is_active=row.get("is_active", True),
            last_access_at=row.get("last_access_at") or utcnow(),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=row["user_id"],
            device_id=row["device_id"],
            company_id=row.get("company_id"),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _reset_from_row(row: Dict[str, Any]) -> PasswordReset:
        return PasswordReset(
            token=row["token"],
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            used=row.get("used", False),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=row["id"],
            company_id=row["company_id"],
            name=row["name"],
            permission_ids=list(row.get("permission_ids") or []),
        )

    # -- companies -----------------------------------------------------------

    def create_company(self, name: str, slug: str, *, is_active: bool = True) -> Company:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO company (name, slug, is_active) VALUES (%s, %s, %s) RETURNING *",
                    (name, slug, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("company slug already exists", {"field": "slug"})
        return self._company_from_row(row)

    def get_company(self, company_id: int) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM company WHERE id = %s", (company_id,)).fetchone()
        return self._company_from_row(row) if row else None

    def get_company_by_slug(self, slug: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM company WHERE slug = %s", (slug,)).fetchone()
        return self._company_from_row(row) if row else None

    def list_companies(self) -> List[Company]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM company ORDER BY id").fetchall()
        return [self._company_from_row(r) for r in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, password_hash, company_id, system_role, status, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        email.strip().lower(),
                        password_hash,
                        company_id,
                        system_role,
                        status,
                        first_name,
                        last_name,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("company not found", {"field": "company_id"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_status(self, user_id: int, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (status, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: int, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

    def list_company_user_ids(self, company_id: int) -> List[int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM app_user WHERE company_id = %s ORDER BY id", (company_id,)
            ).fetchall()
        return [r["id"] for r in rows]

    # -- roles and permissions ----------------------------------------------

    def create_permission(
        self, company_id: int, name: str, resource: str, action: str
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (company_id, name, resource, action)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (company_id, name, resource, action),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        return Permission(
            id=row["id"],
            company_id=row["company_id"],
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
        )

    def create_role(
        self, company_id: int, name: str, permission_ids: Sequence[int] = ()
    ) -> Role:
        unique_ids = list(dict.fromkeys(permission_ids))
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "INSERT INTO role (company_id, name) VALUES (%s, %s) RETURNING *",
                    (company_id, name),
                ).fetchone()
                for pid in unique_ids:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (row["id"], pid),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("permission not found", {"field": "permission_ids"})
        return Role(id=row["id"], company_id=company_id, name=name, permission_ids=unique_ids)

    def assign_role(self, user_id: int, role_id: int) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (user_id, role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user or role not found", {"role_id": role_id})

    def unassign_role(self, user_id: int, role_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )

    _ROLE_SELECT = """
        SELECT r.id, r.company_id, r.name,
               COALESCE(array_agg(rp.permission_id) FILTER (WHERE rp.permission_id IS NOT NULL), '{}') AS permission_ids
        FROM role r
        LEFT JOIN role_permission rp ON rp.role_id = r.id
    """

    def list_user_roles(self, user_id: int) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                self._ROLE_SELECT
                + """
                JOIN user_role ur ON ur.role_id = r.id
                WHERE ur.user_id = %s
                GROUP BY r.id
                ORDER BY r.id
                """,
                (user_id,),
            ).fetchall()
        return [self._role_from_row(r) for r in rows]

    def list_company_roles(self, company_id: int) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                self._ROLE_SELECT + " WHERE r.company_id = %s GROUP BY r.id ORDER BY r.id",
                (company_id,),
            ).fetchall()
        return [self._role_from_row(r) for r in rows]

    def list_permissions(self, permission_ids: Sequence[int]) -> List[Permission]:
        if not permission_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission WHERE id = ANY(%s) ORDER BY id",
                (list(permission_ids),),
            ).fetchall()
        return [
            Permission(
                id=r["id"],
                company_id=r["company_id"],
                name=r["name"],
                resource=r["resource"],
                action=r["action"],
            )
            for r in rows
        ]

    def list_company_role_assignments(self, company_id: int) -> List[Tuple[int, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ur.user_id, r.name
                FROM user_role ur
                JOIN role r ON r.id = ur.role_id
                JOIN app_user u ON u.id = ur.user_id
                WHERE r.company_id = %s AND u.company_id = %s
                ORDER BY ur.user_id, r.id
                """,
                (company_id, company_id),
            ).fetchall()
        return [(r["user_id"], r["name"]) for r in rows]

    # -- invitations ---------------------------------------------------------

    def create_invitation(self, invitation: Invitation) -> Invitation:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO company_invitation (code, company_id, status, expires_at, accepted_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        invitation.code,
                        invitation.company_id,
                        invitation.status,
                        invitation.expires_at,
                        invitation.accepted_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation code exists", {"field": "code"})
        return invitation

    def get_invitation(self, code: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM company_invitation WHERE code = %s", (code,)
            ).fetchone()
        if not row:
            return None
        return Invitation(
            code=row["code"],
            company_id=row["company_id"],
            status=row["status"],
            expires_at=row["expires_at"],
            accepted_at=row.get("accepted_at"),
        )

    def set_invitation_status(
        self, code: str, status: str, *, accepted_at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE company_invitation
                SET status = %s, accepted_at = COALESCE(%s, accepted_at)
                WHERE code = %s
                """,
                (status, accepted_at, code),
            )

    # -- devices -------------------------------------------------------------

    def get_device(self, user_id: int, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_DEVICE_COLUMNS} FROM device WHERE user_id = %s AND device_id = %s",
                (user_id, device_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def create_device(self, device: Device) -> Device:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO device (device_id, user_id, company_id, user_agent, ip, device_type,
                                        device_name, browser, os, is_active, last_access_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_DEVICE_COLUMNS}
                    """,
                    (
                        device.device_id,
                        device.user_id,
                        device.company_id,
                        device.user_agent,
                        device.ip,
                        device.device_type,
                        device.device_name,
                        device.browser,
                        device.os,
                        device.is_active,
                        device.last_access_at,
                        device.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("device already registered", {"field": "device_id"})
        return self._device_from_row(row)

    def update_device(self, device: Device) -> Device:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE device
                SET user_agent = %s, ip = %s, device_type = %s, device_name = %s, browser = %s,
                    os = %s, is_active = %s, last_access_at = %s
                WHERE id = %s
                RETURNING {_DEVICE_COLUMNS}
                """,
                (
                    device.user_agent,
                    device.ip,
                    device.device_type,
                    device.device_name,
                    device.browser,
                    device.os,
                    device.is_active,
                    device.last_access_at,
                    device.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("device not found", {"id": device.id})
        return self._device_from_row(row)

    def list_devices(
        self, user_id: int, *, active_only: bool = True, newest_first: bool = True
    ) -> List[Device]:
        order = "DESC" if newest_first else "ASC"
        clause = "AND is_active" if active_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_DEVICE_COLUMNS} FROM device WHERE user_id = %s {clause} "
                f"ORDER BY last_access_at {order}",
                (user_id,),
            ).fetchall()
        return [self._device_from_row(r) for r in rows]

    def set_device_active(self, user_id: int, device_id: str, active: bool) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE device SET is_active = %s WHERE user_id = %s AND device_id = %s",
                (active, user_id, device_id),
            )
            return cur.rowcount

    def deactivate_user_devices(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE device SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            return cur.rowcount

    def touch_device(self, user_id: int, device_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE device SET last_access_at = %s WHERE user_id = %s AND device_id = %s",
                (when or utcnow(), user_id, device_id),
            )

    def delete_inactive_devices(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM device WHERE NOT is_active AND last_access_at < %s",
                (older_than,),
            )
            return cur.rowcount

    # -- passwords -----------------------------------------------------------

    def update_user_password(self, user_id: int, password_hash: str) -> int:
        """Set a new password hash and delete every refresh token of the user."""
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE app_user SET password_hash = %s, password_changed_at = %s
                WHERE id = %s RETURNING id
                """,
                (password_hash, utcnow(), user_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def create_password_reset(self, record: PasswordReset) -> PasswordReset:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "UPDATE password_reset SET used = TRUE WHERE user_id = %s AND NOT used",
                    (record.user_id,),
                )
                conn.execute(
                    """
                    INSERT INTO password_reset (token, user_id, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.user_id,
                        record.expires_at,
                        record.used,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token collision", {"field": "token"})
        return record

    def get_password_reset(self, token: str) -> Optional[PasswordReset]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset WHERE token = %s", (token,)
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def consume_password_reset(
        self, token: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[PasswordReset]:
        """Spend ``token``, set the password and drop refresh tokens in one transaction.

        The conditional ``UPDATE ... RETURNING`` makes the token single-use under
        concurrency: a second caller gets no row and writes nothing.
        """
        current = now or utcnow()
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE password_reset SET used = TRUE
                WHERE token = %s AND NOT used AND expires_at > %s
                RETURNING *
                """,
                (token, current),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "UPDATE app_user SET password_hash = %s, password_changed_at = %s WHERE id = %s",
                (password_hash, current, row["user_id"]),
            )
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (row["user_id"],))
        return self._reset_from_row(row)

    def delete_expired_password_resets(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, device_id, company_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.user_id,
                        record.device_id,
                        record.company_id,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_token: str, new_record: RefreshToken, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Delete ``old_token`` and insert ``new_record`` in one transaction.

        ``DELETE ... RETURNING`` takes the row lock, so of two concurrent callers
        only one gets the row back; the other sees nothing and writes nothing.
        """
        current = now or utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                old = conn.execute(
                    """
                    DELETE FROM refresh_token
                    WHERE token = %s AND expires_at > %s
                    RETURNING *
                    """,
                    (old_token, current),
                ).fetchone()
                if not old:
                    return None
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, device_id, company_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        new_record.token,
                        old["user_id"],
                        old["device_id"],
                        old.get("company_id"),
                        new_record.expires_at,
                        new_record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return self._refresh_from_row(old)

    def list_refresh_tokens(
        self,
        user_id: int,
        device_id: Optional[str] = None,
        *,
        live_only: bool = True,
        now: Optional[datetime] = None,
    ) -> List[RefreshToken]:
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if device_id is not None:
            clauses.append("device_id = %s")
            params.append(device_id)
        if live_only:
            clauses.append("expires_at > %s")
            params.append(now or utcnow())
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM refresh_token WHERE {' AND '.join(clauses)}", params
            ).fetchall()
        return [self._refresh_from_row(r) for r in rows]

    def delete_refresh_tokens(
        self, user_id: int, device_id: Optional[str] = None
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            if device_id is None:
                rows = conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s RETURNING *", (user_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s AND device_id = %s RETURNING *",
                    (user_id, device_id),
                ).fetchall()
        return [self._refresh_from_row(r) for r in rows]

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    def list_active_sessions(
        self, user_id: int, now: Optional[datetime] = None
    ) -> List[SessionSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT rt.device_id, rt.created_at, rt.expires_at,
                       d.device_name, d.device_type, d.browser, d.os, d.ip, d.last_access_at
                FROM refresh_token rt
                LEFT JOIN device d ON d.device_id = rt.device_id AND d.user_id = rt.user_id
                WHERE rt.user_id = %s AND rt.expires_at > %s
                ORDER BY rt.created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [
            SessionSummary(
                device_id=r["device_id"],
                device_name=r.get("device_name"),
                device_type=r.get("device_type"),
                browser=r.get("browser"),
                os=r.get("os"),
                ip=r.get("ip"),
                last_access_at=r.get("last_access_at"),
                created_at=r["created_at"],
                expires_at=r["expires_at"],
            )
            for r in rows
        ]

    # -- blacklist fallback --------------------------------------------------

    def put_blacklist_entries(self, entries: Sequence[BlacklistFallbackEntry]) -> None:
        if not entries:
            return
        with self._connect() as conn, conn.transaction():
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO blacklist_fallback (key, value, expires_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
                    """,
                    [(e.key, e.value, e.expires_at) for e in entries],
                )

    def get_blacklist_entry(
        self, key: str, now: Optional[datetime] = None
    ) -> Optional[BlacklistFallbackEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT key, value, expires_at FROM blacklist_fallback WHERE key = %s AND expires_at > %s",
                (key, now or utcnow()),
            ).fetchone()
        if not row:
            return None
        return BlacklistFallbackEntry(
            key=row["key"], value=row["value"], expires_at=row["expires_at"]
        )

    def delete_blacklist_entry(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM blacklist_fallback WHERE key = %s", (key,))

    def purge_expired_blacklist_entries(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM blacklist_fallback WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount
