from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import errors

from authplane.storage.errors import ConstraintViolation
from authplane.storage.models import RefreshToken, utcnow
from authplane.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class ScriptedCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class ScriptedConnection:
    """Replays one scripted result (or exception) per execute() call."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else ScriptedCursor()
        if isinstance(result, Exception):
            raise result
        return result


class ScriptedPool:
    def __init__(self, *results):
        self.conn = ScriptedConnection(results)

    def connection(self):
        return self.conn


def make_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit"
    store.pool = pool
    return store


def refresh_row(token="a" * 64, **overrides):
    row = {
        "token": token,
        "user_id": 7,
        "device_id": "dev_x",
        "company_id": 3,
        "expires_at": utcnow() + timedelta(days=1),
        "created_at": utcnow(),
    }
    row.update(overrides)
    return row


def test_unit_store_never_touches_the_pool():
    store = make_store(DummyPool())
    user = store._user_from_row(
        {"id": 1, "email": "a@example.com", "password_hash": "x", "company_id": None}
    )
    assert user.status == "ACTIVE"
    assert user.system_role == "USER"


def test_missing_tables_are_reported():
    present = ScriptedCursor([{"oid": "company"}])
    missing = ScriptedCursor([{"oid": None}])
    # company present, every other table missing
    store = make_store(ScriptedPool(present, *([missing] * 10)))
    with pytest.raises(RuntimeError) as exc:
        store._verify_required_schema()
    assert "refresh_token" in str(exc.value)
    assert "password_reset" in str(exc.value)
    assert "company," not in str(exc.value)


def test_rotate_returns_consumed_row_and_copies_ownership():
    pool = ScriptedPool(ScriptedCursor([refresh_row()]), ScriptedCursor())
    store = make_store(pool)
    successor = RefreshToken.new("b" * 64, 0, "", None, ttl_seconds=600)

    consumed = store.rotate_refresh_token("a" * 64, successor)

    assert consumed.user_id == 7
    (delete_sql, _), (insert_sql, insert_params) = pool.conn.statements
    assert delete_sql.startswith("DELETE FROM refresh_token")
    assert "RETURNING" in delete_sql
    assert insert_params[:4] == ("b" * 64, 7, "dev_x", 3)


def test_rotate_of_consumed_token_inserts_nothing():
    pool = ScriptedPool(ScriptedCursor([]))
    store = make_store(pool)
    assert store.rotate_refresh_token("a" * 64, RefreshToken.new("b" * 64, 0, "", None, ttl_seconds=1)) is None
    assert len(pool.conn.statements) == 1


def test_unique_violation_becomes_constraint_violation():
    store = make_store(ScriptedPool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(RefreshToken.new("a" * 64, 1, "d", None, ttl_seconds=60))


def test_blacklist_entry_mapping():
    expires = utcnow() + timedelta(minutes=5)
    store = make_store(
        ScriptedPool(ScriptedCursor([{"key": "blacklist:user:1", "value": "12.5", "expires_at": expires}]))
    )
    entry = store.get_blacklist_entry("blacklist:user:1")
    assert entry.value == "12.5"
    assert entry.expires_at == expires


def test_purge_reports_rowcount():
    store = make_store(ScriptedPool(ScriptedCursor(rowcount=4)))
    assert store.purge_expired_blacklist_entries() == 4


def test_consume_reset_updates_password_and_drops_refresh_tokens():
    row = {"token": "r1", "user_id": 7, "expires_at": utcnow() + timedelta(hours=1), "used": True}
    pool = ScriptedPool(ScriptedCursor([row]), ScriptedCursor(), ScriptedCursor(rowcount=2))
    store = make_store(pool)

    consumed = store.consume_password_reset("r1", "new-hash")

    assert consumed.user_id == 7 and consumed.used
    (claim_sql, _), (user_sql, user_params), (delete_sql, delete_params) = pool.conn.statements
    assert claim_sql.startswith("UPDATE password_reset SET used = TRUE")
    assert "NOT used" in claim_sql and "RETURNING" in claim_sql
    assert user_params[0] == "new-hash" and user_params[2] == 7
    assert delete_sql == "DELETE FROM refresh_token WHERE user_id = %s"
    assert delete_params == (7,)


def test_consume_of_spent_reset_writes_nothing():
    pool = ScriptedPool(ScriptedCursor([]))
    store = make_store(pool)
    assert store.consume_password_reset("r1", "new-hash") is None
    assert len(pool.conn.statements) == 1


def test_update_password_of_unknown_user():
    store = make_store(ScriptedPool(ScriptedCursor([])))
    with pytest.raises(ConstraintViolation):
        store.update_user_password(99, "hash")
