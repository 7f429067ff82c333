import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation, StoreUnavailable
from tokenward.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class DummyCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class DummyConnection:
    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        result = self.results.pop(0) if self.results else DummyCursor()
        if isinstance(result, Exception):
            raise result
        return result


class DummyPool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        if self.conn is None:
            raise AssertionError("database access should be stubbed in unit tests")
        yield self.conn


def _store(*results, error=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = DummyConnection(results)
    store.pool = DummyPool(conn, error)
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    return store, conn


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "gina@example.com",
        "password_hash": "hash",
        "first_name": None,
        "last_name": None,
        "is_active": True,
        "is_verified": False,
        "created_at": NOW,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_get_user_maps_row():
    row = _user_row(first_name="Gina")
    store, conn = _store(DummyCursor(row))
    user = store.get_user(str(row["id"]))
    assert user.id == str(row["id"])
    assert user.first_name == "Gina"
    assert conn.executed[0][1] == (str(row["id"]),)


def test_get_user_by_email_missing_returns_none():
    store, _ = _store(DummyCursor(None))
    assert store.get_user_by_email("nobody@example.com") is None


def test_create_user_unique_violation_maps_to_constraint():
    store, _ = _store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("gina@example.com", "hash", created_at=NOW)
    assert excinfo.value.detail == {"field": "email"}


def test_update_user_builds_whitelisted_assignment():
    row = _user_row(first_name="G", is_active=False)
    store, conn = _store(DummyCursor(row))
    user = store.update_user(str(row["id"]), is_active=False, first_name="G")
    query, params = conn.executed[0]
    assert query.startswith("UPDATE app_user SET first_name = %s, is_active = %s WHERE id = %s")
    assert params == ["G", False, str(row["id"])]
    assert user.is_active is False


def test_update_user_rejects_unknown_columns():
    store, conn = _store()
    with pytest.raises(ValueError):
        store.update_user("u1", email="x@example.com; DROP TABLE app_user")
    assert conn.executed == []


def test_revoke_single_token_filters_active_rows():
    store, conn = _store(DummyCursor(rowcount=1))
    assert store.revoke_refresh_tokens("u1", "tok") == 1
    query, params = conn.executed[0]
    assert "NOT is_revoked" in query
    assert query.endswith("AND token = %s")
    assert params == ("u1", "tok")


def test_revoke_all_tokens_returns_changed_rows():
    store, conn = _store(DummyCursor(rowcount=3))
    assert store.revoke_refresh_tokens("u1") == 3
    assert conn.executed[0][1] == ("u1",)


def test_create_refresh_token_returns_row():
    row = {
        "token": "tok",
        "user_id": uuid.uuid4(),
        "expires_at": NOW,
        "is_revoked": False,
        "created_at": NOW,
    }
    store, _ = _store(DummyCursor(row))
    created = store.create_refresh_token("tok", str(row["user_id"]), NOW, created_at=NOW)
    assert created.user_id == str(row["user_id"])
    assert not created.is_revoked


@pytest.mark.parametrize(
    "error", [psycopg.OperationalError("server closed the connection"), PoolTimeout("timeout")]
)
def test_transport_errors_become_store_unavailable(error):
    store, _ = _store(error=error)
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_refresh_token("tok")
    assert excinfo.value.operation == "get_refresh_token"
