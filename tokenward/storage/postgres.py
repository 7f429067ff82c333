from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation, StoreUnavailable
from tokenward.storage.models import MUTABLE_USER_FIELDS, RefreshToken, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Every call is bounded: ``connect_timeout`` for new connections, the pool
    ``timeout`` for checkout and a server-side ``statement_timeout`` for
    queries. Transport failures surface as ``StoreUnavailable``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            is_revoked=row.get("is_revoked", False),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        created = created_at or datetime.now(timezone.utc)
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash, first_name, last_name, created),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_user(user_id)
        # Column names come from the whitelist above, values are parameterised.
        columns = sorted(fields)
        assignments = ", ".join(f"{name} = %s" for name in columns)
        params = [fields[name] for name in columns] + [user_id]
        with self._connect("update_user") as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    # refresh tokens
    def create_refresh_token(
        self,
        token: str,
        user_id: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> RefreshToken:
        created = created_at or datetime.now(timezone.utc)
        try:
            with self._connect("create_refresh_token") as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token, user_id, expires_at, created),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._token_from_row(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect("get_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return self._token_from_row(row)

    def revoke_refresh_tokens(self, user_id: str, token: Optional[str] = None) -> int:
        """Revoke matching active rows in one statement; returns how many changed state."""
        query = "UPDATE refresh_token SET is_revoked = TRUE WHERE user_id = %s AND NOT is_revoked"
        params: tuple = (user_id,)
        if token is not None:
            query += " AND token = %s"
            params = (user_id, token)
        with self._connect("revoke_refresh_tokens") as conn:
            cursor = conn.execute(query, params)
            revoked = cursor.rowcount
        return max(0, revoked)


__all__ = ["PostgresStore"]
