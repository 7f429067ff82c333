from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import MUTABLE_USER_FIELDS, RefreshToken, User


class MemoryStore:
    """In-process credential store for tests and local development.

    The lock stands in for the row-level atomicity a real database gives;
    callers never see it. Objects handed out are copies, so mutating them
    does not touch stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._emails: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

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
        with self._data_lock:
            if email in self._emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                created_at=created_at or datetime.now(timezone.utc),
            )
            self.users[user.id] = user
            self._emails[email] = user.id
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._emails.get(email)
            if user_id is None:
                return None
            return replace(self.users[user_id])

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            return replace(user)

    def list_users(self) -> List[User]:
        with self._data_lock:
            return [replace(user) for user in self.users.values()]

    # refresh tokens
    def create_refresh_token(
        self,
        token: str,
        user_id: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            row = RefreshToken(
                token=token,
                user_id=user_id,
                expires_at=expires_at,
                created_at=created_at or datetime.now(timezone.utc),
            )
            self.refresh_tokens[token] = row
            return replace(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            return replace(row) if row else None

    def revoke_refresh_tokens(self, user_id: str, token: Optional[str] = None) -> int:
        """Revoke matching active rows; returns how many changed state."""
        with self._data_lock:
            matched = 0
            for row in self.refresh_tokens.values():
                if row.user_id != user_id:
                    continue
                if token is not None and row.token != token:
                    continue
                if row.is_revoked:
                    continue
                row.is_revoked = True
                matched += 1
            self.logger.debug(
                "refresh_tokens_revoked", user_id=user_id, single=token is not None, matched=matched
            )
            return matched


__all__ = ["MemoryStore"]
