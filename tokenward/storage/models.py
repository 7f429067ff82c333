from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class UserProfile:
    """Public projection of a user; never carries the password hash."""

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def to_cache(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_verified": self.is_verified,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            id=str(data["id"]),
            email=str(data["email"]),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_verified=bool(data.get("is_verified", False)),
            created_at=_parse_timestamp(data.get("created_at")) or _utcnow(),
        )


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    def public(self) -> UserProfile:
        return UserProfile(
            id=self.id,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            is_verified=self.is_verified,
            created_at=self.created_at,
        )


# Columns a caller may change through ``update_user``.
MUTABLE_USER_FIELDS = frozenset(
    {
        "password_hash",
        "first_name",
        "last_name",
        "is_active",
        "is_verified",
        "last_login_at",
    }
)


@dataclass
class RefreshToken:
    """Server-side ledger row for an issued refresh token.

    Rows are revoked, never deleted.
    """

    token: str = field(repr=False)
    user_id: str
    expires_at: datetime
    is_revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime


__all__ = [
    "User",
    "UserProfile",
    "RefreshToken",
    "TokenClaims",
    "MUTABLE_USER_FIELDS",
]
