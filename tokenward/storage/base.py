from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from tokenward.storage.models import RefreshToken, User


class CredentialStore(Protocol):
    """Authoritative persistence for users and refresh-token rows.

    Every method is atomic at the single-row or bulk-update level. Transport
    and timeout failures surface as ``StoreUnavailable``.
    """

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> User: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def create_refresh_token(
        self,
        token: str,
        user_id: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_tokens(self, user_id: str, token: Optional[str] = None) -> int: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


class CacheLayer(Protocol):
    """Shared key-value store with per-key expiry and atomic counters.

    Every failure surfaces as ``CacheUnavailable``. Entries are never
    authoritative.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int: ...

    async def decrement_if_positive(self, key: str) -> int: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def get_json(self, key: str) -> Optional[Any]: ...

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


__all__ = ["CredentialStore", "CacheLayer"]
