from __future__ import annotations

from dataclasses import dataclass

from tokenward.logging import get_logger
from tokenward.result import Failure, Result, Success
from tokenward.service.errors import AuthFailure, ErrorKind
from tokenward.storage.base import CacheLayer, CredentialStore
from tokenward.storage.errors import CacheUnavailable
from tokenward.storage.models import UserProfile

logger = get_logger(__name__)


def profile_key(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass(frozen=True)
class ProfileLookup:
    profile: UserProfile
    cached: bool


class ProfileCache:
    """Cache-aside reads and delete-on-write invalidation for user profiles.

    The cache only accelerates reads. Any ``CacheUnavailable`` is logged and
    the store answers instead; store failures propagate. Missing users are not
    negatively cached, so repeated lookups of an unknown id always reach the
    store.
    """

    def __init__(self, store: CredentialStore, cache: CacheLayer, ttl_seconds: int = 900) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get_profile(self, user_id: str) -> Result[ProfileLookup, AuthFailure]:
        key = profile_key(user_id)
        try:
            cached = await self.cache.get_json(key)
        except CacheUnavailable:
            logger.warning("profile_cache_unavailable", operation="get", user_id=user_id)
            cached = None
        if isinstance(cached, dict):
            try:
                return Success(ProfileLookup(UserProfile.from_cache(cached), cached=True))
            except (KeyError, TypeError, ValueError):
                logger.warning("profile_cache_entry_invalid", user_id=user_id)

        user = self.store.get_user(user_id)
        if user is None:
            return Failure(AuthFailure.of(ErrorKind.NOT_FOUND))
        profile = user.public()
        await self.prime(profile)
        return Success(ProfileLookup(profile, cached=False))

    async def prime(self, profile: UserProfile) -> None:
        try:
            await self.cache.set_json(profile_key(profile.id), profile.to_cache(), self.ttl_seconds)
        except CacheUnavailable:
            logger.warning("profile_cache_unavailable", operation="set", user_id=profile.id)

    async def invalidate(self, user_id: str) -> None:
        try:
            await self.cache.delete(profile_key(user_id))
        except CacheUnavailable:
            logger.warning("profile_cache_unavailable", operation="delete", user_id=user_id)


__all__ = ["ProfileCache", "ProfileLookup", "profile_key"]
