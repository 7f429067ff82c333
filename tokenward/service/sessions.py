"""Registration, login and the refresh-token lifecycle.

Refresh tokens are checked twice on every use: cryptographically by the codec
and against their ledger row in the credential store, which is authoritative
for revocation and expiry. Access tokens are not stored and stay valid until
they expire.

Expected outcomes (duplicate email, bad password, revoked token, ...) come
back as ``Failure``; ``StoreUnavailable`` is raised and never retried here.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.result import Failure, Result, Success
from tokenward.service.errors import AuthFailure, ErrorKind
from tokenward.service.passwords import PasswordHasher
from tokenward.service.profile_cache import ProfileCache, ProfileLookup
from tokenward.service.tokens import ACCESS, REFRESH, TokenCodec
from tokenward.storage.base import CredentialStore
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import User, UserProfile

logger = get_logger(__name__)

_INVALID_REFRESH = "Invalid refresh token"
_EXPIRED_REFRESH = "Refresh token expired"


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str
    user: UserProfile
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class RefreshOutcome:
    access_token: str
    expires_in: int
    # Only set when refresh-token rotation is enabled
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str


_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """NFKC-normalise and drop zero-width and bidi override characters."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(email: str) -> str:
    """Canonical form used for every email lookup and insert."""
    return normalize_unicode(email.strip().lower())


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        hasher: PasswordHasher,
        profiles: ProfileCache,
        settings: Settings,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.profiles = profiles
        self.settings = settings
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    @property
    def clock(self):
        return self.codec.clock

    def _issue_access(self, user_id: str, email: str) -> str:
        return self.codec.issue(
            {"sub": user_id, "email": email},
            self.access_ttl,
            self.settings.access_token_secret,
            token_type=ACCESS,
        )

    def _issue_refresh(self, user_id: str, email: str) -> str:
        """Mint a refresh token and record its ledger row."""
        now = self.clock.now()
        token = self.codec.issue(
            {"sub": user_id, "email": email},
            self.refresh_ttl,
            self.settings.refresh_token_secret,
            token_type=REFRESH,
        )
        self.store.create_refresh_token(
            token, user_id, now + self.refresh_ttl, created_at=now
        )
        return token

    def _start_session(self, user: User) -> AuthSession:
        return AuthSession(
            access_token=self._issue_access(user.id, user.email),
            refresh_token=self._issue_refresh(user.id, user.email),
            user=user.public(),
            expires_in=int(self.access_ttl.total_seconds()),
        )

    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Result[AuthSession, AuthFailure]:
        email = normalize_email(email)
        if self.store.get_user_by_email(email) is not None:
            logger.info("register_rejected", reason="email_exists")
            return Failure(AuthFailure.of(ErrorKind.ALREADY_EXISTS))
        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_user(
                email,
                password_hash,
                first_name=first_name,
                last_name=last_name,
                created_at=self.clock.now(),
            )
        except ConstraintViolation:
            # Lost a race with a concurrent registration of the same email
            logger.info("register_rejected", reason="email_exists_race")
            return Failure(AuthFailure.of(ErrorKind.ALREADY_EXISTS))
        session = self._start_session(user)
        await self.profiles.prime(session.user)
        logger.info("user_registered", user_id=user.id)
        return Success(session)

    async def login(self, email: str, password: str) -> Result[AuthSession, AuthFailure]:
        # Checks existence, then the active flag, then the password. A
        # deactivated account is therefore distinguishable from a wrong
        # password; unknown emails and wrong passwords are not.
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None:
            self.hasher.verify_dummy(password)
            logger.info("login_failed", reason="unknown_email")
            return Failure(AuthFailure.of(ErrorKind.INVALID_CREDENTIALS))
        if not user.is_active:
            logger.info("login_failed", reason="account_deactivated", user_id=user.id)
            return Failure(AuthFailure.of(ErrorKind.ACCOUNT_DEACTIVATED))
        if not self.hasher.verify(password, user.password_hash):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            return Failure(AuthFailure.of(ErrorKind.INVALID_CREDENTIALS))

        session = self._start_session(user)
        updates = {"last_login_at": self.clock.now()}
        if self.hasher.needs_rehash(user.password_hash):
            updates["password_hash"] = self.hasher.hash(password)
        self.store.update_user(user.id, **updates)
        await self.profiles.prime(session.user)
        logger.info("user_logged_in", user_id=user.id)
        return Success(session)

    async def refresh(self, refresh_token: str) -> Result[RefreshOutcome, AuthFailure]:
        verified = self.codec.verify(
            refresh_token, self.settings.refresh_token_secret, token_type=REFRESH
        )
        if isinstance(verified, Failure):
            # Signature, structure and embedded expiry all collapse to one answer
            return Failure(AuthFailure.of(ErrorKind.INVALID_TOKEN, _INVALID_REFRESH))
        claims = verified.value

        row = self.store.get_refresh_token(refresh_token)
        if row is None or row.is_revoked or row.user_id != claims.user_id:
            logger.info("refresh_rejected", reason="unknown_or_revoked", user_id=claims.user_id)
            return Failure(AuthFailure.of(ErrorKind.INVALID_TOKEN, _INVALID_REFRESH))
        if row.is_expired(self.clock.now()):
            logger.info("refresh_rejected", reason="store_expired", user_id=claims.user_id)
            return Failure(AuthFailure.of(ErrorKind.TOKEN_EXPIRED, _EXPIRED_REFRESH))

        rotated: Optional[str] = None
        if self.settings.rotate_refresh_tokens:
            # Conditional revoke; only one concurrent rotation of a token wins
            if self.store.revoke_refresh_tokens(claims.user_id, refresh_token) == 0:
                logger.info("refresh_rejected", reason="rotation_race", user_id=claims.user_id)
                return Failure(AuthFailure.of(ErrorKind.INVALID_TOKEN, _INVALID_REFRESH))
            rotated = self._issue_refresh(claims.user_id, claims.email)

        logger.info("access_token_refreshed", user_id=claims.user_id, rotated=rotated is not None)
        return Success(
            RefreshOutcome(
                access_token=self._issue_access(claims.user_id, claims.email),
                expires_in=int(self.access_ttl.total_seconds()),
                refresh_token=rotated,
            )
        )

    async def logout(self, user_id: str, refresh_token: str) -> None:
        """Revoke one refresh token of ``user_id``; repeating it is a no-op."""
        revoked = self.store.revoke_refresh_tokens(user_id, refresh_token)
        await self.profiles.invalidate(user_id)
        logger.info("user_logged_out", user_id=user_id, revoked=revoked)

    async def revoke_all_tokens(self, user_id: str) -> int:
        revoked = self.store.revoke_refresh_tokens(user_id)
        await self.profiles.invalidate(user_id)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, revoked=revoked)
        return revoked

    async def authenticate(self, access_token: str) -> Result[Principal, AuthFailure]:
        """Resolve a bearer access token to an existing, active user."""
        verified = self.codec.verify(
            access_token, self.settings.access_token_secret, token_type=ACCESS
        )
        if isinstance(verified, Failure):
            return verified
        claims = verified.value
        user = self.store.get_user(claims.user_id)
        if user is None:
            return Failure(AuthFailure.of(ErrorKind.INVALID_TOKEN, "User not found or inactive"))
        if not user.is_active:
            return Failure(AuthFailure.of(ErrorKind.ACCOUNT_DEACTIVATED))
        return Success(Principal(user_id=user.id, email=user.email))

    async def get_profile(self, user_id: str) -> Result[ProfileLookup, AuthFailure]:
        return await self.profiles.get_profile(user_id)

    async def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Result[UserProfile, AuthFailure]:
        changes = {}
        if first_name is not None:
            changes["first_name"] = first_name
        if last_name is not None:
            changes["last_name"] = last_name
        user = self.store.update_user(user_id, **changes)
        if user is None:
            return Failure(AuthFailure.of(ErrorKind.NOT_FOUND))
        await self.profiles.invalidate(user_id)
        logger.info("profile_updated", user_id=user_id, fields=sorted(changes))
        return Success(user.public())

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Result[int, AuthFailure]:
        """Replace the password and revoke every refresh token of the user."""
        user = self.store.get_user(user_id)
        if user is None:
            return Failure(AuthFailure.of(ErrorKind.NOT_FOUND))
        if not self.hasher.verify(current_password, user.password_hash):
            logger.info("password_change_rejected", user_id=user_id)
            return Failure(AuthFailure.of(ErrorKind.INVALID_CREDENTIALS))
        self.store.update_user(user_id, password_hash=self.hasher.hash(new_password))
        revoked = self.store.revoke_refresh_tokens(user_id)
        await self.profiles.invalidate(user_id)
        logger.info("password_changed", user_id=user_id, revoked=revoked)
        return Success(revoked)

    async def deactivate_user(self, user_id: str) -> Result[int, AuthFailure]:
        user = self.store.update_user(user_id, is_active=False)
        if user is None:
            return Failure(AuthFailure.of(ErrorKind.NOT_FOUND))
        revoked = self.store.revoke_refresh_tokens(user_id)
        await self.profiles.invalidate(user_id)
        logger.info("user_deactivated", user_id=user_id, revoked=revoked)
        return Success(revoked)


__all__ = [
    "SessionManager",
    "AuthSession",
    "RefreshOutcome",
    "Principal",
    "normalize_email",
    "normalize_unicode",
]
