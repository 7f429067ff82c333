from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from tokenward.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    RefreshResponse,
    RegisterRequest,
    RevokeResponse,
    TokenRefreshRequest,
    UserResponse,
)
from tokenward.result import Failure, Result
from tokenward.service.errors import AuthenticationError
from tokenward.service.rate_limit import RateLimitDecision
from tokenward.service.runtime import Runtime
from tokenward.service.sessions import AuthSession, Principal
from tokenward.storage.models import UserProfile

router = APIRouter(prefix="/v1/auth")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_key(request: Request) -> str:
    """Rate-limit identity of the caller; the peer address."""
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _unwrap(outcome: Result):
    """Return the success value or raise the failure as a ServiceError."""
    if isinstance(outcome, Failure):
        raise outcome.error.to_service_error()
    return outcome.value


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.reset_seconds)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_auth_rate_limit(
    runtime: Runtime, request: Request, response: Response
) -> RateLimitInfo:
    decision = _unwrap(await runtime.rate_limiter.hit(runtime.auth_policy, client_key(request)))
    info = RateLimitInfo.from_decision(decision)
    if decision.limit > 0:
        info.apply_headers(response)
    return info


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Principal:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("invalid authorization header")
    return _unwrap(await runtime.sessions.authenticate(token.strip()))


def _user_response(profile: UserProfile) -> UserResponse:
    return UserResponse(
        id=profile.id,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        is_verified=profile.is_verified,
        created_at=profile.created_at,
    )


def _auth_response(session: AuthSession) -> AuthResponse:
    return AuthResponse(
        user=_user_response(session.user),
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        token_type=session.token_type,
        expires_in=session.expires_in,
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Create an account and start a session.

    Raises:
        409: If the email is already registered
        429: If the auth rate limit is exceeded
    """
    await _enforce_auth_rate_limit(runtime, request, response)
    session = _unwrap(
        await runtime.sessions.register(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    )
    await runtime.rate_limiter.release(runtime.auth_policy, client_key(request))
    return Envelope(status="ok", data=_auth_response(session))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated
        429: If the auth rate limit is exceeded
    """
    await _enforce_auth_rate_limit(runtime, request, response)
    session = _unwrap(await runtime.sessions.login(body.email, body.password))
    await runtime.rate_limiter.release(runtime.auth_policy, client_key(request))
    return Envelope(status="ok", data=_auth_response(session))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    """Exchange a refresh token for a new access token."""
    outcome = _unwrap(await runtime.sessions.refresh(body.refresh_token))
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=outcome.access_token,
            refresh_token=outcome.refresh_token,
            token_type=outcome.token_type,
            expires_in=outcome.expires_in,
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.sessions.logout(principal.user_id, body.refresh_token)
    return Envelope(status="ok", data=RevokeResponse(message="Logged out successfully"))


@router.post("/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke every refresh token of the caller; access tokens live until expiry."""
    revoked = await runtime.sessions.revoke_all_tokens(principal.user_id)
    return Envelope(
        status="ok",
        data=RevokeResponse(message="All refresh tokens revoked", revoked=revoked),
    )


@router.get("/profile", response_model=Envelope, tags=["profile"])
async def get_profile(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    lookup = _unwrap(await runtime.sessions.get_profile(principal.user_id))
    return Envelope(
        status="ok",
        data=ProfileResponse(user=_user_response(lookup.profile), cached=lookup.cached),
    )


@router.patch("/profile", response_model=Envelope, tags=["profile"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    profile = _unwrap(
        await runtime.sessions.update_profile(
            principal.user_id, first_name=body.first_name, last_name=body.last_name
        )
    )
    return Envelope(
        status="ok", data=ProfileResponse(user=_user_response(profile), cached=False)
    )


@router.post("/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the caller's password and sign out every other session.

    Raises:
        401: If the current password is wrong
    """
    revoked = _unwrap(
        await runtime.sessions.change_password(
            principal.user_id, body.current_password, body.new_password
        )
    )
    return Envelope(
        status="ok",
        data=RevokeResponse(message="Password changed", revoked=revoked),
    )
