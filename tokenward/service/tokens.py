"""Signed, expiring bearer tokens (compact HS256 JWS).

The codec is pure: it reads the clock and the secret it is given and never
touches a store. Access and refresh tokens are signed with different secrets
and carry a ``token_type`` claim, so one can never stand in for the other.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from tokenward.clock import Clock, SystemClock
from tokenward.logging import get_logger
from tokenward.result import Failure, Result, Success
from tokenward.service.errors import AuthFailure, ErrorKind
from tokenward.storage.models import TokenClaims

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "email", "token_type", "jti", "iat", "exp")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


class TokenCodec:
    def __init__(self, issuer: str, audience: str, clock: Optional[Clock] = None) -> None:
        self.issuer = issuer
        self.audience = audience
        self.clock: Clock = clock or SystemClock()

    def issue(
        self,
        claims: Dict[str, Any],
        ttl: timedelta,
        secret: str,
        *,
        token_type: str = ACCESS,
    ) -> str:
        """Sign ``claims`` (must include ``sub`` and ``email``) with an expiry ``ttl`` from now."""
        now = self.clock.now()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(signing_input, secret)}"

    def verify(
        self, token: str, secret: str, *, token_type: str = ACCESS
    ) -> Result[TokenClaims, AuthFailure]:
        invalid = Failure(AuthFailure.of(ErrorKind.INVALID_TOKEN))
        if not isinstance(token, str):
            return invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return invalid

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return invalid
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return invalid

        expected_sig = _sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return invalid
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return invalid
        if not isinstance(payload, dict):
            return invalid
        if any(payload.get(name) in (None, "") for name in _REQUIRED_CLAIMS):
            return invalid
        if payload.get("iss") != self.issuer:
            return invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return invalid
        if payload.get("token_type") != token_type:
            return invalid
        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return invalid
        if expires_at <= self.clock.now():
            return Failure(AuthFailure.of(ErrorKind.TOKEN_EXPIRED))
        return Success(
            TokenClaims(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                token_type=token_type,
                jti=str(payload["jti"]),
                issued_at=issued_at,
                expires_at=expires_at,
            )
        )


__all__ = ["TokenCodec", "ACCESS", "REFRESH"]
