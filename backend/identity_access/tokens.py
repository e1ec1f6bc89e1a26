"""
Signed identity tokens for the identity_access bounded context.

Why: Keep cryptographic issuance and validation outside the web adapter so we
can unit test it independently. Tokens are stateless: nothing is persisted
server-side; revocation happens through the subject's `is_active` flag (checked
per request by the caller) or expiry.

Security: HS256 signatures via python-jose. A malformed or tampered token and
an expired token are reported as distinct errors so clients can tell "log in
again" from "your session ran out".
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict

from jose import jwt
from jose.exceptions import JOSEError

from backend.common.errors import ExpiredToken, InvalidToken
from backend.identity_access.domain import ALLOWED_ROLES
from backend.identity_access.settings import IdentitySettings

MAX_CLOCK_SKEW_SECONDS = 5  # Allow minimal skew between servers


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: str
    issued_at: int
    expires_at: int


class TokenService:
    """Issue and verify identity tokens binding subject and role."""

    def __init__(self, settings: IdentitySettings, *, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock

    def issue(self, subject_id: str, role: str) -> str:
        """Return a signed token; the role is a snapshot taken at issuance."""
        if role not in ALLOWED_ROLES:
            raise ValueError("invalid_role")
        now = int(self._clock())
        claims = {
            "sub": str(subject_id),
            "role": role,
            "iat": now,
            "exp": now + self._settings.token_ttl_seconds,
        }
        return jwt.encode(claims, self._settings.jwt_secret, algorithm=self._settings.jwt_algorithm)

    def verify(self, token: str) -> TokenClaims:
        """Validate signature and temporal claims.

        Raises
        ------
        InvalidToken:
            Malformed token, bad signature, or missing/unknown claims.
        ExpiredToken:
            Signature is valid but `exp` lies in the past.
        """
        if not token or not isinstance(token, str):
            raise InvalidToken("invalid_token")
        try:
            claims = jwt.decode(
                token,
                self._settings.jwt_secret,
                algorithms=[self._settings.jwt_algorithm],
                options={
                    "verify_signature": True,
                    "verify_aud": False,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except JOSEError as exc:
            raise InvalidToken("invalid_token") from exc

        self._validate_temporal_claims(claims)

        subject = claims.get("sub")
        role = claims.get("role")
        if not isinstance(subject, str) or not subject or role not in ALLOWED_ROLES:
            raise InvalidToken("invalid_token")
        return TokenClaims(
            subject_id=subject,
            role=str(role),
            issued_at=int(claims.get("iat") or 0),
            expires_at=int(claims["exp"]),
        )

    def _validate_temporal_claims(self, claims: Dict[str, object]) -> None:
        now = self._clock()
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise InvalidToken("invalid_token")
        if exp + MAX_CLOCK_SKEW_SECONDS < now:
            raise ExpiredToken("token_expired")

        iat = claims.get("iat")
        if isinstance(iat, (int, float)) and iat - MAX_CLOCK_SKEW_SECONDS > now:
            raise InvalidToken("invalid_token")


__all__ = ["TokenClaims", "TokenService", "MAX_CLOCK_SKEW_SECONDS"]
