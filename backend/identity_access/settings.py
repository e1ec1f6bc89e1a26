"""
Identity configuration (token signing, elevation secrets, hashing cost).

Why: The role-elevation secrets and the token signing key are process-level
configuration. They are read once into an immutable value and injected into
the token service and credential store, so tests can build isolated settings
without touching the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_TOKEN_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_HASH_ROUNDS = 12
MIN_HASH_ROUNDS = 4
MAX_HASH_ROUNDS = 31
DEV_JWT_SECRET = "CHANGE_ME_DEV_ONLY_jwt_signing_secret"


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class IdentitySettings:
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS
    admin_secret: str | None = None
    clergy_secret: str | None = None
    hash_rounds: int = DEFAULT_HASH_ROUNDS

    def __post_init__(self) -> None:
        if not self.jwt_secret:
            raise ValueError("jwt_secret_required")
        if self.token_ttl_seconds <= 0:
            raise ValueError("invalid_token_ttl")
        # bcrypt accepts cost factors 4..31 only
        rounds = min(MAX_HASH_ROUNDS, max(MIN_HASH_ROUNDS, int(self.hash_rounds)))
        object.__setattr__(self, "hash_rounds", rounds)

    @classmethod
    def from_env(cls) -> "IdentitySettings":
        """Build settings from JWT_*, *_SECRET_KEY and PASSWORD_HASH_ROUNDS."""
        return cls(
            jwt_secret=(os.getenv("JWT_SECRET") or DEV_JWT_SECRET).strip(),
            jwt_algorithm=(os.getenv("JWT_ALGORITHM") or "HS256").strip(),
            token_ttl_seconds=_int_env("JWT_EXPIRES_IN_SECONDS", DEFAULT_TOKEN_TTL_SECONDS),
            admin_secret=(os.getenv("ADMIN_SECRET_KEY") or "").strip() or None,
            clergy_secret=(os.getenv("CLERGY_SECRET_KEY") or "").strip() or None,
            hash_rounds=_int_env("PASSWORD_HASH_ROUNDS", DEFAULT_HASH_ROUNDS),
        )


__all__ = ["IdentitySettings", "DEV_JWT_SECRET", "DEFAULT_TOKEN_TTL_SECONDS"]
