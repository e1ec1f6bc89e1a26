"""
Configuration and startup security checks for the Excellence backend.

Why: Prevent accidental insecure deployments. This module provides a single
guard that enforces minimal production safety constraints without burdening
local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os

from backend.storage.config import get_content_store_backend

MIN_JWT_SECRET_LENGTH = 32


def environment() -> str:
    return (os.getenv("EXCELLENCE_ENV", "dev") or "dev").strip().lower()


def is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _is_placeholder(value: str) -> bool:
    upper = value.strip().upper()
    return upper.startswith("CHANGE_ME") or upper in {"DUMMY_DO_NOT_USE", "SECRET", "CHANGEME"}


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - JWT_SECRET must be set, not a placeholder, and at least 32 characters.
    - ADMIN_SECRET_KEY / CLERGY_SECRET_KEY must not be placeholders when set.
    - DATABASE_URL must not explicitly disable TLS.
    - CONTENT_STORE must be `db`; the in-memory store loses every record on
      restart.
    """
    if not is_prod_like(environment()):
        return  # dev/test remain permissive

    # 1) Token signing key
    secret = (os.getenv("JWT_SECRET", "") or "").strip()
    if not secret or _is_placeholder(secret):
        raise SystemExit("Refusing to start: JWT_SECRET is unset or a placeholder in production.")
    if len(secret) < MIN_JWT_SECRET_LENGTH:
        raise SystemExit(
            f"Refusing to start: JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters in production."
        )

    # 2) Role elevation secrets
    for key in ("ADMIN_SECRET_KEY", "CLERGY_SECRET_KEY"):
        val = (os.getenv(key, "") or "").strip()
        if val and _is_placeholder(val):
            raise SystemExit(f"Refusing to start: {key} is a placeholder in production.")

    # 3) Postgres TLS: basic guard to avoid explicit disable
    for key in ("DATABASE_URL", "CONTENT_DATABASE_URL"):
        if "sslmode=disable" in (os.getenv(key, "") or ""):
            raise SystemExit(
                f"Refusing to start: {key} contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )

    # 4) Durable persistence
    if get_content_store_backend() != "db":
        raise SystemExit("Refusing to start: CONTENT_STORE must be db in production.")
