"""
Authentication routes: registration, login, password change, current user.

Why:
    Thin adapter over the credential store and token service. Each successful
    registration, login or password change returns a freshly issued bearer
    token together with the sanitized identity.

Security:
    - Responses are `private, no-store`.
    - Passwords and tokens are never logged.
    - Elevation secrets (`admin_key`, `clergy_key`) are optional; a wrong value
      silently registers a student.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

from backend.identity_access.domain import PROFILE_FIELDS
from backend.web.http_utils import private_json, require_actor
from backend.web.wiring import get_platform

auth_router = APIRouter(tags=["Auth"])
logger = logging.getLogger("excellence.web.auth")


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    admin_key: Optional[str] = None
    clergy_key: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    password: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    current_password: Optional[str] = None
    new_password: Optional[str] = None


def _session_body(user: Dict[str, Any]) -> Dict[str, Any]:
    platform = get_platform()
    token = platform.tokens.issue(user["id"], user["role"])
    return {"user": user, "token": token, "expires_in": platform.settings.token_ttl_seconds}


@auth_router.post("/api/auth/register")
async def register(payload: RegisterRequest):
    """Create an identity and return it with a bearer token (201).

    Validation:
        `name` required, syntactically valid `email`, `password` of at least
        6 characters. Duplicate emails (case-insensitive) are rejected.
    """
    profile = {k: v for k, v in (payload.profile or {}).items() if k in PROFILE_FIELDS}
    user = await asyncio.to_thread(
        get_platform().credentials.register,
        name=payload.name or "",
        email=payload.email or "",
        password=payload.password or "",
        admin_key=payload.admin_key,
        clergy_key=payload.clergy_key,
        profile=profile,
    )
    logger.info("Registration completed for %s", user["id"])
    return private_json(_session_body(user), status_code=201)


@auth_router.post("/api/auth/login")
async def login(payload: LoginRequest):
    user = await asyncio.to_thread(
        get_platform().credentials.authenticate, payload.email or "", payload.password or ""
    )
    return private_json(_session_body(user))


@auth_router.post("/api/auth/change-password")
async def change_password(request: Request, payload: ChangePasswordRequest):
    """Re-verify the current password, store the new one, issue a new token."""
    actor = require_actor(request)
    user = await asyncio.to_thread(
        get_platform().credentials.change_password,
        actor.id,
        payload.current_password or "",
        payload.new_password or "",
    )
    return private_json(_session_body(user))


@auth_router.get("/api/auth/me")
async def get_me(request: Request):
    actor = require_actor(request)
    return private_json({"user": await asyncio.to_thread(get_platform().directory.get_me, actor)})
