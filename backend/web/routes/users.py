"""
Users API routes: own profile and admin user management.

Why:
    Profile self-service (fields plus photo upload) for every authenticated
    identity, and an admin-only directory to list, inspect, edit and
    soft-deactivate accounts. Records are never physically deleted.

Permissions:
    - `/api/users/profile*`: any authenticated identity (own record only).
    - `/api/users/{id}/photo`: public for active accounts.
    - All other routes: admin only (enforced by `UserDirectory`).
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

from backend.common.errors import UnexpectedField
from backend.web.http_utils import asset_response, private_json, read_payload, require_actor
from backend.web.wiring import get_platform

users_router = APIRouter(tags=["Users"])


class UpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    profile: Optional[Dict[str, Any]] = None


@users_router.get("/api/users/profile")
async def get_profile(request: Request):
    actor = require_actor(request)
    return private_json({"user": await asyncio.to_thread(get_platform().directory.get_profile, actor)})


@users_router.patch("/api/users/profile")
async def update_profile(request: Request):
    """Update whitelisted profile fields; a `photo` file part replaces the photo.

    Accepts JSON or multipart. Unknown fields are ignored.
    """
    actor = require_actor(request)
    fields, uploads = await read_payload(request)
    photo = uploads.pop("photo", None)
    if uploads:
        raise UnexpectedField(f"unexpected_field:{next(iter(uploads))}")
    user = await asyncio.to_thread(get_platform().directory.update_profile, actor, fields, photo=photo)
    return private_json({"user": user})


@users_router.get("/api/users/{user_id}/photo")
async def get_photo(user_id: str):
    asset = await asyncio.to_thread(get_platform().directory.read_photo, user_id)
    return asset_response(asset, disposition="inline")


@users_router.get("/api/users")
async def list_users(
    request: Request,
    role: Optional[str] = None,
    search: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sort: Optional[str] = None,
):
    actor = require_actor(request)
    result = await asyncio.to_thread(
        get_platform().directory.list_users,
        actor, role=role, search=search, page=page, limit=limit, sort=sort
    )
    return private_json(result)


@users_router.get("/api/users/{user_id}")
async def get_user(request: Request, user_id: str):
    actor = require_actor(request)
    return private_json({"user": await asyncio.to_thread(get_platform().directory.get_user, actor, user_id)})


@users_router.patch("/api/users/{user_id}")
async def update_user(request: Request, user_id: str, payload: UpdateUserRequest):
    actor = require_actor(request)
    user = await asyncio.to_thread(
        get_platform().directory.update_user,
        actor,
        user_id,
        name=payload.name,
        role=payload.role,
        is_active=payload.is_active,
        profile=payload.profile,
    )
    return private_json({"user": user})


@users_router.delete("/api/users/{user_id}")
async def deactivate_user(request: Request, user_id: str):
    """Soft delete: the account is deactivated, never removed."""
    actor = require_actor(request)
    await asyncio.to_thread(get_platform().directory.deactivate_user, actor, user_id)
    return private_json({"status": "deactivated"})
