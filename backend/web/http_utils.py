"""
Shared HTTP helpers for the route modules.

Why:
    Every router needs the same few things: the acting identity from the
    request state, JSON bodies or multipart forms turned into plain fields and
    uploads, and uniform private JSON and file responses. Keeping them here
    avoids drifting copies per router.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.datastructures import UploadFile

from backend.common.errors import Denied, PayloadTooLarge, PlatformError, ValidationFailed
from backend.identity_access.domain import Actor
from backend.storage.assets import Asset, Upload, sanitize_filename
from backend.web.wiring import get_platform

PRIVATE_NO_STORE = {"Cache-Control": "private, no-store"}


def private_json(body: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=dict(PRIVATE_NO_STORE))


def error_response(exc: PlatformError) -> JSONResponse:
    return private_json({"error": exc.code, "detail": exc.detail}, status_code=exc.status_code)


def current_actor(request: Request) -> Optional[Actor]:
    """Acting identity, or None for anonymous callers."""
    return getattr(request.state, "user", None)


def require_actor(request: Request) -> Actor:
    """Acting identity or the precise authentication error.

    A rejected token (invalid, expired, deactivated account) is re-raised so the
    client learns why; a missing token becomes `Denied("unauthenticated")`.
    """
    actor = current_actor(request)
    if actor is not None:
        return actor
    auth_error = getattr(request.state, "auth_error", None)
    if isinstance(auth_error, PlatformError):
        raise auth_error
    raise Denied("unauthenticated")


async def _read_part(part: UploadFile, key: str, limit: int) -> bytes:
    """Read one file part, never more than `limit + 1` bytes."""
    if part.size is not None and part.size > limit:
        raise PayloadTooLarge(f"size_exceeded:{key}")
    data = await part.read(limit + 1)
    if len(data) > limit:
        raise PayloadTooLarge(f"size_exceeded:{key}")
    return data


async def read_payload(request: Request) -> Tuple[Dict[str, Any], Dict[str, Upload]]:
    """Split a request body into plain fields and file uploads.

    Multipart/urlencoded forms: file parts become `Upload`s keyed by part name;
    every other part is a field. A file part larger than the largest configured
    ceiling is refused before it is read into memory; per-slot ceilings are
    applied later by the upload policy. JSON bodies must be objects and carry
    no files. An empty body yields no fields.
    """
    content_type = (request.headers.get("content-type") or "").lower()
    fields: Dict[str, Any] = {}
    uploads: Dict[str, Upload] = {}
    if content_type.startswith("multipart/") or content_type.startswith("application/x-www-form-urlencoded"):
        limit = get_platform().max_upload_bytes
        form = await request.form()
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key in uploads:
                    raise ValidationFailed(f"duplicate_file_part:{key}")
                data = await _read_part(value, key, limit)
                uploads[key] = Upload(
                    field_name=key,
                    data=data,
                    media_type=value.content_type or "application/octet-stream",
                    filename=value.filename or "file",
                )
            else:
                fields[key] = value
        return fields, uploads
    body = await request.body()
    if not body.strip():
        return fields, uploads
    try:
        parsed = await request.json()
    except ValueError as exc:
        raise ValidationFailed("invalid_json") from exc
    if not isinstance(parsed, dict):
        raise ValidationFailed("invalid_json")
    return parsed, uploads


def asset_response(asset: Asset, *, disposition: str = "inline", filename: str | None = None) -> Response:
    """Stream one asset with its media type and a safe Content-Disposition."""
    name = sanitize_filename(filename or asset.filename)
    headers = dict(PRIVATE_NO_STORE)
    headers["Content-Disposition"] = f"{disposition}; filename=\"{name}\"; filename*=UTF-8''{quote(name)}"
    headers["Content-Length"] = str(asset.size)
    headers["X-Content-Type-Options"] = "nosniff"
    return Response(content=asset.data, media_type=asset.media_type, headers=headers)


def redirect_response(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=302, headers=dict(PRIVATE_NO_STORE))


__all__ = [
    "PRIVATE_NO_STORE",
    "asset_response",
    "current_actor",
    "error_response",
    "private_json",
    "read_payload",
    "redirect_response",
    "require_actor",
]
