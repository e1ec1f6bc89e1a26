"Excellence backend"
from __future__ import annotations

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.common.errors import AccountDeactivated, InvalidToken, PlatformError, Unexpected
from backend.identity_access.domain import actor_from_identity
from backend.web import config as _cfg
from backend.web.http_utils import PRIVATE_NO_STORE, error_response, private_json
from backend.web.routes.assignments import submissions_router
from backend.web.routes.auth import auth_router
from backend.web.routes.content import KIND_ROUTES, build_kind_router
from backend.web.routes.users import users_router
from backend.web.wiring import get_platform


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out/opt-in via EXCELLENCE_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("EXCELLENCE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

logger = logging.getLogger("excellence.web")

app = FastAPI(
    title="Excellence",
    description="Sermons, prayers, books, learning materials and assignments",
    version="1.0.0",
)

# --- Auth Middleware -------------------------------------------------------------

def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _actor_for_token(token: str):
    platform = get_platform()
    claims = platform.tokens.verify(token)
    identity = platform.credentials.get(claims.subject_id)
    if identity is None:
        raise InvalidToken("invalid_token")
    if not identity.get("is_active", True):
        raise AccountDeactivated("account_deactivated")
    return actor_from_identity(identity)


@app.middleware("http")
async def resolve_actor(request: Request, call_next):
    """Attach the acting identity (or None) to `request.state.user`.

    The stored identity is re-read on every request, so deactivation and role
    changes take effect immediately. A rejected token is kept on
    `request.state.auth_error`; routes that require an actor raise it, public
    reads proceed anonymously.
    """
    request.state.user = None
    request.state.auth_error = None
    token = _bearer_token(request) if request.url.path.startswith("/api/") else None
    if token:
        try:
            request.state.user = await asyncio.to_thread(_actor_for_token, token)
        except PlatformError as exc:
            request.state.auth_error = exc
    return await call_next(request)

# --- Security Headers Middleware ----------------------------------------------

@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response

# --- Error Mapping -------------------------------------------------------------

@app.exception_handler(Unexpected)
async def handle_unexpected(request: Request, exc: Unexpected):
    return private_json({"error": "internal_error"}, status_code=500)


@app.exception_handler(PlatformError)
async def handle_platform_error(request: Request, exc: PlatformError):
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    return private_json({"error": "validation_failed", "detail": "invalid_request"}, status_code=400)


@app.exception_handler(Exception)
async def handle_uncaught(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "internal_error"}, status_code=500, headers=dict(PRIVATE_NO_STORE))

# --- Routers -------------------------------------------------------------------

app.include_router(auth_router)
app.include_router(users_router)
# Submission paths before the generic assignment routes (`/{resource_id}`).
app.include_router(submissions_router)
for _spec in KIND_ROUTES:
    app.include_router(build_kind_router(_spec))


@app.get("/health")
async def health_check():
    # Security: include no-store to avoid caching any runtime status.
    return private_json({"status": "healthy"})
