"""
Error taxonomy shared by the identity, storage and content contexts.

Why:
    Keep one vocabulary of failure kinds so the web adapter can translate them
    to responses without knowing which component raised them. Each error
    carries a stable machine `code` (returned to clients) and an HTTP hint.

Design:
    Where a builtin exception already means the same thing, the class also
    derives from it (`NotFound` is a `LookupError`, `Denied` a
    `PermissionError`, validation failures are `ValueError`s). Callers that
    only care about the builtin meaning keep working.
"""
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, TypeVar

F = TypeVar("F", bound=Callable[..., Any])


class PlatformError(Exception):
    """Base class for all expected failures surfaced to callers."""

    code = "error"
    status_code = 400

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


# --- Identity ------------------------------------------------------------------

class InvalidCredentials(PlatformError):
    code = "invalid_credentials"
    status_code = 401


class AccountDeactivated(PlatformError):
    code = "account_deactivated"
    status_code = 401


class InvalidToken(PlatformError):
    code = "invalid_token"
    status_code = 401


class ExpiredToken(PlatformError):
    code = "token_expired"
    status_code = 401


class DuplicateEmail(PlatformError):
    code = "duplicate_email"
    status_code = 400


# --- Input and uploads ---------------------------------------------------------

class ValidationFailed(PlatformError, ValueError):
    code = "validation_failed"
    status_code = 400


class UnsupportedMediaType(PlatformError, ValueError):
    code = "unsupported_media_type"
    status_code = 415


class PayloadTooLarge(PlatformError, ValueError):
    code = "payload_too_large"
    status_code = 413


class UnexpectedField(PlatformError, ValueError):
    code = "unexpected_field"
    status_code = 400


# --- Access and state ----------------------------------------------------------

class NotFound(PlatformError, LookupError):
    code = "not_found"
    status_code = 404


class Denied(PlatformError, PermissionError):
    """Policy refusal.

    `reason` is one of the policy reasons (see `backend.content.policy`); the
    HTTP hint follows from it so a non-disclosing denial renders exactly like
    a missing resource.
    """

    code = "forbidden"
    status_code = 403

    _STATUS_BY_REASON = {
        "not_found": 404,
        "unauthenticated": 401,
        "forbidden": 403,
        "submission_closed": 400,
        "already_submitted": 409,
    }

    def __init__(self, reason: str = "forbidden", detail: str | None = None):
        super().__init__(detail or reason)
        self.reason = reason
        self.status_code = self._STATUS_BY_REASON.get(reason, 403)
        # Non-disclosing denials reuse the not-found wire code.
        self.code = "not_found" if reason == "not_found" else reason


class Conflict(PlatformError):
    code = "conflict"
    status_code = 409


class AssetNotPresent(NotFound):
    code = "asset_not_present"


class Unexpected(PlatformError):
    """Catch-all internal fault; detail is never shown to clients."""

    code = "internal_error"
    status_code = 500


def unexpected_boundary(logger: logging.Logger) -> Callable[[F], F]:
    """Re-raise anything outside the taxonomy as `Unexpected`, logged in full.

    Taxonomy errors pass through untouched so callers keep their typed result.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except PlatformError:
                raise
            except Exception as exc:
                logger.exception("Unexpected failure in %s", fn.__qualname__)
                raise Unexpected() from exc

        return wrapper  # type: ignore[return-value]

    return decorator


__all__ = [
    "PlatformError",
    "InvalidCredentials",
    "AccountDeactivated",
    "InvalidToken",
    "ExpiredToken",
    "DuplicateEmail",
    "ValidationFailed",
    "UnsupportedMediaType",
    "PayloadTooLarge",
    "UnexpectedField",
    "NotFound",
    "Denied",
    "Conflict",
    "AssetNotPresent",
    "Unexpected",
    "unexpected_boundary",
]
