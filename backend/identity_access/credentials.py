"""
Credential store: registration, authentication and password changes.

Why:
    Own the user record and everything that touches the password hash in one
    place. The web adapter never sees hashes; it receives sanitized identity
    views and asks the token service for tokens.

Security:
    - Passwords are hashed with bcrypt (cost from settings, 12 by default) and
      never stored or logged in plaintext.
    - Unknown email and wrong password produce the same `InvalidCredentials`
      error; a dummy hash is checked for unknown emails so timing stays similar.
    - `AccountDeactivated` is only reported after the password verified.
    - Role elevation compares the supplied secrets against the configured admin
      and clergy secrets in constant time. A missing or wrong secret falls back
      to the student role instead of failing registration.
"""
from __future__ import annotations

import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import bcrypt

from backend.common.errors import AccountDeactivated, DuplicateEmail, InvalidCredentials, NotFound, ValidationFailed
from backend.identity_access.domain import (
    DEFAULT_ROLE,
    PROFILE_FIELDS,
    ROLE_ADMIN,
    ROLE_CLERGY,
    USERS_COLLECTION,
)
from backend.identity_access.settings import IdentitySettings
from backend.storage.assets import describe_slot
from backend.storage.documents import DocumentQuery, DocumentStoreProtocol, DuplicateKeyError

logger = logging.getLogger("excellence.identity_access")

MIN_PASSWORD_LENGTH = 6
# bcrypt only considers the first 72 bytes; longer inputs are rejected instead
# of being silently truncated.
MAX_PASSWORD_BYTES = 72
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_HIDDEN_FIELDS = ("password_hash",)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def public_identity(doc: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Sanitized identity view: no password hash, no photo bytes."""
    if not doc:
        return None
    out = {k: v for k, v in doc.items() if k not in _HIDDEN_FIELDS and k != "photo"}
    profile = dict(out.get("profile") or {})
    profile["photo"] = describe_slot(doc.get("photo"))
    out["profile"] = profile
    return out


def _clean_profile(raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    profile: Dict[str, Any] = {}
    for key in PROFILE_FIELDS:
        value = (raw or {}).get(key)
        if value is None:
            profile[key] = None if key in ("date_of_birth", "ordination_date") else ""
        else:
            profile[key] = str(value).strip()
    return profile


def _validate_password(password: str | None) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed("password_too_short")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationFailed("password_too_long")
    return password


class CredentialStore:
    """User records and password handling on top of the document store."""

    def __init__(self, store: DocumentStoreProtocol, settings: IdentitySettings) -> None:
        self._store = store
        self._settings = settings
        self._dummy_hash: bytes | None = None
        self._store.ensure_unique(USERS_COLLECTION, ["email"])

    # --- hashing ---------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self._settings.hash_rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("ascii")

    @staticmethod
    def verify_password(password: str, password_hash: str | None) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
        except ValueError:
            return False

    def _burn_dummy_check(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt(rounds=self._settings.hash_rounds))
        try:
            bcrypt.checkpw((password or "x").encode("utf-8")[:MAX_PASSWORD_BYTES], self._dummy_hash)
        except ValueError:
            pass

    # --- role elevation --------------------------------------------------------

    def resolve_role(self, admin_key: str | None = None, clergy_key: str | None = None) -> str:
        """Derive the role from out-of-band secrets; defaults to student."""
        if admin_key and self._settings.admin_secret and hmac.compare_digest(
            admin_key.encode("utf-8"), self._settings.admin_secret.encode("utf-8")
        ):
            return ROLE_ADMIN
        if clergy_key and self._settings.clergy_secret and hmac.compare_digest(
            clergy_key.encode("utf-8"), self._settings.clergy_secret.encode("utf-8")
        ):
            return ROLE_CLERGY
        return DEFAULT_ROLE

    # --- operations ------------------------------------------------------------

    def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        admin_key: str | None = None,
        clergy_key: str | None = None,
        profile: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create an identity and return its sanitized view.

        Raises ValidationFailed for missing name, malformed email or short
        password, and DuplicateEmail when the email (case-insensitive) exists.
        """
        clean_name = (name or "").strip()
        if not clean_name or len(clean_name) > 100:
            raise ValidationFailed("invalid_name")
        normalized = normalize_email(email)
        if not _EMAIL_RE.match(normalized):
            raise ValidationFailed("invalid_email")
        _validate_password(password)
        role = self.resolve_role(admin_key, clergy_key)
        now = _now_iso()
        record = {
            "name": clean_name,
            "email": normalized,
            "password_hash": self.hash_password(password),
            "role": role,
            "is_active": True,
            "profile": _clean_profile(profile),
            "photo": None,
            "last_login_at": None,
            "password_changed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            created = self._store.create(USERS_COLLECTION, record)
        except DuplicateKeyError as exc:
            raise DuplicateEmail("email_already_registered") from exc
        logger.info("Registered identity %s with role %s", created["id"], role)
        return public_identity(created)  # type: ignore[return-value]

    def authenticate(self, email: str, password: str) -> Dict[str, Any]:
        """Verify credentials and record the login; returns the sanitized identity."""
        if not email or not password:
            raise ValidationFailed("email_and_password_required")
        normalized = normalize_email(email)
        matches = self._store.find(USERS_COLLECTION, DocumentQuery(equals={"email": normalized}), limit=1)
        doc = matches[0] if matches else None
        if doc is None:
            self._burn_dummy_check(password)
            raise InvalidCredentials("invalid_email_or_password")
        if not self.verify_password(password, doc.get("password_hash")):
            raise InvalidCredentials("invalid_email_or_password")
        if not doc.get("is_active", True):
            raise AccountDeactivated("account_deactivated")
        updated = self._store.update_by_id(USERS_COLLECTION, doc["id"], {"last_login_at": _now_iso()})
        return public_identity(updated or doc)  # type: ignore[return-value]

    def change_password(self, identity_id: str, current_password: str, new_password: str) -> Dict[str, Any]:
        if not current_password or not new_password:
            raise ValidationFailed("current_and_new_password_required")
        doc = self._store.find_by_id(USERS_COLLECTION, identity_id)
        if doc is None:
            raise NotFound("user_not_found")
        if not self.verify_password(current_password, doc.get("password_hash")):
            raise InvalidCredentials("current_password_incorrect")
        _validate_password(new_password)
        now = _now_iso()
        updated = self._store.update_by_id(
            USERS_COLLECTION,
            identity_id,
            {"password_hash": self.hash_password(new_password), "password_changed_at": now, "updated_at": now},
        )
        if updated is None:
            raise NotFound("user_not_found")
        logger.info("Password changed for identity %s", identity_id)
        return public_identity(updated)  # type: ignore[return-value]

    def get(self, identity_id: str) -> Optional[Dict[str, Any]]:
        """Raw identity record (including hash) for server-side checks only."""
        return self._store.find_by_id(USERS_COLLECTION, identity_id, exclude=["photo.data"])


__all__ = [
    "CredentialStore",
    "MIN_PASSWORD_LENGTH",
    "normalize_email",
    "public_identity",
]
