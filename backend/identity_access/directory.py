"""
User directory: profile self-service and admin user management.

Why:
    Registration and password handling live in `credentials`; everything else
    that reads or edits identity records (own profile, profile photo, admin
    listing and soft-deactivation) goes through this service so the web layer
    never touches the users collection directly.

Permissions:
    - Profile operations act on the caller's own record only.
    - `list_users`, `get_user`, `update_user` and `deactivate_user` require the
      admin role; other callers receive `Denied("forbidden")`.
    - Records are never physically removed; deactivation flips `is_active`.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from backend.common.errors import Denied, NotFound, ValidationFailed
from backend.common.parsing import paginated, parse_bool, parse_page, parse_sort
from backend.identity_access.credentials import public_identity
from backend.identity_access.domain import ALLOWED_ROLES, PROFILE_FIELDS, USERS_COLLECTION, Actor
from backend.storage.assets import Asset, AssetStore, Upload
from backend.storage.config import get_media_max_upload_bytes
from backend.storage.documents import DocumentQuery, DocumentStoreProtocol
from backend.storage.upload_policy import ROLE_PHOTO

logger = logging.getLogger("excellence.identity_access")

_LIST_EXCLUDE = ("password_hash", "photo.data")
_SORTABLE = ("created_at", "updated_at", "name", "email", "role", "last_login_at")
_MAX_PROFILE_VALUE = 1000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_admin(actor: Optional[Actor]) -> Actor:
    if actor is None:
        raise Denied("unauthenticated")
    if not actor.is_admin:
        raise Denied("forbidden")
    return actor


def _profile_changes(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Whitelisted profile values as dotted `profile.<key>` changes."""
    changes: Dict[str, Any] = {}
    for key in PROFILE_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if value is not None:
            value = str(value).strip()
            if len(value) > _MAX_PROFILE_VALUE:
                raise ValidationFailed(f"invalid_{key}")
        changes[f"profile.{key}"] = value
    return changes


class UserDirectory:
    def __init__(self, store: DocumentStoreProtocol, assets: AssetStore, *, photo_max_bytes: int | None = None) -> None:
        self._store = store
        self._assets = assets
        self._photo_max_bytes = photo_max_bytes or get_media_max_upload_bytes()

    def _load(self, user_id: str) -> Dict[str, Any]:
        doc = self._store.find_by_id(USERS_COLLECTION, user_id, exclude=_LIST_EXCLUDE)
        if doc is None:
            raise NotFound("user_not_found")
        return doc

    # --- self-service ----------------------------------------------------------

    def get_me(self, actor: Actor) -> Dict[str, Any]:
        return public_identity(self._load(actor.id))  # type: ignore[return-value]

    def get_profile(self, actor: Actor) -> Dict[str, Any]:
        return self.get_me(actor)

    def update_profile(
        self,
        actor: Actor,
        fields: Mapping[str, Any],
        *,
        photo: Optional[Upload] = None,
    ) -> Dict[str, Any]:
        """Update whitelisted profile fields and optionally replace the photo.

        Unknown keys are ignored; `name`, when given, must be non-empty. The
        photo is validated before anything is written.
        """
        self._load(actor.id)
        changes: Dict[str, Any] = {}
        if "name" in fields and fields["name"] is not None:
            name = str(fields["name"]).strip()
            if not name or len(name) > 100:
                raise ValidationFailed("invalid_name")
            changes["name"] = name
        changes.update(_profile_changes(fields))
        changes["updated_at"] = _now_iso()
        if photo is not None:
            asset = self._assets.prepare(photo, field_role=ROLE_PHOTO, max_size_bytes=self._photo_max_bytes)
            updated = self._assets.attach(USERS_COLLECTION, actor.id, "photo", asset, changes=changes, exclude=_LIST_EXCLUDE)
        else:
            updated = self._store.update_by_id(USERS_COLLECTION, actor.id, changes, exclude=_LIST_EXCLUDE)
        if updated is None:
            raise NotFound("user_not_found")
        return public_identity(updated)  # type: ignore[return-value]

    def read_photo(self, user_id: str) -> Asset:
        doc = self._store.find_by_id(USERS_COLLECTION, user_id, exclude=("password_hash",))
        if doc is None or not doc.get("is_active", True):
            raise NotFound("user_not_found")
        return AssetStore.read(doc, "photo")

    # --- administration --------------------------------------------------------

    def list_users(
        self,
        actor: Optional[Actor],
        *,
        role: str | None = None,
        search: str | None = None,
        page: Any = None,
        limit: Any = None,
        sort: str | None = None,
    ) -> Dict[str, Any]:
        _require_admin(actor)
        paging = parse_page(page, limit)
        order = parse_sort(sort, default="created_at:desc", allowed=_SORTABLE)
        equals: Dict[str, Any] = {}
        # Unknown roles are ignored rather than rejected, like other filters.
        if role in ALLOWED_ROLES:
            equals["role"] = role
        query = DocumentQuery(
            equals=equals,
            search=(search or "").strip() or None,
            search_fields=("name", "email"),
        )
        items = self._store.find(
            USERS_COLLECTION, query, sort=order, skip=paging.skip, limit=paging.limit, exclude=_LIST_EXCLUDE
        )
        total = self._store.count_documents(USERS_COLLECTION, query)
        return paginated([public_identity(d) for d in items], total=total, page=paging)  # type: ignore[misc]

    def get_user(self, actor: Optional[Actor], user_id: str) -> Dict[str, Any]:
        _require_admin(actor)
        return public_identity(self._load(user_id))  # type: ignore[return-value]

    def update_user(
        self,
        actor: Optional[Actor],
        user_id: str,
        *,
        name: str | None = None,
        role: str | None = None,
        is_active: Any = None,
        profile: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        admin = _require_admin(actor)
        self._load(user_id)
        changes: Dict[str, Any] = {}
        if name is not None:
            clean = name.strip()
            if not clean or len(clean) > 100:
                raise ValidationFailed("invalid_name")
            changes["name"] = clean
        if role is not None:
            if role not in ALLOWED_ROLES:
                raise ValidationFailed("invalid_role")
            changes["role"] = role
        active = parse_bool(is_active, field="is_active")
        if active is not None:
            changes["is_active"] = active
        if profile:
            changes.update(_profile_changes(profile))
        changes["updated_at"] = _now_iso()
        updated = self._store.update_by_id(USERS_COLLECTION, user_id, changes, exclude=_LIST_EXCLUDE)
        if updated is None:
            raise NotFound("user_not_found")
        logger.info("Admin %s updated identity %s (%s)", admin.id, user_id, ",".join(sorted(changes)))
        return public_identity(updated)  # type: ignore[return-value]

    def deactivate_user(self, actor: Optional[Actor], user_id: str) -> None:
        admin = _require_admin(actor)
        updated = self._store.update_by_id(
            USERS_COLLECTION, user_id, {"is_active": False, "updated_at": _now_iso()}, exclude=_LIST_EXCLUDE
        )
        if updated is None:
            raise NotFound("user_not_found")
        logger.info("Admin %s deactivated identity %s", admin.id, user_id)


__all__ = ["UserDirectory"]
