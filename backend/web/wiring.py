"""
Wiring of stores and services behind the HTTP adapter.

Why:
    Routes only need a handful of collaborators (token service, credential
    store, user directory, one lifecycle service per content kind, the
    submission service). Building them in one place keeps configuration
    injection explicit and lets tests swap the whole graph with
    `set_platform(build_platform(...))`.

Behavior:
    - `CONTENT_STORE=db` selects the Postgres JSONB store; otherwise the
      in-memory store is used. When the DB store cannot be created (psycopg
      missing, no DSN) the failure is logged and the in-memory store is used
      outside production-like environments; production refuses to start.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from backend.content.kinds import ASSIGNMENT, KINDS
from backend.content.service import SUBMISSIONS_COLLECTION, ResourceService
from backend.content.submissions import SubmissionService
from backend.identity_access.credentials import CredentialStore
from backend.identity_access.directory import UserDirectory
from backend.identity_access.settings import IdentitySettings
from backend.identity_access.tokens import TokenService
from backend.storage.assets import AssetStore
from backend.storage.config import (
    get_content_store_backend,
    get_materials_max_upload_bytes,
    get_media_max_upload_bytes,
)
from backend.storage.documents import DocumentStoreProtocol, InMemoryDocumentStore
from backend.web.config import is_prod_like, environment

logger = logging.getLogger("excellence.web")


@dataclass
class Platform:
    store: DocumentStoreProtocol
    settings: IdentitySettings
    tokens: TokenService
    credentials: CredentialStore
    directory: UserDirectory
    submissions: SubmissionService
    resources: Dict[str, ResourceService] = field(default_factory=dict)
    # Largest file part the HTTP adapter reads before the per-slot checks.
    max_upload_bytes: int = 0

    def resource(self, kind: str) -> ResourceService:
        return self.resources[kind]


def _default_store() -> DocumentStoreProtocol:
    if get_content_store_backend() != "db":
        return InMemoryDocumentStore()
    try:
        from backend.storage.documents_db import DBDocumentStore

        store = DBDocumentStore()
        logger.info("Document store wired: Postgres")
        return store
    except (ImportError, RuntimeError) as exc:
        if is_prod_like(environment()):
            raise SystemExit(f"Refusing to start: CONTENT_STORE=db unavailable ({exc.__class__.__name__}).")
        logger.warning("DB document store unavailable (%s); using in-memory store", exc.__class__.__name__)
        return InMemoryDocumentStore()


def build_platform(
    *,
    settings: Optional[IdentitySettings] = None,
    store: Optional[DocumentStoreProtocol] = None,
    media_max_bytes: int | None = None,
    materials_max_bytes: int | None = None,
) -> Platform:
    """Assemble the service graph; arguments override environment defaults."""
    settings = settings or IdentitySettings.from_env()
    store = store if store is not None else _default_store()
    media_max = media_max_bytes or get_media_max_upload_bytes()
    materials_max = materials_max_bytes or get_materials_max_upload_bytes()
    assets = AssetStore(store)

    resources: Dict[str, ResourceService] = {}
    for name, kind in KINDS.items():
        resources[name] = ResourceService(
            store,
            assets,
            kind,
            media_max_bytes=media_max,
            materials_max_bytes=materials_max,
            cascades=[(SUBMISSIONS_COLLECTION, "assignment_id")] if kind is ASSIGNMENT else (),
        )
    return Platform(
        store=store,
        settings=settings,
        tokens=TokenService(settings),
        credentials=CredentialStore(store, settings),
        directory=UserDirectory(store, assets, photo_max_bytes=media_max),
        submissions=SubmissionService(store, assets, resources[ASSIGNMENT.name], max_file_bytes=media_max),
        resources=resources,
        max_upload_bytes=max(media_max, materials_max),
    )


_PLATFORM: Optional[Platform] = None


def get_platform() -> Platform:
    global _PLATFORM
    if _PLATFORM is None:
        _PLATFORM = build_platform()
    return _PLATFORM


def set_platform(platform: Optional[Platform]) -> None:
    """Override the platform (tests) or reset with None."""
    global _PLATFORM
    _PLATFORM = platform


__all__ = ["Platform", "build_platform", "get_platform", "set_platform"]
