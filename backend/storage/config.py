"""
Centralized storage configuration for upload ceilings and the document store.

Intent:
    Provide a single source of truth for size limits and persistence backend
    selection used by the content and identity contexts. Prevents drift across
    modules and enables simple testing via environment overrides.

Behavior:
    - MEDIA_MAX_UPLOAD_BYTES caps images, audio, PDFs and assignment files
      (default and contract maximum: 50 MiB).
    - MATERIALS_MAX_UPLOAD_BYTES caps learning-material primary files
      (default and contract maximum: 100 MiB).
    - CONTENT_STORE selects `memory` (default) or `db` (Postgres JSONB).

Permissions:
    Pure configuration; no external calls or privileges required.
"""
from __future__ import annotations

import os


MIB = 1024 * 1024
MEDIA_MAX_BYTES_DEFAULT = 50 * MIB
MATERIALS_MAX_BYTES_DEFAULT = 100 * MIB
CONTENT_STORE_DEFAULT = "memory"


def _parse_int_env(name: str, default: int, *, contract_max: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    if isinstance(contract_max, int) and contract_max > 0:
        value = min(value, contract_max)
    return value


def get_media_max_upload_bytes() -> int:
    """Maximum upload size for images, audio, book PDFs and assignment files."""
    return _parse_int_env("MEDIA_MAX_UPLOAD_BYTES", MEDIA_MAX_BYTES_DEFAULT, contract_max=MEDIA_MAX_BYTES_DEFAULT)


def get_materials_max_upload_bytes() -> int:
    """Maximum upload size for learning-material primary files (default/clamped 100 MiB)."""
    return _parse_int_env(
        "MATERIALS_MAX_UPLOAD_BYTES", MATERIALS_MAX_BYTES_DEFAULT, contract_max=MATERIALS_MAX_BYTES_DEFAULT
    )


def get_content_store_backend() -> str:
    """Return `memory` or `db`; unknown values fall back to `memory`.

    Env:
        CONTENT_STORE – optional override; otherwise CONTENT_STORE_DEFAULT.
    """
    value = (os.getenv("CONTENT_STORE") or CONTENT_STORE_DEFAULT).strip().lower()
    return value if value in {"memory", "db"} else CONTENT_STORE_DEFAULT


__all__ = [
    "MIB",
    "MEDIA_MAX_BYTES_DEFAULT",
    "MATERIALS_MAX_BYTES_DEFAULT",
    "get_media_max_upload_bytes",
    "get_materials_max_upload_bytes",
    "get_content_store_backend",
]
