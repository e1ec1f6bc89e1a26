"""
Embedded binary assets (blobs) attached to resource documents.

Why:
    Every resource kind stores uploads the same way: the bytes, media type,
    original name and size live in a sub-document of the owning resource. This
    module is the only place that knows that shape, so slot replacement,
    clearing and retrieval behave identically for sermons, books, materials,
    assignments and submissions.

Invariants:
    - A slot is either absent (`None`/missing) or fully populated.
    - Replacing a slot is a single field-level update of the owning document;
      the previous bytes are discarded, not versioned.
    - Listing and detail projections exclude `<slot>.data`; only `read`
      returns bytes.
"""
from __future__ import annotations

import os
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from backend.common.errors import AssetNotPresent
from backend.storage.documents import DocumentStoreProtocol
from backend.storage.upload_policy import DEFAULT_POLICY, UploadPolicy

_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9._ -]+")


def sanitize_filename(filename: str | None) -> str:
    """Return a header-safe basename for the original upload name."""
    base = os.path.basename((filename or "").strip().replace("\\", "/"))
    if not base:
        return "file"
    root, ext = os.path.splitext(base)
    normalized = unicodedata.normalize("NFKD", root)
    ascii_root = normalized.encode("ascii", "ignore").decode("ascii")
    sanitized_root = _SANITIZE_PATTERN.sub("-", ascii_root).strip("-_. ")
    if not sanitized_root:
        sanitized_root = "file"
    sanitized_root = sanitized_root[:128]
    clean_ext = "".join(ch for ch in ext.lower() if ch.isalnum() or ch == ".")
    if clean_ext and not clean_ext.startswith("."):
        clean_ext = f".{clean_ext}"
    return f"{sanitized_root}{clean_ext}"


@dataclass(frozen=True)
class Upload:
    """One demultiplexed file part from the request context."""

    field_name: str
    data: bytes
    media_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class Asset:
    data: bytes
    media_type: str
    filename: str
    size: int

    def to_document(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "content_type": self.media_type,
            "filename": self.filename,
            "size": self.size,
        }

    @classmethod
    def from_document(cls, doc: Optional[Mapping[str, Any]]) -> Optional["Asset"]:
        if not isinstance(doc, Mapping):
            return None
        data = doc.get("data")
        media_type = doc.get("content_type")
        filename = doc.get("filename")
        if not isinstance(data, (bytes, bytearray)) or not media_type or not filename:
            return None
        return cls(data=bytes(data), media_type=str(media_type), filename=str(filename), size=len(data))


def describe_slot(doc: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Metadata view of a slot without its bytes (`None` when absent)."""
    if not isinstance(doc, Mapping) or not doc.get("content_type"):
        return None
    return {
        "content_type": doc.get("content_type"),
        "filename": doc.get("filename"),
        "size": doc.get("size"),
    }


class AssetStore:
    """Validate, write and read embedded assets."""

    def __init__(self, store: DocumentStoreProtocol, policy: UploadPolicy | None = None) -> None:
        self._store = store
        self._policy = policy or DEFAULT_POLICY

    def prepare(self, upload: Upload, *, field_role: str, max_size_bytes: int | None = None) -> Asset:
        """Validate an upload and turn it into an asset ready for attachment.

        Raises UnexpectedField, UnsupportedMediaType or PayloadTooLarge; nothing
        is written on failure.
        """
        media_type = self._policy.validate(
            field_role,
            upload.media_type,
            upload.size,
            max_size_bytes=max_size_bytes,
        )
        return Asset(
            data=upload.data,
            media_type=media_type,
            filename=sanitize_filename(upload.filename),
            size=upload.size,
        )

    def write_slots(
        self,
        collection: str,
        resource_id: str,
        *,
        attach: Optional[Mapping[str, Asset]] = None,
        detach: Iterable[str] = (),
        changes: Optional[Mapping[str, Any]] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[Dict[str, Any]]:
        """Fill, replace and clear slots together with field changes in one update.

        A replaced or cleared slot keeps nothing of its previous bytes. Returns
        the updated document, or None when the resource is gone.
        """
        merged: Dict[str, Any] = dict(changes or {})
        for slot in detach:
            merged[slot] = None
        for slot, asset in (attach or {}).items():
            merged[slot] = asset.to_document()
        return self._store.update_by_id(collection, resource_id, merged, exclude=exclude)

    def attach(
        self,
        collection: str,
        resource_id: str,
        slot: str,
        asset: Asset,
        *,
        changes: Optional[Mapping[str, Any]] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[Dict[str, Any]]:
        """Replace `slot` together with any other field changes in one update."""
        return self.write_slots(collection, resource_id, attach={slot: asset}, changes=changes, exclude=exclude)

    @staticmethod
    def read(document: Mapping[str, Any], slot: str) -> Asset:
        asset = Asset.from_document(document.get(slot))
        if asset is None:
            raise AssetNotPresent(f"{slot}_not_found")
        return asset


__all__ = [
    "Asset",
    "AssetStore",
    "Upload",
    "describe_slot",
    "sanitize_filename",
]
