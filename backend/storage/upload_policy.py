"""
Shared upload policy for every resource kind.

Centralises MIME family and size constraints per field role so that the
lifecycle services stay slim and both tests and documentation can reference a
single source of truth. Validation runs before any bytes are persisted, so a
rejected upload leaves no trace in the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from backend.common.errors import PayloadTooLarge, UnexpectedField, UnsupportedMediaType, ValidationFailed
from backend.storage.config import get_materials_max_upload_bytes, get_media_max_upload_bytes

# Field roles describe what an upload is for, independent of the slot name a
# resource kind stores it under.
ROLE_COVER = "cover"
ROLE_PHOTO = "photo"
ROLE_THUMBNAIL = "thumbnail"
ROLE_IMAGE = "image"
ROLE_AUDIO = "audio"
ROLE_PRIMARY_DOCUMENT = "primary-document"
ROLE_PRIMARY_FILE = "primary-file"

WORD_PROCESSING_MIME = frozenset(
    {
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)
PDF_MIME = "application/pdf"
PLAIN_TEXT_MIME = "text/plain"


def normalize_media_type(value: str | None) -> str:
    """Lower-case the declared type and drop parameters (`; charset=...`)."""
    return (value or "").split(";", 1)[0].strip().lower()


@dataclass(frozen=True, slots=True)
class MediaRule:
    """Accepted media families and size ceiling for one field role."""

    field_role: str
    families: frozenset[str] = frozenset()
    exact_types: frozenset[str] = frozenset()
    max_size_bytes: int = 0

    def accepts(self, media_type: str) -> bool:
        family = media_type.split("/", 1)[0] if "/" in media_type else ""
        if family and family in self.families:
            return True
        return media_type in self.exact_types


@dataclass(frozen=True, slots=True)
class UploadPolicy:
    """Immutable policy object used at request-handling time."""

    rules: Mapping[str, MediaRule] = field(default_factory=dict)

    def rule_for(self, field_role: str) -> MediaRule:
        rule = self.rules.get(field_role)
        if rule is None:
            raise UnexpectedField(f"unexpected_field:{field_role}")
        return rule

    def validate(
        self,
        field_role: str,
        declared_media_type: str | None,
        byte_length: int,
        *,
        max_size_bytes: int | None = None,
    ) -> str:
        """Accept an upload or raise; returns the normalized media type.

        `max_size_bytes` lets a resource kind tighten the ceiling of a shared
        role (assignment files use the primary-file role with the media cap).
        """
        rule = self.rule_for(field_role)
        media_type = normalize_media_type(declared_media_type)
        if not media_type or not rule.accepts(media_type):
            raise UnsupportedMediaType(f"mime_not_allowed:{field_role}")
        if byte_length <= 0:
            raise ValidationFailed("empty_upload")
        ceiling = rule.max_size_bytes
        if max_size_bytes is not None:
            ceiling = min(ceiling, max_size_bytes)
        if byte_length > ceiling:
            raise PayloadTooLarge(f"size_exceeded:{field_role}")
        return media_type


def build_default_policy() -> UploadPolicy:
    """Build the policy from the centrally configured ceilings."""
    media_max = get_media_max_upload_bytes()
    materials_max = get_materials_max_upload_bytes()
    images = frozenset({"image"})
    return UploadPolicy(
        rules={
            ROLE_COVER: MediaRule(ROLE_COVER, families=images, max_size_bytes=media_max),
            ROLE_PHOTO: MediaRule(ROLE_PHOTO, families=images, max_size_bytes=media_max),
            ROLE_THUMBNAIL: MediaRule(ROLE_THUMBNAIL, families=images, max_size_bytes=media_max),
            ROLE_IMAGE: MediaRule(ROLE_IMAGE, families=images, max_size_bytes=media_max),
            ROLE_AUDIO: MediaRule(ROLE_AUDIO, families=frozenset({"audio"}), max_size_bytes=media_max),
            ROLE_PRIMARY_DOCUMENT: MediaRule(
                ROLE_PRIMARY_DOCUMENT, exact_types=frozenset({PDF_MIME}), max_size_bytes=media_max
            ),
            ROLE_PRIMARY_FILE: MediaRule(
                ROLE_PRIMARY_FILE,
                families=frozenset({"image", "video"}),
                exact_types=frozenset({PDF_MIME, PLAIN_TEXT_MIME}) | WORD_PROCESSING_MIME,
                max_size_bytes=materials_max,
            ),
        }
    )


DEFAULT_POLICY = build_default_policy()


__all__ = [
    "ROLE_COVER",
    "ROLE_PHOTO",
    "ROLE_THUMBNAIL",
    "ROLE_IMAGE",
    "ROLE_AUDIO",
    "ROLE_PRIMARY_DOCUMENT",
    "ROLE_PRIMARY_FILE",
    "MediaRule",
    "UploadPolicy",
    "DEFAULT_POLICY",
    "build_default_policy",
    "normalize_media_type",
]
