"""
Resource kind definitions: collections, ownership, fields, asset slots.

Why:
    The five content kinds share one lifecycle (list, get, create, update,
    delete, read asset). What differs is data: which field names the owner,
    who may create and mutate, which payload fields exist, which upload slots
    accept which media, and which counters move. Each kind is a `KindSpec`
    value consumed by `ResourceService`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from backend.common.errors import ValidationFailed
from backend.common.parsing import parse_bool, parse_iso_datetime, parse_string_list
from backend.content.policy import MUTATION_ADMIN_ONLY, MUTATION_OWNER_OR_ADMIN
from backend.identity_access.domain import ROLE_ADMIN, ROLE_CLERGY
from backend.storage.upload_policy import (
    ROLE_AUDIO,
    ROLE_COVER,
    ROLE_IMAGE,
    ROLE_PRIMARY_DOCUMENT,
    ROLE_PRIMARY_FILE,
    ROLE_THUMBNAIL,
)

KIND_SERMON = "sermon"
KIND_PRAYER = "prayer"
KIND_BOOK = "book"
KIND_MATERIAL = "material"
KIND_ASSIGNMENT = "assignment"

# Which configured ceiling applies to a slot.
LIMIT_MEDIA = "media"
LIMIT_MATERIALS = "materials"

DOWNLOADS_COUNTER = "number_of_downloads"
VIEWS_COUNTER = "number_of_views"

MATERIAL_CATEGORIES = (
    "Bible Studies",
    "Youth Ministry",
    "Sunday School",
    "Theology",
    "Church History",
    "Christian Living",
    "Leadership",
    "Worship",
    "Evangelism",
    "Discipleship",
    "Marriage & Family",
    "Children Ministry",
    "Teen Ministry",
    "Adult Education",
    "Seminary",
    "Spiritual Growth",
    "Apologetics",
    "Missions",
    "Pastoral Care",
    "Biblical Languages",
)
MATERIAL_TYPES = ("pdf", "video", "note", "image")

# Field value types understood by `normalize_payload`.
TEXT = "text"
STRING_LIST = "string_list"
DATETIME = "datetime"
CHOICE = "choice"
BOOL = "bool"
LINK = "link"


@dataclass(frozen=True)
class FieldRule:
    name: str
    type: str = TEXT
    required: bool = False
    max_length: Optional[int] = None
    default: Any = None
    choices: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SlotSpec:
    name: str
    field_role: str
    limit: str = LIMIT_MEDIA
    required_on_create: bool = False


@dataclass(frozen=True)
class KindSpec:
    name: str
    collection: str
    owner_field: str
    create_roles: frozenset
    mutation: str
    fields: Tuple[FieldRule, ...]
    slots: Tuple[SlotSpec, ...] = ()
    body_field: Optional[str] = None
    search_fields: Tuple[str, ...] = ("title",)
    filter_fields: Tuple[str, ...] = ("category",)
    view_counter: Optional[str] = None
    download_counter: Optional[str] = None
    download_slot: Optional[str] = None
    link_field: Optional[str] = None
    default_sort: str = "created_at:desc"
    sortable: Tuple[str, ...] = ("created_at", "updated_at", "title")
    # Cross-field checks on the merged document: (merged, uploaded_slots, changes).
    # Returns the slots an update must clear.
    check: Optional[Callable[[Mapping[str, Any], frozenset, Dict[str, Any]], Optional[Tuple[str, ...]]]] = field(default=None, compare=False)

    @property
    def counters(self) -> Tuple[str, ...]:
        return tuple(c for c in (self.view_counter, self.download_counter) if c)

    def slot(self, name: str) -> Optional[SlotSpec]:
        for spec in self.slots:
            if spec.name == name:
                return spec
        return None

    @property
    def blob_paths(self) -> Tuple[str, ...]:
        return tuple(f"{s.name}.data" for s in self.slots)

    @property
    def list_exclude(self) -> Tuple[str, ...]:
        return self.blob_paths + ((self.body_field,) if self.body_field else ())


def _clean_link(value: Any, *, field_name: str) -> Optional[str]:
    text = str(value).strip().strip('"')
    if not text:
        return None
    parsed = urlparse(text)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationFailed(f"invalid_{field_name}")
    return text


def _normalize_value(rule: FieldRule, raw: Any) -> Any:
    if rule.type == BOOL:
        return parse_bool(raw, field=rule.name)
    if rule.type == STRING_LIST:
        return parse_string_list(raw, field=rule.name)
    if rule.type == DATETIME:
        value = parse_iso_datetime(raw, field=rule.name)
        # Stored in UTC so string order matches instant order.
        return value.astimezone(timezone.utc).isoformat() if value is not None else None
    if rule.type == LINK:
        return _clean_link(raw, field_name=rule.name) if raw is not None else None
    if raw is None:
        return None
    if not isinstance(raw, (str, int, float)):
        raise ValidationFailed(f"invalid_{rule.name}")
    text = str(raw).strip()
    if rule.max_length is not None and len(text) > rule.max_length:
        raise ValidationFailed(f"{rule.name}_too_long")
    if rule.type == CHOICE and text and text not in rule.choices:
        raise ValidationFailed(f"invalid_{rule.name}")
    return text


def _default(rule: FieldRule) -> Any:
    return rule.default() if callable(rule.default) else rule.default


def normalize_payload(kind: KindSpec, payload: Mapping[str, Any], *, partial: bool) -> Dict[str, Any]:
    """Validate a create/update payload into stored field values.

    Unknown keys are ignored; owner, counters and timestamps are never taken
    from the payload. On create, defaults fill absent fields and required
    fields must be non-empty. On update only the provided keys are returned,
    and a provided required field may not be blanked.
    """
    out: Dict[str, Any] = {}
    for rule in kind.fields:
        present = rule.name in payload and payload[rule.name] is not None
        value = _normalize_value(rule, payload[rule.name]) if present else None
        empty = value is None or value == "" or value == []
        if partial and not present:
            continue
        if empty:
            if rule.required:
                raise ValidationFailed(f"{rule.name}_required")
            # An explicit empty value on update clears the field to its default.
            value = _default(rule)
        out[rule.name] = value
    return out


def _has_asset(merged: Mapping[str, Any], slot: str) -> bool:
    value = merged.get(slot)
    return isinstance(value, Mapping) and bool(value.get("content_type"))


def _material_content_rule(
    merged: Mapping[str, Any], uploaded: frozenset, changes: Dict[str, Any]
) -> Tuple[str, ...]:
    """Primary content is exactly one of an uploaded file or an external link.

    Non-video materials need the uploaded file. When an update brings one of
    the two, the other is cleared in the same write: a new file drops the
    link, a new link detaches the file slot.
    """
    new_file = "file_url" in uploaded
    new_link = bool(changes.get("external_link"))
    if new_file and new_link:
        raise ValidationFailed("file_or_external_link_not_both")
    cleared: Tuple[str, ...] = ()
    if new_file:
        changes["external_link"] = None
    elif new_link:
        cleared = ("file_url",)
    has_file = new_file or (not new_link and _has_asset(merged, "file_url"))
    has_link = new_link or (not new_file and bool(merged.get("external_link")))
    if merged.get("type") == "video":
        if not has_file and not has_link:
            raise ValidationFailed("video_requires_file_or_external_link")
        if has_file and has_link:
            raise ValidationFailed("file_or_external_link_not_both")
        return cleared
    if not has_file:
        raise ValidationFailed("file_required_for_material_type")
    if has_link:
        raise ValidationFailed("external_link_only_for_video")
    return cleared


_PUBLISHED = FieldRule("is_published", BOOL, default=True)
_TAGS = FieldRule("tags", STRING_LIST, default=list)

SERMON = KindSpec(
    name=KIND_SERMON,
    collection="sermons",
    owner_field="author_id",
    create_roles=frozenset({ROLE_ADMIN, ROLE_CLERGY}),
    mutation=MUTATION_OWNER_OR_ADMIN,
    fields=(
        FieldRule("title", required=True, max_length=200),
        FieldRule("content", required=True),
        FieldRule("summary", max_length=500, default=""),
        FieldRule("video_link", LINK),
        _TAGS,
        FieldRule("category", max_length=100, default="General"),
        _PUBLISHED,
    ),
    slots=(SlotSpec("image", ROLE_IMAGE), SlotSpec("audio", ROLE_AUDIO)),
    body_field="content",
    search_fields=("title", "content", "tags"),
    filter_fields=("category", "tags"),
)

PRAYER = KindSpec(
    name=KIND_PRAYER,
    collection="prayers",
    owner_field="author_id",
    create_roles=frozenset({ROLE_ADMIN, ROLE_CLERGY}),
    mutation=MUTATION_OWNER_OR_ADMIN,
    fields=(
        FieldRule("title", required=True, max_length=200),
        FieldRule("content", required=True),
        FieldRule("category", max_length=100, default="General"),
        _PUBLISHED,
    ),
    slots=(SlotSpec("image", ROLE_IMAGE),),
    body_field="content",
    search_fields=("title", "content"),
)

BOOK = KindSpec(
    name=KIND_BOOK,
    collection="books",
    owner_field="uploaded_by",
    create_roles=frozenset({ROLE_ADMIN}),
    mutation=MUTATION_ADMIN_ONLY,
    fields=(
        FieldRule("title", required=True, max_length=200),
        FieldRule("description", required=True, max_length=1000),
        FieldRule("author_name", required=True, max_length=200),
        FieldRule("category", max_length=100, default="Spiritual"),
        _PUBLISHED,
    ),
    slots=(
        SlotSpec("cover_image", ROLE_COVER),
        SlotSpec("pdf_file", ROLE_PRIMARY_DOCUMENT, required_on_create=True),
    ),
    search_fields=("title", "description", "author_name"),
    download_counter=DOWNLOADS_COUNTER,
    download_slot="pdf_file",
    sortable=("created_at", "updated_at", "title", "author_name", DOWNLOADS_COUNTER),
)

MATERIAL = KindSpec(
    name=KIND_MATERIAL,
    collection="materials",
    owner_field="created_by",
    create_roles=frozenset({ROLE_ADMIN}),
    mutation=MUTATION_ADMIN_ONLY,
    fields=(
        FieldRule("title", required=True, max_length=200),
        FieldRule("description", required=True, max_length=2000),
        FieldRule("category", CHOICE, required=True, choices=MATERIAL_CATEGORIES),
        FieldRule("type", CHOICE, required=True, choices=MATERIAL_TYPES),
        FieldRule("external_link", LINK),
        _TAGS,
        _PUBLISHED,
    ),
    slots=(
        SlotSpec("file_url", ROLE_PRIMARY_FILE, limit=LIMIT_MATERIALS),
        SlotSpec("thumbnail_url", ROLE_THUMBNAIL),
    ),
    search_fields=("title", "description", "tags"),
    filter_fields=("category", "type", "tags"),
    view_counter=VIEWS_COUNTER,
    download_counter=DOWNLOADS_COUNTER,
    download_slot="file_url",
    link_field="external_link",
    sortable=("created_at", "updated_at", "title", DOWNLOADS_COUNTER, VIEWS_COUNTER),
    check=_material_content_rule,
)

ASSIGNMENT = KindSpec(
    name=KIND_ASSIGNMENT,
    collection="assignments",
    owner_field="created_by",
    create_roles=frozenset({ROLE_ADMIN}),
    mutation=MUTATION_ADMIN_ONLY,
    fields=(
        FieldRule("title", required=True, max_length=200),
        FieldRule("description", required=True, max_length=2000),
        FieldRule("due_date", DATETIME, required=True),
        FieldRule("materials", STRING_LIST, default=list),
        _PUBLISHED,
    ),
    slots=(SlotSpec("file_url", ROLE_PRIMARY_FILE),),
    search_fields=("title", "description"),
    filter_fields=(),
    default_sort="due_date:asc",
    sortable=("created_at", "updated_at", "title", "due_date"),
)

KINDS: Dict[str, KindSpec] = {k.name: k for k in (SERMON, PRAYER, BOOK, MATERIAL, ASSIGNMENT)}


__all__ = [
    "ASSIGNMENT",
    "BOOK",
    "DOWNLOADS_COUNTER",
    "KINDS",
    "KIND_ASSIGNMENT",
    "KIND_BOOK",
    "KIND_MATERIAL",
    "KIND_PRAYER",
    "KIND_SERMON",
    "KindSpec",
    "FieldRule",
    "LIMIT_MATERIALS",
    "LIMIT_MEDIA",
    "MATERIAL",
    "MATERIAL_CATEGORIES",
    "MATERIAL_TYPES",
    "PRAYER",
    "SERMON",
    "SlotSpec",
    "VIEWS_COUNTER",
    "normalize_payload",
]
