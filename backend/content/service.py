"""
Resource lifecycle for sermons, prayers, books, materials and assignments.

Why:
    One service class drives every content kind. The kind's `KindSpec`
    supplies names and rules; this module owns the sequence: load, authorize,
    validate uploads, write once, project.

Behavior:
    - Every mutation is a single field-level `update_by_id` on the resource, so
      slot replacement and field edits land together and never overwrite
      fields changed concurrently by other requests.
    - Projections never carry blob bytes; list views also drop the body text.
    - Counters (`number_of_views`, `number_of_downloads`) move through atomic
      store increments. A failed increment is logged for reconciliation and
      does not fail the read.
    - Unpublished resources are reported as missing to callers who may not
      see them.
    - Anything outside the error taxonomy surfaces as `Unexpected`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from backend.common.errors import (
    Conflict,
    Denied,
    NotFound,
    UnexpectedField,
    ValidationFailed,
    unexpected_boundary,
)
from backend.common.parsing import paginated, parse_iso_datetime, parse_page, parse_sort, parse_string_list
from backend.content.kinds import (
    KIND_ASSIGNMENT,
    KIND_MATERIAL,
    LIMIT_MATERIALS,
    MATERIAL,
    MATERIAL_CATEGORIES,
    KindSpec,
    normalize_payload,
)
from backend.content.policy import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_DOWNLOAD,
    ACTION_READ,
    ACTION_UPDATE,
    REASON_ALREADY_SUBMITTED,
    REASON_NOT_FOUND,
    Decision,
    ResourceRef,
    authorize,
)
from backend.identity_access.domain import USERS_COLLECTION, Actor
from backend.storage.assets import Asset, AssetStore, Upload, describe_slot
from backend.storage.config import get_materials_max_upload_bytes, get_media_max_upload_bytes
from backend.storage.documents import DocumentQuery, DocumentStoreProtocol

logger = logging.getLogger("excellence.content")

SUBMISSIONS_COLLECTION = "submissions"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enforce(decision: Decision) -> None:
    """Turn a policy denial into the matching taxonomy error.

    Non-disclosing denials become `NotFound` so they are indistinguishable
    from a missing resource; a repeated submission is a `Conflict`.
    """
    if decision.allowed:
        return
    if decision.reason == REASON_NOT_FOUND:
        raise NotFound("not_found")
    if decision.reason == REASON_ALREADY_SUBMITTED:
        raise Conflict("already_submitted")
    decision.enforce()


@dataclass(frozen=True)
class AssetDelivery:
    """Result of an asset read: either bytes or an external link."""

    asset: Optional[Asset] = None
    redirect_url: Optional[str] = None


class ResourceService:
    """Lifecycle operations for one content kind."""

    def __init__(
        self,
        store: DocumentStoreProtocol,
        assets: AssetStore,
        kind: KindSpec,
        *,
        media_max_bytes: int | None = None,
        materials_max_bytes: int | None = None,
        cascades: Iterable[Tuple[str, str]] = (),
    ) -> None:
        self.store = store
        self.assets = assets
        self.kind = kind
        self._media_max_bytes = media_max_bytes or get_media_max_upload_bytes()
        self._materials_max_bytes = materials_max_bytes or get_materials_max_upload_bytes()
        # (collection, field) pairs whose documents die with a resource
        self._cascades = tuple(cascades)

    # --- helpers ---------------------------------------------------------------

    def _ref(self, doc: Optional[Mapping[str, Any]]) -> ResourceRef:
        return ResourceRef(
            kind=self.kind.name,
            owner_id=(doc or {}).get(self.kind.owner_field),
            is_published=bool((doc or {}).get("is_published", False)) if doc else True,
            mutation=self.kind.mutation,
            create_roles=self.kind.create_roles,
        )

    def _load(self, resource_id: str, *, exclude: Iterable[str] | None = None) -> Dict[str, Any]:
        doc = self.store.find_by_id(
            self.kind.collection,
            resource_id,
            exclude=self.kind.blob_paths if exclude is None else exclude,
        )
        if doc is None:
            raise NotFound("not_found")
        return doc

    def _owner_summary(self, owner_id: Optional[str], cache: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not owner_id:
            return None
        if owner_id not in cache:
            user = self.store.find_by_id(USERS_COLLECTION, owner_id, exclude=("password_hash", "photo.data"))
            cache[owner_id] = {"id": owner_id, "name": user.get("name")} if user else {"id": owner_id, "name": None}
        return cache[owner_id]

    def _material_summaries(self, ids: Iterable[str], actor: Optional[Actor]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for material_id in ids or ():
            doc = self.store.find_by_id(MATERIAL.collection, material_id, exclude=MATERIAL.blob_paths)
            if doc is None:
                continue
            if not authorize(actor, ACTION_READ, ResourceRef(
                kind=KIND_MATERIAL, owner_id=doc.get(MATERIAL.owner_field), is_published=bool(doc.get("is_published"))
            )).allowed:
                continue
            out.append({k: doc.get(k) for k in ("id", "title", "type", "category")})
        return out

    def _view(
        self,
        doc: Mapping[str, Any],
        *,
        actor: Optional[Actor],
        detail: bool,
        owners: Dict[str, Any],
    ) -> Dict[str, Any]:
        view = dict(doc)
        if not detail and self.kind.body_field:
            view.pop(self.kind.body_field, None)
        for slot in self.kind.slots:
            view[slot.name] = describe_slot(doc.get(slot.name))
        view["owner"] = self._owner_summary(doc.get(self.kind.owner_field), owners)
        if self.kind.name == KIND_ASSIGNMENT:
            view["materials"] = self._material_summaries(doc.get("materials") or [], actor)
            due = parse_iso_datetime(doc.get("due_date"), field="due_date")
            view["is_overdue"] = bool(due and utcnow() > due)
        return view

    def _ceiling(self, limit: str) -> int:
        return self._materials_max_bytes if limit == LIMIT_MATERIALS else self._media_max_bytes

    def _prepare_uploads(self, uploads: Mapping[str, Upload] | None) -> Dict[str, Asset]:
        """Validate every upload before anything is written."""
        prepared: Dict[str, Asset] = {}
        for name, upload in (uploads or {}).items():
            slot = self.kind.slot(name)
            if slot is None:
                raise UnexpectedField(f"unexpected_field:{name}")
            prepared[name] = self.assets.prepare(
                upload, field_role=slot.field_role, max_size_bytes=self._ceiling(slot.limit)
            )
        return prepared

    def _bump(self, resource_id: str, counter: str) -> Optional[Dict[str, Any]]:
        try:
            return self.store.update_by_id(
                self.kind.collection,
                resource_id,
                {},
                increments={counter: 1},
                exclude=self.kind.blob_paths,
            )
        except Exception as exc:
            logger.warning(
                "Counter not persisted (reconcile later) kind=%s id=%s counter=%s error=%s",
                self.kind.name,
                resource_id,
                counter,
                type(exc).__name__,
            )
            return None

    def _criteria_query(self, criteria: Mapping[str, Any], *, equals: Dict[str, Any]) -> DocumentQuery:
        any_of: Dict[str, List[Any]] = {}
        for name in self.kind.filter_fields:
            raw = criteria.get(name)
            if raw in (None, "", []):
                continue
            if name == "tags":
                tags = raw if isinstance(raw, list) else parse_string_list(raw, field="tags")
                if tags:
                    any_of["tags"] = [str(t).strip() for t in tags if str(t).strip()]
            else:
                equals[name] = str(raw).strip()
        search = (criteria.get("search") or "").strip() or None
        return DocumentQuery(equals=equals, any_of=any_of, search=search, search_fields=self.kind.search_fields)

    def _page_of(self, query: DocumentQuery, criteria: Mapping[str, Any], actor: Optional[Actor]) -> Dict[str, Any]:
        paging = parse_page(criteria.get("page"), criteria.get("limit"))
        order = parse_sort(criteria.get("sort"), default=self.kind.default_sort, allowed=self.kind.sortable)
        docs = self.store.find(
            self.kind.collection,
            query,
            sort=order,
            skip=paging.skip,
            limit=paging.limit,
            exclude=self.kind.list_exclude,
        )
        total = self.store.count_documents(self.kind.collection, query)
        owners: Dict[str, Any] = {}
        items = [self._view(d, actor=actor, detail=False, owners=owners) for d in docs]
        return paginated(items, total=total, page=paging)

    # --- operations ------------------------------------------------------------

    @unexpected_boundary(logger)
    def list(self, criteria: Mapping[str, Any], actor: Optional[Actor] = None) -> Dict[str, Any]:
        """Page of published resources matching the filter criteria.

        Criteria keys: the kind's filter fields (`category`, `type`, `tags`),
        `search`, `page`, `limit` (1..100) and `sort` (`field:asc|desc`).
        """
        query = self._criteria_query(criteria, equals={"is_published": True})
        return self._page_of(query, criteria, actor)

    @unexpected_boundary(logger)
    def list_by_owner(self, owner_id: str, criteria: Mapping[str, Any], actor: Optional[Actor] = None) -> Dict[str, Any]:
        """Resources of one owner; drafts only for the owner and admins."""
        equals: Dict[str, Any] = {self.kind.owner_field: owner_id}
        sees_drafts = actor is not None and (actor.is_admin or actor.id == owner_id)
        if not sees_drafts:
            equals["is_published"] = True
        query = self._criteria_query(criteria, equals=equals)
        return self._page_of(query, criteria, actor)

    @unexpected_boundary(logger)
    def get_one(self, resource_id: str, actor: Optional[Actor] = None) -> Dict[str, Any]:
        doc = self._load(resource_id)
        enforce(authorize(actor, ACTION_READ, self._ref(doc)))
        if self.kind.view_counter:
            doc = self._bump(resource_id, self.kind.view_counter) or doc
        return self._view(doc, actor=actor, detail=True, owners={})

    @unexpected_boundary(logger)
    def create(
        self,
        actor: Optional[Actor],
        payload: Mapping[str, Any],
        uploads: Mapping[str, Upload] | None = None,
    ) -> Dict[str, Any]:
        """Create a resource owned by the acting identity.

        Raises Denied (role may not create), ValidationFailed, UnexpectedField,
        UnsupportedMediaType or PayloadTooLarge; nothing is stored on failure.
        """
        enforce(authorize(actor, ACTION_CREATE, self._ref(None)))
        if actor is None:
            raise Denied("unauthenticated")
        values = normalize_payload(self.kind, payload, partial=False)
        prepared = self._prepare_uploads(uploads)
        for slot in self.kind.slots:
            if slot.required_on_create and slot.name not in prepared:
                raise ValidationFailed(f"{slot.name}_required")
        doc: Dict[str, Any] = dict(values)
        for slot in self.kind.slots:
            doc[slot.name] = prepared[slot.name].to_document() if slot.name in prepared else None
        if self.kind.check is not None:
            self.kind.check(doc, frozenset(prepared), doc)
        now = utcnow().isoformat()
        doc[self.kind.owner_field] = actor.id
        for counter in self.kind.counters:
            doc[counter] = 0
        doc["created_at"] = now
        doc["updated_at"] = now
        created = self.store.create(self.kind.collection, doc)
        logger.info("Created %s %s by %s", self.kind.name, created["id"], actor.id)
        stored = self._load(created["id"])
        return self._view(stored, actor=actor, detail=True, owners={})

    @unexpected_boundary(logger)
    def update(
        self,
        actor: Optional[Actor],
        resource_id: str,
        payload: Mapping[str, Any],
        uploads: Mapping[str, Upload] | None = None,
    ) -> Dict[str, Any]:
        """Apply field changes and slot replacements in one write.

        The owner field never changes. Publishing and unpublishing go through
        `is_published` like any other field.
        """
        current = self._load(resource_id)
        enforce(authorize(actor, ACTION_UPDATE, self._ref(current)))
        changes = normalize_payload(self.kind, payload, partial=True)
        prepared = self._prepare_uploads(uploads)
        cleared: Iterable[str] = ()
        if self.kind.check is not None:
            merged = {**current, **changes, **{n: a.to_document() for n, a in prepared.items()}}
            cleared = self.kind.check(merged, frozenset(prepared), changes) or ()
        changes.pop(self.kind.owner_field, None)
        changes["updated_at"] = utcnow().isoformat()
        updated = self.assets.write_slots(
            self.kind.collection,
            resource_id,
            attach=prepared,
            detach=cleared,
            changes=changes,
            exclude=self.kind.blob_paths,
        )
        if updated is None:
            raise NotFound("not_found")
        logger.info("Updated %s %s by %s", self.kind.name, resource_id, actor.id if actor else None)
        return self._view(updated, actor=actor, detail=True, owners={})

    @unexpected_boundary(logger)
    def delete(self, actor: Optional[Actor], resource_id: str) -> None:
        """Delete a resource and its embedded assets plus dependent records."""
        current = self._load(resource_id)
        enforce(authorize(actor, ACTION_DELETE, self._ref(current)))
        for collection, field_name in self._cascades:
            self.store.delete_many(collection, DocumentQuery(equals={field_name: resource_id}))
        if not self.store.delete_by_id(self.kind.collection, resource_id):
            raise NotFound("not_found")
        # Sweep again for dependents written while the delete was in flight.
        for collection, field_name in self._cascades:
            removed = self.store.delete_many(collection, DocumentQuery(equals={field_name: resource_id}))
            if removed:
                logger.info("Removed %d late %s for deleted %s %s", removed, collection, self.kind.name, resource_id)
        logger.info("Deleted %s %s by %s", self.kind.name, resource_id, actor.id if actor else None)

    @unexpected_boundary(logger)
    def read_asset(
        self,
        actor: Optional[Actor],
        resource_id: str,
        slot: str,
        *,
        download: bool = False,
    ) -> AssetDelivery:
        """Return one slot's bytes, or the external link standing in for it.

        `download=True` counts a download when the slot is the kind's primary
        downloadable file. External links are returned, not counted.
        """
        if self.kind.slot(slot) is None:
            raise NotFound(f"{slot}_not_found")
        others = [p for p in self.kind.blob_paths if p != f"{slot}.data"]
        doc = self._load(resource_id, exclude=others)
        enforce(authorize(actor, ACTION_DOWNLOAD if download else ACTION_READ, self._ref(doc)))
        if self.kind.link_field and slot == self.kind.download_slot and doc.get(self.kind.link_field):
            return AssetDelivery(redirect_url=str(doc[self.kind.link_field]))
        asset = AssetStore.read(doc, slot)
        if download and slot == self.kind.download_slot and self.kind.download_counter:
            self._bump(resource_id, self.kind.download_counter)
        return AssetDelivery(asset=asset)

    # --- kind-specific reads ---------------------------------------------------

    def categories(self) -> List[str]:
        if self.kind.name != KIND_MATERIAL:
            raise NotFound("not_found")
        return list(MATERIAL_CATEGORIES)

    @unexpected_boundary(logger)
    def tags(self) -> List[str]:
        """Distinct tags across published resources, sorted."""
        if not any(rule.name == "tags" for rule in self.kind.fields):
            raise NotFound("not_found")
        docs = self.store.find(
            self.kind.collection,
            DocumentQuery(equals={"is_published": True}),
            exclude=self.kind.list_exclude,
        )
        found = {tag for d in docs for tag in (d.get("tags") or []) if isinstance(tag, str)}
        return sorted(found)


__all__ = ["AssetDelivery", "ResourceService", "SUBMISSIONS_COLLECTION", "enforce", "utcnow"]
