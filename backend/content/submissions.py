"""
Assignment submissions: submit, review, grade and file retrieval.

Why:
    Submissions are dependent records of an assignment with their own rules:
    students submit once per assignment while it is open, admins review and
    grade, and only the submitting student or an admin may read the attached
    file.

Concurrency:
    "At most one submission per (assignment, student)" is a uniqueness
    constraint declared on the store. The pre-check via the policy only gives
    the friendly error early; two concurrent submits are decided by the
    constraint and the loser receives `Conflict`.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from backend.common.errors import Conflict, Denied, NotFound, UnexpectedField, ValidationFailed, unexpected_boundary
from backend.common.parsing import paginated, parse_bool, parse_iso_datetime, parse_page, parse_sort
from backend.content.policy import ACTION_DOWNLOAD, ACTION_GRADE, ACTION_READ, ACTION_SUBMIT, ResourceRef, authorize
from backend.content.service import SUBMISSIONS_COLLECTION, ResourceService, enforce, utcnow
from backend.identity_access.domain import USERS_COLLECTION, Actor
from backend.storage.assets import Asset, AssetStore, Upload, describe_slot
from backend.storage.config import get_media_max_upload_bytes
from backend.storage.documents import DocumentQuery, DocumentStoreProtocol, DuplicateKeyError
from backend.storage.upload_policy import ROLE_PRIMARY_FILE

logger = logging.getLogger("excellence.content")

KIND_SUBMISSION = "submission"
SUBMISSION_SLOT = "file_url"
PENDING_GRADE = "Pending"
GRADES = ("A", "A-", "B+", "B", "B-", "C+", "C", "C-", "D+", "D", "D-", "F")
MAX_MESSAGE_LENGTH = 1000
MAX_FEEDBACK_LENGTH = 1000

_EXCLUDE = (f"{SUBMISSION_SLOT}.data",)
_SORTABLE = ("submitted_at", "graded_at", "grade")


def _clean_text(value: Any, *, field: str, max_length: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationFailed(f"invalid_{field}")
    text = value.strip()
    if len(text) > max_length:
        raise ValidationFailed(f"{field}_too_long")
    return text or None


class SubmissionService:
    def __init__(
        self,
        store: DocumentStoreProtocol,
        assets: AssetStore,
        assignments: ResourceService,
        *,
        max_file_bytes: int | None = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self._store = store
        self._assets = assets
        self._assignments = assignments
        self._max_file_bytes = max_file_bytes or get_media_max_upload_bytes()
        self._clock = clock
        self._store.ensure_unique(SUBMISSIONS_COLLECTION, ["assignment_id", "student_id"])

    # --- helpers ---------------------------------------------------------------

    def _assignment(self, assignment_id: str) -> Dict[str, Any]:
        kind = self._assignments.kind
        doc = self._store.find_by_id(kind.collection, assignment_id, exclude=kind.blob_paths)
        if doc is None:
            raise NotFound("assignment_not_found")
        return doc

    def _load(self, submission_id: str, *, with_bytes: bool = False) -> Dict[str, Any]:
        doc = self._store.find_by_id(SUBMISSIONS_COLLECTION, submission_id, exclude=() if with_bytes else _EXCLUDE)
        if doc is None:
            raise NotFound("submission_not_found")
        return doc

    @staticmethod
    def _ref(doc: Mapping[str, Any]) -> ResourceRef:
        # A submission behaves like a draft owned by its student.
        return ResourceRef(kind=KIND_SUBMISSION, owner_id=doc.get("student_id"), is_published=False)

    def _view(self, doc: Mapping[str, Any], *, people: Dict[str, Any], assignments: Dict[str, Any]) -> Dict[str, Any]:
        view = dict(doc)
        view[SUBMISSION_SLOT] = describe_slot(doc.get(SUBMISSION_SLOT))
        student_id = doc.get("student_id")
        if student_id and student_id not in people:
            user = self._store.find_by_id(USERS_COLLECTION, student_id, exclude=("password_hash", "photo.data"))
            people[student_id] = {"id": student_id, "name": user.get("name"), "email": user.get("email")} if user else None
        view["student"] = people.get(student_id)
        assignment_id = doc.get("assignment_id")
        if assignment_id and assignment_id not in assignments:
            kind = self._assignments.kind
            parent = self._store.find_by_id(kind.collection, assignment_id, exclude=kind.list_exclude)
            assignments[assignment_id] = (
                {"id": assignment_id, "title": parent.get("title"), "due_date": parent.get("due_date")} if parent else None
            )
        view["assignment"] = assignments.get(assignment_id)
        return view

    def _page(self, query: DocumentQuery, criteria: Mapping[str, Any]) -> Dict[str, Any]:
        paging = parse_page(criteria.get("page"), criteria.get("limit"))
        order = parse_sort(criteria.get("sort"), default="submitted_at:desc", allowed=_SORTABLE)
        docs = self._store.find(
            SUBMISSIONS_COLLECTION, query, sort=order, skip=paging.skip, limit=paging.limit, exclude=_EXCLUDE
        )
        total = self._store.count_documents(SUBMISSIONS_COLLECTION, query)
        people: Dict[str, Any] = {}
        parents: Dict[str, Any] = {}
        return paginated([self._view(d, people=people, assignments=parents) for d in docs], total=total, page=paging)

    # --- operations ------------------------------------------------------------

    @unexpected_boundary(logger)
    def submit(
        self,
        actor: Optional[Actor],
        assignment_id: str,
        *,
        message: Any = None,
        uploads: Mapping[str, Upload] | None = None,
    ) -> Dict[str, Any]:
        """Record the acting student's single submission for an assignment.

        Behavior:
            - Unpublished or missing assignments are reported as NotFound.
            - Non-students are refused; past the due date the window is closed.
            - At least one of `message` or a `file_url` upload is required.
            - A second submission (sequential or concurrent) raises Conflict.
        """
        assignment = self._assignment(assignment_id)
        due = parse_iso_datetime(assignment.get("due_date"), field="due_date")
        prior = 0
        if actor is not None:
            prior = self._store.count_documents(
                SUBMISSIONS_COLLECTION,
                DocumentQuery(equals={"assignment_id": assignment_id, "student_id": actor.id}),
            )
        ref = ResourceRef(
            kind=self._assignments.kind.name,
            owner_id=assignment.get(self._assignments.kind.owner_field),
            is_published=bool(assignment.get("is_published")),
            due_date=due,
            already_submitted=prior > 0,
        )
        enforce(authorize(actor, ACTION_SUBMIT, ref, now=self._clock()))
        if actor is None:
            raise Denied("unauthenticated")

        text = _clean_text(message, field="message", max_length=MAX_MESSAGE_LENGTH)
        asset: Optional[Asset] = None
        for name, upload in (uploads or {}).items():
            if name != SUBMISSION_SLOT:
                raise UnexpectedField(f"unexpected_field:{name}")
            asset = self._assets.prepare(upload, field_role=ROLE_PRIMARY_FILE, max_size_bytes=self._max_file_bytes)
        if text is None and asset is None:
            raise ValidationFailed("message_or_file_required")

        now = self._clock().isoformat()
        record = {
            "assignment_id": assignment_id,
            "student_id": actor.id,
            "message": text,
            SUBMISSION_SLOT: asset.to_document() if asset else None,
            "submitted_at": now,
            "graded": False,
            "grade": PENDING_GRADE,
            "feedback": None,
            "graded_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            created = self._store.create(SUBMISSIONS_COLLECTION, record)
        except DuplicateKeyError as exc:
            raise Conflict("already_submitted") from exc
        logger.info("Submission %s for assignment %s by %s", created["id"], assignment_id, actor.id)
        return self._view(self._load(created["id"]), people={}, assignments={})

    @unexpected_boundary(logger)
    def list_submissions(
        self, actor: Optional[Actor], assignment_id: str, criteria: Mapping[str, Any] | None = None
    ) -> Dict[str, Any]:
        """All submissions for one assignment (admin), optionally by `graded`."""
        criteria = criteria or {}
        enforce(authorize(actor, ACTION_GRADE, ResourceRef(kind=KIND_SUBMISSION)))
        self._assignment(assignment_id)
        equals: Dict[str, Any] = {"assignment_id": assignment_id}
        graded = parse_bool(criteria.get("graded"), field="graded")
        if graded is not None:
            equals["graded"] = graded
        return self._page(DocumentQuery(equals=equals), criteria)

    @unexpected_boundary(logger)
    def my_submissions(self, actor: Optional[Actor], criteria: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        criteria = criteria or {}
        if actor is None:
            raise Denied("unauthenticated")
        return self._page(DocumentQuery(equals={"student_id": actor.id}), criteria)

    @unexpected_boundary(logger)
    def get_submission(self, actor: Optional[Actor], submission_id: str) -> Dict[str, Any]:
        doc = self._load(submission_id)
        enforce(authorize(actor, ACTION_READ, self._ref(doc)))
        return self._view(doc, people={}, assignments={})

    @unexpected_boundary(logger)
    def grade(
        self,
        actor: Optional[Actor],
        submission_id: str,
        *,
        grade: Any,
        feedback: Any = None,
    ) -> Dict[str, Any]:
        """Grade a submission (admin only); `Pending` is not a grade."""
        enforce(authorize(actor, ACTION_GRADE, ResourceRef(kind=KIND_SUBMISSION)))
        value = (grade or "").strip() if isinstance(grade, str) else None
        if value not in GRADES:
            raise ValidationFailed("invalid_grade")
        note = _clean_text(feedback, field="feedback", max_length=MAX_FEEDBACK_LENGTH)
        self._load(submission_id)
        now = self._clock().isoformat()
        changes = {"grade": value, "graded": True, "graded_at": now, "updated_at": now}
        if feedback is not None:
            changes["feedback"] = note
        updated = self._store.update_by_id(SUBMISSIONS_COLLECTION, submission_id, changes, exclude=_EXCLUDE)
        if updated is None:
            raise NotFound("submission_not_found")
        logger.info("Submission %s graded %s by %s", submission_id, value, actor.id if actor else None)
        return self._view(updated, people={}, assignments={})

    @unexpected_boundary(logger)
    def read_submission_asset(self, actor: Optional[Actor], submission_id: str) -> Asset:
        doc = self._load(submission_id, with_bytes=True)
        enforce(authorize(actor, ACTION_DOWNLOAD, self._ref(doc)))
        return AssetStore.read(doc, SUBMISSION_SLOT)


__all__ = [
    "GRADES",
    "KIND_SUBMISSION",
    "PENDING_GRADE",
    "SubmissionService",
]
