"""
Authorization policy for content resources.

Why:
    Ownership, role and visibility checks used to be repeated per resource
    type. `authorize()` is the single decision table every lifecycle operation
    consults. It is a pure function: callers pass the actor, the action and a
    `ResourceRef` describing the target; nothing is loaded or written here.

Rules (first match wins):
    1. Admins may do everything except `submit`.
    2. `create` requires one of the kind's creator roles; the new resource is
       owned by the actor.
    3. `read`/`download` of a published resource is allowed for anyone,
       including anonymous callers.
    4. `read`/`download` of an unpublished resource is allowed for the owner
       only; everybody else is told the resource does not exist.
    5. `update`/`delete` require ownership on self-service kinds (sermons,
       prayers). Curated kinds (books, materials, assignments) are admin-only.
       Denials never reveal unpublished resources.
    6. `submit` is for students only, while the assignment is open and only
       once per assignment.
    7. `grade` is admin-only (covered by rule 1; everyone else is refused).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import FrozenSet, Optional

from backend.common.errors import Denied
from backend.identity_access.domain import ROLE_STUDENT, Actor

ACTION_READ = "read"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_SUBMIT = "submit"
ACTION_GRADE = "grade"
ACTION_DOWNLOAD = "download"

ACTIONS = frozenset(
    {ACTION_READ, ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE, ACTION_SUBMIT, ACTION_GRADE, ACTION_DOWNLOAD}
)

REASON_NOT_FOUND = "not_found"
REASON_UNAUTHENTICATED = "unauthenticated"
REASON_FORBIDDEN = "forbidden"
REASON_SUBMISSION_CLOSED = "submission_closed"
REASON_ALREADY_SUBMITTED = "already_submitted"

MUTATION_OWNER_OR_ADMIN = "owner_or_admin"
MUTATION_ADMIN_ONLY = "admin_only"


@dataclass(frozen=True)
class ResourceRef:
    """What the policy needs to know about a target resource.

    `owner_id` is None only for a not-yet-existing resource (create). For
    `submit`, `due_date` and `already_submitted` describe the assignment and
    the acting student's prior submission.
    """

    kind: str
    owner_id: Optional[str] = None
    is_published: bool = True
    mutation: str = MUTATION_OWNER_OR_ADMIN
    create_roles: FrozenSet[str] = frozenset()
    due_date: Optional[datetime] = None
    already_submitted: bool = False


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def enforce(self) -> None:
        """Raise `Denied(reason)` unless the decision allows the action."""
        if not self.allowed:
            raise Denied(self.reason or REASON_FORBIDDEN)


ALLOW = Decision(True)


def _deny(reason: str) -> Decision:
    return Decision(False, reason)


def _is_owner(actor: Optional[Actor], resource: ResourceRef) -> bool:
    return actor is not None and resource.owner_id is not None and actor.id == resource.owner_id


def authorize(
    actor: Optional[Actor],
    action: str,
    resource: ResourceRef,
    *,
    now: Optional[datetime] = None,
) -> Decision:
    if action not in ACTIONS:
        return _deny(REASON_FORBIDDEN)

    if actor is not None and actor.is_admin:
        return _deny(REASON_FORBIDDEN) if action == ACTION_SUBMIT else ALLOW

    if action == ACTION_CREATE:
        if actor is None:
            return _deny(REASON_UNAUTHENTICATED)
        return ALLOW if actor.role in resource.create_roles else _deny(REASON_FORBIDDEN)

    # Visible means the actor may learn that the resource exists.
    visible = resource.is_published or _is_owner(actor, resource)

    if action in (ACTION_READ, ACTION_DOWNLOAD):
        return ALLOW if visible else _deny(REASON_NOT_FOUND)

    if action in (ACTION_UPDATE, ACTION_DELETE):
        if actor is None:
            return _deny(REASON_UNAUTHENTICATED) if visible else _deny(REASON_NOT_FOUND)
        if resource.mutation == MUTATION_ADMIN_ONLY:
            return _deny(REASON_FORBIDDEN) if visible else _deny(REASON_NOT_FOUND)
        return ALLOW if _is_owner(actor, resource) else _deny(REASON_NOT_FOUND)

    if action == ACTION_SUBMIT:
        if not resource.is_published:
            return _deny(REASON_NOT_FOUND)
        if actor is None:
            return _deny(REASON_UNAUTHENTICATED)
        if actor.role != ROLE_STUDENT:
            return _deny(REASON_FORBIDDEN)
        current = now or datetime.now(timezone.utc)
        if resource.due_date is not None and current > resource.due_date:
            return _deny(REASON_SUBMISSION_CLOSED)
        if resource.already_submitted:
            return _deny(REASON_ALREADY_SUBMITTED)
        return ALLOW

    # ACTION_GRADE for non-admins
    return _deny(REASON_UNAUTHENTICATED) if actor is None else _deny(REASON_FORBIDDEN)


__all__ = [
    "ACTIONS",
    "ACTION_CREATE",
    "ACTION_DELETE",
    "ACTION_DOWNLOAD",
    "ACTION_GRADE",
    "ACTION_READ",
    "ACTION_SUBMIT",
    "ACTION_UPDATE",
    "ALLOW",
    "Decision",
    "MUTATION_ADMIN_ONLY",
    "MUTATION_OWNER_OR_ADMIN",
    "REASON_ALREADY_SUBMITTED",
    "REASON_FORBIDDEN",
    "REASON_NOT_FOUND",
    "REASON_SUBMISSION_CLOSED",
    "REASON_UNAUTHENTICATED",
    "ResourceRef",
    "authorize",
]
