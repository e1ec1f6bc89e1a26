"""
Identity domain constants and simple helpers.

Why:
- Centralize allowed roles to avoid drift between the credential store, the
  policy engine and the web layer.
- Give the rest of the system one small `Actor` value instead of passing raw
  token claims or user documents around.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

ROLE_STUDENT = "student"
ROLE_CLERGY = "clergy"
ROLE_ADMIN = "admin"

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({ROLE_STUDENT, ROLE_CLERGY, ROLE_ADMIN})

# Lowest privilege; used whenever elevation is not proven.
DEFAULT_ROLE = ROLE_STUDENT

USERS_COLLECTION = "users"

PROFILE_FIELDS = (
    "phone",
    "bio",
    "date_of_birth",
    "gender",
    "student_id",
    "department",
    "year_of_study",
    "church",
    "position",
    "ordination_date",
)


@dataclass(frozen=True)
class Actor:
    """The authenticated identity initiating an operation."""

    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def actor_from_identity(doc: Optional[Mapping[str, Any]]) -> Optional[Actor]:
    if not doc or not doc.get("id"):
        return None
    role = doc.get("role")
    return Actor(id=str(doc["id"]), role=role if role in ALLOWED_ROLES else DEFAULT_ROLE)


__all__ = [
    "ALLOWED_ROLES",
    "DEFAULT_ROLE",
    "PROFILE_FIELDS",
    "ROLE_ADMIN",
    "ROLE_CLERGY",
    "ROLE_STUDENT",
    "USERS_COLLECTION",
    "Actor",
    "actor_from_identity",
]
