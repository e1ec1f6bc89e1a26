"""
Typed parsers for list-valued fields, dates, pagination and sorting.

Why:
    Every list endpoint and every multipart form reads the same kinds of
    values. One parser per value with exactly one accepted wire shape removes
    the per-endpoint guessing (comma strings vs. JSON vs. repeated fields).

Accepted shapes:
    - String lists: a JSON array of strings, either already decoded (JSON
      bodies) or as the raw field value (multipart forms). `None`/empty means
      "not provided".
    - Dates: ISO-8601 (`2025-01-31`, `2025-01-31T12:00:00Z`, with offset);
      naive values are interpreted as UTC.
    - Sort: `field:asc` or `field:desc` against an explicit whitelist.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from backend.common.errors import ValidationFailed
from backend.storage.documents import ASCENDING, DESCENDING

DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100


def parse_string_list(raw: Any, *, field: str) -> Optional[List[str]]:
    """Return the list of non-empty strings, or None when not provided."""
    if raw is None:
        return None
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            raw = json.loads(text)
        except ValueError as exc:
            raise ValidationFailed(f"invalid_{field}") from exc
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValidationFailed(f"invalid_{field}")
    out: List[str] = []
    for item in raw:
        value = item.strip()
        if value and value not in out:
            out.append(value)
    return out


def parse_iso_datetime(raw: Any, *, field: str) -> Optional[datetime]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationFailed(f"invalid_{field}") from exc
    else:
        raise ValidationFailed(f"invalid_{field}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_bool(raw: Any, *, field: str) -> Optional[bool]:
    """Booleans from JSON or form values (`true`/`false`/`1`/`0`)."""
    if raw is None or isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if not text:
        return None
    if text in {"true", "1", "yes", "on"}:
        return True
    if text in {"false", "0", "no", "off"}:
        return False
    raise ValidationFailed(f"invalid_{field}")


@dataclass(frozen=True)
class Page:
    page: int = 1
    limit: int = DEFAULT_PAGE_LIMIT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def parse_page(page: Any = None, limit: Any = None) -> Page:
    """Validate paging: page >= 1, limit within 1..100 (default 10)."""
    try:
        p = 1 if page in (None, "") else int(page)
        lim = DEFAULT_PAGE_LIMIT if limit in (None, "") else int(limit)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("invalid_pagination") from exc
    if p < 1 or lim < 1 or lim > MAX_PAGE_LIMIT:
        raise ValidationFailed("invalid_pagination")
    return Page(page=p, limit=lim)


def parse_sort(raw: Optional[str], *, default: str, allowed: Sequence[str]) -> List[Tuple[str, int]]:
    """Parse `field:dir` into a store sort spec; unknown fields are rejected."""
    text = (raw or "").strip() or default
    name, _, direction = text.partition(":")
    name = name.strip()
    direction = (direction or "asc").strip().lower()
    if name not in allowed or direction not in {"asc", "desc"}:
        raise ValidationFailed("invalid_sort")
    return [(name, DESCENDING if direction == "desc" else ASCENDING)]


def paginated(items: List[Dict[str, Any]], *, total: int, page: Page) -> Dict[str, Any]:
    return {
        "items": items,
        "pagination": {
            "current": page.page,
            "limit": page.limit,
            "pages": math.ceil(total / page.limit) if total else 0,
            "total": total,
        },
    }


__all__ = [
    "DEFAULT_PAGE_LIMIT",
    "MAX_PAGE_LIMIT",
    "Page",
    "paginated",
    "parse_bool",
    "parse_iso_datetime",
    "parse_page",
    "parse_sort",
    "parse_string_list",
]
