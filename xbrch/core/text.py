from __future__ import annotations

from datetime import datetime
import re
from uuid import uuid4


_NON_SLUG = re.compile(r"[^a-z0-9]+")
_MARKUP = re.compile(r"<[^>]*>|[#*_`>\[\]()]")


def slugify(value: str, *, default: str = "business") -> str:
    # Lowercase, collapse runs of other characters to "-" and trim the ends.
    slug = _NON_SLUG.sub("-", value.lower()).strip("-")
    return slug or default


def timestamped_slug(value: str, now: datetime, *, default: str = "business") -> str:
    # Millisecond timestamp; the random tail separates same-millisecond writes.
    millis = int(now.timestamp() * 1000)
    return f"{slugify(value, default=default)}-{millis}-{uuid4().hex[:6]}"


def count_words(text: str) -> int:
    # Markup characters do not count as words.
    return len(_MARKUP.sub(" ", text).split())
