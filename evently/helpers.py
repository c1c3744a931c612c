import math
import time
import re
import uuid
from datetime import datetime, timezone
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def parse_iso(value: str) -> float:
    """ISO-8601 string -> epoch seconds. Naive values are taken as UTC."""
    # python < 3.11 does not accept the Z suffix
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return re.match(r"^https?://[^\s/$.?#][^\s]*$", url.strip()) is not None


def total_pages(count: int, limit: int) -> int:
    return math.ceil(count / limit) if limit else 0


def clamp_page(page, limit, default_limit: int):
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default_limit
    return max(1, page), max(1, min(limit, 100))
