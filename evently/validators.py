from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from fastapi import HTTPException

from .helpers import is_valid_url, parse_iso

TITLE_MIN = 3
TEXT_MIN = 3
TEXT_MAX = 400


def _bad(field: str, msg: str) -> HTTPException:
    return HTTPException(400, detail=f"{field}: {msg}")


def _text(payload: dict, field: str, lo: int, hi: int | None) -> str:
    value = payload.get(field)
    if not isinstance(value, str):
        raise _bad(field, "must be a string")
    value = value.strip()
    if len(value) < lo:
        raise _bad(field, f"must be at least {lo} characters")
    if hi is not None and len(value) > hi:
        raise _bad(field, f"must be at most {hi} characters")
    return value


def _when(payload: dict, field: str) -> float:
    value = payload.get(field)
    if not isinstance(value, str):
        raise _bad(field, "must be an ISO-8601 datetime")
    try:
        return parse_iso(value)
    except ValueError:
        raise _bad(field, "must be an ISO-8601 datetime")


def validate_event_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Check an event form and return the column values to store.

    Raises a 400 naming the first offending field.
    """
    if not isinstance(payload, dict):
        raise HTTPException(400, detail="event must be an object")

    title = _text(payload, "title", TITLE_MIN, None)
    description = _text(payload, "description", TEXT_MIN, TEXT_MAX)
    location = _text(payload, "location", TEXT_MIN, TEXT_MAX)

    url = payload.get("url")
    if not is_valid_url(url):
        raise _bad("url", "must be a valid http(s) URL")

    start = _when(payload, "start_date_time")
    end = _when(payload, "end_date_time")
    if end < start:
        raise _bad("end_date_time", "must not be before start_date_time")

    is_free = payload.get("is_free", False)
    if not isinstance(is_free, bool):
        raise _bad("is_free", "must be a boolean")

    price = payload.get("price", "")
    if price is None:
        price = ""
    if not isinstance(price, str):
        raise _bad("price", "must be a string")
    price = price.strip()
    if price or not is_free:
        try:
            amount = Decimal(price)
        except InvalidOperation:
            raise _bad("price", "must be a decimal number")
        if not amount.is_finite() or amount < 0:
            raise _bad("price", "must be a non-negative number")

    image_url = payload.get("image_url") or ""
    if not isinstance(image_url, str):
        raise _bad("image_url", "must be a string")

    category_id = payload.get("category_id") or None
    if category_id is not None and not isinstance(category_id, str):
        raise _bad("category_id", "must be a string")

    return {
        "title": title,
        "description": description,
        "location": location,
        "url": url.strip(),
        "image_url": image_url,
        "start_date_time": start,
        "end_date_time": end,
        "price": price,
        "is_free": is_free,
        "category_id": category_id,
    }
