"""Identity-provider webhooks.

The identity provider owns sign-up, sign-in and profile editing; it tells us
about user lifecycle changes with Svix-signed webhooks:

    svix-id:        msg_...
    svix-timestamp: unix seconds
    svix-signature: "v1,<base64 hmac-sha256> v1,<...>"

The signed content is ``"{svix-id}.{svix-timestamp}.{body}"`` and the key is
the base64 part of the ``whsec_...`` secret.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from .model.users import create_user, delete_user, update_user

log = logging.getLogger(__name__)

IDENTITY_WEBHOOK_SECRET = os.environ.get("IDENTITY_WEBHOOK_SECRET", "")
TOLERANCE_SECONDS = 5 * 60


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        secret = secret[len("whsec_"):]
    try:
        return base64.b64decode(secret)
    except binascii.Error:
        raise RuntimeError("IDENTITY_WEBHOOK_SECRET is not valid base64")


def sign(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    signed = f"{msg_id}.{timestamp}.".encode() + payload
    mac = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def verify_webhook(payload: bytes, headers: dict,
                   secret: str = IDENTITY_WEBHOOK_SECRET,
                   now: Optional[float] = None) -> dict:
    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signatures = headers.get("svix-signature")
    if not secret:
        raise HTTPException(status_code=500,
                            detail="identity webhook secret not configured")
    if not msg_id or not timestamp or not signatures:
        raise HTTPException(status_code=400, detail="Missing svix headers")

    try:
        ts = int(timestamp)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid timestamp")
    now = time.time() if now is None else now
    if abs(now - ts) > TOLERANCE_SECONDS:
        raise HTTPException(status_code=400, detail="Timestamp out of range")

    expected = sign(secret, msg_id, timestamp, payload)
    for versioned in signatures.split():
        version, _, sig = versioned.partition(",")
        if version == "v1" and hmac.compare_digest(expected, sig):
            break
    else:
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    return event


def _primary_email(data: Dict[str, Any]) -> str:
    addresses = data.get("email_addresses") or []
    primary = data.get("primary_email_address_id")
    for a in addresses:
        if a.get("id") == primary:
            return a.get("email_address", "")
    return addresses[0].get("email_address", "") if addresses else ""


async def handle_event(db: AsyncSession, event: dict) -> Dict[str, Any]:
    kind = event.get("type", "")
    data = event.get("data") or {}
    clerk_id = data.get("id", "")

    if kind == "user.created":
        email = _primary_email(data)
        user = await create_user(db, {
            "clerk_id": clerk_id,
            "email": email,
            # email-only sign-ups have no username
            "username": data.get("username") or email.split("@")[0],
            "first_name": data.get("first_name") or "",
            "last_name": data.get("last_name") or "",
            "photo": data.get("image_url") or "",
        })
        return {"message": "OK", "user": user}

    if kind == "user.updated":
        user = await update_user(db, clerk_id, {
            "first_name": data.get("first_name") or "",
            "last_name": data.get("last_name") or "",
            "username": data.get("username"),
            "photo": data.get("image_url") or "",
        })
        return {"message": "OK", "user": user}

    if kind == "user.deleted":
        user = await delete_user(db, clerk_id)
        return {"message": "OK", "user": user}

    log.debug("ignoring identity event %s", kind)
    return {"message": "ignored"}
