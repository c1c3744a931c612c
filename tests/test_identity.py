import base64
import json

import pytest
from fastapi import HTTPException

from evently import identity

SECRET = "whsec_" + base64.b64encode(b"unit-secret").decode()
NOW = 1_700_000_000
BODY = json.dumps({"type": "user.created", "data": {"id": "u1"}}).encode()


def _headers(body=BODY, ts=NOW, msg_id="msg_1", secret=SECRET):
    sig = identity.sign(secret, msg_id, str(ts), body)
    return {
        "svix-id": msg_id,
        "svix-timestamp": str(ts),
        "svix-signature": f"v1,bogus v1,{sig}",
    }


def _reject(body, headers, secret=SECRET):
    with pytest.raises(HTTPException) as exc:
        identity.verify_webhook(body, headers, secret=secret, now=NOW)
    return exc.value


def test_valid_signature_returns_event():
    event = identity.verify_webhook(BODY, _headers(), secret=SECRET, now=NOW)
    assert event["data"]["id"] == "u1"


def test_tampered_body_is_rejected():
    err = _reject(BODY + b" ", _headers())
    assert err.status_code == 400
    assert err.detail == "Invalid signature"


def test_other_secret_is_rejected():
    other = "whsec_" + base64.b64encode(b"other").decode()
    assert _reject(BODY, _headers(secret=other)).detail == "Invalid signature"


@pytest.mark.parametrize("missing", ["svix-id", "svix-timestamp",
                                     "svix-signature"])
def test_missing_headers(missing):
    headers = _headers()
    del headers[missing]
    assert _reject(BODY, headers).detail == "Missing svix headers"


def test_stale_timestamp():
    err = _reject(BODY, _headers(ts=NOW - identity.TOLERANCE_SECONDS - 1))
    assert err.detail == "Timestamp out of range"


def test_unconfigured_secret():
    assert _reject(BODY, _headers(), secret="").status_code == 500


@pytest.mark.asyncio
async def test_handle_event_lifecycle(db):
    created = await identity.handle_event(db, {
        "type": "user.created",
        "data": {
            "id": "user_1",
            "email_addresses": [
                {"id": "a", "email_address": "old@example.com"},
                {"id": "b", "email_address": "grace@example.com"},
            ],
            "primary_email_address_id": "b",
            "first_name": "Grace",
            "last_name": "Hopper",
        },
    })
    user = created["user"]
    assert user["email"] == "grace@example.com"
    # falls back to the local part of the email
    assert user["username"] == "grace"

    updated = await identity.handle_event(db, {
        "type": "user.updated",
        "data": {"id": "user_1", "first_name": "Amazing",
                 "last_name": "Grace", "username": "amazing"},
    })
    assert updated["user"]["first_name"] == "Amazing"
    assert updated["user"]["username"] == "amazing"

    deleted = await identity.handle_event(db, {
        "type": "user.deleted", "data": {"id": "user_1"},
    })
    assert deleted["user"]["id"] == user["id"]

    ignored = await identity.handle_event(db, {
        "type": "session.created", "data": {"id": "sess_1"},
    })
    assert ignored == {"message": "ignored"}


def test_signed_non_object_body_is_rejected():
    body = b'["user.created"]'
    err = _reject(body, _headers(body=body))
    assert err.status_code == 400
    assert err.detail == "Invalid JSON"


@pytest.mark.asyncio
async def test_redelivered_user_created_returns_the_user(db):
    event = {
        "type": "user.created",
        "data": {
            "id": "user_1",
            "email_addresses": [
                {"id": "a", "email_address": "g@example.com"},
            ],
            "primary_email_address_id": "a",
            "username": "grace",
        },
    }
    first = await identity.handle_event(db, event)
    again = await identity.handle_event(db, event)
    assert again["user"]["id"] == first["user"]["id"]
