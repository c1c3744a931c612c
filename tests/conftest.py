import base64
import json
import os
import sqlite3
import tempfile
import time
import uuid

import pytest
import pytest_asyncio

# the server reads its configuration at import time
_DATA_DIR = tempfile.mkdtemp(prefix="evently-tests-")
DB_PATH = os.path.join(_DATA_DIR, "api.db")
IDENTITY_SECRET = "whsec_" + base64.b64encode(b"identity-test-secret").decode()

os.environ["DATABASE_URL"] = f"sqlite:///{DB_PATH}"
os.environ["PAYSESSION_BACKEND"] = "sql"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MOCK_SECRET"] = "test-mock-secret"
os.environ["IDENTITY_WEBHOOK_SECRET"] = IDENTITY_SECRET
os.environ["SERVER_URL"] = "http://testserver"
os.environ["MOCK_WEBHOOK_URL"] = "http://127.0.0.1:9/api/webhook/stripe"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from evently.infra.sql import create_schema, make_async_engine  # noqa: E402

TABLES = [
    "orders", "events", "categories", "users",
    "payment_sessions", "payment_sessions_pending",
    "webhook_events_seen", "fulfillment_gates",
]


# ----------------------------
# data-access fixtures
# ----------------------------
@pytest_asyncio.fixture
async def db(tmp_path):
    """AsyncSession on a fresh SQLite file."""
    engine, SessionAsync, _ = make_async_engine(
        f"sqlite:///{tmp_path / 'evently.db'}"
    )
    await create_schema(engine)
    async with SessionAsync() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def event_form():
    """A valid event payload; tests override single fields."""
    def _form(**overrides):
        form = {
            "title": "PyCon Tokyo",
            "description": "Talks, sprints and sushi.",
            "location": "Tokyo Big Sight",
            "image_url": "https://img.example.com/pycon.png",
            "start_date_time": "2099-05-01T09:00:00+00:00",
            "end_date_time": "2099-05-01T18:00:00+00:00",
            "price": "25",
            "is_free": False,
            "url": "https://pycon.example.com",
            "category_id": None,
        }
        form.update(overrides)
        return form
    return _form


# ----------------------------
# HTTP fixtures
# ----------------------------
def _wipe():
    if not os.path.exists(DB_PATH):
        return
    conn = sqlite3.connect(DB_PATH)
    try:
        for table in TABLES:
            try:
                conn.execute(f"DELETE FROM {table}")
            except sqlite3.OperationalError:
                pass  # not created yet
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from evently.infra.timings import reset_timings
    from evently.server import app

    _wipe()
    reset_timings()
    with TestClient(app) as c:
        yield c
    _wipe()


def sign_identity(payload: bytes, msg_id: str = None, ts: int = None):
    from evently.identity import sign

    msg_id = msg_id or f"msg_{uuid.uuid4().hex}"
    ts = str(int(time.time()) if ts is None else ts)
    return {
        "svix-id": msg_id,
        "svix-timestamp": ts,
        "svix-signature": "v1," + sign(IDENTITY_SECRET, msg_id, ts, payload),
        "content-type": "application/json",
    }


def identity_event(kind: str, clerk_id: str, **data) -> bytes:
    body = {"id": clerk_id, **data}
    return json.dumps({"type": kind, "data": body}).encode()


@pytest.fixture
def make_user(client):
    """Create a user through the identity webhook."""
    def _make(first="Ada", last="Lovelace", username=None):
        clerk_id = f"user_{uuid.uuid4().hex[:12]}"
        username = username or f"{first.lower()}-{uuid.uuid4().hex[:6]}"
        payload = identity_event(
            "user.created", clerk_id,
            email_addresses=[{
                "id": "idn_1",
                "email_address": f"{username}@example.com",
            }],
            primary_email_address_id="idn_1",
            username=username,
            first_name=first,
            last_name=last,
            image_url="https://img.example.com/me.png",
        )
        r = client.post("/api/webhook/identity", content=payload,
                        headers=sign_identity(payload))
        assert r.status_code == 200, r.text
        return r.json()["user"]
    return _make


def signed_mock_event(event: dict):
    from evently.server import adapter

    payload = json.dumps(event).encode()
    return payload, {
        "x-mockpay-signature": adapter.sign(payload),
        "content-type": "application/json",
    }
