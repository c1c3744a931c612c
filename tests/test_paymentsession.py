import time

import pytest
import pytest_asyncio

from evently.infra.sql import create_schema, make_async_engine
from evently.model.paymentsession._sql import PaymentSessionStore


@pytest_asyncio.fixture
async def store(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'ps.db'}"
    )
    await create_schema(engine)
    async with SessionAsync() as session:
        yield PaymentSessionStore(db=session, ttl_seconds=600, gated=gated)
    await engine.dispose()


def _mapping(**over):
    m = {
        "event_id": "e1", "buyer_id": "b1", "event_title": "Gig",
        "amount": 2500, "currency": "usd",
        "redirect_url": "/mockpay/ps1", "created_at": time.time(),
    }
    m.update(over)
    return m


@pytest.mark.asyncio
async def test_save_and_get(store):
    await store.save_payment_session("ps1", _mapping())

    ps = await store.get_payment_session("ps1")
    assert ps["psid"] == "ps1"
    assert ps["amount"] == "2500"
    assert ps["event_title"] == "Gig"
    assert await store.get_payment_session("nope") is None


@pytest.mark.asyncio
async def test_expired_session_is_gone(store):
    await store.save_payment_session(
        "old", _mapping(created_at=time.time() - 3600))
    assert await store.get_payment_session("old") is None


@pytest.mark.asyncio
async def test_pending_listing_newest_first(store):
    now = time.time()
    await store.save_payment_session("a", _mapping(created_at=now - 2))
    await store.save_payment_session("b", _mapping(created_at=now - 1))

    total, items = await store.get_recent_payment_sessions()
    assert total == 2
    assert [i["psid"] for i in items] == ["b", "a"]
    assert items[0]["status"] == "PENDING"
    assert items[0]["amount"] == 2500
    assert items[0]["age_ms"] >= 1000

    await store.remove_pending("b")
    total, items = await store.get_recent_payment_sessions()
    assert total == 1
    assert [i["psid"] for i in items] == ["a"]
    assert await store.get_payment_session("b") is None


@pytest.mark.asyncio
async def test_fulfill_gate_opens_once(store):
    assert await store.fulfill_gate("ps1") is True
    assert await store.fulfill_gate("ps1") is False

    await store.release_fulfill_gate("ps1")
    assert await store.fulfill_gate("ps1") is True


@pytest.mark.asyncio
async def test_mark_event_seen(store):
    assert await store.mark_event_seen(None) is True
    assert await store.mark_event_seen("evt_1") is True
    assert await store.mark_event_seen("evt_1") is False


@pytest.mark.asyncio
async def test_fulfill_and_mark_event(store):
    first = await store.fulfill_and_mark_event("ps1", "evt_1")
    assert first == {"already_fulfilled": False, "event_seen": False}

    replay = await store.fulfill_and_mark_event("ps1", "evt_1")
    assert replay["already_fulfilled"] is True

    # a new session with a recycled event id
    recycled = await store.fulfill_and_mark_event("ps2", "evt_1")
    assert recycled == {"already_fulfilled": False, "event_seen": True}

    no_idem = await store.fulfill_and_mark_event("ps3", None)
    assert no_idem == {"already_fulfilled": False, "event_seen": None}


@pytest.mark.asyncio
async def test_expired_checkouts_leave_the_pending_listing(store):
    now = time.time()
    await store.save_payment_session("old", _mapping(created_at=now - 3600))
    await store.save_payment_session("new", _mapping(created_at=now))

    total, items = await store.get_recent_payment_sessions()
    assert total == 1
    assert [i["psid"] for i in items] == ["new"]

    # the expired rows are gone for good
    total, items = await store.get_recent_payment_sessions()
    assert total == 1
    assert await store.get_payment_session("old") is None


@pytest.mark.asyncio
async def test_released_gate_lets_the_same_event_through(store):
    first = await store.fulfill_and_mark_event("ps1", "evt_1")
    assert first == {"already_fulfilled": False, "event_seen": False}

    await store.release_fulfill_gate("ps1", "evt_1")

    retry = await store.fulfill_and_mark_event("ps1", "evt_1")
    assert retry == {"already_fulfilled": False, "event_seen": False}
