import pytest
from fastapi import HTTPException

from evently.model import events, orders, users


def _payload(name, **extra):
    p = {
        "clerk_id": f"clerk_{name}",
        "email": f"{name}@example.com",
        "username": name,
        "first_name": name.title(),
        "last_name": "Tester",
        "photo": f"https://img.example.com/{name}.png",
    }
    p.update(extra)
    return p


@pytest.mark.asyncio
async def test_create_and_get_user(db):
    created = await users.create_user(db, _payload("ada"))

    assert created["clerk_id"] == "clerk_ada"
    assert created["email"] == "ada@example.com"
    assert await users.get_user_by_id(db, created["id"]) == created


@pytest.mark.asyncio
async def test_create_user_requires_valid_email(db):
    with pytest.raises(HTTPException) as exc:
        await users.create_user(db, _payload("ada", email="not-an-email"))
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_create_user_again_returns_the_stored_user(db):
    first = await users.create_user(db, _payload("ada"))
    again = await users.create_user(db, _payload("ada", first_name="Other"))
    assert again == first


@pytest.mark.asyncio
async def test_create_user_with_taken_email_conflicts(db):
    await users.create_user(db, _payload("ada"))
    with pytest.raises(HTTPException) as exc:
        await users.create_user(
            db, _payload("bob", email="ada@example.com"))
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_get_user_missing(db):
    with pytest.raises(HTTPException) as exc:
        await users.get_user_by_id(db, "nope")
    assert exc.value.status_code == 404
    assert exc.value.detail == "User not found"


@pytest.mark.asyncio
async def test_update_user_by_clerk_id(db):
    created = await users.create_user(db, _payload("ada"))

    updated = await users.update_user(db, "clerk_ada", {
        "first_name": "Augusta", "username": "countess",
    })

    assert updated["id"] == created["id"]
    assert updated["first_name"] == "Augusta"
    assert updated["username"] == "countess"
    # untouched fields stay
    assert updated["last_name"] == "Tester"
    assert updated["email"] == "ada@example.com"


@pytest.mark.asyncio
async def test_update_unknown_user_fails(db):
    with pytest.raises(HTTPException) as exc:
        await users.update_user(db, "clerk_ghost", {"first_name": "X"})
    assert exc.value.status_code == 404
    assert exc.value.detail == "User Update Failed"


@pytest.mark.asyncio
async def test_delete_user_detaches_events_and_orders(db, event_form):
    ada = await users.create_user(db, _payload("ada"))
    bob = await users.create_user(db, _payload("bob"))
    event = await events.create_event(db, ada["id"], event_form())
    bobs_event = await events.create_event(db, bob["id"], event_form())
    order = await orders.create_order(db, {
        "stripe_id": "cs_ada", "event_id": bobs_event["id"],
        "buyer_id": ada["id"], "total_amount": "25",
    })

    deleted = await users.delete_user(db, "clerk_ada")

    assert deleted["id"] == ada["id"]
    with pytest.raises(HTTPException):
        await users.get_user_by_id(db, ada["id"])

    # the event survives without an organizer
    orphan = await events.get_event_by_id(db, event["id"])
    assert orphan["organizer"] is None
    # the order survives without a buyer
    kept = await orders.get_order_by_id(db, order["id"])
    assert kept["buyer_id"] is None
    # other users are untouched
    still = await events.get_event_by_id(db, bobs_event["id"])
    assert still["organizer"]["id"] == bob["id"]


@pytest.mark.asyncio
async def test_delete_unknown_user(db):
    with pytest.raises(HTTPException) as exc:
        await users.delete_user(db, "clerk_ghost")
    assert exc.value.status_code == 404
