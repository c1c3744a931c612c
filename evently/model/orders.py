from __future__ import annotations
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .db import Event, Order, User
from .events import event_to_dict
from ..helpers import clamp_page, new_id, now_ts, to_iso, total_pages
from ..payments import Checkout, CreateSessionResult, PaymentAdapter

log = logging.getLogger(__name__)

ORDERS_PAGE_SIZE = 3
CURRENCY = "usd"


def order_to_dict(o: Order, with_event: bool = False) -> Dict[str, Any]:
    out = {
        "id": o.id,
        "created_at": to_iso(o.created_at),
        "stripe_id": o.stripe_id,
        "total_amount": o.total_amount,
        "event_id": o.event_id,
        "buyer_id": o.buyer_id,
    }
    if with_event:
        out["event"] = event_to_dict(o.event) if o.event is not None else None
    return out


def price_in_cents(price: str, is_free: bool) -> int:
    if is_free:
        return 0
    try:
        cents = Decimal(price or "0") * 100
    except InvalidOperation:
        raise HTTPException(400, detail="Event has an invalid price")
    return int(cents.to_integral_value())


def amount_from_cents(amount_total) -> str:
    # 1050 -> "10.5", 2000 -> "20"
    if not amount_total:
        return "0"
    value = Decimal(int(amount_total)) / 100
    return format(value.normalize(), "f")


# CHECKOUT
async def checkout_order(
        adapter: PaymentAdapter, rs, order: Dict[str, Any],
        server_url: str = "",
) -> CreateSessionResult:
    """Open a hosted checkout for one ticket and remember the session.

    ``order`` carries event_id, event_title, price, is_free and buyer_id.
    ``rs`` is the payment-session store.
    """
    checkout: Checkout = {
        "event_id": order["event_id"],
        "event_title": order["event_title"],
        "buyer_id": order["buyer_id"],
        "amount": price_in_cents(order.get("price", ""),
                                 bool(order.get("is_free"))),
        "currency": CURRENCY,
        "success_url": f"{server_url}/profile",
        "cancel_url": f"{server_url}/",
    }
    session = await adapter.create_checkout_session(checkout)
    psid = session["payment_session_id"]
    await rs.save_payment_session(psid, {
        "event_id": checkout["event_id"],
        "buyer_id": checkout["buyer_id"],
        "event_title": checkout["event_title"],
        "amount": checkout["amount"],
        "currency": checkout["currency"],
        "redirect_url": session["redirect_url"],
        "created_at": now_ts(),
    })
    log.info("checkout %s opened for event %s by %s (%d cents)",
             psid, checkout["event_id"], checkout["buyer_id"],
             checkout["amount"])
    return session


# CREATE
async def create_order(
        db: AsyncSession, order: Dict[str, Any]
) -> Dict[str, Any]:
    stripe_id = order.get("stripe_id") or ""
    if not stripe_id:
        raise HTTPException(400, detail="stripe_id is required")

    try:
        async with db.begin():
            new_order = Order(
                id=new_id(),
                stripe_id=stripe_id,
                event_id=order.get("event_id") or None,
                buyer_id=order.get("buyer_id") or None,
                total_amount=order.get("total_amount") or "0",
                created_at=order.get("created_at") or now_ts(),
            )
            db.add(new_order)
    except IntegrityError:
        # replay of a webhook we already recorded
        async with db.begin():
            existing = (await db.execute(
                select(Order).where(Order.stripe_id == stripe_id)
            )).scalars().first()
            if existing is None:
                raise
            return order_to_dict(existing)
    log.info("order %s recorded for session %s", new_order.id, stripe_id)
    return order_to_dict(new_order)


async def get_order_by_id(db: AsyncSession, order_id: str) -> Dict[str, Any]:
    async with db.begin():
        found = await db.get(Order, order_id)
        if found is None:
            raise HTTPException(404, detail="Order not found")
        return order_to_dict(found)


async def get_orders_by_event(
        db: AsyncSession, event_id: str, search_string: str = ""
) -> List[Dict[str, Any]]:
    if not event_id:
        raise HTTPException(400, detail="Event ID is required")

    buyer_name = User.first_name + " " + User.last_name
    stmt = (
        select(
            Order.id,
            Order.total_amount,
            Order.created_at,
            Event.title.label("event_title"),
            Event.id.label("event_id"),
            buyer_name.label("buyer"),
        )
        .join(User, User.id == Order.buyer_id)
        .join(Event, Event.id == Order.event_id)
        .where(Event.id == event_id)
        .order_by(Order.created_at.desc())
    )
    if search_string:
        stmt = stmt.where(buyer_name.icontains(search_string, autoescape=True))

    async with db.begin():
        rows = (await db.execute(stmt)).mappings().all()
    return [
        {
            "id": r["id"],
            "total_amount": r["total_amount"],
            "created_at": to_iso(r["created_at"]),
            "event_title": r["event_title"],
            "event_id": r["event_id"],
            "buyer": r["buyer"],
        }
        for r in rows
    ]


async def get_orders_by_user(
        db: AsyncSession,
        user_id: str,
        limit: int = ORDERS_PAGE_SIZE,
        page: int = 1,
) -> Dict[str, Any]:
    page, limit = clamp_page(page, limit, ORDERS_PAGE_SIZE)
    skip = (page - 1) * limit
    async with db.begin():
        rows = await db.execute(
            select(Order)
            .where(Order.buyer_id == user_id)
            .options(
                selectinload(Order.event).selectinload(Event.organizer),
                selectinload(Order.event).selectinload(Event.category),
            )
            .order_by(Order.created_at.desc(), Order.id)
            .offset(skip)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        count = (await db.execute(
            select(func.count()).select_from(Order)
            .where(Order.buyer_id == user_id)
        )).scalar_one()
        return {
            "data": [order_to_dict(o, with_event=True)
                     for o in rows.scalars().all()],
            "total_pages": total_pages(count, limit),
        }
