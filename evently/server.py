from __future__ import annotations
import sys

import httpx
import json
import logging
import os
from typing import Optional

from .infra.sql import create_schema, make_async_engine
from .infra.timings import aggregates, install_shutdown_flush, timeit

from .model import categories, events, orders, users
from .model.paymentsession import (
        PaymentSessionStore, new_store, BACKEND as PAYSESSION_BACKEND
)
from . import identity
from .payments import (
    CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, CHECKOUT_FAILED,
    MockPay, PaymentAdapter, new_adapter,
)

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse, ORJSONResponse
from fastapi.templating import Jinja2Templates

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_303_SEE_OTHER

from .helpers import now_ts, parse_iso

import redis.asyncio as redis

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

# ----------------------------
# Config & Constants
# ----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

SERVER_URL = os.environ.get("SERVER_URL", "http://localhost:8000").rstrip("/")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    f"{SERVER_URL}/api/webhook/stripe"
)
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. DATABASE_URL=sqlite:///./evently.db")
    sys.exit(1)

MOCKPAY_KINDS = {
    "succeeded": CHECKOUT_COMPLETED,
    "failed": CHECKOUT_FAILED,
    "canceled": CHECKOUT_EXPIRED,
}


engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session

adapter: PaymentAdapter = new_adapter()

app = FastAPI(
    title="Evently",
    default_response_class=ORJSONResponse,
)

install_shutdown_flush(app)


async def paymentsessions() -> PaymentSessionStore:
    if PAYSESSION_BACKEND == 'sql':
        async with SessionAsync() as session:
            yield new_store(db=session, gated=gated)
    else:
        yield new_store(r=app.state.redis)


def current_user_id(request: Request) -> str:
    # set by the identity-provider proxy in front of us
    user_id = (request.headers.get("x-user-id") or "").strip()
    if not user_id:
        raise HTTPException(401, detail="sign in required")
    return user_id


def _params(payload) -> dict:
    if not isinstance(payload, dict):
        raise HTTPException(400, detail="expected a JSON object")
    return payload


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    R = 'SQL' if PAYSESSION_BACKEND == 'sql' else 'Redis'
    print('Evently is starting up...')
    print(f'   - Payment provider:         {adapter.name}')
    print(f'   - Payment Sessions Backend: {R}')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    await create_schema(engine)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if PAYSESSION_BACKEND != 'sql':
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# API: Events
# ----------------------------
@app.get("/api/events")
async def list_events(query: str = "", category: str = "", page: int = 1,
                      limit: int = events.DEFAULT_PAGE_SIZE,
                      db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_all_events"), gated():
        return await events.get_all_events(
            db, query=query, limit=limit, page=page, category=category
        )


@app.post("/api/events", status_code=201)
async def create_event(payload: dict,
                       user_id: str = Depends(current_user_id),
                       db: AsyncSession = Depends(get_db)):
    async with timeit("db.create_event"), gated():
        return await events.create_event(db, user_id, _params(payload))


@app.get("/api/events/{event_id}")
async def get_event(event_id: str, db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_event"), gated():
        return await events.get_event_by_id(db, event_id)


@app.put("/api/events/{event_id}")
async def update_event(event_id: str, payload: dict,
                       user_id: str = Depends(current_user_id),
                       db: AsyncSession = Depends(get_db)):
    event = dict(_params(payload), id=event_id)
    async with timeit("db.update_event"), gated():
        return await events.update_event(db, user_id, event)


async def _require_organizer(db: AsyncSession, event_id: str,
                             user_id: str) -> dict:
    event = await events.get_event_by_id(db, event_id)
    organizer = event["organizer"]
    if organizer is None or organizer["id"] != user_id:
        raise HTTPException(403, detail="only the organizer may do this")
    return event


@app.delete("/api/events/{event_id}")
async def delete_event(event_id: str,
                       user_id: str = Depends(current_user_id),
                       db: AsyncSession = Depends(get_db)):
    async with timeit("db.delete_event"), gated():
        await _require_organizer(db, event_id, user_id)
        deleted = await events.delete_event(db, event_id)
    return {"deleted": deleted}


@app.get("/api/events/{event_id}/related")
async def related_events(event_id: str, page: int = 1,
                         limit: int = events.RELATED_PAGE_SIZE,
                         db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_related_events"), gated():
        event = await events.get_event_by_id(db, event_id)
        if event["category"] is None:
            return {"data": [], "total_pages": 0}
        return await events.get_related_events_by_category(
            db, event["category"]["id"], event_id, limit=limit, page=page
        )


@app.get("/api/events/{event_id}/orders")
async def event_orders(event_id: str, search: str = "",
                       user_id: str = Depends(current_user_id),
                       db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_orders_by_event"), gated():
        await _require_organizer(db, event_id, user_id)
        items = await orders.get_orders_by_event(db, event_id, search)
    return {"items": items}


# ----------------------------
# API: Users
# ----------------------------
@app.get("/api/users/{user_id}")
async def get_user(user_id: str, db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_user"), gated():
        return await users.get_user_by_id(db, user_id)


@app.get("/api/users/{user_id}/events")
async def user_events(user_id: str, page: int = 1,
                      limit: int = events.DEFAULT_PAGE_SIZE,
                      db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_events_by_user"), gated():
        return await events.get_events_by_user(
            db, user_id, limit=limit, page=page
        )


@app.get("/api/users/{user_id}/orders")
async def user_orders(user_id: str, page: int = 1,
                      limit: int = orders.ORDERS_PAGE_SIZE,
                      me: str = Depends(current_user_id),
                      db: AsyncSession = Depends(get_db)):
    if me != user_id:
        raise HTTPException(403, detail="orders are private")
    async with timeit("db.get_orders_by_user"), gated():
        return await orders.get_orders_by_user(
            db, user_id, limit=limit, page=page
        )


# ----------------------------
# API: Categories
# ----------------------------
@app.get("/api/categories")
async def list_categories(db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_all_categories"), gated():
        return {"items": await categories.get_all_categories(db)}


@app.post("/api/categories", status_code=201)
async def create_category(payload: dict,
                          _user_id: str = Depends(current_user_id),
                          db: AsyncSession = Depends(get_db)):
    name = _params(payload).get("category_name")
    if not isinstance(name, str):
        raise HTTPException(400, detail="category_name is required")
    async with timeit("db.create_category"), gated():
        return await categories.create_category(db, name)


# ----------------------------
# API: Checkout (buyer is the signed-in user)
# ----------------------------
@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    buyer_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    event_id = _params(payload).get("event_id")
    if not event_id or not isinstance(event_id, str):
        raise HTTPException(400, detail="event_id is required")

    async with timeit("db.get_event"), gated():
        event = await events.get_event_by_id(db, event_id)
    if parse_iso(event["end_date_time"]) < now_ts():
        raise HTTPException(400, detail="Event has ended")

    async with timeit("payments.checkout"):
        session = await orders.checkout_order(adapter, rs, {
            "event_id": event["id"],
            "event_title": event["title"],
            "price": event["price"],
            "is_free": event["is_free"],
            "buyer_id": buyer_id,
        }, server_url=SERVER_URL)
    return session


# ----------------------------
# API: Order status (polled after checkout)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_order"), gated():
        return await orders.get_order_by_id(db, order_id)


@app.get("/api/pending")
async def api_pending(
    limit: int = 100,
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    limit = max(1, min(limit, 500))
    total, items = await rs.get_recent_payment_sessions(limit=limit)
    return {"items": items, "limit": limit, "total": total}


@app.get("/api/timings")
async def api_timings():
    return {"items": aggregates()}


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/api/webhook/stripe")
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)
    psid, idem = adapter.event_ids(event)

    if kind in (CHECKOUT_EXPIRED, CHECKOUT_FAILED) and psid:
        # nothing to record, just stop listing the checkout as pending
        await rs.remove_pending(psid)
        return Response(status_code=200)

    if kind != CHECKOUT_COMPLETED:
        return Response(status_code=200)

    if not psid:
        raise HTTPException(400, detail="missing checkout session id")

    async with timeit("paymentsession.fulfill"):
        flags = await rs.fulfill_and_mark_event(psid, idem)
    if flags["already_fulfilled"] or (flags["event_seen"] is True):
        return {"message": "OK", "idempotent": True}

    session = adapter.completed_session(event)
    metadata = session["metadata"]
    order = {
        "stripe_id": session["id"],
        "event_id": metadata.get("event_id") or "",
        "buyer_id": metadata.get("buyer_id") or "",
        "total_amount": orders.amount_from_cents(session["amount_total"]),
        "created_at": now_ts(),
    }
    try:
        async with timeit("db.create_order"), gated():
            new_order = await orders.create_order(db, order)
    except Exception:
        # let the provider's retry through the gate again
        await rs.release_fulfill_gate(psid, idem)
        raise

    await rs.remove_pending(psid)
    return {"message": "OK", "order": new_order}


# ----------------------------
# Identity-provider webhook (user lifecycle)
# ----------------------------
@app.post("/api/webhook/identity")
async def identity_webhook(request: Request,
                           db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    event = identity.verify_webhook(payload, dict(request.headers))
    async with timeit("db.identity_event"), gated():
        return await identity.handle_event(db, event)


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
@app.get("/mockpay/{psid}", response_class=HTMLResponse)
async def mockpay_screen(
    request: Request, psid: str,
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="MockPay is not enabled")

    ps = await rs.get_payment_session(psid)
    if not ps:
        raise HTTPException(404, "payment session not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "psid": psid,
        "event_title": ps["event_title"],
        "amount_usd": f"{int(ps['amount'])/100:.2f}",
        "webhook_url": MOCK_WEBHOOK_URL,
    })


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str, request: Request,
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="MockPay is not enabled")

    form = await request.form()
    kind = MOCKPAY_KINDS.get(form.get("t"))
    if kind is None:
        raise HTTPException(400, detail="invalid kind")

    ps = await rs.get_payment_session(psid)
    if not ps:
        raise HTTPException(404, "payment session not found")

    payload = json.dumps(adapter.build_event(kind, psid, ps)).encode()

    client_http: httpx.AsyncClient = app.state.http
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                "x-mockpay-signature": adapter.sign(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError:
        # the buyer can press the button again
        log.warning("webhook delivery to %s failed", MOCK_WEBHOOK_URL,
                    exc_info=True)

    if kind == CHECKOUT_COMPLETED:
        return RedirectResponse(url=f"{SERVER_URL}/profile",
                                status_code=HTTP_303_SEE_OTHER)
    return RedirectResponse(url=f"{SERVER_URL}/",
                            status_code=HTTP_303_SEE_OTHER)


def main(argv: Optional[list] = None):
    import argparse
    import uvicorn

    ap = argparse.ArgumentParser(description="Evently API server")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--workers", type=int, default=1)
    args = ap.parse_args(argv)
    uvicorn.run("evently.server:app", host=args.host, port=args.port,
                workers=args.workers, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
