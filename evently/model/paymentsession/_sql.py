from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple
import time

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated
from ..db import (
    FulfillmentGate, PaymentSession, PaymentSessionPending, WebhookEventSeen,
)

COLUMNS = ("event_id", "buyer_id", "event_title", "amount", "currency",
           "redirect_url")


def _as_dict(ps: PaymentSession) -> Dict[str, Any]:
    out = {k: getattr(ps, k) for k in COLUMNS}
    out["psid"] = ps.psid
    out["created_at"] = ps.created_at
    out["expires_at"] = ps.expires_at
    return out


class PaymentSessionStore:
    """Payment sessions and webhook gates kept in the SQL database.

    Same contract as the Redis store; the gates are primary-key inserts
    that fail on replay.
    """

    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Gated
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]
    ) -> None:
        created = float(mapping.get("created_at") or time.time())
        values = {k: str(mapping.get(k) or "") for k in COLUMNS}
        values["currency"] = values["currency"] or "usd"
        async with self.gated():
            async with self.db.begin():
                await self.db.merge(PaymentSession(
                    psid=psid,
                    created_at=created,
                    expires_at=created + self.ttl + 60,
                    **values,
                ))
                await self.db.merge(
                    PaymentSessionPending(psid=psid, created_at=created)
                )

    async def get_payment_session(self, psid: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                ps = await self.db.get(PaymentSession, psid)
                if ps is None or ps.expires_at < time.time():
                    return None
                return _as_dict(ps)

    async def remove_pending(self, psid: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(delete(PaymentSessionPending).where(
                    PaymentSessionPending.psid == psid
                ))
                await self.db.execute(delete(PaymentSession).where(
                    PaymentSession.psid == psid
                ))

    async def _insert_once(self, model, key: str, **values) -> bool:
        # True if inserted now, False if the key already existed.
        # A concurrent insert of the same key fails the flush with
        # IntegrityError; the caller's transaction rolls back.
        if await self.db.get(model, key) is not None:
            return False
        self.db.add(model(**values))
        await self.db.flush()
        return True

    async def fulfill_gate(self, psid: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                return await self._insert_once(
                    FulfillmentGate, psid, psid=psid, created_at=time.time()
                )

    async def release_fulfill_gate(
            self, psid: str, evt_id: Optional[str] = None) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(delete(FulfillmentGate).where(
                    FulfillmentGate.psid == psid
                ))
                # the retry carries the same event id
                if evt_id:
                    await self.db.execute(delete(WebhookEventSeen).where(
                        WebhookEventSeen.idempotency_key == evt_id
                    ))

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                return await self._insert_once(
                    WebhookEventSeen, evt_id,
                    idempotency_key=evt_id, created_at=time.time(),
                )

    async def fulfill_and_mark_event(
            self, psid: str, idem: str | None
    ) -> Dict[str, Optional[bool]]:
        """
        Both gates in one transaction; see the Redis store for the
        semantics of the returned flags.
        """
        out: Dict[str, Optional[bool]] = {
            "already_fulfilled": False, "event_seen": None
        }
        async with self.gated():
            async with self.db.begin():
                now = time.time()
                if not await self._insert_once(
                        FulfillmentGate, psid, psid=psid, created_at=now):
                    out["already_fulfilled"] = True
                    return out
                if idem:
                    out["event_seen"] = not await self._insert_once(
                        WebhookEventSeen, idem,
                        idempotency_key=idem, created_at=now,
                    )
        return out

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.db.begin():
                now = time.time()

                # expired checkouts and pending entries without a session
                stale = (await self.db.execute(
                    select(PaymentSessionPending.psid)
                    .join(
                        PaymentSession,
                        PaymentSession.psid == PaymentSessionPending.psid,
                        isouter=True,
                    )
                    .where(or_(PaymentSession.psid.is_(None),
                               PaymentSession.expires_at < now))
                )).scalars().all()
                if stale:
                    await self.db.execute(
                        delete(PaymentSessionPending)
                        .where(PaymentSessionPending.psid.in_(stale))
                    )
                    await self.db.execute(
                        delete(PaymentSession)
                        .where(PaymentSession.psid.in_(stale))
                    )

                total = (await self.db.execute(
                    select(func.count()).select_from(PaymentSessionPending)
                )).scalar_one()

                rows = (await self.db.execute(
                    select(PaymentSession)
                    .join(
                        PaymentSessionPending,
                        PaymentSessionPending.psid == PaymentSession.psid,
                    )
                    .order_by(PaymentSessionPending.created_at.desc())
                    .limit(int(limit))
                )).scalars().all()

                items = [{
                    "psid": ps.psid,
                    "created_at": ps.created_at,
                    "age_ms": int(max(0.0, now - ps.created_at) * 1000),
                    "event_id": ps.event_id,
                    "event_title": ps.event_title,
                    "buyer_id": ps.buyer_id,
                    "amount": int(ps.amount or 0),
                    "currency": ps.currency or "usd",
                    "status": "PENDING",
                } for ps in rows]

        return int(total), items
