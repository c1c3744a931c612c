from __future__ import annotations
from typing import Optional, Dict, Any, Tuple, List
import time
import redis.asyncio as redis

PREFIX = "evently"
PENDING = f"{PREFIX}:checkouts:pending"  # zset psid -> created_at
FULFILLED_TTL = 24 * 3600
WEBHOOK_SEEN_TTL = 3600

# KEYS[1] fulfillment gate, KEYS[2] webhook event (optional)
# ARGV[1], ARGV[2] their TTLs
# -1: gate already taken
#  0: gate taken now, no event key given
#  1: gate taken now, event is new
#  2: gate taken now, event was seen before
FULFILL_LUA = """
if not redis.call('SET', KEYS[1], '1', 'NX', 'EX', ARGV[1]) then
  return -1
end
if #KEYS < 2 then
  return 0
end
if not redis.call('SET', KEYS[2], '1', 'NX', 'EX', ARGV[2]) then
  return 2
end
return 1
"""

EVENT_SEEN = {-1: None, 0: None, 1: False, 2: True}


def checkout_key(psid: str) -> str:
    return f"{PREFIX}:checkout:{psid}"


def fulfilled_key(psid: str) -> str:
    return f"{PREFIX}:fulfilled:{psid}"


def webhook_key(evt_id: str) -> str:
    return f"{PREFIX}:webhook:{evt_id}"


class PaymentSessionStore:
    """Open checkouts as hashes that expire with the checkout, plus a
    sorted set of pending session ids for the dashboard listing."""

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self._fulfill = r.register_script(FULFILL_LUA)

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]) -> None:
        # decode_responses=True wants str values
        fields = {k: str(v) for k, v in mapping.items() if v is not None}
        created = float(fields.setdefault("created_at", str(time.time())))
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.hset(checkout_key(psid), mapping=fields)
            pipe.expire(checkout_key(psid), self.ttl + 60)
            pipe.zadd(PENDING, {psid: created})
            await pipe.execute()

    async def get_payment_session(self, psid: str) -> Optional[Dict[str, str]]:
        fields = await self.r.hgetall(checkout_key(psid))
        if not fields:
            return None
        return dict(fields, psid=psid)

    async def remove_pending(self, psid: str) -> None:
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.zrem(PENDING, psid)
            pipe.delete(checkout_key(psid))
            await pipe.execute()

    async def fulfill_gate(self, psid: str) -> bool:
        taken = await self.r.set(
            fulfilled_key(psid), "1", nx=True, ex=FULFILLED_TTL)
        return bool(taken)

    async def release_fulfill_gate(
            self, psid: str, evt_id: Optional[str] = None) -> None:
        # the retry carries the same event id, so forget it too
        keys = [fulfilled_key(psid)]
        if evt_id:
            keys.append(webhook_key(evt_id))
        await self.r.delete(*keys)

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        fresh = await self.r.set(
            webhook_key(evt_id), "1", nx=True, ex=WEBHOOK_SEEN_TTL)
        return bool(fresh)

    async def fulfill_and_mark_event(
        self, psid: str, evt_id: Optional[str]
    ) -> Dict[str, Optional[bool]]:
        """Take the fulfillment gate and record the webhook event at once.

        ``already_fulfilled`` is True when the gate was taken before; the
        event is then left alone. ``event_seen`` tells whether the webhook
        event id was recorded earlier, or is None when there was none to
        check.
        """
        keys = [fulfilled_key(psid)]
        if evt_id:
            keys.append(webhook_key(evt_id))
        code = int(await self._fulfill(
            keys=keys, args=[FULFILLED_TTL, WEBHOOK_SEEN_TTL]))
        return {"already_fulfilled": code == -1,
                "event_seen": EVENT_SEEN[code]}

    async def get_recent_payment_sessions(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(PENDING)
        psids = await self.r.zrevrange(PENDING, 0, max(0, limit - 1))
        async with self.r.pipeline(transaction=False) as pipe:
            for psid in psids:
                pipe.hgetall(checkout_key(psid))
            hashes = await pipe.execute()

        now = time.time()
        items: List[Dict[str, Any]] = []
        expired: List[str] = []
        for psid, h in zip(psids, hashes):
            # checkout hash expired, index entry left behind
            if not h:
                expired.append(psid)
                continue
            created = float(h.get("created_at") or 0)
            items.append({
                "psid": psid,
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "event_id": h.get("event_id", ""),
                "event_title": h.get("event_title", ""),
                "buyer_id": h.get("buyer_id", ""),
                "amount": int(h.get("amount") or 0),
                "currency": h.get("currency", "usd"),
                "status": "PENDING",
            })
        if expired:
            await self.r.zrem(PENDING, *expired)
        return total - len(expired), items
