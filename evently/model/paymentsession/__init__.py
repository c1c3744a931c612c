"""Open checkout sessions and webhook idempotency gates.

``PAYSESSION_BACKEND`` picks where they live: ``redis`` (default) or
``sql`` (the application database). Both stores expose the same methods.
"""
import os
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated

BACKEND = os.getenv("PAYSESSION_BACKEND", "redis").lower()
TTL_SECONDS = int(os.getenv("CHECKOUT_TTL_SECONDS", str(30 * 60)))

if BACKEND == "sql":
    from ._sql import PaymentSessionStore
else:
    from ._redis import PaymentSessionStore


def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = TTL_SECONDS,
              gated: Optional[Gated] = None):
    if BACKEND == "sql":
        if db is None or gated is None:
            raise RuntimeError("the sql payment-session store needs "
                               "db=AsyncSession and gated=")
        return PaymentSessionStore(db=db, ttl_seconds=ttl_seconds,
                                   gated=gated)
    if r is None:
        raise RuntimeError("the redis payment-session store needs "
                           "r=redis.Redis")
    return PaymentSessionStore(r=r, ttl_seconds=ttl_seconds)


__all__ = ["PaymentSessionStore", "new_store", "BACKEND", "TTL_SECONDS"]
