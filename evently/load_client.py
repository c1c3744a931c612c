#!/usr/bin/env python3
"""
Evently load client.

Each simulated buyer walks the flow a browser would:

  browse    GET  /api/events                  pick one of the listed events
  checkout  POST /api/checkout                -> /mockpay/{psid}
  pay       POST /mockpay/{psid}/emit         t=succeeded|failed|canceled
  observe   GET  /api/users/{buyer}/orders    until the psid shows up

Stage latencies are collected with evently.infra.timings, so the report has
the same {kind, n, mean, std} rows as the server's /api/timings.

The server must run with PAYMENT_PROVIDER=mock, and the buyers must already
exist (they are created through the identity webhook):

  evently-load --base http://localhost:8000 \\
        --user-id 0f3c... --user-id 9ab1... --total 200 --concurrency 50
"""
import argparse
import asyncio
import logging
import random
import time
from collections import Counter
from typing import List, Optional

import httpx

from .infra.timings import aggregates, reset_timings, timeit

log = logging.getLogger(__name__)

OUTCOMES = {"succeeded": "PAID", "failed": "FAILED", "canceled": "CANCELED"}
REPORT_ORDER = ("PAID", "FAILED", "CANCELED", "TIMEOUT", "ERROR")


class FlowError(Exception):
    def __init__(self, stage: str, reason):
        super().__init__(f"{stage}: {reason}")
        self.stage = stage


def pick_kind(fail_rate: float, cancel_rate: float, rnd=random.random) -> str:
    x = rnd()
    if x < fail_rate:
        return "failed"
    if x < fail_rate + cancel_rate:
        return "canceled"
    return "succeeded"


def psid_from_redirect(redirect_url: str) -> Optional[str]:
    head, _, psid = redirect_url.rstrip("/").rpartition("/")
    if psid and head.rsplit("/", 1)[-1] == "mockpay":
        return psid
    return None


class Buyer:
    """One signed-in user clicking through a purchase."""

    def __init__(self, client: httpx.AsyncClient, user_id: str,
                 query: str = "", poll_interval: float = 0.05,
                 poll_timeout: float = 10.0):
        self.client = client
        self.user_id = user_id
        self.query = query
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.headers = {"x-user-id": user_id}

    async def _json(self, stage: str, method: str, path: str, **kw) -> dict:
        try:
            resp = await self.client.request(
                method, path, headers=self.headers, **kw)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise FlowError(stage, e)

    async def browse(self) -> dict:
        params = {"page": 1}
        if self.query:
            params["query"] = self.query
        async with timeit("load.browse"):
            listed = await self._json("browse", "GET", "/api/events",
                                      params=params)
        events = listed.get("data") or []
        if not events:
            raise FlowError("browse", "no events listed")
        return random.choice(events)

    async def checkout(self, event: dict) -> str:
        async with timeit("load.checkout"):
            session = await self._json("checkout", "POST", "/api/checkout",
                                       json={"event_id": event["id"]})
        psid = psid_from_redirect(session.get("redirect_url", ""))
        if psid is None:
            raise FlowError("checkout", f"not a MockPay redirect: {session}")
        return psid

    async def pay(self, psid: str, kind: str) -> None:
        async with timeit("load.pay"):
            try:
                resp = await self.client.post(
                    f"/mockpay/{psid}/emit", data={"t": kind},
                    follow_redirects=False,
                )
            except httpx.HTTPError as e:
                raise FlowError("pay", e)
        if resp.status_code >= 400:
            raise FlowError("pay", f"HTTP {resp.status_code}")

    async def observe(self, psid: str) -> bool:
        path = f"/api/users/{self.user_id}/orders"
        deadline = time.perf_counter() + self.poll_timeout
        async with timeit("load.observe"):
            while time.perf_counter() < deadline:
                page = await self._json("observe", "GET", path,
                                        params={"limit": 100})
                if any(o.get("stripe_id") == psid
                       for o in page.get("data") or []):
                    return True
                await asyncio.sleep(self.poll_interval)
        return False

    async def purchase(self, kind: str) -> str:
        event = await self.browse()
        psid = await self.checkout(event)
        await self.pay(psid, kind)
        if kind != "succeeded":
            return OUTCOMES[kind]
        return "PAID" if await self.observe(psid) else "TIMEOUT"


async def run_load(
    base: str,
    buyers: List[str],
    total: int,
    concurrency: int,
    fail_rate: float = 0.0,
    cancel_rate: float = 0.0,
    query: str = "",
    poll_interval: float = 0.05,
    poll_timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Counter:
    outcomes: Counter = Counter()
    sem = asyncio.Semaphore(concurrency)
    limits = httpx.Limits(max_connections=concurrency,
                          max_keepalive_connections=concurrency)

    async with httpx.AsyncClient(
        base_url=base, limits=limits, timeout=30.0, transport=transport,
        headers={"User-Agent": "EventlyLoad/1.0"},
    ) as client:

        async def one():
            async with sem:
                buyer = Buyer(client, random.choice(buyers), query,
                              poll_interval, poll_timeout)
                try:
                    outcome = await buyer.purchase(
                        pick_kind(fail_rate, cancel_rate))
                except FlowError as e:
                    log.warning("purchase failed at %s", e)
                    outcome = "ERROR"
                outcomes[outcome] += 1

        await asyncio.gather(*(one() for _ in range(total)))
    return outcomes


def report(outcomes: Counter, elapsed_s: float) -> None:
    print("\n=== Load Summary ===")
    print("   ".join(f"{k}: {outcomes.get(k, 0)}" for k in REPORT_ORDER))
    for rec in aggregates():
        print(f"{rec['kind']:<14} n={rec['n']:<6} "
              f"mean {rec['mean'] * 1000:8.1f}ms  "
              f"std {rec['std'] * 1000:8.1f}ms")
    done = sum(outcomes.values())
    print(f"Wall time: {elapsed_s:.3f}s   "
          f"Throughput: {done / elapsed_s:.1f} purchases/s")


def main(argv: Optional[list] = None):
    ap = argparse.ArgumentParser(description="Evently load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--user-id", action="append", dest="buyers",
                    required=True, help="buyer user id (repeatable)")
    ap.add_argument("--total", type=int, default=100,
                    help="Total purchases to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent buyers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as canceled")
    ap.add_argument("--query", default="",
                    help="Only buy events whose title matches")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between order polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for the order")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.WARNING)
    if args.fail_rate + args.cancel_rate > 0.95:
        print("Warning: fail+cancel rate leaves almost no paid purchases.")

    reset_timings()
    t_start = time.perf_counter()
    outcomes = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        buyers=args.buyers,
        total=args.total,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        query=args.query,
        poll_interval=args.poll_interval,
        poll_timeout=args.poll_timeout,
    ))
    report(outcomes, time.perf_counter() - t_start)


if __name__ == "__main__":
    main()
