"""In-process latency aggregates.

Every ``timeit`` block folds its duration into a running mean/std for its
kind, so memory stays flat however long the server runs. ``/api/timings``
serves the aggregates; at shutdown they are logged and optionally shipped
to a collector as NDJSON.
"""
from __future__ import annotations
import gzip
import logging
import math
import os
import socket
import time
from typing import Dict, List, Optional

import httpx
import orjson
from fastapi import FastAPI

log = logging.getLogger(__name__)


class _Running:
    # Welford's online mean/variance
    __slots__ = ("n", "mean", "_m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self._m2 = 0.0

    def push(self, x: float) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean += delta / self.n
        self._m2 += delta * (x - self.mean)

    @property
    def std(self) -> float:
        # sample std, 0 for a single value
        return math.sqrt(self._m2 / (self.n - 1)) if self.n > 1 else 0.0


# single event loop, no locking
_KINDS: Dict[str, _Running] = {}


def record_timing(kind: str, seconds: float) -> None:
    running = _KINDS.get(kind)
    if running is None:
        running = _KINDS[kind] = _Running()
    running.push(float(seconds))


def reset_timings() -> None:
    _KINDS.clear()


class timeit:
    """async with timeit("db.get_event"): ..."""
    __slots__ = ("kind", "_t0")

    def __init__(self, kind: str):
        self.kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self._t0)


def aggregates() -> List[Dict[str, float]]:
    return [
        {"kind": kind, "n": r.n, "mean": r.mean, "std": r.std}
        for kind, r in sorted(_KINDS.items())
    ]


def to_ndjson() -> bytes:
    return b"".join(orjson.dumps(rec) + b"\n" for rec in aggregates())


async def flush_timings(
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    worker_id: Optional[str] = None,
    compress: bool = False,
) -> int:
    """POST the aggregates to a collector and reset them.

    The collector answers ``{"accepted": <int>}``; that count is returned.
    """
    if not _KINDS:
        return 0

    body = to_ndjson()
    headers = {
        "content-type": "application/x-ndjson",
        "x-worker-id": worker_id or f"{os.getpid()}@{socket.gethostname()}",
    }
    if compress:
        body = gzip.compress(body)
        headers["content-encoding"] = "gzip"

    if client is None:
        async with httpx.AsyncClient(timeout=10.0) as own:
            resp = await own.post(url, content=body, headers=headers)
    else:
        resp = await client.post(url, content=body, headers=headers)
    resp.raise_for_status()

    reset_timings()
    return int(resp.json().get("accepted", 0))


def dump_timings(path: str) -> None:
    with gzip.open(path, "ab") as f:
        f.write(to_ndjson())


def install_shutdown_flush(
    app: FastAPI,
    url_env: str = "TIMINGS_URL",
    dump_env: str = "TIMINGS_DUMP",
):
    """Log the aggregates at shutdown and ship them to ``$TIMINGS_URL``.

    When the POST fails and ``$TIMINGS_DUMP`` names a file, the NDJSON is
    appended there gzipped instead.
    """
    @app.on_event("shutdown")
    async def _report_timings():
        for rec in aggregates():
            log.info("timing %(kind)s n=%(n)d mean=%(mean).6f "
                     "std=%(std).6f", rec)
        url = os.getenv(url_env, "")
        if not url:
            return
        try:
            accepted = await flush_timings(
                url, client=getattr(app.state, "http", None))
            log.info("collector at %s accepted %d timings", url, accepted)
        except httpx.HTTPError:
            log.warning("could not flush timings to %s", url, exc_info=True)
            dump = os.getenv(dump_env, "")
            if dump:
                dump_timings(dump)
                reset_timings()
