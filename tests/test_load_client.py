import json
from collections import Counter

import httpx
import pytest

from evently import load_client
from evently.infra.timings import aggregates, reset_timings


def test_pick_kind():
    assert load_client.pick_kind(0.2, 0.3, rnd=lambda: 0.1) == "failed"
    assert load_client.pick_kind(0.2, 0.3, rnd=lambda: 0.4) == "canceled"
    assert load_client.pick_kind(0.2, 0.3, rnd=lambda: 0.6) == "succeeded"


@pytest.mark.parametrize("url,psid", [
    ("/mockpay/mock_abc", "mock_abc"),
    ("http://localhost:8000/mockpay/mock_abc/", "mock_abc"),
    ("https://checkout.stripe.com/c/pay/cs_1", None),
    ("", None),
])
def test_psid_from_redirect(url, psid):
    assert load_client.psid_from_redirect(url) == psid


class FakeServer:
    """Just enough of the API for one buyer's purchase."""

    def __init__(self, deliver=True):
        self.deliver = deliver
        self.orders = []
        self.emitted = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/events":
            return httpx.Response(200, json={
                "data": [{"id": "evt1", "title": "Gig"}], "total_pages": 1,
            })
        if path == "/api/checkout":
            assert request.headers["x-user-id"] == "buyer1"
            assert json.loads(request.content) == {"event_id": "evt1"}
            return httpx.Response(200, json={
                "payment_session_id": "mock_1",
                "redirect_url": "/mockpay/mock_1",
            })
        if path == "/mockpay/mock_1/emit":
            kind = request.content.decode().split("=", 1)[1]
            self.emitted.append(kind)
            if kind == "succeeded" and self.deliver:
                self.orders.append({"stripe_id": "mock_1"})
            return httpx.Response(303, headers={"location": "/profile"})
        if path == "/api/users/buyer1/orders":
            return httpx.Response(200, json={
                "data": self.orders, "total_pages": 1,
            })
        return httpx.Response(404)


@pytest.mark.asyncio
async def test_run_load_counts_outcomes():
    reset_timings()
    server = FakeServer()
    outcomes = await load_client.run_load(
        "http://evently", ["buyer1"], total=3, concurrency=2,
        transport=httpx.MockTransport(server),
    )

    assert outcomes == Counter({"PAID": 3})
    assert server.emitted == ["succeeded"] * 3
    kinds = {rec["kind"] for rec in aggregates()}
    assert kinds == {"load.browse", "load.checkout", "load.pay",
                     "load.observe"}


@pytest.mark.asyncio
async def test_undelivered_order_times_out():
    outcomes = await load_client.run_load(
        "http://evently", ["buyer1"], total=1, concurrency=1,
        poll_interval=0.01, poll_timeout=0.05,
        transport=httpx.MockTransport(FakeServer(deliver=False)),
    )
    assert outcomes == Counter({"TIMEOUT": 1})


@pytest.mark.asyncio
async def test_failed_payment_skips_polling():
    outcomes = await load_client.run_load(
        "http://evently", ["buyer1"], total=2, concurrency=1, fail_rate=1.0,
        transport=httpx.MockTransport(FakeServer()),
    )
    assert outcomes == Counter({"FAILED": 2})


@pytest.mark.asyncio
async def test_server_errors_count_as_errors():
    def broken(request):
        return httpx.Response(500)

    outcomes = await load_client.run_load(
        "http://evently", ["buyer1"], total=2, concurrency=2,
        transport=httpx.MockTransport(broken),
    )
    assert outcomes == Counter({"ERROR": 2})
