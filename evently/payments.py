from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, TypedDict
from fastapi import HTTPException
from starlette.concurrency import run_in_threadpool
import os
import uuid
import hmac
import hashlib
import base64
import json
import logging

import stripe

log = logging.getLogger(__name__)

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
CHECKOUT_FAILED = "checkout.session.async_payment_failed"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class Checkout(TypedDict):
    event_id: str
    event_title: str
    buyer_id: str
    amount: int  # cents
    currency: str
    success_url: str
    cancel_url: str


class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    name: str

    @abstractmethod
    async def create_checkout_session(
            self, checkout: Checkout
    ) -> CreateSessionResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    def event_kind(self, event: dict) -> str:
        return event.get("type", "")

    # (payment_session_id, idempotency_key)
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        obj = (event.get("data") or {}).get("object") or {}
        return obj.get("id", ""), event.get("id")

    def completed_session(self, event: dict) -> Dict[str, Any]:
        obj = (event.get("data") or {}).get("object") or {}
        return {
            "id": obj.get("id", ""),
            "amount_total": obj.get("amount_total"),
            "metadata": obj.get("metadata") or {},
        }


def _decode(payload: bytes) -> dict:
    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    return event


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """Self-hosted stand-in for a hosted checkout page.

    Events are shaped like Stripe's so the webhook does not care which
    adapter is active.
    """
    name = "mock"

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    async def create_checkout_session(
            self, checkout: Checkout
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        return {"payment_session_id": psid, "redirect_url": f"/mockpay/{psid}"}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, kind: str, psid: str, ps: dict) -> dict:
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": kind,
            "data": {
                "object": {
                    "id": psid,
                    "amount_total": int(ps["amount"]),
                    "currency": ps.get("currency") or "usd",
                    "metadata": {
                        "event_id": ps.get("event_id", ""),
                        "buyer_id": ps.get("buyer_id", ""),
                    },
                },
            },
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        return _decode(payload)


# ----------------------------
# Stripe Checkout implementation
# ----------------------------
class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, secret_key: str = STRIPE_SECRET_KEY,
                 webhook_secret: str = STRIPE_WEBHOOK_SECRET) -> None:
        stripe.api_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_checkout_session(
            self, checkout: Checkout
    ) -> CreateSessionResult:
        # the stripe client is blocking
        session = await run_in_threadpool(
            stripe.checkout.Session.create,
            line_items=[{
                "price_data": {
                    "currency": checkout["currency"],
                    "unit_amount": checkout["amount"],
                    "product_data": {"name": checkout["event_title"]},
                },
                "quantity": 1,
            }],
            metadata={
                "event_id": checkout["event_id"],
                "buyer_id": checkout["buyer_id"],
            },
            mode="payment",
            success_url=checkout["success_url"],
            cancel_url=checkout["cancel_url"],
        )
        return {"payment_session_id": session.id, "redirect_url": session.url}

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature", "")
        try:
            stripe.Webhook.construct_event(payload, sig, self.webhook_secret)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        except stripe.SignatureVerificationError:
            raise HTTPException(status_code=400, detail="Invalid signature")
        # plain dicts from here on, same as MockPay
        return _decode(payload)


def new_adapter(provider: str = PAYMENT_PROVIDER) -> PaymentAdapter:
    if provider == "stripe":
        if not STRIPE_SECRET_KEY or not STRIPE_WEBHOOK_SECRET:
            log.warning("PAYMENT_PROVIDER=stripe without STRIPE_SECRET_KEY "
                        "or STRIPE_WEBHOOK_SECRET")
        return StripePay()
    return MockPay()
