from abc import ABC, abstractmethod
from typing import Any, List, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import json
import logging
import time
import uuid

import anyio

from .errors import SignatureError, UpstreamError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = "payment_intent.payment_failed"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class LineItem(TypedDict):
    name: str
    description: str
    unit_amount: int  # cents
    quantity: int
    currency: str


class CreateSessionResult(TypedDict):
    session_id: str
    url: str


class PaymentAdapter(ABC):
    # request header carrying the webhook signature
    signature_header: str = ""

    @abstractmethod
    async def create_session(
        self, *, line_items: List[LineItem], success_url: str,
        cancel_url: str, metadata: dict
    ) -> CreateSessionResult: ...

    # raises SignatureError; returns a plain dict event
    @abstractmethod
    def verify_webhook(
        self, payload: bytes, signature: Optional[str]
    ) -> dict: ...

    def event_kind(self, event: dict) -> str:
        kind = event.get("type")
        return kind if isinstance(kind, str) else ""

    # signed events may still be malformed; anything but a dict reads as {}
    def event_object(self, event: dict) -> dict:
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        return obj if isinstance(obj, dict) else {}

    # (event_id, object_id)
    def event_ids(self, event: dict) -> Tuple[Optional[str], Optional[str]]:
        return event.get("id"), self.event_object(event).get("id")


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    signature_header = "x-mockpay-signature"

    def __init__(self, secret: str, base_url: str = "") -> None:
        self.secret = secret
        self.base_url = base_url.rstrip("/")

    async def create_session(
        self, *, line_items: List[LineItem], success_url: str,
        cancel_url: str, metadata: dict
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        return {
            "session_id": psid,
            "url": f"{self.base_url}/mockpay/{psid}",
        }

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(
        self, payload: bytes, signature: Optional[str]
    ) -> dict:
        expected = self.sign(payload)
        if not signature or not hmac.compare_digest(expected, signature):
            raise SignatureError("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise SignatureError("Invalid JSON")
        if not isinstance(event, dict):
            raise SignatureError("Invalid JSON")
        return event

    def build_event(self, kind: str, obj: dict) -> dict:
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": kind,
            "created": int(time.time()),
            "data": {"object": obj},
        }


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePay(PaymentAdapter):
    signature_header = "stripe-signature"

    def __init__(
        self, *, secret_key: str, webhook_secret: str,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk

        self.stripe = stripe_sdk
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_session(
        self, *, line_items: List[LineItem], success_url: str,
        cancel_url: str, metadata: dict
    ) -> CreateSessionResult:
        if not self.secret_key:
            raise UpstreamError("Stripe secret key not configured")
        payload = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "billing_address_collection": "required",
            "line_items": [
                {
                    "price_data": {
                        "currency": item["currency"],
                        "product_data": {
                            "name": item["name"],
                            "description": item["description"],
                        },
                        "unit_amount": item["unit_amount"],
                    },
                    "quantity": item["quantity"],
                }
                for item in line_items
            ],
            "metadata": metadata,
        }

        def _create():
            return self.stripe.checkout.Session.create(
                api_key=self.secret_key, **payload
            )

        try:
            session = await anyio.to_thread.run_sync(_create)
        except self.stripe.StripeError as exc:
            logger.warning("stripe checkout session create failed: %s", exc)
            raise UpstreamError("Failed to create payment session")
        return {"session_id": session["id"], "url": session["url"]}

    def verify_webhook(
        self, payload: bytes, signature: Optional[str]
    ) -> dict:
        if not self.webhook_secret:
            raise SignatureError("Webhook secret not configured")
        if not signature:
            raise SignatureError("Missing signature")
        try:
            self.stripe.Webhook.construct_event(
                payload=payload, sig_header=signature,
                secret=self.webhook_secret,
            )
        except (ValueError, self.stripe.SignatureVerificationError):
            raise SignatureError("Invalid signature")
        # construct_event only authenticates; work on the plain JSON body
        return json.loads(payload.decode())
