import json
import os
import tempfile
import uuid
from pathlib import Path

_TMP = Path(tempfile.mkdtemp(prefix="racephotos-tests-"))
DB_PATH = _TMP / "test.db"

# configuration is read at import time
os.environ["DATABASE_URL"] = f"sqlite:///{DB_PATH}"
os.environ["PUBLIC_BASE_URL"] = "https://photos.test"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MOCK_SECRET"] = "test-secret"
os.environ["WEBHOOK_EVENTS_BACKEND"] = "pg"
os.environ["WEBHOOK_PAYMENT_LOOKUP_ATTEMPTS"] = "2"
os.environ["WEBHOOK_PAYMENT_LOOKUP_DELAY"] = "0"
os.environ["SUPABASE_URL"] = "https://storage.test"
os.environ["SUPABASE_SERVICE_KEY"] = "service-key"
os.environ["RESEND_API_KEY"] = "re_test"
os.environ["EMAIL_RETRY_DELAY_SECONDS"] = "0"
os.environ.pop("TIMINGS_URL", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
import sqlalchemy as sa  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from racephotos import config  # noqa: E402
from racephotos.payments import CHECKOUT_COMPLETED, MockPay  # noqa: E402
from racephotos.server import app  # noqa: E402

SIGN_PREFIX = "/storage/v1/object/sign/photos/"
OBJECT_PREFIX = "/storage/v1/object/photos/"


class FakeNet:
    """Everything the service reaches over HTTP: storage, image bytes,
    the email provider, and the MockPay webhook target."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.expired_tokens: set[str] = set()
        self.fail_sign = False
        self.fail_upload = False
        self.deleted: list[str] = []
        self.sign_count = 0
        self.fetches: list[str] = []
        self.email_failures = 0
        self.emails: list[dict] = []
        self.webhooks: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        path = url.path
        if url.host == "storage.test":
            return self._storage(request, path)
        if url.host == "api.resend.com" and path == "/emails":
            if self.email_failures > 0:
                self.email_failures -= 1
                return httpx.Response(500, json={"message": "unavailable"})
            self.emails.append(json.loads(request.content))
            return httpx.Response(
                200, json={"id": f"email_{len(self.emails)}"}
            )
        if url.host == "photos.test" and path == "/payments/webhook":
            self.webhooks.append(request)
            return httpx.Response(200, json={"received": True})
        return httpx.Response(404)

    def _storage(self, request: httpx.Request, path: str) -> httpx.Response:
        if request.method == "POST" and path.startswith(SIGN_PREFIX):
            if self.fail_sign:
                return httpx.Response(500, json={"error": "sign failed"})
            key = path[len(SIGN_PREFIX):]
            self.sign_count += 1
            return httpx.Response(200, json={
                "signedURL":
                    f"/object/sign/photos/{key}?token=t{self.sign_count}",
            })
        if request.method == "GET" and path.startswith(SIGN_PREFIX):
            key = path[len(SIGN_PREFIX):]
            self.fetches.append(key)
            if request.url.params.get("token") in self.expired_tokens:
                return httpx.Response(400, json={"error": "expired"})
            if key not in self.objects:
                return httpx.Response(404)
            return httpx.Response(200, content=self.objects[key])
        if request.method == "POST" and path.startswith(OBJECT_PREFIX):
            if self.fail_upload:
                return httpx.Response(500)
            self.objects[path[len(OBJECT_PREFIX):]] = request.content
            return httpx.Response(200, json={"Key": path})
        if request.method == "DELETE" and path == "/storage/v1/object/photos":
            prefixes = json.loads(request.content)["prefixes"]
            for key in prefixes:
                self.objects.pop(key, None)
            self.deleted.extend(prefixes)
            return httpx.Response(200, json=[])
        return httpx.Response(404)


def token_of(url: str) -> str:
    return httpx.URL(url).params["token"]


def key_of(url: str) -> str:
    return httpx.URL(url).path[len(SIGN_PREFIX):]


@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def net(client):
    fake = FakeNet()
    original = app.state.http
    app.state.http = httpx.AsyncClient(
        transport=httpx.MockTransport(fake.handler)
    )
    yield fake
    app.state.http = original


@pytest.fixture(scope="session")
def db(client):
    """Synchronous view of the same SQLite file, for setup and assertions."""
    engine = sa.create_engine(f"sqlite:///{DB_PATH}")
    yield engine
    engine.dispose()


@pytest.fixture()
def bib():
    return f"R{uuid.uuid4().hex[:8].upper()}"


@pytest.fixture()
def mockpay():
    return MockPay(config.MOCK_SECRET, config.PUBLIC_BASE_URL)


class Shop:
    """Drives the storefront the way a runner and the provider would."""

    def __init__(self, client: TestClient, net: FakeNet, mockpay: MockPay):
        self.client = client
        self.net = net
        self.mockpay = mockpay

    def upload(self, bib: str, n: int = 1) -> list[dict]:
        files = [
            ("files", (f"IMG_{i}.jpg", f"jpeg-{bib}-{i}".encode(),
                       "image/jpeg"))
            for i in range(n)
        ]
        r = self.client.post(
            "/api/admin/photos/upload",
            data={"bib_number": bib}, files=files,
        )
        assert r.status_code == 200, r.text
        return r.json()["data"]

    def survey(self, bib: str, photo_ids: list[str], **overrides):
        body = {
            "bib_number": bib,
            "selected_photo_ids": photo_ids,
            "runner_name": "Alex Runner",
            "runner_email": "alex@example.com",
            "social_media_preference": "instagram",
            "waiting_stops_buying": "yes",
            "marketing_consent": True,
        }
        body.update(overrides)
        return self.client.post("/api/survey", json=body)

    def checkout(self, bib: str, photo_ids: list[str]):
        return self.client.post("/api/checkout", json={
            "bib_number": bib, "selected_photo_ids": photo_ids,
        })

    def event(self, kind: str, obj: dict) -> dict:
        return self.mockpay.build_event(kind, obj)

    def completed_event(
        self, session_id: str, bib: str, photo_ids: list[str],
        per_photo: int, intent: str | None = None,
    ) -> dict:
        return self.event(CHECKOUT_COMPLETED, {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": "paid",
            "payment_intent": intent or f"pi_{uuid.uuid4().hex[:12]}",
            "metadata": {
                "bib_number": bib,
                "selected_photo_ids": json.dumps(photo_ids),
                "photo_count": str(len(photo_ids)),
                "price_per_photo": str(per_photo),
            },
        })

    def deliver(self, event: dict, signature: str | None = None):
        payload = json.dumps(event).encode()
        return self.client.post(
            "/payments/webhook",
            content=payload,
            headers={
                "content-type": "application/json",
                "x-mockpay-signature":
                    signature or self.mockpay.sign(payload),
            },
        )

    def buy(self, bib: str, n: int = 1) -> dict:
        """Upload, survey, checkout and pay for n photos."""
        photos = self.upload(bib, n)
        ids = [p["id"] for p in photos]
        assert self.survey(bib, ids).status_code == 200
        r = self.checkout(bib, ids)
        assert r.status_code == 200, r.text
        co = r.json()["data"]
        ack = self.deliver(self.completed_event(
            co["session_id"], bib, ids, co["price_per_photo"]
        ))
        assert ack.status_code == 200
        return {"photos": photos, "ids": ids, "checkout": co}


@pytest.fixture()
def shop(client, net, mockpay):
    return Shop(client, net, mockpay)
