from __future__ import annotations

import json
import logging
import os
from typing import List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import (
    HTMLResponse, ORJSONResponse, RedirectResponse, Response,
)
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_303_SEE_OTHER

from . import config, pricing
from .config import (
    DATABASE_URL, MOCK_WEBHOOK_URL, PAYMENT_PROVIDER, PUBLIC_BASE_URL,
)
from .errors import NotFoundError, StorefrontError, ValidationError
from .helpers import normalize_bib, photo_ids_from
from .infra.sql import make_async_engine
from .infra.timings import aggregates, install_shutdown_flush, timeit
from .mailer import ResendMailer
from .model.access import AccessLedger
from .model.admin import IncomingFile, PhotoAdmin
from .model.checkout import (
    CheckoutOrchestrator, payment_to_dict, session_metadata,
)
from .model.delivery import Delivery
from .model.freshness import FreshnessManager
from .model.gallery import NOT_FOUND, Gallery, photo_to_dict
from .model.orm import Base
from .model.selections import SelectionStore
from .model.survey import SurveyGate
from .model.webhook import ASYNC_PAYMENT_FAILED, WebhookReconciler
from .model.webhookevents import (
    BACKEND as EVENTS_BACKEND, WebhookEventStore, new_store,
)
from .payments import (
    CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, MockPay, PaymentAdapter, StripePay,
)
from .storage import SupabaseStorage

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

database = make_async_engine(
    DATABASE_URL,
    pool_size=config.DB_POOL_SIZE,
    max_overflow=config.DB_MAX_OVERFLOW,
    pool_timeout=config.DB_POOL_TIMEOUT,
    gate_limit=config.DB_GATE_LIMIT,
)
engine, SessionAsync, gated = database


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


app = FastAPI(
    title="Race Photos",
    default_response_class=ORJSONResponse,
)

# shutdown handler posting our timing aggregates, if configured
install_shutdown_flush(
    app,
    url=config.TIMINGS_URL,
    run_id=config.TIMINGS_RUN_ID,
    fallback_dump=config.TIMINGS_FALLBACK_DUMP,
)


def ok(data) -> dict:
    return {"success": True, "data": data}


@app.exception_handler(StorefrontError)
async def _storefront_error(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s", request.method, request.url.path,
                       exc.reason)
    return ORJSONResponse(
        {"success": False, "error": exc.reason},
        status_code=exc.status_code,
    )


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info(
        "race photos starting: payments=%s webhook-events=%s db=%s",
        PAYMENT_PROVIDER,
        "Redis" if EVENTS_BACKEND == "redis" else "SQL",
        engine.dialect.name,
    )


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if EVENTS_BACKEND != "redis":
            from .model.webhookevents._postgres import create_schema
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=config.HTTP_TIMEOUT_SECONDS,
        limits=httpx.Limits(
            max_connections=128, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if EVENTS_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
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
# Providers
# ----------------------------
def http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def payment_adapter() -> PaymentAdapter:
    if PAYMENT_PROVIDER == "stripe":
        return StripePay(
            secret_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        )
    return MockPay(config.MOCK_SECRET, PUBLIC_BASE_URL)


def object_storage(
    http: httpx.AsyncClient = Depends(http_client),
) -> SupabaseStorage:
    return SupabaseStorage(
        http,
        url=config.SUPABASE_URL,
        service_key=config.SUPABASE_SERVICE_KEY,
        bucket=config.STORAGE_BUCKET,
    )


def access_ledger(db: AsyncSession = Depends(get_db)) -> AccessLedger:
    return AccessLedger(db=db, gated=gated)


def freshness_manager(
    db: AsyncSession = Depends(get_db),
    storage: SupabaseStorage = Depends(object_storage),
    http: httpx.AsyncClient = Depends(http_client),
) -> FreshnessManager:
    return FreshnessManager(
        db=db, gated=gated, storage=storage, http=http,
        stale_after=config.URL_STALE_AFTER_SECONDS,
        refresh_ttl=config.REFRESH_URL_TTL_SECONDS,
        download_ttl=config.SIGNED_URL_TTL_SECONDS,
    )


def webhook_events(
    request: Request, db: AsyncSession = Depends(get_db),
) -> WebhookEventStore:
    if EVENTS_BACKEND == "redis":
        return new_store(r=request.app.state.redis)
    return new_store(db=db, gated=gated)


def gallery(
    db: AsyncSession = Depends(get_db),
    ledger: AccessLedger = Depends(access_ledger),
    freshness: FreshnessManager = Depends(freshness_manager),
) -> Gallery:
    return Gallery(db=db, gated=gated, ledger=ledger, freshness=freshness)


def selections(db: AsyncSession = Depends(get_db)) -> SelectionStore:
    return SelectionStore(db=db, gated=gated)


def survey_gate(
    db: AsyncSession = Depends(get_db),
    ledger: AccessLedger = Depends(access_ledger),
) -> SurveyGate:
    return SurveyGate(db=db, gated=gated, ledger=ledger)


def checkout_orchestrator(
    db: AsyncSession = Depends(get_db),
    ledger: AccessLedger = Depends(access_ledger),
    adapter: PaymentAdapter = Depends(payment_adapter),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        db=db, gated=gated, ledger=ledger, adapter=adapter,
        base_url=PUBLIC_BASE_URL, currency=config.CURRENCY,
    )


def webhook_reconciler(
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
    events: WebhookEventStore = Depends(webhook_events),
) -> WebhookReconciler:
    return WebhookReconciler(
        db=db, gated=gated, adapter=adapter, events=events,
        lookup_attempts=config.WEBHOOK_PAYMENT_LOOKUP_ATTEMPTS,
        lookup_delay=config.WEBHOOK_PAYMENT_LOOKUP_DELAY,
    )


def delivery(
    db: AsyncSession = Depends(get_db),
    ledger: AccessLedger = Depends(access_ledger),
    freshness: FreshnessManager = Depends(freshness_manager),
    http: httpx.AsyncClient = Depends(http_client),
) -> Delivery:
    return Delivery(
        db=db, gated=gated, ledger=ledger, freshness=freshness,
        mailer=ResendMailer(
            http,
            api_key=config.RESEND_API_KEY,
            from_email=config.FROM_EMAIL,
            reply_to=config.REPLY_TO_EMAIL,
            api_url=config.RESEND_API_URL,
        ),
        templates=templates.env,
        base_url=PUBLIC_BASE_URL,
        max_attachment_bytes=config.MAX_ATTACHMENT_BYTES,
        email_max_attempts=config.EMAIL_MAX_ATTEMPTS,
        email_retry_delay=config.EMAIL_RETRY_DELAY_SECONDS,
    )


def photo_admin(
    db: AsyncSession = Depends(get_db),
    storage: SupabaseStorage = Depends(object_storage),
) -> PhotoAdmin:
    return PhotoAdmin(
        db=db, gated=gated, storage=storage,
        signed_url_ttl=config.SIGNED_URL_TTL_SECONDS,
    )


# ----------------------------
# Health, pricing, timings
# ----------------------------
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/pricing")
async def get_pricing(count: int = 0):
    if count < 0 or count > config.MAX_PHOTOS_PER_CHECKOUT:
        raise ValidationError("count out of range")
    return ok({
        **pricing.quote(count),
        "display_price": pricing.format_price(pricing.price_per_photo(count)),
        "display_total": pricing.format_price(pricing.total_amount(count)),
        "tiers": pricing.tiers_as_dicts(),
    })


@app.get("/api/timings")
async def get_timings():
    return ok(aggregates())


# ----------------------------
# Gallery & selections
# ----------------------------
@app.get("/api/photos/{bib}")
async def get_photos(bib: str, g: Gallery = Depends(gallery)):
    bib = normalize_bib(bib)
    async with timeit("gallery.fetch"):
        view = await g.fetch(bib)
    if view.status == NOT_FOUND:
        raise NotFoundError("No photos found for this bib number")
    return ok(view.as_dict())


@app.post("/api/photos/{bib}/selections")
async def toggle_selection(
    bib: str, payload: dict, store: SelectionStore = Depends(selections),
):
    bib = normalize_bib(bib)
    photo_id = payload.get("photo_id")
    if not isinstance(photo_id, str) or not photo_id:
        raise ValidationError("photo_id is required")
    is_selected = payload.get("is_selected")
    if is_selected is not None and not isinstance(is_selected, bool):
        raise ValidationError("is_selected must be a boolean")
    return ok(await store.toggle(bib, photo_id, is_selected))


@app.put("/api/photos/{bib}/selections")
async def set_selections(
    bib: str, payload: dict, store: SelectionStore = Depends(selections),
):
    bib = normalize_bib(bib)
    ids = photo_ids_from(payload.get("selected_photo_ids"))
    return ok(await store.select_only(bib, ids))


@app.delete("/api/photos/{bib}/selections")
async def clear_selections(
    bib: str, store: SelectionStore = Depends(selections),
):
    return ok(await store.deselect_all(normalize_bib(bib)))


@app.post("/api/photos/refresh-url")
async def refresh_photo_url(
    payload: dict, freshness: FreshnessManager = Depends(freshness_manager),
):
    photo_id = payload.get("photo_id")
    if not isinstance(photo_id, str) or not photo_id:
        raise ValidationError("Photo ID is required")
    photo = await freshness.refresh(photo_id)
    return ok(photo_to_dict(photo))


# ----------------------------
# Survey & checkout
# ----------------------------
@app.post("/api/survey")
async def submit_survey(payload: dict, gate: SurveyGate = Depends(survey_gate)):
    bib = normalize_bib(payload.get("bib_number"))
    ids = photo_ids_from(payload.get("selected_photo_ids"))
    async with timeit("survey.submit"):
        result = await gate.submit(bib, ids, payload)
    return ok(result.as_dict())


@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    checkout: CheckoutOrchestrator = Depends(checkout_orchestrator),
):
    bib = normalize_bib(payload.get("bib_number"))
    ids = photo_ids_from(payload.get("selected_photo_ids"))
    return ok(await checkout.create(bib, ids))


@app.get("/api/payments/{session_id}")
async def get_payment(
    session_id: str,
    checkout: CheckoutOrchestrator = Depends(checkout_orchestrator),
):
    async with timeit("db.get_payment"):
        payment = await checkout.status(session_id)
    if payment is None:
        # webhook still in flight; the success page keeps polling
        raise NotFoundError("Payment not found")
    return ok(payment_to_dict(payment))


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    adapter: PaymentAdapter = Depends(payment_adapter),
    reconciler: WebhookReconciler = Depends(webhook_reconciler),
):
    payload = await request.body()
    signature = request.headers.get(adapter.signature_header)
    async with timeit("webhook.handle"):
        return await reconciler.handle(payload, signature)


# ----------------------------
# Downloads & email
# ----------------------------
@app.get("/api/download/{bib}")
async def download_photo(
    bib: str, photo_id: Optional[str] = None,
    d: Delivery = Depends(delivery),
):
    result = await d.download_photo(normalize_bib(bib), photo_id)
    if result.content is None:
        return RedirectResponse(url=result.url, status_code=307)
    return Response(
        content=result.content,
        media_type="image/jpeg",
        headers={
            "Content-Disposition":
                f'attachment; filename="{result.filename}"',
            "Cache-Control": "no-cache",
        },
    )


@app.get("/api/download/{bib}/zip")
async def download_zip(bib: str, d: Delivery = Depends(delivery)):
    result = await d.download_zip(normalize_bib(bib))
    return Response(
        content=result.content,
        media_type="application/zip",
        headers={
            "Content-Disposition":
                f'attachment; filename="{result.filename}"',
            "X-Photo-Count": str(result.photo_count),
        },
    )


@app.post("/api/email/photos")
async def email_photos(payload: dict, d: Delivery = Depends(delivery)):
    payment_id = payload.get("payment_id")
    if not isinstance(payment_id, str) or not payment_id:
        raise ValidationError("Payment ID is required")
    async with timeit("email.delivery"):
        result = await d.send_delivery_email(
            payment_id, bool(payload.get("force_resend", False))
        )
    return ok(result)


# ----------------------------
# Admin (unauthenticated; put it behind the deployment's own gate)
# ----------------------------
@app.post("/api/admin/photos/upload")
async def admin_upload(
    bib_number: str = Form(...),
    files: List[UploadFile] = File(...),
    admin: PhotoAdmin = Depends(photo_admin),
):
    bib = normalize_bib(bib_number)
    incoming = [
        IncomingFile(
            filename=f.filename or "photo.jpg",
            content=await f.read(),
            content_type=f.content_type or "",
        )
        for f in files
    ]
    return ok(await admin.upload_photos(bib, incoming))


@app.delete("/api/admin/photos/{photo_id}")
async def admin_delete_photo(
    photo_id: str, admin: PhotoAdmin = Depends(photo_admin),
):
    return ok(await admin.delete_photo(photo_id))


@app.delete("/api/admin/bibs/{bib}")
async def admin_delete_bib(
    bib: str, admin: PhotoAdmin = Depends(photo_admin),
):
    return ok(await admin.delete_bib(normalize_bib(bib)))


@app.get("/api/admin/bibs")
async def admin_bibs(admin: PhotoAdmin = Depends(photo_admin)):
    return ok(await admin.list_bibs())


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
MOCK_OUTCOMES = {"succeeded", "failed", "expired"}


async def _mock_session(
    session_id: str, adapter: PaymentAdapter, checkout: CheckoutOrchestrator,
):
    if not isinstance(adapter, MockPay):
        raise NotFoundError("MockPay is not enabled")
    payment = await checkout.status(session_id)
    if payment is None:
        raise NotFoundError("payment session not found")
    return payment


@app.get("/mockpay/{session_id}", response_class=HTMLResponse)
async def mockpay_screen(
    request: Request, session_id: str,
    adapter: PaymentAdapter = Depends(payment_adapter),
    checkout: CheckoutOrchestrator = Depends(checkout_orchestrator),
):
    payment = await _mock_session(session_id, adapter, checkout)
    return templates.TemplateResponse(request, "mockpay.html", {
        "session_id": session_id,
        "bib_number": payment.bib_number,
        "photo_count": payment.total_photos,
        "amount": pricing.format_price(payment.total_amount),
        "status": payment.status,
        "webhook_url": MOCK_WEBHOOK_URL,
    })


@app.post("/mockpay/{session_id}/emit")
async def mockpay_emit(
    request: Request, session_id: str, t: str = Form(...),
    adapter: PaymentAdapter = Depends(payment_adapter),
    checkout: CheckoutOrchestrator = Depends(checkout_orchestrator),
):
    if t not in MOCK_OUTCOMES:
        raise ValidationError("invalid kind")
    payment = await _mock_session(session_id, adapter, checkout)
    bib = payment.bib_number

    obj = {"id": session_id, "object": "checkout.session"}
    if t == "succeeded":
        kind = CHECKOUT_COMPLETED
        obj.update(
            payment_status="paid",
            payment_intent=f"pi_{session_id.removeprefix('mock_')}",
            amount_total=payment.total_amount,
            currency=payment.currency,
            metadata=session_metadata(
                bib, list(payment.selected_photo_ids or []),
                payment.price_per_photo,
            ),
        )
    elif t == "failed":
        kind = ASYNC_PAYMENT_FAILED
        obj["payment_status"] = "unpaid"
    else:
        kind = CHECKOUT_EXPIRED
        obj["status"] = "expired"

    payload = json.dumps(adapter.build_event(kind, obj)).encode()
    client_http: httpx.AsyncClient = request.app.state.http
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                adapter.signature_header: adapter.sign(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as exc:
        # the redirect still happens; the page can emit again
        logger.warning("mock webhook delivery for %s failed: %s",
                       session_id, exc)

    if t == "succeeded":
        url = f"{PUBLIC_BASE_URL}/success/{bib}?session_id={session_id}"
    else:
        url = f"{PUBLIC_BASE_URL}/photo/{bib}/unlock"
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)
