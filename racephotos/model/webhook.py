"""Webhook reconciliation.

Provider events arrive asynchronously, possibly more than once and possibly
before the checkout request that created the session has returned. The
persisted payment status is the idempotency guard: fulfillment is a single
transaction that starts with ``UPDATE ... WHERE status = 'pending'`` and does
nothing when that matches no row. Only a bad signature is ever rejected;
everything else is acknowledged so the provider does not redeliver forever.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import pricing
from ..helpers import normalize_bib, now_ts
from ..errors import ValidationError
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..payments import (
    CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, INTENT_FAILED, INTENT_SUCCEEDED,
    PaymentAdapter,
)
from . import access
from .orm import (
    PAYMENT_CANCELLED, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING,
    OrderItem, Payment, Photo,
)
from .webhookevents import WebhookEventStore

logger = logging.getLogger(__name__)

ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"


class MetadataError(ValueError):
    pass


def parse_metadata(obj: dict) -> Tuple[str, List[str], Optional[int]]:
    meta = obj.get("metadata") or {}
    raw_ids = meta.get("selected_photo_ids")
    if not meta.get("bib_number") or not raw_ids:
        raise MetadataError("missing bib_number or selected_photo_ids")
    try:
        bib = normalize_bib(meta["bib_number"])
        ids = json.loads(raw_ids) if isinstance(raw_ids, str) else raw_ids
    except (ValidationError, json.JSONDecodeError) as exc:
        raise MetadataError(f"unreadable metadata: {exc}")
    if (not isinstance(ids, list) or not ids
            or not all(isinstance(i, str) and i for i in ids)):
        raise MetadataError("selected_photo_ids is not a list of ids")
    per_photo = meta.get("price_per_photo")
    try:
        per_photo = int(per_photo) if per_photo is not None else None
    except (TypeError, ValueError):
        raise MetadataError("price_per_photo is not an integer")
    return bib, list(dict.fromkeys(ids)), per_photo


def _intent_id(obj: dict) -> Optional[str]:
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent or None


class WebhookReconciler:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, adapter: PaymentAdapter,
        events: WebhookEventStore, lookup_attempts: int = 5,
        lookup_delay: float = 0.5,
    ) -> None:
        self.db = db
        self.gated = gated
        self.adapter = adapter
        self.events = events
        self.lookup_attempts = max(1, lookup_attempts)
        self.lookup_delay = lookup_delay

    async def handle(self, payload: bytes, signature: Optional[str]) -> dict:
        # SignatureError propagates: the only hard rejection
        event = self.adapter.verify_webhook(payload, signature)
        evt_id = kind = None
        try:
            kind = self.adapter.event_kind(event)
            evt_id, obj_id = self.adapter.event_ids(event)
            logger.info("webhook event %s type=%s object=%s",
                        evt_id, kind, obj_id)
            if await self.events.is_seen(evt_id):
                return {"received": True, "idempotent": True}
            async with timeit("webhook.dispatch"):
                outcome = await self._dispatch(
                    kind, self.adapter.event_object(event)
                )
            await self.events.mark_seen(evt_id, kind)
        except Exception:
            # acknowledged anyway; redelivery would fail the same way
            logger.exception("webhook event %s (%s) failed", evt_id, kind)
            return {"received": True, "processed": False}
        return {"received": True, **outcome}

    async def _dispatch(self, kind: str, obj: dict) -> dict:
        if kind in (CHECKOUT_COMPLETED, ASYNC_PAYMENT_SUCCEEDED):
            if kind == CHECKOUT_COMPLETED and obj.get("payment_status") == \
                    "unpaid":
                # delayed payment methods confirm via async_payment_succeeded
                return {"processed": False, "reason": "payment not settled"}
            return await self._on_checkout_completed(obj)
        if kind == ASYNC_PAYMENT_FAILED:
            return await self._close_session(obj.get("id"), PAYMENT_FAILED)
        if kind == CHECKOUT_EXPIRED:
            return await self._close_session(obj.get("id"), PAYMENT_CANCELLED)
        if kind == INTENT_SUCCEEDED:
            return await self._on_intent_succeeded(obj)
        if kind == INTENT_FAILED:
            return await self._on_intent_failed(obj)
        logger.info("unhandled webhook event type %s", kind)
        return {"processed": False, "reason": "unhandled event type"}

    # ----------------------------
    # checkout session completed
    # ----------------------------
    async def _on_checkout_completed(self, obj: dict) -> dict:
        session_id = obj.get("id")
        try:
            bib, photo_ids, per_photo = parse_metadata(obj)
        except MetadataError as exc:
            logger.error("checkout session %s has bad metadata: %s",
                         session_id, exc)
            return {"processed": False, "reason": "bad metadata"}
        if not session_id:
            return {"processed": False, "reason": "missing session id"}

        payment = await self._find_payment(session_id)
        if payment is None:
            logger.error(
                "no payment row for paid session %s; rebuilding from "
                "metadata", session_id,
            )
            payment = await self._recreate_payment(
                session_id, bib, photo_ids, per_photo,
                obj.get("currency") or "usd",
            )
        if payment.bib_number != bib:
            logger.error(
                "session %s metadata bib %s does not match payment bib %s",
                session_id, bib, payment.bib_number,
            )
            return {"processed": False, "reason": "bib mismatch"}
        if sorted(payment.selected_photo_ids or []) != sorted(photo_ids):
            logger.warning(
                "session %s metadata photos differ from payment %s",
                session_id, payment.id,
            )
        return await self._fulfill(payment, photo_ids, _intent_id(obj))

    async def _find_payment(self, session_id: Optional[str]) -> Optional[Payment]:
        if not session_id:
            return None
        for attempt in range(1, self.lookup_attempts + 1):
            async with self.gated():
                async with self.db.begin():
                    payment = (await self.db.execute(
                        select(Payment).where(Payment.session_id == session_id)
                    )).scalars().first()
            if payment is not None:
                return payment
            if attempt < self.lookup_attempts:
                logger.info(
                    "payment for session %s not found yet (attempt %d)",
                    session_id, attempt,
                )
                await asyncio.sleep(self.lookup_delay * attempt)
        return None

    async def _recreate_payment(
        self, session_id: Optional[str], bib: str, photo_ids: List[str],
        per_photo: Optional[int], currency: str,
    ) -> Payment:
        if per_photo is None:
            per_photo = pricing.price_per_photo(len(photo_ids))
        payment = Payment(
            id=uuid.uuid4().hex,
            bib_number=bib,
            selected_photo_ids=photo_ids,
            session_id=session_id,
            total_photos=len(photo_ids),
            price_per_photo=per_photo,
            total_amount=per_photo * len(photo_ids),
            currency=currency,
            status=PAYMENT_PENDING,
            created_at=now_ts(),
        )
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(payment)
        except IntegrityError:
            # the checkout request committed in the meantime
            found = await self._find_payment(session_id)
            if found is None:
                raise
            return found
        return payment

    async def _fulfill(
        self, payment: Payment, photo_ids: List[str],
        intent_id: Optional[str],
    ) -> dict:
        ts = now_ts()
        values = {"status": PAYMENT_COMPLETED, "completed_at": ts}
        if intent_id:
            values["payment_intent_id"] = intent_id
        async with timeit("db.fulfill"):
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(
                        update(Payment)
                        .where(
                            Payment.id == payment.id,
                            Payment.status == PAYMENT_PENDING,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 0:
                        current = (await self.db.execute(
                            select(Payment.status)
                            .where(Payment.id == payment.id)
                        )).scalar_one()
                        logger.info(
                            "payment %s already %s; nothing to do",
                            payment.id, current,
                        )
                        return {"idempotent": True, "payment_status": current}

                    owned = list((await self.db.execute(
                        select(Photo.id).where(
                            Photo.id.in_(photo_ids),
                            Photo.bib_number == payment.bib_number,
                        )
                    )).scalars())
                    if len(owned) != len(photo_ids):
                        logger.error(
                            "payment %s names %d photos unknown for bib %s",
                            payment.id, len(photo_ids) - len(owned),
                            payment.bib_number,
                        )
                    await access.ensure_rows(self.db, payment.bib_number, owned)
                    unlocked = await access.unlock(
                        self.db, payment.bib_number, owned, ts
                    )
                    self.db.add_all([
                        OrderItem(
                            id=uuid.uuid4().hex,
                            payment_id=payment.id,
                            photo_id=pid,
                            price_paid=payment.price_per_photo,
                            created_at=ts,
                        )
                        for pid in owned
                    ])
        logger.info(
            "payment %s completed: bib=%s unlocked=%d",
            payment.id, payment.bib_number, unlocked,
        )
        return {"payment_status": PAYMENT_COMPLETED, "unlocked": unlocked}

    # ----------------------------
    # payment intent fallbacks
    # ----------------------------
    async def _payment_for_intent(self, intent_id: Optional[str]):
        if not intent_id:
            return None
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Payment).where(Payment.payment_intent_id == intent_id)
                )).scalars().first()

    async def _on_intent_succeeded(self, obj: dict) -> dict:
        payment = await self._payment_for_intent(obj.get("id"))
        if payment is None:
            logger.info("no payment recorded for intent %s", obj.get("id"))
            return {"processed": False, "reason": "unknown payment intent"}
        # completion always carries the unlock with it
        return await self._fulfill(
            payment, list(payment.selected_photo_ids or []), obj.get("id")
        )

    async def _on_intent_failed(self, obj: dict) -> dict:
        intent_id = obj.get("id")
        if not intent_id:
            return {"processed": False, "reason": "unknown payment intent"}
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    update(Payment)
                    .where(
                        Payment.payment_intent_id == intent_id,
                        Payment.status == PAYMENT_PENDING,
                    )
                    .values(status=PAYMENT_FAILED)
                    .execution_options(synchronize_session=False)
                )
        logger.info("payment intent %s failed (%d rows)", intent_id,
                    res.rowcount)
        return {"payment_status": PAYMENT_FAILED, "updated": res.rowcount}

    async def _close_session(
        self, session_id: Optional[str], status: str
    ) -> dict:
        if not session_id:
            return {"processed": False, "reason": "missing session id"}
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    update(Payment)
                    .where(
                        Payment.session_id == session_id,
                        Payment.status == PAYMENT_PENDING,
                    )
                    .values(status=status)
                    .execution_options(synchronize_session=False)
                )
        logger.info("session %s -> %s (%d rows)", session_id, status,
                    res.rowcount)
        return {"payment_status": status, "updated": res.rowcount}
