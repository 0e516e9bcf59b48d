"""Checkout: validate, price, open a hosted payment session, record it.

The pending payment row is written before the hosted URL is returned, so a
webhook racing the HTTP response can still find it by session id.
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import List, Optional, TypedDict

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import pricing
from ..errors import ConflictError, UpstreamError, ValidationError
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..payments import LineItem, PaymentAdapter
from .access import AccessLedger
from .orm import PAYMENT_PENDING, Payment
from .photos import require_owned
from .survey import survey_for

logger = logging.getLogger(__name__)


class CheckoutResult(TypedDict):
    url: str
    session_id: str
    payment_id: str
    total_amount: int
    photo_count: int
    price_per_photo: int
    currency: str


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "bib_number": p.bib_number,
        "selected_photo_ids": list(p.selected_photo_ids or []),
        "session_id": p.session_id,
        "payment_intent_id": p.payment_intent_id,
        "total_photos": p.total_photos,
        "price_per_photo": p.price_per_photo,
        "total_amount": p.total_amount,
        "currency": p.currency,
        "status": p.status,
        "created_at": to_iso(p.created_at),
        "completed_at": to_iso(p.completed_at),
        "email_sent": p.email_sent,
        "email_sent_at": to_iso(p.email_sent_at),
        "email_attempts": p.email_attempts,
    }


def session_metadata(bib: str, photo_ids: List[str], per_photo: int) -> dict:
    # the only durable link from the provider's session back to our rows
    return {
        "bib_number": bib,
        "selected_photo_ids": json.dumps(photo_ids),
        "photo_count": str(len(photo_ids)),
        "price_per_photo": str(per_photo),
    }


class CheckoutOrchestrator:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, ledger: AccessLedger,
        adapter: PaymentAdapter, base_url: str, currency: str = "usd",
    ) -> None:
        self.db = db
        self.gated = gated
        self.ledger = ledger
        self.adapter = adapter
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    async def create(self, bib: str, photo_ids: List[str]) -> CheckoutResult:
        if not photo_ids:
            raise ValidationError("Missing required fields or no photos "
                                  "selected")
        if not pricing.validate_photo_count(len(photo_ids)):
            raise ValidationError("Too many photos selected")

        async with self.gated():
            async with self.db.begin():
                await require_owned(self.db, bib, photo_ids)
                survey = await survey_for(self.db, bib)
        if survey is None:
            raise ValidationError("Survey must be completed before payment")

        if await self.ledger.paid_photo_ids(bib, photo_ids):
            raise ConflictError(
                "Some selected photos have already been paid for"
            )

        count = len(photo_ids)
        per_photo = pricing.price_per_photo(count)
        total = pricing.total_amount(count)
        line_items: List[LineItem] = [{
            "name": f"Race Photos - Bib #{bib}",
            "description": (
                f"{count} high-resolution race photo"
                f"{'s' if count > 1 else ''} "
                f"({pricing.format_price(per_photo)} each)"
            ),
            "unit_amount": per_photo,
            "quantity": count,
            "currency": self.currency,
        }]

        async with timeit("payments.create_session"):
            session = await self.adapter.create_session(
                line_items=line_items,
                success_url=(
                    f"{self.base_url}/success/{bib}"
                    "?session_id={CHECKOUT_SESSION_ID}"
                ),
                cancel_url=f"{self.base_url}/photo/{bib}/unlock",
                metadata=session_metadata(bib, photo_ids, per_photo),
            )

        payment = Payment(
            id=uuid.uuid4().hex,
            bib_number=bib,
            selected_photo_ids=list(photo_ids),
            session_id=session["session_id"],
            total_photos=count,
            price_per_photo=per_photo,
            total_amount=total,
            currency=self.currency,
            status=PAYMENT_PENDING,
            created_at=now_ts(),
        )
        try:
            async with timeit("db.add_payment"):
                async with self.gated():
                    async with self.db.begin():
                        self.db.add(payment)
        except SQLAlchemyError:
            logger.exception(
                "payment record for session %s not saved",
                session["session_id"],
            )
            raise UpstreamError("Failed to create payment session")

        logger.info(
            "checkout created bib=%s session=%s photos=%d total=%d",
            bib, session["session_id"], count, total,
        )
        return {
            "url": session["url"],
            "session_id": session["session_id"],
            "payment_id": payment.id,
            "total_amount": total,
            "photo_count": count,
            "price_per_photo": per_photo,
            "currency": self.currency,
        }

    async def status(self, session_id: str) -> Optional[Payment]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Payment).where(Payment.session_id == session_id)
                )).scalars().first()
