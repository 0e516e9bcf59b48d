"""Getting paid photos to the runner: single download, zip, email.

Image bytes are fetched from the signed high-res URL; a failed fetch re-signs
the URL once. Download counters move only after the bytes are in hand.
"""
from __future__ import annotations

import asyncio
import io
import logging
import zipfile
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import jinja2
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, UpstreamError, ValidationError
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..mailer import Attachment, EmailMessage, ResendMailer, send_with_retry
from .access import AccessLedger
from .freshness import FreshnessManager
from .orm import PAYMENT_COMPLETED, Payment, Photo, PhotoAccess
from .survey import survey_for

logger = logging.getLogger(__name__)

Fetched = Tuple[PhotoAccess, Photo, bytes]


@dataclass
class PhotoDownload:
    filename: str
    url: str
    content: Optional[bytes] = None  # None: hand the client the url instead


@dataclass
class ZipDownload:
    filename: str
    content: bytes
    photo_count: int
    skipped: int = 0


def photo_filename(bib: str, photo_id: str) -> str:
    return f"race-photo-{bib}-{photo_id[-8:]}.jpg"


def zip_filename(bib: str) -> str:
    return f"race-photos-{bib}.zip"


def build_zip(fetched: Sequence[Fetched]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for i, (_, photo, data) in enumerate(fetched, start=1):
            zf.writestr(f"photo-{i}-{photo.id[-8:]}.jpg", data)
    return buf.getvalue()


class Delivery:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, ledger: AccessLedger,
        freshness: FreshnessManager,
        mailer: Optional[ResendMailer] = None,
        templates: Optional[jinja2.Environment] = None,
        base_url: str = "",
        max_attachment_bytes: int = 25 * 1024 * 1024,
        email_max_attempts: int = 3,
        email_retry_delay: float = 2.0,
    ) -> None:
        self.db = db
        self.gated = gated
        self.ledger = ledger
        self.freshness = freshness
        self.mailer = mailer
        self.templates = templates
        self.base_url = base_url.rstrip("/")
        self.max_attachment_bytes = max_attachment_bytes
        self.email_max_attempts = email_max_attempts
        self.email_retry_delay = email_retry_delay

    # ----------------------------
    # downloads
    # ----------------------------
    async def download_photo(
        self, bib: str, photo_id: Optional[str] = None
    ) -> PhotoDownload:
        rows = await self.ledger.unlocked(
            bib, [photo_id] if photo_id else None
        )
        if not rows:
            raise NotFoundError("No unlocked photo found for this bib number")
        access, photo = rows[0]

        data, url = await self.freshness.fetch_highres(photo)
        filename = photo_filename(bib, photo.id)
        if data is None:
            # the client can still try the url itself; not a delivery
            logger.warning(
                "photo %s bytes unavailable; redirecting bib=%s",
                photo.id, bib,
            )
            return PhotoDownload(filename=filename, url=url)

        await self.ledger.record_download(access.id)
        logger.info("photo %s downloaded by bib %s", photo.id, bib)
        return PhotoDownload(filename=filename, url=url, content=data)

    async def download_zip(self, bib: str) -> ZipDownload:
        rows = await self.ledger.unlocked(bib)
        if not rows:
            raise NotFoundError("No unlocked photos found for this bib number")
        fetched = await self.fetch_all(rows)
        if not fetched:
            raise UpstreamError("Failed to download any photos")

        async with timeit("zip.build"):
            content = await asyncio.to_thread(build_zip, fetched)
        for access, _, _ in fetched:
            await self.ledger.record_download(access.id)
        logger.info(
            "zip for bib %s: %d photos, %d skipped, %d bytes",
            bib, len(fetched), len(rows) - len(fetched), len(content),
        )
        return ZipDownload(
            filename=zip_filename(bib),
            content=content,
            photo_count=len(fetched),
            skipped=len(rows) - len(fetched),
        )

    async def fetch_all(
        self, rows: Sequence[Tuple[PhotoAccess, Photo]]
    ) -> List[Fetched]:
        """Concurrent fetch; failures are logged and left out.

        Misses get one re-sign and retry each, one at a time, since re-signing
        writes through the shared session.
        """
        async with timeit("photo.fetch_all"):
            results = await asyncio.gather(
                *(self.freshness.fetch(photo.highres_url) for _, photo in rows),
                return_exceptions=True,
            )
        out: List[Fetched] = []
        for (access, photo), data in zip(rows, results):
            if isinstance(data, BaseException):
                logger.warning("fetching photo %s failed: %r", photo.id, data)
                data = None
            if data is None:
                data, _ = await self.freshness.refetch_highres(photo)
            if data is None:
                logger.warning("photo %s skipped: no bytes", photo.id)
                continue
            out.append((access, photo, data))
        return out

    # ----------------------------
    # delivery email
    # ----------------------------
    async def send_delivery_email(
        self, payment_id: str, force_resend: bool = False
    ) -> dict:
        async with self.gated():
            async with self.db.begin():
                payment = (await self.db.execute(
                    select(Payment).where(Payment.id == payment_id)
                    .execution_options(populate_existing=True)
                )).scalars().first()
                survey = (
                    await survey_for(self.db, payment.bib_number)
                    if payment is not None else None
                )
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status != PAYMENT_COMPLETED:
            raise ValidationError("Payment has not been completed")
        if payment.email_sent and not force_resend:
            return {
                "already_sent": True,
                "email_sent_at": to_iso(payment.email_sent_at),
            }
        if survey is None:
            raise ValidationError("No runner email on file for this bib")
        if self.mailer is None or self.templates is None:
            raise UpstreamError("Email delivery is not configured")

        bib = payment.bib_number
        rows = await self.ledger.unlocked(
            bib, list(payment.selected_photo_ids or [])
        )
        if not rows:
            raise NotFoundError("No unlocked photos found for this payment")
        fetched = await self.fetch_all(rows)
        if not fetched:
            raise UpstreamError("Failed to download any photos")
        archive = await asyncio.to_thread(build_zip, fetched)
        if len(archive) > self.max_attachment_bytes:
            raise ValidationError(
                "Photos are too large to attach; download them instead"
            )

        html = self.templates.get_template("delivery_email.html").render(
            runner_name=survey.runner_name,
            bib_number=bib,
            photo_count=len(fetched),
            download_url=f"{self.base_url}/api/download/{bib}/zip",
        )
        message = EmailMessage(
            to=survey.runner_email,
            subject=f"Your race photos - Bib #{bib}",
            html=html,
            attachments=[Attachment(
                filename=zip_filename(bib),
                content=archive,
                content_type="application/zip",
            )],
        )
        result = await send_with_retry(
            self.mailer, message,
            max_attempts=self.email_max_attempts,
            delay_seconds=self.email_retry_delay,
        )

        values = {"email_attempts": Payment.email_attempts + result["attempts"]}
        if result["success"]:
            values.update(email_sent=True, email_sent_at=now_ts())
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    update(Payment)
                    .where(Payment.id == payment.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

        if not result["success"]:
            logger.error(
                "delivery email for payment %s failed after %d attempts: %s",
                payment.id, result["attempts"], result["error"],
            )
            raise UpstreamError(f"Failed to send email: {result['error']}")
        logger.info(
            "delivery email for payment %s sent to %s (%d photos)",
            payment.id, survey.runner_email, len(fetched),
        )
        return {
            "message_id": result["message_id"],
            "attempts": result["attempts"],
            "photo_count": len(fetched),
            "email": survey.runner_email,
        }
