"""Photographer-side operations: upload, purge, per-bib overview."""
from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import List

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, UpstreamError, ValidationError
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from ..storage import SupabaseStorage
from .freshness import URL_FIELDS
from .gallery import photo_to_dict
from .orm import (
    PAYMENT_COMPLETED, OrderItem, Payment, Photo, PhotoAccess, PhotoSelection,
    SurveyResponse,
)
from .selections import create_default_selections

logger = logging.getLogger(__name__)


@dataclass
class IncomingFile:
    filename: str
    content: bytes
    content_type: str


def object_name(bib: str, filename: str) -> str:
    ext = os.path.splitext(filename or "")[1].lstrip(".").lower() or "jpg"
    return f"{bib}-{uuid.uuid4().hex}.{ext}"


class PhotoAdmin:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, storage: SupabaseStorage,
        signed_url_ttl: int,
    ) -> None:
        self.db = db
        self.gated = gated
        self.storage = storage
        self.signed_url_ttl = signed_url_ttl

    async def upload_photos(
        self, bib: str, files: List[IncomingFile]
    ) -> List[dict]:
        if not files:
            raise ValidationError("No files provided")
        for f in files:
            if not (f.content_type or "").startswith("image/"):
                raise ValidationError(f"{f.filename} is not an image")
            if not f.content:
                raise ValidationError(f"{f.filename} is empty")

        created: List[Photo] = []
        for f in files:
            created.append(await self._store_one(bib, f))

        try:
            async with self.gated():
                async with self.db.begin():
                    await create_default_selections(
                        self.db, bib, [p.id for p in created]
                    )
        except SQLAlchemyError:
            # photos are saved; gallery reads treat missing rows as selected
            logger.warning("default selections for bib %s failed", bib,
                           exc_info=True)

        logger.info("uploaded %d photos for bib %s", len(created), bib)
        return [photo_to_dict(p) for p in created]

    async def _store_one(self, bib: str, f: IncomingFile) -> Photo:
        path = object_name(bib, f.filename)
        await self.storage.upload(f.content, path, f.content_type)
        try:
            url = await self.storage.signed_url(path, self.signed_url_ttl)
            ts = now_ts()
            async with self.gated():
                async with self.db.begin():
                    last = (await self.db.execute(
                        select(func.coalesce(func.max(Photo.photo_order), 0))
                        .where(Photo.bib_number == bib)
                    )).scalar_one()
                    photo = Photo(
                        id=uuid.uuid4().hex,
                        bib_number=bib,
                        preview_url=url,
                        highres_url=url,
                        watermark_url=url,
                        photo_order=last + 1,
                        is_active=True,
                        metadata_={
                            "original_filename": f.filename,
                            "size": len(f.content),
                            "content_type": f.content_type,
                        },
                        uploaded_at=ts,
                        urls_signed_at=ts,
                    )
                    self.db.add(photo)
        except (UpstreamError, SQLAlchemyError):
            logger.exception("saving %s failed; removing stored object", path)
            await self.storage.delete([path])
            raise UpstreamError(f"Failed to save {f.filename}")
        return photo

    def _object_paths(self, photos: List[Photo]) -> List[str]:
        paths = (self.storage.object_path(getattr(photo, name))
                 for photo in photos for name in URL_FIELDS)
        return list(dict.fromkeys(p for p in paths if p))

    async def delete_photo(self, photo_id: str) -> dict:
        async with self.gated():
            async with self.db.begin():
                photo = await self.db.get(Photo, photo_id)
        if photo is None:
            raise NotFoundError("Photo not found")

        storage_deleted = await self.storage.delete(
            self._object_paths([photo])
        )

        async with self.gated():
            async with self.db.begin():
                for model in (OrderItem, PhotoSelection, PhotoAccess):
                    await self.db.execute(
                        delete(model).where(model.photo_id == photo_id)
                    )
                await self.db.execute(delete(Photo).where(Photo.id == photo_id))
        self.db.expunge_all()
        logger.info("photo %s of bib %s deleted (storage=%s)",
                    photo_id, photo.bib_number, storage_deleted)
        return {"photo_id": photo_id, "storage_deleted": storage_deleted}

    async def delete_bib(self, bib: str) -> dict:
        """Everything recorded for a bib goes: objects, photos, access,
        selections, survey, payments and their order items."""
        async with self.gated():
            async with self.db.begin():
                photos = list((await self.db.execute(
                    select(Photo).where(Photo.bib_number == bib)
                )).scalars())
        paths = self._object_paths(photos)
        # rows go even when storage refuses; orphaned objects are harmless
        storage_deleted = await self.storage.delete(paths)

        photo_ids = [p.id for p in photos]
        async with self.gated():
            async with self.db.begin():
                payment_ids = select(Payment.id).where(
                    Payment.bib_number == bib
                ).scalar_subquery()
                await self.db.execute(delete(OrderItem).where(
                    OrderItem.photo_id.in_(photo_ids)
                    | OrderItem.payment_id.in_(payment_ids)
                ))
                for model in (PhotoSelection, PhotoAccess, Payment,
                              SurveyResponse, Photo):
                    await self.db.execute(
                        delete(model).where(model.bib_number == bib)
                    )
        self.db.expunge_all()
        logger.info("bib %s purged: %d photos, %d objects (storage=%s)",
                    bib, len(photos), len(paths), storage_deleted)
        return {
            "bib_number": bib,
            "photos": len(photos),
            "files": len(paths),
            "storage_deleted": storage_deleted,
        }

    async def list_bibs(self) -> List[dict]:
        async with self.gated():
            async with self.db.begin():
                photos = (await self.db.execute(
                    select(
                        Photo.bib_number,
                        func.count(Photo.id),
                        func.max(Photo.uploaded_at),
                    ).group_by(Photo.bib_number)
                )).all()
                surveyed = set((await self.db.execute(
                    select(SurveyResponse.bib_number)
                )).scalars())
                paid = dict((await self.db.execute(
                    select(Payment.bib_number, func.sum(Payment.total_amount))
                    .where(Payment.status == PAYMENT_COMPLETED)
                    .group_by(Payment.bib_number)
                )).all())

        out = [
            {
                "bib_number": bib,
                "photo_count": count,
                "latest_upload": to_iso(latest),
                "survey_completed": bib in surveyed,
                "has_paid": bib in paid,
                "paid_amount": int(paid.get(bib) or 0),
            }
            for bib, count, latest in photos
        ]
        out.sort(key=lambda d: d["latest_upload"] or "", reverse=True)
        return out
