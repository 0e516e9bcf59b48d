"""Read path behind the gallery page."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import pricing
from ..helpers import to_iso
from ..infra.sql import Gated
from .access import AccessLedger, access_to_dict
from .freshness import FreshnessManager
from .orm import Photo, SurveyResponse
from .photos import active_photos
from .selections import selection_flags

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"  # no such bib
EMPTY = "empty"  # bib exists, nothing left to buy
OK = "ok"


@dataclass
class GalleryView:
    status: str
    bib_number: str
    photos: List[dict] = field(default_factory=list)
    survey_completed: bool = False
    purchasable_count: int = 0
    selection: Optional[dict] = None

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "bib_number": self.bib_number,
            "photos": self.photos,
            "survey_completed": self.survey_completed,
            "purchasable_count": self.purchasable_count,
            "selection": self.selection,
        }


def photo_to_dict(photo: Photo) -> dict:
    return {
        "id": photo.id,
        "bib_number": photo.bib_number,
        "preview_url": photo.preview_url,
        "watermark_url": photo.watermark_url,
        "photo_order": photo.photo_order,
        "uploaded_at": to_iso(photo.uploaded_at),
        "metadata": photo.metadata_ or {},
    }


class Gallery:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, ledger: AccessLedger,
        freshness: FreshnessManager,
    ) -> None:
        self.db = db
        self.gated = gated
        self.ledger = ledger
        self.freshness = freshness

    async def fetch(self, bib: str) -> GalleryView:
        async with self.gated():
            async with self.db.begin():
                photos = await active_photos(self.db, bib)
                flags = await selection_flags(self.db, bib)
                survey = (await self.db.execute(
                    select(SurveyResponse.id)
                    .where(SurveyResponse.bib_number == bib)
                )).first()
        if not photos:
            return GalleryView(status=NOT_FOUND, bib_number=bib)

        ids = [p.id for p in photos]
        try:
            await self.ledger.ensure_rows(bib, ids)
        except SQLAlchemyError:
            # the page still renders; rows are created on the next read
            logger.warning("creating access rows for bib %s failed", bib,
                           exc_info=True)
        access = await self.ledger.rows_for(bib, ids)

        out = []
        purchasable = 0
        for photo in photos:
            await self.freshness.ensure_fresh(photo)
            row = access.get(photo.id)
            unlocked = bool(row and row.is_unlocked)
            if not unlocked:
                purchasable += 1
            d = photo_to_dict(photo)
            if unlocked:
                d["highres_url"] = photo.highres_url
            d["access"] = access_to_dict(row)
            d["is_selected"] = flags.get(photo.id, True)
            out.append(d)

        selected = [
            pid for pid, sel in flags.items()
            if sel and not (access.get(pid) and access[pid].is_unlocked)
        ]
        return GalleryView(
            status=OK if purchasable else EMPTY,
            bib_number=bib,
            photos=out,
            survey_completed=survey is not None,
            purchasable_count=purchasable,
            selection={
                "selected_photo_ids": selected,
                **pricing.quote(len(selected)),
            },
        )
