"""Per-bib photo selection (the runner's intended purchase).

Storage is the only authority: a mutation is reported as applied only after
its transaction committed. Bulk operations write one explicit row per active
photo of the bib in a single statement, so a bib is never left half cleared.
"""
from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import pricing
from ..errors import UpstreamError
from ..helpers import now_ts
from ..infra.sql import Gated, dialect_insert
from .orm import PhotoSelection
from .photos import active_photos, require_owned

logger = logging.getLogger(__name__)


async def _upsert(db: AsyncSession, bib: str, flags: dict[str, bool]) -> None:
    if not flags:
        return
    ts = now_ts()
    stmt = dialect_insert(db, PhotoSelection).values([
        {
            "id": uuid.uuid4().hex,
            "bib_number": bib,
            "photo_id": pid,
            "is_selected": selected,
            "created_at": ts,
        }
        for pid, selected in flags.items()
    ])
    stmt = stmt.on_conflict_do_update(
        index_elements=["bib_number", "photo_id"],
        set_={"is_selected": stmt.excluded.is_selected},
    )
    await db.execute(stmt)


async def selection_flags(db: AsyncSession, bib: str) -> dict[str, bool]:
    """photo_id -> selected, for every active photo (no row means selected)."""
    photos = await active_photos(db, bib)
    rows = await db.execute(
        select(PhotoSelection.photo_id, PhotoSelection.is_selected)
        .where(PhotoSelection.bib_number == bib)
    )
    stored = {pid: sel for pid, sel in rows.all()}
    return {p.id: stored.get(p.id, True) for p in photos}


async def create_default_selections(
    db: AsyncSession, bib: str, photo_ids: Iterable[str]
) -> None:
    await _upsert(db, bib, {pid: True for pid in photo_ids})


class SelectionStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def selected_ids(self, bib: str) -> List[str]:
        async with self.gated():
            async with self.db.begin():
                flags = await selection_flags(self.db, bib)
        return [pid for pid, sel in flags.items() if sel]

    async def toggle(
        self, bib: str, photo_id: str, is_selected: Optional[bool] = None
    ) -> dict:
        """Set (or flip, when is_selected is None) one photo's selection."""
        try:
            async with self.gated():
                async with self.db.begin():
                    await require_owned(self.db, bib, [photo_id])
                    if is_selected is None:
                        flags = await selection_flags(self.db, bib)
                        is_selected = not flags.get(photo_id, True)
                    await _upsert(self.db, bib, {photo_id: is_selected})
                    flags = await selection_flags(self.db, bib)
        except SQLAlchemyError:
            logger.exception("selection toggle failed bib=%s photo=%s",
                             bib, photo_id)
            raise UpstreamError("Failed to update photo selection")
        return {
            "selection": {
                "bib_number": bib,
                "photo_id": photo_id,
                "is_selected": is_selected,
            },
            **_summary(flags),
        }

    async def select_only(self, bib: str, photo_ids: Iterable[str]) -> dict:
        """Replace the bib's selection with exactly ``photo_ids``."""
        wanted = set(photo_ids)
        try:
            async with self.gated():
                async with self.db.begin():
                    await require_owned(self.db, bib, wanted)
                    flags = await selection_flags(self.db, bib)
                    await _upsert(
                        self.db, bib,
                        {pid: pid in wanted for pid in flags},
                    )
                    flags = await selection_flags(self.db, bib)
        except SQLAlchemyError:
            logger.exception("bulk selection failed bib=%s", bib)
            raise UpstreamError("Failed to update photo selections")
        return _summary(flags)

    async def select_all(
        self, bib: str, all_photo_ids: Optional[Iterable[str]] = None
    ) -> dict:
        if all_photo_ids is None:
            async with self.gated():
                async with self.db.begin():
                    all_photo_ids = [
                        p.id for p in await active_photos(self.db, bib)
                    ]
        return await self.select_only(bib, all_photo_ids)

    async def deselect_all(self, bib: str) -> dict:
        return await self.select_only(bib, [])


def _summary(flags: dict[str, bool]) -> dict:
    selected = [pid for pid, sel in flags.items() if sel]
    q = pricing.quote(len(selected))
    return {
        "selected_photo_ids": selected,
        "total_selected": q["total_selected"],
        "price_per_photo": q["price_per_photo"],
        "total_price": q["total_price"],
    }
