"""Photo lookups shared by the selection, survey and checkout paths."""
from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from .orm import Photo


async def active_photos(db: AsyncSession, bib: str) -> List[Photo]:
    rows = await db.execute(
        select(Photo)
        .where(Photo.bib_number == bib, Photo.is_active.is_(True))
        .order_by(Photo.photo_order, Photo.uploaded_at)
    )
    return list(rows.scalars())



async def require_owned(
    db: AsyncSession, bib: str, photo_ids: Iterable[str],
    active_only: bool = True,
) -> List[str]:
    """Every id must name a photo of this bib, or the whole call is rejected."""
    ids = list(photo_ids)
    if not ids:
        return ids
    stmt = select(Photo.id).where(
        Photo.id.in_(ids), Photo.bib_number == bib
    )
    if active_only:
        stmt = stmt.where(Photo.is_active.is_(True))
    found = set((await db.execute(stmt)).scalars())
    if len(found) != len(set(ids)):
        raise ValidationError(
            "Invalid photos selected or photos do not belong to this bib "
            "number"
        )
    return ids
