"""Access ledger: one row per (photo, bib), the only answer to "may this
photo be downloaded".

Rows move LOCKED_NO_SURVEY -> LOCKED_SURVEYED -> UNLOCKED and never back.
Every write is a guarded UPDATE on the persisted row so that concurrent and
replayed requests converge without in-process locks.
"""
from __future__ import annotations

import uuid
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import Gated, dialect_insert
from .orm import Photo, PhotoAccess

LOCKED_NO_SURVEY = "LOCKED_NO_SURVEY"
LOCKED_SURVEYED = "LOCKED_SURVEYED"
UNLOCKED = "UNLOCKED"


def access_state(row: Optional[PhotoAccess]) -> str:
    if row is None:
        return LOCKED_NO_SURVEY
    if row.is_unlocked:
        return UNLOCKED
    if row.survey_completed:
        return LOCKED_SURVEYED
    return LOCKED_NO_SURVEY


def access_to_dict(row: Optional[PhotoAccess]) -> Optional[dict]:
    if row is None:
        return None
    return {
        "id": row.id,
        "photo_id": row.photo_id,
        "bib_number": row.bib_number,
        "state": access_state(row),
        "survey_completed": row.survey_completed,
        "payment_completed": row.payment_completed,
        "is_unlocked": row.is_unlocked,
        "unlocked_at": to_iso(row.unlocked_at),
        "download_count": row.download_count,
        "last_downloaded_at": to_iso(row.last_downloaded_at),
    }


# ----------------------------
# in-transaction primitives
# ----------------------------
async def ensure_rows(
    db: AsyncSession, bib: str, photo_ids: Iterable[str]
) -> None:
    ids = list(dict.fromkeys(photo_ids))
    if not ids:
        return
    ts = now_ts()
    stmt = dialect_insert(db, PhotoAccess).values([
        {
            "id": uuid.uuid4().hex,
            "photo_id": pid,
            "bib_number": bib,
            "survey_completed": False,
            "payment_completed": False,
            "is_unlocked": False,
            "download_count": 0,
            "created_at": ts,
        }
        for pid in ids
    ]).on_conflict_do_nothing(index_elements=["photo_id", "bib_number"])
    await db.execute(stmt)


async def unlock(
    db: AsyncSession, bib: str, photo_ids: Iterable[str], ts: float
) -> int:
    """One batch for the whole set; a re-run keeps the first unlocked_at."""
    ids = list(photo_ids)
    if not ids:
        return 0
    result = await db.execute(
        update(PhotoAccess)
        .where(
            PhotoAccess.bib_number == bib,
            PhotoAccess.photo_id.in_(ids),
        )
        .values(
            payment_completed=True,
            is_unlocked=True,
            unlocked_at=func.coalesce(PhotoAccess.unlocked_at, ts),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


class AccessLedger:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def ensure_rows(self, bib: str, photo_ids: Iterable[str]) -> None:
        async with self.gated():
            async with self.db.begin():
                await ensure_rows(self.db, bib, photo_ids)

    async def rows_for(
        self, bib: str, photo_ids: Optional[Iterable[str]] = None
    ) -> dict[str, PhotoAccess]:
        stmt = select(PhotoAccess).where(PhotoAccess.bib_number == bib)
        if photo_ids is not None:
            stmt = stmt.where(PhotoAccess.photo_id.in_(list(photo_ids)))
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    stmt.execution_options(populate_existing=True)
                )).scalars().all()
        return {r.photo_id: r for r in rows}

    async def mark_surveyed(self, bib: str, photo_ids: Iterable[str]) -> int:
        ids = list(photo_ids)
        async with self.gated():
            async with self.db.begin():
                await ensure_rows(self.db, bib, ids)
                result = await self.db.execute(
                    update(PhotoAccess)
                    .where(
                        PhotoAccess.bib_number == bib,
                        PhotoAccess.photo_id.in_(ids),
                        PhotoAccess.survey_completed.is_(False),
                    )
                    .values(survey_completed=True)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount

    async def paid_photo_ids(
        self, bib: str, photo_ids: Iterable[str]
    ) -> List[str]:
        async with self.gated():
            async with self.db.begin():
                rows = await self.db.execute(
                    select(PhotoAccess.photo_id).where(
                        PhotoAccess.bib_number == bib,
                        PhotoAccess.photo_id.in_(list(photo_ids)),
                        PhotoAccess.payment_completed.is_(True),
                    )
                )
                return list(rows.scalars())

    async def unlocked(
        self, bib: str, photo_ids: Optional[Iterable[str]] = None
    ) -> List[Tuple[PhotoAccess, Photo]]:
        stmt = (
            select(PhotoAccess, Photo)
            .join(Photo, Photo.id == PhotoAccess.photo_id)
            .where(
                PhotoAccess.bib_number == bib,
                PhotoAccess.is_unlocked.is_(True),
            )
            .order_by(Photo.photo_order, Photo.uploaded_at)
        )
        if photo_ids is not None:
            stmt = stmt.where(PhotoAccess.photo_id.in_(list(photo_ids)))
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    stmt.execution_options(populate_existing=True)
                )).all()
        return [(a, p) for a, p in rows]

    async def record_download(self, access_id: str) -> None:
        """Called once the bytes are in hand; unlocked rows only."""
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    update(PhotoAccess)
                    .where(
                        PhotoAccess.id == access_id,
                        PhotoAccess.is_unlocked.is_(True),
                    )
                    .values(
                        download_count=PhotoAccess.download_count + 1,
                        last_downloaded_at=now_ts(),
                    )
                    .execution_options(synchronize_session=False)
                )
