"""Signed-URL freshness.

Stored photo URLs are signed and eventually expire. A photo whose URLs were
issued longer ago than ``stale_after`` seconds is re-signed before it is handed
out; a failed fetch triggers the same re-signing. Re-signing never holds a DB
transaction across the storage call.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ..errors import NotFoundError, UpstreamError
from ..helpers import now_ts
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..storage import SupabaseStorage
from .orm import Photo

logger = logging.getLogger(__name__)

URL_FIELDS = ("preview_url", "highres_url", "watermark_url")


class FreshnessManager:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, storage: SupabaseStorage,
        http: httpx.AsyncClient, stale_after: int, refresh_ttl: int,
        download_ttl: int,
    ) -> None:
        self.db = db
        self.gated = gated
        self.storage = storage
        self.http = http
        self.stale_after = stale_after
        self.refresh_ttl = refresh_ttl
        self.download_ttl = download_ttl

    def is_stale(self, photo: Photo, now: Optional[float] = None) -> bool:
        issued = photo.urls_signed_at or photo.uploaded_at or 0.0
        return ((now or now_ts()) - issued) >= self.stale_after

    async def ensure_fresh(self, photo: Photo) -> Photo:
        """Never raises: on failure the photo keeps its current URLs."""
        if not self.is_stale(photo):
            return photo
        try:
            await self._resign(photo, URL_FIELDS, self.refresh_ttl)
        except UpstreamError as exc:
            logger.warning(
                "could not refresh urls of photo %s: %s", photo.id, exc.reason
            )
        except SQLAlchemyError:
            logger.warning(
                "could not persist refreshed urls of photo %s", photo.id,
                exc_info=True,
            )
        return photo

    async def refresh(self, photo_id: str) -> Photo:
        async with self.gated():
            async with self.db.begin():
                photo = await self.db.get(Photo, photo_id)
        if photo is None:
            raise NotFoundError("Photo not found")
        await self._resign(photo, URL_FIELDS, self.refresh_ttl)
        return photo

    async def fetch_highres(self, photo: Photo) -> Tuple[Optional[bytes], str]:
        """(bytes or None, last url tried). One re-sign and retry on failure."""
        url = photo.highres_url
        data = await self.fetch(url)
        if data is not None:
            return data, url
        return await self.refetch_highres(photo)

    async def refetch_highres(
        self, photo: Photo
    ) -> Tuple[Optional[bytes], str]:
        url = photo.highres_url
        try:
            await self._resign(photo, ("highres_url",), self.download_ttl)
        except UpstreamError as exc:
            logger.warning(
                "highres refresh for photo %s failed: %s", photo.id, exc.reason
            )
            return None, url
        url = photo.highres_url
        return await self.fetch(url), url

    async def fetch(self, url: Optional[str]) -> Optional[bytes]:
        if not url:
            return None
        try:
            async with timeit("photo.fetch"):
                r = await self.http.get(url)
        except httpx.HTTPError as exc:
            logger.warning("fetching %s failed: %s", url, exc)
            return None
        if r.status_code >= 400:
            logger.warning("fetching %s returned %s", url, r.status_code)
            return None
        return r.content

    async def _resign(
        self, photo: Photo, fields: Sequence[str], ttl: int
    ) -> None:
        fresh: dict[str, str] = {}
        by_path: dict[str, str] = {}
        for name in fields:
            url = getattr(photo, name)
            if not url:
                continue
            path = self.storage.object_path(url)
            if not path:
                raise UpstreamError("Could not extract file paths from URLs")
            if path not in by_path:
                by_path[path] = await self.storage.signed_url(path, ttl)
            fresh[name] = by_path[path]
        if not fresh:
            return
        ts = now_ts()
        values = dict(fresh)
        if set(URL_FIELDS) <= set(fields):
            values["urls_signed_at"] = ts
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    update(Photo)
                    .where(Photo.id == photo.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        for name, value in values.items():
            set_committed_value(photo, name, value)
        logger.info("re-signed %s of photo %s", ",".join(fresh), photo.id)
