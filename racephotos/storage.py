"""Supabase Storage over its REST API.

Objects are private; everything handed to a browser is a signed URL. The
object path is recovered from a stored URL by looking for ``/<bucket>/``.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, Optional
from urllib.parse import quote

import httpx

from .errors import UpstreamError
from .infra.timings import timeit

logger = logging.getLogger(__name__)


class SupabaseStorage:
    def __init__(
        self, http: httpx.AsyncClient, *, url: str, service_key: str,
        bucket: str = "photos",
    ) -> None:
        self.http = http
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self._path_re = re.compile(rf"/{re.escape(bucket)}/([^?]+)")

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }

    def _object_url(self, *parts: str) -> str:
        return "/".join([f"{self.url}/storage/v1/object", *parts])

    def object_path(self, url: Optional[str]) -> Optional[str]:
        if not url:
            return None
        m = self._path_re.search(url)
        return m.group(1) if m else None

    async def upload(
        self, data: bytes, path: str, content_type: str
    ) -> str:
        try:
            async with timeit("storage.upload"):
                r = await self.http.post(
                    self._object_url(self.bucket, quote(path)),
                    content=data,
                    headers={
                        **self._headers,
                        "content-type": content_type,
                        "cache-control": "3600",
                        "x-upsert": "false",
                    },
                )
                r.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("upload of %s failed: %s", path, exc)
            raise UpstreamError(f"Failed to upload {path}")
        return path

    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        try:
            async with timeit("storage.sign"):
                r = await self.http.post(
                    self._object_url("sign", self.bucket, quote(path)),
                    json={"expiresIn": int(ttl_seconds)},
                    headers=self._headers,
                )
                r.raise_for_status()
                signed = r.json().get("signedURL") or ""
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("signing %s failed: %s", path, exc)
            raise UpstreamError(f"Failed to sign {path}")
        if not signed:
            raise UpstreamError(f"Failed to sign {path}")
        if signed.startswith("http"):
            return signed
        return f"{self.url}/storage/v1{signed}"

    async def delete(self, paths: Iterable[str]) -> bool:
        """Best effort; reports success instead of raising."""
        paths = [p for p in dict.fromkeys(paths) if p]
        if not paths:
            return True
        try:
            async with timeit("storage.delete"):
                r = await self.http.request(
                    "DELETE",
                    self._object_url(self.bucket),
                    json={"prefixes": paths},
                    headers=self._headers,
                )
                r.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("deleting %d objects failed: %s", len(paths), exc)
            return False
        logger.info("deleted %d objects from %s", len(paths), self.bucket)
        return True
