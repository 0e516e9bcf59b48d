from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_event(evt: str) -> str: return f"whevt:{evt}"


class WebhookEventStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def is_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return False
        return bool(await self.r.exists(k_event(evt_id)))

    async def mark_seen(self, evt_id: Optional[str], event_type: str) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(k_event(evt_id), event_type, nx=True,
                              ex=self.ttl)
        return bool(ok)
