# model/webhookevents/__init__.py
import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("WEBHOOK_EVENTS_BACKEND", "pg").lower()  # 'pg' | 'redis'

if BACKEND == "redis":
    from ._redis import WebhookEventStore as _WebhookEventStore
else:
    from ._postgres import WebhookEventStore as _WebhookEventStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600,
              gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return _WebhookEventStore(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError(
            "WebhookEventStore(pg) requires db=AsyncSession"
        )
    if gated is None:
        raise RuntimeError("WebhookEventStore(pg) requires gated=Gated")
    return _WebhookEventStore(db=db, gated=gated)


WebhookEventStore = _WebhookEventStore
__all__ = ["WebhookEventStore", "new_store", "BACKEND"]
