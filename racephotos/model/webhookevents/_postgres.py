from __future__ import annotations
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from ...helpers import now_ts
from ...infra.sql import Gated


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_WEBHOOK_EVENTS = r"""
CREATE TABLE IF NOT EXISTS webhook_events_seen (
  event_id    TEXT PRIMARY KEY,
  event_type  TEXT NOT NULL,
  created_at  DOUBLE PRECISION NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    await db_or_conn.execute(text(SQL_CREATE_WEBHOOK_EVENTS))


class WebhookEventStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def is_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return False
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT event_id FROM webhook_events_seen
                  WHERE event_id = :k
                """), {"k": evt_id})).first()
        return row is not None

    async def mark_seen(self, evt_id: Optional[str], event_type: str) -> bool:
        """True if the id was new, False if it had been recorded before."""
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO webhook_events_seen(event_id, event_type,
                                                  created_at)
                  VALUES(:k, :t, :ts)
                  ON CONFLICT (event_id) DO NOTHING
                  RETURNING event_id
                """), {"k": evt_id, "t": event_type, "ts": now_ts()})).first()
        return row is not None
