from __future__ import annotations
from typing import Optional

from sqlalchemy import text

from ...helpers import now_ts
from ...infra.sql import Database


class WebhookEventStore:
    """Processed provider events in the `webhook_events` table."""

    def __init__(self, *, database: Database) -> None:
        self.database = database

    async def is_seen(self, provider: str, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return False
        async with self.database.transaction() as db:
            row = (await db.execute(text("""
              SELECT 1 FROM webhook_events
              WHERE provider = :p AND event_id = :e
            """), {"p": provider, "e": evt_id})).first()
        return row is not None

    async def mark_event_seen(self, provider: str,
                              evt_id: Optional[str]) -> bool:
        """True if recorded now, False if it was already there."""
        if not evt_id:
            return True
        async with self.database.transaction() as db:
            row = (await db.execute(text("""
              INSERT INTO webhook_events(provider, event_id, created_at)
              VALUES(:p, :e, :now)
              ON CONFLICT (provider, event_id) DO NOTHING
              RETURNING event_id
            """), {"p": provider, "e": evt_id, "now": now_ts()})).first()
        return row is not None
