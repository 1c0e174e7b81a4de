from __future__ import annotations
from typing import Optional

import redis.asyncio as redis


# ---- keys
def k_evt(provider: str, evt_id: str) -> str:
    return f"webhook:{provider}:{evt_id}"


class WebhookEventStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def is_seen(self, provider: str, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return False
        return bool(await self.r.exists(k_evt(provider, evt_id)))

    async def mark_event_seen(self, provider: str,
                              evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(k_evt(provider, evt_id), "1", nx=True,
                              ex=self.ttl)
        return bool(ok)
