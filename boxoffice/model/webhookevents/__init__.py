from typing import Optional

import redis.asyncio as redis

from ...config import WEBHOOK_DEDUPE_BACKEND, WEBHOOK_EVENT_TTL_SECONDS
from ...infra.sql import Database

BACKEND = WEBHOOK_DEDUPE_BACKEND  # 'db' | 'redis'

if BACKEND == "redis":
    from ._redis import WebhookEventStore as _WebhookEventStore
else:
    from ._postgres import WebhookEventStore as _WebhookEventStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, database: Optional[Database] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = WEBHOOK_EVENT_TTL_SECONDS):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return _WebhookEventStore(r=r, ttl_seconds=ttl_seconds)
    if database is None:
        raise RuntimeError(
            "WebhookEventStore(db) requires database=Database"
        )
    return _WebhookEventStore(database=database)


WebhookEventStore = _WebhookEventStore
__all__ = ["WebhookEventStore", "new_store", "BACKEND"]
