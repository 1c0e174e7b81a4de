from unittest.mock import AsyncMock

import pytest

from boxoffice.model.webhookevents import new_store
from boxoffice.model.webhookevents._postgres import (
    WebhookEventStore as SqlEventStore,
)
from boxoffice.model.webhookevents._redis import (
    WebhookEventStore as RedisEventStore, k_evt,
)


async def test_sql_store_marks_once(database):
    store = SqlEventStore(database=database)

    assert await store.is_seen("mockpay", "evt_1") is False
    assert await store.mark_event_seen("mockpay", "evt_1") is True
    assert await store.mark_event_seen("mockpay", "evt_1") is False
    assert await store.is_seen("mockpay", "evt_1") is True
    # ids are per provider
    assert await store.is_seen("flow", "evt_1") is False


async def test_events_without_id_are_never_deduped(database):
    store = SqlEventStore(database=database)

    assert await store.mark_event_seen("flow", None) is True
    assert await store.is_seen("flow", None) is False


async def test_redis_store():
    r = AsyncMock()
    r.exists.return_value = 0
    r.set.return_value = True
    store = RedisEventStore(r=r, ttl_seconds=60)

    assert await store.is_seen("mockpay", "evt_1") is False
    assert await store.mark_event_seen("mockpay", "evt_1") is True
    r.set.assert_awaited_once_with(
        "webhook:mockpay:evt_1", "1", nx=True, ex=60
    )

    r.set.return_value = None
    assert await store.mark_event_seen("mockpay", "evt_1") is False
    assert k_evt("flow", "x") == "webhook:flow:x"


def test_new_store_needs_a_backend(database):
    assert isinstance(new_store(database=database), SqlEventStore)
    with pytest.raises(RuntimeError):
        new_store()
