import asyncio

from boxoffice.model import holds
from boxoffice.model.db import HOLD_EXPIRED
from boxoffice.model.inventory import ItemRequest
from boxoffice.sweeper import start_sweeper, stop_sweeper

from conftest import backdate_hold, ticket_type_counts


async def test_disabled_sweeper(database):
    assert start_sweeper(database, 0) is None
    await stop_sweeper(None)


async def test_background_sweep_expires_holds(database, event):
    view = await holds.create_or_reuse_hold(
        database, event.id, [ItemRequest(event.ga, 4)]
    )
    await backdate_hold(database, view.id)

    task = start_sweeper(database, 0.01)
    try:
        for _ in range(200):
            if (await holds.get_hold(database, view.id)).status == HOLD_EXPIRED:
                break
            await asyncio.sleep(0.01)
    finally:
        await stop_sweeper(task)

    assert task.done()
    assert (await holds.get_hold(database, view.id)).status == HOLD_EXPIRED
    assert (await ticket_type_counts(database, event.ga))["held"] == 0
