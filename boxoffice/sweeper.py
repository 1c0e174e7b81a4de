"""Background hold-expiry sweep."""

import asyncio
from typing import Optional

from .infra.sql import Database
from .logs import get_logger
from .model.holds import sweep_expired

log = get_logger("sweeper")


async def run_sweeper(database: Database, interval: float) -> None:
    """Sweep every `interval` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await sweep_expired(database)
        except asyncio.CancelledError:
            raise
        except Exception:
            # keep sweeping; the next round retries the same holds
            log.exception("hold sweep failed")


def start_sweeper(database: Database,
                  interval: float) -> Optional[asyncio.Task]:
    if interval <= 0:
        log.info("background hold sweep disabled")
        return None
    return asyncio.create_task(run_sweeper(database, interval),
                               name="hold-sweeper")


async def stop_sweeper(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
