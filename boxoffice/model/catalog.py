# model/catalog.py
# Minimal catalog writes: the event/ticket-type CRUD lives elsewhere, this
# is what seeding scripts and tests use.
from __future__ import annotations
from typing import Optional

from sqlalchemy import text

from ..errors import EventNotFound, InvalidPrice, InvalidRequest
from ..helpers import new_id, now_ts
from ..infra.sql import Database


async def create_event(database: Database, title: str, published: bool = True,
                       event_id: Optional[str] = None) -> str:
    event_id = event_id or new_id("evt")
    async with database.transaction() as db:
        await db.execute(text("""
            INSERT INTO events(id, title, published, created_at)
            VALUES(:id, :t, :p, :now)
        """), {"id": event_id, "t": title, "p": bool(published),
               "now": now_ts()})
    return event_id


async def set_published(database: Database, event_id: str,
                        published: bool) -> None:
    async with database.transaction() as db:
        res = await db.execute(
            text("UPDATE events SET published = :p WHERE id = :id"),
            {"p": bool(published), "id": event_id},
        )
        if not res.rowcount:
            raise EventNotFound(f"event {event_id} does not exist")


async def create_ticket_type(database: Database, event_id: str, name: str,
                             unit_price_minor: int, capacity: int,
                             ticket_type_id: Optional[str] = None) -> str:
    if int(unit_price_minor) <= 0:
        raise InvalidPrice(f'invalid price for "{name}"')
    if int(capacity) < 0:
        raise InvalidRequest("capacity must not be negative")
    ticket_type_id = ticket_type_id or new_id("tt")
    async with database.transaction() as db:
        exists = (await db.execute(
            text("SELECT 1 FROM events WHERE id = :e"), {"e": event_id}
        )).first()
        if exists is None:
            raise EventNotFound(f"event {event_id} does not exist")
        await db.execute(text("""
            INSERT INTO ticket_types(id, event_id, name, unit_price_minor,
                                     capacity, sold, held)
            VALUES(:id, :e, :n, :p, :c, 0, 0)
        """), {"id": ticket_type_id, "e": event_id, "n": name,
               "p": int(unit_price_minor), "c": int(capacity)})
    return ticket_type_id


async def find_event(database: Database, event_id: str) -> Optional[dict]:
    async with database.transaction() as db:
        row = (await db.execute(
            text("SELECT id, title, published FROM events WHERE id = :e"),
            {"e": event_id},
        )).mappings().first()
    return dict(row) if row else None
