"""
Seed an event and its ticket types, e.g.:

    boxoffice-seed --event-id evt_demo --title "Demo Night"
    boxoffice-seed --event-id evt_gala --ticket-type "Stalls:5000:300"

Runs against DATABASE_URL and creates the schema first. Seeding an event id
that already exists changes nothing.
"""
import argparse
import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import DATABASE_URL
from .errors import InvalidRequest
from .infra.sql import Database
from .model import catalog
from .model.db import Base

# Config
DEFAULT_EVENT_ID = "evt_demo"
DEFAULT_TITLE = "Demo Night"
DEFAULT_TICKET_TYPES = ("Class A:5000:1000", "Class B:1500:100000")


@dataclass
class TicketClass:
    name: str
    unit_price_minor: int
    capacity: int

    @classmethod
    def parse(cls, value: str) -> "TicketClass":
        """`name:price_minor:capacity`; the name itself may contain colons."""
        try:
            name, price, capacity = value.rsplit(":", 2)
            return cls(name.strip(), int(price), int(capacity))
        except ValueError:
            raise InvalidRequest(
                f"ticket type must look like NAME:PRICE:CAPACITY, got {value!r}"
            )


@dataclass
class SeedResult:
    event_id: str
    created: bool
    ticket_type_ids: List[str]


async def seed(database: Database, event_id: str, title: str,
               classes: Sequence[TicketClass],
               published: bool = True) -> SeedResult:
    await database.create_schema(Base.metadata)
    if await catalog.find_event(database, event_id) is not None:
        return SeedResult(event_id=event_id, created=False, ticket_type_ids=[])

    await catalog.create_event(database, title, published=published,
                               event_id=event_id)
    ids = []
    for i, tc in enumerate(classes):
        ids.append(await catalog.create_ticket_type(
            database, event_id, tc.name, tc.unit_price_minor, tc.capacity,
            ticket_type_id=f"{event_id}_tt{i + 1}",
        ))
    return SeedResult(event_id=event_id, created=True, ticket_type_ids=ids)


async def _run(database_url: str, event_id: str, title: str,
               classes: Sequence[TicketClass], published: bool) -> SeedResult:
    database = Database.from_url(database_url)
    try:
        return await seed(database, event_id, title, classes, published)
    finally:
        await database.dispose()


def main(argv: Optional[Sequence[str]] = None):
    ap = argparse.ArgumentParser(description="Seed a BoxOffice event")
    ap.add_argument("--database-url", default=DATABASE_URL)
    ap.add_argument("--event-id", default=DEFAULT_EVENT_ID)
    ap.add_argument("--title", default=DEFAULT_TITLE)
    ap.add_argument("--ticket-type", action="append", dest="ticket_types",
                    help="NAME:PRICE_MINOR:CAPACITY (repeatable)")
    ap.add_argument("--unpublished", action="store_true",
                    help="Create the event off sale")
    args = ap.parse_args(argv)

    classes = [TicketClass.parse(s)
               for s in args.ticket_types or DEFAULT_TICKET_TYPES]
    res = asyncio.run(_run(args.database_url, args.event_id, args.title,
                           classes, not args.unpublished))

    if not res.created:
        print(f'event {res.event_id} already exists, nothing to do')
        return
    print(f'✅ event {res.event_id} created')
    for tc, tt_id in zip(classes, res.ticket_type_ids):
        print(f'✅ {tt_id}: {tc.name} ({tc.capacity} at {tc.unit_price_minor})')


if __name__ == '__main__':
    main()
