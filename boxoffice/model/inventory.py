# model/inventory.py
"""
Inventory ledger on PostgreSQL (or SQLite for local runs).

Each ticket type row carries its own counters:
- capacity: total units for sale
- sold:     units turned into tickets
- held:     units reserved by ACTIVE holds
remaining = capacity - sold - held, and sold + held <= capacity must hold
after every committed transaction.

All counter mutations run under row locks taken in ticket-type id order.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Any, Iterable, List, Mapping, Sequence

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    EventNotFound, EventNotPublished, InsufficientStock, InvalidItems,
    InvalidPrice, LedgerInvariantViolation, TicketTypeNotFound,
)
from ..helpers import now_ts, to_iso
from ..infra.sql import Database, for_update


@dataclass(frozen=True)
class ItemRequest:
    ticket_type_id: str
    qty: int


@dataclass(frozen=True)
class HoldLine:
    """Snapshot of a ticket type at reservation time."""
    ticket_type_id: str
    ticket_type_name: str
    unit_price_minor: int
    qty: int

    @property
    def subtotal_minor(self) -> int:
        return self.unit_price_minor * self.qty


def collapse_items(items: Iterable[ItemRequest]) -> List[ItemRequest]:
    """
    Merge duplicate ticket types (quantities summed), ordered by id.
    """
    by_id: Dict[str, int] = {}
    for it in items:
        tt_id = (it.ticket_type_id or "").strip()
        qty = it.qty
        if not tt_id:
            raise InvalidItems("ticketTypeId is required")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise InvalidItems(f"qty must be a positive integer ({tt_id})")
        by_id[tt_id] = by_id.get(tt_id, 0) + qty
    if not by_id:
        raise InvalidItems("at least one item is required")
    return [ItemRequest(k, by_id[k]) for k in sorted(by_id)]


def _totals(lines: Iterable[HoldLine]) -> List[tuple[str, int]]:
    by_id: Dict[str, int] = {}
    for ln in lines:
        by_id[ln.ticket_type_id] = by_id.get(ln.ticket_type_id, 0) + ln.qty
    # stable lock order
    return [(k, by_id[k]) for k in sorted(by_id)]


# ------------------------------------------------------------------------------
# Core logic (UN-GATED: callers own the transaction)
# ------------------------------------------------------------------------------

async def ensure_event_on_sale(db: AsyncSession, event_id: str) -> Mapping:
    row = (await db.execute(
        text("SELECT id, title, published FROM events WHERE id=:e"),
        {"e": event_id},
    )).mappings().first()
    if not row:
        raise EventNotFound(f"event {event_id} does not exist")
    if not row["published"]:
        raise EventNotPublished(f"event {event_id} is not on sale")
    return row


async def lock_ticket_types(
    db: AsyncSession, event_id: str, ids: Sequence[str]
) -> Dict[str, Mapping]:
    """
    SELECT ... FOR UPDATE the requested ticket types, ordered by id so
    concurrent reservers always queue in the same order.
    """
    stmt = text(
        "SELECT id, event_id, name, unit_price_minor, capacity, sold, held "
        "FROM ticket_types "
        "WHERE event_id = :e AND id IN :ids "
        "ORDER BY id" + for_update(db)
    ).bindparams(bindparam("ids", expanding=True))
    rows = (await db.execute(
        stmt, {"e": event_id, "ids": list(ids)}
    )).mappings().all()
    return {r["id"]: r for r in rows}


async def reserve(
    db: AsyncSession, event_id: str, items: Iterable[ItemRequest]
) -> List[HoldLine]:
    """
    Validate the whole batch against remaining stock and increment `held`
    for every item, or raise without touching anything.
    Returns the price/name snapshots for the hold items.
    """
    requested = collapse_items(items)
    locked = await lock_ticket_types(
        db, event_id, [r.ticket_type_id for r in requested]
    )

    lines: List[HoldLine] = []
    for r in requested:
        row = locked.get(r.ticket_type_id)
        if row is None:
            raise TicketTypeNotFound(
                f"ticket type {r.ticket_type_id} not found for event "
                f"{event_id}"
            )
        if int(row["unit_price_minor"]) <= 0:
            raise InvalidPrice(f'invalid price for "{row["name"]}"')
        remaining = max(
            int(row["capacity"]) - int(row["sold"]) - int(row["held"]), 0
        )
        if r.qty > remaining:
            raise InsufficientStock(row["name"], remaining)
        lines.append(HoldLine(
            ticket_type_id=row["id"],
            ticket_type_name=row["name"],
            unit_price_minor=int(row["unit_price_minor"]),
            qty=r.qty,
        ))

    for ln in lines:
        await db.execute(text("""
            UPDATE ticket_types
            SET held = held + :q
            WHERE id = :id
        """), {"id": ln.ticket_type_id, "q": ln.qty})
    return lines


async def release(db: AsyncSession, lines: Iterable[HoldLine]) -> None:
    """Give held units back (hold expired, canceled or replaced)."""
    for tt_id, qty in _totals(lines):
        row = (await db.execute(text("""
            UPDATE ticket_types
            SET held = held - :q
            WHERE id = :id AND held >= :q
            RETURNING id
        """), {"id": tt_id, "q": qty})).first()
        if row is None:
            raise LedgerInvariantViolation(
                f"held < {qty} on ticket type {tt_id}"
            )


async def release_clamped(db: AsyncSession,
                          lines: Iterable[HoldLine]) -> List[str]:
    """
    Like `release`, but a `held` that already drifted below the release is
    clamped at zero instead of raising. Returns the drifted ticket type ids.
    """
    drifted: List[str] = []
    for tt_id, qty in _totals(lines):
        row = (await db.execute(text("""
            UPDATE ticket_types
            SET held = held - :q
            WHERE id = :id AND held >= :q
            RETURNING id
        """), {"id": tt_id, "q": qty})).first()
        if row is None:
            await db.execute(
                text("UPDATE ticket_types SET held = 0 WHERE id = :id"),
                {"id": tt_id},
            )
            drifted.append(tt_id)
    return drifted


async def commit(db: AsyncSession, lines: Iterable[HoldLine]) -> None:
    """Move units from held to sold (finalized purchase)."""
    for tt_id, qty in _totals(lines):
        row = (await db.execute(text("""
            UPDATE ticket_types
            SET held = held - :q, sold = sold + :q
            WHERE id = :id AND held >= :q
            RETURNING id
        """), {"id": tt_id, "q": qty})).first()
        if row is None:
            raise LedgerInvariantViolation(
                f"held < {qty} on ticket type {tt_id}"
            )


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def compute_inventory(database: Database, event_id: str) -> Dict[str, Any]:
    """
    Returns:
      {
        "<ticket_type_id>": { "name": ..., "capacity": ..., "sold": ...,
                              "held": ..., "remaining": ..., "sold_out": ...,
                              "timestamp": ... },
        ...
      }
    """
    now = now_ts()
    out: Dict[str, Any] = {}
    async with database.transaction() as db:
        await ensure_event_on_sale(db, event_id)
        rows = (await db.execute(text("""
            SELECT id, name, unit_price_minor, capacity, sold, held
            FROM ticket_types WHERE event_id = :e ORDER BY id
        """), {"e": event_id})).mappings().all()
    for r in rows:
        remaining = int(r["capacity"]) - int(r["sold"]) - int(r["held"])
        out[r["id"]] = {
            "name": r["name"],
            "unit_price_minor": int(r["unit_price_minor"]),
            "capacity": int(r["capacity"]),
            "sold": int(r["sold"]),
            "held": int(r["held"]),
            "remaining": max(remaining, 0),
            "sold_out": remaining <= 0,
            "timestamp": to_iso(now),
        }
    return out
