# model/holds.py
"""
Hold manager: time-boxed stock reservations.

A hold is ACTIVE until it is CONSUMED (finalizer), EXPIRED (sweep, or a
finalize attempt after its deadline) or CANCELED (explicit release, or the
provider reported the payment failed/cancelled). Only this module increments
`held`; every path that leaves ACTIVE gives the stock back in the same
transaction that changes the status.

Lock order used everywhere: holds -> payments -> ticket_types.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory
from .db import (
    HOLD_ACTIVE, HOLD_CANCELED, HOLD_EXPIRED, PAY_CANCELLED, PAYMENT_OPEN,
)
from .inventory import HoldLine, ItemRequest
from ..config import (
    HOLD_TTL_SECONDS, HOLD_TTL_MIN_SECONDS, HOLD_TTL_MAX_SECONDS,
)
from ..errors import HoldEventMismatch, HoldNotFound
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import Database, for_update
from ..infra.timings import timeit
from ..logs import get_logger

log = get_logger("holds")


@dataclass
class HoldView:
    id: str
    event_id: str
    status: str
    created_at: float
    expires_at: float
    items: List[HoldLine] = field(default_factory=list)
    reused: bool = False

    @property
    def amount_minor(self) -> int:
        return sum(ln.subtotal_minor for ln in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holdId": self.id,
            "eventId": self.event_id,
            "status": self.status,
            "createdAt": to_iso(self.created_at),
            "expiresAt": to_iso(self.expires_at),
            "reused": self.reused,
            "amountMinor": self.amount_minor,
            "items": [
                {
                    "ticketTypeId": ln.ticket_type_id,
                    "ticketTypeName": ln.ticket_type_name,
                    "unitPriceMinor": ln.unit_price_minor,
                    "qty": ln.qty,
                }
                for ln in self.items
            ],
        }


def clamp_ttl(ttl_seconds: Optional[int]) -> int:
    ttl = int(ttl_seconds or HOLD_TTL_SECONDS)
    return max(HOLD_TTL_MIN_SECONDS, min(HOLD_TTL_MAX_SECONDS, ttl))


# ------------------------------------------------------------------------------
# UN-GATED helpers (caller owns the transaction)
# ------------------------------------------------------------------------------

async def lock_hold(db: AsyncSession, hold_id: str) -> Optional[Mapping]:
    return (await db.execute(
        text(
            "SELECT id, event_id, status, created_at, expires_at "
            "FROM holds WHERE id = :id" + for_update(db)
        ),
        {"id": hold_id},
    )).mappings().first()


async def load_lines(db: AsyncSession, hold_id: str) -> List[HoldLine]:
    rows = (await db.execute(text("""
        SELECT ticket_type_id, ticket_type_name, unit_price_minor, qty
        FROM hold_items
        WHERE hold_id = :h
        ORDER BY ticket_type_id
    """), {"h": hold_id})).mappings().all()
    return [
        HoldLine(
            ticket_type_id=r["ticket_type_id"],
            ticket_type_name=r["ticket_type_name"],
            unit_price_minor=int(r["unit_price_minor"]),
            qty=int(r["qty"]),
        )
        for r in rows
    ]


async def _insert_lines(
    db: AsyncSession, hold_id: str, event_id: str, lines: Iterable[HoldLine]
) -> None:
    for ln in lines:
        await db.execute(text("""
            INSERT INTO hold_items(
                hold_id, event_id, ticket_type_id, ticket_type_name,
                unit_price_minor, qty)
            VALUES(:h, :e, :tt, :n, :p, :q)
        """), {
            "h": hold_id, "e": event_id, "tt": ln.ticket_type_id,
            "n": ln.ticket_type_name, "p": ln.unit_price_minor, "q": ln.qty,
        })


async def retire_locked_hold(
    db: AsyncSession, hold_id: str, status: str
) -> List[HoldLine]:
    """
    ACTIVE -> EXPIRED | CANCELED for a hold the caller already locked, giving
    its stock back. Returns the released lines.
    """
    lines = await load_lines(db, hold_id)
    await db.execute(
        text("UPDATE holds SET status = :s WHERE id = :id AND status = :a"),
        {"s": status, "id": hold_id, "a": HOLD_ACTIVE},
    )
    await inventory.release(db, lines)
    return lines


async def expire_holds_tx(db: AsyncSession, now: Optional[float] = None) -> List[str]:
    """
    Mark ACTIVE holds past their deadline as EXPIRED and release their stock.
    Rows another transaction is working on are skipped (SKIP LOCKED), so two
    sweepers never release the same hold twice.
    """
    now = now_ts() if now is None else now
    rows = (await db.execute(
        text(
            "SELECT id FROM holds "
            "WHERE status = :a AND expires_at <= :now "
            "ORDER BY id" + for_update(db, skip_locked=True)
        ),
        {"a": HOLD_ACTIVE, "now": now},
    )).all()
    ids = [r[0] for r in rows]
    if not ids:
        return []

    sums = (await db.execute(
        text("""
            SELECT ticket_type_id, ticket_type_name,
                   SUM(qty) AS qty
            FROM hold_items
            WHERE hold_id IN :ids
            GROUP BY ticket_type_id, ticket_type_name
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": ids},
    )).mappings().all()

    await db.execute(
        text(
            "UPDATE holds SET status = :x WHERE id IN :ids AND status = :a"
        ).bindparams(bindparam("ids", expanding=True)),
        {"x": HOLD_EXPIRED, "ids": ids, "a": HOLD_ACTIVE},
    )
    drifted = await inventory.release_clamped(db, [
        HoldLine(r["ticket_type_id"], r["ticket_type_name"], 0, int(r["qty"]))
        for r in sums
    ])
    if drifted:
        log.error("held drifted below expiring holds on {}; clamped to 0",
                  ", ".join(drifted))
    log.info("expired {} hold(s): {}", len(ids), ", ".join(ids))
    return ids


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def sweep_expired(database: Database) -> List[str]:
    async with timeit("holds.sweep"):
        async with database.transaction() as db:
            return await expire_holds_tx(db)


async def _reusable(db: AsyncSession, hold: Optional[Mapping],
                    event_id: str, now: float) -> bool:
    if hold is None:
        return False
    if hold["event_id"] != event_id:
        raise HoldEventMismatch(
            f"hold {hold['id']} does not belong to event {event_id}"
        )
    if hold["status"] != HOLD_ACTIVE or float(hold["expires_at"]) <= now:
        return False
    # once checkout started the amount may already be at a provider:
    # a changed cart gets a fresh hold instead
    pay = (await db.execute(
        text("SELECT 1 FROM payments WHERE hold_id = :h"),
        {"h": hold["id"]},
    )).first()
    return pay is None


async def create_or_reuse_hold(
    database: Database,
    event_id: str,
    items: Iterable[ItemRequest],
    hold_id: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
) -> HoldView:
    """
    Reserve `items` for `ttl_seconds`. An ACTIVE, unexpired hold of the same
    event passed as `hold_id` is updated in place (its old items are given
    back and the new set is validated from scratch); otherwise a new hold is
    created.
    """
    requested = inventory.collapse_items(items)
    ttl = clamp_ttl(ttl_seconds)

    await sweep_expired(database)

    async with timeit("holds.reserve"):
        async with database.transaction() as db:
            await inventory.ensure_event_on_sale(db, event_id)
            now = now_ts()
            hold = await lock_hold(db, hold_id) if hold_id else None

            if await _reusable(db, hold, event_id, now):
                old = await load_lines(db, hold["id"])
                # one ordered locking pass over old and new types
                await inventory.lock_ticket_types(
                    db, event_id,
                    sorted({ln.ticket_type_id for ln in old}
                           | {r.ticket_type_id for r in requested}),
                )
                await inventory.release(db, old)
                lines = await inventory.reserve(db, event_id, requested)
                await db.execute(
                    text("DELETE FROM hold_items WHERE hold_id = :h"),
                    {"h": hold["id"]},
                )
                await _insert_lines(db, hold["id"], event_id, lines)
                await db.execute(
                    text("UPDATE holds SET expires_at = :e WHERE id = :id"),
                    {"e": now + ttl, "id": hold["id"]},
                )
                view = HoldView(
                    id=hold["id"], event_id=event_id, status=HOLD_ACTIVE,
                    created_at=float(hold["created_at"]),
                    expires_at=now + ttl, items=lines, reused=True,
                )
            else:
                lines = await inventory.reserve(db, event_id, requested)
                new_hold_id = new_id("hold")
                await db.execute(text("""
                    INSERT INTO holds(id, event_id, status, created_at,
                                      expires_at)
                    VALUES(:id, :e, :s, :c, :x)
                """), {
                    "id": new_hold_id, "e": event_id, "s": HOLD_ACTIVE,
                    "c": now, "x": now + ttl,
                })
                await _insert_lines(db, new_hold_id, event_id, lines)
                view = HoldView(
                    id=new_hold_id, event_id=event_id, status=HOLD_ACTIVE,
                    created_at=now, expires_at=now + ttl, items=lines,
                )

    log.info("hold {} {} for event {} ({} units, ttl {}s)",
             view.id, "updated" if view.reused else "created", event_id,
             sum(ln.qty for ln in view.items), ttl)
    return view


async def release_hold(database: Database, hold_id: str) -> HoldView:
    """
    Cancel an ACTIVE hold and give its stock back. Terminal holds are left
    untouched (idempotent).
    """
    async with database.transaction() as db:
        hold = await lock_hold(db, hold_id)
        if hold is None:
            raise HoldNotFound(f"hold {hold_id} does not exist")
        status = hold["status"]
        if status == HOLD_ACTIVE:
            await db.execute(
                text(
                    "UPDATE payments SET status = :c, updated_at = :now "
                    "WHERE hold_id = :h AND status IN :open"
                ).bindparams(bindparam("open", expanding=True)),
                {"c": PAY_CANCELLED, "now": now_ts(), "h": hold_id,
                 "open": list(PAYMENT_OPEN)},
            )
            lines = await retire_locked_hold(db, hold_id, HOLD_CANCELED)
            status = HOLD_CANCELED
            log.info("hold {} released", hold_id)
        else:
            lines = await load_lines(db, hold_id)
    return HoldView(
        id=hold["id"], event_id=hold["event_id"], status=status,
        created_at=float(hold["created_at"]),
        expires_at=float(hold["expires_at"]), items=lines,
    )


async def get_hold(database: Database, hold_id: str) -> HoldView:
    async with database.transaction() as db:
        hold = (await db.execute(text(
            "SELECT id, event_id, status, created_at, expires_at "
            "FROM holds WHERE id = :id"
        ), {"id": hold_id})).mappings().first()
        if hold is None:
            raise HoldNotFound(f"hold {hold_id} does not exist")
        lines = await load_lines(db, hold_id)
    return HoldView(
        id=hold["id"], event_id=hold["event_id"], status=hold["status"],
        created_at=float(hold["created_at"]),
        expires_at=float(hold["expires_at"]), items=lines,
    )
