# model/finalizer.py
"""
Turns a PAID payment's hold into one order plus one ticket per unit.

Safe to call any number of times, from any path (webhook, return redirect,
status polling): everything happens in one transaction under the hold and
payment row locks, and a payment that already links an order short-circuits.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import holds, inventory, payments
from .db import (
    HOLD_ACTIVE, HOLD_CONSUMED, HOLD_EXPIRED, PAY_PAID, TICKET_VALID,
)
from ..errors import (
    AmountMismatch, HoldExpired, HoldNotFinalizable, HoldNotFound,
    PaymentNotFound, PaymentNotPaid,
)
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import Database
from ..infra.timings import timeit
from ..logs import get_logger

log = get_logger("finalizer")


@dataclass
class TicketView:
    id: str
    order_id: str
    event_id: str
    ticket_type_id: str
    ticket_type_name: str
    status: str
    created_at: float
    emailed_at: Optional[float] = None
    emailed_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticketId": self.id,
            "orderId": self.order_id,
            "eventId": self.event_id,
            "ticketTypeId": self.ticket_type_id,
            "ticketTypeName": self.ticket_type_name,
            "status": self.status,
            "createdAt": to_iso(self.created_at),
            "emailedAt": to_iso(self.emailed_at),
        }


@dataclass
class FinalizeResult:
    payment_id: str
    hold_id: str
    order_id: str
    tickets: List[TicketView] = field(default_factory=list)
    # False when an earlier call already issued the order
    created: bool = False


async def load_tickets(db: AsyncSession, order_id: str) -> List[TicketView]:
    rows = (await db.execute(text("""
        SELECT id, order_id, event_id, ticket_type_id, ticket_type_name,
               status, created_at, emailed_at, emailed_to
        FROM tickets
        WHERE order_id = :o
        ORDER BY ticket_type_id, id
    """), {"o": order_id})).mappings().all()
    return [TicketView(**dict(r)) for r in rows]


async def _order_for_hold(db: AsyncSession, hold_id: str) -> Optional[str]:
    return (await db.execute(
        text("SELECT id FROM orders WHERE hold_id = :h"), {"h": hold_id}
    )).scalar()


async def _issue(db: AsyncSession, p: "payments.PaymentRecord",
                 now: float) -> str:
    lines = await holds.load_lines(db, p.hold_id)
    amount = sum(ln.subtotal_minor for ln in lines)
    if amount != p.amount_minor:
        log.error("ALARM payment {} charged {} but hold {} prices to {}; "
                  "no tickets issued", p.id, p.amount_minor, p.hold_id, amount)
        raise AmountMismatch(
            f"hold {p.hold_id} does not match payment {p.id}",
            expected=p.amount_minor, actual=amount,
        )

    order_id = (await db.execute(text("""
        INSERT INTO orders(id, hold_id, event_id, event_title, buyer_name,
                           buyer_email, owner_email, created_at)
        VALUES(:id, :h, :e, :t, :bn, :be, :oe, :now)
        ON CONFLICT (hold_id) DO UPDATE SET buyer_name = orders.buyer_name
        RETURNING id
    """), {
        "id": new_id("ord"), "h": p.hold_id, "e": p.event_id,
        "t": p.event_title, "bn": p.buyer_name, "be": p.buyer_email,
        "oe": p.owner_email or p.buyer_email, "now": now,
    })).scalar_one()

    existing = (await db.execute(
        text("SELECT COUNT(*) FROM tickets WHERE order_id = :o"),
        {"o": order_id},
    )).scalar_one()
    if not existing:
        for ln in lines:
            for _ in range(ln.qty):
                await db.execute(text("""
                    INSERT INTO tickets(id, order_id, event_id, ticket_type_id,
                                        ticket_type_name, status, created_at)
                    VALUES(:id, :o, :e, :tt, :n, :s, :now)
                """), {
                    "id": new_id("tix"), "o": order_id, "e": p.event_id,
                    "tt": ln.ticket_type_id, "n": ln.ticket_type_name,
                    "s": TICKET_VALID, "now": now,
                })

    await inventory.commit(db, lines)
    await db.execute(
        text("UPDATE holds SET status = :c WHERE id = :id AND status = :a"),
        {"c": HOLD_CONSUMED, "id": p.hold_id, "a": HOLD_ACTIVE},
    )
    return order_id


async def _link_order(db: AsyncSession, payment_id: str, order_id: str,
                      now: float) -> None:
    await db.execute(text("""
        UPDATE payments SET order_id = :o, updated_at = :now
        WHERE id = :id AND order_id IS NULL
    """), {"o": order_id, "now": now, "id": payment_id})


async def finalize(database: Database, payment_id: str) -> FinalizeResult:
    expired_hold: Optional[str] = None
    async with timeit("finalize"):
        async with database.transaction() as db:
            # learn the hold first, then lock hold -> payment
            p = await payments.load_payment(db, payment_id)
            if p is None:
                raise PaymentNotFound(f"payment {payment_id} does not exist")
            hold = await holds.lock_hold(db, p.hold_id)
            p = await payments.load_payment(db, payment_id, lock=True)

            if p.status != PAY_PAID:
                raise PaymentNotPaid(f"payment {payment_id} is {p.status}")
            if p.order_id:
                return FinalizeResult(
                    payment_id=p.id, hold_id=p.hold_id, order_id=p.order_id,
                    tickets=await load_tickets(db, p.order_id),
                )
            if hold is None:
                raise HoldNotFound(f"hold {p.hold_id} does not exist")

            now = now_ts()
            status = hold["status"]
            if status == HOLD_CONSUMED:
                order_id = await _order_for_hold(db, p.hold_id)
                if order_id is None:
                    raise HoldNotFinalizable(
                        f"hold {p.hold_id} is CONSUMED without an order"
                    )
                await _link_order(db, p.id, order_id, now)
                return FinalizeResult(
                    payment_id=p.id, hold_id=p.hold_id, order_id=order_id,
                    tickets=await load_tickets(db, order_id),
                )
            if status != HOLD_ACTIVE:
                log.error("payment {} is PAID but hold {} is {}",
                          p.id, p.hold_id, status)
                raise HoldNotFinalizable(f"hold {p.hold_id} is {status}")

            if float(hold["expires_at"]) <= now:
                await holds.retire_locked_hold(db, p.hold_id, HOLD_EXPIRED)
                expired_hold = p.hold_id
            else:
                order_id = await _issue(db, p, now)
                await _link_order(db, p.id, order_id, now)
                tickets = await load_tickets(db, order_id)

    if expired_hold is not None:
        # money taken, nothing issued: needs a human (refund or re-issue)
        log.error("ALARM payment {} PAID after hold {} expired; "
                  "stock released, no tickets issued", payment_id,
                  expired_hold)
        raise HoldExpired(f"hold {expired_hold} expired before payment")

    log.info("order {} issued for payment {} ({} tickets)",
             order_id, payment_id, len(tickets))
    return FinalizeResult(
        payment_id=payment_id, hold_id=hold["id"], order_id=order_id,
        tickets=tickets, created=True,
    )
