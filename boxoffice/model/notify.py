# model/notify.py
"""
At-most-once ticket delivery.

Tickets are claimed (emailed_at/emailed_to stamped) in a short transaction
before anything is sent, so concurrent triggers (webhook, return redirect,
status polling) never send the same ticket twice. A claim is handed back only
when every recipient failed, and only if it is still the one we made.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, unique_emails
from ..infra.sql import Database
from ..infra.timings import timeit
from ..logs import get_logger
from ..mailer import DeliveryFailed, Mailer, render_ticket_email

log = get_logger("notify")


@dataclass
class NotifyResult:
    order_id: str
    claimed: int = 0
    sent_to: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    reverted: bool = False


async def claim_rows(
    db: AsyncSession, table: str, key_col: str, key: Any,
    stamp: float, tag: str,
    claim_col: str = "emailed_at", tag_col: str = "emailed_to",
    returning: str = "id",
) -> List[Mapping]:
    """
    Stamp every unclaimed row of `table` where key_col = key. Returns the
    rows this call claimed; rows claimed by someone else are not touched.
    """
    return (await db.execute(text(f"""
        UPDATE {table}
        SET {claim_col} = :stamp, {tag_col} = :tag
        WHERE {key_col} = :key AND {claim_col} IS NULL
        RETURNING {returning}
    """), {"stamp": stamp, "tag": tag, "key": key})).mappings().all()


async def release_claim(
    db: AsyncSession, table: str, ids: Sequence[Any], stamp: float, tag: str,
    claim_col: str = "emailed_at", tag_col: str = "emailed_to",
) -> int:
    if not ids:
        return 0
    res = await db.execute(text(f"""
        UPDATE {table}
        SET {claim_col} = NULL, {tag_col} = NULL
        WHERE id IN :ids AND {claim_col} = :stamp AND {tag_col} = :tag
    """).bindparams(bindparam("ids", expanding=True)),
        {"ids": list(ids), "stamp": stamp, "tag": tag})
    return res.rowcount or 0


async def claim_and_send(database: Database, order_id: str,
                         mailer: Mailer) -> NotifyResult:
    result = NotifyResult(order_id=order_id)
    stamp = now_ts()

    async with database.transaction() as db:
        order = (await db.execute(text("""
            SELECT id, event_id, event_title, buyer_name, buyer_email,
                   owner_email
            FROM orders WHERE id = :o
        """), {"o": order_id})).mappings().first()
        if order is None:
            log.warning("notify: order {} does not exist", order_id)
            return result
        order = dict(order)
        recipients = unique_emails([order["buyer_email"],
                                    order["owner_email"]])
        if not recipients:
            log.warning("notify: order {} has no valid recipient", order_id)
            return result
        tag = ",".join(recipients)
        claimed = await claim_rows(
            db, "tickets", "order_id", order_id, stamp, tag,
            returning="id, ticket_type_id, ticket_type_name",
        )

    result.claimed = len(claimed)
    if not claimed:
        return result

    tickets: List[Dict[str, Any]] = [dict(r) for r in claimed]
    mail = render_ticket_email(order, tickets)
    async with timeit("notify.send"):
        for to in recipients:
            try:
                await mailer.send(to, mail["subject"], mail["html"])
                result.sent_to.append(to)
            except DeliveryFailed as e:
                log.warning("notify: order {} to {} failed: {}",
                            order_id, to, e.message)
                result.failed.append(to)

    if not result.sent_to:
        async with database.transaction() as db:
            await release_claim(db, "tickets", [t["id"] for t in tickets],
                                stamp, tag)
        result.reverted = True
        log.warning("notify: order {} not delivered, claim released",
                    order_id)
    else:
        log.info("notify: order {} sent {} ticket(s) to {}",
                 order_id, len(tickets), ", ".join(result.sent_to))
    return result


async def notify_quietly(database: Database, order_id: Optional[str],
                         mailer: Mailer) -> Optional[NotifyResult]:
    """Background-task entry point: never lets a failure escape."""
    if not order_id:
        return None
    try:
        return await claim_and_send(database, order_id, mailer)
    except Exception:
        log.exception("notify: order {} crashed", order_id)
        return None
