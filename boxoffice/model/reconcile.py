# model/reconcile.py
"""
Read side for pollers: payment + tickets, finalizing lazily.

A payment can be PAID without tickets when the webhook that marked it paid
lost the race to finalize (or crashed in between). Reading the status closes
that gap by running the idempotent finalizer.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from . import finalizer, payments
from .db import PAY_PAID, PAYMENT_OPEN
from .finalizer import TicketView
from .payments import PaymentRecord
from ..errors import (
    AmountMismatch, HoldExpired, HoldNotFinalizable, HoldNotFound,
    PaymentNotPaid, ProviderUnavailable,
)
from ..infra.sql import Database
from ..logs import get_logger
from ..providers.base import PaymentAdapter

log = get_logger("reconcile")


@dataclass
class StatusView:
    payment: PaymentRecord
    tickets: List[TicketView] = field(default_factory=list)
    # error code when lazy finalization could not complete
    issue: Optional[str] = None

    @property
    def has_unsent(self) -> bool:
        return any(t.emailed_at is None for t in self.tickets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "payment": self.payment.to_dict(),
            "tickets": [t.to_dict() for t in self.tickets],
            "issue": self.issue,
        }


async def _tickets(database: Database, order_id: Optional[str]) -> List[TicketView]:
    if not order_id:
        return []
    async with database.transaction() as db:
        return await finalizer.load_tickets(db, order_id)


async def get_status(
    database: Database, payment_id: str,
    adapters: Optional[Mapping[str, PaymentAdapter]] = None,
) -> StatusView:
    """
    `adapters` (optional): ask the provider about still-open payments, for
    providers whose webhooks may never arrive.
    """
    p = await payments.get_payment(database, payment_id)
    adapter = adapters.get(p.provider) if adapters else None

    if adapter is not None and p.status in PAYMENT_OPEN and p.provider_ref:
        try:
            st = await adapter.get_status(p.provider_ref)
            if st.local_status != p.status:
                p = await payments.apply_provider_status(
                    database, p.id, st.local_status
                )
        except ProviderUnavailable as e:
            log.warning("status refresh for {} failed: {}", p.id, e)

    tickets = await _tickets(database, p.order_id)
    issue = None
    if p.status == PAY_PAID and not tickets:
        try:
            res = await finalizer.finalize(database, p.id)
            tickets = res.tickets
            p = await payments.get_payment(database, p.id)
        except (AmountMismatch, HoldExpired, HoldNotFinalizable,
                HoldNotFound, PaymentNotPaid) as e:
            # reported in the read result; the finalizer already logged it
            log.info("lazy finalize of {} did not complete: {}", p.id, e.code)
            issue = e.code
    return StatusView(payment=p, tickets=tickets, issue=issue)
