# model/payments.py
"""
Payment record store: exactly one payment per hold.

Status only moves forward:
    CREATED -> PENDING -> PAID
    CREATED | PENDING -> FAILED | CANCELLED
PAID, FAILED and CANCELLED are frozen. Provider calls never happen inside a
transaction: `create_provider_session` runs prepare (tx A), talks to the
provider, then stores the session (tx B).
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import holds
from .db import (
    HOLD_ACTIVE, HOLD_CANCELED, HOLD_EXPIRED, PAY_CANCELLED, PAY_CREATED,
    PAY_FAILED, PAY_PAID, PAY_PENDING, PAYMENT_OPEN, PAYMENT_STATUSES,
)
from ..config import CURRENCY
from ..errors import (
    AmountMismatch, HoldExpired, HoldNotFinalizable, HoldNotFound,
    InvalidPrice, InvalidRequest, PaymentClosed, PaymentNotFound,
    ProviderUnavailable,
)
from ..helpers import (
    idempotency_key, is_valid_email, new_id, normalize_email, now_ts, to_iso,
)
from ..infra.sql import Database, for_update
from ..infra.timings import timeit
from ..logs import get_logger
from ..providers.base import PaymentAdapter, ProviderCallback

log = get_logger("payments")

PAYMENT_COLUMNS = (
    "id, hold_id, event_id, event_title, provider, provider_ref, "
    "redirect_url, buyer_name, buyer_email, owner_email, amount_minor, "
    "currency, status, order_id, created_at, updated_at, paid_at"
)
FROZEN = (PAY_PAID, PAY_FAILED, PAY_CANCELLED)


@dataclass
class PaymentRecord:
    id: str
    hold_id: str
    event_id: str
    event_title: str
    provider: str
    provider_ref: Optional[str]
    redirect_url: Optional[str]
    buyer_name: str
    buyer_email: str
    owner_email: Optional[str]
    amount_minor: int
    currency: str
    status: str
    order_id: Optional[str]
    created_at: float
    updated_at: float
    paid_at: Optional[float]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PaymentRecord":
        d = dict(row)
        d["amount_minor"] = int(d["amount_minor"])
        return cls(**d)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentId": self.id,
            "holdId": self.hold_id,
            "eventId": self.event_id,
            "eventTitle": self.event_title,
            "provider": self.provider,
            "providerRef": self.provider_ref,
            "redirectUrl": self.redirect_url,
            "buyerName": self.buyer_name,
            "buyerEmail": self.buyer_email,
            "ownerEmail": self.owner_email,
            "amountMinor": self.amount_minor,
            "currency": self.currency,
            "status": self.status,
            "orderId": self.order_id,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "paidAt": to_iso(self.paid_at),
        }


@dataclass
class Buyer:
    name: str
    email: str
    owner_email: Optional[str] = None

    def validated(self) -> "Buyer":
        name = (self.name or "").strip()
        email = normalize_email(self.email)
        owner = normalize_email(self.owner_email) or None
        if len(name) < 2:
            raise InvalidRequest("buyerName is too short")
        if not is_valid_email(email):
            raise InvalidRequest("buyerEmail is invalid")
        if owner is not None and not is_valid_email(owner):
            raise InvalidRequest("ownerEmail is invalid")
        return Buyer(name=name, email=email, owner_email=owner)


# ------------------------------------------------------------------------------
# UN-GATED helpers
# ------------------------------------------------------------------------------

async def load_payment(db: AsyncSession, payment_id: str,
                       lock: bool = False) -> Optional[PaymentRecord]:
    sql = f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE id = :id"
    if lock:
        sql += for_update(db)
    row = (await db.execute(text(sql), {"id": payment_id})).mappings().first()
    return PaymentRecord.from_row(row) if row else None


async def load_payment_for_hold(db: AsyncSession, hold_id: str,
                                lock: bool = False) -> Optional[PaymentRecord]:
    sql = f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE hold_id = :h"
    if lock:
        sql += for_update(db)
    row = (await db.execute(text(sql), {"h": hold_id})).mappings().first()
    return PaymentRecord.from_row(row) if row else None


async def hold_amount(db: AsyncSession, hold_id: str) -> int:
    lines = await holds.load_lines(db, hold_id)
    return sum(ln.subtotal_minor for ln in lines)


async def _set_status(db: AsyncSession, payment_id: str, status: str,
                      now: float) -> None:
    await db.execute(text("""
        UPDATE payments
        SET status = :s,
            updated_at = :now,
            paid_at = COALESCE(:paid, paid_at)
        WHERE id = :id
    """), {
        "s": status, "now": now, "id": payment_id,
        "paid": now if status == PAY_PAID else None,
    })


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def get_payment(database: Database, payment_id: str) -> PaymentRecord:
    async with database.transaction() as db:
        p = await load_payment(db, payment_id)
    if p is None:
        raise PaymentNotFound(f"payment {payment_id} does not exist")
    return p


async def find_payment(database: Database, provider: str,
                       cb: ProviderCallback) -> Optional[PaymentRecord]:
    """Resolve a provider callback to our payment (by id, else by ref)."""
    async with database.transaction() as db:
        if cb.payment_id:
            p = await load_payment(db, cb.payment_id)
            if p is not None and p.provider == provider:
                return p
        if not cb.provider_ref:
            return None
        row = (await db.execute(text(
            f"SELECT {PAYMENT_COLUMNS} FROM payments "
            "WHERE provider = :p AND provider_ref = :r"
        ), {"p": provider, "r": cb.provider_ref})).mappings().first()
    return PaymentRecord.from_row(row) if row else None


async def prepare_payment(database: Database, hold_id: str, provider: str,
                          buyer: Buyer) -> PaymentRecord:
    """
    Create or refresh the payment for `hold_id` (transaction A).
    The amount always comes from the hold's price snapshots.
    """
    buyer = buyer.validated()
    expired = False
    async with database.transaction() as db:
        hold = await holds.lock_hold(db, hold_id)
        if hold is None:
            raise HoldNotFound(f"hold {hold_id} does not exist")
        existing = await load_payment_for_hold(db, hold_id, lock=True)
        if existing is not None and existing.status == PAY_PAID:
            return existing
        if existing is not None and existing.status in FROZEN:
            raise PaymentClosed(
                f"payment {existing.id} is {existing.status}"
            )

        now = now_ts()
        if hold["status"] == HOLD_ACTIVE and float(hold["expires_at"]) <= now:
            await holds.retire_locked_hold(db, hold_id, HOLD_EXPIRED)
            expired = True
        elif hold["status"] == HOLD_EXPIRED:
            raise HoldExpired(f"hold {hold_id} expired")
        elif hold["status"] != HOLD_ACTIVE:
            raise HoldNotFinalizable(f"hold {hold_id} is {hold['status']}")
        else:
            amount = await hold_amount(db, hold_id)
            if amount <= 0:
                raise InvalidPrice(f"hold {hold_id} has no payable items")
            title = (await db.execute(
                text("SELECT title FROM events WHERE id = :e"),
                {"e": hold["event_id"]},
            )).scalar() or ""

            row = (await db.execute(text(f"""
                INSERT INTO payments(
                    id, hold_id, event_id, event_title, provider,
                    provider_ref, redirect_url, buyer_name, buyer_email,
                    owner_email, amount_minor, currency, status,
                    created_at, updated_at)
                VALUES(
                    :id, :h, :e, :t, :p, NULL, NULL, :bn, :be, :oe, :a, :c,
                    :s, :now, :now)
                ON CONFLICT (hold_id) DO UPDATE SET
                    provider_ref = CASE WHEN payments.provider = excluded.provider
                                        THEN payments.provider_ref ELSE NULL END,
                    redirect_url = CASE WHEN payments.provider = excluded.provider
                                        THEN payments.redirect_url ELSE NULL END,
                    provider = excluded.provider,
                    event_id = excluded.event_id,
                    event_title = excluded.event_title,
                    buyer_name = excluded.buyer_name,
                    buyer_email = excluded.buyer_email,
                    owner_email = excluded.owner_email,
                    amount_minor = excluded.amount_minor,
                    currency = excluded.currency,
                    updated_at = excluded.updated_at
                WHERE payments.status IN ('CREATED', 'PENDING')
                RETURNING {PAYMENT_COLUMNS}
            """), {
                "id": new_id("pay"), "h": hold_id,
                "e": hold["event_id"], "t": title, "p": provider,
                "bn": buyer.name, "be": buyer.email, "oe": buyer.owner_email,
                "a": amount, "c": CURRENCY, "s": PAY_CREATED, "now": now,
            })).mappings().first()
            payment = PaymentRecord.from_row(row)

    if expired:
        log.info("hold {} expired before payment", hold_id)
        raise HoldExpired(f"hold {hold_id} expired")
    return payment


async def create_provider_session(
    database: Database, adapter: PaymentAdapter, hold_id: str, buyer: Buyer,
) -> Tuple[PaymentRecord, Dict[str, Any]]:
    """
    Returns (payment, extra). An open provider session is reused; a new one
    is requested with a key stable for this (hold, payment) pair.
    """
    payment = await prepare_payment(database, hold_id, adapter.name, buyer)
    if payment.status == PAY_PAID:
        return payment, {}

    result = None
    if payment.provider_ref:
        st = await adapter.get_status(payment.provider_ref)
        if st.local_status in PAYMENT_OPEN:
            result = {
                "provider_ref": payment.provider_ref,
                "redirect_url": payment.redirect_url,
                "extra": adapter.session_extra(payment),
            }
        else:
            # the provider already settled it; catch up and stop here
            payment = await apply_provider_status(
                database, payment.id, st.local_status
            )
            if payment.status != PAY_PAID:
                raise PaymentClosed(f"payment {payment.id} is {payment.status}")
            return payment, {}

    if result is None:
        key = idempotency_key(payment.hold_id, payment.id)
        async with timeit(f"provider.{adapter.name}.create"):
            try:
                result = await adapter.create_session(payment, key)
            except ProviderUnavailable:
                log.warning("provider {} unavailable for payment {}",
                            adapter.name, payment.id)
                raise

    async with database.transaction() as db:
        # the session was created for payment.amount_minor: the hold must
        # still price to exactly that
        await holds.lock_hold(db, payment.hold_id)
        amount = await hold_amount(db, payment.hold_id)
        if amount != payment.amount_minor:
            log.error("hold {} prices to {} but payment {} charges {}; "
                      "session {} not stored", payment.hold_id, amount,
                      payment.id, payment.amount_minor,
                      result["provider_ref"])
            raise AmountMismatch(
                f"hold {payment.hold_id} changed during checkout",
                expected=payment.amount_minor, actual=amount,
            )
        row = (await db.execute(text(f"""
            UPDATE payments
            SET provider_ref = :r,
                redirect_url = :u,
                status = CASE WHEN status = 'CREATED' THEN 'PENDING'
                              ELSE status END,
                updated_at = :now
            WHERE id = :id AND provider = :p AND amount_minor = :a
              AND status IN ('CREATED', 'PENDING')
            RETURNING {PAYMENT_COLUMNS}
        """), {
            "r": result["provider_ref"], "u": result.get("redirect_url"),
            "now": now_ts(), "id": payment.id, "p": adapter.name,
            "a": payment.amount_minor,
        })).mappings().first()
        if row is None:
            current = await load_payment(db, payment.id)
    if row is None:
        # moved on while we talked to the provider
        if current is not None and current.status == PAY_PAID:
            return current, {}
        raise PaymentClosed(f"payment {payment.id} is no longer open")

    payment = PaymentRecord.from_row(row)
    log.info("payment {} {} session {} for hold {}", payment.id,
             adapter.name, payment.provider_ref, payment.hold_id)
    return payment, dict(result.get("extra") or {})


async def apply_provider_status(
    database: Database, payment_id: str, status: str,
    provider_ref: Optional[str] = None,
) -> PaymentRecord:
    """
    Forward-only transition from a provider report. FAILED/CANCELLED also
    cancels a still ACTIVE hold and gives its stock back.
    """
    if status not in PAYMENT_STATUSES:
        status = PAY_PENDING
    async with database.transaction() as db:
        p = await load_payment(db, payment_id)
        if p is None:
            raise PaymentNotFound(f"payment {payment_id} does not exist")
        hold = await holds.lock_hold(db, p.hold_id)
        p = await load_payment(db, payment_id, lock=True)
        now = now_ts()

        if provider_ref and not p.provider_ref:
            await db.execute(text(
                "UPDATE payments SET provider_ref = :r WHERE id = :id"
            ), {"r": provider_ref, "id": payment_id})

        if p.status in FROZEN:
            if status != p.status:
                log.info("payment {} is {}, ignoring {}",
                         payment_id, p.status, status)
        elif status == p.status or status == PAY_CREATED:
            pass
        else:
            await _set_status(db, payment_id, status, now)
            if status in (PAY_FAILED, PAY_CANCELLED) and hold is not None \
                    and hold["status"] == HOLD_ACTIVE:
                await holds.retire_locked_hold(db, p.hold_id, HOLD_CANCELED)
                log.info("hold {} canceled after payment {} {}",
                         p.hold_id, payment_id, status)
            log.info("payment {} {} -> {}", payment_id, p.status, status)
        p = await load_payment(db, payment_id)
    return p
