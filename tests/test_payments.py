"""
Tests for `model/payments.py`.

The amount is always priced from the hold, one payment exists per hold, and
status never moves backwards.
"""

import pytest
from sqlalchemy import text

from boxoffice.errors import (
    AmountMismatch, HoldExpired, HoldNotFinalizable, InvalidRequest,
    PaymentClosed, ProviderUnavailable,
)
from boxoffice.model import holds, payments
from boxoffice.model.db import (
    HOLD_ACTIVE, HOLD_CANCELED, HOLD_EXPIRED, PAY_CREATED, PAY_FAILED,
    PAY_PAID, PAY_PENDING,
)
from boxoffice.model.inventory import ItemRequest
from boxoffice.model.payments import Buyer
from boxoffice.providers import ManualTransfer, MockPay, PaymentAdapter

from conftest import backdate_hold, scalar, ticket_type_counts


class DownProvider(PaymentAdapter):
    name = "mockpay"

    async def create_session(self, payment, idempotency_key):
        raise ProviderUnavailable("connection refused")

    async def get_status(self, provider_ref):
        raise ProviderUnavailable("connection refused")

    async def verify_callback(self, payload, headers, params):
        raise NotImplementedError


async def _hold(database, event, qty=2):
    return await holds.create_or_reuse_hold(
        database, event.id, [ItemRequest(event.ga, qty)]
    )


def test_buyer_is_normalized():
    b = Buyer(" Ada ", " Ada@Example.COM ", "").validated()
    assert b == Buyer("Ada", "ada@example.com", None)


@pytest.mark.parametrize("buyer", [
    Buyer("A", "a@example.com"),
    Buyer("Ada", "not-an-email"),
    Buyer("Ada", "ada@example.com", "owner@"),
])
def test_buyer_validation(buyer):
    with pytest.raises(InvalidRequest):
        buyer.validated()


async def test_prepare_prices_from_the_hold(database, event, buyer):
    view = await _hold(database, event)

    p = await payments.prepare_payment(database, view.id, "mockpay", buyer)

    assert p.status == PAY_CREATED
    assert p.amount_minor == 2000
    assert p.currency == "clp"
    assert p.event_title == "Test Fest"
    assert p.buyer_email == "ada@example.com"


async def test_one_payment_per_hold(database, event, buyer):
    view = await _hold(database, event)

    a = await payments.prepare_payment(database, view.id, "mockpay", buyer)
    b = await payments.prepare_payment(
        database, view.id, "mockpay", Buyer("Grace Hopper", "grace@example.com")
    )

    assert a.id == b.id
    assert b.buyer_name == "Grace Hopper"
    assert await scalar(database, "SELECT COUNT(*) FROM payments") == 1


async def test_provider_session_is_created_once(database, event, buyer):
    view = await _hold(database, event)
    mock = MockPay()

    p1, _ = await payments.create_provider_session(database, mock, view.id, buyer)
    p2, _ = await payments.create_provider_session(database, mock, view.id, buyer)

    assert p1.status == PAY_PENDING
    assert p1.provider_ref.startswith("mock_")
    assert p1.redirect_url == f"/mockpay/{p1.provider_ref}"
    assert p2.id == p1.id
    assert p2.provider_ref == p1.provider_ref


async def test_switching_provider_replaces_the_session(database, event, buyer):
    view = await _hold(database, event)
    await payments.create_provider_session(database, MockPay(), view.id, buyer)

    p, extra = await payments.create_provider_session(
        database, ManualTransfer(), view.id, buyer
    )

    assert p.provider == "transfer"
    assert p.provider_ref == extra["reference"]
    assert p.redirect_url is None
    assert extra["instructions"]["amountMinor"] == 2000


async def test_provider_outage_leaves_payment_created(database, event, buyer):
    view = await _hold(database, event)

    with pytest.raises(ProviderUnavailable):
        await payments.create_provider_session(
            database, DownProvider(), view.id, buyer
        )

    async with database.transaction() as db:
        p = await payments.load_payment_for_hold(db, view.id)
    assert p.status == PAY_CREATED
    assert p.provider_ref is None
    assert (await holds.get_hold(database, view.id)).status == HOLD_ACTIVE


async def test_session_already_settled_at_provider(database, event, buyer):
    view = await _hold(database, event)
    mock = MockPay()
    p, _ = await payments.create_provider_session(database, mock, view.id, buyer)
    mock.complete(p.provider_ref, "succeeded")

    again, _ = await payments.create_provider_session(
        database, mock, view.id, buyer
    )
    assert again.status == PAY_PAID


async def test_prepare_on_expired_hold(database, event, buyer):
    view = await _hold(database, event)
    await backdate_hold(database, view.id)

    with pytest.raises(HoldExpired):
        await payments.prepare_payment(database, view.id, "mockpay", buyer)
    with pytest.raises(HoldExpired):
        await payments.prepare_payment(database, view.id, "mockpay", buyer)

    assert (await holds.get_hold(database, view.id)).status == HOLD_EXPIRED
    assert (await ticket_type_counts(database, event.ga))["held"] == 0


async def test_prepare_on_released_hold(database, event, buyer):
    view = await _hold(database, event)
    await holds.release_hold(database, view.id)

    with pytest.raises(HoldNotFinalizable):
        await payments.prepare_payment(database, view.id, "mockpay", buyer)


async def test_failed_payment_cancels_the_hold(database, event, buyer):
    view = await _hold(database, event)
    p = await payments.prepare_payment(database, view.id, "mockpay", buyer)

    failed = await payments.apply_provider_status(database, p.id, PAY_FAILED)

    assert failed.status == PAY_FAILED
    assert (await holds.get_hold(database, view.id)).status == HOLD_CANCELED
    assert (await ticket_type_counts(database, event.ga))["held"] == 0

    with pytest.raises(PaymentClosed):
        await payments.prepare_payment(database, view.id, "mockpay", buyer)


async def test_status_never_moves_backwards(database, event, buyer):
    view = await _hold(database, event)
    p = await payments.prepare_payment(database, view.id, "mockpay", buyer)

    paid = await payments.apply_provider_status(database, p.id, PAY_PAID)
    after = await payments.apply_provider_status(database, p.id, PAY_FAILED)
    pending = await payments.apply_provider_status(database, p.id, PAY_PENDING)

    assert paid.status == PAY_PAID
    assert paid.paid_at is not None
    assert after.status == PAY_PAID
    assert pending.status == PAY_PAID
    assert after.paid_at == paid.paid_at
    # a late failure report never takes stock away from a paid order
    assert (await holds.get_hold(database, view.id)).status == HOLD_ACTIVE


async def test_paid_payment_is_returned_as_is(database, event, buyer):
    view = await _hold(database, event)
    p = await payments.prepare_payment(database, view.id, "mockpay", buyer)
    await payments.apply_provider_status(database, p.id, PAY_PAID)

    again, extra = await payments.create_provider_session(
        database, MockPay(), view.id, buyer
    )
    assert again.status == PAY_PAID
    assert extra == {}


class CartEditingMockPay(MockPay):
    """Buyer edits the cart while the provider call is still running."""

    def __init__(self, database, event):
        super().__init__()
        self.database = database
        self.event = event
        self.edit = None

    async def create_session(self, payment, idempotency_key):
        self.edit = await holds.create_or_reuse_hold(
            self.database, self.event.id, [ItemRequest(self.event.ga, 5)],
            hold_id=payment.hold_id,
        )
        return await super().create_session(payment, idempotency_key)


async def test_cart_edit_during_checkout_gets_a_fresh_hold(database, event,
                                                           buyer):
    view = await _hold(database, event)
    adapter = CartEditingMockPay(database, event)

    p, _ = await payments.create_provider_session(
        database, adapter, view.id, buyer
    )

    assert adapter.edit.id != view.id
    assert adapter.edit.reused is False
    assert p.amount_minor == 2000
    assert adapter.session(p.provider_ref)["amount_minor"] == 2000
    assert (await holds.get_hold(database, view.id)).amount_minor == 2000
    assert (await ticket_type_counts(database, event.ga))["held"] == 7


class DriftingMockPay(MockPay):
    """The hold's lines change behind our back during the provider call."""

    def __init__(self, database):
        super().__init__()
        self.database = database

    async def create_session(self, payment, idempotency_key):
        async with self.database.transaction() as db:
            await db.execute(text(
                "UPDATE hold_items SET qty = 5 WHERE hold_id = :h"
            ), {"h": payment.hold_id})
        return await super().create_session(payment, idempotency_key)


async def test_session_is_not_stored_when_the_hold_reprices(database, event,
                                                            buyer):
    view = await _hold(database, event)

    with pytest.raises(AmountMismatch) as exc:
        await payments.create_provider_session(
            database, DriftingMockPay(database), view.id, buyer
        )

    assert exc.value.context == {"expected": 2000, "actual": 5000}
    async with database.transaction() as db:
        p = await payments.load_payment_for_hold(db, view.id)
    assert p.status == PAY_CREATED
    assert p.provider_ref is None
