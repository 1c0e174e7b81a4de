"""
Tests for `model/notify.py`: each ticket is sent at most once, and a claim
is handed back only when nobody could be reached.
"""

import asyncio
import json

import httpx
import pytest

from boxoffice.mailer import (
    DeliveryFailed, HttpMailer, LogMailer, render_ticket_email,
)
from boxoffice.model import finalizer, notify
from boxoffice.model.payments import Buyer

from conftest import paid_payment, scalar


class ExplodingMailer(LogMailer):
    async def send(self, to, subject, html):
        raise RuntimeError("smtp went away")


async def _order(database, event, buyer, qty=2):
    p = await paid_payment(database, event, buyer, qty=qty)
    return (await finalizer.finalize(database, p.id)).order_id


async def test_tickets_are_sent_once(database, event, buyer):
    order_id = await _order(database, event, buyer)
    mailer = LogMailer()

    first = await notify.claim_and_send(database, order_id, mailer)
    second = await notify.claim_and_send(database, order_id, mailer)

    assert first.claimed == 2
    assert first.sent_to == ["ada@example.com"]
    assert second.claimed == 0
    assert len(mailer.sent) == 1
    assert mailer.sent[0]["subject"] == "Your tickets for Test Fest"
    assert await scalar(
        database, "SELECT COUNT(*) FROM tickets WHERE emailed_at IS NULL"
    ) == 0


async def test_concurrent_triggers_send_once(database, event, buyer):
    order_id = await _order(database, event, buyer)
    mailer = LogMailer()

    results = await asyncio.gather(
        *[notify.claim_and_send(database, order_id, mailer) for _ in range(3)]
    )

    assert sum(r.claimed for r in results) == 2
    assert len(mailer.sent) == 1


async def test_buyer_and_owner_both_receive(database, event):
    buyer = Buyer("Ada Lovelace", "ada@example.com", "friend@example.com")
    order_id = await _order(database, event, buyer)
    mailer = LogMailer()

    res = await notify.claim_and_send(database, order_id, mailer)

    assert res.sent_to == ["ada@example.com", "friend@example.com"]
    assert await scalar(
        database, "SELECT DISTINCT emailed_to FROM tickets"
    ) == "ada@example.com,friend@example.com"


async def test_total_failure_releases_the_claim(database, event, buyer):
    order_id = await _order(database, event, buyer)

    res = await notify.claim_and_send(
        database, order_id, LogMailer(fail_for=["ada@example.com"])
    )
    assert res.reverted is True
    assert res.failed == ["ada@example.com"]
    assert await scalar(
        database, "SELECT COUNT(*) FROM tickets WHERE emailed_at IS NULL"
    ) == 2

    retry = LogMailer()
    res = await notify.claim_and_send(database, order_id, retry)
    assert res.claimed == 2
    assert len(retry.sent) == 1


async def test_partial_failure_keeps_the_claim(database, event):
    buyer = Buyer("Ada Lovelace", "ada@example.com", "friend@example.com")
    order_id = await _order(database, event, buyer)

    res = await notify.claim_and_send(
        database, order_id, LogMailer(fail_for=["friend@example.com"])
    )

    assert res.reverted is False
    assert res.sent_to == ["ada@example.com"]
    assert await scalar(
        database, "SELECT COUNT(*) FROM tickets WHERE emailed_at IS NULL"
    ) == 0


async def test_release_claim_only_touches_our_stamp(database, event, buyer):
    order_id = await _order(database, event, buyer)
    async with database.transaction() as db:
        rows = await notify.claim_rows(
            db, "tickets", "order_id", order_id, 1.0, "a@example.com"
        )
    ids = [r["id"] for r in rows]

    async with database.transaction() as db:
        assert await notify.release_claim(
            db, "tickets", ids, 2.0, "a@example.com"
        ) == 0
        assert await notify.release_claim(
            db, "tickets", ids, 1.0, "a@example.com"
        ) == 2


async def test_notify_quietly_never_raises(database, event, buyer):
    order_id = await _order(database, event, buyer)

    assert await notify.notify_quietly(database, None, LogMailer()) is None
    assert await notify.notify_quietly(
        database, order_id, ExplodingMailer()
    ) is None


async def test_unknown_order(database):
    res = await notify.claim_and_send(database, "ord_nope", LogMailer())
    assert res.claimed == 0


def test_ticket_email_lists_every_ticket():
    mail = render_ticket_email(
        {"id": "ord_1", "event_title": "Test Fest", "buyer_name": "<Ada>"},
        [{"id": "tix_1", "ticket_type_name": "VIP"},
         {"id": "tix_2", "ticket_type_name": "General"}],
    )
    assert mail["subject"] == "Your tickets for Test Fest"
    assert "tix_1" in mail["html"] and "tix_2" in mail["html"]
    assert "&lt;Ada&gt;" in mail["html"]


async def test_http_mailer():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if b"bounce@example.com" in request.content:
            return httpx.Response(422, json={"message": "invalid to"})
        return httpx.Response(200, json={"id": "msg_1"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler)
    ) as http:
        mailer = HttpMailer(http, api_url="https://mail.test/emails",
                            api_key="k", sender="Box Office <t@example.com>")
        await mailer.send("ada@example.com", "Hi", "<p>hi</p>")
        with pytest.raises(DeliveryFailed):
            await mailer.send("bounce@example.com", "Hi", "<p>hi</p>")

        unconfigured = HttpMailer(http, api_key="")
        with pytest.raises(DeliveryFailed):
            await unconfigured.send("ada@example.com", "Hi", "<p>hi</p>")

    assert seen[0].headers["authorization"] == "Bearer k"
    assert json.loads(seen[0].content)["to"] == ["ada@example.com"]
    assert len(seen) == 2
