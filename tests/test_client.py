import httpx

from boxoffice import server
from boxoffice.client import (
    ISSUED, TIMEOUT, BoxOfficeClient, Result, Stats, run_load,
)


async def _no_sleep(_):
    return None


def _status_server(responses):
    """MockTransport answering /payments/status from a list, in order."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/payments/status"
        calls.append(request.url.params["payment_id"])
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, int):
            return httpx.Response(item)
        return httpx.Response(200, json=item)

    return httpx.MockTransport(handler), calls


def _status(status, tickets=(), issue=None):
    return {"ok": True, "payment": {"status": status},
            "tickets": list(tickets), "issue": issue}


async def test_poll_until_tickets_show_up():
    transport, calls = _status_server([
        _status("PENDING"),
        503,
        _status("PAID", tickets=[{"ticketId": "tix_1"}]),
    ])
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://bo.test") as http:
        res = await BoxOfficeClient(http).poll_status(
            "pay_1", interval=0.01, timeout=5, sleep=_no_sleep
        )

    assert res.outcome == ISSUED
    assert res.polls == 3
    assert calls == ["pay_1"] * 3


async def test_poll_stops_on_closed_payment_or_issue():
    transport, _ = _status_server([_status("CANCELLED")])
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://bo.test") as http:
        res = await BoxOfficeClient(http).poll_status(
            "pay_1", interval=0.01, timeout=5, sleep=_no_sleep
        )
    assert res.outcome == "CANCELLED"

    transport, _ = _status_server([_status("PAID", issue="hold_expired")])
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://bo.test") as http:
        res = await BoxOfficeClient(http).poll_status(
            "pay_1", interval=0.01, timeout=5, sleep=_no_sleep
        )
    assert res.outcome == "hold_expired"


async def test_poll_gives_up_after_timeout():
    transport, _ = _status_server([_status("PENDING")])
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://bo.test") as http:
        res = await BoxOfficeClient(http).poll_status(
            "pay_1", interval=1.0, timeout=0.5, sleep=_no_sleep
        )
    assert res.outcome == TIMEOUT
    assert res.polls == 1


def test_stats_summary():
    stats = Stats()
    stats.add(Result(ok=True, outcome=ISSUED, t_hold=0.01, t_observed=1.0))
    stats.add(Result(ok=True, outcome=ISSUED, t_hold=0.03, t_observed=3.0))
    stats.add(Result(ok=True, outcome="SOLD_OUT", err="hold: HTTP 409"))
    stats.add(Result(ok=True, outcome="amount_mismatch", t_observed=2.0))
    stats.add(Result(ok=False, outcome="ERROR", err="payment: boom"))
    stats.add(Result(ok=False, outcome="ERROR", err="payment: HTTP 502"))

    s = stats.summary()

    assert s["total"] == 6
    assert s["ok"] == 4
    assert s["outcomes"] == {
        ISSUED: 2, "ERROR": 2, "SOLD_OUT": 1, "amount_mismatch": 1,
    }
    assert s["errors"] == {"payment": 2}
    assert s["phases"]["hold"]["n"] == 2
    assert s["phases"]["hold"]["mean_ms"] == 20.0
    assert s["phases"]["observed"]["p50_ms"] == 2000.0
    assert s["phases"]["payment"] == {"n": 0}

    report = stats.report(2.0)
    assert "6 purchases in 2.00s (3.0/s), 4 reached an outcome" in report
    assert "error in payment" in report
    assert "observed   n=3" in report


async def test_load_against_the_app(app_client, event):
    stats = await run_load(
        base="http://testserver",
        event_id=event.id,
        ticket_type_id=event.ga,
        total=4,
        concurrency=2,
        poll_interval_s=0.01,
        poll_timeout_s=10,
        transport=httpx.ASGITransport(app=server.app),
    )

    assert stats.count(ISSUED) == 4
    assert len(server.app.state.mailer.sent) == 4


async def test_load_sells_out(app_client, event):
    stats = await run_load(
        base="http://testserver",
        event_id=event.id,
        ticket_type_id=event.vip,
        total=3,
        concurrency=3,
        poll_interval_s=0.01,
        poll_timeout_s=10,
        transport=httpx.ASGITransport(app=server.app),
    )

    assert stats.count(ISSUED) == 1
    assert stats.count("SOLD_OUT") == 2
