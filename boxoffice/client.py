#!/usr/bin/env python3
"""
BoxOffice client and load driver (async)

Simulates the buyer flow against the server:
  1) POST /holds                     (event, items) -> {holdId}
  2) POST /payments/mockpay/create   (hold, buyer)  -> {paymentId, redirectUrl}
  3) POST /mockpay/{psid}/emit       (t=succeeded|failed|canceled)
  4) Poll GET /payments/status?payment_id=... every few seconds until
     tickets show up, the payment fails, or the time budget runs out

It records timings per purchase and prints an aggregate report.

Usage:
  boxoffice-client --base http://localhost:8000 --event evt_1 \
                   --ticket-type tt_general --total 200 --concurrency 50
"""

import argparse
import asyncio
import random
import string
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import POLL_INTERVAL_SECONDS, POLL_TIMEOUT_SECONDS
from .infra.timings import summarize

ISSUED = "ISSUED"
TIMEOUT = "TIMEOUT"
FINAL_PAYMENT = ("FAILED", "CANCELLED")


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class PollResult:
    # ISSUED | FAILED | CANCELLED | TIMEOUT (or the finalize issue code)
    outcome: str
    payment: Dict[str, Any] = field(default_factory=dict)
    tickets: List[Dict[str, Any]] = field(default_factory=list)
    polls: int = 0


class BoxOfficeClient:
    def __init__(self, http: httpx.AsyncClient, base: str = ""):
        self.http = http
        self.base = base.rstrip("/")

    async def _json(self, resp: httpx.Response) -> Dict[str, Any]:
        resp.raise_for_status()
        return resp.json()

    async def hold(self, event_id: str, items: List[Dict[str, Any]],
                   hold_id: Optional[str] = None,
                   ttl_seconds: Optional[int] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"eventId": event_id, "items": items}
        if hold_id:
            body["holdId"] = hold_id
        if ttl_seconds:
            body["ttlSeconds"] = ttl_seconds
        return await self._json(
            await self.http.post(f"{self.base}/holds", json=body)
        )

    async def create_payment(self, provider: str, hold_id: str,
                             buyer_name: str, buyer_email: str,
                             owner_email: Optional[str] = None
                             ) -> Dict[str, Any]:
        body = {
            "holdId": hold_id,
            "buyerName": buyer_name,
            "buyerEmail": buyer_email,
        }
        if owner_email:
            body["ownerEmail"] = owner_email
        return await self._json(await self.http.post(
            f"{self.base}/payments/{provider}/create", json=body
        ))

    async def status(self, payment_id: str) -> Dict[str, Any]:
        return await self._json(await self.http.get(
            f"{self.base}/payments/status",
            params={"payment_id": payment_id},
        ))

    async def poll_status(
        self, payment_id: str,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> PollResult:
        """
        Poll until tickets exist or the payment is closed. Transient HTTP
        errors count as "not yet".
        """
        deadline = time.monotonic() + timeout
        res = PollResult(outcome=TIMEOUT)
        while True:
            res.polls += 1
            try:
                j = await self.status(payment_id)
            except httpx.HTTPError:
                j = None
            if j is not None:
                res.payment = j.get("payment") or {}
                res.tickets = j.get("tickets") or []
                if res.tickets:
                    res.outcome = ISSUED
                    return res
                if res.payment.get("status") in FINAL_PAYMENT:
                    res.outcome = res.payment["status"]
                    return res
                if j.get("issue"):
                    # paid but cannot be issued: polling will not fix it
                    res.outcome = j["issue"]
                    return res
            if time.monotonic() + interval > deadline:
                res.outcome = TIMEOUT
                return res
            await sleep(interval)


# ----------------------------
# load driver
# ----------------------------
@dataclass
class Result:
    ok: bool
    outcome: str  # ISSUED/FAILED/CANCELLED/TIMEOUT/ERROR/...
    t_hold: float = 0.0
    t_payment: float = 0.0
    t_observed: float = 0.0  # time until an outcome was observed
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def outcomes(self) -> Dict[str, int]:
        """Every outcome seen, issue codes included, most frequent first."""
        return dict(Counter(r.outcome for r in self.results).most_common())

    def errors(self) -> Dict[str, int]:
        # "hold: HTTP 503" and "hold: HTTP 502" both count as "hold"
        return dict(Counter(
            r.err.split(":", 1)[0] for r in self.results
            if r.err and not r.ok
        ).most_common())

    def summary(self) -> Dict[str, Any]:
        done = [r for r in self.results if r.ok]
        return {
            "total": len(self.results),
            "ok": len(done),
            "outcomes": self.outcomes(),
            "errors": self.errors(),
            # per buyer step, in timings.snapshot() shape
            "phases": {
                "hold": summarize(r.t_hold for r in done if r.t_hold),
                "payment": summarize(r.t_payment for r in done
                                     if r.t_payment),
                "observed": summarize(r.t_observed for r in done
                                      if r.t_observed),
            },
        }

    def report(self, elapsed_s: float) -> str:
        s = self.summary()
        lines = [
            "",
            f"{s['total']} purchases in {elapsed_s:.2f}s "
            f"({s['total'] / max(elapsed_s, 1e-9):.1f}/s), "
            f"{s['ok']} reached an outcome",
        ]
        lines += [f"  {k:<24}{v:>8}" for k, v in s["outcomes"].items()]
        for step, n in s["errors"].items():
            lines.append(f"  error in {step:<15}{n:>8}")
        for phase, t in s["phases"].items():
            if t["n"]:
                lines.append(
                    f"  {phase:<10} n={t['n']:<6} mean {t['mean_ms']:.1f}ms"
                    f"  p50 {t['p50_ms']:.1f}ms  p99 {t['p99_ms']:.1f}ms"
                )
        return "\n".join(lines)


async def one_purchase(
    bo: BoxOfficeClient,
    event_id: str,
    ticket_type_id: str,
    qty: int,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    email = _rand_email()

    # 1) hold
    t0 = time.perf_counter()
    try:
        h = await bo.hold(event_id, [{"ticketTypeId": ticket_type_id,
                                      "qty": qty}])
        hold_id = h["holdId"]
    except httpx.HTTPStatusError as e:
        r.err = f"hold: HTTP {e.response.status_code}"
        if e.response.status_code == 409:
            r.ok, r.outcome = True, "SOLD_OUT"
        return r
    except httpx.HTTPError as e:
        r.err = f"hold: {e}"
        return r
    r.t_hold = time.perf_counter() - t0

    # 2) payment
    t1 = time.perf_counter()
    try:
        p = await bo.create_payment("mockpay", hold_id, "Load Tester", email)
        payment_id = p["paymentId"]
        redirect_url = p["redirectUrl"] or ""
    except httpx.HTTPError as e:
        r.err = f"payment: {e}"
        return r
    r.t_payment = time.perf_counter() - t1

    # 3) emit outcome (simulate clicking the button on the MockPay page)
    # redirect_url is like "/mockpay/{psid}"
    psid = redirect_url.rstrip("/").split("/")[-1]
    if not psid:
        r.err = f"bad redirectUrl: {redirect_url}"
        return r
    try:
        resp = await bo.http.post(
            f"{bo.base}/mockpay/{psid}/emit",
            data={"t": emit_kind},
            follow_redirects=False,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r

    # 4) poll
    t2 = time.perf_counter()
    res = await bo.poll_status(payment_id, interval=poll_interval_s,
                               timeout=poll_timeout_s)
    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = res.outcome
    return r


async def run_load(
    base: str,
    event_id: str,
    ticket_type_id: str,
    total: int,
    concurrency: int,
    qty: int = 1,
    fail_rate: float = 0.0,
    cancel_rate: float = 0.0,
    poll_interval_s: float = POLL_INTERVAL_SECONDS,
    poll_timeout_s: float = POLL_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, transport=transport, timeout=30.0,
        headers={"User-Agent": "BoxOfficeLoad/1.0"},
    ) as http:
        bo = BoxOfficeClient(http, base)

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "succeeded"
                res = await one_purchase(
                    bo, event_id, ticket_type_id, qty, emit_kind,
                    poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="BoxOffice load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event", required=True, help="Event id")
    ap.add_argument("--ticket-type", required=True, help="Ticket type id")
    ap.add_argument("--qty", type=int, default=1,
                    help="Tickets per purchase")
    ap.add_argument("--total", type=int, default=100,
                    help="Total purchases to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as canceled")
    ap.add_argument("--poll-interval", type=float,
                    default=POLL_INTERVAL_SECONDS,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float,
                    default=POLL_TIMEOUT_SECONDS,
                    help="Max seconds to wait for an outcome")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        event_id=args.event,
        ticket_type_id=args.ticket_type,
        total=args.total,
        concurrency=args.concurrency,
        qty=args.qty,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    print(stats.report(elapsed))


if __name__ == "__main__":
    main()
