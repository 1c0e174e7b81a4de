from __future__ import annotations
import os
from typing import Any, Dict, Mapping, Optional

import httpx
import redis.asyncio as redis
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .config import (
    DATABASE_URL, HOLD_SWEEP_INTERVAL_SECONDS, MOCK_WEBHOOK_URL,
    REDIS_MAX_CONN, REDIS_URL, RETURN_FAILURE_PATH, RETURN_SUCCESS_PATH,
)
from .errors import (
    AmountMismatch, BoxOfficeError, HoldExpired, HoldNotFinalizable,
    ProviderAuthenticityFailure,
)
from .infra import timings
from .infra.sql import Database
from .infra.timings import timeit
from .logs import get_logger, security_logger
from .mailer import Mailer, new_mailer
from .model import finalizer, holds, inventory, notify, payments, reconcile
from .model.db import Base, PAY_PAID, PAYMENT_OPEN
from .model.inventory import ItemRequest
from .model.payments import Buyer, PaymentRecord
from .model.webhookevents import (
    BACKEND as DEDUPE_BACKEND, WebhookEventStore, new_store,
)
from .providers import (
    MockPay, PaymentAdapter, ProviderCallback, build_registry, get_adapter,
)
from .providers.mockpay import OUTCOMES
from .schemas import (
    HoldCreateRequest, PaymentCreateRequest, PaymentCreateResponse,
)
from .sweeper import start_sweeper, stop_sweeper

log = get_logger("server")
security_log = security_logger("server")

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

database = Database.from_url(DATABASE_URL)


def get_db() -> Database:
    return database


app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)


def providers() -> Mapping[str, PaymentAdapter]:
    registry = getattr(app.state, "providers", None)
    if registry is None:
        raise RuntimeError("payment providers not initialized")
    return registry


def mailer() -> Mailer:
    m = getattr(app.state, "mailer", None)
    if m is None:
        raise RuntimeError("mailer not initialized")
    return m


async def webhook_events(
    db: Database = Depends(get_db),
) -> WebhookEventStore:
    return new_store(database=db, r=getattr(app.state, "redis", None))


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info("BoxOffice is starting up (db: {}, webhook dedupe: {})",
             database.engine.url.get_backend_name(), DEDUPE_BACKEND)


@app.on_event("startup")
async def _db_init():
    await database.create_schema(Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=128, max_keepalive_connections=64
        ),
    )
    app.state.providers = build_registry(app.state.http)
    app.state.mailer = new_mailer(app.state.http)


@app.on_event("startup")
async def _redis_start():
    if DEDUPE_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _sweeper_start():
    app.state.sweeper = start_sweeper(database, HOLD_SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def _sweeper_stop():
    await stop_sweeper(getattr(app.state, "sweeper", None))
    app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await database.dispose()


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(BoxOfficeError)
async def _domain_error(request: Request, exc: BoxOfficeError):
    if exc.status_code >= 500:
        log.error("{} {} -> {}: {}", request.method, request.url.path,
                  exc.code, exc.message)
    content: Dict[str, Any] = {
        "ok": False, "error": exc.code, "detail": exc.message,
    }
    if exc.context:
        content["context"] = exc.context
    return ORJSONResponse(status_code=exc.status_code, content=content)


# ----------------------------
# Helpers
# ----------------------------
def _schedule_notify(background: BackgroundTasks, db: Database,
                     order_id: Optional[str], m: Mailer) -> None:
    if order_id:
        background.add_task(notify.notify_quietly, db, order_id, m)


async def _apply_callback(
    db: Database, provider: str, cb: ProviderCallback,
    background: BackgroundTasks, m: Mailer,
) -> Dict[str, Any]:
    """Provider said something about a payment: record it, finalize if paid."""
    payment = await payments.find_payment(db, provider, cb)
    if payment is None:
        # answer 200 so the provider stops retrying
        log.warning("{} callback for unknown payment (ref {})",
                    provider, cb.provider_ref)
        return {"ok": True, "ignored": True}

    async with timeit(f"callback.{provider}.apply"):
        payment = await payments.apply_provider_status(
            db, payment.id, cb.local_status, provider_ref=cb.provider_ref
        )
    out: Dict[str, Any] = {
        "ok": True,
        "paymentId": payment.id,
        "paymentStatus": payment.status,
        "orderId": payment.order_id,
    }
    if payment.status == PAY_PAID:
        try:
            res = await finalizer.finalize(db, payment.id)
        except (AmountMismatch, HoldExpired, HoldNotFinalizable) as e:
            out["issue"] = e.code
            return out
        out["orderId"] = res.order_id
        _schedule_notify(background, db, res.order_id, m)
    return out


async def _verify(adapter: PaymentAdapter, request: Request,
                  is_return: bool = False) -> ProviderCallback:
    payload = await request.body()
    verify = adapter.verify_return if is_return else adapter.verify_callback
    try:
        return await verify(payload, request.headers, request.query_params)
    except ProviderAuthenticityFailure as e:
        host = request.client.host if request.client else "?"
        security_log.warning("{} callback rejected from {}: {}",
                             adapter.name, host, e.message)
        raise


# ----------------------------
# Holds & inventory
# ----------------------------
@app.post("/holds")
async def create_hold(
    body: HoldCreateRequest,
    db: Database = Depends(get_db),
):
    view = await holds.create_or_reuse_hold(
        db,
        body.event_id,
        [ItemRequest(i.ticket_type_id, i.qty) for i in body.items],
        hold_id=body.hold_id,
        ttl_seconds=body.ttl_seconds,
    )
    return {"ok": True, **view.to_dict()}


@app.get("/holds/{hold_id}")
async def get_hold(hold_id: str, db: Database = Depends(get_db)):
    view = await holds.get_hold(db, hold_id)
    return {"ok": True, **view.to_dict()}


@app.post("/holds/{hold_id}/release")
async def release_hold(hold_id: str, db: Database = Depends(get_db)):
    view = await holds.release_hold(db, hold_id)
    return {"ok": True, "holdId": view.id, "status": view.status}


@app.get("/events/{event_id}/inventory")
async def get_inventory(event_id: str, db: Database = Depends(get_db)):
    async with timeit("inventory.read"):
        items = await inventory.compute_inventory(db, event_id)
    return {"ok": True, "eventId": event_id, "ticketTypes": items}


# ----------------------------
# Payments
# ----------------------------
@app.post("/payments/transfer/confirm")
async def confirm_transfer(
    request: Request,
    background: BackgroundTasks,
    db: Database = Depends(get_db),
    reg: Mapping[str, PaymentAdapter] = Depends(providers),
    m: Mailer = Depends(mailer),
):
    adapter = get_adapter(reg, "transfer")
    cb = await _verify(adapter, request)
    log.info("operator confirmation for payment {}: {}",
             cb.payment_id, cb.local_status)
    return await _apply_callback(db, adapter.name, cb, background, m)


@app.post("/payments/{provider}/create")
async def create_payment(
    provider: str,
    body: PaymentCreateRequest,
    background: BackgroundTasks,
    db: Database = Depends(get_db),
    reg: Mapping[str, PaymentAdapter] = Depends(providers),
    m: Mailer = Depends(mailer),
):
    adapter = get_adapter(reg, provider)
    buyer = Buyer(name=body.buyer_name, email=body.buyer_email,
                  owner_email=body.owner_email)
    async with timeit(f"payments.{adapter.name}.create"):
        payment, extra = await payments.create_provider_session(
            db, adapter, body.hold_id, buyer
        )
    if body.amount_minor is not None \
            and body.amount_minor != payment.amount_minor:
        log.warning("payment {}: client amount {} ignored, charging {}",
                    payment.id, body.amount_minor, payment.amount_minor)

    if payment.status == PAY_PAID and not payment.order_id:
        try:
            res = await finalizer.finalize(db, payment.id)
            payment.order_id = res.order_id
            _schedule_notify(background, db, res.order_id, m)
        except (AmountMismatch, HoldExpired, HoldNotFinalizable) as e:
            log.warning("payment {} paid but not finalizable: {}",
                        payment.id, e.code)

    return _payment_response(payment, extra)


def _payment_response(payment: PaymentRecord,
                      extra: Dict[str, Any]) -> Dict[str, Any]:
    return PaymentCreateResponse(
        status=payment.status,
        payment_id=payment.id,
        hold_id=payment.hold_id,
        amount_minor=payment.amount_minor,
        currency=payment.currency,
        redirect_url=payment.redirect_url,
        reference=extra.get("reference"),
        instructions=extra.get("instructions"),
        order_id=payment.order_id,
    ).model_dump(by_alias=True)


@app.api_route("/payments/{provider}/webhook", methods=["GET", "POST"])
async def payments_webhook(
    provider: str,
    request: Request,
    background: BackgroundTasks,
    db: Database = Depends(get_db),
    reg: Mapping[str, PaymentAdapter] = Depends(providers),
    events: WebhookEventStore = Depends(webhook_events),
    m: Mailer = Depends(mailer),
):
    adapter = get_adapter(reg, provider)
    cb = await _verify(adapter, request)

    if await events.is_seen(adapter.name, cb.event_id):
        return {"ok": True, "idempotent": True}

    out = await _apply_callback(db, adapter.name, cb, background, m)
    # only after it was handled, so a crashed attempt is retried
    await events.mark_event_seen(adapter.name, cb.event_id)
    return out


@app.api_route("/payments/{provider}/return", methods=["GET", "POST"])
async def payments_return(
    provider: str,
    request: Request,
    background: BackgroundTasks,
    db: Database = Depends(get_db),
    reg: Mapping[str, PaymentAdapter] = Depends(providers),
    m: Mailer = Depends(mailer),
):
    adapter = get_adapter(reg, provider)
    cb = await _verify(adapter, request, is_return=True)
    out = await _apply_callback(db, adapter.name, cb, background, m)

    payment_id = out.get("paymentId")
    status = out.get("paymentStatus")
    if payment_id is None:
        url = f"{RETURN_FAILURE_PATH}?status=unknown"
    elif status == PAY_PAID or status in PAYMENT_OPEN:
        url = f"{RETURN_SUCCESS_PATH}?payment_id={payment_id}"
    else:
        url = (f"{RETURN_FAILURE_PATH}?status={status.lower()}"
               f"&payment_id={payment_id}")
    return RedirectResponse(url=url, status_code=303)


@app.get("/payments/status")
async def payment_status(
    payment_id: str,
    background: BackgroundTasks,
    db: Database = Depends(get_db),
    reg: Mapping[str, PaymentAdapter] = Depends(providers),
    m: Mailer = Depends(mailer),
):
    async with timeit("payments.status"):
        view = await reconcile.get_status(db, payment_id, adapters=reg)
    if view.has_unsent:
        _schedule_notify(background, db, view.payment.order_id, m)
    return view.to_dict()


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
def _mockpay(reg: Mapping[str, PaymentAdapter]) -> MockPay:
    adapter = get_adapter(reg, "mockpay")
    assert isinstance(adapter, MockPay)
    return adapter


@app.get("/mockpay/{psid}", response_class=HTMLResponse)
async def mockpay_screen(
    request: Request, psid: str,
    reg: Mapping[str, PaymentAdapter] = Depends(providers),
):
    sess = _mockpay(reg).session(psid)
    if not sess:
        raise HTTPException(404, "payment session not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "psid": psid,
        "payment_id": sess["payment_id"],
        "amount": f"{int(sess['amount_minor']):,}",
        "currency": sess["currency"].upper(),
        "status": sess["status"],
        "outcomes": OUTCOMES,
    })


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str, request: Request,
    reg: Mapping[str, PaymentAdapter] = Depends(providers),
):
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in OUTCOMES:
        raise HTTPException(400, detail="invalid kind")

    mock = _mockpay(reg)
    if not mock.session(psid):
        raise HTTPException(404, "payment session not found")
    payload, headers = mock.complete(psid, kind)

    client_http: httpx.AsyncClient = app.state.http
    try:
        await client_http.post(MOCK_WEBHOOK_URL, content=payload,
                               headers=headers)
    except httpx.HTTPError as e:
        # the return redirect and status polling still catch up
        log.warning("mockpay webhook delivery failed: {}", e)

    return RedirectResponse(url=mock.return_url(psid), status_code=303)


# ----------------------------
# Ops
# ----------------------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/api/timings")
async def api_timings():
    return {"ok": True, "timings": timings.snapshot()}
