"""
Shared fixtures: a fresh SQLite database per test, a seeded event, and an
HTTP client wired straight into the ASGI app.
"""

import os
import tempfile

# configuration is read at import time
os.environ['DATABASE_URL'] = (
    f"sqlite:///{os.path.join(tempfile.gettempdir(), 'boxoffice-unused.db')}"
)
os.environ['HOLD_SWEEP_INTERVAL_SECONDS'] = '0'
os.environ['MAIL_BACKEND'] = 'log'
os.environ['WEBHOOK_DEDUPE_BACKEND'] = 'db'
os.environ['MOCK_SECRET'] = 'test-mock-secret'
os.environ['FLOW_API_KEY'] = 'flow-api-key'
os.environ['FLOW_SECRET_KEY'] = 'flow-secret-key'
os.environ['OPERATOR_TOKEN'] = 'operator-token'
os.environ.setdefault('LOG_LEVEL', 'WARNING')

from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import text

from boxoffice.helpers import now_ts
from boxoffice.infra.sql import Database
from boxoffice.model import catalog, holds, payments
from boxoffice.model.db import Base, PAY_PAID
from boxoffice.model.inventory import ItemRequest
from boxoffice.model.payments import Buyer


@pytest.fixture
async def database(tmp_path):
    db = Database.from_url(f"sqlite:///{tmp_path / 'boxoffice.db'}")
    await db.create_schema(Base.metadata)
    yield db
    await db.dispose()


@pytest.fixture
async def event(database):
    """Published event with General (1000, cap 10) and VIP (5000, cap 1)."""
    event_id = await catalog.create_event(database, 'Test Fest',
                                          event_id='evt_test')
    ga = await catalog.create_ticket_type(
        database, event_id, 'General', 1000, 10, ticket_type_id='tt_ga'
    )
    vip = await catalog.create_ticket_type(
        database, event_id, 'VIP', 5000, 1, ticket_type_id='tt_vip'
    )
    return SimpleNamespace(id=event_id, ga=ga, vip=vip)


@pytest.fixture
def buyer():
    return Buyer(name='Ada Lovelace', email='Ada@Example.com')


# ---- helpers used across test modules ----

async def ticket_type_counts(database, ticket_type_id):
    async with database.transaction() as db:
        row = (await db.execute(
            text('SELECT capacity, sold, held FROM ticket_types WHERE id = :id'),
            {'id': ticket_type_id},
        )).mappings().first()
    return dict(row)


async def backdate_hold(database, hold_id, seconds=1.0):
    async with database.transaction() as db:
        await db.execute(
            text('UPDATE holds SET expires_at = :x WHERE id = :id'),
            {'x': now_ts() - seconds, 'id': hold_id},
        )


async def scalar(database, sql, **params):
    async with database.transaction() as db:
        return (await db.execute(text(sql), params)).scalar()


async def paid_payment(database, event, buyer, qty=2, provider='mockpay'):
    """Hold `qty` General tickets and mark the payment PAID."""
    view = await holds.create_or_reuse_hold(
        database, event.id, [ItemRequest(event.ga, qty)]
    )
    p = await payments.prepare_payment(database, view.id, provider, buyer)
    return await payments.apply_provider_status(database, p.id, PAY_PAID)


@pytest.fixture
async def app_client(database, monkeypatch):
    from boxoffice import server

    monkeypatch.setattr(server, 'database', database)
    await server._db_init()
    await server._http_client_start()
    await server._redis_start()
    await server._sweeper_start()

    transport = httpx.ASGITransport(app=server.app)
    original_http = server.app.state.http
    async with httpx.AsyncClient(transport=transport,
                                 base_url='http://testserver') as client:
        # the mock checkout page posts its webhook back into the app
        server.app.state.http = client
        try:
            yield client
        finally:
            server.app.state.http = original_http
            await server._sweeper_stop()
            await server._http_client_stop()
