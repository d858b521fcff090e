#!/usr/bin/env python3
"""
Indexer HTTP surface.

Tests:
1. Status carries sync progress and provider health
2. Logs endpoint returns the buffered entries
3. Sync trigger: 202, 404 for untracked tokens, 409 while running
4. Positions include lots and request-time unrealized PnL
"""
import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from pnl_indexer.api.routers.indexer import router
from pnl_indexer.engines.ledger import PositionLedger
from pnl_indexer.engines.pricing import PriceResolver
from pnl_indexer.ingestion.models import SyncCursor, TrackedToken
from pnl_indexer.providers.pool import ProviderPool
from pnl_indexer.workers.orchestrator import SyncOrchestrator

from conftest import ALICE, BASE_TIME, TOKEN, FakeClock, FakeMarket, FakeTradeSource, MemoryStore

UNIT = 10 ** 18

# Create test app
app = FastAPI()
app.include_router(router)
client = TestClient(app)


def make_runtime(store=None, prices=None):
    store = store or MemoryStore()
    triggered = []

    def start_sync(tokens=None):
        if triggered:
            raise RuntimeError("A sync run is already in progress")
        triggered.append(tokens)

    return SimpleNamespace(
        store=store,
        pool=ProviderPool.from_urls([("alchemy", "https://alchemy.example"), ("public", "https://public.example")], clock=FakeClock()),
        orchestrator=SyncOrchestrator(FakeTradeSource(), aggregator=None, ledger=PositionLedger(), store=store),
        pricer=PriceResolver(FakeMarket(prices or {})),
        start_sync=start_sync,
        triggered=triggered,
    )


@pytest.fixture
def runtime():
    app.state.runtime = make_runtime()
    yield app.state.runtime
    app.state.runtime = None


def test_status_includes_providers(runtime):
    response = client.get("/indexer/status")
    assert response.status_code == 200
    body = response.json()
    assert body["is_running"] is False
    assert body["estimated_seconds_remaining"] is None
    assert [p["name"] for p in body["providers"]] == ["alchemy", "public"]


def test_logs_returns_recent_entries(runtime):
    log = logging.getLogger("pnl_indexer.sync")
    for i in range(5):
        log.info(f"page {i} done")
    log.warning("slow provider")

    response = client.get("/indexer/logs", params={"limit": 3})
    body = response.json()
    assert body["count"] == 3
    assert [e["message"] for e in body["logs"]] == ["page 3 done", "page 4 done", "slow provider"]
    assert body["logs"][-1]["level"] == "warn"


def test_sync_trigger(runtime):
    asyncio.run(runtime.store.upsert_tracked_token(TrackedToken(address=TOKEN, symbol="BT")))

    response = client.post("/indexer/sync", json={"token": "0x" + "9" * 40})
    assert response.status_code == 404

    response = client.post("/indexer/sync", json={"token": TOKEN.upper().replace("0X", "0x")})
    assert response.status_code == 202
    assert response.json()["tokens"] == [TOKEN]

    response = client.post("/indexer/sync")
    assert response.status_code == 409


def test_sync_all_tokens(runtime):
    response = client.post("/indexer/sync")
    assert response.status_code == 202
    assert response.json() == {"status": "started", "tokens": "all"}
    assert runtime.triggered == [None]


def test_tokens_with_cursor(runtime):
    asyncio.run(runtime.store.upsert_tracked_token(TrackedToken(address=TOKEN, symbol="BT", decimals=18)))
    asyncio.run(runtime.store.save_cursor(SyncCursor(TOKEN, BASE_TIME + timedelta(hours=1), 42)))

    body = client.get("/indexer/tokens").json()
    assert body == [{
        "token_address": TOKEN,
        "symbol": "BT",
        "decimals": 18,
        "last_synced_block": None,
        "last_synced_time": (BASE_TIME + timedelta(hours=1)).isoformat(),
    }]


def test_positions_with_unrealized_pnl():
    store = MemoryStore()
    ledger = PositionLedger()

    async def build():
        await ledger.apply_buy(ALICE, TOKEN, 1_000_000 * UNIT, Decimal("0.01"), acquired_at=BASE_TIME, leg_id="0x01:a")
        await ledger.apply_sell(ALICE, TOKEN, 400_000 * UNIT, Decimal("0.02"), leg_id="0x02:b")

    asyncio.run(build())
    store.put_position(ledger.position(ALICE, TOKEN))
    app.state.runtime = make_runtime(store, prices={TOKEN: "0.03"})
    try:
        body = client.get("/indexer/positions", params={"wallet": ALICE}).json()
    finally:
        app.state.runtime = None

    position, = body
    assert position["state"] == "OPEN"
    assert position["remaining_amount"] == str(600_000 * UNIT)
    assert Decimal(str(position["realized_pnl_usd"])) == Decimal("4000")
    assert Decimal(str(position["cost_basis_usd"])) == Decimal("6000")
    assert Decimal(str(position["unrealized_pnl_usd"])) == Decimal("12000")
    assert position["lots"][0]["lot_id"] == "0x01:a"
    assert position["lots"][0]["acquired_at"] == BASE_TIME.isoformat()


def test_positions_without_price_leave_unrealized_null(runtime):
    position = PositionLedger()
    asyncio.run(position.apply_buy(ALICE, TOKEN, UNIT, Decimal("1")))
    runtime.store.put_position(position.position(ALICE, TOKEN))

    body = client.get("/indexer/positions", params={"token": TOKEN}).json()
    assert body[0]["unrealized_pnl_usd"] is None
    assert body[0]["current_price_usd"] is None


def test_runtime_missing_returns_503():
    app.state.runtime = None
    assert client.get("/indexer/status").status_code == 503


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
