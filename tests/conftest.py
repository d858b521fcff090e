"""
Shared fixtures: in-memory store, fake clock, fake market prices and
builders for trade-history rows shaped like the GraphQL responses.
"""
import asyncio
import copy
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pnl_indexer.engines.ledger import PositionLedger
from pnl_indexer.engines.pricing import PriceResolver
from pnl_indexer.ingestion.aggregator import LegAggregator
from pnl_indexer.ingestion.fees import FeeClassifier
from pnl_indexer.ingestion.models import SyncCursor, TrackedToken
from pnl_indexer.ingestion.trade_source import format_time
from pnl_indexer.ingestion.wallets import (
    ReportedCounterpartyStrategy,
    TransactionSenderStrategy,
    WalletResolver,
)
from pnl_indexer.storage.store import TradeStore, UnitOfWork

TOKEN = "0x0774409cda69a47f272907fd5d0d80173167bb07"
USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
WETH = "0x4200000000000000000000000000000000000006"
POOL = "0x1111111111111111111111111111111111111111"
ROUTER = "0x498581ff718922c3f8e6a244956af099b2652b2b"
ALICE = "0xa11ce00000000000000000000000000000000001"
BOB = "0xb0b0000000000000000000000000000000000002"

BASE_TIME = datetime(2024, 6, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeMarket:
    """Stands in for MarketPriceClient."""

    def __init__(self, prices=None):
        self.prices = {k.lower(): Decimal(str(v)) for k, v in (prices or {}).items()}
        self.calls = []

    async def usd_price(self, address):
        self.calls.append(address.lower())
        return self.prices.get(address.lower())

    async def aclose(self):
        pass


def trade_row(
    tx_hash: str,
    when: datetime,
    side: str,
    wallet: str,
    token_amount: str,
    counter_amount: str,
    counter_usd=None,
    block: int = 1,
    token: str = TOKEN,
    counter: str = USDC,
    counter_decimals: int = 6,
    protocol: str = "uniswap_v3",
    tx_from: str = None,
) -> dict:
    """One DEXTrades row. side is from the wallet's perspective on `token`."""
    token_currency = {"Symbol": "BT", "SmartContract": token, "Decimals": 18}
    counter_currency = {"Symbol": "USDC", "SmartContract": counter, "Decimals": counter_decimals}
    counter_usd = None if counter_usd is None else str(counter_usd)
    if side == "BUY":
        buy = {"Amount": token_amount, "AmountInUSD": None, "Currency": token_currency, "Buyer": wallet}
        sell = {"Amount": counter_amount, "AmountInUSD": counter_usd, "Currency": counter_currency, "Seller": POOL}
    else:
        buy = {"Amount": counter_amount, "AmountInUSD": counter_usd, "Currency": counter_currency, "Buyer": POOL}
        sell = {"Amount": token_amount, "AmountInUSD": None, "Currency": token_currency, "Seller": wallet}
    return {
        "Block": {"Time": format_time(when), "Number": block},
        "Transaction": {"Hash": tx_hash, "From": tx_from or wallet, "To": ROUTER},
        "Trade": {
            "Buy": buy,
            "Sell": sell,
            "Dex": {"ProtocolName": protocol, "ProtocolFamily": "Uniswap", "SmartContract": POOL},
        },
    }


# ----- In-memory store -----

class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store):
        self.store = store
        self.locks = []
        self.transactions = {}
        self.legs = {}
        self.wallets = {}
        self.positions = {}

    async def lock_token(self, token_address):
        lock = self.store.token_locks[token_address.lower()]
        await lock.acquire()
        self.locks.append(lock)

    async def load_position(self, wallet_address, token_address):
        key = (wallet_address.lower(), token_address.lower())
        position = self.positions.get(key) or self.store.positions.get(key)
        return copy.deepcopy(position) if position else None

    async def upsert_transaction(self, tx):
        self.transactions[(tx.tx_hash, tx.token_address)] = tx

    async def insert_leg(self, leg):
        key = (leg.tx_hash, leg.signature)
        if self.store.fail_on_signature and leg.signature == self.store.fail_on_signature:
            raise RuntimeError("simulated database failure")
        if key in self.store.legs or key in self.legs:
            return False
        self.legs[key] = {"leg": leg, "status": None, "realized_pnl": Decimal("0")}
        return True

    async def set_leg_outcome(self, leg, status, realized_pnl=Decimal("0")):
        record = self.legs[(leg.tx_hash, leg.signature)]
        record["status"] = status
        record["realized_pnl"] = realized_pnl

    async def upsert_wallet(self, wallet_address, token_address, seen_at):
        key = (wallet_address, token_address)
        is_new = key not in self.store.wallets and key not in self.wallets
        self.wallets[key] = seen_at
        return is_new

    async def save_position(self, position):
        self.positions[position.key] = copy.deepcopy(position)

    def commit(self):
        self.store.transactions.update(self.transactions)
        self.store.legs.update(self.legs)
        self.store.wallets.update(self.wallets)
        self.store.positions.update(self.positions)
        self.store.commits += 1


class MemoryStore(TradeStore):
    def __init__(self):
        self.tokens = {}
        self.cursors = {}
        self.transactions = {}
        self.legs = {}
        self.wallets = {}
        self.positions = {}
        self.runs = {}
        self.commits = 0
        self.fail_on_signature = None
        self.token_locks = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def unit_of_work(self):
        uow = MemoryUnitOfWork(self)
        try:
            yield uow
            uow.commit()
        finally:
            for lock in uow.locks:
                lock.release()

    async def upsert_tracked_token(self, token):
        self.tokens[token.address.lower()] = token

    async def list_tracked_tokens(self):
        return list(self.tokens.values())

    async def get_cursor(self, token_address):
        return self.cursors.get(token_address.lower())

    async def save_cursor(self, cursor):
        self.cursors[cursor.token_address.lower()] = SyncCursor(
            token_address=cursor.token_address.lower(),
            last_block_time=cursor.last_block_time,
            last_block_number=cursor.last_block_number,
        )

    async def load_position(self, wallet_address, token_address):
        position = self.positions.get((wallet_address.lower(), token_address.lower()))
        return copy.deepcopy(position) if position else None

    async def list_positions(self, token_address=None, wallet_address=None, limit=100):
        out = [
            copy.deepcopy(p) for (w, t), p in self.positions.items()
            if (token_address is None or t == token_address.lower())
            and (wallet_address is None or w == wallet_address.lower())
        ]
        return out[:limit]

    async def start_run(self, token_address, started_at):
        run_id = len(self.runs) + 1
        self.runs[run_id] = {"token": token_address, "status": "running", "started_at": started_at}
        return run_id

    async def finish_run(self, run_id, status, stats, error=None):
        self.runs[run_id].update({"status": status, "stats": stats, "error": error})

    def put_position(self, position):
        self.positions[position.key] = copy.deepcopy(position)

    def legs_for(self, wallet=None):
        return [
            r for r in self.legs.values()
            if wallet is None or r["leg"].wallet_address == wallet
        ]


class FakeTradeSource:
    """iter_pages over pre-built pages; records the start times it was asked for."""

    def __init__(self, pages_by_token=None, inception=BASE_TIME, fail_tokens=()):
        self.pages_by_token = pages_by_token or {}
        self.inception = inception
        self.fail_tokens = set(fail_tokens)
        self.requested = []

    async def resolve_start(self, token_address, from_time):
        return from_time if from_time is not None else self.inception

    async def iter_pages(self, token_address, from_time, to_time=None):
        self.requested.append((token_address, from_time))
        if token_address in self.fail_tokens:
            raise RuntimeError(f"upstream exploded for {token_address}")
        for page in self.pages_by_token.get(token_address, []):
            yield page


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market():
    return FakeMarket({WETH: "3000"})


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tracked_token():
    return TrackedToken(address=TOKEN, symbol="BT", decimals=18)


@pytest.fixture
def aggregator(market, tracked_token):
    return LegAggregator(
        tracked={TOKEN: tracked_token},
        resolver=WalletResolver([ReportedCounterpartyStrategy(), TransactionSenderStrategy()]),
        classifier=FeeClassifier(),
        pricer=PriceResolver(market),
    )


@pytest.fixture
def ledger(store):
    return PositionLedger(loader=store.load_position)


@pytest.fixture(autouse=True)
def _detach_log_buffers():
    yield
    logger = logging.getLogger("pnl_indexer")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


def minutes(n: int) -> timedelta:
    return timedelta(minutes=n)
