"""
Object graph for one indexer process: provider pool, HTTP clients, caches,
pipeline components and the orchestrator are built once here and shared
by the worker loop and the API.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from pnl_indexer.core import config
from pnl_indexer.core.cache import TTLCache
from pnl_indexer.core.constants import GRAPHQL_TIMEOUT_SECONDS, PRICE_CACHE_TTL_SECONDS, PROVIDER_TIMEOUT_SECONDS
from pnl_indexer.engines.ledger import PositionLedger
from pnl_indexer.engines.pricing import MarketPriceClient, PriceResolver
from pnl_indexer.ingestion.aggregator import LegAggregator
from pnl_indexer.ingestion.fees import FeeClassifier
from pnl_indexer.ingestion.models import TrackedToken
from pnl_indexer.ingestion.trade_source import TradeSourceClient
from pnl_indexer.ingestion.wallets import WalletResolver
from pnl_indexer.providers.pool import ProviderPool
from pnl_indexer.providers.rpc import ChainReader
from pnl_indexer.storage.postgres import PostgresStore
from pnl_indexer.storage.store import TradeStore
from pnl_indexer.workers.orchestrator import SyncOrchestrator

logger = logging.getLogger("pnl_indexer.runtime")


@dataclass
class Runtime:
    store: TradeStore
    pool: ProviderPool
    chain: ChainReader
    source: TradeSourceClient
    pricer: PriceResolver
    ledger: PositionLedger
    orchestrator: SyncOrchestrator
    sync_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def start_sync(self, tokens: Optional[List[TrackedToken]] = None) -> asyncio.Task:
        """Kick off run_all in the background. Raises RuntimeError if one is active."""
        if self.orchestrator.status.is_running or (self.sync_task and not self.sync_task.done()):
            raise RuntimeError("A sync run is already in progress")
        self.sync_task = asyncio.create_task(self._run(tokens))
        return self.sync_task

    async def _run(self, tokens):
        try:
            return await self.orchestrator.run_all(tokens)
        except Exception as e:
            logger.error(f"Background sync aborted: {e}")
            raise

    async def aclose(self):
        if self.sync_task and not self.sync_task.done():
            self.sync_task.cancel()
            await asyncio.gather(self.sync_task, return_exceptions=True)
        await self.chain.aclose()
        await self.source.aclose()
        await self.pricer.market.aclose()


async def seed_tracked_tokens(runtime: "Runtime", configs=None) -> List[TrackedToken]:
    """Upsert configured tokens, reading decimals() on-chain where not given."""
    configs = config.TRACKED_TOKENS if configs is None else configs
    tokens = []
    for cfg in configs:
        decimals = cfg.decimals
        if decimals is None:
            decimals = await runtime.chain.token_decimals(cfg.address)
        token = TrackedToken(address=cfg.address, symbol=cfg.symbol, decimals=decimals)
        await runtime.store.upsert_tracked_token(token)
        tokens.append(token)
    logger.info(f"Seeded {len(tokens)} tracked tokens")
    return tokens


def build_runtime(store: Optional[TradeStore] = None) -> Runtime:
    config.require_settings()
    store = store or PostgresStore()

    pool = ProviderPool.from_urls(config.RPC_PROVIDERS)
    chain = ChainReader(pool, http_client=httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS))
    source = TradeSourceClient(
        api_key=config.BITQUERY_API_KEY,
        endpoints=[config.BITQUERY_ENDPOINT] + config.BITQUERY_FALLBACK_ENDPOINTS,
        network=config.BITQUERY_NETWORK,
        http_client=httpx.AsyncClient(timeout=GRAPHQL_TIMEOUT_SECONDS),
    )
    pricer = PriceResolver(MarketPriceClient(cache=TTLCache(ttl=PRICE_CACHE_TTL_SECONDS)))
    ledger = PositionLedger(loader=store.load_position)
    aggregator = LegAggregator(
        tracked={},
        resolver=WalletResolver.default(transfers=chain),
        classifier=FeeClassifier(),
        pricer=pricer,
        decimals_lookup=chain.token_decimals,
    )
    orchestrator = SyncOrchestrator(source, aggregator, ledger, store)
    logger.info(f"Runtime built with {len(pool.providers)} RPC providers")
    return Runtime(
        store=store,
        pool=pool,
        chain=chain,
        source=source,
        pricer=pricer,
        ledger=ledger,
        orchestrator=orchestrator,
    )
