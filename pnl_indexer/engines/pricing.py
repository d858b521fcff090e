"""
Price Resolver
==============
USD price and notional for a trade leg.

Precedence:
1. counter-asset USD notional reported by the trade source / tracked amount
   (the tracked side's own USD notional is used when only that is present)
2. counter-asset amount / tracked amount * counter-asset market price
3. tracked token's current market price
Anything left is "unpriced" with zero values.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Optional

import httpx

from pnl_indexer.core.cache import TTLCache
from pnl_indexer.core.constants import (
    DEXSCREENER_TOKENS_API,
    MARKET_REQUEST_TIMEOUT_SECONDS,
    MAX_USD_VALUE,
    NATIVE_ETH_ADDRESS,
    PRICE_CACHE_TTL_SECONDS,
    PRICE_QUANTUM,
    STABLECOIN_ADDRESSES,
    USD_QUANTUM,
    WETH_ADDRESS,
)
from pnl_indexer.ingestion.amounts import to_human

logger = logging.getLogger("pnl_indexer.pricing")

ZERO = Decimal("0")


def clamp_usd(value, quantum: Decimal = USD_QUANTUM) -> Decimal:
    """Clamp to the NUMERIC storage range and quantize."""
    if value is None:
        return ZERO
    with localcontext() as ctx:
        ctx.prec = 80
        try:
            d = Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            return ZERO
        if not d.is_finite():
            return ZERO
        if d > MAX_USD_VALUE:
            d = MAX_USD_VALUE
        elif d < -MAX_USD_VALUE:
            d = -MAX_USD_VALUE
        return d.quantize(quantum)


def clamp_price(value) -> Decimal:
    return clamp_usd(value, PRICE_QUANTUM)


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    notional: Decimal
    source: str

    @property
    def priced(self) -> bool:
        return self.source != "unpriced"


UNPRICED = PriceQuote(ZERO, ZERO, "unpriced")


@dataclass
class PriceRequest:
    token_address: str
    token_amount: int  # Raw, smallest unit
    token_decimals: int
    counter_address: str
    counter_amount: int
    counter_decimals: int
    counter_usd: Optional[Decimal] = None
    token_usd: Optional[Decimal] = None


class MarketPriceClient:
    """
    Best-known USD price per token from DexScreener, using the pair with the
    deepest liquidity. Stablecoins are pinned to $1 and native ETH uses WETH.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[TTLCache] = None,
        timeout: float = MARKET_REQUEST_TIMEOUT_SECONDS,
        api_url: str = DEXSCREENER_TOKENS_API,
    ):
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.cache = cache if cache is not None else TTLCache(ttl=PRICE_CACHE_TTL_SECONDS)
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")

    async def aclose(self):
        await self.http.aclose()

    async def usd_price(self, token_address: str) -> Optional[Decimal]:
        address = (token_address or "").lower()
        if not address:
            return None
        if address in STABLECOIN_ADDRESSES:
            return Decimal("1")
        if address == NATIVE_ETH_ADDRESS:
            address = WETH_ADDRESS

        cached = self.cache.get(address)
        if cached is not None:
            return cached

        try:
            resp = await self.http.get(f"{self.api_url}/{address}", timeout=self.timeout)
            resp.raise_for_status()
            pairs = resp.json().get("pairs") or []
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"Market price fetch failed for {address}: {e}")
            return None

        price = best_pair_price(pairs, address)
        if price is None:
            logger.info(f"No priced pairs for {address}")
            return None
        self.cache.set(address, price)
        return price


def best_pair_price(pairs: list, address: str) -> Optional[Decimal]:
    """priceUsd of the highest-liquidity pair quoting the token as base."""
    def liquidity(pair):
        try:
            return float((pair.get("liquidity") or {}).get("usd") or 0)
        except (TypeError, ValueError):
            return 0.0

    candidates = [
        p for p in pairs
        if isinstance(p, dict) and p.get("priceUsd")
        and ((p.get("baseToken") or {}).get("address") or "").lower() == address
    ]
    if not candidates:
        return None
    best = max(candidates, key=liquidity)
    try:
        price = Decimal(str(best["priceUsd"]))
    except InvalidOperation:
        return None
    return price if price.is_finite() and price > 0 else None


class PriceResolver:
    def __init__(self, market: MarketPriceClient):
        self.market = market

    async def price_for(self, req: PriceRequest) -> PriceQuote:
        token_human = to_human(req.token_amount, req.token_decimals)
        if token_human <= 0:
            return UNPRICED

        if req.counter_usd is not None and req.counter_usd > 0:
            return self._quote(req.counter_usd / token_human, req.counter_usd, "counter_usd")
        if req.token_usd is not None and req.token_usd > 0:
            return self._quote(req.token_usd / token_human, req.token_usd, "token_usd")

        counter_human = to_human(req.counter_amount, req.counter_decimals)
        if counter_human > 0:
            counter_price = await self.market.usd_price(req.counter_address)
            if counter_price:
                notional = counter_human * counter_price
                return self._quote(notional / token_human, notional, "ratio")

        current = await self.market.usd_price(req.token_address)
        if current:
            return self._quote(current, current * token_human, "market")

        logger.debug(f"Unpriced leg for {req.token_address}")
        return UNPRICED

    async def current_price(self, token_address: str) -> Optional[Decimal]:
        return await self.market.usd_price(token_address)

    @staticmethod
    def _quote(price: Decimal, notional: Decimal, source: str) -> PriceQuote:
        return PriceQuote(clamp_price(price), clamp_usd(notional), source)
