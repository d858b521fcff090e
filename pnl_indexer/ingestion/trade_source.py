"""
Trade Source Client
===================
Pulls the full DEX trade history for a tracked token from the GraphQL
trade-history service, one time window at a time, and groups the legs
by transaction hash.

Pagination rules:
- windows are PAGE_WINDOW_SECONDS wide, rows ordered ascending by block time
- a non-empty page restarts at last trade time + 1s
- an empty page advances by the whole window
- two consecutive empty pages, or reaching the end time, stops the scan
- a full page holds back its last second and restarts at it, so a second
  split by the row limit is fetched whole on the next page
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from pnl_indexer.core.constants import (
    GRAPHQL_TIMEOUT_SECONDS,
    INCEPTION_FALLBACK_DAYS,
    MAX_CONSECUTIVE_EMPTY_PAGES,
    PAGE_DELAY_SECONDS,
    PAGE_ROW_LIMIT,
    PAGE_WINDOW_SECONDS,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_SECONDS,
)
from pnl_indexer.core.errors import (
    AuthError,
    IndexerError,
    LegNormalizationError,
    MalformedResponseError,
    QueryError,
    RateLimitError,
    classify_error,
    is_rate_limit_message,
)
from pnl_indexer.ingestion import queries
from pnl_indexer.ingestion.models import (
    Currency,
    RawSide,
    RawTrade,
    TradePage,
    TransactionGroup,
)

logger = logging.getLogger("pnl_indexer.trade_source")

ONE_SECOND = timedelta(seconds=1)


# ----- Parsing helpers -----

def parse_time(value: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_time(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _optional_decimal(value) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def _optional_int(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _lower(value) -> Optional[str]:
    return value.lower() if isinstance(value, str) and value else None


def _parse_side(side: dict, counterparty_field: str) -> RawSide:
    currency = side.get("Currency") or {}
    address = _lower(currency.get("SmartContract"))
    if not address:
        raise LegNormalizationError("currency address missing")
    amount = side.get("Amount")
    if amount in (None, ""):
        raise LegNormalizationError(f"amount missing for {address}")
    return RawSide(
        amount=str(amount),
        currency=Currency(
            address=address,
            symbol=currency.get("Symbol"),
            decimals=_optional_int(currency.get("Decimals")),
        ),
        amount_usd=_optional_decimal(side.get("AmountInUSD")),
        price_usd=_optional_decimal(side.get("PriceInUSD")),
        counterparty=_lower(side.get(counterparty_field)),
    )


def trade_signature(trade: RawTrade) -> str:
    parts = [
        trade.tx_hash,
        trade.buy.currency.address,
        trade.sell.currency.address,
        trade.buy.amount,
        trade.sell.amount,
        trade.buy.counterparty or "",
        trade.sell.counterparty or "",
    ]
    return "|".join(str(p) for p in parts).lower()


def parse_raw_trade(row: dict) -> RawTrade:
    """Normalize one DEXTrades row. Raises LegNormalizationError on missing fields."""
    try:
        block = row["Block"]
        tx = row["Transaction"]
        trade = row["Trade"]
        tx_hash = _lower(tx["Hash"])
        block_time = parse_time(block["Time"])
        block_number = int(block["Number"])
        buy = trade["Buy"]
        sell = trade["Sell"]
    except (KeyError, TypeError, ValueError) as e:
        raise LegNormalizationError(f"malformed trade row: {e!r}")
    if not tx_hash:
        raise LegNormalizationError("transaction hash missing")

    dex = trade.get("Dex") or {}
    raw = RawTrade(
        tx_hash=tx_hash,
        block_number=block_number,
        block_time=block_time,
        buy=_parse_side(buy, "Buyer"),
        sell=_parse_side(sell, "Seller"),
        tx_from=_lower(tx.get("From")),
        tx_to=_lower(tx.get("To")),
        protocol_name=dex.get("ProtocolName"),
        protocol_family=dex.get("ProtocolFamily"),
        dex_address=_lower(dex.get("SmartContract")),
    )
    raw.signature = trade_signature(raw)
    return raw


def group_trades(trades: List[RawTrade]) -> List[TransactionGroup]:
    groups: Dict[str, TransactionGroup] = {}
    for trade in trades:
        group = groups.get(trade.tx_hash)
        if group is None:
            group = TransactionGroup(
                tx_hash=trade.tx_hash,
                block_number=trade.block_number,
                block_time=trade.block_time,
                tx_from=trade.tx_from,
            )
            groups[trade.tx_hash] = group
        group.add(trade)
    return sort_groups(groups.values())


def sort_groups(groups) -> List[TransactionGroup]:
    return sorted(groups, key=lambda g: (g.block_number, g.block_time))


def _evm_rows(data: dict, collection: str) -> list:
    evm = data.get("EVM")
    if not isinstance(evm, dict) or not isinstance(evm.get(collection), list):
        raise MalformedResponseError(f"response missing EVM.{collection}")
    return evm[collection]


def _mask(key: str) -> str:
    if not key:
        return "missing"
    return f"{key[:4]}...{key[-4:]}" if len(key) > 8 else "***"


class TradeSourceClient:
    def __init__(
        self,
        api_key: str,
        endpoints: List[str],
        network: str = "base",
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        window_seconds: int = PAGE_WINDOW_SECONDS,
        row_limit: int = PAGE_ROW_LIMIT,
        page_delay: float = PAGE_DELAY_SECONDS,
        max_attempts: int = RETRY_MAX_ATTEMPTS,
    ):
        if not endpoints:
            raise ValueError("at least one trade source endpoint is required")
        self.api_key = api_key
        self.endpoints = list(dict.fromkeys(e.strip() for e in endpoints if e.strip()))
        self.active_endpoint = self.endpoints[0]
        self.network = network
        self.http = http_client or httpx.AsyncClient(timeout=GRAPHQL_TIMEOUT_SECONDS)
        self.sleep = sleep
        self.now = now
        self.window = timedelta(seconds=window_seconds)
        self.row_limit = row_limit
        self.page_delay = page_delay
        self.max_attempts = max_attempts
        self.calls = 0

    async def aclose(self):
        await self.http.aclose()

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-API-KEY": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
        }

    async def execute_query(self, query: str, variables: dict) -> dict:
        """
        POST one GraphQL document. A 401 rotates through the known endpoints
        once each before failing with AuthError.
        """
        ordered = [self.active_endpoint] + [e for e in self.endpoints if e != self.active_endpoint]
        for endpoint in ordered:
            self.calls += 1
            try:
                resp = await self.http.post(
                    endpoint,
                    json={"query": query, "variables": variables},
                    headers=self._headers(),
                )
            except httpx.HTTPError as e:
                raise classify_error(e) from e

            if resp.status_code == 401:
                logger.warning(f"401 Unauthorized from {endpoint} (key={_mask(self.api_key)})")
                continue
            try:
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise classify_error(e) from e

            if endpoint != self.active_endpoint:
                logger.info(f"Trade source endpoint rotated to {endpoint}")
                self.active_endpoint = endpoint

            try:
                body = resp.json()
            except ValueError:
                raise MalformedResponseError("response body is not JSON")
            if not isinstance(body, dict):
                raise MalformedResponseError("response body is not an object")

            errors = body.get("errors")
            if errors:
                messages = "; ".join(
                    (e.get("message") if isinstance(e, dict) else str(e)) or "unknown" for e in errors
                )
                if is_rate_limit_message(messages):
                    raise RateLimitError(messages)
                raise QueryError(f"GraphQL errors: {messages}")

            data = body.get("data")
            if not isinstance(data, dict):
                raise MalformedResponseError("response missing data")
            return data

        raise AuthError(f"401 Unauthorized on all {len(ordered)} trade source endpoints")

    async def with_retry(self, fn: Callable[[], Awaitable], label: str = "query"):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except IndexerError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                delay = min(RETRY_BASE_DELAY_SECONDS * 2 ** (attempt - 1), RETRY_MAX_DELAY_SECONDS)
                logger.warning(f"{label} failed (attempt {attempt}/{self.max_attempts}), retrying in {delay}s: {e}")
                await self.sleep(delay)

    async def _query_rows(self, template: str, variables: dict, collection: str) -> list:
        query = queries.render(template, self.network)

        async def run():
            data = await self.execute_query(query, variables)
            return _evm_rows(data, collection)

        return await self.with_retry(run, label=collection)

    # ----- Inception -----

    async def fetch_inception(self, token_address: str) -> Optional[datetime]:
        """Earliest trade (or, failing that, transfer) time for the token."""
        token = token_address.lower()
        for template, collection in (
            (queries.FIRST_TRADE_QUERY, "DEXTrades"),
            (queries.FIRST_TRANSFER_QUERY, "Transfers"),
        ):
            try:
                rows = await self._query_rows(template, {"token": token}, collection)
            except AuthError:
                raise
            except IndexerError as e:
                logger.warning(f"Inception lookup via {collection} failed for {token}: {e}")
                continue
            if rows:
                block = rows[0].get("Block") or {}
                if block.get("Time"):
                    inception = parse_time(block["Time"])
                    logger.info(f"Inception for {token}: block {block.get('Number')} at {inception.isoformat()} ({collection})")
                    return inception
        logger.warning(f"Could not determine inception for {token}")
        return None

    async def resolve_start(self, token_address: str, from_time: Optional[datetime]) -> datetime:
        if from_time is not None:
            return from_time
        inception = await self.fetch_inception(token_address)
        if inception is not None:
            return inception
        fallback = self.now() - timedelta(days=INCEPTION_FALLBACK_DAYS)
        logger.warning(f"Falling back to {INCEPTION_FALLBACK_DAYS}-day lookback for {token_address}")
        return fallback

    # ----- Pagination -----

    async def fetch_page_rows(self, token: str, since: datetime, till: datetime) -> list:
        variables = {
            "token": token,
            "since": format_time(since),
            "till": format_time(till),
            "limit": self.row_limit,
        }
        return await self._query_rows(queries.TRADES_PAGE_QUERY, variables, "DEXTrades")

    async def iter_pages(
        self,
        token_address: str,
        from_time: datetime,
        to_time: Optional[datetime] = None,
    ) -> AsyncIterator[TradePage]:
        token = token_address.lower()
        to_time = to_time or self.now()
        window_start = from_time
        empty_pages = 0
        page_number = 0
        previous_signatures: set = set()

        while window_start <= to_time:
            if page_number:
                await self.sleep(self.page_delay)
            window_end = min(window_start + self.window, to_time)
            rows = await self.fetch_page_rows(token, window_start, window_end)
            page_number += 1

            trades = []
            parsed_times = []
            skipped = 0
            for row in rows:
                try:
                    trade = parse_raw_trade(row)
                except LegNormalizationError as e:
                    skipped += 1
                    logger.warning(f"Skipping malformed trade row on page {page_number}: {e}")
                    continue
                parsed_times.append(trade.block_time)
                # Rows outside the requested window come from overlapping pages
                if trade.block_time < window_start or trade.block_time > window_end:
                    continue
                if trade.signature in previous_signatures:
                    continue
                trades.append(trade)

            page = TradePage(
                number=page_number,
                window_start=window_start,
                window_end=window_end,
                row_count=len(rows),
                skipped_rows=skipped,
            )

            if not rows:
                empty_pages += 1
                page.resume_from = window_end
                logger.info(f"Page {page_number}: empty window {format_time(window_start)}..{format_time(window_end)}")
                yield page
                if empty_pages >= MAX_CONSECUTIVE_EMPTY_PAGES or window_end >= to_time:
                    break
                window_start = window_end
                continue
            empty_pages = 0

            if not trades:
                # Rows arrived but none were new or usable
                in_window = [t for t in parsed_times if window_start <= t <= window_end]
                if len(rows) >= self.row_limit and in_window:
                    page.resume_from = max(in_window) + ONE_SECOND
                else:
                    page.resume_from = window_end + ONE_SECOND
                yield page
                window_start = page.resume_from
                continue

            last_time = max(t.block_time for t in trades)
            next_start = last_time + ONE_SECOND
            if len(rows) >= self.row_limit:
                earlier = [t for t in trades if t.block_time < last_time]
                if earlier:
                    trades = earlier
                    next_start = last_time
                else:
                    logger.warning(
                        f"Page {page_number}: {len(rows)} rows share {format_time(last_time)}, "
                        f"row limit reached, advancing past it"
                    )

            page.groups = group_trades(trades)
            page.last_trade_time = max(t.block_time for t in trades)
            page.last_block_number = max(t.block_number for t in trades)
            page.resume_from = next_start
            previous_signatures = {t.signature for t in trades}
            logger.info(
                f"Page {page_number}: {len(rows)} rows, {page.trade_count} legs in "
                f"{len(page.groups)} transactions up to {format_time(page.last_trade_time)}"
            )
            yield page
            window_start = next_start

    async def fetch_all_trades(
        self,
        token_address: str,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
        on_page: Optional[Callable[[TradePage], None]] = None,
    ) -> List[TransactionGroup]:
        """Every TransactionGroup for the token in [from_time, to_time], sorted by block."""
        start = await self.resolve_start(token_address, from_time)
        merged: Dict[str, TransactionGroup] = {}
        async for page in self.iter_pages(token_address, start, to_time):
            for group in page.groups:
                existing = merged.get(group.tx_hash)
                if existing is None:
                    merged[group.tx_hash] = group
                else:
                    existing.merge(group)
            if on_page:
                on_page(page)
        return sort_groups(merged.values())
