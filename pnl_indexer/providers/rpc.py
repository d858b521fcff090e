"""
Chain Reader
============
JSON-RPC reads against the provider pool: block number, transaction and
receipt lookup, raw logs, ERC-20 decimals and per-transaction Transfer events.
"""
import logging
from typing import Any, List, Optional

import httpx

from pnl_indexer.core.cache import TTLCache
from pnl_indexer.core.constants import DECIMALS_SELECTOR, DEFAULT_DECIMALS, TRANSFER_TOPIC
from pnl_indexer.core.errors import (
    AuthError,
    IndexerError,
    MalformedResponseError,
    QueryError,
    RateLimitError,
    is_auth_message,
    is_rate_limit_message,
)
from pnl_indexer.ingestion.models import TransferEvent
from pnl_indexer.providers.pool import Provider, ProviderPool

logger = logging.getLogger("pnl_indexer.rpc")


def _topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def decode_transfer_logs(tx_hash: str, logs: List[dict]) -> List[TransferEvent]:
    events = []
    for log in logs or []:
        topics = log.get("topics") or []
        if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
            continue
        data = log.get("data") or "0x0"
        try:
            amount = int(data, 16) if data not in ("0x", "") else 0
        except ValueError:
            continue
        events.append(TransferEvent(
            tx_hash=tx_hash.lower(),
            token_address=(log.get("address") or "").lower(),
            from_address=_topic_to_address(topics[1]),
            to_address=_topic_to_address(topics[2]),
            amount=amount,
            log_index=int(log.get("logIndex", "0x0"), 16),
        ))
    return events


class ChainReader:
    def __init__(
        self,
        pool: ProviderPool,
        http_client: Optional[httpx.AsyncClient] = None,
        decimals_cache: Optional[TTLCache] = None,
        transfer_cache: Optional[TTLCache] = None,
    ):
        self.pool = pool
        self.http = http_client or httpx.AsyncClient(timeout=pool.timeout)
        self.decimals_cache = decimals_cache if decimals_cache is not None else TTLCache(ttl=24 * 3600)
        self.transfer_cache = transfer_cache if transfer_cache is not None else TTLCache(ttl=600, max_entries=2000)
        self._request_id = 0

    async def aclose(self):
        await self.http.aclose()

    async def _rpc(self, method: str, params: list, race: bool = False) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        async def call(provider: Provider):
            resp = await self.http.post(provider.url, json=payload)
            resp.raise_for_status()
            body = resp.json()
            if not isinstance(body, dict):
                raise MalformedResponseError(f"{method}: non-object JSON-RPC response")
            error = body.get("error")
            if error:
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                if is_rate_limit_message(message):
                    raise RateLimitError(message)
                if is_auth_message(message):
                    raise AuthError(message)
                raise QueryError(f"{method}: {message}")
            if "result" not in body:
                raise MalformedResponseError(f"{method}: missing result")
            return body["result"]

        if race:
            return await self.pool.race_all(call)
        return await self.pool.execute(call)

    async def block_number(self) -> int:
        result = await self._rpc("eth_blockNumber", [], race=True)
        return int(result, 16)

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return await self._rpc("eth_getTransactionByHash", [tx_hash])

    async def get_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self._rpc("eth_getTransactionReceipt", [tx_hash])

    async def get_logs(self, address: str, topics: list, from_block: int, to_block: int) -> List[dict]:
        params = {
            "address": address,
            "topics": topics,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        return await self._rpc("eth_getLogs", [params]) or []

    async def token_decimals(self, token_address: str) -> int:
        token_address = token_address.lower()
        cached = self.decimals_cache.get(token_address)
        if cached is not None:
            return cached
        try:
            result = await self._rpc("eth_call", [{"to": token_address, "data": DECIMALS_SELECTOR}, "latest"])
            decimals = int(result, 16) if result and result != "0x" else DEFAULT_DECIMALS
        except (IndexerError, ValueError) as e:
            logger.warning(f"decimals() lookup failed for {token_address}, using {DEFAULT_DECIMALS}: {e}")
            return DEFAULT_DECIMALS
        self.decimals_cache.set(token_address, decimals)
        return decimals

    async def transfers_in_tx(self, tx_hash: str, token_address: Optional[str] = None) -> List[TransferEvent]:
        """ERC-20 Transfer events emitted in a transaction, optionally for one token."""
        tx_hash = tx_hash.lower()
        events = self.transfer_cache.get(tx_hash)
        if events is None:
            receipt = await self.get_receipt(tx_hash)
            if not receipt:
                return []
            events = decode_transfer_logs(tx_hash, receipt.get("logs", []))
            self.transfer_cache.set(tx_hash, events)
        if token_address:
            token_address = token_address.lower()
            return [e for e in events if e.token_address == token_address]
        return list(events)
