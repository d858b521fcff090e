"""
Wallet Resolution
=================
The trade source often reports a router or pool as buyer/seller. The acting
wallet is resolved by an ordered list of strategies; the first confident
match wins, otherwise the first tentative one.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from pnl_indexer.core.constants import KNOWN_ROUTER_CONTRACTS, ZERO_ADDRESS
from pnl_indexer.core.errors import IndexerError
from pnl_indexer.ingestion.models import BUY, RawTrade

logger = logging.getLogger("pnl_indexer.wallets")


@dataclass(frozen=True)
class WalletMatch:
    address: str
    source: str
    confident: bool = True


class WalletStrategy(ABC):
    name = "base"

    def __init__(self, routers: Iterable[str] = KNOWN_ROUTER_CONTRACTS):
        self.routers = {r.lower() for r in routers}

    def contracts_for(self, trade: RawTrade, side: str, token_address: str) -> Set[str]:
        """Routers plus the contracts taking part in this trade: its pool, the token and the other side."""
        opposite = trade.sell.counterparty if side == BUY else trade.buy.counterparty
        extra = {trade.dex_address, token_address.lower() if token_address else None, opposite}
        return self.routers | {a for a in extra if a}

    @abstractmethod
    async def resolve(self, trade: RawTrade, side: str, token_address: str) -> Optional[WalletMatch]:
        pass


class TransferLookupStrategy(WalletStrategy):
    """Recipient (BUY) or sender (SELL) of the token's Transfer events in the same tx."""
    name = "transfer"

    def __init__(self, transfers, routers: Iterable[str] = KNOWN_ROUTER_CONTRACTS):
        super().__init__(routers)
        self.transfers = transfers

    async def resolve(self, trade, side, token_address):
        if self.transfers is None:
            return None
        try:
            events = await self.transfers.transfers_in_tx(trade.tx_hash, token_address)
        except IndexerError as e:
            logger.debug(f"Transfer lookup failed for {trade.tx_hash}: {e}")
            return None

        contracts = self.contracts_for(trade, side, token_address)
        for event in events:
            address = event.to_address if side == BUY else event.from_address
            if address and address != ZERO_ADDRESS and address not in contracts:
                return WalletMatch(address, self.name)
        return None


class ReportedCounterpartyStrategy(WalletStrategy):
    """Buyer/Seller field as reported by the trade source."""
    name = "reported"

    async def resolve(self, trade, side, token_address):
        address = trade.buy.counterparty if side == BUY else trade.sell.counterparty
        if not address or address == ZERO_ADDRESS:
            return None
        contracts = self.contracts_for(trade, side, token_address)
        return WalletMatch(address, self.name, confident=address not in contracts)


class TransactionSenderStrategy(WalletStrategy):
    name = "tx_sender"

    async def resolve(self, trade, side, token_address):
        if not trade.tx_from or trade.tx_from == ZERO_ADDRESS:
            return None
        return WalletMatch(trade.tx_from, self.name)


class WalletResolver:
    def __init__(self, strategies: List[WalletStrategy]):
        self.strategies = list(strategies)

    @classmethod
    def default(cls, transfers=None) -> "WalletResolver":
        return cls([
            TransferLookupStrategy(transfers),
            ReportedCounterpartyStrategy(),
            TransactionSenderStrategy(),
        ])

    async def resolve(self, trade: RawTrade, side: str, token_address: str) -> Optional[WalletMatch]:
        tentative = None
        for strategy in self.strategies:
            match = await strategy.resolve(trade, side, token_address)
            if match is None:
                continue
            if match.confident:
                return match
            if tentative is None:
                tentative = match
        return tentative
