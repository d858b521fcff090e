"""
Persistence interface used by the sync pipeline.

Every write is an idempotent upsert keyed by natural identifiers, so
re-ingesting the same trades is a no-op. Writes for one batch of
transactions go through a UnitOfWork that commits or rolls back as one.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, List, Optional

from pnl_indexer.engines.ledger import Position
from pnl_indexer.ingestion.models import SwapTransaction, SyncCursor, TrackedToken, TradeLeg


class UnitOfWork(ABC):
    @abstractmethod
    async def lock_token(self, token_address: str):
        """Block other writers of this token's positions until the unit of work ends."""

    @abstractmethod
    async def load_position(self, wallet_address: str, token_address: str) -> Optional[Position]:
        """Read a position as seen inside this unit of work."""

    @abstractmethod
    async def upsert_transaction(self, tx: SwapTransaction):
        pass

    @abstractmethod
    async def insert_leg(self, leg: TradeLeg) -> bool:
        """Insert a leg; False when (tx_hash, signature) already exists."""

    @abstractmethod
    async def set_leg_outcome(self, leg: TradeLeg, status: str, realized_pnl: Decimal = Decimal("0")):
        pass

    @abstractmethod
    async def upsert_wallet(self, wallet_address: str, token_address: str, seen_at: datetime) -> bool:
        """Record a trading wallet; True the first time it is seen for the token."""

    @abstractmethod
    async def save_position(self, position: Position):
        """Replace the stored position and its open lots."""


class TradeStore(ABC):
    @abstractmethod
    def unit_of_work(self) -> AsyncContextManager[UnitOfWork]:
        pass

    @abstractmethod
    async def upsert_tracked_token(self, token: TrackedToken):
        pass

    @abstractmethod
    async def list_tracked_tokens(self) -> List[TrackedToken]:
        pass

    @abstractmethod
    async def get_cursor(self, token_address: str) -> Optional[SyncCursor]:
        pass

    @abstractmethod
    async def save_cursor(self, cursor: SyncCursor):
        pass

    @abstractmethod
    async def load_position(self, wallet_address: str, token_address: str) -> Optional[Position]:
        pass

    @abstractmethod
    async def list_positions(
        self,
        token_address: Optional[str] = None,
        wallet_address: Optional[str] = None,
        limit: int = 100,
    ) -> List[Position]:
        pass

    @abstractmethod
    async def start_run(self, token_address: str, started_at: datetime) -> int:
        pass

    @abstractmethod
    async def finish_run(self, run_id: int, status: str, stats: dict, error: Optional[str] = None):
        pass
