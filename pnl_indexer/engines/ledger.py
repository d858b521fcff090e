"""
FIFO Position Ledger
====================
Per (wallet, token) cost-basis accounting.

- BUY legs open a new lot at the end of the queue.
- SELL legs consume lots oldest-first; realized PnL per lot is
  (sell_price - lot.unit_cost) * consumed.
- A SELL with no open position is skipped. A SELL larger than the open
  lots records the uncovered amount as a shortfall instead of a loss.
- Mutations for one key are serialized by a per-key asyncio.Lock.

Amounts are raw integers in the token's smallest unit; prices and PnL
are Decimal USD.
"""
import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from pnl_indexer.ingestion.amounts import to_human

logger = logging.getLogger("pnl_indexer.ledger")

ZERO = Decimal("0")

NO_POSITION = "NO_POSITION"
OPEN = "OPEN"

APPLIED = "applied"
PARTIAL = "partial"    # SELL exceeded tracked lots
SKIPPED = "skipped"    # SELL with no open position
DUPLICATE = "duplicate"

Key = Tuple[str, str]


@dataclass
class Lot:
    lot_id: str
    amount: int
    remaining: int
    unit_cost: Decimal  # USD per whole token
    decimals: int = 18
    acquired_at: Optional[datetime] = None
    tx_hash: Optional[str] = None

    @property
    def remaining_cost(self) -> Decimal:
        return self.unit_cost * to_human(self.remaining, self.decimals)


@dataclass
class Position:
    wallet_address: str
    token_address: str
    decimals: int = 18
    lots: Deque[Lot] = field(default_factory=deque)
    realized_pnl: Decimal = ZERO
    unmatched_sell_amount: int = 0
    lots_opened: int = 0  # Only grows; numbers fallback lot ids
    applied_legs: set = field(default_factory=set, repr=False)
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> Key:
        return (self.wallet_address, self.token_address)

    @property
    def remaining_amount(self) -> int:
        return sum(lot.remaining for lot in self.lots)

    @property
    def cost_basis_usd(self) -> Decimal:
        return sum((lot.remaining_cost for lot in self.lots), ZERO)

    @property
    def average_cost(self) -> Decimal:
        remaining = to_human(self.remaining_amount, self.decimals)
        if remaining <= 0:
            return ZERO
        return self.cost_basis_usd / remaining

    @property
    def state(self) -> str:
        return OPEN if self.remaining_amount > 0 else NO_POSITION

    def unrealized_pnl(self, current_price: Decimal) -> Decimal:
        remaining = to_human(self.remaining_amount, self.decimals)
        if remaining <= 0:
            return ZERO
        return (Decimal(current_price) - self.average_cost) * remaining


@dataclass
class LedgerOutcome:
    status: str
    wallet_address: str
    token_address: str
    realized_pnl: Decimal = ZERO
    consumed: int = 0
    shortfall: int = 0
    lot_id: Optional[str] = None

    @property
    def has_effect(self) -> bool:
        return self.status in (APPLIED, PARTIAL)


PositionLoader = Callable[[str, str], Awaitable[Optional[Position]]]


class PositionLedger:
    def __init__(self, loader: Optional[PositionLoader] = None):
        self.loader = loader
        self._positions: Dict[Key, Position] = {}
        self._locks: Dict[Key, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._dirty: set = set()

    @staticmethod
    def _key(wallet: str, token: str) -> Key:
        return (wallet.lower(), token.lower())

    async def _get(self, key: Key) -> Optional[Position]:
        position = self._positions.get(key)
        if position is None and self.loader is not None:
            position = await self.loader(*key)
            if position is not None:
                self._positions[key] = position
        return position

    async def apply_buy(
        self,
        wallet: str,
        token: str,
        amount: int,
        price: Decimal,
        cost_basis_usd: Optional[Decimal] = None,
        decimals: int = 18,
        leg_id: Optional[str] = None,
        acquired_at: Optional[datetime] = None,
        tx_hash: Optional[str] = None,
    ) -> LedgerOutcome:
        if amount <= 0:
            raise ValueError(f"BUY amount must be positive, got {amount}")
        key = self._key(wallet, token)
        async with self._locks[key]:
            position = await self._get(key)
            if position is None:
                position = Position(wallet_address=key[0], token_address=key[1], decimals=decimals)
                self._positions[key] = position
            if leg_id and leg_id in position.applied_legs:
                return LedgerOutcome(DUPLICATE, *key)

            human = to_human(amount, decimals)
            if cost_basis_usd is None:
                cost_basis_usd = Decimal(price) * human
            unit_cost = Decimal(cost_basis_usd) / human

            lot = Lot(
                lot_id=leg_id or f"{tx_hash or 'lot'}:{position.lots_opened}",
                amount=amount,
                remaining=amount,
                unit_cost=unit_cost,
                decimals=decimals,
                acquired_at=acquired_at,
                tx_hash=tx_hash,
            )
            position.lots.append(lot)
            position.lots_opened += 1
            position.updated_at = acquired_at or position.updated_at
            if leg_id:
                position.applied_legs.add(leg_id)
            self._dirty.add(key)
            return LedgerOutcome(APPLIED, *key, lot_id=lot.lot_id)

    async def apply_sell(
        self,
        wallet: str,
        token: str,
        amount: int,
        price: Decimal,
        decimals: int = 18,
        leg_id: Optional[str] = None,
        sold_at: Optional[datetime] = None,
    ) -> LedgerOutcome:
        if amount <= 0:
            raise ValueError(f"SELL amount must be positive, got {amount}")
        key = self._key(wallet, token)
        async with self._locks[key]:
            position = await self._get(key)
            if position is None or position.remaining_amount == 0:
                logger.info(f"SELL skipped: no open position for {key[0]} in {key[1]}")
                return LedgerOutcome(SKIPPED, *key, shortfall=amount)
            if leg_id and leg_id in position.applied_legs:
                return LedgerOutcome(DUPLICATE, *key)

            price = Decimal(price)
            left = amount
            consumed = 0
            realized = ZERO
            while left > 0 and position.lots:
                lot = position.lots[0]
                take = min(lot.remaining, left)
                realized += (price - lot.unit_cost) * to_human(take, lot.decimals)
                lot.remaining -= take
                left -= take
                consumed += take
                if lot.remaining == 0:
                    position.lots.popleft()

            position.realized_pnl += realized
            position.updated_at = sold_at or position.updated_at
            if leg_id:
                position.applied_legs.add(leg_id)
            self._dirty.add(key)

            if left > 0:
                position.unmatched_sell_amount += left
                logger.warning(
                    f"SELL shortfall for {key[0]} in {key[1]}: {left} raw units beyond tracked lots"
                )
                return LedgerOutcome(PARTIAL, *key, realized_pnl=realized, consumed=consumed, shortfall=left)
            return LedgerOutcome(APPLIED, *key, realized_pnl=realized, consumed=consumed)

    async def unrealized_pnl(self, wallet: str, token: str, current_price: Decimal) -> Decimal:
        """(current_price - average remaining cost) * remaining amount. Not stored."""
        position = await self._get(self._key(wallet, token))
        if position is None:
            return ZERO
        return position.unrealized_pnl(current_price)

    # ----- Cache management -----

    def position(self, wallet: str, token: str) -> Optional[Position]:
        return self._positions.get(self._key(wallet, token))

    def positions(self, token: Optional[str] = None) -> List[Position]:
        token = token.lower() if token else None
        return [p for k, p in self._positions.items() if token is None or k[1] == token]

    def load(self, positions: Iterable[Position]):
        for position in positions:
            self._positions[position.key] = position

    def take_dirty(self) -> List[Position]:
        """Positions changed since the last call."""
        dirty = [self._positions[k] for k in self._dirty if k in self._positions]
        self._dirty.clear()
        return dirty

    def evict(self, keys: Optional[Iterable[Key]] = None):
        """Drop cached state so it is reloaded from the store on next use."""
        if keys is None:
            keys = list(self._positions)
            self._dirty.clear()
        for key in keys:
            self._positions.pop(key, None)
            self._dirty.discard(key)
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]
