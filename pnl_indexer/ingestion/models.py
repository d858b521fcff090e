from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict

BUY = "BUY"
SELL = "SELL"


@dataclass
class TrackedToken:
    address: str
    symbol: Optional[str] = None
    decimals: int = 18
    last_synced_block: Optional[int] = None


@dataclass
class Currency:
    address: str
    symbol: Optional[str] = None
    decimals: Optional[int] = None


@dataclass
class RawSide:
    """One side (bought or sold currency) of a trade as reported upstream."""
    amount: str  # Human-readable decimal string
    currency: Currency
    amount_usd: Optional[Decimal] = None
    price_usd: Optional[Decimal] = None
    counterparty: Optional[str] = None  # Buyer for the buy side, Seller for the sell side


@dataclass
class RawTrade:
    tx_hash: str
    block_number: int
    block_time: datetime
    buy: RawSide
    sell: RawSide
    tx_from: Optional[str] = None
    tx_to: Optional[str] = None
    protocol_name: Optional[str] = None
    protocol_family: Optional[str] = None
    dex_address: Optional[str] = None
    signature: str = ""


@dataclass
class TransactionGroup:
    """Every trade leg sharing one transaction hash."""
    tx_hash: str
    block_number: int
    block_time: datetime
    tx_from: Optional[str] = None
    trades: List[RawTrade] = field(default_factory=list)
    signatures: set = field(default_factory=set, repr=False)

    def add(self, trade: RawTrade) -> bool:
        if trade.signature in self.signatures:
            return False
        self.signatures.add(trade.signature)
        self.trades.append(trade)
        if not self.tx_from and trade.tx_from:
            self.tx_from = trade.tx_from
        return True

    def merge(self, other: "TransactionGroup") -> int:
        return sum(1 for t in other.trades if self.add(t))


@dataclass
class TradePage:
    number: int
    window_start: datetime
    window_end: datetime
    row_count: int
    groups: List[TransactionGroup] = field(default_factory=list)
    last_trade_time: Optional[datetime] = None
    last_block_number: Optional[int] = None
    resume_from: Optional[datetime] = None  # Start of the next window
    skipped_rows: int = 0

    @property
    def trade_count(self) -> int:
        return sum(len(g.trades) for g in self.groups)


@dataclass
class TradeLeg:
    tx_hash: str
    leg_index: int
    signature: str
    side: str  # BUY | SELL from the acting wallet's perspective
    wallet_address: str
    token_address: str  # The tracked token
    token_in: str
    token_out: str
    amount_in: int  # Smallest unit
    amount_out: int
    decimals_in: int
    decimals_out: int
    block_number: int
    block_time: datetime
    wallet_source: str = "unknown"
    price_usd: Decimal = Decimal("0")
    usd_notional: Decimal = Decimal("0")
    price_source: str = "unpriced"
    is_fee: bool = False
    fee_reason: Optional[str] = None
    protocol: Optional[str] = None

    @property
    def token_amount(self) -> int:
        """Raw amount of the tracked token moved by this leg."""
        return self.amount_out if self.side == BUY else self.amount_in

    @property
    def token_decimals(self) -> int:
        return self.decimals_out if self.side == BUY else self.decimals_in

    @property
    def leg_id(self) -> str:
        return f"{self.tx_hash}:{self.signature}"


@dataclass
class SwapTransaction:
    tx_hash: str
    token_address: str
    block_number: int
    block_time: datetime
    wallet_initiator: Optional[str] = None
    protocols: set = field(default_factory=set)
    net_token_in: Dict[str, int] = field(default_factory=dict)
    net_token_out: Dict[str, int] = field(default_factory=dict)
    net_usd: Decimal = Decimal("0")
    legs_count: int = 0
    fee_legs_count: int = 0


@dataclass
class TransferEvent:
    tx_hash: str
    token_address: str
    from_address: str
    to_address: str
    amount: int
    log_index: int = 0


@dataclass
class SyncCursor:
    token_address: str
    last_block_time: Optional[datetime] = None
    last_block_number: Optional[int] = None
    updated_at: Optional[datetime] = None
