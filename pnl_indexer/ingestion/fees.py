"""
Protocol Fee Filter
===================
Flags legs that look like protocol fee-locker sweeps rather than user trades.
This is a heuristic (small notional + known protocol name), so flagged legs
are kept and persisted with their reason; they only lose their ledger effect.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from pnl_indexer.core.constants import (
    FEE_FLAG_USD,
    FEE_LOCKER_ADDRESSES,
    FEE_LOCKER_PROTOCOL_PATTERNS,
    FEE_MAX_USD,
)
from pnl_indexer.ingestion.models import RawTrade


@dataclass(frozen=True)
class FeeVerdict:
    is_fee: bool
    reason: Optional[str] = None


NOT_A_FEE = FeeVerdict(False)


class FeeClassifier:
    def __init__(
        self,
        protocol_patterns: Iterable[str] = FEE_LOCKER_PROTOCOL_PATTERNS,
        max_usd: Decimal = FEE_MAX_USD,
        flag_usd: Decimal = FEE_FLAG_USD,
        denylist: Iterable[str] = FEE_LOCKER_ADDRESSES,
    ):
        self.protocol_patterns = tuple(p.lower() for p in protocol_patterns)
        self.max_usd = max_usd
        self.flag_usd = min(flag_usd, max_usd)
        self.denylist = {a.lower() for a in denylist}

    def matches_protocol(self, trade: RawTrade) -> bool:
        names = " ".join(n for n in (trade.protocol_name, trade.protocol_family) if n).lower()
        return any(p in names for p in self.protocol_patterns)

    def classify(self, trade: RawTrade) -> FeeVerdict:
        counterparties = {trade.buy.counterparty, trade.sell.counterparty, trade.dex_address}
        if self.denylist and self.denylist & {c for c in counterparties if c}:
            return FeeVerdict(True, "fee-locker address")

        if not self.matches_protocol(trade):
            return NOT_A_FEE

        notionals = [v for v in (trade.buy.amount_usd, trade.sell.amount_usd) if v is not None and v > 0]
        if not notionals:
            return NOT_A_FEE
        smallest = min(notionals)
        if smallest >= self.max_usd:
            return NOT_A_FEE
        if smallest < self.flag_usd:
            return FeeVerdict(True, f"{trade.protocol_name or trade.protocol_family} notional ${smallest:.4f}")
        return FeeVerdict(False, f"near fee threshold (${smallest:.4f})")
