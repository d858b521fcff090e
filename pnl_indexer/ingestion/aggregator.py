"""
Leg Aggregator
==============
Turns a TransactionGroup into normalized TradeLegs (side, acting wallet,
raw amounts, USD price, fee flag) and a SwapTransaction summary.
"""
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from pnl_indexer.core.constants import DEFAULT_DECIMALS
from pnl_indexer.core.errors import LegNormalizationError
from pnl_indexer.engines.pricing import PriceRequest, PriceResolver
from pnl_indexer.ingestion.amounts import to_raw_amount
from pnl_indexer.ingestion.fees import FeeClassifier
from pnl_indexer.ingestion.models import (
    BUY,
    SELL,
    Currency,
    RawTrade,
    SwapTransaction,
    TrackedToken,
    TradeLeg,
    TransactionGroup,
)
from pnl_indexer.ingestion.wallets import WalletResolver

logger = logging.getLogger("pnl_indexer.aggregator")

DecimalsLookup = Callable[[str], Awaitable[int]]


class LegAggregator:
    def __init__(
        self,
        tracked: Dict[str, TrackedToken],
        resolver: WalletResolver,
        classifier: FeeClassifier,
        pricer: PriceResolver,
        decimals_lookup: Optional[DecimalsLookup] = None,
    ):
        self.tracked = {a.lower(): t for a, t in tracked.items()}
        self.resolver = resolver
        self.classifier = classifier
        self.pricer = pricer
        self.decimals_lookup = decimals_lookup
        self.skipped_legs = 0

    async def decimals_for(self, currency: Currency) -> int:
        """Trade source decimals, then tracked-token config, then on-chain, then 18."""
        if currency.decimals is not None:
            return currency.decimals
        tracked = self.tracked.get(currency.address)
        if tracked is not None:
            return tracked.decimals
        if self.decimals_lookup is not None:
            return await self.decimals_lookup(currency.address)
        return DEFAULT_DECIMALS

    def detect_side(self, trade: RawTrade, token_address: Optional[str] = None) -> Optional[str]:
        """BUY when the tracked token is the bought currency, SELL when it is sold."""
        if token_address:
            token_address = token_address.lower()
            if trade.buy.currency.address == token_address:
                return BUY
            if trade.sell.currency.address == token_address:
                return SELL
            return None
        if trade.buy.currency.address in self.tracked:
            return BUY
        if trade.sell.currency.address in self.tracked:
            return SELL
        return None

    async def build_leg(self, trade: RawTrade, index: int, token_address: Optional[str] = None) -> Optional[TradeLeg]:
        side = self.detect_side(trade, token_address)
        if side is None:
            return None

        tracked_side, counter_side = (trade.buy, trade.sell) if side == BUY else (trade.sell, trade.buy)
        token = tracked_side.currency.address
        token_decimals = await self.decimals_for(tracked_side.currency)
        counter_decimals = await self.decimals_for(counter_side.currency)
        token_amount = to_raw_amount(tracked_side.amount, token_decimals)
        counter_amount = to_raw_amount(counter_side.amount, counter_decimals)
        if token_amount == 0:
            raise LegNormalizationError(f"zero {token} amount in {trade.tx_hash}")

        match = await self.resolver.resolve(trade, side, token)
        if match is None:
            raise LegNormalizationError(f"no wallet could be resolved for {trade.tx_hash}")

        verdict = self.classifier.classify(trade)
        quote = await self.pricer.price_for(PriceRequest(
            token_address=token,
            token_amount=token_amount,
            token_decimals=token_decimals,
            counter_address=counter_side.currency.address,
            counter_amount=counter_amount,
            counter_decimals=counter_decimals,
            counter_usd=counter_side.amount_usd,
            token_usd=tracked_side.amount_usd,
        ))

        if side == BUY:
            token_in, amount_in, decimals_in = counter_side.currency.address, counter_amount, counter_decimals
            token_out, amount_out, decimals_out = token, token_amount, token_decimals
        else:
            token_in, amount_in, decimals_in = token, token_amount, token_decimals
            token_out, amount_out, decimals_out = counter_side.currency.address, counter_amount, counter_decimals

        return TradeLeg(
            tx_hash=trade.tx_hash,
            leg_index=index,
            signature=trade.signature,
            side=side,
            wallet_address=match.address,
            wallet_source=match.source,
            token_address=token,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_out,
            decimals_in=decimals_in,
            decimals_out=decimals_out,
            block_number=trade.block_number,
            block_time=trade.block_time,
            price_usd=quote.price,
            usd_notional=quote.notional,
            price_source=quote.source,
            is_fee=verdict.is_fee,
            fee_reason=verdict.reason if verdict.is_fee else None,
            protocol=(trade.protocol_name or trade.protocol_family or "").lower() or None,
        )

    async def build_legs(self, group: TransactionGroup, token_address: Optional[str] = None) -> List[TradeLeg]:
        legs = []
        for trade in group.trades:
            try:
                leg = await self.build_leg(trade, len(legs), token_address)
            except LegNormalizationError as e:
                self.skipped_legs += 1
                logger.warning(f"Skipping leg in {group.tx_hash}: {e}")
                continue
            if leg is not None:
                legs.append(leg)
        return legs

    def aggregate(self, group: TransactionGroup, legs: List[TradeLeg], token_address: str) -> SwapTransaction:
        net_in: Dict[str, int] = defaultdict(int)
        net_out: Dict[str, int] = defaultdict(int)
        net_usd = Decimal("0")
        fee_legs = 0
        for leg in legs:
            if leg.is_fee:
                fee_legs += 1
                continue
            net_in[leg.token_in] += leg.amount_in
            net_out[leg.token_out] += leg.amount_out
            net_usd += leg.usd_notional

        protocols = {
            (t.protocol_name or t.protocol_family).lower()
            for t in group.trades
            if t.protocol_name or t.protocol_family
        }
        initiator = group.tx_from or (legs[0].wallet_address if legs else None)
        return SwapTransaction(
            tx_hash=group.tx_hash,
            token_address=token_address.lower(),
            block_number=group.block_number,
            block_time=group.block_time,
            wallet_initiator=initiator,
            protocols=protocols,
            net_token_in=dict(net_in),
            net_token_out=dict(net_out),
            net_usd=net_usd,
            legs_count=len(legs),
            fee_legs_count=fee_legs,
        )
