"""
Sync Orchestrator
=================
Per tracked token: discovery -> aggregation -> pricing -> ledger -> persistence.

Each trade page is fully processed before the next one is requested.
Groups are committed in batches of SYNC_BATCH_SIZE, one unit of work per
batch, and the token's cursor moves forward after every page. A failing
token is recorded and the next token still runs.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from pnl_indexer.core.constants import CURSOR_SAFETY_LAG_SECONDS, SYNC_BATCH_SIZE
from pnl_indexer.core.errors import ConfigError
from pnl_indexer.core.logger import SUCCESS, LogBuffer, attach_log_buffer
from pnl_indexer.engines.ledger import PARTIAL, SKIPPED, LedgerOutcome, PositionLedger
from pnl_indexer.ingestion.aggregator import LegAggregator
from pnl_indexer.ingestion.models import BUY, SyncCursor, TrackedToken, TradeLeg, TransactionGroup
from pnl_indexer.ingestion.trade_source import TradeSourceClient
from pnl_indexer.storage.store import TradeStore

logger = logging.getLogger("pnl_indexer.sync")

MAX_STATUS_ERRORS = 50
FEE_EXCLUDED = "fee_excluded"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenSyncResult:
    token_address: str
    status: str = "running"
    pages_processed: int = 0
    transactions_processed: int = 0
    trades_found: int = 0
    duplicate_legs: int = 0
    wallets_found: int = 0
    fees_filtered: int = 0
    skipped_sells: int = 0
    shortfalls: int = 0
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncStatus:
    is_running: bool = False
    current_token: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    token_started_at: Optional[datetime] = None
    current_page: int = 0
    pages_processed: int = 0
    transactions_processed: int = 0
    trades_found: int = 0
    wallets_found: int = 0
    fees_filtered: int = 0
    skipped_sells: int = 0
    tokens_completed: int = 0
    tokens_failed: int = 0
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    covered_until: Optional[datetime] = None
    errors: List[dict] = field(default_factory=list)

    def elapsed_seconds(self, now: datetime) -> float:
        if not self.started_at:
            return 0.0
        end = now if self.is_running else (self.finished_at or now)
        return max(0.0, (end - self.started_at).total_seconds())

    def estimated_seconds_remaining(self, now: datetime) -> Optional[float]:
        """Linear estimate from how much of the current token's time range is covered."""
        if not (self.is_running and self.range_start and self.range_end and self.covered_until and self.token_started_at):
            return None
        total = (self.range_end - self.range_start).total_seconds()
        done = (min(self.covered_until, self.range_end) - self.range_start).total_seconds()
        if total <= 0 or done <= 0:
            return None
        elapsed = (now - self.token_started_at).total_seconds()
        return max(0.0, elapsed * (total - done) / done)

    def snapshot(self, now: datetime) -> dict:
        data = asdict(self)
        for key in ("started_at", "finished_at", "token_started_at", "range_start", "range_end", "covered_until"):
            data[key] = data[key].isoformat() if data[key] else None
        data["elapsed_seconds"] = round(self.elapsed_seconds(now), 1)
        remaining = self.estimated_seconds_remaining(now)
        data["estimated_seconds_remaining"] = round(remaining, 1) if remaining is not None else None
        return data


class SyncListener:
    """Subscribe to orchestrator events. Override what you need."""

    def on_progress(self, status: dict):
        pass

    def on_token_complete(self, result: TokenSyncResult):
        pass


def chunked(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SyncOrchestrator:
    def __init__(
        self,
        source: TradeSourceClient,
        aggregator: LegAggregator,
        ledger: PositionLedger,
        store: TradeStore,
        log_buffer: Optional[LogBuffer] = None,
        batch_size: int = SYNC_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.aggregator = aggregator
        self.ledger = ledger
        self.store = store
        self.batch_size = batch_size
        self.clock = clock
        self.log_buffer = attach_log_buffer(log_buffer if log_buffer is not None else LogBuffer())
        self.status = SyncStatus()
        self._listeners: List[SyncListener] = []

    # ----- Observers -----

    def subscribe(self, listener: SyncListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SyncListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> dict:
        return self.status.snapshot(self.clock())

    def _publish(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener.on_progress(snapshot)
            except Exception as e:
                logger.error(f"Progress listener {listener!r} failed: {e}")

    def _publish_result(self, result: TokenSyncResult):
        for listener in list(self._listeners):
            try:
                listener.on_token_complete(result)
            except Exception as e:
                logger.error(f"Completion listener {listener!r} failed: {e}")

    def _record_error(self, token_address: str, error: BaseException):
        self.status.errors.append({
            "token": token_address,
            "error": f"{error.__class__.__name__}: {error}",
            "at": self.clock().isoformat(),
        })
        del self.status.errors[:-MAX_STATUS_ERRORS]

    # ----- Runs -----

    async def run_all(self, tokens: Optional[List[TrackedToken]] = None) -> List[TokenSyncResult]:
        """Sync every token sequentially; one token's failure does not stop the rest."""
        if self.status.is_running:
            raise RuntimeError("A sync run is already in progress")
        if tokens is None:
            tokens = await self.store.list_tracked_tokens()
        if not tokens:
            raise ConfigError("No tracked tokens to sync")

        self.status = SyncStatus(is_running=True, started_at=self.clock())
        logger.info(f"Sync started for {len(tokens)} tokens")
        results = []
        try:
            for token in tokens:
                try:
                    result = await self.run_token(token)
                except ConfigError:
                    raise
                except Exception as e:
                    result = TokenSyncResult(token_address=token.address.lower(), status="failed", error=str(e))
                results.append(result)
        finally:
            self.status.is_running = False
            self.status.current_token = None
            self.status.finished_at = self.clock()
            self._publish()

        failed = [r for r in results if r.status != "success"]
        level = logging.WARNING if failed else SUCCESS
        logger.log(level, f"Sync finished: {len(results) - len(failed)} ok, {len(failed)} failed")
        return results

    async def run_token(self, token: TrackedToken) -> TokenSyncResult:
        token_address = token.address.lower()
        log_extra = {"token": token_address}
        standalone = not self.status.is_running
        if standalone:
            self.status = SyncStatus(is_running=True, started_at=self.clock())

        result = TokenSyncResult(token_address=token_address)
        run_id = None
        try:
            await self.store.upsert_tracked_token(token)
            self.aggregator.tracked[token_address] = token

            cursor = await self.store.get_cursor(token_address)
            from_time = cursor.last_block_time if cursor else None
            start = await self.source.resolve_start(token_address, from_time)
            end = self.clock()
            cursor_limit = max(start, end - timedelta(seconds=CURSOR_SAFETY_LAG_SECONDS))
            run_id = await self.store.start_run(token_address, self.clock())

            self.status.current_token = token_address
            self.status.token_started_at = self.clock()
            self.status.range_start = start
            self.status.range_end = end
            self.status.covered_until = start
            logger.info(
                f"Syncing {token.symbol or token_address} from {start.isoformat()}"
                f"{' (resumed)' if from_time else ''}",
                extra=log_extra,
            )
            self._publish()

            last_block = cursor.last_block_number if cursor else None
            async for page in self.source.iter_pages(token_address, start, end):
                self.status.current_page = page.number
                for batch in chunked(page.groups, self.batch_size):
                    await self.process_batch(token_address, batch, result)
                    self._publish()

                last_block = page.last_block_number or last_block
                if page.resume_from is not None:
                    await self.store.save_cursor(SyncCursor(
                        token_address=token_address,
                        last_block_time=min(page.resume_from, cursor_limit),
                        last_block_number=last_block,
                    ))
                    self.status.covered_until = page.resume_from
                result.pages_processed += 1
                self.status.pages_processed += 1
                self._publish()

            result.status = "success"
            self.status.tokens_completed += 1
            await self.store.finish_run(run_id, "success", result.as_dict())
            logger.log(
                SUCCESS,
                f"Synced {token.symbol or token_address}: {result.transactions_processed} txs, "
                f"{result.trades_found} legs, {result.wallets_found} new wallets",
                extra=log_extra,
            )
            return result

        except Exception as e:
            result.status = "failed"
            result.error = str(e)
            self.status.tokens_failed += 1
            self._record_error(token_address, e)
            logger.error(f"Sync failed for {token_address}: {e}", extra=log_extra)
            if run_id is not None:
                try:
                    await self.store.finish_run(run_id, "failed", result.as_dict(), error=str(e))
                except Exception as audit_error:
                    logger.error(f"Could not record failed run {run_id}: {audit_error}", extra=log_extra)
            raise
        finally:
            self._publish_result(result)
            if standalone:
                self.status.is_running = False
                self.status.finished_at = self.clock()
                self._publish()

    async def process_batch(self, token_address: str, groups: List[TransactionGroup], result: TokenSyncResult):
        """Build legs outside the DB transaction, then persist and apply them as one unit."""
        prepared = []
        for group in groups:
            legs = await self.aggregator.build_legs(group, token_address)
            if legs:
                prepared.append((group, legs))

        keys = {
            (leg.wallet_address, leg.token_address)
            for _, legs in prepared for leg in legs if not leg.is_fee
        }
        try:
            async with self.store.unit_of_work() as uow:
                await uow.lock_token(token_address)
                # Latest committed state from any writer, read under the token lock
                self.ledger.evict(keys)
                for key in sorted(keys):
                    position = await uow.load_position(*key)
                    if position is not None:
                        self.ledger.load([position])

                counts = TokenSyncResult(token_address=token_address)
                for group, legs in prepared:
                    await uow.upsert_transaction(self.aggregator.aggregate(group, legs, token_address))
                    for leg in legs:
                        if not await uow.insert_leg(leg):
                            counts.duplicate_legs += 1
                            continue
                        counts.trades_found += 1
                        if await uow.upsert_wallet(leg.wallet_address, token_address, leg.block_time):
                            counts.wallets_found += 1
                        if leg.is_fee:
                            counts.fees_filtered += 1
                            await uow.set_leg_outcome(leg, FEE_EXCLUDED)
                            continue
                        outcome = await self.apply_leg(leg)
                        if outcome.status == SKIPPED:
                            counts.skipped_sells += 1
                        elif outcome.status == PARTIAL:
                            counts.shortfalls += 1
                        await uow.set_leg_outcome(leg, outcome.status, outcome.realized_pnl)
                    counts.transactions_processed += 1
                for position in self.ledger.take_dirty():
                    await uow.save_position(position)
        finally:
            # Positions are cached for one batch only
            self.ledger.evict(keys)

        for name in (
            "transactions_processed", "trades_found", "duplicate_legs", "wallets_found",
            "fees_filtered", "skipped_sells", "shortfalls",
        ):
            setattr(result, name, getattr(result, name) + getattr(counts, name))
        self.status.transactions_processed += counts.transactions_processed
        self.status.trades_found += counts.trades_found
        self.status.wallets_found += counts.wallets_found
        self.status.fees_filtered += counts.fees_filtered
        self.status.skipped_sells += counts.skipped_sells

    async def apply_leg(self, leg: TradeLeg) -> LedgerOutcome:
        if leg.side == BUY:
            if leg.price_source == "unpriced":
                logger.warning(f"Unpriced BUY {leg.tx_hash} opens a zero-cost lot for {leg.wallet_address}")
            return await self.ledger.apply_buy(
                leg.wallet_address,
                leg.token_address,
                leg.token_amount,
                leg.price_usd,
                cost_basis_usd=leg.usd_notional,
                decimals=leg.token_decimals,
                leg_id=leg.leg_id,
                acquired_at=leg.block_time,
                tx_hash=leg.tx_hash,
            )
        if leg.price_source == "unpriced":
            logger.warning(f"Unpriced SELL {leg.tx_hash} realizes at zero for {leg.wallet_address}")
        return await self.ledger.apply_sell(
            leg.wallet_address,
            leg.token_address,
            leg.token_amount,
            leg.price_usd,
            decimals=leg.token_decimals,
            leg_id=leg.leg_id,
            sold_at=leg.block_time,
        )
