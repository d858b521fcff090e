"""
PostgreSQL store (psycopg 3, async pool).
"""
import logging
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from psycopg.types.json import Jsonb

from pnl_indexer.core.db import get_db_connection
from pnl_indexer.engines.ledger import Lot, Position
from pnl_indexer.engines.pricing import clamp_price, clamp_usd
from pnl_indexer.ingestion.models import SwapTransaction, SyncCursor, TrackedToken, TradeLeg
from pnl_indexer.storage.store import TradeStore, UnitOfWork

logger = logging.getLogger("pnl_indexer.store")

POSITION_COLUMNS = """
    wallet_address, token_address, decimals, remaining_amount,
    realized_pnl_usd, unmatched_sell_amount, updated_at, lots_opened
"""


def _row_to_position(row, lots) -> Position:
    return Position(
        wallet_address=row[0],
        token_address=row[1],
        decimals=row[2],
        lots=deque(lots),
        realized_pnl=Decimal(row[4]),
        unmatched_sell_amount=int(row[5]),
        updated_at=row[6],
        lots_opened=row[7] or 0,
    )


async def _fetch_lots(cur, wallet_address: str, token_address: str) -> List[Lot]:
    await cur.execute("""
        SELECT lot_id, amount, remaining, unit_cost_usd, decimals, acquired_at, tx_hash
        FROM position_lots
        WHERE wallet_address = %s AND token_address = %s
        ORDER BY seq
    """, (wallet_address, token_address))
    return [_row_to_lot(r) for r in await cur.fetchall()]


async def _fetch_position(cur, wallet_address: str, token_address: str) -> Optional[Position]:
    await cur.execute(f"""
        SELECT {POSITION_COLUMNS}
        FROM positions
        WHERE wallet_address = %s AND token_address = %s
    """, (wallet_address.lower(), token_address.lower()))
    row = await cur.fetchone()
    if not row:
        return None
    return _row_to_position(row, await _fetch_lots(cur, row[0], row[1]))


def _row_to_lot(row) -> Lot:
    # lot_id, amount, remaining, unit_cost_usd, decimals, acquired_at, tx_hash
    return Lot(
        lot_id=row[0],
        amount=int(row[1]),
        remaining=int(row[2]),
        unit_cost=Decimal(row[3]),
        decimals=row[4],
        acquired_at=row[5],
        tx_hash=row[6],
    )


class PostgresUnitOfWork(UnitOfWork):
    def __init__(self, conn):
        self.conn = conn

    async def lock_token(self, token_address: str):
        # Held until the transaction ends; serializes ledger writers across processes
        async with self.conn.cursor() as cur:
            await cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (token_address.lower(),))

    async def load_position(self, wallet_address: str, token_address: str) -> Optional[Position]:
        async with self.conn.cursor() as cur:
            return await _fetch_position(cur, wallet_address, token_address)

    async def upsert_transaction(self, tx: SwapTransaction):
        async with self.conn.cursor() as cur:
            await cur.execute("""
                INSERT INTO swap_transactions (
                    tx_hash, token_address, block_number, block_time, wallet_initiator,
                    protocols, net_token_in, net_token_out, net_usd, legs_count, fee_legs_count
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (tx_hash, token_address) DO UPDATE SET
                    wallet_initiator = COALESCE(EXCLUDED.wallet_initiator, swap_transactions.wallet_initiator),
                    protocols = EXCLUDED.protocols,
                    net_token_in = EXCLUDED.net_token_in,
                    net_token_out = EXCLUDED.net_token_out,
                    net_usd = EXCLUDED.net_usd,
                    legs_count = GREATEST(EXCLUDED.legs_count, swap_transactions.legs_count),
                    fee_legs_count = EXCLUDED.fee_legs_count,
                    updated_at = NOW()
            """, (
                tx.tx_hash,
                tx.token_address,
                tx.block_number,
                tx.block_time,
                tx.wallet_initiator,
                sorted(tx.protocols),
                Jsonb({k: str(v) for k, v in tx.net_token_in.items()}),
                Jsonb({k: str(v) for k, v in tx.net_token_out.items()}),
                clamp_usd(tx.net_usd),
                tx.legs_count,
                tx.fee_legs_count,
            ))

    async def insert_leg(self, leg: TradeLeg) -> bool:
        async with self.conn.cursor() as cur:
            await cur.execute("""
                INSERT INTO trade_legs (
                    tx_hash, leg_signature, leg_index, token_address, wallet_address, wallet_source,
                    side, token_in, token_out, amount_in, amount_out, decimals_in, decimals_out,
                    price_usd, usd_notional, price_source, is_fee, fee_reason, protocol,
                    block_number, block_time
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                        %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (tx_hash, leg_signature) DO NOTHING
                RETURNING id
            """, (
                leg.tx_hash, leg.signature, leg.leg_index, leg.token_address,
                leg.wallet_address, leg.wallet_source, leg.side,
                leg.token_in, leg.token_out, leg.amount_in, leg.amount_out,
                leg.decimals_in, leg.decimals_out,
                clamp_price(leg.price_usd), clamp_usd(leg.usd_notional), leg.price_source,
                leg.is_fee, leg.fee_reason, leg.protocol,
                leg.block_number, leg.block_time,
            ))
            return await cur.fetchone() is not None

    async def set_leg_outcome(self, leg: TradeLeg, status: str, realized_pnl: Decimal = Decimal("0")):
        async with self.conn.cursor() as cur:
            await cur.execute("""
                UPDATE trade_legs
                SET ledger_status = %s, realized_pnl_usd = %s
                WHERE tx_hash = %s AND leg_signature = %s
            """, (status, clamp_usd(realized_pnl), leg.tx_hash, leg.signature))

    async def upsert_wallet(self, wallet_address: str, token_address: str, seen_at: datetime) -> bool:
        async with self.conn.cursor() as cur:
            await cur.execute("""
                INSERT INTO wallets (wallet_address, token_address, first_seen, last_seen)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (wallet_address, token_address) DO UPDATE SET
                    first_seen = LEAST(wallets.first_seen, EXCLUDED.first_seen),
                    last_seen = GREATEST(wallets.last_seen, EXCLUDED.last_seen),
                    trade_count = wallets.trade_count + 1
                RETURNING (xmax = 0) AS inserted
            """, (wallet_address, token_address, seen_at, seen_at))
            row = await cur.fetchone()
            return bool(row and row[0])

    async def save_position(self, position: Position):
        async with self.conn.cursor() as cur:
            await cur.execute("""
                INSERT INTO positions (
                    wallet_address, token_address, decimals, remaining_amount, cost_basis_usd,
                    realized_pnl_usd, unmatched_sell_amount, updated_at, lots_opened
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()), %s)
                ON CONFLICT (wallet_address, token_address) DO UPDATE SET
                    decimals = EXCLUDED.decimals,
                    remaining_amount = EXCLUDED.remaining_amount,
                    cost_basis_usd = EXCLUDED.cost_basis_usd,
                    realized_pnl_usd = EXCLUDED.realized_pnl_usd,
                    unmatched_sell_amount = EXCLUDED.unmatched_sell_amount,
                    updated_at = EXCLUDED.updated_at,
                    lots_opened = EXCLUDED.lots_opened
            """, (
                position.wallet_address, position.token_address, position.decimals,
                position.remaining_amount, clamp_usd(position.cost_basis_usd),
                clamp_usd(position.realized_pnl), position.unmatched_sell_amount,
                position.updated_at, position.lots_opened,
            ))
            await cur.execute(
                "DELETE FROM position_lots WHERE wallet_address = %s AND token_address = %s",
                (position.wallet_address, position.token_address),
            )
            if position.lots:
                await cur.executemany("""
                    INSERT INTO position_lots (
                        wallet_address, token_address, lot_id, seq, amount, remaining,
                        unit_cost_usd, decimals, acquired_at, tx_hash
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, [
                    (
                        position.wallet_address, position.token_address, lot.lot_id, seq,
                        lot.amount, lot.remaining, clamp_price(lot.unit_cost), lot.decimals,
                        lot.acquired_at, lot.tx_hash,
                    )
                    for seq, lot in enumerate(position.lots)
                ])


class PostgresStore(TradeStore):
    def __init__(self, connection_factory=get_db_connection):
        self.connection = connection_factory

    @asynccontextmanager
    async def unit_of_work(self):
        async with self.connection() as conn:
            async with conn.transaction():
                yield PostgresUnitOfWork(conn)

    async def upsert_tracked_token(self, token: TrackedToken):
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    INSERT INTO tracked_tokens (token_address, symbol, decimals)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (token_address) DO UPDATE SET
                        symbol = COALESCE(EXCLUDED.symbol, tracked_tokens.symbol),
                        decimals = EXCLUDED.decimals
                """, (token.address.lower(), token.symbol, token.decimals))
            await conn.commit()

    async def list_tracked_tokens(self) -> List[TrackedToken]:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    SELECT token_address, symbol, decimals, last_synced_block
                    FROM tracked_tokens
                    ORDER BY created_at
                """)
                rows = await cur.fetchall()
        return [TrackedToken(address=r[0], symbol=r[1], decimals=r[2], last_synced_block=r[3]) for r in rows]

    async def get_cursor(self, token_address: str) -> Optional[SyncCursor]:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    SELECT token_address, last_block_time, last_block_number, updated_at
                    FROM sync_cursors WHERE token_address = %s
                """, (token_address.lower(),))
                row = await cur.fetchone()
        if not row:
            return None
        return SyncCursor(token_address=row[0], last_block_time=row[1], last_block_number=row[2], updated_at=row[3])

    async def save_cursor(self, cursor: SyncCursor):
        async with self.connection() as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute("""
                        INSERT INTO sync_cursors (token_address, last_block_time, last_block_number, updated_at)
                        VALUES (%s, %s, %s, NOW())
                        ON CONFLICT (token_address) DO UPDATE SET
                            last_block_time = EXCLUDED.last_block_time,
                            last_block_number = COALESCE(EXCLUDED.last_block_number, sync_cursors.last_block_number),
                            updated_at = NOW()
                    """, (cursor.token_address.lower(), cursor.last_block_time, cursor.last_block_number))
                    if cursor.last_block_number is not None:
                        await cur.execute("""
                            UPDATE tracked_tokens SET last_synced_block = %s
                            WHERE token_address = %s
                        """, (cursor.last_block_number, cursor.token_address.lower()))

    async def load_position(self, wallet_address: str, token_address: str) -> Optional[Position]:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                return await _fetch_position(cur, wallet_address, token_address)

    async def list_positions(
        self,
        token_address: Optional[str] = None,
        wallet_address: Optional[str] = None,
        limit: int = 100,
    ) -> List[Position]:
        clauses, params = [], []
        if token_address:
            clauses.append("token_address = %s")
            params.append(token_address.lower())
        if wallet_address:
            clauses.append("wallet_address = %s")
            params.append(wallet_address.lower())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        positions = []
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(f"""
                    SELECT {POSITION_COLUMNS}
                    FROM positions
                    {where}
                    ORDER BY realized_pnl_usd DESC
                    LIMIT %s
                """, params)
                rows = await cur.fetchall()
                for row in rows:
                    lots = await _fetch_lots(cur, row[0], row[1])
                    positions.append(_row_to_position(row, lots))
        return positions

    async def start_run(self, token_address: str, started_at: datetime) -> int:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    INSERT INTO indexer_runs (token_address, started_at)
                    VALUES (%s, %s)
                    RETURNING id
                """, (token_address.lower(), started_at))
                row = await cur.fetchone()
            await conn.commit()
        return row[0]

    async def finish_run(self, run_id: int, status: str, stats: dict, error: Optional[str] = None):
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    UPDATE indexer_runs SET
                        finished_at = %s,
                        status = %s,
                        pages_processed = %s,
                        transactions_processed = %s,
                        trades_found = %s,
                        wallets_found = %s,
                        error = %s
                    WHERE id = %s
                """, (
                    datetime.now(timezone.utc),
                    status,
                    stats.get("pages_processed", 0),
                    stats.get("transactions_processed", 0),
                    stats.get("trades_found", 0),
                    stats.get("wallets_found", 0),
                    error,
                    run_id,
                ))
            await conn.commit()
