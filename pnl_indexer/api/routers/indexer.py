"""
Indexer Router
==============
Pollable status, recent logs, sync trigger and FIFO positions.
"""
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel
import logging

from pnl_indexer.engines.pricing import clamp_usd
from pnl_indexer.ingestion.amounts import to_human

logger = logging.getLogger("pnl_indexer.api")
router = APIRouter(prefix="/indexer", tags=["indexer"])


class SyncRequest(BaseModel):
    token: Optional[str] = None


class LotOut(BaseModel):
    lot_id: str
    amount: str
    remaining: str
    unit_cost_usd: Decimal
    acquired_at: Optional[str] = None


class PositionOut(BaseModel):
    wallet_address: str
    token_address: str
    state: str
    remaining_amount: str
    remaining_tokens: Decimal
    cost_basis_usd: Decimal
    average_cost_usd: Decimal
    realized_pnl_usd: Decimal
    unrealized_pnl_usd: Optional[Decimal] = None
    current_price_usd: Optional[Decimal] = None
    unmatched_sell_amount: str
    lots: List[LotOut] = []


class TokenOut(BaseModel):
    token_address: str
    symbol: Optional[str] = None
    decimals: int
    last_synced_block: Optional[int] = None
    last_synced_time: Optional[str] = None


def _runtime(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Indexer runtime not initialized")
    return runtime


@router.get("/status")
async def get_status(request: Request):
    runtime = _runtime(request)
    snapshot = runtime.orchestrator.snapshot()
    snapshot["providers"] = runtime.pool.snapshot()
    return snapshot


@router.get("/logs")
async def get_logs(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    since: Optional[str] = None,
):
    buffer = _runtime(request).orchestrator.log_buffer
    entries = buffer.since(since) if since else buffer.entries(limit)
    return {"count": len(entries), "logs": entries[-limit:]}


@router.post("/sync", status_code=202)
async def trigger_sync(request: Request, body: Optional[SyncRequest] = None):
    runtime = _runtime(request)
    tokens = None
    if body and body.token:
        wanted = body.token.lower()
        tokens = [t for t in await runtime.store.list_tracked_tokens() if t.address == wanted]
        if not tokens:
            raise HTTPException(status_code=404, detail=f"Token {body.token} is not tracked")
    try:
        runtime.start_sync(tokens)
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"Sync triggered via API ({'all tokens' if tokens is None else tokens[0].address})")
    return {"status": "started", "tokens": [t.address for t in tokens] if tokens else "all"}


@router.get("/tokens", response_model=List[TokenOut])
async def get_tokens(request: Request):
    runtime = _runtime(request)
    out = []
    for token in await runtime.store.list_tracked_tokens():
        cursor = await runtime.store.get_cursor(token.address)
        out.append(TokenOut(
            token_address=token.address,
            symbol=token.symbol,
            decimals=token.decimals,
            last_synced_block=token.last_synced_block,
            last_synced_time=cursor.last_block_time.isoformat() if cursor and cursor.last_block_time else None,
        ))
    return out


@router.get("/positions", response_model=List[PositionOut])
async def get_positions(
    request: Request,
    token: Optional[str] = None,
    wallet: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """
    Stored FIFO positions. Unrealized PnL is derived at request time from the
    current market price and is null when no price is available.
    """
    runtime = _runtime(request)
    positions = await runtime.store.list_positions(token_address=token, wallet_address=wallet, limit=limit)

    prices = {}
    for address in {p.token_address for p in positions}:
        prices[address] = await runtime.pricer.current_price(address)

    out = []
    for p in positions:
        price = prices.get(p.token_address)
        out.append(PositionOut(
            wallet_address=p.wallet_address,
            token_address=p.token_address,
            state=p.state,
            remaining_amount=str(p.remaining_amount),
            remaining_tokens=to_human(p.remaining_amount, p.decimals),
            cost_basis_usd=clamp_usd(p.cost_basis_usd),
            average_cost_usd=p.average_cost,
            realized_pnl_usd=clamp_usd(p.realized_pnl),
            unrealized_pnl_usd=clamp_usd(p.unrealized_pnl(price)) if price is not None else None,
            current_price_usd=price,
            unmatched_sell_amount=str(p.unmatched_sell_amount),
            lots=[
                LotOut(
                    lot_id=lot.lot_id,
                    amount=str(lot.amount),
                    remaining=str(lot.remaining),
                    unit_cost_usd=lot.unit_cost,
                    acquired_at=lot.acquired_at.isoformat() if lot.acquired_at else None,
                )
                for lot in p.lots
            ],
        ))
    return out
