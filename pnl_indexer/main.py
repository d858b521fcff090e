"""
DEX PnL Indexer API
===================
Serves indexer status, logs, tracked tokens and FIFO positions.
"""
from fastapi import FastAPI
import logging

from pnl_indexer.api.routers import indexer
from pnl_indexer.core.db import init_db, close_db
from pnl_indexer.runtime import build_runtime, seed_tracked_tokens

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("pnl_indexer.main")

app = FastAPI(title="DEX PnL Indexer API", version="1.0.0")

# Indexer: serves /indexer/*
app.include_router(indexer.router)


# ----- Lifecycle Events -----
@app.on_event("startup")
async def startup():
    await init_db()
    app.state.runtime = build_runtime()
    await seed_tracked_tokens(app.state.runtime)
    logger.info("Application startup complete.")


@app.on_event("shutdown")
async def shutdown():
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.aclose()
    await close_db()
    logger.info("Application shutdown complete.")


# ----- Health Check -----
@app.get("/health")
async def health_check():
    return {"status": "ok"}
