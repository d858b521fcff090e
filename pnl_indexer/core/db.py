from contextlib import asynccontextmanager
import logging

from psycopg_pool import AsyncConnectionPool

from pnl_indexer.core.config import DATABASE_URL
from pnl_indexer.core.errors import ConfigError

logger = logging.getLogger("pnl_indexer.db")

# Global pool instance
pool: AsyncConnectionPool = None


async def init_db(conninfo: str = None):
    global pool
    conninfo = conninfo or DATABASE_URL
    if not conninfo:
        raise ConfigError("DATABASE_URL is not set")
    logger.info("Initializing async connection pool...")
    pool = AsyncConnectionPool(
        conninfo=conninfo,
        min_size=1,
        max_size=10,
        timeout=10,
        open=False
    )
    await pool.open()
    logger.info("Async pool initialized.")


async def close_db():
    global pool
    if pool:
        logger.info("Closing async pool...")
        await pool.close()
        pool = None
        logger.info("Async pool closed.")


@asynccontextmanager
async def get_db_connection():
    if not pool:
        raise RuntimeError("Database pool not initialized")
    async with pool.connection() as conn:
        yield conn
