import argparse
import asyncio
import logging
import signal

from pnl_indexer.core import config
from pnl_indexer.core.db import init_db, close_db
from pnl_indexer.core.errors import ConfigError
from pnl_indexer.core.logger import get_logger, log_event
from pnl_indexer.runtime import build_runtime, seed_tracked_tokens

logger = get_logger("pnl_indexer.worker")

# Global shutdown event
shutdown_event = asyncio.Event()


def handle_signal():
    logger.info("Shutdown signal received, stopping worker...")
    shutdown_event.set()


async def run_cycle(runtime, only_token=None) -> int:
    tokens = await runtime.store.list_tracked_tokens()
    if only_token:
        tokens = [t for t in tokens if t.address == only_token.lower()]
        if not tokens:
            raise ConfigError(f"Token {only_token} is not tracked")
    results = await runtime.orchestrator.run_all(tokens)
    for r in results:
        log_event(logger, "token_sync", r.as_dict(), level=logging.INFO if r.status == "success" else logging.ERROR)
    return sum(1 for r in results if r.status != "success")


async def run_worker_loop(once: bool = False, only_token: str = None):
    logger.info("Sync worker starting up...")
    runtime = build_runtime()
    await init_db()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, handle_signal)
    loop.add_signal_handler(signal.SIGTERM, handle_signal)

    try:
        await seed_tracked_tokens(runtime)
        while not shutdown_event.is_set():
            if not config.INGESTION_ENABLED:
                logger.info("Ingestion disabled (INGESTION_ENABLED=0), idling")
            else:
                try:
                    failed = await run_cycle(runtime, only_token)
                    if failed:
                        logger.warning(f"{failed} token(s) failed this cycle")
                except ConfigError:
                    raise
                except Exception as e:
                    logger.error(f"Sync cycle error: {e}")

            if once:
                break
            logger.info(f"--- Cycle complete. Sleeping {config.SYNC_INTERVAL_SECONDS}s ---")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=config.SYNC_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass
    finally:
        await runtime.aclose()
        await close_db()
        logger.info("Worker stopped.")


def main():
    parser = argparse.ArgumentParser(description="Index DEX trades and maintain FIFO positions")
    parser.add_argument("--once", action="store_true", help="Run a single sync cycle and exit")
    parser.add_argument("--token", help="Only sync this tracked token address")
    args = parser.parse_args()
    try:
        asyncio.run(run_worker_loop(once=args.once, only_token=args.token))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
