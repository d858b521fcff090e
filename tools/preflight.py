import os
import sys

import psycopg
import requests

# ANSI colors
GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"
YELLOW = "\033[93m"

REQUIRED_TABLES = (
    "tracked_tokens", "sync_cursors", "swap_transactions", "trade_legs",
    "wallets", "positions", "position_lots", "indexer_runs",
)


def print_pass(msg):
    print(f"{msg}: {GREEN}PASS{RESET}")


def print_fail(msg, error=None):
    print(f"{msg}: {RED}FAIL{RESET}")
    if error:
        print(f"  Error: {error}")


def check_env():
    print("Checking Environment Variables...", end=" ")
    from pnl_indexer.core import config
    from pnl_indexer.core.errors import ConfigError

    db_url = config.DATABASE_URL
    if not db_url or "postgres" not in db_url:
        print_fail("\nDATABASE_URL missing or not a postgres URL")
        return False
    try:
        config.require_settings()
    except ConfigError as e:
        print_fail("\nConfiguration", e)
        return False

    print(f"{GREEN}PASS{RESET}")
    return True


def check_db():
    print("Checking Database Schema...", end=" ")
    db_url = os.environ.get("DATABASE_URL")
    try:
        with psycopg.connect(db_url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                for table in REQUIRED_TABLES:
                    cur.execute("SELECT to_regclass(%s)", (f"public.{table}",))
                    if not cur.fetchone()[0]:
                        print_fail(f"\nTable '{table}' missing (run tools/apply_schema.py)")
                        return False
    except psycopg.OperationalError as e:
        print_fail("\nConnection failed", e)
        return False

    print(f"{GREEN}PASS{RESET}")
    return True


def check_rpc_providers():
    """eth_blockNumber against every configured provider; one healthy provider is enough."""
    from pnl_indexer.core import config

    print("Checking RPC Providers...")
    healthy = 0
    for name, url in config.RPC_PROVIDERS:
        try:
            r = requests.post(
                url,
                json={"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []},
                timeout=5,
            )
            r.raise_for_status()
            block = int(r.json()["result"], 16)
            print_pass(f"  {name} (block {block})")
            healthy += 1
        except (requests.RequestException, KeyError, ValueError) as e:
            print_fail(f"  {name}", e)
    return healthy > 0


def check_trade_source():
    from pnl_indexer.core import config

    print("Checking Trade Source Credentials...", end=" ")
    try:
        r = requests.post(
            config.BITQUERY_ENDPOINT,
            json={"query": "{ EVM(network: " + config.BITQUERY_NETWORK + ") { Blocks(limit: {count: 1}) { Block { Number } } } }"},
            headers={
                "X-API-KEY": config.BITQUERY_API_KEY,
                "Authorization": f"Bearer {config.BITQUERY_API_KEY}",
            },
            timeout=15,
        )
    except requests.RequestException as e:
        print_fail("\nRequest failed", e)
        return False
    if r.status_code in (401, 403):
        print_fail(f"\nKey rejected ({r.status_code})")
        return False
    if r.status_code != 200 or r.json().get("errors"):
        print_fail(f"\nUnexpected response {r.status_code}", r.text[:200])
        return False
    print(f"{GREEN}PASS{RESET}")
    return True


def run_preflight():
    print(f"\n🚀 {YELLOW}Running Indexer Preflight Checks...{RESET}\n")

    if not check_env():
        sys.exit(1)

    if not check_db():
        sys.exit(1)

    if not check_rpc_providers():
        sys.exit(1)

    if not check_trade_source():
        sys.exit(1)

    print(f"\n{GREEN}✅ All systems go! Ready to index.{RESET}\n")
    sys.exit(0)


if __name__ == "__main__":
    run_preflight()
