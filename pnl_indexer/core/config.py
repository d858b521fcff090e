import os
import logging
from dataclasses import dataclass
from typing import List, Optional

from pnl_indexer.core.errors import ConfigError

logger = logging.getLogger("pnl_indexer.config")


def load_env_file(path: str = ".env.local") -> bool:
    """
    Load KEY=VALUE pairs from a dotenv-style file into os.environ.
    Existing environment variables win. Returns False if the file is missing.
    """
    if not os.path.exists(path):
        return False
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))
    return True


@dataclass(frozen=True)
class TokenConfig:
    address: str
    symbol: Optional[str] = None
    decimals: Optional[int] = None


def parse_tracked_tokens(raw: str) -> List[TokenConfig]:
    """Parse "address:SYMBOL:decimals,..." (symbol and decimals optional)."""
    tokens = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        parts = [p.strip() for p in item.split(":")]
        address = parts[0].lower()
        symbol = parts[1] if len(parts) > 1 and parts[1] else None
        decimals = None
        if len(parts) > 2 and parts[2]:
            try:
                decimals = int(parts[2])
            except ValueError:
                raise ConfigError(f"Invalid decimals for tracked token {address}: {parts[2]!r}")
        tokens.append(TokenConfig(address=address, symbol=symbol, decimals=decimals))
    return tokens


def parse_rpc_providers(raw: str, public_fallback: Optional[str] = None) -> List[tuple]:
    """Parse "name=url,..." into (name, url) pairs in priority order."""
    providers = []
    for i, item in enumerate(p.strip() for p in raw.split(",")):
        if not item:
            continue
        if "=" in item and not item.startswith("http"):
            name, url = item.split("=", 1)
        else:
            name, url = f"rpc-{i}", item
        providers.append((name.strip(), url.strip()))
    if public_fallback and public_fallback not in [u for _, u in providers]:
        providers.append(("public", public_fallback))
    return providers


# Load .env manually if not set
if not os.environ.get("DATABASE_URL"):
    load_env_file(".env") or load_env_file(".env.local")

# Database
DATABASE_URL = os.environ.get("DATABASE_URL")

# Trade source (GraphQL)
BITQUERY_API_KEY = os.environ.get("BITQUERY_API_KEY", "")
BITQUERY_ENDPOINT = os.environ.get("BITQUERY_ENDPOINT", "https://streaming.bitquery.io/graphql")
BITQUERY_FALLBACK_ENDPOINTS = [
    e.strip() for e in os.environ.get("BITQUERY_FALLBACK_ENDPOINTS", "https://graphql.bitquery.io").split(",")
    if e.strip()
]
BITQUERY_NETWORK = os.environ.get("BITQUERY_NETWORK", "base")

# Chain RPC providers, highest priority first
BASE_RPC_URL = os.environ.get("BASE_RPC_URL", "https://mainnet.base.org")
RPC_PROVIDERS = parse_rpc_providers(os.environ.get("RPC_PROVIDERS", ""), BASE_RPC_URL)

# Tokens we index: "address:SYMBOL:decimals,..."
TRACKED_TOKENS = parse_tracked_tokens(os.environ.get("TRACKED_TOKENS", ""))

# Worker control
SYNC_INTERVAL_SECONDS = int(os.environ.get("SYNC_INTERVAL_SECONDS", "300"))
INGESTION_ENABLED = os.environ.get("INGESTION_ENABLED", "1") == "1"


def require_settings(api_key: Optional[str] = None, tracked_tokens: Optional[List[TokenConfig]] = None):
    """Fail fast on missing credentials or an empty token list."""
    api_key = BITQUERY_API_KEY if api_key is None else api_key
    tracked_tokens = TRACKED_TOKENS if tracked_tokens is None else tracked_tokens
    if not api_key:
        raise ConfigError("BITQUERY_API_KEY is not set")
    if not tracked_tokens:
        raise ConfigError("No tracked tokens configured (TRACKED_TOKENS is empty)")
    logger.info(f"Config OK: {len(tracked_tokens)} tracked tokens, {len(RPC_PROVIDERS)} RPC providers")
