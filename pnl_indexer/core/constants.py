from decimal import Decimal

# ==============================================================================
# CHAIN (BASE MAINNET)
# ==============================================================================
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_ETH_ADDRESS = ZERO_ADDRESS

BASE_TOKENS = {
    "WETH": "0x4200000000000000000000000000000000000006",
    "USDC": "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
    "USDbC": "0xd9aaec86b65d86f6a7b5b1b0c42ffa531710b6ca",
    "DAI": "0x50c5725949a6f0c72e6c4a641f24049a917db0cb",
}
WETH_ADDRESS = BASE_TOKENS["WETH"]
STABLECOIN_ADDRESSES = {BASE_TOKENS["USDC"], BASE_TOKENS["USDbC"], BASE_TOKENS["DAI"]}

# Pool / router contracts that show up as transfer counterparties but never act as traders
KNOWN_ROUTER_CONTRACTS = {
    "0x498581ff718922c3f8e6a244956af099b2652b2b",  # Uniswap V4 PoolManager
    "0x0faac7915f8cfd9fbde283c62c1fba018f7d69d2",  # Clanker / Uniswap router
}

# ERC-20
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
DECIMALS_SELECTOR = "0x313ce567"
DEFAULT_DECIMALS = 18

# ==============================================================================
# FEE FILTER
# ==============================================================================
FEE_LOCKER_PROTOCOL_PATTERNS = ("clanker",)
FEE_MAX_USD = Decimal("0.50")            # Candidate range upper bound
FEE_FLAG_USD = Decimal("0.30")           # Below this a candidate is flagged
FEE_LOCKER_ADDRESSES = set()             # Contract denylist, empty until enumerated

# ==============================================================================
# TRADE SOURCE PAGINATION
# ==============================================================================
PAGE_WINDOW_SECONDS = 7 * 24 * 3600      # 7-day windows
PAGE_ROW_LIMIT = 10000                   # Provider max rows per query
MAX_CONSECUTIVE_EMPTY_PAGES = 2
PAGE_DELAY_SECONDS = 0.5
INCEPTION_FALLBACK_DAYS = 30

# Retry wrapper
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 4.0
GRAPHQL_TIMEOUT_SECONDS = 30

# ==============================================================================
# PROVIDER POOL
# ==============================================================================
PROVIDER_TIMEOUT_SECONDS = 5
PROVIDER_MAX_BACKOFF_SECONDS = 60

# ==============================================================================
# PRICING
# ==============================================================================
PRICE_CACHE_TTL_SECONDS = 300            # 5 minutes
MARKET_REQUEST_TIMEOUT_SECONDS = 3
DEXSCREENER_TOKENS_API = "https://api.dexscreener.com/latest/dex/tokens"

# NUMERIC(30,8) storage limit
MAX_USD_VALUE = Decimal("9999999999999999999999.99999999")
USD_QUANTUM = Decimal("0.00000001")
PRICE_QUANTUM = Decimal("0.000000000000000001")  # NUMERIC(48,18)

# ==============================================================================
# ORCHESTRATION
# ==============================================================================
SYNC_BATCH_SIZE = 50                     # Transaction groups per unit of work
CURSOR_SAFETY_LAG_SECONDS = 300          # Cursor stays this far behind now for late-indexed trades
LOG_BUFFER_SIZE = 1000
