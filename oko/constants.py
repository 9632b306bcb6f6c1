"""
System-wide constants for the guard engine.

Centralizes magic numbers and configuration defaults used across modules.
"""

# API Configuration
BYBIT_MAINNET_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"
BYBIT_CATEGORY = "linear"
BYBIT_SETTLE_COIN = "USDT"

# API Endpoints
POSITION_LIST_ENDPOINT = "/v5/position/list"
TRADING_STOP_ENDPOINT = "/v5/position/trading-stop"
SET_LEVERAGE_ENDPOINT = "/v5/position/set-leverage"
ORDER_CREATE_ENDPOINT = "/v5/order/create"
TICKERS_ENDPOINT = "/v5/market/tickers"
INSTRUMENTS_ENDPOINT = "/v5/market/instruments-info"

# Request signing
DEFAULT_RECV_WINDOW_MS = 5000
SIGN_TYPE_HMAC = "2"
ORDER_LINK_ID_PREFIX = "oko-"

# Rate Limiting (shared queue for every exchange call)
DEFAULT_MAX_CONCURRENT_REQUESTS = 5
DEFAULT_MIN_REQUEST_INTERVAL_MS = 100

# Timeouts and Retries
DEFAULT_API_TIMEOUT = 10  # seconds
MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_BACKOFF_SECONDS = 10.0
UNKNOWN_ERROR_BACKOFF_MULTIPLIER = 1.5

# Confirmation / repair bookkeeping
CONFIRMATION_WINDOW_SECONDS = 30
CONFIRMATION_SWEEP_SECONDS = 60
# Headroom the confirmation window keeps over (close_confirmations - 1) cycle intervals
CONFIRMATION_CADENCE_MARGIN = 1.25
REPAIR_COOLDOWN_MINUTES = 10
ACCOUNT_ENTITY_ID = "account"

# Instrument metadata
INSTRUMENT_CACHE_SECONDS = 3600

# Signal tiers, weakest first (rank = index + 1)
SIGNAL_TIERS = ("Quick", "Standard", "Premium", "Platinum", "Emergency")
EMERGENCY_TIER = "Emergency"

# Logging
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
