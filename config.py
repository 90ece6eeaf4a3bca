"""
config.py -- All tunable parameters for the KuCoin grid trading bot.

Every value here is loaded from environment variables so the bot can be
configured from the process environment (or a local .env file sourced by
your shell) without touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen
"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised at startup when the configuration cannot run a grid."""


# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw.strip())
    except (ValueError, TypeError, ArithmeticError):
        # decimal.InvalidOperation is an ArithmeticError, not a ValueError
        return default


# ---------------------------------------------------------------------------
# API Credentials  (NEVER hard-code these -- always use env vars)
# ---------------------------------------------------------------------------

# KuCoin API key.  Create one under Account -> API Management.
# Permissions needed: General + Spot Trading.
KUCOIN_API_KEY: str = _env("KUCOIN_API_KEY", "")

# KuCoin API secret (shown once when the key is created).
KUCOIN_API_SECRET: str = _env("KUCOIN_API_SECRET", "")

# The passphrase you chose when creating the key.  It is never sent in the
# clear: the client sends base64(HMAC-SHA256(secret, passphrase)) (key v2).
KUCOIN_API_PASSPHRASE: str = _env("KUCOIN_API_PASSPHRASE", "")

# REST endpoint.  Point at the sandbox or a mock server for testing.
KUCOIN_BASE_URL: str = _env("KUCOIN_BASE_URL", "https://api.kucoin.com")

# ---------------------------------------------------------------------------
# Trading pair
# ---------------------------------------------------------------------------

# KuCoin symbol in BASE-QUOTE form.
SYMBOL: str = _env("SYMBOL", "BTC-USDT")

# ---------------------------------------------------------------------------
# Grid geometry
# ---------------------------------------------------------------------------

# Number of intervals in the ladder.  The grid has GRID_LEVELS + 1 price
# points between the lower and upper bound (4 levels over 90..110 gives
# 90, 95, 100, 105, 110).  Must be >= 2.
GRID_LEVELS: int = _env("GRID_LEVELS", 5, int)

# Half-width of the ladder as a fraction of the reference price.
# 0.005 = the ladder spans mid * 0.995 .. mid * 1.005.
# Raising it: wider grid, fewer fills, survives bigger swings.
GRID_RANGE_PCT: Decimal = _env("GRID_RANGE_PCT", Decimal("0.005"), Decimal)

# Profit target for the mirror sell in ladder mode, as a fraction.
# A buy filled at 95 with 0.005 places its sell at 95.475 (tick-rounded).
# Must exceed 2 * FEE_RATE or every round trip loses money.
PROFIT_PCT: Decimal = _env("PROFIT_PCT", Decimal("0.005"), Decimal)

# "ladder" = buy fills place one profit-target sell, then the slot is spent.
# "rotate" = every fill flips to the opposite side one grid step further out,
#            so the ladder replenishes itself indefinitely.
GRID_MODE: str = _env("GRID_MODE", "ladder")

# ---------------------------------------------------------------------------
# Capital & position sizing
# ---------------------------------------------------------------------------

# Quote currency (USDT) budget for the ladder.  Per-order size is
# TOTAL_RISK_USD / GRID_LEVELS / reference price, floored at the exchange
# minimum size.  The ladder rests GRID_LEVELS + 1 orders, so the notional
# actually committed is (GRID_LEVELS + 1) / GRID_LEVELS of this budget
# (125% at 4 levels).
TOTAL_RISK_USD: Decimal = _env("TOTAL_RISK_USD", Decimal("5.0"), Decimal)

# Fee rate charged on every fill (KuCoin spot maker, lowest tier = 0.1%).
# Used only for PnL accounting -- the exchange deducts the real fee.
FEE_RATE: Decimal = _env("FEE_RATE", Decimal("0.001"), Decimal)

# ---------------------------------------------------------------------------
# Risk management
# ---------------------------------------------------------------------------

# STOP-LOSS -- fraction below the lowest grid buy at which the bot cancels
# everything and rebuilds from a fresh reference price.
# At 0.015 with a lowest buy of 90, the stop fires at bid <= 88.65.
STOP_LOSS_PCT: Decimal = _env("STOP_LOSS_PCT", Decimal("0.015"), Decimal)

# IDLE TIMEOUT -- seconds a grid may sit without a fill before it is torn
# down and re-centred.  2 hours by default.
MAX_IDLE_SECONDS: float = _env("MAX_IDLE_SECONDS", 7200.0, float)

# ---------------------------------------------------------------------------
# Trend gate (checked before a fresh grid is built)
# ---------------------------------------------------------------------------

# When True, a new grid is only laid down while EMA(fast) > EMA(slow)
# and RSI < TREND_RSI_MAX on recent closes.  An active grid keeps running
# regardless of the gate.
TREND_FILTER_ENABLED: bool = _env("TREND_FILTER_ENABLED", True, bool)
TREND_EMA_FAST: int = _env("TREND_EMA_FAST", 10, int)
TREND_EMA_SLOW: int = _env("TREND_EMA_SLOW", 30, int)
TREND_RSI_PERIOD: int = _env("TREND_RSI_PERIOD", 14, int)
TREND_RSI_MAX: Decimal = _env("TREND_RSI_MAX", Decimal("70"), Decimal)

# Optional extra check: refuse to build while the mid sits above the upper
# Bollinger band (price overextended).  Off by default.
BOLLINGER_GATE_ENABLED: bool = _env("BOLLINGER_GATE_ENABLED", False, bool)
BOLLINGER_PERIOD: int = _env("BOLLINGER_PERIOD", 20, int)
BOLLINGER_STD_MULT: Decimal = _env("BOLLINGER_STD_MULT", Decimal("2"), Decimal)

# Candle interval and count fed to the indicators.  100 one-minute candles
# comfortably covers EMA30 + RSI14.
CANDLE_TYPE: str = _env("CANDLE_TYPE", "1min")
CANDLE_LIMIT: int = _env("CANDLE_LIMIT", 100, int)

# ---------------------------------------------------------------------------
# Main loop timing
# ---------------------------------------------------------------------------

# Seconds between grid cycles while monitoring.
POLL_INTERVAL_SECONDS: float = _env("POLL_INTERVAL_SECONDS", 0.5, float)

# Seconds to back off after a cycle raised.
ERROR_RETRY_SECONDS: float = _env("ERROR_RETRY_SECONDS", 10.0, float)

# ---------------------------------------------------------------------------
# Gateway behaviour
# ---------------------------------------------------------------------------

# HTTP timeout per request, seconds.
REQUEST_TIMEOUT: float = _env("REQUEST_TIMEOUT", 10.0, float)

# Attempts per idempotent call (GET/DELETE) on connection/timeout errors.
# Order placement (POST) is always sent exactly once.
RETRY_ATTEMPTS: int = _env("RETRY_ATTEMPTS", 3, int)

# Fixed pause between attempts, seconds.
RETRY_DELAY_SECONDS: float = _env("RETRY_DELAY_SECONDS", 2.0, float)

# Client-side token bucket.  KuCoin's spot quota is generous; these numbers
# keep a single bot well under it even when a full ladder is placed.
RATE_LIMIT_BURST: int = _env("RATE_LIMIT_BURST", 10, int)
RATE_LIMIT_PER_SEC: float = _env("RATE_LIMIT_PER_SEC", 4.0, float)

# ---------------------------------------------------------------------------
# Logging & files
# ---------------------------------------------------------------------------

# Python logging level name.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# Directory for the state snapshot.
LOG_DIR: str = _env("LOG_DIR", "logs")

# Grid snapshot used for crash recovery.
STATE_FILE: str = _env("STATE_FILE", os.path.join(LOG_DIR, "bot_state.json"))


def validate_config() -> None:
    """
    Run pre-flight checks before the main loop starts.

    Raises ConfigError on anything that can never produce a working grid,
    and logs warnings for settings that run but are probably a mistake.
    """
    problems = []

    if not (KUCOIN_API_KEY and KUCOIN_API_SECRET and KUCOIN_API_PASSPHRASE):
        problems.append(
            "KUCOIN_API_KEY, KUCOIN_API_SECRET and KUCOIN_API_PASSPHRASE must all be set")
    if GRID_LEVELS < 2:
        problems.append("GRID_LEVELS must be >= 2 (got %d)" % GRID_LEVELS)
    if GRID_MODE not in ("ladder", "rotate"):
        problems.append("GRID_MODE must be 'ladder' or 'rotate' (got %r)" % GRID_MODE)
    if not (Decimal("0") < GRID_RANGE_PCT < Decimal("1")):
        problems.append("GRID_RANGE_PCT must be between 0 and 1 (got %s)" % GRID_RANGE_PCT)
    if PROFIT_PCT <= 0:
        problems.append("PROFIT_PCT must be positive (got %s)" % PROFIT_PCT)
    if not (Decimal("0") < STOP_LOSS_PCT < Decimal("1")):
        problems.append("STOP_LOSS_PCT must be between 0 and 1 (got %s)" % STOP_LOSS_PCT)
    if TOTAL_RISK_USD <= 0:
        problems.append("TOTAL_RISK_USD must be positive (got %s)" % TOTAL_RISK_USD)
    if TREND_EMA_FAST >= TREND_EMA_SLOW:
        problems.append("TREND_EMA_FAST must be shorter than TREND_EMA_SLOW")
    if RETRY_ATTEMPTS < 1:
        problems.append("RETRY_ATTEMPTS must be >= 1")

    if problems:
        for msg in problems:
            logger.critical("Config: %s", msg)
        raise ConfigError("; ".join(problems))

    # Warning: profit target below round-trip fee
    if PROFIT_PCT <= FEE_RATE * 2:
        logger.warning(
            "PROFIT_PCT %s <= round-trip fee %s -- every ladder round trip loses money",
            PROFIT_PCT, FEE_RATE * 2,
        )
    if TREND_FILTER_ENABLED and CANDLE_LIMIT < TREND_EMA_SLOW:
        logger.warning(
            "CANDLE_LIMIT %d < TREND_EMA_SLOW %d -- the trend gate can never open",
            CANDLE_LIMIT, TREND_EMA_SLOW,
        )

    logger.info("Pre-flight validation passed")
