"""
config.py
==========
Central configuration for the cross-exchange route scanner.
All monetary values in USD. Fee rates as decimals (0.002 = 0.2%).
Spread thresholds are percentages (50.0 = 50%). Durations in seconds.

Every value can be overridden through the environment; malformed values
fall back to the default shown here.
"""

from __future__ import annotations
import logging
import logging.config
import os
from typing import Dict, Any, List


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [s.strip() for s in raw.split(",") if s.strip()]


# ─────────────────────────────────────────────────────────────────────────────
# RUNTIME
# ─────────────────────────────────────────────────────────────────────────────

DATA_DIR: str = os.environ.get("DATA_DIR", os.path.join(os.path.dirname(__file__), "data"))
LOG_FILE: str = os.path.join(DATA_DIR, "engine.log")
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()
PORT: int = _env_int("PORT", 3001)

# Seconds between background refreshes of the processed result
REFRESH_INTERVAL: float = _env_float("REFRESH_INTERVAL", 60.0)

# How long an HTTP request waits for the event loop before giving up.
# The computation itself keeps running and still fills the cache.
REQUEST_TIMEOUT: float = _env_float("REQUEST_TIMEOUT", 30.0)

# ─────────────────────────────────────────────────────────────────────────────
# CACHE
# ─────────────────────────────────────────────────────────────────────────────

CACHE_TTL: Dict[str, float] = {
    "tickers":        _env_float("CACHE_TTL_TICKERS", 10.0),         # price data moves fast
    "funding_rates":  _env_float("CACHE_TTL_FUNDING_RATES", 600.0),  # 8-hr funding cycle, stable
    "processed_data": _env_float("CACHE_TTL_PROCESSED_DATA", 10.0),  # match ticker freshness
    "sweep_interval": _env_float("CACHE_SWEEP_INTERVAL", 60.0),
}

CACHE_KEYS: Dict[str, str] = {
    "tickers":        "tickers",
    "funding_rates":  "funding_rates",
    "processed_data": "all_data",
}

# ─────────────────────────────────────────────────────────────────────────────
# DATA QUALITY FILTER
# ─────────────────────────────────────────────────────────────────────────────

QUALITY: Dict[str, float] = {
    "min_exchange_count":         _env_int("QUALITY_MIN_EXCHANGES", 2),
    "min_volume_per_exchange":    _env_float("QUALITY_MIN_VOLUME_PER_EXCHANGE", 10_000.0),
    "min_total_volume":           _env_float("QUALITY_MIN_TOTAL_VOLUME", 50_000.0),
    "max_volume_ratio":           _env_float("QUALITY_MAX_VOLUME_RATIO", 50.0),
    "max_realistic_spread":       _env_float("QUALITY_MAX_REALISTIC_SPREAD", 50.0),    # %
    "price_validation_threshold": _env_float("QUALITY_PRICE_VALIDATION_THRESHOLD", 100.0),  # %
}

# ─────────────────────────────────────────────────────────────────────────────
# ROUTE ENGINE
# ─────────────────────────────────────────────────────────────────────────────

ROUTES: Dict[str, Any] = {
    "fee_rate":          _env_float("ROUTE_FEE_RATE", 0.002),   # 0.1% taker per side
    "top_k":             _env_int("ROUTE_TOP_K", 5),
    "min_spread_pct":    _env_float("ROUTE_MIN_SPREAD_PCT", 0.01),  # 1 basis point
    "liquidity_volume":  100_000.0,   # volume at which liquidity_score saturates
    "low_risk_volume":   100_000.0,   # above -> "low" execution risk
    "high_risk_volume":  50_000.0,    # below -> "high" execution risk
}

# ─────────────────────────────────────────────────────────────────────────────
# EXCHANGES & SYMBOLS
# ─────────────────────────────────────────────────────────────────────────────

EXCHANGES: Dict[str, bool] = {
    "binance": _env_bool("EXCHANGE_BINANCE_ENABLED", True),
    "okx":     _env_bool("EXCHANGE_OKX_ENABLED", True),
    "bybit":   _env_bool("EXCHANGE_BYBIT_ENABLED", True),
    "bitget":  _env_bool("EXCHANGE_BITGET_ENABLED", True),
}

SUPPORTED_EXCHANGES: List[str] = list(EXCHANGES.keys())

# Unified symbols. "BASE/QUOTE" is spot, "BASE/QUOTE:SETTLE" is a perpetual.
SYMBOLS: List[str] = _env_list("SYMBOLS", [
    "BTC/USDT", "ETH/USDT", "SOL/USDT", "XRP/USDT", "DOGE/USDT",
    "ADA/USDT", "AVAX/USDT", "DOT/USDT", "LINK/USDT", "LTC/USDT",
    "BCH/USDT", "NEAR/USDT", "ATOM/USDT", "UNI/USDT", "BNB/USDT",
    "BTC/USDT:USDT", "ETH/USDT:USDT", "SOL/USDT:USDT", "XRP/USDT:USDT",
    "DOGE/USDT:USDT", "ADA/USDT:USDT", "AVAX/USDT:USDT", "LINK/USDT:USDT",
    "LTC/USDT:USDT", "NEAR/USDT:USDT",
])

# Applied when symbols are discovered from bulk tickers instead of SYMBOLS
SYMBOL_UNIVERSE: Dict[str, Any] = {
    "quote_assets":       ["USDT", "USD", "USDC"],
    "blacklist":          ["BULL", "BEAR", "UP", "DOWN", "HEDGE"],  # leveraged tokens
    "min_listing_volume": _env_float("UNIVERSE_MIN_VOLUME", 100.0),
}

# ─────────────────────────────────────────────────────────────────────────────
# PUBLIC API ENDPOINTS
# ─────────────────────────────────────────────────────────────────────────────

API: Dict[str, str] = {
    "binance_spot_ticker":     "https://api.binance.com/api/v3/ticker/24hr",
    "binance_spot_book":       "https://api.binance.com/api/v3/ticker/bookTicker",
    "binance_futures_ticker":  "https://fapi.binance.com/fapi/v1/ticker/24hr",
    "binance_premium_index":   "https://fapi.binance.com/fapi/v1/premiumIndex",
    "okx_ticker":              "https://www.okx.com/api/v5/market/ticker",
    "okx_tickers":             "https://www.okx.com/api/v5/market/tickers",
    "okx_funding_rate":        "https://www.okx.com/api/v5/public/funding-rate",
    "bybit_tickers":           "https://api.bybit.com/v5/market/tickers",
    "bitget_spot_tickers":     "https://api.bitget.com/api/v2/spot/market/tickers",
    "bitget_mix_ticker":       "https://api.bitget.com/api/v2/mix/market/ticker",
    "bitget_mix_tickers":      "https://api.bitget.com/api/v2/mix/market/tickers",
    "bitget_funding_rate":     "https://api.bitget.com/api/v2/mix/market/current-fund-rate",
}

# ─────────────────────────────────────────────────────────────────────────────
# HTTP / RETRY SETTINGS
# ─────────────────────────────────────────────────────────────────────────────

HTTP: Dict[str, Any] = {
    "timeout":           _env_float("HTTP_TIMEOUT", 10.0),
    "max_retries":       _env_int("HTTP_MAX_RETRIES", 3),
    "retry_delay":       1.5,
    "rate_limit_sleep":  10.0,
    "user_agent":        "RouteScanner/1.0 (market-data research)",
}

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING CONFIGURATION
# ─────────────────────────────────────────────────────────────────────────────

os.makedirs(DATA_DIR, exist_ok=True)

LOGGING_CONFIG: Dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "detailed": {
            "format": "%(asctime)s [%(levelname)-8s] %(name)s | %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        "brief": {
            "format": "[%(levelname)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "brief",
            "level": LOG_LEVEL,
        },
        "file": {
            "class": "logging.FileHandler",
            "filename": LOG_FILE,
            "formatter": "detailed",
            "level": "DEBUG",
        },
    },
    "root": {
        "handlers": ["console", "file"],
        "level": "DEBUG",
    },
}

_logging_configured = False


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for a given module name."""
    global _logging_configured
    if not _logging_configured:
        logging.config.dictConfig(LOGGING_CONFIG)
        _logging_configured = True
    return logging.getLogger(name)
