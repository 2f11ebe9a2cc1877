"""
exchanges.py
=============
Public-REST clients for the exchanges the scanner watches.

Each client answers three questions for unified symbols
("BTC/USDT" = spot, "BTC/USDT:USDT" = USDT-margined perpetual):

  - fetch_ticker(symbol)       -> {"price", "volume", "bid", "ask"}
  - fetch_funding_rate(symbol) -> {"rate", "next_timestamp"}  (perps only)
  - fetch_all_tickers()        -> {unified_symbol: ticker dict}
  - fetch_all_funding_rates()  -> {unified perp symbol: funding dict}
    (Binance, Bybit, Bitget; OKX answers one instrument per request)

Venue naming:
  - Binance: BTCUSDT on both api (spot) and fapi (perp)
  - OKX:     BTC-USDT (spot), BTC-USDT-SWAP (perp)
  - Bybit:   BTCUSDT, category=spot | linear
  - Bitget:  BTCUSDT, v2 spot and mix (productType=USDT-FUTURES)

Volumes are 24h quote volume. Timestamps are exchange milliseconds.
Retries happen here (``_get``); callers above this layer never retry.
All endpoints are public; no authentication.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from config import API, EXCHANGES, HTTP, get_logger
from errors import ConfigurationError, ExchangeError, NetworkError
from models import is_perpetual

logger = get_logger(__name__)

# Longer suffixes first so "TUSD" and "USDT" win over "USD"
_KNOWN_QUOTES: Tuple[str, ...] = ("FDUSD", "TUSD", "USDT", "USDC", "BUSD", "USD", "BTC", "ETH", "EUR")


# ---------------------------------------------------------------------------
# HTTP HELPERS
# ---------------------------------------------------------------------------


def _get(
    url: str,
    params: Optional[Dict] = None,
    retries: int = HTTP["max_retries"],
) -> Tuple[Any, float]:
    """GET with retry + latency. Returns (data, latency_ms)."""
    headers = {"User-Agent": HTTP["user_agent"]}
    for attempt in range(1, retries + 1):
        try:
            t0 = time.perf_counter()
            resp = requests.get(
                url, params=params, headers=headers, timeout=HTTP["timeout"]
            )
            latency_ms = (time.perf_counter() - t0) * 1000
            resp.raise_for_status()
            return resp.json(), latency_ms
        except requests.exceptions.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else 0
            if status == 429:
                logger.warning("Rate limited on %s -- sleeping %.0fs", url, HTTP["rate_limit_sleep"])
                time.sleep(HTTP["rate_limit_sleep"])
            elif 400 <= status < 500:
                # Unknown symbol and friends: retrying will not help
                raise ExchangeError(_host(url), "GET", f"HTTP {status}", {"url": url}) from exc
            else:
                logger.warning("[%d/%d] HTTP %d on %s", attempt, retries, status, url)
                if attempt == retries:
                    raise NetworkError(f"HTTP {status} on {url}", {"url": url}) from exc
                time.sleep(HTTP["retry_delay"] * attempt)
        except requests.exceptions.RequestException as exc:
            logger.warning("[%d/%d] Request error: %s", attempt, retries, exc)
            if attempt == retries:
                raise NetworkError(f"Request to {url} failed: {exc}", {"url": url}) from exc
            time.sleep(HTTP["retry_delay"] * attempt)
    raise NetworkError(f"All retries exhausted for {url}", {"url": url})


def _host(url: str) -> str:
    return url.split("/")[2] if "://" in url else url


def _float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def split_symbol(symbol: str) -> Tuple[str, str, Optional[str]]:
    """'BTC/USDT:USDT' -> ('BTC', 'USDT', 'USDT'); 'BTC/USDT' -> ('BTC', 'USDT', None)."""
    pair, _, settle = symbol.partition(":")
    base, _, quote = pair.partition("/")
    if not base or not quote:
        raise ValueError(f"Not a unified symbol: {symbol!r}")
    return base.upper(), quote.upper(), (settle.upper() or None)


def unify_concatenated(native: str, perp: bool) -> Optional[str]:
    """'BTCUSDT' -> 'BTC/USDT' (or 'BTC/USDT:USDT' for perps)."""
    for quote in _KNOWN_QUOTES:
        if native.endswith(quote) and len(native) > len(quote):
            base = native[: -len(quote)]
            return f"{base}/{quote}:{quote}" if perp else f"{base}/{quote}"
    return None


# ---------------------------------------------------------------------------
# BASE CLIENT
# ---------------------------------------------------------------------------


class ExchangeClient:
    """
    Common surface of every exchange client.

    Subclasses implement the spot/perp ticker lookups and the funding call.
    Only USDT-settled perpetuals are supported.
    """

    name: str = "base"
    supports_bulk_tickers: bool = True
    supports_bulk_funding: bool = False

    def fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        base, quote, settle = split_symbol(symbol)
        if settle is not None:
            if settle != "USDT":
                raise ExchangeError(self.name, "fetch_ticker", f"{symbol} not listed")
            return self._perp_ticker(base, quote)
        return self._spot_ticker(base, quote)

    def fetch_funding_rate(self, symbol: str) -> Dict[str, Any]:
        if not is_perpetual(symbol):
            raise ExchangeError(self.name, "fetch_funding_rate", f"{symbol} is not a perpetual")
        base, quote, _ = split_symbol(symbol)
        return self._funding(base, quote)

    def fetch_all_tickers(self) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    def fetch_all_funding_rates(self) -> Dict[str, Dict[str, Any]]:
        """{unified perp symbol: funding dict} in one request, where the venue allows it."""
        raise NotImplementedError

    # -- venue specific -------------------------------------------------------

    def _spot_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        raise NotImplementedError

    def _perp_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        raise NotImplementedError

    def _funding(self, base: str, quote: str) -> Dict[str, Any]:
        raise NotImplementedError

    def _not_listed(self, operation: str, native: str) -> ExchangeError:
        return ExchangeError(self.name, operation, f"{native} not listed")


def _ticker(price: Any, volume: Any, bid: Any = None, ask: Any = None) -> Dict[str, Any]:
    return {
        "price": _float(price),
        "volume": _float(volume),
        "bid": _float(bid),
        "ask": _float(ask),
    }


# ---------------------------------------------------------------------------
# BINANCE
# ---------------------------------------------------------------------------


class BinanceClient(ExchangeClient):
    name = "binance"
    supports_bulk_funding = True

    def _spot_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        data, _ = _get(API["binance_spot_ticker"], params={"symbol": f"{base}{quote}"})
        return _ticker(data.get("lastPrice"), data.get("quoteVolume"),
                       data.get("bidPrice"), data.get("askPrice"))

    def _perp_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        data, _ = _get(API["binance_futures_ticker"], params={"symbol": f"{base}{quote}"})
        return _ticker(data.get("lastPrice"), data.get("quoteVolume"))

    def _funding(self, base: str, quote: str) -> Dict[str, Any]:
        data, _ = _get(API["binance_premium_index"], params={"symbol": f"{base}{quote}"})
        return {
            "rate": _float(data.get("lastFundingRate")),
            "next_timestamp": _float(data.get("nextFundingTime")),
        }

    def fetch_all_tickers(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        spot, _ = _get(API["binance_spot_ticker"])
        for t in spot:
            sym = unify_concatenated(str(t.get("symbol", "")), perp=False)
            if sym:
                result[sym] = _ticker(t.get("lastPrice"), t.get("quoteVolume"),
                                      t.get("bidPrice"), t.get("askPrice"))
        perps, _ = _get(API["binance_futures_ticker"])
        for t in perps:
            sym = unify_concatenated(str(t.get("symbol", "")), perp=True)
            if sym and sym.endswith(":USDT"):
                result[sym] = _ticker(t.get("lastPrice"), t.get("quoteVolume"))
        return result

    def fetch_all_funding_rates(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        rows, _ = _get(API["binance_premium_index"])
        for t in rows:
            sym = unify_concatenated(str(t.get("symbol", "")), perp=True)
            if sym and sym.endswith(":USDT"):
                result[sym] = {
                    "rate": _float(t.get("lastFundingRate")),
                    "next_timestamp": _float(t.get("nextFundingTime")),
                }
        return result


# ---------------------------------------------------------------------------
# OKX
# ---------------------------------------------------------------------------


class OKXClient(ExchangeClient):
    name = "okx"

    def _data(self, url: str, params: Dict[str, str], operation: str) -> List[Dict[str, Any]]:
        payload, _ = _get(url, params=params)
        if str(payload.get("code", "0")) != "0":
            raise ExchangeError(self.name, operation, str(payload.get("msg") or payload.get("code")))
        return payload.get("data") or []

    @staticmethod
    def _from_okx(t: Dict[str, Any], swap: bool) -> Dict[str, Any]:
        last = _float(t.get("last"))
        vol_ccy = _float(t.get("volCcy24h"))
        # SWAP volCcy24h is in base currency; convert to quote
        volume = vol_ccy * last if (swap and vol_ccy is not None and last) else vol_ccy
        return _ticker(last, volume, t.get("bidPx"), t.get("askPx"))

    def _spot_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        inst = f"{base}-{quote}"
        rows = self._data(API["okx_ticker"], {"instId": inst}, "fetch_ticker")
        if not rows:
            raise self._not_listed("fetch_ticker", inst)
        return self._from_okx(rows[0], swap=False)

    def _perp_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        inst = f"{base}-{quote}-SWAP"
        rows = self._data(API["okx_ticker"], {"instId": inst}, "fetch_ticker")
        if not rows:
            raise self._not_listed("fetch_ticker", inst)
        return self._from_okx(rows[0], swap=True)

    def _funding(self, base: str, quote: str) -> Dict[str, Any]:
        inst = f"{base}-{quote}-SWAP"
        rows = self._data(API["okx_funding_rate"], {"instId": inst}, "fetch_funding_rate")
        if not rows:
            raise self._not_listed("fetch_funding_rate", inst)
        return {
            "rate": _float(rows[0].get("fundingRate")),
            "next_timestamp": _float(rows[0].get("fundingTime")),
        }

    def fetch_all_tickers(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for t in self._data(API["okx_tickers"], {"instType": "SPOT"}, "fetch_all_tickers"):
            parts = str(t.get("instId", "")).split("-")
            if len(parts) == 2:
                result[f"{parts[0]}/{parts[1]}"] = self._from_okx(t, swap=False)
        for t in self._data(API["okx_tickers"], {"instType": "SWAP"}, "fetch_all_tickers"):
            parts = str(t.get("instId", "")).split("-")
            if len(parts) == 3 and parts[1] == "USDT":
                result[f"{parts[0]}/USDT:USDT"] = self._from_okx(t, swap=True)
        return result


# ---------------------------------------------------------------------------
# BYBIT
# ---------------------------------------------------------------------------


class BybitClient(ExchangeClient):
    name = "bybit"
    supports_bulk_funding = True

    def _list(self, category: str, symbol: Optional[str], operation: str) -> List[Dict[str, Any]]:
        params = {"category": category}
        if symbol:
            params["symbol"] = symbol
        payload, _ = _get(API["bybit_tickers"], params=params)
        if int(payload.get("retCode", 0)) != 0:
            raise ExchangeError(self.name, operation, str(payload.get("retMsg")))
        return payload.get("result", {}).get("list") or []

    def _one(self, category: str, native: str, operation: str) -> Dict[str, Any]:
        rows = self._list(category, native, operation)
        if not rows:
            raise self._not_listed(operation, native)
        return rows[0]

    def _spot_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        t = self._one("spot", f"{base}{quote}", "fetch_ticker")
        return _ticker(t.get("lastPrice"), t.get("turnover24h"), t.get("bid1Price"), t.get("ask1Price"))

    def _perp_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        t = self._one("linear", f"{base}{quote}", "fetch_ticker")
        return _ticker(t.get("lastPrice"), t.get("turnover24h"), t.get("bid1Price"), t.get("ask1Price"))

    def _funding(self, base: str, quote: str) -> Dict[str, Any]:
        t = self._one("linear", f"{base}{quote}", "fetch_funding_rate")
        return {
            "rate": _float(t.get("fundingRate")),
            "next_timestamp": _float(t.get("nextFundingTime")),
        }

    def fetch_all_tickers(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for category, perp in (("spot", False), ("linear", True)):
            for t in self._list(category, None, "fetch_all_tickers"):
                sym = unify_concatenated(str(t.get("symbol", "")), perp=perp)
                if sym is None or (perp and not sym.endswith(":USDT")):
                    continue
                result[sym] = _ticker(t.get("lastPrice"), t.get("turnover24h"),
                                      t.get("bid1Price"), t.get("ask1Price"))
        return result

    def fetch_all_funding_rates(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for t in self._list("linear", None, "fetch_all_funding_rates"):
            sym = unify_concatenated(str(t.get("symbol", "")), perp=True)
            if sym and sym.endswith(":USDT"):
                result[sym] = {
                    "rate": _float(t.get("fundingRate")),
                    "next_timestamp": _float(t.get("nextFundingTime")),
                }
        return result


# ---------------------------------------------------------------------------
# BITGET
# ---------------------------------------------------------------------------


class BitgetClient(ExchangeClient):
    name = "bitget"
    supports_bulk_funding = True
    product_type = "USDT-FUTURES"

    def _data(self, url: str, params: Dict[str, str], operation: str) -> List[Dict[str, Any]]:
        payload, _ = _get(url, params=params)
        if str(payload.get("code", "00000")) != "00000":
            raise ExchangeError(self.name, operation, str(payload.get("msg") or payload.get("code")))
        data = payload.get("data") or []
        return data if isinstance(data, list) else [data]

    @staticmethod
    def _from_bitget(t: Dict[str, Any]) -> Dict[str, Any]:
        volume = t.get("quoteVolume") or t.get("usdtVolume")
        return _ticker(t.get("lastPr"), volume, t.get("bidPr"), t.get("askPr"))

    def _spot_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        native = f"{base}{quote}"
        rows = self._data(API["bitget_spot_tickers"], {"symbol": native}, "fetch_ticker")
        if not rows:
            raise self._not_listed("fetch_ticker", native)
        return self._from_bitget(rows[0])

    def _perp_ticker(self, base: str, quote: str) -> Dict[str, Any]:
        native = f"{base}{quote}"
        rows = self._data(API["bitget_mix_ticker"],
                          {"symbol": native, "productType": self.product_type}, "fetch_ticker")
        if not rows:
            raise self._not_listed("fetch_ticker", native)
        return self._from_bitget(rows[0])

    def _funding(self, base: str, quote: str) -> Dict[str, Any]:
        native = f"{base}{quote}"
        rows = self._data(API["bitget_funding_rate"],
                          {"symbol": native, "productType": self.product_type}, "fetch_funding_rate")
        if not rows:
            raise self._not_listed("fetch_funding_rate", native)
        return {
            "rate": _float(rows[0].get("fundingRate")),
            "next_timestamp": _float(rows[0].get("nextUpdate")),
        }

    def fetch_all_tickers(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for t in self._data(API["bitget_spot_tickers"], {}, "fetch_all_tickers"):
            sym = unify_concatenated(str(t.get("symbol", "")), perp=False)
            if sym:
                result[sym] = self._from_bitget(t)
        for t in self._data(API["bitget_mix_tickers"], {"productType": self.product_type},
                            "fetch_all_tickers"):
            sym = unify_concatenated(str(t.get("symbol", "")), perp=True)
            if sym and sym.endswith(":USDT"):
                result[sym] = self._from_bitget(t)
        return result

    def fetch_all_funding_rates(self) -> Dict[str, Dict[str, Any]]:
        # mix tickers carry the current rate but not the next settlement time
        result: Dict[str, Dict[str, Any]] = {}
        for t in self._data(API["bitget_mix_tickers"], {"productType": self.product_type},
                            "fetch_all_funding_rates"):
            sym = unify_concatenated(str(t.get("symbol", "")), perp=True)
            if sym and sym.endswith(":USDT"):
                result[sym] = {"rate": _float(t.get("fundingRate")), "next_timestamp": None}
        return result


# ---------------------------------------------------------------------------
# FACTORY
# ---------------------------------------------------------------------------

CLIENT_CLASSES: Dict[str, type] = {
    "binance": BinanceClient,
    "okx":     OKXClient,
    "bybit":   BybitClient,
    "bitget":  BitgetClient,
}


def create_client(name: str) -> ExchangeClient:
    cls = CLIENT_CLASSES.get(name.lower())
    if cls is None:
        raise ConfigurationError(f"Unsupported exchange: {name}")
    return cls()


def build_enabled_clients(flags: Optional[Dict[str, bool]] = None) -> Dict[str, ExchangeClient]:
    """Instantiate a client for every exchange whose enable flag is set."""
    flags = EXCHANGES if flags is None else flags
    clients: Dict[str, ExchangeClient] = {}
    for name, enabled in flags.items():
        if not enabled:
            logger.info("Exchange %s disabled by configuration", name)
            continue
        try:
            clients[name] = create_client(name)
            logger.info("Initialized %s client", name)
        except ConfigurationError as exc:
            logger.error("Failed to initialize %s: %s", name, exc)
    return clients
