"""
exchange_gateway.py
====================
Best-effort, partial-result wrapper around the exchange clients.

  - One logical call per exchange; all exchanges run concurrently.
  - Inside an exchange, symbols fan out one request each, or a single bulk
    ticker (or funding) call is used when the client supports it.
  - A failing symbol is simply missing from that exchange's map. A failing
    exchange contributes an empty map. Nothing here retries and nothing here
    fails the cycle.
  - Raw client dicts are normalised into TickerSample / FundingSample;
    malformed records are dropped.

The clients are blocking (requests), so each call is moved off the event
loop with asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional

from config import SYMBOL_UNIVERSE, get_logger
from exchanges import ExchangeClient, split_symbol
from models import FundingSample, FundingTable, TickerSample, TickerTable, is_perpetual

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# NORMALISATION
# ---------------------------------------------------------------------------


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if out != out or out in (float("inf"), float("-inf")):
        return None
    return out


def normalize_ticker(exchange: str, symbol: str, raw: Any) -> Optional[TickerSample]:
    """Map a raw client ticker into a TickerSample, or None if unusable."""
    if not isinstance(raw, dict):
        return None
    price = _num(raw.get("price"))
    if price is None or price <= 0:
        return None
    volume = _num(raw.get("volume"))
    if volume is None:
        volume = 0.0
    if volume < 0:
        return None
    bid = _num(raw.get("bid"))
    ask = _num(raw.get("ask"))
    return TickerSample(
        symbol=symbol,
        exchange=exchange,
        price=price,
        volume=volume,
        bid=bid if bid and bid > 0 else None,
        ask=ask if ask and ask > 0 else None,
        observed_at=time.time(),
    )


def normalize_funding(exchange: str, symbol: str, raw: Any) -> Optional[FundingSample]:
    """Map a raw client funding record into a FundingSample, or None."""
    if not isinstance(raw, dict):
        return None
    rate = _num(raw.get("rate"))
    if rate is None:
        return None
    next_ms = _num(raw.get("next_timestamp"))
    return FundingSample(
        symbol=symbol,
        exchange=exchange,
        rate=rate,
        next_funding_at=next_ms / 1000.0 if next_ms and next_ms > 0 else None,
    )


def should_include_symbol(
    symbol: str,
    volume: Optional[float],
    universe: Optional[Dict[str, Any]] = None,
) -> bool:
    """Symbol-universe filter used when discovering symbols from bulk tickers."""
    universe = SYMBOL_UNIVERSE if universe is None else universe
    try:
        base, quote, settle = split_symbol(symbol)
    except ValueError:
        return False
    if quote not in universe["quote_assets"]:
        return False
    if settle is not None and settle not in universe["quote_assets"]:
        return False
    if any(marker in base for marker in universe["blacklist"]):
        return False
    if volume is not None and volume < universe["min_listing_volume"]:
        return False
    return True


# ---------------------------------------------------------------------------
# GATEWAY
# ---------------------------------------------------------------------------


class ExchangeGateway:
    """
    Fans requests out to every configured exchange client.

    Parameters
    ----------
    clients    : {exchange_name: ExchangeClient} for the exchanges that
                 initialised successfully
    configured : every exchange name the deployment asked for; names missing
                 from ``clients`` report False in ``initialized``
    """

    def __init__(
        self,
        clients: Dict[str, ExchangeClient],
        configured: Optional[Iterable[str]] = None,
        universe: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.clients = dict(clients)
        self.configured: List[str] = list(configured) if configured is not None else list(clients)
        self.universe = SYMBOL_UNIVERSE if universe is None else universe

    @property
    def exchange_names(self) -> List[str]:
        return list(self.clients)

    @property
    def initialized(self) -> Dict[str, bool]:
        names = list(dict.fromkeys(self.configured + list(self.clients)))
        return {name: name in self.clients for name in names}

    # -- Tickers --------------------------------------------------------------

    async def fetch_all(
        self,
        exchange_names: Optional[Iterable[str]] = None,
        symbols: Optional[List[str]] = None,
    ) -> TickerTable:
        """
        Fetch tickers from every exchange concurrently.

        ``symbols=None`` discovers symbols from each exchange's bulk tickers
        and keeps those passing the symbol-universe filter.

        Returns {exchange: {symbol: TickerSample}}.
        """
        names = self._resolve(exchange_names)
        results = await asyncio.gather(
            *(self._fetch_exchange_tickers(name, symbols) for name in names),
            return_exceptions=True,
        )
        table: TickerTable = {}
        for name, res in zip(names, results):
            if isinstance(res, BaseException):
                logger.warning("Gateway: %s tickers unavailable: %s", name, res)
                table[name] = {}
            else:
                table[name] = res
        logger.info(
            "Gateway: tickers fetched | %s",
            " ".join(f"{name}={len(table[name])}" for name in names),
        )
        return table

    async def _fetch_exchange_tickers(
        self, name: str, symbols: Optional[List[str]]
    ) -> Dict[str, TickerSample]:
        client = self.clients[name]

        if symbols is None or client.supports_bulk_tickers:
            raw_all = await asyncio.to_thread(client.fetch_all_tickers)
            out: Dict[str, TickerSample] = {}
            wanted = set(symbols) if symbols is not None else None
            for sym, raw in raw_all.items():
                if wanted is not None and sym not in wanted:
                    continue
                sample = normalize_ticker(name, sym, raw)
                if sample is None:
                    continue
                if wanted is None and not should_include_symbol(sym, sample.volume, self.universe):
                    continue
                out[sym] = sample
            return out

        results = await asyncio.gather(
            *(asyncio.to_thread(client.fetch_ticker, sym) for sym in symbols),
            return_exceptions=True,
        )
        out = {}
        for sym, raw in zip(symbols, results):
            if isinstance(raw, BaseException):
                logger.debug("Gateway: %s %s not available: %s", name, sym, raw)
                continue
            sample = normalize_ticker(name, sym, raw)
            if sample is not None:
                out[sym] = sample
        return out

    # -- Funding --------------------------------------------------------------

    async def fetch_funding(
        self,
        exchange_names: Optional[Iterable[str]] = None,
        symbols: Optional[List[str]] = None,
    ) -> FundingTable:
        """
        Fetch funding rates for the perpetual symbols in ``symbols``.

        Spot symbols are skipped. Returns {exchange: {symbol: FundingSample}}.
        """
        names = self._resolve(exchange_names)
        perps = [s for s in (symbols or []) if is_perpetual(s)]
        results = await asyncio.gather(
            *(self._fetch_exchange_funding(name, perps) for name in names),
            return_exceptions=True,
        )
        table: FundingTable = {}
        for name, res in zip(names, results):
            if isinstance(res, BaseException):
                logger.warning("Gateway: %s funding unavailable: %s", name, res)
                table[name] = {}
            else:
                table[name] = res
        return table

    async def _fetch_exchange_funding(
        self, name: str, symbols: List[str]
    ) -> Dict[str, FundingSample]:
        client = self.clients[name]
        if not symbols:
            return {}

        if client.supports_bulk_funding:
            raw_all = await asyncio.to_thread(client.fetch_all_funding_rates)
            out: Dict[str, FundingSample] = {}
            for sym in symbols:
                sample = normalize_funding(name, sym, raw_all.get(sym))
                if sample is not None:
                    out[sym] = sample
            return out

        results = await asyncio.gather(
            *(asyncio.to_thread(client.fetch_funding_rate, sym) for sym in symbols),
            return_exceptions=True,
        )
        out = {}
        for sym, raw in zip(symbols, results):
            if isinstance(raw, BaseException):
                logger.debug("Gateway: %s funding for %s not available: %s", name, sym, raw)
                continue
            sample = normalize_funding(name, sym, raw)
            if sample is not None:
                out[sym] = sample
        return out

    def _resolve(self, exchange_names: Optional[Iterable[str]]) -> List[str]:
        if exchange_names is None:
            return self.exchange_names
        return [n for n in exchange_names if n in self.clients]
