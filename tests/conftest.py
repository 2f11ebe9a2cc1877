"""Shared fixtures: in-memory exchange clients and sample builders."""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

import pytest

from cache_coordinator import CacheCoordinator
from errors import ExchangeError, NetworkError
from exchanges import ExchangeClient
from models import TickerSample


def make_sample(exchange: str, price: float, volume: float = 100_000.0,
                symbol: str = "BTC/USDT") -> TickerSample:
    return TickerSample(symbol=symbol, exchange=exchange, price=price, volume=volume,
                        observed_at=time.time())


def raw_ticker(price: float, volume: float = 100_000.0) -> Dict[str, Any]:
    return {"price": price, "volume": volume, "bid": None, "ask": None}


class FakeClient(ExchangeClient):
    """ExchangeClient serving canned raw tickers and funding records."""

    def __init__(
        self,
        name: str,
        tickers: Optional[Dict[str, Dict[str, Any]]] = None,
        funding: Optional[Dict[str, Dict[str, Any]]] = None,
        bulk: bool = False,
        down: bool = False,
        bulk_funding: bool = False,
    ) -> None:
        self.name = name
        self.tickers = dict(tickers or {})
        self.funding = dict(funding or {})
        self.supports_bulk_tickers = bulk
        self.supports_bulk_funding = bulk_funding
        self.down = down
        self.ticker_calls = 0
        self.bulk_calls = 0
        self.funding_calls = 0
        self.bulk_funding_calls = 0

    def fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        self.ticker_calls += 1
        if self.down:
            raise NetworkError(f"{self.name} unreachable")
        if symbol not in self.tickers:
            raise ExchangeError(self.name, "fetch_ticker", f"{symbol} not listed")
        return self.tickers[symbol]

    def fetch_all_tickers(self) -> Dict[str, Dict[str, Any]]:
        self.bulk_calls += 1
        if self.down:
            raise NetworkError(f"{self.name} unreachable")
        return dict(self.tickers)

    def fetch_all_funding_rates(self) -> Dict[str, Dict[str, Any]]:
        self.bulk_funding_calls += 1
        if self.down:
            raise NetworkError(f"{self.name} unreachable")
        return dict(self.funding)

    def fetch_funding_rate(self, symbol: str) -> Dict[str, Any]:
        self.funding_calls += 1
        if self.down:
            raise NetworkError(f"{self.name} unreachable")
        if symbol not in self.funding:
            raise ExchangeError(self.name, "fetch_funding_rate", f"{symbol} not listed")
        return self.funding[symbol]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheCoordinator(default_ttl=10, sweep_interval=60, clock=clock)


@pytest.fixture
def three_venue_clients():
    """BTC/USDT on three venues at 100 / 101 / 99; ETH only on one."""
    return {
        "binance": FakeClient("binance", {"BTC/USDT": raw_ticker(100, 80_000),
                                          "ETH/USDT": raw_ticker(2000, 500_000)}),
        "okx": FakeClient("okx", {"BTC/USDT": raw_ticker(101, 90_000)}),
        "bybit": FakeClient("bybit", {"BTC/USDT": raw_ticker(99, 85_000)}),
    }
