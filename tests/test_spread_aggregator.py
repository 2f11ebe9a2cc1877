"""
Unit tests for spread_aggregator.py -- one full refresh cycle.
"""

from unittest.mock import patch

import pytest

from cache_coordinator import CacheCoordinator
from exchange_gateway import ExchangeGateway
from models import SymbolSnapshot
from quality_filter import QualityFilter
from spread_aggregator import SpreadAggregator, build_route_sets, group_by_symbol
from tests.conftest import FakeClient, make_sample, raw_ticker

SYMBOLS = ["BTC/USDT", "ETH/USDT", "SOL/USDT", "BTC/USDT:USDT"]


def _clients():
    return {
        "binance": FakeClient("binance", {
            "BTC/USDT": raw_ticker(100, 80_000),
            "ETH/USDT": raw_ticker(2000, 500_000),      # only venue: dropped
            "SOL/USDT": raw_ticker(100, 100_000),
            "BTC/USDT:USDT": raw_ticker(100, 200_000),
        }, funding={"BTC/USDT:USDT": {"rate": 0.0001, "next_timestamp": None}}),
        "okx": FakeClient("okx", {
            "BTC/USDT": raw_ticker(101, 90_000),
            "SOL/USDT": raw_ticker(160, 100_000),      # 60% spread: bad data
            "BTC/USDT:USDT": raw_ticker(100.5, 200_000),
        }, funding={"BTC/USDT:USDT": {"rate": -0.0001, "next_timestamp": None}}),
        "bybit": FakeClient("bybit", {
            "BTC/USDT": raw_ticker(99, 85_000),
        }),
    }


def _aggregator(clients=None, symbols=SYMBOLS):
    gateway = ExchangeGateway(clients or _clients())
    return SpreadAggregator(gateway, CacheCoordinator(), symbols=symbols)


class TestGrouping:
    def test_group_by_symbol_pivots_table(self):
        tickers = {
            "a": {"BTC/USDT": make_sample("a", 100)},
            "b": {"BTC/USDT": make_sample("b", 101), "ETH/USDT": make_sample("b", 2000, symbol="ETH/USDT")},
        }
        snaps = group_by_symbol(tickers, {})
        assert snaps["BTC/USDT"].exchange_count == 2
        assert snaps["ETH/USDT"].exchange_count == 1
        assert snaps["BTC/USDT"].market_type == "spot"

    def test_single_exchange_snapshot_skipped(self):
        snap = SymbolSnapshot("ETH/USDT", "spot", {"a": make_sample("a", 2000, symbol="ETH/USDT")})
        assert build_route_sets({"ETH/USDT": snap}, QualityFilter()) == []


class TestCycle:
    @pytest.mark.asyncio
    async def test_full_cycle(self):
        result = await _aggregator().run_cycle()
        assert result.success
        assert not result.stale
        symbols = [rs.symbol for rs in result.route_sets]
        assert "BTC/USDT" in symbols
        # single venue and unrealistic spread never show up
        assert "ETH/USDT" not in symbols
        assert "SOL/USDT" not in symbols

        btc = next(rs for rs in result.route_sets if rs.symbol == "BTC/USDT")
        assert btc.best_route.buy_exchange == "bybit"
        assert btc.best_route.sell_exchange == "okx"
        assert btc.best_route.net_profit == pytest.approx(1.802)
        assert set(btc.exchanges) == {"binance", "okx", "bybit"}
        assert btc.route_count <= 5

    @pytest.mark.asyncio
    async def test_sorted_by_best_net_profit(self):
        result = await _aggregator().run_cycle()
        best = [rs.best_route.net_profit_percentage for rs in result.route_sets]
        assert best == sorted(best, reverse=True)

    @pytest.mark.asyncio
    async def test_perp_routes_carry_funding(self):
        result = await _aggregator().run_cycle()
        perp = next(rs for rs in result.route_sets if rs.symbol == "BTC/USDT:USDT")
        assert perp.market_type == "perp"
        assert perp.best_route.funding_impact is not None
        assert perp.best_route.funding_impact.net_funding_impact == pytest.approx(0.02)
        assert perp.exchanges["okx"].funding_rate == pytest.approx(-0.0001)

    @pytest.mark.asyncio
    async def test_down_exchange_reported(self):
        clients = _clients()
        clients["bybit"].down = True
        result = await _aggregator(clients).run_cycle()
        assert result.success
        assert result.failed_exchanges == ("bybit",)
        btc = next(rs for rs in result.route_sets if rs.symbol == "BTC/USDT")
        assert btc.best_route.buy_exchange == "binance"

    @pytest.mark.asyncio
    async def test_total_outage_without_history_fails(self):
        clients = _clients()
        for c in clients.values():
            c.down = True
        result = await _aggregator(clients).run_cycle()
        assert not result.success
        assert result.route_sets == ()
        assert "No ticker data" in result.error

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_last_good(self):
        clients = _clients()
        agg = _aggregator(clients)
        good = await agg.run_cycle()
        for c in clients.values():
            c.down = True
        fallback = await agg.run_cycle(force=True)
        assert fallback.success
        assert fallback.stale
        assert fallback.error
        assert fallback.route_sets == good.route_sets
        assert agg.cycle_count == 2

    @pytest.mark.asyncio
    async def test_routing_error_falls_back_to_last_good(self):
        agg = _aggregator()
        good = await agg.run_cycle()
        with patch("spread_aggregator.build_route_sets", side_effect=RuntimeError("bad snapshot")):
            fallback = await agg.run_cycle(force=True)
        assert fallback.success
        assert fallback.stale
        assert fallback.error == "bad snapshot"
        assert fallback.route_sets == good.route_sets

    @pytest.mark.asyncio
    async def test_tickers_served_from_cache_within_ttl(self):
        clients = _clients()
        agg = _aggregator(clients)
        await agg.run_cycle()
        calls = clients["okx"].ticker_calls
        await agg.run_cycle()
        assert clients["okx"].ticker_calls == calls
        await agg.run_cycle(force=True)
        assert clients["okx"].ticker_calls > calls

    @pytest.mark.asyncio
    async def test_discovery_mode(self):
        clients = _clients()
        for c in clients.values():
            c.supports_bulk_tickers = True
        result = await _aggregator(clients, symbols=[]).run_cycle()
        assert result.success
        assert "BTC/USDT" in [rs.symbol for rs in result.route_sets]
        assert clients["binance"].bulk_calls == 1
