"""
data_service.py
================
API-facing service: everything the HTTP layer and the runner ask for goes
through here.

The processed cycle result lives in the cache coordinator under the
"all_data" key. Every read goes through get_or_compute, so concurrent
requests on an expired entry trigger exactly one aggregation cycle.
``force_refresh`` bypasses the TTL but still joins a cycle that is already
running.

Lifecycle is explicit: construct, ``await start()`` on the loop that will
own it (cache sweeper + background refresh), ``await stop()`` on shutdown.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cache_coordinator import CacheCoordinator
from config import CACHE_KEYS, CACHE_TTL, REFRESH_INTERVAL, SUPPORTED_EXCHANGES, get_logger
from exchange_gateway import ExchangeGateway
from exchanges import build_enabled_clients
from models import AggregationResult, SymbolRouteSet, route_sets_to_list
from spread_aggregator import SpreadAggregator

logger = get_logger(__name__)

ALL_DATA_KEY = CACHE_KEYS["processed_data"]


# ---------------------------------------------------------------------------
# FILTERS & STATISTICS
# ---------------------------------------------------------------------------


@dataclass
class RouteFilters:
    """Dashboard filters for get_routes. Every field is optional."""

    min_spread: Optional[float] = None      # percent, against the best route
    min_volume: Optional[float] = None      # any quoting exchange must reach it
    exchanges: List[str] = field(default_factory=list)
    search: Optional[str] = None
    limit: Optional[int] = None

    def is_empty(self) -> bool:
        return (self.min_spread is None and self.min_volume is None and not self.exchanges
                and not self.search and not self.limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minSpread": self.min_spread,
            "minVolume": self.min_volume,
            "exchanges": self.exchanges,
            "search": self.search,
            "limit": self.limit,
        }


def apply_filters(route_sets: List[SymbolRouteSet], filters: Optional[RouteFilters]) -> List[SymbolRouteSet]:
    if filters is None:
        return list(route_sets)

    filtered = list(route_sets)
    if filters.min_spread is not None:
        filtered = [rs for rs in filtered if rs.best_route.spread_percentage >= filters.min_spread]
    if filters.min_volume is not None:
        filtered = [
            rs for rs in filtered
            if any(q.volume >= filters.min_volume for q in rs.exchanges.values())
        ]
    if filters.exchanges:
        wanted = {e.lower() for e in filters.exchanges}
        filtered = [rs for rs in filtered if wanted.intersection(rs.exchanges)]
    if filters.search:
        term = filters.search.lower()
        filtered = [rs for rs in filtered if term in rs.symbol.lower()]
    if filters.limit and filters.limit > 0:
        filtered = filtered[: filters.limit]
    return filtered


def route_stats(route_sets: List[SymbolRouteSet]) -> Dict[str, Any]:
    n = len(route_sets)
    if n == 0:
        return {"totalSymbols": 0, "averageRoutesPerSymbol": 0.0, "averageNetProfit": 0.0}
    total_routes = sum(rs.route_count for rs in route_sets)
    avg_net = sum(rs.best_route.net_profit_percentage for rs in route_sets) / n
    return {
        "totalSymbols": n,
        "averageRoutesPerSymbol": round(total_routes / n, 1),
        "averageNetProfit": round(avg_net, 4),
    }


def route_statistics(route_sets: List[SymbolRouteSet]) -> Dict[str, Any]:
    """Summary numbers over the best route of every symbol."""
    if not route_sets:
        return {
            "totalOpportunities": 0,
            "averageSpread": 0.0,
            "maxSpread": 0.0,
            "minSpread": 0.0,
            "averageNetProfit": 0.0,
            "lowRiskCount": 0,
            "mediumRiskCount": 0,
            "highRiskCount": 0,
        }
    spreads = [rs.best_route.spread_percentage for rs in route_sets]
    risk = {"low": 0, "medium": 0, "high": 0}
    for rs in route_sets:
        risk[rs.best_route.execution_risk] += 1
    return {
        "totalOpportunities": len(route_sets),
        "averageSpread": sum(spreads) / len(spreads),
        "maxSpread": max(spreads),
        "minSpread": min(spreads),
        "averageNetProfit": sum(rs.best_route.net_profit_percentage for rs in route_sets) / len(route_sets),
        "lowRiskCount": risk["low"],
        "mediumRiskCount": risk["medium"],
        "highRiskCount": risk["high"],
    }


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# SERVICE
# ---------------------------------------------------------------------------


class DataService:
    """
    Parameters
    ----------
    gateway          : ExchangeGateway over the enabled exchange clients
    cache            : CacheCoordinator shared with the aggregator
    aggregator       : SpreadAggregator (built from gateway + cache if None)
    processed_ttl    : TTL of the processed "all_data" entry
    refresh_interval : seconds between background refreshes; 0 disables them
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        cache: Optional[CacheCoordinator] = None,
        aggregator: Optional[SpreadAggregator] = None,
        processed_ttl: float = CACHE_TTL["processed_data"],
        refresh_interval: float = REFRESH_INTERVAL,
    ) -> None:
        self.gateway = gateway
        self.cache = cache or CacheCoordinator()
        self.aggregator = aggregator or SpreadAggregator(gateway, self.cache)
        self.processed_ttl = processed_ttl
        self.refresh_interval = refresh_interval
        self._refresher: Optional[asyncio.Task] = None
        self._started_at = time.monotonic()

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        self._started_at = time.monotonic()
        self.cache.start()
        if self.refresh_interval > 0 and self._refresher is None:
            self._refresher = asyncio.get_running_loop().create_task(self._refresh_loop())
            logger.info("Background refresh every %.0fs", self.refresh_interval)

    async def stop(self) -> None:
        if self._refresher is not None:
            self._refresher.cancel()
            try:
                await self._refresher
            except asyncio.CancelledError:
                pass
            self._refresher = None
        await self.cache.close()
        self.cache.clear()
        logger.info("DataService stopped")

    async def _refresh_loop(self) -> None:
        while True:
            try:
                if not self.cache.has(ALL_DATA_KEY) and not self.cache.is_in_flight(ALL_DATA_KEY):
                    logger.info("Background refresh triggered")
                await self.get_all_data()
            except Exception as exc:
                logger.error("Background refresh failed: %s", exc, exc_info=True)
            await asyncio.sleep(self.refresh_interval)

    # -- Core read path -------------------------------------------------------

    async def get_all_data(self, force_refresh: bool = False) -> AggregationResult:
        return await self.cache.get_or_compute(
            ALL_DATA_KEY,
            self.processed_ttl,
            lambda: self.aggregator.run_cycle(force=force_refresh),
            force=force_refresh,
        )

    async def _read(self, force_refresh: bool):
        cached = not force_refresh and self.cache.has(ALL_DATA_KEY)
        result = await self.get_all_data(force_refresh)
        return result, cached

    # -- API operations -------------------------------------------------------

    async def get_routes(
        self,
        filters: Optional[RouteFilters] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        result, cached = await self._read(force_refresh)
        if not result.success:
            return {
                "success": False,
                "data": [],
                "total": 0,
                "count": 0,
                "cached": False,
                "error": result.error,
                "timestamp": _now_ms(),
            }

        all_sets = list(result.route_sets)
        filtered = apply_filters(all_sets, filters)
        return {
            "success": True,
            "data": route_sets_to_list(filtered),
            "total": len(all_sets),
            "count": len(filtered),
            "cached": cached,
            "stale": result.stale,
            "routeStats": route_stats(filtered),
            "filters": filters.to_dict() if filters is not None else None,
            "timestamp": _now_ms(),
        }

    async def get_tickers(self, exchange: Optional[str] = None, force_refresh: bool = False) -> Dict[str, Any]:
        result, cached = await self._read(force_refresh)
        if not result.success:
            return {"success": False, "data": {}, "error": result.error,
                    "timestamp": _now_ms(), "cached": False}
        data = result.tickers_dict()
        if exchange:
            data = {exchange: data.get(exchange, {})}
        return {"success": True, "data": data, "timestamp": _now_ms(), "cached": cached}

    async def get_funding_rates(self, exchange: Optional[str] = None, force_refresh: bool = False) -> Dict[str, Any]:
        result, cached = await self._read(force_refresh)
        if not result.success:
            return {"success": False, "data": {}, "error": result.error,
                    "timestamp": _now_ms(), "cached": False}
        data = result.funding_dict()
        if exchange:
            data = {exchange: data.get(exchange, {})}
        return {"success": True, "data": data, "timestamp": _now_ms(), "cached": cached}

    async def get_health(self) -> Dict[str, Any]:
        info = self.cache.info(ALL_DATA_KEY)
        exchanges = self.gateway.initialized
        for name in SUPPORTED_EXCHANGES:
            exchanges.setdefault(name, False)
        return {
            "success": any(exchanges.values()),
            "exchanges": exchanges,
            "cache": {
                **self.cache.stats(),
                "lastUpdate": info["age"] if info else None,
                "isCached": self.cache.has(ALL_DATA_KEY),
            },
            "uptime": round(time.monotonic() - self._started_at, 1),
            "timestamp": _now_ms(),
        }

    async def force_update(self) -> Dict[str, Any]:
        logger.info("Forced update requested")
        result = await self.get_all_data(force_refresh=True)
        return {
            "success": result.success,
            "message": "Data refreshed successfully" if result.success else "Refresh failed",
            "data": {
                "routeCount": len(result.route_sets),
                "timestamp": int(result.timestamp * 1000),
                "stale": result.stale,
                "error": result.error,
            },
        }

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_cache_info(self) -> Dict[str, Any]:
        return {
            "stats": self.cache.stats(),
            "keys": self.cache.keys(),
            "size": len(self.cache),
        }

    def _last_route_sets(self) -> List[SymbolRouteSet]:
        last = self.aggregator.last_good
        return list(last.route_sets) if last is not None else []

    def get_statistics(self) -> Dict[str, Any]:
        return route_statistics(self._last_route_sets())

    def get_top_opportunities(self, count: int = 10) -> List[Dict[str, Any]]:
        return route_sets_to_list(self._last_route_sets()[: max(count, 0)])


# ---------------------------------------------------------------------------
# FACTORY
# ---------------------------------------------------------------------------


def build_service(
    symbols: Optional[List[str]] = None,
    refresh_interval: float = REFRESH_INTERVAL,
) -> DataService:
    """Wire gateway -> cache -> aggregator -> service from config."""
    clients = build_enabled_clients()
    gateway = ExchangeGateway(clients, configured=SUPPORTED_EXCHANGES)
    cache = CacheCoordinator()
    aggregator = SpreadAggregator(gateway, cache, symbols=symbols)
    logger.info("DataService built with exchanges: %s", ", ".join(gateway.exchange_names) or "none")
    return DataService(gateway, cache, aggregator, refresh_interval=refresh_interval)
