"""
spread_aggregator.py
=====================
One refresh cycle: fetch -> group by symbol -> quality gate -> routes -> rank.

Tickers and funding rates are fetched concurrently through the cache
coordinator under their own keys, so each keeps its own TTL (funding moves
on an 8-hour cycle, prices do not). The join settles every branch; a failed
funding fetch degrades to "no funding data" while a failed ticker fetch
fails the cycle.

A failed cycle (including one where no exchange returned a ticker) never
clears good data: the last successful result is returned, marked stale.
With no previous result an explicit failure result is returned instead.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Any, Dict, List, Optional, Tuple

from cache_coordinator import CacheCoordinator
from config import CACHE_KEYS, CACHE_TTL, ROUTES, SYMBOLS, get_logger
from errors import NetworkError
from exchange_gateway import ExchangeGateway
from models import (
    AggregationResult,
    ExchangeQuote,
    FundingTable,
    SymbolRouteSet,
    SymbolSnapshot,
    TickerTable,
    market_type_of,
)
from quality_filter import QualityFilter
from route_engine import find_routes

logger = get_logger(__name__)


def group_by_symbol(tickers: TickerTable, funding: FundingTable) -> Dict[str, SymbolSnapshot]:
    """Pivot {exchange: {symbol: sample}} into {symbol: SymbolSnapshot}."""
    snapshots: Dict[str, SymbolSnapshot] = {}
    for exchange, by_symbol in tickers.items():
        for symbol, sample in by_symbol.items():
            snap = snapshots.get(symbol)
            if snap is None:
                snap = SymbolSnapshot(symbol=symbol, market_type=market_type_of(symbol))
                snapshots[symbol] = snap
            snap.samples[exchange] = sample
            fs = funding.get(exchange, {}).get(symbol)
            if fs is not None:
                snap.funding_by_exchange[exchange] = fs
    return snapshots


def build_route_sets(
    snapshots: Dict[str, SymbolSnapshot],
    quality: QualityFilter,
    fee_rate: float = ROUTES["fee_rate"],
    top_k: int = ROUTES["top_k"],
) -> List[SymbolRouteSet]:
    """Quality-gate and route every snapshot; best opportunity first."""
    route_sets: List[SymbolRouteSet] = []
    rejected: Dict[str, int] = {}
    now = time.time()

    for symbol, snap in snapshots.items():
        if snap.exchange_count < 2:
            continue
        samples = list(snap.samples.values())
        verdict = quality.evaluate(symbol, samples)
        if not verdict.accepted:
            rejected[verdict.reason] = rejected.get(verdict.reason, 0) + 1
            continue

        routes = find_routes(symbol, samples, fee_rate=fee_rate, funding=snap.funding_by_exchange)
        if not routes:
            continue

        exchanges = {}
        for name, s in snap.samples.items():
            fs = snap.funding_by_exchange.get(name)
            exchanges[name] = ExchangeQuote(
                price=s.price,
                volume=s.volume,
                bid=s.bid,
                ask=s.ask,
                funding_rate=fs.rate if fs else None,
                next_funding_at=fs.next_funding_at if fs else None,
            )

        route_sets.append(SymbolRouteSet(
            symbol=symbol,
            market_type=snap.market_type,
            exchanges=exchanges,
            routes=tuple(routes[: max(top_k, 0)]),
            total_available_routes=len(routes),
            last_updated=now,
        ))

    route_sets = [rs for rs in route_sets if rs.routes]
    route_sets.sort(key=lambda rs: rs.best_route.net_profit_percentage, reverse=True)

    if rejected:
        logger.debug("Quality rejections: %s", rejected)
    return route_sets


class SpreadAggregator:
    """
    Produces one AggregationResult per call to run_cycle().

    Parameters
    ----------
    gateway  : ExchangeGateway for the enabled exchanges
    cache    : CacheCoordinator holding the per-source ticker/funding entries
    symbols  : unified symbols to scan; None discovers them from bulk tickers
    quality  : QualityFilter (defaults to config thresholds)
    fee_rate : combined taker fee as decimal
    top_k    : routes kept per symbol
    ttls     : overrides for the "tickers" / "funding_rates" TTLs
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        cache: CacheCoordinator,
        symbols: Optional[List[str]] = None,
        quality: Optional[QualityFilter] = None,
        fee_rate: float = ROUTES["fee_rate"],
        top_k: int = ROUTES["top_k"],
        ttls: Optional[Dict[str, float]] = None,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.symbols = list(SYMBOLS) if symbols is None else symbols
        self.quality = quality or QualityFilter()
        self.fee_rate = fee_rate
        self.top_k = top_k
        self.ttls = dict(CACHE_TTL)
        if ttls:
            self.ttls.update(ttls)
        self._last_good: Optional[AggregationResult] = None
        self._cycle_count = 0

    @property
    def last_good(self) -> Optional[AggregationResult]:
        return self._last_good

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # -- Fetching -------------------------------------------------------------

    async def _tickers(self, force: bool) -> TickerTable:
        return await self.cache.get_or_compute(
            CACHE_KEYS["tickers"],
            self.ttls["tickers"],
            lambda: self.gateway.fetch_all(symbols=self.symbols or None),
            force=force,
        )

    async def _funding(self, symbols: Optional[List[str]]) -> FundingTable:
        return await self.cache.get_or_compute(
            CACHE_KEYS["funding_rates"],
            self.ttls["funding_rates"],
            lambda: self.gateway.fetch_funding(symbols=symbols),
        )

    async def _fetch(self, force: bool) -> Tuple[TickerTable, FundingTable]:
        if self.symbols:
            tickers_res, funding_res = await asyncio.gather(
                self._tickers(force),
                self._funding(self.symbols),
                return_exceptions=True,
            )
        else:
            # Discovery mode: funding symbols are only known after the tickers
            funding_res: Any = {}
            try:
                tickers_res = await self._tickers(force)
            except Exception as exc:
                tickers_res = exc
            else:
                discovered = sorted({s for by_sym in tickers_res.values() for s in by_sym})
                try:
                    funding_res = await self._funding(discovered)
                except Exception as exc:
                    funding_res = exc

        if isinstance(tickers_res, BaseException):
            raise tickers_res
        if isinstance(funding_res, BaseException):
            logger.warning("Funding fetch failed, continuing without funding data: %s", funding_res)
            funding_res = {}
        return tickers_res, funding_res

    # -- Cycle ----------------------------------------------------------------

    async def run_cycle(self, force: bool = False) -> AggregationResult:
        """
        Execute one full fetch -> group -> filter -> route cycle.

        Parameters
        ----------
        force : bypass the ticker cache TTL (funding keeps its own TTL)
        """
        self._cycle_count += 1
        t_start = time.perf_counter()
        logger.info("Aggregator: starting cycle %d", self._cycle_count)

        try:
            tickers, funding = await self._fetch(force)
            if not any(tickers.values()):
                raise NetworkError("No ticker data from any exchange")
            snapshots = group_by_symbol(tickers, funding)
            route_sets = build_route_sets(snapshots, self.quality, self.fee_rate, self.top_k)
        except Exception as exc:
            logger.error("Aggregator: cycle %d failed: %s", self._cycle_count, exc, exc_info=True)
            if self._last_good is not None:
                logger.info("Aggregator: returning last good result after failure")
                return dataclasses.replace(self._last_good, stale=True, error=str(exc))
            return AggregationResult.failure(str(exc) or type(exc).__name__)

        failed = tuple(sorted(name for name, by_sym in tickers.items() if not by_sym))
        result = AggregationResult(
            success=True,
            route_sets=tuple(route_sets),
            tickers=tickers,
            funding_rates=funding,
            timestamp=time.time(),
            failed_exchanges=failed,
        )
        self._last_good = result

        elapsed_ms = (time.perf_counter() - t_start) * 1000
        top = route_sets[0] if route_sets else None
        logger.info(
            "Aggregator: cycle %d done in %.0fms | symbols=%d with_routes=%d best=%s %.4f%%",
            self._cycle_count, elapsed_ms, len(snapshots), len(route_sets),
            top.symbol if top else "N/A",
            top.best_route.net_profit_percentage if top else 0.0,
        )
        if failed:
            logger.warning("Aggregator: no tickers from %s", ", ".join(failed))
        return result
