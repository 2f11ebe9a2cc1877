"""
models.py
==========
Typed records that flow through one aggregation cycle.

TickerSample / FundingSample are produced by the exchange gateway and live
for one cycle. SymbolSnapshot groups them per symbol. SymbolRouteSet is the
per-symbol output; it is frozen and replaced wholesale on the next cycle.

``to_dict()`` on each record produces the camelCase shape served by the REST
API.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

SPOT = "spot"
PERP = "perp"

_PERP_MARKERS = ("PERP", "PERPETUAL")


def market_type_of(symbol: str) -> str:
    """
    Infer the market type from a unified symbol.

    "BTC/USDT:USDT" (settlement separator) and "BTC-PERP" style names are
    perpetuals; everything else is spot.
    """
    upper = symbol.upper()
    if ":" in upper or any(marker in upper for marker in _PERP_MARKERS):
        return PERP
    return SPOT


def is_perpetual(symbol: str) -> bool:
    return market_type_of(symbol) == PERP


# ---------------------------------------------------------------------------
# RAW SAMPLES
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TickerSample:
    """One exchange's observation of one symbol at one instant."""

    symbol: str
    exchange: str
    price: float               # last traded price, always > 0
    volume: float              # 24h quote volume, always >= 0
    bid: Optional[float] = None
    ask: Optional[float] = None
    observed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "exchange": self.exchange,
            "price": self.price,
            "volume": self.volume,
            "bid": self.bid,
            "ask": self.ask,
            "observedAt": int(self.observed_at * 1000),
        }


@dataclass(frozen=True)
class FundingSample:
    """Funding rate for a perpetual symbol on one exchange."""

    symbol: str
    exchange: str
    rate: float                          # signed fraction per funding period
    next_funding_at: Optional[float] = None  # epoch seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "exchange": self.exchange,
            "rate": self.rate,
            "nextFundingAt": int(self.next_funding_at * 1000) if self.next_funding_at else None,
        }


@dataclass
class SymbolSnapshot:
    """All samples for one symbol in the current cycle."""

    symbol: str
    market_type: str
    samples: Dict[str, TickerSample] = field(default_factory=dict)
    funding_by_exchange: Dict[str, FundingSample] = field(default_factory=dict)

    @property
    def exchange_count(self) -> int:
        return len(self.samples)


# ---------------------------------------------------------------------------
# ROUTES
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FundingImpact:
    buy_exchange_rate: float
    sell_exchange_rate: float
    net_funding_impact: float   # |sell - buy| * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buyExchangeRate": self.buy_exchange_rate,
            "sellExchangeRate": self.sell_exchange_rate,
            "netFundingImpact": self.net_funding_impact,
        }


@dataclass(frozen=True)
class ArbitrageRoute:
    """A directed buy-low / sell-high opportunity between two exchanges."""

    route_id: str
    symbol: str
    buy_exchange: str
    sell_exchange: str
    buy_price: float
    sell_price: float
    spread_absolute: float
    spread_percentage: float
    gross_profit: float
    estimated_fees: float
    net_profit: float
    net_profit_percentage: float
    max_volume: float
    liquidity_score: float
    execution_risk: str         # "low" | "medium" | "high"
    funding_impact: Optional[FundingImpact] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "routeId": self.route_id,
            "type": "direct",
            "symbol": self.symbol,
            "buyExchange": self.buy_exchange,
            "sellExchange": self.sell_exchange,
            "buyPrice": self.buy_price,
            "sellPrice": self.sell_price,
            "spread": {
                "absolute": self.spread_absolute,
                "percentage": self.spread_percentage,
            },
            "profitability": {
                "grossProfit": self.gross_profit,
                "estimatedFees": self.estimated_fees,
                "netProfit": self.net_profit,
                "netProfitPercentage": self.net_profit_percentage,
            },
            "executionConstraints": {
                "maxVolume": self.max_volume,
                "liquidityScore": self.liquidity_score,
                "executionRisk": self.execution_risk,
            },
        }
        if self.funding_impact is not None:
            data["fundingImpact"] = self.funding_impact.to_dict()
        return data


@dataclass(frozen=True)
class ExchangeQuote:
    """Per-exchange entry of a SymbolRouteSet."""

    price: float
    volume: float
    bid: Optional[float] = None
    ask: Optional[float] = None
    funding_rate: Optional[float] = None
    next_funding_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "price": self.price,
            "volume": self.volume,
            "bid": self.bid,
            "ask": self.ask,
        }
        if self.funding_rate is not None:
            data["fundingRate"] = {
                "rate": self.funding_rate,
                "nextTime": int(self.next_funding_at * 1000) if self.next_funding_at else None,
            }
        return data


@dataclass(frozen=True)
class SymbolRouteSet:
    """Ranked routes for one symbol, created once per aggregation cycle."""

    symbol: str
    market_type: str
    exchanges: Dict[str, ExchangeQuote]
    routes: Tuple[ArbitrageRoute, ...]     # best first
    total_available_routes: int
    last_updated: float = field(default_factory=time.time)

    @property
    def best_route(self) -> ArbitrageRoute:
        return self.routes[0]

    @property
    def route_count(self) -> int:
        return len(self.routes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "marketType": self.market_type,
            "exchanges": {name: q.to_dict() for name, q in self.exchanges.items()},
            "routes": [r.to_dict() for r in self.routes],
            "bestRoute": self.best_route.to_dict(),
            "routeCount": self.route_count,
            "totalAvailableRoutes": self.total_available_routes,
            "lastUpdated": int(self.last_updated * 1000),
        }


# ---------------------------------------------------------------------------
# CYCLE RESULT
# ---------------------------------------------------------------------------

TickerTable = Dict[str, Dict[str, TickerSample]]     # exchange -> symbol -> sample
FundingTable = Dict[str, Dict[str, FundingSample]]   # exchange -> symbol -> sample


@dataclass(frozen=True)
class AggregationResult:
    """Everything one refresh cycle produced."""

    success: bool
    route_sets: Tuple[SymbolRouteSet, ...] = ()
    tickers: TickerTable = field(default_factory=dict)
    funding_rates: FundingTable = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    error: Optional[str] = None
    stale: bool = False        # True when a failed refresh fell back to older data
    failed_exchanges: Tuple[str, ...] = ()

    @classmethod
    def failure(cls, message: str) -> "AggregationResult":
        return cls(success=False, error=message)

    def tickers_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            ex: {sym: s.to_dict() for sym, s in by_symbol.items()}
            for ex, by_symbol in self.tickers.items()
        }

    def funding_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            ex: {sym: s.to_dict() for sym, s in by_symbol.items()}
            for ex, by_symbol in self.funding_rates.items()
        }


def route_sets_to_list(route_sets: List[SymbolRouteSet]) -> List[Dict[str, Any]]:
    return [rs.to_dict() for rs in route_sets]
