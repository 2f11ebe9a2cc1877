"""
route_engine.py
================
Enumerates every directed (buy, sell) exchange pair for one symbol and keeps
the profitable ones.

For each ordered pair (i, j), i != j, with price[j] > price[i]:

    gross      = price[j] - price[i]
    fees       = price[i] * fee_rate            (combined taker fee, 0.2%)
    net        = gross - fees
    net_pct    = net / price[i] * 100

A route is kept when net > 0 and the gross spread exceeds 1 basis point.
Kept routes are ranked by net_pct (stable, so ties keep pair order) and the
first top_k are returned. O(n^2) in the number of exchanges quoting the
symbol, which is bounded by the configured exchange count.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from config import ROUTES, get_logger
from models import (
    ArbitrageRoute,
    FundingImpact,
    FundingSample,
    TickerSample,
    is_perpetual,
)

logger = get_logger(__name__)


def classify_execution_risk(
    max_volume: float,
    low_risk_volume: float = ROUTES["low_risk_volume"],
    high_risk_volume: float = ROUTES["high_risk_volume"],
) -> str:
    if max_volume > low_risk_volume:
        return "low"
    if max_volume < high_risk_volume:
        return "high"
    return "medium"


def funding_impact_for(
    buy: Optional[FundingSample],
    sell: Optional[FundingSample],
) -> Optional[FundingImpact]:
    """Funding impact of holding the pair; None when either leg has no sample."""
    if buy is None or sell is None:
        return None
    return FundingImpact(
        buy_exchange_rate=buy.rate,
        sell_exchange_rate=sell.rate,
        net_funding_impact=abs(sell.rate - buy.rate) * 100,
    )


def find_routes(
    symbol: str,
    samples: Sequence[TickerSample],
    fee_rate: float = ROUTES["fee_rate"],
    funding: Optional[Dict[str, FundingSample]] = None,
    min_spread_pct: float = ROUTES["min_spread_pct"],
) -> List[ArbitrageRoute]:
    """
    Every profitable route for ``symbol``, ranked best first (untruncated).

    Parameters
    ----------
    samples        : one TickerSample per exchange
    fee_rate       : combined taker fee as decimal, charged on the buy price
    funding        : {exchange: FundingSample}; only used for perpetuals
    min_spread_pct : minimum gross spread in percent
    """
    funding = funding or {}
    perp = is_perpetual(symbol)
    liquidity_volume = ROUTES["liquidity_volume"]
    routes: List[ArbitrageRoute] = []

    for i in range(len(samples)):
        for j in range(len(samples)):
            if i == j:
                continue
            buy, sell = samples[i], samples[j]
            if buy.exchange == sell.exchange or sell.price <= buy.price:
                continue

            spread_abs = sell.price - buy.price
            spread_pct = spread_abs / buy.price * 100
            fees = buy.price * fee_rate
            net = spread_abs - fees
            if net <= 0 or spread_pct <= min_spread_pct:
                continue

            max_volume = min(buy.volume, sell.volume)
            impact = None
            if perp:
                impact = funding_impact_for(funding.get(buy.exchange), funding.get(sell.exchange))

            routes.append(ArbitrageRoute(
                route_id=f"{symbol}-{buy.exchange}-{sell.exchange}",
                symbol=symbol,
                buy_exchange=buy.exchange,
                sell_exchange=sell.exchange,
                buy_price=buy.price,
                sell_price=sell.price,
                spread_absolute=spread_abs,
                spread_percentage=spread_pct,
                gross_profit=spread_abs,
                estimated_fees=fees,
                net_profit=net,
                net_profit_percentage=net / buy.price * 100,
                max_volume=max_volume,
                liquidity_score=min(max_volume / liquidity_volume, 1.0),
                execution_risk=classify_execution_risk(max_volume),
                funding_impact=impact,
            ))

    # sorted() is stable with reverse=True, so ties keep pair order
    return sorted(routes, key=lambda r: r.net_profit_percentage, reverse=True)


def compute_routes(
    symbol: str,
    samples: Sequence[TickerSample],
    fee_rate: float = ROUTES["fee_rate"],
    top_k: int = ROUTES["top_k"],
    funding: Optional[Dict[str, FundingSample]] = None,
) -> List[ArbitrageRoute]:
    """The best ``top_k`` routes for ``symbol``."""
    return find_routes(symbol, samples, fee_rate=fee_rate, funding=funding)[: max(top_k, 0)]
