"""
runner.py
=========
Continuous route scanner for the terminal. Runs aggregation cycles
back-to-back and prints the best routes after each one.

    python3 runner.py                # configured SYMBOLS
    python3 runner.py --discover     # every symbol the exchanges list

Each cycle is a forced refresh, so tickers are always re-fetched; funding
rates keep their own cache TTL. Ctrl+C to stop.
"""

from __future__ import annotations

import argparse
import asyncio
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from tabulate import tabulate

from config import REFRESH_INTERVAL, get_logger
from data_service import DataService, build_service
from models import AggregationResult, SymbolRouteSet

logger = get_logger("runner")

# Minimum seconds between cycle starts
MIN_CYCLE_GAP = max(REFRESH_INTERVAL, 5.0)
TOP_N = 15


# ── Display ──────────────────────────────────────────────────────────────────

def format_route_rows(route_sets: Sequence[SymbolRouteSet], top_n: int = TOP_N) -> List[list]:
    rows = []
    for i, rs in enumerate(route_sets[:top_n], 1):
        r = rs.best_route
        funding = f"{r.funding_impact.net_funding_impact:.4f}%" if r.funding_impact else "-"
        rows.append([
            i,
            rs.symbol,
            rs.market_type,
            f"{r.buy_exchange}@{r.buy_price:.6g}",
            f"{r.sell_exchange}@{r.sell_price:.6g}",
            f"{r.spread_percentage:.3f}%",
            f"{r.net_profit_percentage:.3f}%",
            f"${r.max_volume:,.0f}",
            r.execution_risk,
            funding,
            f"{rs.route_count}/{rs.total_available_routes}",
        ])
    return rows


def print_route_table(result: AggregationResult, top_n: int = TOP_N) -> None:
    """Print a formatted table of the best route per symbol."""
    headers = [
        "#", "Symbol", "Type", "Buy", "Sell", "Spread",
        "Net %", "Max Vol", "Risk", "Funding", "Routes",
    ]
    rows = format_route_rows(result.route_sets, top_n)
    print("\n" + "-" * 110)
    print(f"  CROSS-EXCHANGE ROUTES ({len(result.route_sets)} symbols with routes)"
          + ("  [STALE]" if result.stale else ""))
    print("-" * 110)
    if rows:
        print(tabulate(rows, headers=headers, tablefmt="simple"))
    else:
        print("  No profitable routes found.")
    if result.failed_exchanges:
        print(f"  No data from: {', '.join(result.failed_exchanges)}")
    print("-" * 110 + "\n")


# ── Main loop ────────────────────────────────────────────────────────────────

async def run_forever(service: DataService, max_cycles: Optional[int] = None, gap: float = MIN_CYCLE_GAP) -> None:
    cycle_num = 0
    while max_cycles is None or cycle_num < max_cycles:
        cycle_num += 1
        cycle_start = time.perf_counter()
        now_str = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        print(f"[Cycle {cycle_num}] {now_str}")

        result = await service.get_all_data(force_refresh=True)
        elapsed = time.perf_counter() - cycle_start

        if not result.success:
            print(f"  [CYCLE ERROR] {result.error}")
        else:
            print_route_table(result)
            if result.stale:
                print(f"  [STALE] refresh failed: {result.error}")

        stats = service.cache.stats()
        print(f"  Done in {elapsed:.1f}s | cache hit rate {stats['hitRate']:.0f}% "
              f"| entries {stats['entryCount']}")

        if max_cycles is not None and cycle_num >= max_cycles:
            break
        remaining = gap - elapsed
        if remaining > 0:
            print(f"  Cooling down {remaining:.0f}s...\n")
            await asyncio.sleep(remaining)
        else:
            print()


async def _main(args: argparse.Namespace) -> None:
    service = build_service(symbols=[] if args.discover else None, refresh_interval=0)
    if not service.gateway.exchange_names:
        print("[ERROR] No exchanges enabled. Exiting.")
        return

    print(f"\n{'═' * 60}")
    print("  ROUTE SCANNER - CONTINUOUS RUNNER")
    print(f"  Exchanges : {', '.join(service.gateway.exchange_names)}")
    print(f"  Symbols   : {'discovered' if args.discover else len(service.aggregator.symbols)}")
    print(f"  Min gap   : {args.gap:.0f}s between cycles")
    print(f"{'═' * 60}\n")

    await service.start()
    try:
        await run_forever(service, max_cycles=args.cycles, gap=args.gap)
    finally:
        await service.stop()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Continuous cross-exchange route scanner")
    parser.add_argument("--discover", action="store_true", help="scan every listed symbol")
    parser.add_argument("--cycles", type=int, default=None, help="stop after N cycles")
    parser.add_argument("--gap", type=float, default=MIN_CYCLE_GAP, help="seconds between cycle starts")
    args = parser.parse_args(argv)

    try:
        asyncio.run(_main(args))
    except KeyboardInterrupt:
        logger.info("Runner interrupted")
        print("\n[Interrupted] Stopped.")


if __name__ == "__main__":
    main()
