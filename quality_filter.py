"""
quality_filter.py
==================
Data-quality gate in front of the route engine.

Naive min/max spread math on illiquid or stale pairs produces nonsense like
"50000% arbitrage". A symbol only reaches the route engine when it is quoted
by enough exchanges, carries enough volume everywhere, no single venue
dwarfs the others, and the price dispersion is realistic.

Checks (any single failure rejects the symbol for this cycle):
  1. len(samples) >= min_exchange_count
  2. at least one sample carries a positive volume
  3. every volume >= min_volume_per_exchange
  4. sum(volumes) >= min_total_volume
  5. max(volume) / min(volume) <= max_volume_ratio
  6. (max_price - min_price) / min_price * 100 <= max_realistic_spread
A spread above price_validation_threshold is flagged in the log only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from config import QUALITY, get_logger
from models import TickerSample

logger = get_logger(__name__)


@dataclass(frozen=True)
class QualityVerdict:
    accepted: bool
    reason: str                 # "ok" or the name of the failed check
    flagged: bool = False
    spread_percentage: float = 0.0


class QualityFilter:
    """
    Pure, deterministic quality gate. Thresholds default to config.QUALITY.
    """

    def __init__(self, thresholds: Optional[Dict[str, float]] = None) -> None:
        merged = dict(QUALITY)
        if thresholds:
            merged.update(thresholds)
        self.min_exchange_count = int(merged["min_exchange_count"])
        self.min_volume_per_exchange = float(merged["min_volume_per_exchange"])
        self.min_total_volume = float(merged["min_total_volume"])
        self.max_volume_ratio = float(merged["max_volume_ratio"])
        self.max_realistic_spread = float(merged["max_realistic_spread"])
        self.price_validation_threshold = float(merged["price_validation_threshold"])

    def evaluate(self, symbol: str, samples: Sequence[TickerSample]) -> QualityVerdict:
        if len(samples) < self.min_exchange_count:
            return QualityVerdict(False, "too_few_exchanges")

        volumes = [s.volume for s in samples]
        if not any(v > 0 for v in volumes):
            return QualityVerdict(False, "no_volume")

        if any(v < self.min_volume_per_exchange for v in volumes):
            return QualityVerdict(False, "exchange_volume_below_minimum")

        if sum(volumes) < self.min_total_volume:
            return QualityVerdict(False, "total_volume_below_minimum")

        lo_vol, hi_vol = min(volumes), max(volumes)
        ratio = hi_vol / lo_vol if lo_vol > 0 else float("inf")
        if ratio > self.max_volume_ratio:
            return QualityVerdict(False, "volume_ratio_too_high")

        prices = sorted(s.price for s in samples)
        spread_pct = (prices[-1] - prices[0]) / prices[0] * 100
        if spread_pct > self.max_realistic_spread:
            logger.debug("Quality: %s rejected, %.2f%% spread looks like bad data", symbol, spread_pct)
            return QualityVerdict(False, "unrealistic_spread", spread_percentage=spread_pct)

        flagged = spread_pct > self.price_validation_threshold
        if flagged:
            logger.warning("Quality: %s spread %.2f%% above validation threshold", symbol, spread_pct)
        return QualityVerdict(True, "ok", flagged=flagged, spread_percentage=spread_pct)

    def is_acceptable(self, symbol: str, samples: Sequence[TickerSample]) -> bool:
        return self.evaluate(symbol, samples).accepted
