from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from evvalue.data_models import MARKET_SEGMENTS, MarketSegment
from evvalue.errors import require


@dataclass(frozen=True)
class EstimatorConfig:
    price_window_size: int = 24
    default_prices: Dict[MarketSegment, float] = field(
        default_factory=lambda: {
            "day_ahead": 50.0,
            "intraday": 55.0,
            "imbalance": 60.0,
        }
    )
    day_ahead_cost_reduction: float = 0.20  # share of spend saved by shifting into cheap hours
    intraday_reoptimized_share: float = 0.10
    imbalance_utilization: float = 0.05

    def __post_init__(self) -> None:
        require(
            isinstance(self.price_window_size, int) and self.price_window_size > 0,
            f"price_window_size must be a positive integer, got {self.price_window_size!r}",
        )
        missing = [s for s in MARKET_SEGMENTS if s not in self.default_prices]
        require(not missing, f"default_prices missing segments: {', '.join(missing)}")

    def default_price(self, segment: MarketSegment) -> float:
        return float(self.default_prices[segment])

    def segment_defaults(self) -> dict[MarketSegment, float]:
        return {segment: self.default_price(segment) for segment in MARKET_SEGMENTS}
