from __future__ import annotations

import asyncio
from typing import Mapping

from evvalue.data_models import MARKET_SEGMENTS, MarketSegment
from evvalue.ports import PriceSource


class PriceAggregator:
    """Rolling average over the most recent price points of a market segment.

    The window counts observations, not hours: ``window_size=24`` means the last
    24 points whatever their spacing. An empty history resolves to the caller's
    default rather than failing.
    """

    def __init__(self, source: PriceSource) -> None:
        self.source = source

    async def average_price(self, segment: MarketSegment, window_size: int, default: float) -> float:
        observations = await self.source.list_recent_prices(segment, window_size)
        if not observations:
            return default
        recent = observations[:window_size]
        return sum(o.price_eur_per_mwh for o in recent) / len(recent)

    async def average_prices(
        self,
        window_size: int,
        defaults: Mapping[MarketSegment, float],
    ) -> dict[MarketSegment, float]:
        results = await asyncio.gather(
            *(self.average_price(segment, window_size, defaults[segment]) for segment in MARKET_SEGMENTS),
            return_exceptions=True,
        )
        # Every lookup has settled here; surface the first failure unchanged.
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return dict(zip(MARKET_SEGMENTS, results))
