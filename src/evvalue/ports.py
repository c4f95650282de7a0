from __future__ import annotations

from typing import Protocol

from evvalue.data_models import MarketSegment, NewValueEstimation, PriceObservation, ValueEstimation, VehicleSpec


class PriceSource(Protocol):
    async def list_recent_prices(self, segment: MarketSegment, limit: int) -> list[PriceObservation]:
        """Return at most ``limit`` observations for ``segment``, newest timestamp first."""
        ...


class EstimationStore(Protocol):
    async def get_vehicle_spec(self, spec_id: int) -> VehicleSpec | None: ...

    async def insert_estimation(self, record: NewValueEstimation) -> ValueEstimation: ...
