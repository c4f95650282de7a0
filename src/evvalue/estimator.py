from __future__ import annotations

import logging
from typing import Mapping

from evvalue.aggregator import PriceAggregator
from evvalue.config import EstimatorConfig
from evvalue.data_models import MarketSegment, NewValueEstimation, ValueComponents, ValueEstimation, VehicleSpec
from evvalue.errors import NotFoundError, require
from evvalue.ports import EstimationStore

logger = logging.getLogger(__name__)


def annual_energy_mwh(annual_km: float, efficiency_kwh_per_100km: float) -> float:
    return (annual_km / 100) * efficiency_kwh_per_100km / 1000


def compute_value_components(
    spec: VehicleSpec,
    annual_km: float,
    prices: Mapping[MarketSegment, float],
    config: EstimatorConfig,
) -> ValueComponents:
    """Split the yearly value of one vehicle across the three market segments.

    Day-ahead: share of the yearly energy spend saved by charging in cheap hours.
    Intraday: spread between intraday and day-ahead averages on the re-optimized
    share of volume. Negative when intraday trades below day-ahead; kept as is.
    Imbalance: flexibility bounded by the smaller of battery energy and charging
    power (both in MW terms), priced at the imbalance average.
    """
    energy_mwh = annual_energy_mwh(annual_km, spec.efficiency_kwh_per_100km)
    battery_capacity_mw = spec.battery_capacity_kwh / 1000
    max_charging_power_mw = spec.max_charging_power_kw / 1000

    day_ahead = prices["day_ahead"]
    intraday = prices["intraday"]
    imbalance = prices["imbalance"]

    return ValueComponents(
        day_ahead_value=energy_mwh * day_ahead * config.day_ahead_cost_reduction,
        intraday_value=energy_mwh * (intraday - day_ahead) * config.intraday_reoptimized_share,
        imbalance_value=min(battery_capacity_mw, max_charging_power_mw) * imbalance * config.imbalance_utilization,
    )


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ValueEstimator:
    def __init__(
        self,
        store: EstimationStore,
        aggregator: PriceAggregator,
        config: EstimatorConfig | None = None,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.config = config or EstimatorConfig()

    async def estimate(self, vehicle_spec_id: int, annual_km: float) -> ValueEstimation:
        require(
            isinstance(vehicle_spec_id, int) and not isinstance(vehicle_spec_id, bool),
            f"vehicle spec id must be an integer, got {vehicle_spec_id!r}",
        )
        require(_is_number(annual_km) and annual_km > 0, f"annual_km must be positive, got {annual_km!r}")

        spec = await self.store.get_vehicle_spec(vehicle_spec_id)
        if spec is None:
            logger.warning("Estimation requested for unknown vehicle spec %s", vehicle_spec_id)
            raise NotFoundError("EV specification", vehicle_spec_id)

        prices = await self.aggregator.average_prices(self.config.price_window_size, self.config.segment_defaults())
        components = compute_value_components(spec, annual_km, prices, self.config)

        estimation = await self.store.insert_estimation(
            NewValueEstimation(
                annual_km=annual_km,
                ev_spec_id=spec.id,
                estimated_value_eur_per_year=components.total,
                day_ahead_value=components.day_ahead_value,
                intraday_value=components.intraday_value,
                imbalance_value=components.imbalance_value,
            )
        )
        logger.info(
            "Estimated %.2f EUR/year for spec %s",
            estimation.estimated_value_eur_per_year,
            spec.id,
            extra={"extra_data": {"estimation_id": estimation.id, "average_prices": prices}},
        )
        return estimation
