from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


MarketSegment = Literal["day_ahead", "intraday", "imbalance"]

MARKET_SEGMENTS: tuple[MarketSegment, ...] = ("day_ahead", "intraday", "imbalance")


@dataclass(frozen=True)
class VehicleSpec:
    id: int
    model: str
    battery_capacity_kwh: float
    efficiency_kwh_per_100km: float
    max_charging_power_kw: float
    created_at: datetime


@dataclass(frozen=True)
class PriceObservation:
    id: int
    market_type: MarketSegment
    price_eur_per_mwh: float
    timestamp: datetime
    created_at: datetime


@dataclass(frozen=True)
class ValueComponents:
    day_ahead_value: float
    intraday_value: float
    imbalance_value: float

    @property
    def total(self) -> float:
        return self.day_ahead_value + self.intraday_value + self.imbalance_value


@dataclass(frozen=True)
class NewValueEstimation:
    """Estimation fields computed by the estimator, before the store assigns identity."""

    annual_km: float
    ev_spec_id: int
    estimated_value_eur_per_year: float
    day_ahead_value: float
    intraday_value: float
    imbalance_value: float


@dataclass(frozen=True)
class ValueEstimation:
    id: int
    annual_km: float
    ev_spec_id: int
    estimated_value_eur_per_year: float
    day_ahead_value: float
    intraday_value: float
    imbalance_value: float
    created_at: datetime
