from datetime import datetime, timezone

import pytest

from evvalue.config import EstimatorConfig
from evvalue.data_models import MARKET_SEGMENTS, ValueComponents, VehicleSpec
from evvalue.errors import ValidationError


def test_vehicle_spec_shape():
    spec = VehicleSpec(
        id=7,
        model="Volkswagen ID.4",
        battery_capacity_kwh=77.0,
        efficiency_kwh_per_100km=17.5,
        max_charging_power_kw=135.0,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    assert spec.model.endswith("ID.4")
    with pytest.raises(AttributeError):
        spec.battery_capacity_kwh = 80.0


def test_components_total_is_plain_sum():
    components = ValueComponents(day_ahead_value=22.78125, intraday_value=-1.5, imbalance_value=0.2540625)
    assert components.total == 22.78125 + -1.5 + 0.2540625


def test_default_config_covers_every_segment():
    config = EstimatorConfig()
    assert config.price_window_size == 24
    assert {s: config.default_price(s) for s in MARKET_SEGMENTS} == {
        "day_ahead": 50.0,
        "intraday": 55.0,
        "imbalance": 60.0,
    }


@pytest.mark.parametrize("window", [0, -1])
def test_config_rejects_non_positive_window(window):
    with pytest.raises(ValidationError, match="price_window_size"):
        EstimatorConfig(price_window_size=window)


def test_config_requires_a_default_for_every_segment():
    with pytest.raises(ValidationError, match="imbalance"):
        EstimatorConfig(default_prices={"day_ahead": 50.0, "intraday": 55.0})


def test_segment_defaults_are_floats():
    config = EstimatorConfig(default_prices={"day_ahead": 40, "intraday": 45, "imbalance": 70})
    assert config.segment_defaults() == {"day_ahead": 40.0, "intraday": 45.0, "imbalance": 70.0}
    assert all(isinstance(v, float) for v in config.segment_defaults().values())
