"""Shared test fixtures and utilities for agile manager tests."""

import logging
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add the project root to Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../.."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from core.agile.dispatch_source import MockDispatchSource  # noqa: E402
from core.agile.forecast import MockForecastSource  # noqa: E402
from core.agile.history_store import ExecutionHistoryStore  # noqa: E402
from core.agile.inverter import SimulatedInverter  # noqa: E402
from core.agile.models import BatteryState, PriceSlot  # noqa: E402
from core.agile.plan_manager import PlanManager  # noqa: E402
from core.agile.price_source import MockTariffSource  # noqa: E402
from core.agile.settings import ManagerConfig  # noqa: E402

# January, so Europe/London wall clock equals UTC
BASE_TIME = datetime(2025, 1, 15, 0, 0, tzinfo=timezone.utc)


def _make_slots(prices, start=BASE_TIME):
    return [
        PriceSlot(
            valid_from=start + timedelta(minutes=30 * i),
            valid_to=start + timedelta(minutes=30 * (i + 1)),
            price_inc_vat=price,
        )
        for i, price in enumerate(prices)
    ]


def _make_rates(prices, start=BASE_TIME):
    return [
        {
            "valid_from": (start + timedelta(minutes=30 * i)).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "valid_to": (start + timedelta(minutes=30 * (i + 1))).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "value_inc_vat": price,
        }
        for i, price in enumerate(prices)
    ]


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def slot_factory():
    """Build half-hour PriceSlots from a list of prices."""
    return _make_slots


@pytest.fixture
def rate_factory():
    """Build raw Octopus-style rate dicts from a list of prices."""
    return _make_rates


@pytest.fixture
def config():
    """Default config with no cheap-price threshold so tiers are easy to reason about."""
    cfg = ManagerConfig()
    cfg.battery.slots_for_full_battery_charge = 3
    cfg.tariff.always_charge_below_price = 0.0
    return cfg


@pytest.fixture
def battery_state():
    return BatteryState(battery_soc=50)


# RAW PRICE DATA FIXTURES
@pytest.fixture
def agile_day_prices():
    """48 half-hour Agile prices (p/kWh) from a winter weekday: overnight low, 16:00-19:00 peak."""
    return [
        18.9, 17.6, 16.8, 15.2, 14.1, 13.3, 12.6, 11.9,  # 00:00-03:30
        11.2, 12.0, 13.5, 15.8, 19.4, 22.3, 24.1, 23.6,  # 04:00-07:30
        22.8, 21.5, 20.2, 19.7, 19.1, 18.4, 17.9, 17.2,  # 08:00-11:30
        16.5, 15.9, 15.1, 15.6, 16.8, 18.3, 20.9, 24.6,  # 12:00-15:30
        33.8, 36.2, 38.5, 39.1, 37.4, 35.0, 27.2, 24.9,  # 16:00-19:30
        23.1, 22.0, 21.3, 20.6, 20.1, 19.8, 19.4, 18.7,  # 20:00-23:30
    ]


@pytest.fixture
def simulated_inverter():
    return SimulatedInverter(max_charge_rate_amps=50, battery_soc=50)


@pytest.fixture
def plan_manager_factory(tmp_path, config, simulated_inverter, rate_factory):
    """Create a PlanManager wired to in-memory collaborators."""

    def _create(prices, start=BASE_TIME, forecast=None, dispatches=None, cfg=None):
        return PlanManager(
            config=cfg or config,
            inverter=simulated_inverter,
            tariff_source=MockTariffSource(rate_factory(prices, start)),
            forecast_source=MockForecastSource(forecast),
            dispatch_source=MockDispatchSource(dispatches),
            history_store=ExecutionHistoryStore(tmp_path / "history.csv"),
            config_path=tmp_path / "config.json",
            data_dir=tmp_path,
        )

    return _create
