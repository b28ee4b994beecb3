"""Tests for the API router against a PlanManager with in-memory collaborators.

The endpoints look up the controller in the ``app`` module at request time, so
a lightweight stand-in module is registered instead of starting the real app
(which would start the scheduler).
"""

import sys
import types
from datetime import timedelta

import pytest
from api import router
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.agile.dispatch_source import MockDispatchSource
from core.agile.forecast import MockForecastSource
from core.agile.history_store import ExecutionHistoryStore
from core.agile.inverter import SimulatedInverter
from core.agile.plan_manager import PlanManager
from core.agile.price_source import MockTariffSource
from core.agile.settings import ManagerConfig
from core.agile.time_utils import round_to_half_hour, utc_now


def _rates(start, count):
    return [
        {
            "valid_from": (start + timedelta(minutes=30 * i)).isoformat(),
            "valid_to": (start + timedelta(minutes=30 * (i + 1))).isoformat(),
            "value_inc_vat": 10.0 + (i % 12) * 2,
        }
        for i in range(count)
    ]


@pytest.fixture
def manager(tmp_path):
    start = round_to_half_hour(utc_now())
    pm = PlanManager(
        config=ManagerConfig(),
        inverter=SimulatedInverter(battery_soc=50),
        tariff_source=MockTariffSource(_rates(start, 24)),
        forecast_source=MockForecastSource(),
        dispatch_source=MockDispatchSource(),
        history_store=ExecutionHistoryStore(tmp_path / "history.csv"),
        config_path=tmp_path / "config.json",
        data_dir=tmp_path,
    )
    pm.refresh_prices(start)
    return pm


@pytest.fixture
def client(manager, monkeypatch):
    app_module = types.ModuleType("app")
    app_module.agile_controller = types.SimpleNamespace(manager=manager)
    monkeypatch.setitem(sys.modules, "app", app_module)

    api = FastAPI()
    api.include_router(router)
    return TestClient(api)


class TestStateEndpoints:
    def test_get_state(self, client):
        response = client.get("/api/state")

        assert response.status_code == 200
        body = response.json()
        assert len(body["prices"]) == 24
        assert body["battery"]["batterySoc"]["value"] == 50
        assert body["simulate"] is True

    def test_get_history(self, client):
        response = client.get("/api/history")

        assert response.status_code == 200
        assert len(response.json()) == 1


class TestOverrideEndpoints:
    def test_set_and_clear_override(self, client, manager):
        slot_start = manager.slots[3].valid_from.isoformat()

        response = client.post(
            "/api/overrides", json={"slotStart": slot_start, "newAction": "Hold"}
        )

        assert response.status_code == 200
        assert response.json()["overrideSet"] is True
        assert any(s.is_manual_override for s in manager.slots)

        assert client.delete("/api/overrides").status_code == 200
        assert not any(s.is_manual_override for s in manager.slots)

    def test_bad_override_request(self, client):
        response = client.post("/api/overrides", json={"slotStart": "soon", "newAction": "Hold"})
        assert response.status_code == 400

    def test_battery_tools(self, client, manager):
        assert client.post("/api/tools/charge").status_code == 200
        assert manager.slots[0].is_manual_override

        assert client.post("/api/tools/teleport").status_code == 404

    def test_test_charge(self, client, manager):
        assert client.post("/api/tools/testcharge").status_code == 200
        assert manager.inverter.charge_state.charge_amps == 50
        assert manager.inverter.charge_state.charge_times != "00:00-00:00"

    def test_recalculate(self, client):
        assert client.post("/api/recalculate").json() == {"success": True}


class TestConfigEndpoints:
    def test_get_config_is_camel_case(self, client):
        body = client.get("/api/config").json()
        assert "slotsForFullBatteryCharge" in body["battery"]

    def test_save_config(self, client, manager):
        body = client.get("/api/config").json()
        body["battery"]["lowBatteryPercentage"] = 35

        response = client.post("/api/config", json=body)

        assert response.status_code == 200
        assert manager.config.battery.low_battery_percentage == 35
        assert manager.config_path.exists()

    def test_invalid_config_rejected(self, client, manager):
        body = client.get("/api/config").json()
        body["battery"]["slotsForFullBatteryCharge"] = 0

        response = client.post("/api/config", json=body)

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert "at least 1" in response.json()["message"]
        assert not manager.config_path.exists()


class TestOctopusEndpoints:
    @pytest.fixture(autouse=True)
    def _catalogue(self, manager):
        manager.tariff_source.products = [
            {"code": "AGILE-24-10-01", "display_name": "Agile Octopus", "direction": "IMPORT"}
        ]
        manager.tariff_source.tariffs = {"AGILE-24-10-01": ["E-1R-AGILE-24-10-01-A"]}

    def test_products(self, client):
        response = client.get("/api/octopus/products")

        assert response.status_code == 200
        assert response.json() == [
            {"code": "AGILE-24-10-01", "displayName": "Agile Octopus", "direction": "IMPORT"}
        ]

    def test_tariffs(self, client):
        response = client.get("/api/octopus/tariffs/AGILE-24-10-01")

        assert response.status_code == 200
        assert response.json() == ["E-1R-AGILE-24-10-01-A"]

    def test_tariff_comparison(self, client):
        response = client.get("/api/tariff-comparison/E-1R-AGILE-24-10-01-A/E-1R-GO-VAR-22-10-14-A")

        assert response.status_code == 200
        body = response.json()
        assert body["tariffA"] == "E-1R-AGILE-24-10-01-A"
        assert len(body["tariffAPrices"]) == len(body["tariffBPrices"]) > 0

    def test_tariff_comparison_bad_code(self, client):
        response = client.get("/api/tariff-comparison/AGILE/E-1R-GO-VAR-22-10-14-A")

        assert response.status_code == 400
