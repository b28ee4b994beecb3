"""Tests for the inverter backends and the dispatch source."""

from datetime import date, datetime, timedelta, timezone

import pytest
import requests

from core.agile.dispatch_source import OctopusDispatchSource
from core.agile.exceptions import InverterCommunicationError, SystemConfigurationError
from core.agile.inverter import (
    SimulatedInverter,
    SolisCloudInverter,
    convert_inverter_day,
    create_inverter,
)
from core.agile.models import CLEAR_WINDOW, BatteryState, ChargeState
from core.agile.settings import InverterSettings


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload or {}
        self.status_code = status_code
        self.content = b"{}"

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self.payload


class TestSimulatedInverter:
    def test_zero_soc_not_copied(self):
        state = BatteryState(battery_soc=40)

        SimulatedInverter(battery_soc=0).update_state(state)

        assert state.battery_soc == 40

    def test_update_state(self):
        inverter = SimulatedInverter(battery_soc=65)
        inverter.current_pv_kw = 1.2
        state = BatteryState()

        assert inverter.update_state(state)
        assert state.battery_soc == 65
        assert state.current_pv_kw == 1.2
        assert state.inverter_data_timestamp is not None

    def test_set_charge_writes_then_skips(self, base_time):
        inverter = SimulatedInverter(max_charge_rate_amps=45)
        start = base_time + timedelta(hours=2)
        end = start + timedelta(hours=1)

        assert inverter.set_charge(charge_start=start, charge_end=end, now=base_time)
        assert inverter.set_charge(charge_start=start, charge_end=end, now=base_time)

        assert inverter.writes == [ChargeState(45, 0, "02:00-03:00", CLEAR_WINDOW)]

    def test_clearing_after_charge_writes(self, base_time):
        inverter = SimulatedInverter(
            charge_state=ChargeState(50, 0, "02:00-03:00", CLEAR_WINDOW)
        )

        inverter.set_charge(now=base_time)

        assert inverter.charge_state == ChargeState()

    def test_time_sync_counted(self):
        inverter = SimulatedInverter()
        inverter.update_inverter_time(simulate_only=True)
        assert inverter.time_syncs == 1


class TestSolisCloudInverter:
    @pytest.fixture
    def solis(self):
        inverter = SolisCloudInverter("key", "secret", "SN123", max_charge_rate_amps=50)
        inverter.retry_delay = 0
        inverter.readback_delay = 0
        return inverter

    def test_requests_are_signed(self, solis):
        headers = solis._sign_headers("/v1/api/inverterDetail", '{"sn": "SN123"}')

        assert headers["Authorization"].startswith("API key:")
        assert headers["Content-MD5"]
        assert headers["Time"].endswith("GMT")

    def test_update_state_maps_fields(self, solis, monkeypatch):
        payload = {
            "data": {
                "batteryList": [{"batteryCapacitySoc": 77}],
                "pac": 3.0,
                "psum": 0.5,
                "batteryPower": 1.0,
                "eToday": 12.5,
                "gridSellEnergy": 2.0,
                "gridPurchasedEnergy": 4.0,
                "stationId": 99,
                "timeStr": "2025-01-15 10:00:00",
            }
        }
        monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(payload))
        state = BatteryState()

        assert solis.update_state(state)

        assert state.battery_soc == 77
        assert state.house_load_kw == 1.5
        assert state.today_pv_kwh == 12.5
        assert state.station_id == "99"
        assert state.inverter_data_timestamp == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_update_state_failure(self, solis, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(status_code=500))
        assert not solis.update_state(BatteryState())

    def test_post_retries_then_raises(self, solis, monkeypatch):
        calls = []

        def fake_post(*args, **kwargs):
            calls.append(args)
            raise requests.ConnectionError("down")

        monkeypatch.setattr(requests, "post", fake_post)

        with pytest.raises(InverterCommunicationError):
            solis._post(1, "inverterDetail", {"sn": "SN123"})
        assert len(calls) == solis.max_attempts

    def test_legacy_charge_state_read(self, solis, monkeypatch):
        responses = {
            solis.CID_CHECK_FIRMWARE: "0",
            solis.CID_READ_CHARGE_STATE: "50,0,02:00-03:00,00:00-00:00,0,0",
        }

        def fake_post(url, data=None, headers=None, timeout=None):
            cid = int(data.split('"cid": ')[1].split("}")[0].split(",")[0])
            return FakeResponse({"data": {"msg": responses[cid]}})

        monkeypatch.setattr(requests, "post", fake_post)

        assert solis.read_charge_state() == ChargeState(50, 0, "02:00-03:00", CLEAR_WINDOW)

    def test_simulated_write_sends_nothing(self, solis, monkeypatch):
        def fake_post(*args, **kwargs):
            raise AssertionError("no request expected")

        monkeypatch.setattr(requests, "post", fake_post)
        solis._new_firmware = False

        assert solis._write_charge_state(ChargeState(50, 0, "02:00-03:00", CLEAR_WINDOW), True)


class TestInverterHelpers:
    def test_convert_inverter_day_to_deltas(self):
        records = [
            {"timeStr": "2025-01-15 10:00:00", "eToday": 1.0, "homeLoadTodayEnergy": 2.0,
             "gridPurchasedTodayEnergy": 3.0, "gridSellTodayEnergy": 0.0},
            {"timeStr": "2025-01-15 10:05:00", "eToday": 1.5, "homeLoadTodayEnergy": 2.25,
             "gridPurchasedTodayEnergy": 3.0, "gridSellTodayEnergy": 0.5},
            {"timeStr": None},
        ]

        samples = convert_inverter_day(records)

        assert len(samples) == 2
        assert samples[1].pv_yield_kwh == 0.5
        assert samples[1].house_load_kwh == 0.25
        assert samples[1].import_kwh == 0.0
        assert samples[1].export_kwh == 0.5

    def test_create_inverter(self):
        assert isinstance(create_inverter(InverterSettings(), 40), SimulatedInverter)
        solis = create_inverter(
            InverterSettings(type="solis", api_key="k", api_secret="s", serial="n"), 40
        )
        assert isinstance(solis, SolisCloudInverter)
        assert solis.max_charge_rate_amps == 40

    def test_create_inverter_rejects_bad_settings(self):
        with pytest.raises(SystemConfigurationError):
            create_inverter(InverterSettings(type="solis"), 40)
        with pytest.raises(SystemConfigurationError):
            create_inverter(InverterSettings(type="acme"), 40)

    def test_simulated_history_by_day(self):
        inverter = SimulatedInverter()
        assert inverter.get_historic_data(date(2025, 1, 15)) == []


class TestOctopusDispatchSource:
    def test_planned_dispatches_parsed(self, monkeypatch):
        calls = []

        def fake_post(url, json=None, headers=None, timeout=None):
            calls.append(headers)
            if "obtainKrakenToken" in json["query"]:
                return FakeResponse({"data": {"obtainKrakenToken": {"token": "tok"}}})
            return FakeResponse(
                {
                    "data": {
                        "plannedDispatches": [
                            {
                                "start": "2025-01-15T01:00:00Z",
                                "end": "2025-01-15T02:00:00Z",
                                "meta": {"source": "smart-charge"},
                            }
                        ]
                    }
                }
            )

        monkeypatch.setattr(requests, "post", fake_post)

        dispatches = OctopusDispatchSource("key", "A-123").get_planned_dispatches()

        assert len(dispatches) == 1
        assert dispatches[0].start == datetime(2025, 1, 15, 1, 0, tzinfo=timezone.utc)
        assert dispatches[0].source == "smart-charge"
        assert calls[1] == {"Authorization": "tok"}

    def test_errors_give_no_dispatches(self, monkeypatch):
        monkeypatch.setattr(
            requests, "post", lambda *a, **kw: FakeResponse({"errors": [{"message": "expired"}]})
        )
        source = OctopusDispatchSource("key", "A-123")

        assert source.get_planned_dispatches() == []
        assert source._token is None

    def test_unconfigured_source(self):
        assert OctopusDispatchSource("", "").get_planned_dispatches() == []
