"""Tests for configuration loading and validation."""

from datetime import time

import pytest

from core.agile.exceptions import ConfigValidationError
from core.agile.models import ScheduledAction, SlotAction
from core.agile.settings import (
    ManagerConfig,
    get_product_from_tariff_code,
    get_solcast_sites,
)


class TestManagerConfig:
    def test_defaults_are_valid(self):
        ManagerConfig().validate()

    def test_from_dict_applies_sections(self):
        config = ManagerConfig.from_dict(
            {
                "battery": {"slots_for_full_battery_charge": 8, "always_charge_below_soc": 30},
                "tariff": {"tariff_code": "E-1R-AGILE-24-10-01-A", "intelligent_go_charging": True},
                "solar": {"damp_factor": 0.8},
                "scheduled_actions": [{"start_time": "05:30", "action": "Hold", "amps": 10}],
            }
        )

        assert config.battery.slots_for_full_battery_charge == 8
        assert config.battery.always_charge_below_soc == 30
        assert config.tariff.intelligent_go_charging is True
        assert config.solar.damp_factor == 0.8
        assert config.scheduled_actions == [ScheduledAction(time(5, 30), SlotAction.HOLD, amps=10)]

    def test_unknown_keys_ignored(self):
        config = ManagerConfig.from_dict({"battery": {"not_a_setting": 1}})
        assert not hasattr(config.battery, "not_a_setting")

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "config.json"
        config = ManagerConfig()
        config.tariff.tariff_code = "E-1R-AGILE-24-10-01-A"
        config.scheduled_actions = [ScheduledAction(time(23, 0), SlotAction.DISCHARGE, disabled=True)]

        config.save_to_file(path)
        loaded = ManagerConfig.load_from_file(path)

        assert loaded == config

    def test_load_missing_file(self, tmp_path):
        assert ManagerConfig.load_from_file(tmp_path / "missing.json") is None

    @pytest.mark.parametrize(
        "section,key,value,field",
        [
            ("battery", "slots_for_full_battery_charge", 0, "slots_for_full_battery_charge"),
            ("battery", "peak_period_battery_use", 1.5, "peak_period_battery_use"),
            ("battery", "low_battery_percentage", 120, "low_battery_percentage"),
            ("battery", "always_charge_below_soc", -1, "always_charge_below_soc"),
            ("inverter", "type", "unknown", "inverter.type"),
            ("plan", "peak_period_length", 0, "peak_period_length"),
        ],
    )
    def test_invalid_values_rejected(self, section, key, value, field):
        config = ManagerConfig()
        setattr(getattr(config, section), key, value)

        with pytest.raises(ConfigValidationError) as exc_info:
            config.validate()
        assert exc_info.value.field == field

    def test_duplicate_solcast_site_rejected(self):
        config = ManagerConfig()
        config.solar.site_identifier = "abcd-1234, ABCD-1234"

        with pytest.raises(ConfigValidationError):
            config.validate()

    def test_too_many_solcast_sites_rejected(self):
        config = ManagerConfig()
        config.solar.site_identifier = "a, b, c"

        with pytest.raises(ConfigValidationError):
            config.validate()


class TestHelpers:
    @pytest.mark.parametrize(
        "tariff_code,product",
        [
            ("E-1R-AGILE-24-10-01-A", "AGILE-24-10-01"),
            ("E-1R-INTELLI-VAR-22-10-14-C", "INTELLI-VAR-22-10-14"),
            ("", ""),
            ("AGILE", ""),
        ],
    )
    def test_product_from_tariff_code(self, tariff_code, product):
        assert get_product_from_tariff_code(tariff_code) == product

    def test_solcast_sites(self):
        assert get_solcast_sites("aaa, bbb") == ["aaa", "bbb"]
        assert get_solcast_sites("") == []

    def test_solar_settings_validity(self):
        config = ManagerConfig()
        assert not config.solar.is_valid
        config.solar.api_key = "key"
        config.solar.site_identifier = "site"
        assert config.solar.is_valid
