"""Core configuration values and types for the agile manager using dataclasses."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from .exceptions import ConfigValidationError
from .models import ScheduledAction

logger = logging.getLogger(__name__)

# Battery settings defaults
SLOTS_FOR_FULL_BATTERY_CHARGE = 6  # 30-minute slots to charge 0-100%
LOW_BATTERY_PERCENTAGE = 25
PEAK_PERIOD_BATTERY_USE = 0.5  # fraction of capacity to hold through the peak
MAX_CHARGE_RATE_AMPS = 50

# Tariff settings defaults
ALWAYS_CHARGE_BELOW_PRICE = 10.0  # p/kWh

# Solar settings defaults
SOLCAST_DAMP_FACTOR = 1.0
FORECAST_THRESHOLD_KWH = 0.0

# Plan heuristics, kept at the values the planner was tuned with
PEAK_PERIOD_LENGTH = 7  # slots; a typical 16:00-19:30 evening peak
PRE_PEAK_EXTRA_SLOTS = 2
BELOW_AVERAGE_RATIO = 0.9

# History
HISTORY_MAX_ENTRIES = 180 * 48

MAX_SOLCAST_SITES = 2
INVERTER_TYPES = ["solis", "simulated"]

CONFIG_FILE_NAME = "AgileManagerConfig.json"


class _UpdatableSettings:
    """Shared ``update`` for flat settings dataclasses."""

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)


@dataclass
class BatterySettings(_UpdatableSettings):
    """Battery behaviour settings."""

    slots_for_full_battery_charge: int = SLOTS_FOR_FULL_BATTERY_CHARGE
    low_battery_percentage: int = LOW_BATTERY_PERCENTAGE
    always_charge_below_soc: int | None = None
    peak_period_battery_use: float = PEAK_PERIOD_BATTERY_USE
    max_charge_rate_amps: int = MAX_CHARGE_RATE_AMPS


@dataclass
class TariffSettings(_UpdatableSettings):
    """Octopus tariff and dispatch settings."""

    product: str = ""
    tariff_code: str = ""
    always_charge_below_price: float = ALWAYS_CHARGE_BELOW_PRICE
    intelligent_go_charging: bool = False
    api_key: str = ""
    account_number: str = ""

    @property
    def dispatch_valid(self) -> bool:
        return bool(self.api_key and self.account_number)


@dataclass
class SolarSettings(_UpdatableSettings):
    """Solcast forecast settings."""

    api_key: str = ""
    site_identifier: str = ""
    damp_factor: float = SOLCAST_DAMP_FACTOR
    forecast_threshold: float = FORECAST_THRESHOLD_KWH
    skip_overnight_charge: bool = False

    @property
    def is_valid(self) -> bool:
        return bool(self.api_key and self.site_identifier)

    @property
    def site_ids(self) -> list[str]:
        return get_solcast_sites(self.site_identifier)


@dataclass
class InverterSettings(_UpdatableSettings):
    """Inverter backend selection and credentials."""

    type: str = "simulated"
    api_key: str = ""
    api_secret: str = ""
    serial: str = ""
    simulate: bool = True

    @property
    def is_valid(self) -> bool:
        if self.type == "solis":
            return bool(self.api_key and self.api_secret and self.serial)
        return self.type in INVERTER_TYPES


@dataclass
class PlanSettings(_UpdatableSettings):
    """Heuristic constants of the slot planner."""

    peak_period_length: int = PEAK_PERIOD_LENGTH
    pre_peak_extra_slots: int = PRE_PEAK_EXTRA_SLOTS
    below_average_ratio: float = BELOW_AVERAGE_RATIO
    history_max_entries: int = HISTORY_MAX_ENTRIES


@dataclass
class ManagerConfig:
    """All user settings. Treated as immutable during one evaluation pass."""

    battery: BatterySettings = field(default_factory=BatterySettings)
    tariff: TariffSettings = field(default_factory=TariffSettings)
    solar: SolarSettings = field(default_factory=SolarSettings)
    inverter: InverterSettings = field(default_factory=InverterSettings)
    plan: PlanSettings = field(default_factory=PlanSettings)
    scheduled_actions: list[ScheduledAction] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ManagerConfig":
        config = cls()
        for section in ("battery", "tariff", "solar", "inverter", "plan"):
            section_data = data.get(section) or {}
            settings = getattr(config, section)
            known = {f.name for f in fields(settings)}
            unknown = set(section_data) - known
            if unknown:
                logger.warning(
                    "Ignoring unknown %s settings: %s", section, sorted(unknown)
                )
            settings.update(**{k: v for k, v in section_data.items() if k in known})
        config.scheduled_actions = [
            ScheduledAction.from_dict(entry)
            for entry in data.get("scheduled_actions") or []
        ]
        return config

    def to_dict(self) -> dict:
        return {
            "battery": asdict(self.battery),
            "tariff": asdict(self.tariff),
            "solar": asdict(self.solar),
            "inverter": asdict(self.inverter),
            "plan": asdict(self.plan),
            "scheduled_actions": [a.to_dict() for a in self.scheduled_actions],
        }

    def validate(self) -> None:
        """Validate the config, raising ConfigValidationError on the first fault."""
        battery = self.battery
        if battery.slots_for_full_battery_charge < 1:
            raise ConfigValidationError(
                "slots_for_full_battery_charge",
                "Slots for full battery charge must be at least 1",
            )
        if not 0 <= battery.peak_period_battery_use <= 1:
            raise ConfigValidationError(
                "peak_period_battery_use",
                "Peak period battery use must be a fraction between 0 and 1",
            )
        if not 0 <= battery.low_battery_percentage <= 100:
            raise ConfigValidationError(
                "low_battery_percentage",
                "Low battery percentage must be between 0 and 100",
            )
        if battery.always_charge_below_soc is not None and not (
            0 <= battery.always_charge_below_soc <= 100
        ):
            raise ConfigValidationError(
                "always_charge_below_soc",
                "Always-charge-below SOC must be between 0 and 100",
            )

        if self.solar.site_identifier:
            sites = self.solar.site_ids
            if len({s.lower() for s in sites}) != len(sites):
                raise ConfigValidationError(
                    "site_identifier", "The same Solcast site ID was entered twice"
                )
            if len(sites) > MAX_SOLCAST_SITES:
                raise ConfigValidationError(
                    "site_identifier",
                    f"A maximum of {MAX_SOLCAST_SITES} Solcast sites is supported",
                )

        if self.inverter.type not in INVERTER_TYPES:
            raise ConfigValidationError(
                "inverter.type",
                f"Unknown inverter type '{self.inverter.type}' "
                f"(expected one of {INVERTER_TYPES})",
            )

        if self.plan.peak_period_length < 1:
            raise ConfigValidationError(
                "peak_period_length", "Peak period length must be at least 1 slot"
            )

    @classmethod
    def load_from_file(cls, path: str | Path = CONFIG_FILE_NAME) -> "ManagerConfig | None":
        path = Path(path)
        if not path.exists():
            return None
        with path.open() as f:
            data = json.load(f)
        logger.info("Loaded config from %s", path)
        return cls.from_dict(data)

    def save_to_file(self, path: str | Path = CONFIG_FILE_NAME) -> None:
        """Write the config as JSON, replacing the previous file atomically."""
        path = Path(path)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w") as f:
            json.dump(self.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
        logger.info("Saved config to %s", path)


def get_solcast_sites(site_id_list: str) -> list[str]:
    """Split a comma-separated Solcast site list. Up to two sites are supported."""
    if not site_id_list:
        return []
    return [s.strip() for s in site_id_list.split(",") if s.strip()]


def get_product_from_tariff_code(tariff_code: str) -> str:
    """Derive the Octopus product code from a tariff code.

    E-1R-AGILE-24-10-01-A is a single register electricity tariff in region A
    for product AGILE-24-10-01, so the register prefix and region suffix are
    stripped.
    """
    if not tariff_code:
        return ""

    code = tariff_code
    last_dash = code.rfind("-")
    if last_dash > 0:
        code = code[:last_dash]

    first = code.find("-")
    if first > 0:
        code = code[first + 1:]
        second = code.find("-")
        if second > 0:
            return code[second + 1:]

    return ""
