# core/agile/models.py
"""
Data models for the agile battery manager.

This module contains the dataclasses and enums shared between the planner,
the override layer, the execution reconciler and the history recorder.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum

logger = logging.getLogger(__name__)

__all__ = [
    "BatteryState",
    "ChargeState",
    "Dispatch",
    "InverterFiveMinData",
    "ManualOverride",
    "OverrideType",
    "PriceSlot",
    "PriceType",
    "ScheduledAction",
    "SlotAction",
    "SolarForecastPoint",
]

SLOT_DURATION = timedelta(minutes=30)
CLEAR_WINDOW = "00:00-00:00"


class PriceType(str, Enum):
    """Price classification assigned to a slot by the evaluator."""

    AVERAGE = "Average"
    CHEAPEST = "Cheapest"
    BELOW_THRESHOLD = "BelowThreshold"
    BELOW_AVERAGE = "BelowAverage"
    DROPPING = "Dropping"
    MOST_EXPENSIVE = "MostExpensive"
    NEGATIVE = "Negative"
    IOG_DISPATCH = "IOGDispatch"


class SlotAction(str, Enum):
    """Action for a slot, either computed or overridden."""

    DO_NOTHING = "DoNothing"
    CHARGE = "Charge"
    CHARGE_IF_LOW_BATTERY = "ChargeIfLowBattery"
    DISCHARGE = "Discharge"
    HOLD = "Hold"

    @property
    def description(self) -> str:
        return {
            SlotAction.CHARGE: "Charge",
            SlotAction.DISCHARGE: "Discharge",
            SlotAction.DO_NOTHING: "No Action",
            SlotAction.CHARGE_IF_LOW_BATTERY: "Boost",
            SlotAction.HOLD: "Hold",
        }[self]


class OverrideType(str, Enum):
    """Source of the override on a slot, in ascending precedence."""

    NONE = "None"
    SCHEDULED = "Scheduled"
    NEGATIVE_PRICES = "NegativePrices"
    MANUAL = "Manual"


def _parse_enum(enum_cls, value):
    """Parse an enum by value or by member name, case-insensitively."""
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for member in enum_cls:
        if text.lower() in (member.value.lower(), member.name.lower()):
            return member
    raise ValueError(f"{text!r} is not a valid {enum_cls.__name__}")


def parse_price_type(value) -> PriceType:
    return _parse_enum(PriceType, value)


def parse_slot_action(value) -> SlotAction:
    return _parse_enum(SlotAction, value)


@dataclass
class PriceSlot:
    """One 30-minute tariff period with its planning annotations."""

    valid_from: datetime
    valid_to: datetime
    price_inc_vat: float
    price_type: PriceType = PriceType.AVERAGE
    plan_action: SlotAction = SlotAction.DO_NOTHING
    override_action: SlotAction | None = None
    override_type: OverrideType = OverrideType.NONE
    override_amps: int | None = None
    pv_estimate_kwh: float | None = None
    # Price shown to the user when it differs from the tariff rate, e.g. dispatch slots
    display_price: float | None = None
    action_reason: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def action_to_execute(self) -> SlotAction:
        """Override-resolved action, the one actually sent to the inverter."""
        return self.override_action or self.plan_action

    @property
    def is_manual_override(self) -> bool:
        return self.override_type == OverrideType.MANUAL

    def clear_override(self) -> None:
        self.override_action = None
        self.override_type = OverrideType.NONE
        self.override_amps = None

    def __str__(self) -> str:
        return (
            f"{self.valid_from:%d-%b-%Y %H:%M}-{self.valid_to:%H:%M}: "
            f"{self.action_to_execute.description} (price: {self.price_inc_vat}p/kWh, "
            f"Reason: {self.action_reason})"
        )


@dataclass
class BatteryState:
    """Live telemetry snapshot. Mutated only by the telemetry refresh path."""

    battery_soc: int = 0
    current_pv_kw: float = 0.0
    house_load_kw: float = 0.0
    current_battery_power_kw: float = 0.0
    today_pv_kwh: float = 0.0
    today_import_kwh: float = 0.0
    today_export_kwh: float = 0.0
    today_forecast_kwh: float = 0.0
    tomorrow_forecast_kwh: float = 0.0
    station_id: str = ""
    battery_timestamp: datetime | None = None
    inverter_data_timestamp: datetime | None = None
    forecast_timestamp: datetime | None = None
    prices_timestamp: datetime | None = None
    last_update: datetime | None = None

    @property
    def has_valid_soc(self) -> bool:
        """A zero SOC is treated as a bad telemetry read."""
        return self.battery_soc != 0


@dataclass
class ScheduledAction:
    """A user-configured action applied every day at a fixed local time."""

    start_time: time
    action: SlotAction
    amps: int | None = None
    disabled: bool = False

    @property
    def enabled(self) -> bool:
        return not self.disabled

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduledAction":
        start = data["start_time"]
        if isinstance(start, str):
            start = time.fromisoformat(start)
        amps = data.get("amps")
        return cls(
            start_time=start,
            action=parse_slot_action(data["action"]),
            amps=int(amps) if amps is not None else None,
            disabled=bool(data.get("disabled", False)),
        )

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.strftime("%H:%M"),
            "action": self.action.value,
            "amps": self.amps,
            "disabled": self.disabled,
        }


@dataclass
class ManualOverride:
    """A user override harvested from one slot array and reapplied to the next."""

    slot_start: datetime
    action: SlotAction


@dataclass
class SolarForecastPoint:
    """A 30-minute estimate of solar generation in kWh."""

    period_start: datetime
    forecast_kwh: float


@dataclass
class Dispatch:
    """A smart-charge window reported by the tariff provider."""

    start: datetime
    end: datetime
    source: str | None = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


@dataclass
class ChargeState:
    """Charge/discharge slot settings as held by the inverter.

    Windows are local wall-clock strings such as ``"05:30-07:00"``.
    """

    charge_amps: int = 0
    discharge_amps: int = 0
    charge_times: str = CLEAR_WINDOW
    discharge_times: str = CLEAR_WINDOW

    @classmethod
    def from_charge_state_data(cls, msg: str) -> "ChargeState":
        """Parse the legacy comma-separated charge state response."""
        parts = [p.strip() for p in msg.split(",", 4)]
        if len(parts) != 5:
            raise ValueError(f"Unable to parse charge state response: {msg}")
        return cls(
            charge_amps=int(parts[0]),
            discharge_amps=int(parts[1]),
            charge_times=parts[2],
            discharge_times=parts[3],
        )


@dataclass
class InverterFiveMinData:
    """One 5-minute telemetry sample. Energy fields are deltas for the sample."""

    start: datetime
    battery_soc: float
    battery_power_kw: float
    pv_power_kw: float
    house_load_kw: float
    house_load_kwh: float
    pv_yield_kwh: float
    import_kwh: float
    export_kwh: float


@dataclass
class TariffComparison:
    """Upcoming prices of two tariffs side by side."""

    tariff_a: str
    tariff_b: str
    tariff_a_prices: list[PriceSlot] = field(default_factory=list)
    tariff_b_prices: list[PriceSlot] = field(default_factory=list)
