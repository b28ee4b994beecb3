"""API DataClasses with canonical camelCase field names."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from core.agile.history_store import HistoryEntry
from core.agile.models import (
    BatteryState,
    PriceSlot,
    SlotAction,
    TariffComparison,
    parse_slot_action,
)
from core.agile.time_utils import ensure_utc, parse_iso_datetime, to_local

logger = logging.getLogger(__name__)


@dataclass
class FormattedValue:
    """Formatted value structure for frontend display."""

    value: float
    display: str
    unit: str
    text: str


def create_formatted_value(value: float | None, unit_type: str, precision: int | None = None) -> FormattedValue | None:
    """Create FormattedValue for a price, energy or percentage figure.

    Args:
        value: The numeric value to format, None for "no data"
        unit_type: "price" (p/kWh), "energy" (kWh), "power" (kW) or "percentage"
        precision: Override default decimal places
    """
    if value is None:
        return None
    if unit_type == "price":
        prec = precision if precision is not None else 2
        unit = "p/kWh"
    elif unit_type == "energy":
        prec = precision if precision is not None else 2
        unit = "kWh"
    elif unit_type == "power":
        prec = precision if precision is not None else 2
        unit = "kW"
    elif unit_type == "percentage":
        prec = precision if precision is not None else 0
        unit = "%"
    else:
        return FormattedValue(value=value, display=f"{value:.2f}", unit="", text=f"{value:.2f}")

    return FormattedValue(
        value=value,
        display=f"{value:.{prec}f}",
        unit=unit,
        text=f"{value:.{prec}f} {unit}",
    )


def _local_iso(dt: datetime | None) -> str | None:
    return to_local(dt).isoformat() if dt else None


@dataclass
class APIPriceSlot:
    """One plan slot as shown in the slot table."""

    id: str
    validFrom: str
    validTo: str
    price: FormattedValue
    displayPrice: FormattedValue | None
    priceType: str
    planAction: str
    action: str
    actionDescription: str
    overrideType: str
    overrideAmps: int | None
    isManualOverride: bool
    pvEstimate: FormattedValue | None
    reason: str

    @classmethod
    def from_internal(cls, slot: PriceSlot) -> APIPriceSlot:
        action = slot.action_to_execute
        return cls(
            id=slot.id,
            validFrom=_local_iso(slot.valid_from),
            validTo=_local_iso(slot.valid_to),
            price=create_formatted_value(slot.price_inc_vat, "price"),
            displayPrice=create_formatted_value(slot.display_price, "price"),
            priceType=slot.price_type.value,
            planAction=slot.plan_action.value,
            action=action.value,
            actionDescription=action.description,
            overrideType=slot.override_type.value,
            overrideAmps=slot.override_amps,
            isManualOverride=slot.is_manual_override,
            pvEstimate=create_formatted_value(slot.pv_estimate_kwh, "energy"),
            reason=slot.action_reason,
        )


@dataclass
class APIBatteryState:
    """Live telemetry for the status panel."""

    batterySoc: FormattedValue
    currentPv: FormattedValue
    houseLoad: FormattedValue
    batteryPower: FormattedValue
    todayPv: FormattedValue
    todayImport: FormattedValue
    todayExport: FormattedValue
    todayForecast: FormattedValue
    tomorrowForecast: FormattedValue
    batteryTimestamp: str | None
    forecastTimestamp: str | None
    pricesTimestamp: str | None
    lastUpdate: str | None

    @classmethod
    def from_internal(cls, state: BatteryState) -> APIBatteryState:
        return cls(
            batterySoc=create_formatted_value(state.battery_soc, "percentage"),
            currentPv=create_formatted_value(state.current_pv_kw, "power"),
            houseLoad=create_formatted_value(state.house_load_kw, "power"),
            batteryPower=create_formatted_value(state.current_battery_power_kw, "power"),
            todayPv=create_formatted_value(state.today_pv_kwh, "energy"),
            todayImport=create_formatted_value(state.today_import_kwh, "energy"),
            todayExport=create_formatted_value(state.today_export_kwh, "energy"),
            todayForecast=create_formatted_value(state.today_forecast_kwh, "energy"),
            tomorrowForecast=create_formatted_value(state.tomorrow_forecast_kwh, "energy"),
            batteryTimestamp=_local_iso(state.battery_timestamp),
            forecastTimestamp=_local_iso(state.forecast_timestamp),
            pricesTimestamp=_local_iso(state.prices_timestamp),
            lastUpdate=_local_iso(state.last_update),
        )


@dataclass
class APIStateResponse:
    """Everything the dashboard shows."""

    prices: list[APIPriceSlot]
    battery: APIBatteryState
    simulate: bool
    forecastLastUpdated: str | None

    @classmethod
    def from_internal(cls, state: dict) -> APIStateResponse:
        return cls(
            prices=[APIPriceSlot.from_internal(slot) for slot in state["prices"]],
            battery=APIBatteryState.from_internal(state["battery"]),
            simulate=state["simulate"],
            forecastLastUpdated=_local_iso(state.get("forecast_last_updated")),
        )


@dataclass
class APIHistoryEntry:
    """One executed slot from the history log."""

    start: str
    end: str
    price: FormattedValue
    action: str
    priceType: str
    batterySoc: FormattedValue
    actualPv: FormattedValue
    forecastPv: FormattedValue
    gridImport: FormattedValue
    gridExport: FormattedValue
    houseLoad: FormattedValue
    reason: str

    @classmethod
    def from_internal(cls, entry: HistoryEntry) -> APIHistoryEntry:
        return cls(
            start=_local_iso(entry.start),
            end=_local_iso(entry.end),
            price=create_formatted_value(entry.price, "price"),
            action=entry.action.value,
            priceType=entry.price_type.value,
            batterySoc=create_formatted_value(entry.battery_soc, "percentage"),
            actualPv=create_formatted_value(entry.actual_kwh, "energy"),
            forecastPv=create_formatted_value(entry.forecast_kwh, "energy"),
            gridImport=create_formatted_value(entry.import_kwh, "energy"),
            gridExport=create_formatted_value(entry.export_kwh, "energy"),
            houseLoad=create_formatted_value(entry.house_load_kwh, "energy"),
            reason=entry.reason,
        )


@dataclass
class APIOverrideRequest:
    """Manual override toggle from the slot table."""

    slotStart: str
    newAction: str

    def to_internal(self) -> tuple[datetime, SlotAction]:
        """Parse the request.

        Raises:
            ValueError: If the timestamp or action is not recognised
        """
        return ensure_utc(parse_iso_datetime(self.slotStart)), parse_slot_action(self.newAction)


@dataclass
class APITariffComparison:
    """Two tariffs' upcoming prices for the comparison chart."""

    tariffA: str
    tariffAPrices: list[APIPriceSlot]
    tariffB: str
    tariffBPrices: list[APIPriceSlot]

    @classmethod
    def from_internal(cls, comparison: TariffComparison) -> APITariffComparison:
        return cls(
            tariffA=comparison.tariff_a,
            tariffAPrices=[APIPriceSlot.from_internal(s) for s in comparison.tariff_a_prices],
            tariffB=comparison.tariff_b,
            tariffBPrices=[APIPriceSlot.from_internal(s) for s in comparison.tariff_b_prices],
        )
