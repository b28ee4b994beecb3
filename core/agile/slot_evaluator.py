"""Slot plan evaluator for half-hourly time-of-use tariffs.

The evaluator classifies every half-hour price slot by price tier and assigns a
baseline plan action. It is a pure function of the slots, the battery state and
the config: calling it twice with the same inputs gives the same plan.

Algorithm Overview (passes run in this order, later passes may overwrite
earlier decisions on the same slot):
 1. Reset every slot to Average / DoNothing and drop any previous overrides.
 2. Size the charge needed to hold ``peak_period_battery_use`` through the peak:
    ``ceil(slots_for_full_battery_charge * (peak_use - soc/100))`` slots.
 3. Cheapest window: the contiguous run of ``slots_for_full_battery_charge``
    slots with the lowest total price. If that run starts with the current slot
    the battery is already part charged, so only the individually cheapest
    slots needed right now are used.
 4. Most expensive window: the contiguous ``peak_period_length`` slots (7, a
    typical 16:00-19:30 evening peak) with the highest total price.
 5. Tag the peak first, then the cheapest slots. A slot in both stays a peak.
 6. Retag every slot priced exactly at the cheapest or the peak price so equal
    prices carry equal labels.
 7. Slots below ``below_average_ratio`` of the average of untagged slots become
    BelowAverage with a conditional ChargeIfLowBattery action.
 8. BelowAverage slots immediately before the cheapest window are a falling
    price, so up to a full charge worth of them are set back to DoNothing.
 9. Pre-peak top-up: the cheapest of the few slots before the peak (skipping
    the one right before it) charge up to the peak target.
10. Prices below ``always_charge_below_price`` always charge; negative prices
    always charge.
    Skip overnight charge (optional): a sunny forecast for the day of the
    cheapest window cancels the cheapest-window charge.
11. If the battery is low, promote ChargeIfLowBattery slots to Charge.
12. Scheduled actions are written as overrides on slots starting at their
    local time of day.
13. Maintain-charge floor: below ``always_charge_below_soc`` the current slot
    charges.
14. Runs of negative prices longer than a full charge export first: all but
    the last ``slots_for_full_battery_charge`` slots become Discharge overrides.

A SOC reading of exactly 0 is treated as a bad telemetry read: the low-battery
and maintain-floor rules are skipped for that cycle.

Failure handling: any exception is logged and the partly tagged slots are
returned. A stale or partial plan is better than none while the previous
command may still be running on the inverter.
"""

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from typing import TypeVar

from .models import BatteryState, OverrideType, PriceSlot, PriceType, SlotAction
from .settings import ManagerConfig
from .time_utils import local_date, local_time_of_day, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_adjacent_groups(items: Iterable[T], predicate: Callable[[T], bool]) -> list[list[T]]:
    """Split ``items`` into maximal runs of consecutive items matching ``predicate``.

    Example:
        >>> get_adjacent_groups([1, -1, -2, 3, -4], lambda x: x < 0)
        [[-1, -2], [-4]]
    """
    groups: list[list[T]] = []
    current: list[T] = []
    for item in items:
        if predicate(item):
            current.append(item)
        elif current:
            groups.append(current)
            current = []
    if current:
        groups.append(current)
    return groups


def get_previous_n_items(
    items: Sequence[T], count: int, predicate: Callable[[T], bool]
) -> list[T]:
    """Return up to ``count`` items before the first match, skipping the item just before it.

    The item immediately before the match is left out because the slot just
    before a price peak is normally nearly as expensive as the peak.
    Returns an empty list if nothing matches or the match is the first item.
    """
    root = next((i for i, item in enumerate(items) if predicate(item)), -1)
    if root <= 0:
        return []
    last = root - 1
    first = max(last - count, 0)
    return list(items[first:last])


def calculate_charge_slots_needed(battery_state: BatteryState, config: ManagerConfig) -> int:
    """Slots of charging needed now to hold the peak target through the peak."""
    battery = config.battery
    charge_needed = max(0.0, battery.peak_period_battery_use - battery_state.battery_soc / 100.0)
    if charge_needed <= 0:
        return 0
    # Rounded first so float noise (0.8 - 0.3) cannot add a slot
    return math.ceil(round(battery.slots_for_full_battery_charge * charge_needed, 6))


def _find_window(
    slots: list[PriceSlot], width: int, cheapest: bool
) -> tuple[int, list[PriceSlot]] | None:
    """Lowest (or highest) summed contiguous window; the earliest wins ties."""
    if width < 1 or len(slots) < width:
        return None

    best_start = 0
    best_total = sum(s.price_inc_vat for s in slots[:width])
    for start in range(1, len(slots) - width + 1):
        total = sum(s.price_inc_vat for s in slots[start:start + width])
        if (cheapest and total < best_total) or (not cheapest and total > best_total):
            best_start, best_total = start, total
    return best_start, slots[best_start:best_start + width]


def _reset_slots(slots: list[PriceSlot]) -> None:
    for slot in slots:
        slot.price_type = PriceType.AVERAGE
        slot.plan_action = SlotAction.DO_NOTHING
        slot.action_reason = "Average price - no action"
        slot.display_price = None
        slot.clear_override()


def _select_cheapest_slots(
    slots: list[PriceSlot], config: ManagerConfig, charge_slots_needed: int
) -> list[PriceSlot]:
    window = _find_window(slots, config.battery.slots_for_full_battery_charge, cheapest=True)
    if window is None:
        return []

    start, cheapest = window
    if start == 0:
        # Charging window is now; the battery already holds some charge
        ordered = sorted(cheapest, key=lambda s: s.price_inc_vat)
        chosen_ids = {s.id for s in ordered[:charge_slots_needed]}
        cheapest = [s for s in cheapest if s.id in chosen_ids]
    return cheapest


def _tag_peak_and_cheapest(
    cheapest: list[PriceSlot], priciest: list[PriceSlot]
) -> None:
    for slot in priciest:
        slot.price_type = PriceType.MOST_EXPENSIVE
        slot.plan_action = SlotAction.DO_NOTHING
        slot.action_reason = "Avoiding charging due to peak prices"

    for slot in cheapest:
        if slot.price_type == PriceType.MOST_EXPENSIVE:
            continue
        slot.price_type = PriceType.CHEAPEST
        slot.plan_action = SlotAction.CHARGE
        slot.action_reason = "This is the cheapest set of slots, to fully charge the battery"


def _normalise_price_tiers(slots: list[PriceSlot]) -> None:
    cheap_prices = [s.price_inc_vat for s in slots if s.price_type == PriceType.CHEAPEST]
    if cheap_prices:
        cheapest_price = min(cheap_prices)
        for slot in slots:
            if (
                slot.price_inc_vat == cheapest_price
                and slot.price_type not in (PriceType.CHEAPEST, PriceType.MOST_EXPENSIVE)
            ):
                slot.price_type = PriceType.CHEAPEST
                slot.plan_action = SlotAction.CHARGE
                slot.action_reason = (
                    f"Price matches the cheapest slot price of {cheapest_price}p/kWh"
                )

    peak_prices = [s.price_inc_vat for s in slots if s.price_type == PriceType.MOST_EXPENSIVE]
    if peak_prices:
        peak_price = max(peak_prices)
        for slot in slots:
            if slot.price_inc_vat == peak_price and slot.price_type != PriceType.MOST_EXPENSIVE:
                slot.price_type = PriceType.MOST_EXPENSIVE
                slot.plan_action = SlotAction.DO_NOTHING
                slot.action_reason = "Avoiding charging due to peak prices"


def _tag_below_average(slots: list[PriceSlot], ratio: float) -> None:
    average_slots = [s for s in slots if s.price_type == PriceType.AVERAGE]
    if not average_slots:
        return

    average_price = sum(s.price_inc_vat for s in average_slots) / len(average_slots)
    cheap_threshold = average_price * ratio
    for slot in average_slots:
        if slot.price_inc_vat < cheap_threshold:
            slot.price_type = PriceType.BELOW_AVERAGE
            slot.plan_action = SlotAction.CHARGE_IF_LOW_BATTERY
            slot.action_reason = (
                f"Price is at least {round((1 - ratio) * 100)}% below the average price of "
                f"{average_price:.2f}p/kWh, so flagging as potential top-up"
            )


def _suppress_dip_before_cheapest(
    slots: list[PriceSlot], cheapest: list[PriceSlot], max_slots: int
) -> None:
    first_cheapest = next((s for s in cheapest if s.price_type == PriceType.CHEAPEST), None)
    if first_cheapest is None:
        return

    index = next(i for i, s in enumerate(slots) if s.id == first_cheapest.id)
    remaining = max_slots
    for slot in reversed(slots[:index]):
        if remaining == 0 or slot.price_type != PriceType.BELOW_AVERAGE:
            break
        slot.price_type = PriceType.DROPPING
        slot.plan_action = SlotAction.DO_NOTHING
        slot.action_reason = "Price is falling in the run-up to the cheapest period, so don't charge"
        remaining -= 1


def _top_up_before_peak(
    slots: list[PriceSlot],
    priciest: list[PriceSlot],
    charge_slots_needed: int,
    config: ManagerConfig,
) -> None:
    if not priciest or charge_slots_needed <= 0:
        return

    peak_id = priciest[0].id
    candidates = get_previous_n_items(
        slots,
        charge_slots_needed + config.plan.pre_peak_extra_slots,
        lambda s: s.id == peak_id,
    )
    target = config.battery.peak_period_battery_use
    for slot in sorted(candidates, key=lambda s: s.price_inc_vat)[:charge_slots_needed]:
        slot.plan_action = SlotAction.CHARGE
        slot.action_reason = (
            f"Cheaper slot to ensure battery is at least {target:.0%} charged "
            "before the peak period"
        )


def _apply_price_thresholds(slots: list[PriceSlot], always_charge_below_price: float) -> None:
    for slot in slots:
        if slot.price_inc_vat < always_charge_below_price:
            slot.price_type = PriceType.BELOW_THRESHOLD
            slot.plan_action = SlotAction.CHARGE
            slot.action_reason = (
                f"Price is below the threshold of {always_charge_below_price}p/kWh, "
                "so always charge"
            )
        if slot.price_inc_vat < 0:
            slot.price_type = PriceType.NEGATIVE
            slot.plan_action = SlotAction.CHARGE
            slot.action_reason = "Negative price - always charge"


def _skip_overnight_charge(
    slots: list[PriceSlot],
    battery_state: BatteryState,
    config: ManagerConfig,
    now: datetime,
) -> None:
    solar = config.solar
    cheap_slots = [s for s in slots if s.price_type == PriceType.CHEAPEST]
    if not solar.skip_overnight_charge or not cheap_slots:
        return

    charge_day = local_date(cheap_slots[0].valid_from)
    today = local_date(now)
    if charge_day == today:
        forecast = battery_state.today_forecast_kwh
    elif charge_day == today + timedelta(days=1):
        forecast = battery_state.tomorrow_forecast_kwh
    else:
        return

    if forecast > solar.forecast_threshold:
        logger.info(
            "Skipping cheapest-window charge: forecast of %.1fkWh exceeds threshold of %.1fkWh",
            forecast,
            solar.forecast_threshold,
        )
        for slot in cheap_slots:
            slot.plan_action = SlotAction.DO_NOTHING
            slot.action_reason = (
                f"Solar forecast of {forecast:.1f}kWh is above the threshold of "
                f"{solar.forecast_threshold}kWh, so skipping the overnight charge"
            )


def _promote_low_battery_slots(
    slots: list[PriceSlot], battery_state: BatteryState, config: ManagerConfig
) -> None:
    soc = battery_state.battery_soc
    if soc >= config.battery.low_battery_percentage:
        return
    if not battery_state.has_valid_soc:
        logger.debug("Battery SOC reads 0, skipping low battery rule")
        return

    candidates = [s for s in slots if s.plan_action == SlotAction.CHARGE_IF_LOW_BATTERY]
    for slot in candidates[: config.battery.slots_for_full_battery_charge]:
        slot.plan_action = SlotAction.CHARGE
        slot.action_reason = (
            f"Upcoming slot is set to charge if low battery; battery is currently at {soc}%"
        )


def _apply_scheduled_actions(slots: list[PriceSlot], config: ManagerConfig) -> None:
    for scheduled in config.scheduled_actions:
        if not scheduled.enabled:
            continue
        for slot in slots:
            if local_time_of_day(slot.valid_from) == scheduled.start_time:
                slot.override_action = scheduled.action
                slot.override_amps = scheduled.amps
                slot.override_type = OverrideType.SCHEDULED
                slot.action_reason = (
                    f"Scheduled action at {scheduled.start_time:%H:%M}"
                )


def _maintain_charge_floor(
    slots: list[PriceSlot], battery_state: BatteryState, config: ManagerConfig
) -> None:
    floor = config.battery.always_charge_below_soc
    if floor is None or not slots:
        return
    if battery_state.battery_soc >= floor:
        return
    if not battery_state.has_valid_soc:
        logger.debug("Battery SOC reads 0, skipping maintain-charge rule")
        return

    first = slots[0]
    if first.override_type == OverrideType.SCHEDULED:
        first.clear_override()
    first.plan_action = SlotAction.CHARGE
    first.action_reason = (
        f"Battery is at {battery_state.battery_soc}%, below the minimum of {floor}%, so charging"
    )


def _dump_before_negative_charge(slots: list[PriceSlot], slots_for_full: int) -> None:
    for run in get_adjacent_groups(slots, lambda s: s.price_type == PriceType.NEGATIVE):
        if len(run) <= slots_for_full:
            continue
        for slot in run[: len(run) - slots_for_full]:
            slot.override_action = SlotAction.DISCHARGE
            slot.override_type = OverrideType.NEGATIVE_PRICES
            slot.action_reason = (
                "Run of negative prices: discharging first so the battery can "
                "refill at negative prices"
            )


def evaluate_slot_actions(
    slots: list[PriceSlot],
    battery_state: BatteryState,
    config: ManagerConfig,
    now: datetime | None = None,
) -> list[PriceSlot]:
    """Assign price type, plan action and reason to every slot.

    Args:
        slots: Price slots ordered by ``valid_from``; mutated in place
        battery_state: Current telemetry snapshot (read only)
        config: User settings (read only)
        now: Current time, used for the today/tomorrow forecast split

    Returns:
        The same slot list. Length and slot boundaries are never changed.
    """
    if not slots:
        return slots

    now = now or utc_now()
    logger.debug("Evaluating slot actions for %d slots...", len(slots))

    try:
        _reset_slots(slots)

        charge_slots_needed = calculate_charge_slots_needed(battery_state, config)
        cheapest = _select_cheapest_slots(slots, config, charge_slots_needed)
        peak_window = _find_window(slots, config.plan.peak_period_length, cheapest=False)
        priciest = peak_window[1] if peak_window else []

        _tag_peak_and_cheapest(cheapest, priciest)
        _normalise_price_tiers(slots)
        _tag_below_average(slots, config.plan.below_average_ratio)
        _suppress_dip_before_cheapest(
            slots, cheapest, config.battery.slots_for_full_battery_charge
        )
        _top_up_before_peak(slots, priciest, charge_slots_needed, config)
        _apply_price_thresholds(slots, config.tariff.always_charge_below_price)
        _skip_overnight_charge(slots, battery_state, config, now)
        _promote_low_battery_slots(slots, battery_state, config)
        _apply_scheduled_actions(slots, config)
        _maintain_charge_floor(slots, battery_state, config)
        _dump_before_negative_charge(slots, config.battery.slots_for_full_battery_charge)
    except Exception:
        logger.exception("Unexpected exception during slot action evaluation")

    return slots
