"""
Override layer applied on top of the evaluated plan.

Precedence, lowest first: scheduled actions and negative-price dumps (written
by the evaluator), manual overrides, then smart-charge dispatches. Because the
slot list is rebuilt on every refresh, manual overrides are harvested from the
old list before the rebuild and reapplied to the new one by slot start time.
"""

import logging
import math
from collections import defaultdict
from datetime import datetime

from .models import (
    SLOT_DURATION,
    Dispatch,
    ManualOverride,
    OverrideType,
    PriceSlot,
    PriceType,
    SlotAction,
)
from .time_utils import ensure_utc, round_to_half_hour

logger = logging.getLogger(__name__)

MANUAL_OVERRIDE_REASON = "Manual override applied."


def harvest_manual_overrides(slots: list[PriceSlot]) -> list[ManualOverride]:
    """Collect every manual override so it can survive the next slot rebuild."""
    return [
        ManualOverride(slot_start=slot.valid_from, action=slot.override_action)
        for slot in slots
        if slot.is_manual_override and slot.override_action is not None
    ]


def apply_manual_overrides(slots: list[PriceSlot], overrides: list[ManualOverride]) -> int:
    """Reapply harvested overrides by slot start, overwriting whatever is there.

    Overrides whose slot has dropped out of the price window are discarded.

    Returns:
        Number of slots updated
    """
    if not overrides:
        return 0

    by_start: dict[datetime, list[PriceSlot]] = defaultdict(list)
    for slot in slots:
        by_start[ensure_utc(slot.valid_from)].append(slot)

    applied = 0
    for override in overrides:
        matches = by_start.get(ensure_utc(override.slot_start), [])
        if not matches:
            logger.debug("Dropping manual override for %s, slot no longer in window", override.slot_start)
            continue
        for slot in matches:
            slot.override_action = override.action
            slot.override_type = OverrideType.MANUAL
            slot.override_amps = None
            slot.action_reason = MANUAL_OVERRIDE_REASON
            applied += 1
    return applied


def toggle_manual_override(
    slots: list[PriceSlot], slot_start: datetime, action: SlotAction
) -> bool:
    """Set a manual override on the slot starting at ``slot_start``.

    Asking for the action the plan already has reverts the slot to its computed
    plan instead of adding a redundant override.

    Returns:
        True if an override is now set, False if it was cleared or no slot matched
    """
    slot_start = ensure_utc(slot_start)
    matches = [s for s in slots if ensure_utc(s.valid_from) == slot_start]
    if not matches:
        logger.warning("No slot found starting at %s, override ignored", slot_start)
        return False

    override_set = False
    for slot in matches:
        if slot.plan_action == action:
            logger.info("Clearing override for %s, plan already does %s", slot_start, action.value)
            slot.clear_override()
        else:
            slot.override_action = action
            slot.override_type = OverrideType.MANUAL
            slot.override_amps = None
            slot.action_reason = MANUAL_OVERRIDE_REASON
            override_set = True
    return override_set


def apply_dispatches(
    slots: list[PriceSlot],
    dispatches: list[Dispatch],
    dispatch_price: float | None = None,
) -> int:
    """Force Charge on every slot overlapping a smart-charge dispatch window.

    Applied after manual overrides are reapplied, so a dispatch also replaces a
    manual override on its slots. Slots already charging are left alone.
    Dispatched slots are billed at the cheapest rate of the tariff; that rate
    goes in ``display_price``, the tariff price itself is never changed.

    Returns:
        Number of slots updated
    """
    if not dispatches:
        return 0

    updated = 0
    for slot in slots:
        if not any(d.overlaps(slot.valid_from, slot.valid_to) for d in dispatches):
            continue
        if slot.action_to_execute == SlotAction.CHARGE:
            continue

        if slot.is_manual_override:
            logger.info(
                "Dispatch at %s replaces manual %s override",
                slot.valid_from,
                slot.override_action.value,
            )
        slot.clear_override()
        slot.plan_action = SlotAction.CHARGE
        slot.price_type = PriceType.IOG_DISPATCH
        slot.display_price = dispatch_price
        slot.action_reason = "Intelligent Octopus Go dispatch slot - charging at the off-peak rate"
        updated += 1

    if updated:
        logger.info("Applied %d dispatch slots", updated)
    return updated


def round_half_up(value: float) -> int:
    return math.floor(round(value, 6) + 0.5)


def charge_slots_to_full(battery_soc: int, slots_for_full: int) -> int:
    """Slots needed to charge from ``battery_soc`` to 100%."""
    return round_half_up(slots_for_full * (100 - battery_soc) / 100.0)


def discharge_slots_to_empty(battery_soc: int, slots_for_full: int) -> int:
    """Slots needed to discharge from ``battery_soc`` to empty."""
    return round_half_up(slots_for_full * battery_soc / 100.0)


def create_override_run(
    start: datetime, action: SlotAction, slot_count: int
) -> list[ManualOverride]:
    """Consecutive manual overrides starting at the slot containing ``start``."""
    current = round_to_half_hour(ensure_utc(start))
    overrides = []
    for _ in range(max(slot_count, 0)):
        overrides.append(ManualOverride(slot_start=current, action=action))
        current += SLOT_DURATION
    return overrides


def create_charge_overrides(now: datetime, battery_soc: int, slots_for_full: int) -> list[ManualOverride]:
    return create_override_run(
        now, SlotAction.CHARGE, charge_slots_to_full(battery_soc, slots_for_full)
    )


def create_discharge_overrides(
    now: datetime, battery_soc: int, slots_for_full: int
) -> list[ManualOverride]:
    return create_override_run(
        now, SlotAction.DISCHARGE, discharge_slots_to_empty(battery_soc, slots_for_full)
    )


def create_dump_and_charge_overrides(
    now: datetime, battery_soc: int, slots_for_full: int
) -> list[ManualOverride]:
    """Discharge to empty, then a full charge run straight after."""
    discharge = create_discharge_overrides(now, battery_soc, slots_for_full)
    charge_start = (
        discharge[-1].slot_start + SLOT_DURATION
        if discharge
        else round_to_half_hour(ensure_utc(now))
    )
    charge = create_override_run(charge_start, SlotAction.CHARGE, slots_for_full)
    return discharge + charge
