"""
Execution reconciler: turns the resolved plan into one inverter command.

The first slot and every directly following slot with the same resolved action
are conflated into a single window. Before anything is written, the requested
charge state is compared with what the inverter already holds; the inverter's
settings live in EEPROM, so writes are skipped whenever the inverter would
behave the same either way.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from .exceptions import InverterCommunicationError
from .models import CLEAR_WINDOW, BatteryState, ChargeState, PriceSlot, SlotAction
from .time_utils import format_local_hhmm, to_local, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ConflatedRun:
    """The contiguous run of slots at the head of the plan sharing one action."""

    action: SlotAction
    start: datetime
    end: datetime
    amps: int | None
    first_slot: PriceSlot
    slot_count: int = 1


@dataclass
class ChargeCommand:
    """Physical command for the inverter. All datetimes are UTC."""

    charge_start: datetime | None = None
    charge_end: datetime | None = None
    discharge_start: datetime | None = None
    discharge_end: datetime | None = None
    hold_charge: bool = False
    amps: int | None = None


def conflate_first_run(slots: list[PriceSlot]) -> ConflatedRun | None:
    """Merge the first slot with the following slots that resolve to the same action.

    The run stops at the first gap in the timeline or change of action.
    """
    if not slots:
        return None

    first = slots[0]
    action = first.action_to_execute
    end = first.valid_to
    count = 1
    for slot in slots[1:]:
        if slot.valid_from != end or slot.action_to_execute != action:
            break
        end = slot.valid_to
        count += 1

    return ConflatedRun(
        action=action,
        start=first.valid_from,
        end=end,
        amps=first.override_amps,
        first_slot=first,
        slot_count=count,
    )


def build_charge_command(run: ConflatedRun) -> ChargeCommand:
    """Map a conflated run onto charge and discharge windows."""
    if run.action == SlotAction.CHARGE:
        return ChargeCommand(charge_start=run.start, charge_end=run.end, amps=run.amps)
    if run.action == SlotAction.DISCHARGE:
        return ChargeCommand(discharge_start=run.start, discharge_end=run.end, amps=run.amps)
    if run.action == SlotAction.HOLD:
        # A zero-current discharge window keeps the inverter from drifting
        # into its own self-use import or export
        return ChargeCommand(
            discharge_start=run.start, discharge_end=run.end, hold_charge=True, amps=run.amps
        )
    # DoNothing, and ChargeIfLowBattery that was never promoted
    return ChargeCommand()


def format_window(start: datetime | None, end: datetime | None) -> str:
    """Local wall-clock ``HH:MM-HH:MM`` window, or the clear window."""
    if start is None or end is None:
        return CLEAR_WINDOW
    return f"{format_local_hhmm(start)}-{format_local_hhmm(end)}"


def build_charge_state(command: ChargeCommand, max_charge_rate_amps: int) -> ChargeState:
    """The inverter charge state a command translates to."""
    amps = command.amps if command.amps is not None else max_charge_rate_amps
    state = ChargeState()
    if command.charge_start is not None and command.charge_end is not None:
        state.charge_times = format_window(command.charge_start, command.charge_end)
        state.charge_amps = amps
    if command.discharge_start is not None and command.discharge_end is not None:
        state.discharge_times = format_window(command.discharge_start, command.discharge_end)
        state.discharge_amps = 0 if command.hold_charge else amps
    return state


def parse_time(text: str) -> time:
    """Parse ``HH:MM`` as reported by the inverter.

    Some firmware reports hours past 24; those are folded back into the day.
    """
    parts = text.strip().split(":", 1)
    if len(parts) != 2:
        raise ValueError(f"Invalid time {text!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if hours >= 24:
        logger.warning("Time returned from inverter was %dhrs - wrapping...", hours)
        hours %= 24
    return time(hours, minutes)


def convert_to_real_dates(window: str, now: datetime) -> tuple[datetime, datetime]:
    """Anchor an ``HH:MM-HH:MM`` window to real local datetimes.

    Windows that started earlier than the current time of day are taken to be
    tomorrow's; an end before the start rolls over midnight.
    """
    parts = [p.strip() for p in window.split("-", 1)]
    if len(parts) != 2:
        raise ValueError(f"Invalid time pair {window!r}")

    start_time = parse_time(parts[0])
    end_time = parse_time(parts[1])

    local_now = to_local(now).replace(tzinfo=None)
    today = local_now.date()
    start = datetime.combine(today, start_time)
    end = datetime.combine(today, end_time)

    if start_time < local_now.time():
        start += timedelta(days=1)
        end += timedelta(days=1)
    if end_time < start_time:
        end += timedelta(days=1)
    return start, end


def _window_is_equivalent(current: str, new: str, now: datetime) -> bool:
    cur_start, cur_end = convert_to_real_dates(current, now)
    new_start, new_end = convert_to_real_dates(new, now)
    return cur_start <= new_start <= cur_end and new_end == cur_end


def charge_state_is_equivalent(current: ChargeState, new: ChargeState, now: datetime) -> bool:
    """True if writing ``new`` would not change how the inverter behaves.

    Both windows must start inside the existing window with the same end, and
    both currents must match.
    """
    charge_ok = (
        new.charge_amps == current.charge_amps
        and _window_is_equivalent(current.charge_times, new.charge_times, now)
    )
    discharge_ok = (
        new.discharge_amps == current.discharge_amps
        and _window_is_equivalent(current.discharge_times, new.discharge_times, now)
    )
    return charge_ok and discharge_ok


def inverter_needs_updating(
    current: ChargeState | None, new: ChargeState, now: datetime | None = None
) -> bool:
    """Write-skip policy. An unknown or unreadable current state always needs a write."""
    if current is None:
        return True
    now = now or utc_now()
    try:
        return not charge_state_is_equivalent(current, new, now)
    except ValueError as e:
        logger.warning("Error reading inverter charge slot state, forcing write: %s", e)
        return True


class SlotExecutor:
    """Drives the inverter from the head of the resolved plan.

    At most one ``set_charge`` call is made per pass, and the first slot is
    recorded in the execution history.
    """

    def __init__(self, inverter, history_store=None, simulate: bool = True) -> None:
        self.inverter = inverter
        self.history_store = history_store
        self.simulate = simulate

    def execute(
        self, slots: list[PriceSlot], battery_state: BatteryState, now: datetime | None = None
    ) -> ConflatedRun | None:
        run = conflate_first_run(slots)
        if run is None:
            logger.warning("No slots available, nothing to execute")
            return None

        logger.info(
            "Execute action for slot: %s (Simulate: %s, conflated slots: %d)",
            run.first_slot,
            self.simulate,
            run.slot_count,
        )

        if self.history_store is not None:
            self.history_store.record(run.first_slot, battery_state.battery_soc)

        command = build_charge_command(run)
        try:
            self.inverter.set_charge(
                charge_start=command.charge_start,
                charge_end=command.charge_end,
                discharge_start=command.discharge_start,
                discharge_end=command.discharge_end,
                hold_charge=command.hold_charge,
                amps=command.amps,
                simulate_only=self.simulate,
                now=now,
            )
        except InverterCommunicationError as e:
            logger.error("Failed to apply %s to inverter: %s", run.action.value, e)

        return run
