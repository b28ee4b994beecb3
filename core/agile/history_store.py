"""ExecutionHistoryStore - durable log of the action executed for each slot.

One CSV line per executed slot. The file layout has grown over time, so lines
with fewer columns are older formats and are still read:

* 12 columns: start, end, price, action, type, SOC%, actual kWh, forecast kWh,
  import kWh, export kWh, house load kWh, "reason"
* 9 columns: as above without import, export and house load
* 7 columns: start, end, price, action, type, SOC%, "reason"
"""

import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .models import InverterFiveMinData, PriceSlot, PriceType, SlotAction, parse_price_type, parse_slot_action
from .settings import HISTORY_MAX_ENTRIES
from .time_utils import UTC, ensure_utc, round_to_half_hour

logger = logging.getLogger(__name__)

HISTORY_FILE_NAME = "history.csv"
DATE_FORMAT = "%d-%b-%Y %H:%M"
COLUMN_LAYOUTS = (12, 9, 7)


@dataclass
class HistoryEntry:
    """One executed slot."""

    start: datetime
    end: datetime
    price: float
    action: SlotAction
    price_type: PriceType
    battery_soc: int
    actual_kwh: float = 0.0
    forecast_kwh: float = 0.0
    import_kwh: float = 0.0
    export_kwh: float = 0.0
    house_load_kwh: float = 0.0
    reason: str = ""

    @classmethod
    def from_slot(cls, slot: PriceSlot, battery_soc: int) -> "HistoryEntry":
        return cls(
            start=slot.valid_from,
            end=slot.valid_to,
            price=slot.price_inc_vat,
            action=slot.action_to_execute,
            price_type=slot.price_type,
            battery_soc=battery_soc,
            forecast_kwh=slot.pv_estimate_kwh or 0.0,
            reason=slot.action_reason,
        )

    def to_csv(self) -> str:
        return ", ".join(
            [
                self.start.strftime(DATE_FORMAT),
                self.end.strftime(DATE_FORMAT),
                f"{self.price:.2f}",
                self.action.value,
                self.price_type.value,
                f"{self.battery_soc}%",
                f"{self.actual_kwh:.2f}",
                f"{self.forecast_kwh:.2f}",
                f"{self.import_kwh:.2f}",
                f"{self.export_kwh:.2f}",
                f"{self.house_load_kwh:.2f}",
                f'"{self.reason}"',
            ]
        )

    @classmethod
    def try_parse(cls, line: str) -> "HistoryEntry | None":
        """Parse a log line in any known layout, widest first. None if unreadable."""
        line = line.strip()
        if not line:
            return None

        for columns in COLUMN_LAYOUTS:
            parts = [p.strip() for p in line.split(",", columns - 1)]
            if len(parts) != columns or not parts[-1].startswith('"'):
                continue
            try:
                return cls._from_parts(parts)
            except ValueError:
                continue

        logger.debug("Unable to parse history line: %s", line)
        return None

    @classmethod
    def _from_parts(cls, parts: list[str]) -> "HistoryEntry":
        entry = cls(
            start=_parse_date(parts[0]),
            end=_parse_date(parts[1]),
            price=float(parts[2]),
            action=parse_slot_action(parts[3]),
            price_type=parse_price_type(parts[4]),
            battery_soc=int(parts[5].replace("%", "")),
            reason=parts[-1].strip('"'),
        )
        if len(parts) >= 9:
            entry.actual_kwh = float(parts[6])
            entry.forecast_kwh = float(parts[7])
        if len(parts) >= 12:
            entry.import_kwh = float(parts[8])
            entry.export_kwh = float(parts[9])
            entry.house_load_kwh = float(parts[10])
        return entry


def _parse_date(text: str) -> datetime:
    return datetime.strptime(text, DATE_FORMAT).replace(tzinfo=UTC)


class ExecutionHistoryStore:
    """Append-only execution history backed by a CSV file.

    The file is read lazily on first use. Only the latest entry can be amended
    (when the current slot is executed again before it ends); earlier entries
    are never rewritten. The log is capped to a rolling window on write.
    File errors are logged and never reach the planner.
    """

    def __init__(self, file_path: str | Path = HISTORY_FILE_NAME, max_entries: int = HISTORY_MAX_ENTRIES):
        self.file_path = Path(file_path)
        self.max_entries = max_entries
        self._entries: list[HistoryEntry] | None = None

    def _load(self) -> list[HistoryEntry]:
        if self._entries is not None:
            return self._entries

        entries: list[HistoryEntry] = []
        if self.file_path.exists():
            try:
                with self.file_path.open() as f:
                    lines = f.readlines()
            except OSError as e:
                logger.error("Failed to read execution history %s: %s", self.file_path, e)
                lines = []

            skipped = 0
            for line in lines:
                entry = HistoryEntry.try_parse(line)
                if entry is None:
                    if line.strip():
                        skipped += 1
                    continue
                entries.append(entry)
            if skipped:
                logger.warning("Skipped %d unreadable history lines", skipped)
            logger.info("Loaded %d entries from execution history", len(entries))

        self._entries = entries
        return entries

    def _save(self) -> None:
        entries = self._load()
        if len(entries) > self.max_entries:
            del entries[: len(entries) - self.max_entries]

        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        try:
            with tmp_path.open("w") as f:
                f.writelines(entry.to_csv() + "\n" for entry in entries)
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            logger.error("Failed to write execution history %s: %s", self.file_path, e)

    def record(self, slot: PriceSlot, battery_soc: int) -> bool:
        """Record the executed slot.

        Returns:
            True if the log changed
        """
        entries = self._load()
        entry = HistoryEntry.from_slot(slot, battery_soc)
        start = ensure_utc(entry.start)

        if entries and ensure_utc(entries[-1].start) == start:
            entries[-1] = entry
        elif any(ensure_utc(e.start) == start for e in entries):
            logger.debug("Slot %s already recorded in history", start)
            return False
        else:
            entries.append(entry)
            logger.debug("Recorded history for slot %s", start)

        self._save()
        return True

    def get_entries(self) -> list[HistoryEntry]:
        return list(self._load())

    def enrich_with_inverter_data(self, samples: list[InverterFiveMinData]) -> int:
        """Fill actual, import, export and house load kWh from 5-minute samples.

        Samples are summed into their half-hour slot; only entries with a
        matching slot are touched.

        Returns:
            Number of entries updated
        """
        if not samples:
            return 0

        buckets: dict[datetime, list[InverterFiveMinData]] = defaultdict(list)
        for sample in samples:
            buckets[round_to_half_hour(ensure_utc(sample.start))].append(sample)

        updated = 0
        for entry in self._load():
            bucket = buckets.get(ensure_utc(entry.start))
            if not bucket:
                continue
            entry.actual_kwh = sum(s.pv_yield_kwh for s in bucket)
            entry.import_kwh = sum(s.import_kwh for s in bucket)
            entry.export_kwh = sum(s.export_kwh for s in bucket)
            entry.house_load_kwh = sum(s.house_load_kwh for s in bucket)
            updated += 1

        if updated:
            self._save()
            logger.info("Enriched %d history entries with inverter data", updated)
        return updated
